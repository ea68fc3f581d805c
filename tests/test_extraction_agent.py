import json
from datetime import date, datetime, timezone

import pytest
from langchain_core.language_models import FakeListChatModel

from billsync.models.schemas import SourceMessage
from billsync.services.extraction_agent import ExtractionAgent

BILL_RESPONSE = json.dumps({
    "is_bill": True,
    "name": "Con Edison",
    "amount": 84.12,
    "due_date": "2026-10-29",
    "category": "utilities",
    "confidence": 0.93,
    "confidence_amount": 0.97,
    "confidence_due_date": 0.9,
    "evidence": [
        {"field": "amount", "snippet": "Amount due: $84.12"},
        {"field": "due_date", "snippet": "Please pay by October 29, 2026"},
    ],
    "reasoning": "Statement with amount due and due date",
})


def message(body: str) -> SourceMessage:
    return SourceMessage(
        id="msg-1",
        subject="Your Con Edison bill is ready",
        sender="billing@coned.com",
        received_at=datetime(2026, 10, 15, 9, 30, tzinfo=timezone.utc),
        body=body,
    )


async def test_analyze_message_parses_structured_output():
    agent = ExtractionAgent(llm=FakeListChatModel(responses=[f"```json\n{BILL_RESPONSE}\n```"]))

    result = await agent.analyze_message(message("Amount due: $84.12. Please pay by October 29, 2026."))

    assert result.is_bill
    assert result.name == "Con Edison"
    assert result.amount == 84.12
    assert result.due_date == date(2026, 10, 29)
    assert [e.field for e in result.evidence] == ["amount", "due_date"]


async def test_short_body_is_rejected():
    agent = ExtractionAgent(llm=FakeListChatModel(responses=[BILL_RESPONSE]))

    with pytest.raises(Exception, match="AI账单分析失败"):
        await agent.analyze_message(message("hi"))


async def test_unparseable_output_raises():
    agent = ExtractionAgent(llm=FakeListChatModel(responses=["I could not find a bill."]))

    with pytest.raises(Exception, match="AI账单分析失败"):
        await agent.analyze_message(message("Thanks for shopping with us, your receipt is attached."))
