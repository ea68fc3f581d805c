# billsync/services/extraction_agent.py
import logging
from datetime import date
from typing import List, Optional

from langchain_core.output_parsers import JsonOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field

from billsync.config import settings
from billsync.models.schemas import EvidenceSnippet, SourceMessage

logger = logging.getLogger(__name__)


class ExtractedBillModel(BaseModel):
    """账单数据模型（用于AI解析邮件）"""
    is_bill: bool = Field(description="Whether the email asks the recipient to pay a bill")
    name: Optional[str] = Field(None, description="Biller or service name, e.g. Netflix, Con Edison")
    amount: Optional[float] = Field(None, description="Amount due as a plain number, e.g. 18.50")
    due_date: Optional[date] = Field(None, description="Due date in YYYY-MM-DD format")
    category: Optional[str] = Field(
        None,
        description="One of utilities, subscription, rent, housing, insurance, phone, internet, "
                    "credit_card, loan, health, other",
    )
    confidence: float = Field(0.0, ge=0, le=1, description="Overall confidence 0-1")
    confidence_amount: Optional[float] = Field(None, ge=0, le=1, description="Confidence in the amount 0-1")
    confidence_due_date: Optional[float] = Field(None, ge=0, le=1, description="Confidence in the due date 0-1")
    evidence: List[EvidenceSnippet] = Field(
        default_factory=list,
        description="Quoted source text justifying each field: {field, snippet}",
    )
    reasoning: Optional[str] = Field(None, description="Short explanation")


class ExtractionAgent:
    """邮件账单AI解析服务"""

    def __init__(self, llm=None):
        try:
            self.llm = llm if llm is not None else ChatOpenAI(
                model=settings.llm_model,
                api_key=settings.llm_api_key,
                base_url=settings.llm_base_url,
                temperature=0,
            )

            self.parser = JsonOutputParser(pydantic_object=ExtractedBillModel)

            self.prompt = ChatPromptTemplate.from_template("""
You extract bill details from emails for a personal bill tracker.

Email subject: {subject}
From: {sender}
Received: {received_at}

Email body:
{body}

Rules:
- is_bill is true only when the email asks for payment of an amount that is due (statements,
  invoices, payment reminders). Receipts for completed payments, promotions and newsletters
  are not bills.
- amount is the total amount due, not a minimum payment, as a plain number.
- due_date is YYYY-MM-DD. Resolve relative dates ("due in 5 days") against the received date.
- For every field you fill in, quote the text you relied on in evidence.
- Lower the confidences when a value is guessed rather than stated.

{format_instructions}
""")

            self.chain = self.prompt | self.llm | self.parser
            logger.info("AI解析服务初始化成功")

        except Exception as e:
            logger.error(f"AI解析服务初始化失败: {e}")
            raise

    async def analyze_message(self, message: SourceMessage) -> ExtractedBillModel:
        """分析邮件并返回结构化数据"""
        try:
            if not message.body or len(message.body.strip()) < 10:
                raise ValueError("邮件内容过短，无法分析")

            result = await self.chain.ainvoke({
                "subject": message.subject,
                "sender": message.sender,
                "received_at": message.received_at.date().isoformat(),
                "body": message.body[:settings.llm_max_body_length],
                "format_instructions": self.parser.get_format_instructions(),
            })

            logger.info(f"AI分析完成: {message.id}")
            return ExtractedBillModel(**result)

        except Exception as e:
            logger.error(f"邮件分析失败: {message.id}: {e}")
            raise Exception(f"AI账单分析失败: {e}")
