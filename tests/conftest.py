import asyncio
import uuid
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Set

import pytest

from billsync.models.schemas import (
    Bill,
    BillCreate,
    BillUpdate,
    CandidateExtraction,
    ExtractionCorrections,
    PayResult,
    SourceMessage,
)
from billsync.services.backend_client import (
    BackendError,
    BillBackend,
    BillNotFoundError,
    ExtractionService,
    MailboxAuthExpiredError,
)
from billsync.services.bill_store import BillStore, SetBills
from billsync.services.due_dates import next_due_date
from billsync.services.mailbox import MessageSource
from billsync.services.mutation_engine import MutationEngine
from billsync.services.notifications import ToastCenter
from billsync.services.undo import UndoCoordinator

TODAY = date(2026, 10, 17)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def make_bill(bill_id: str, name: str, due_date: date, **kwargs) -> Bill:
    return Bill(id=bill_id, name=name, due_date=due_date, **kwargs)


class FakeBillBackend(BillBackend):
    """内存账单后端，可注入失败和阻塞"""

    def __init__(self, bills: Optional[List[Bill]] = None):
        self.bills: Dict[str, Bill] = {b.id: b for b in bills or []}
        self.prior_paid: Dict[str, Optional[float]] = {}
        self.fail: Set[str] = set()
        self.gate: Optional[asyncio.Event] = None
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []

    async def _enter(self, name: str):
        self.calls.append(name)
        gate = self.gates.get(name, self.gate)
        if gate is not None:
            await gate.wait()
        if name in self.fail:
            raise BackendError(f"simulated {name} failure")

    def _get(self, bill_id: str) -> Bill:
        if bill_id not in self.bills:
            raise BillNotFoundError(bill_id)
        return self.bills[bill_id]

    async def list_bills(self, show_paid: bool = True) -> List[Bill]:
        await self._enter("list_bills")
        return [b for b in self.bills.values() if show_paid or not b.is_paid]

    async def create_bill(self, fields: BillCreate) -> Bill:
        await self._enter("create_bill")
        bill = Bill(id=uuid.uuid4().hex, **fields.model_dump())
        self.bills[bill.id] = bill
        return bill

    async def update_bill(self, bill_id: str, changes: BillUpdate) -> Bill:
        await self._enter("update_bill")
        bill = self._get(bill_id).model_copy(update=changes.changes())
        self.bills[bill_id] = bill
        return bill

    async def delete_bill(self, bill_id: str) -> None:
        await self._enter("delete_bill")
        self._get(bill_id)
        del self.bills[bill_id]

    async def pay_bill(self, bill_id: str, amount: Optional[float] = None) -> PayResult:
        await self._enter("pay_bill")
        bill = self._get(bill_id)
        self.prior_paid[bill_id] = bill.last_paid_amount
        paid = bill.model_copy(update={
            "is_paid": True,
            "paid_at": datetime.now(timezone.utc),
            "paid_method": "manual",
            "last_paid_amount": amount if amount is not None else bill.amount,
        })
        self.bills[bill_id] = paid

        next_bill = None
        if bill.is_recurring:
            next_bill = bill.model_copy(update={
                "id": uuid.uuid4().hex,
                "due_date": next_due_date(bill.due_date, bill.recurrence_interval),
                "parent_bill_id": bill_id,
                "previous_amount": bill.amount,
            })
            self.bills[next_bill.id] = next_bill
        return PayResult(paid_bill=paid, next_bill=next_bill)

    async def unpay_bill(self, bill_id: str) -> None:
        await self._enter("unpay_bill")
        bill = self._get(bill_id)
        for child in [b for b in self.bills.values() if b.parent_bill_id == bill_id and not b.is_paid]:
            del self.bills[child.id]
        self.bills[bill_id] = bill.model_copy(update={
            "is_paid": False,
            "paid_at": None,
            "paid_method": None,
            "last_paid_amount": self.prior_paid.pop(bill_id, None),
        })


class FakeExtractionService(ExtractionService):
    def __init__(self, candidates: Optional[List[CandidateExtraction]] = None):
        self.candidates = list(candidates or [])
        self.scan_error: Optional[Exception] = None
        self.confirmed = []
        self.rejected = []
        self.auto_accepted = []

    async def scan(self, max_results: int, days_back: int) -> List[CandidateExtraction]:
        if self.scan_error is not None:
            raise self.scan_error
        return list(self.candidates)

    async def fetch_review_queue(self, limit: int = 50) -> List[CandidateExtraction]:
        return [c for c in self.candidates if c.status == "needs_review"][:limit]

    async def confirm(
            self,
            extraction_id: str,
            corrections: Optional[ExtractionCorrections] = None,
            created_bill_id: Optional[str] = None,
    ) -> None:
        self.confirmed.append((extraction_id, corrections, created_bill_id))

    async def reject(self, extraction_id: str) -> None:
        self.rejected.append(extraction_id)

    async def mark_auto_accepted(self, extraction_id: str, created_bill_id: Optional[str]) -> None:
        self.auto_accepted.append((extraction_id, created_bill_id))


class FakeMailbox(MessageSource):
    def __init__(self, messages: Optional[List[SourceMessage]] = None, expired: bool = False):
        self.messages = list(messages or [])
        self.expired = expired

    async def fetch_messages(self, max_results: int, days_back: int) -> List[SourceMessage]:
        if self.expired:
            raise MailboxAuthExpiredError("token revoked")
        return self.messages[:max_results]


async def wait_until(predicate, attempts: int = 100):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBillBackend()


@pytest.fixture
def engine(backend, clock):
    store = BillStore(clock=clock)
    toasts = ToastCenter(clock=clock)
    engine = MutationEngine(store, backend, toasts=toasts, undo=UndoCoordinator(toasts, clock=clock))
    return engine


def seed(engine: MutationEngine, backend: FakeBillBackend, *bills: Bill):
    for bill in bills:
        backend.bills[bill.id] = bill
    engine.store.dispatch(SetBills(tuple(backend.bills.values()), engine.store.clock()))
