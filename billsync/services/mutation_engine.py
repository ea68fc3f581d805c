# billsync/services/mutation_engine.py
import asyncio
import logging
import uuid
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional, Set, Union

from pydantic import ValidationError

from billsync.models.schemas import (
    PENDING_ID_PREFIX,
    Bill,
    BillCreate,
    BillUpdate,
    MarkPaidResult,
    MutationState,
)
from billsync.services.backend_client import BillBackend
from billsync.services.bill_store import (
    AddDeletedBill,
    AddOptimisticBill,
    BillStore,
    EndMutation,
    MarkPaidOptimistic,
    RemoveDeletedBill,
    RemoveOptimisticBill,
    ReplaceBill,
    SetBills,
    SetLoading,
    StartMutation,
    UndoPaidOptimistic,
)
from billsync.services.due_dates import shift_days
from billsync.services.notifications import ToastCenter
from billsync.services.undo import UndoCoordinator

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MutationEngine:
    """账单变更引擎

    每个操作的流程：加锁检查 -> 乐观更新 -> 远程调用 -> 以服务器结果对账或按快照回滚 -> 解锁。
    同一账单上的并发操作直接拒绝，不排队。操作本身不会抛出异常，失败时回滚并给出提示。
    """

    def __init__(
            self,
            store: BillStore,
            backend: BillBackend,
            toasts: Optional[ToastCenter] = None,
            undo: Optional[UndoCoordinator] = None,
            now: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.backend = backend
        self.toasts = toasts or ToastCenter()
        self.undo = undo or UndoCoordinator(self.toasts)
        self.now = now
        self._inflight: Set[asyncio.Task] = set()

    # ---- 内部工具 ----

    async def _detached(self, coro):
        """调用方被取消时操作仍继续执行到解锁为止"""
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self):
        """等待所有进行中的操作完成"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _is_locked(self, bill_ids: Iterable[str]) -> bool:
        for bill_id in bill_ids:
            if self.store.is_locked(bill_id):
                logger.debug(f"账单正在变更中，忽略重复操作: {bill_id}")
                return True
        return False

    def _lock(self, bill_id: str, state: MutationState):
        self.store.dispatch(StartMutation(bill_id, state))
        # 新的变更会让该账单上旧快照的撤销失效
        self.undo.dismiss_for(bill_id)

    def _unlock(self, bill_id: str):
        self.store.dispatch(EndMutation(bill_id))

    def _find(self, bill_id: str) -> Optional[Bill]:
        bill = self.store.get(bill_id)
        if bill is None:
            logger.warning(f"账单不存在: {bill_id}")
            self.toasts.error("Bill not found")
        return bill

    def _report_failure(self, what: str, error: Exception):
        logger.error(f"账单操作失败({what}): {error}")
        self.toasts.error("Something went wrong", f"Failed to {what}. Try again.")

    # ---- 加载 ----

    async def refetch(self) -> bool:
        """从后端重新加载全部账单（包括已支付）"""
        try:
            bills = await self.backend.list_bills(show_paid=True)
        except Exception as e:
            logger.error(f"加载账单失败: {e}")
            self.store.dispatch(SetLoading(False))
            return False

        self.store.dispatch(SetBills(tuple(bills), self.store.clock()))
        return True

    async def refresh_if_stale(self) -> bool:
        if self.store.is_stale():
            return await self.refetch()
        return False

    # ---- 标记支付 ----

    async def mark_paid(self, bill_id: str, amount: Optional[float] = None) -> MarkPaidResult:
        return await self._detached(self._mark_paid(bill_id, amount))

    async def _mark_paid(self, bill_id: str, amount: Optional[float]) -> MarkPaidResult:
        if self._is_locked([bill_id]):
            return MarkPaidResult(success=False)
        bill = self._find(bill_id)
        if bill is None:
            return MarkPaidResult(success=False)
        if bill.is_paid:
            logger.warning(f"账单已支付，忽略: {bill_id}")
            return MarkPaidResult(success=False)

        snapshot = bill
        self._lock(bill_id, "marking_paid")
        try:
            paid_amount = amount if amount is not None else bill.amount
            self.store.dispatch(MarkPaidOptimistic(bill.model_copy(update={
                "is_paid": True,
                "paid_at": self.now(),
                "last_paid_amount": paid_amount,
            })))

            try:
                result = await self.backend.pay_bill(bill_id, amount)
            except Exception as e:
                self.store.dispatch(ReplaceBill(snapshot))
                self._report_failure("mark bill as paid", e)
                return MarkPaidResult(success=False)

            self.store.dispatch(MarkPaidOptimistic(result.paid_bill, result.next_bill))
            next_bill_id = result.next_bill.id if result.next_bill else None

            async def undo_action():
                return await self.undo_paid(snapshot, next_bill_id)

            self.undo.offer(
                bill_id,
                "Marked as paid",
                undo_action,
                description=bill.name,
                amount=paid_amount,
            )
            logger.info(f"账单已标记支付: {bill_id}, 下一期: {next_bill_id}")
            return MarkPaidResult(success=True, paid_bill=result.paid_bill, next_bill=result.next_bill)
        finally:
            self._unlock(bill_id)

    # ---- 撤销支付 ----

    async def undo_paid(self, original: Bill, next_bill_id: Optional[str] = None) -> bool:
        """撤销支付：original为支付前的快照，当前记录从本地存储读取"""
        return await self._detached(self._undo_paid(original, next_bill_id))

    async def _undo_paid(self, original: Bill, next_bill_id: Optional[str]) -> bool:
        lock_ids = [original.id] + ([next_bill_id] if next_bill_id else [])
        if self._is_locked(lock_ids):
            return False
        current = self._find(original.id)
        if current is None:
            return False

        successor = self.store.get(next_bill_id) if next_bill_id else None
        # 下一期账单若已被支付则保留，其余情况一并移除
        remove_next = None
        if next_bill_id and (successor is None or not successor.is_paid):
            remove_next = next_bill_id
        elif successor is not None:
            logger.info(f"下一期账单已支付，撤销时保留: {next_bill_id}")

        for bill_id in lock_ids:
            self._lock(bill_id, "undoing_payment")
        try:
            self.store.dispatch(UndoPaidOptimistic(original, remove_next))

            try:
                await self.backend.unpay_bill(original.id)
            except Exception as e:
                restored = successor if remove_next and successor is not None else None
                self.store.dispatch(MarkPaidOptimistic(current, restored))
                self._report_failure("undo payment", e)
                return False

            await self.refetch()
            logger.info(f"账单支付已撤销: {original.id}")
            return True
        finally:
            for bill_id in lock_ids:
                self._unlock(bill_id)

    # ---- 新增 ----

    async def add_bill(self, fields: Union[BillCreate, dict]) -> Optional[Bill]:
        return await self._detached(self._add_bill(fields))

    async def _add_bill(self, fields: Union[BillCreate, dict]) -> Optional[Bill]:
        try:
            if not isinstance(fields, BillCreate):
                fields = BillCreate.model_validate(fields)
        except ValidationError as e:
            self._report_failure("add bill", e)
            return None

        temp_id = f"{PENDING_ID_PREFIX}{uuid.uuid4().hex}"
        self._lock(temp_id, "adding")
        try:
            self.store.dispatch(AddOptimisticBill(Bill(id=temp_id, **fields.model_dump())))

            try:
                new_bill = await self.backend.create_bill(fields)
            except Exception as e:
                self.store.dispatch(RemoveOptimisticBill(temp_id))
                self._report_failure("add bill", e)
                return None

            # 丢弃占位记录，以服务器数据为准
            self.store.dispatch(RemoveOptimisticBill(temp_id))
            if not await self.refetch():
                self.store.dispatch(AddOptimisticBill(new_bill))

            self.toasts.success(f"{new_bill.name} added!")
            logger.info(f"账单创建成功: {new_bill.id}")
            return new_bill
        finally:
            self._unlock(temp_id)

    # ---- 编辑 ----

    async def update_bill(self, bill_id: str, changes: Union[BillUpdate, dict]) -> Optional[Bill]:
        return await self._detached(self._edit(bill_id, changes))

    async def _update_bill(
            self,
            bill_id: str,
            changes: Union[BillUpdate, dict],
            state: MutationState,
    ) -> Optional[Bill]:
        if self._is_locked([bill_id]):
            return None
        bill = self._find(bill_id)
        if bill is None:
            return None
        try:
            if not isinstance(changes, BillUpdate):
                changes = BillUpdate.model_validate(changes)
        except ValidationError as e:
            self._report_failure("update bill", e)
            return None

        snapshot = bill
        self._lock(bill_id, state)
        try:
            self.store.dispatch(ReplaceBill(bill.model_copy(update=changes.changes())))

            try:
                updated = await self.backend.update_bill(bill_id, changes)
            except Exception as e:
                self.store.dispatch(ReplaceBill(snapshot))
                self._report_failure("update bill", e)
                return None

            self.store.dispatch(ReplaceBill(updated))
            await self.refetch()
            return updated
        finally:
            self._unlock(bill_id)

    async def _edit(self, bill_id: str, changes: Union[BillUpdate, dict]) -> Optional[Bill]:
        updated = await self._update_bill(bill_id, changes, "editing")
        if updated is not None:
            self.toasts.success(f"{updated.name} updated!")
        return updated

    # ---- 延期/改期 ----

    async def snooze_bill(self, bill_id: str, days: int) -> bool:
        return await self._detached(self._snooze(bill_id, days))

    async def _snooze(self, bill_id: str, days: int) -> bool:
        if self._is_locked([bill_id]):
            return False
        bill = self._find(bill_id)
        if bill is None:
            return False
        updated = await self._reschedule(bill, shift_days(bill.due_date, days), "snoozing", "snoozed")
        return updated is not None

    async def reschedule_bill(self, bill_id: str, due_date: date) -> Optional[Bill]:
        return await self._detached(self._reschedule_by_id(bill_id, due_date))

    async def _reschedule_by_id(self, bill_id: str, due_date: date) -> Optional[Bill]:
        if self._is_locked([bill_id]):
            return None
        bill = self._find(bill_id)
        if bill is None:
            return None
        return await self._reschedule(bill, due_date, "editing", "rescheduled")

    async def _reschedule(self, bill: Bill, due_date: date, state: MutationState, verb: str) -> Optional[Bill]:
        previous_due = bill.due_date
        updated = await self._update_bill(bill.id, BillUpdate(due_date=due_date), state)
        if updated is None:
            return None

        async def undo_action():
            return await self._detached(
                self._update_bill(bill.id, BillUpdate(due_date=previous_due), "editing")
            )

        self.undo.offer(
            bill.id,
            f"{bill.name} {verb}",
            undo_action,
            description=f"Due date moved to {due_date.strftime('%b %d, %Y')}",
        )
        return updated

    # ---- 删除 ----

    async def delete_bill(self, bill_id: str) -> bool:
        return await self._detached(self._delete_bill(bill_id))

    async def _delete_bill(self, bill_id: str) -> bool:
        if self._is_locked([bill_id]):
            return False
        bill = self._find(bill_id)
        if bill is None:
            return False

        self._lock(bill_id, "deleting")
        try:
            # 只隐藏不移除，失败时直接恢复可见
            self.store.dispatch(AddDeletedBill(bill_id))

            try:
                await self.backend.delete_bill(bill_id)
            except Exception as e:
                self.store.dispatch(RemoveDeletedBill(bill_id))
                self._report_failure("delete bill", e)
                return False

            self.store.dispatch(RemoveOptimisticBill(bill_id))
            await self.refetch()
            self.store.dispatch(RemoveDeletedBill(bill_id))
            self.toasts.success(f"{bill.name} deleted")
            logger.info(f"账单已删除: {bill_id}")
            return True
        finally:
            self._unlock(bill_id)
