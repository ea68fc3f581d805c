# billsync/services/bill_store.py
import logging
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Dict, FrozenSet, List, Mapping, Optional, Tuple

from billsync.models.schemas import Bill, MutationState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillsState:
    """账单集合状态（不可变，每次转换返回新对象）"""
    bills: Tuple[Bill, ...] = ()
    deleted_ids: FrozenSet[str] = frozenset()
    mutating: Mapping[str, MutationState] = field(default_factory=lambda: MappingProxyType({}))
    loading: bool = True
    last_fetched: Optional[float] = None


# ---- 动作 ----

@dataclass(frozen=True)
class SetBills:
    bills: Tuple[Bill, ...]
    fetched_at: float


@dataclass(frozen=True)
class SetLoading:
    loading: bool


@dataclass(frozen=True)
class StartMutation:
    bill_id: str
    state: MutationState


@dataclass(frozen=True)
class EndMutation:
    bill_id: str


@dataclass(frozen=True)
class AddOptimisticBill:
    bill: Bill


@dataclass(frozen=True)
class RemoveOptimisticBill:
    bill_id: str


@dataclass(frozen=True)
class ReplaceBill:
    """用完整记录替换（乐观更新、服务器结果或回滚快照）"""
    bill: Bill


@dataclass(frozen=True)
class AddDeletedBill:
    bill_id: str


@dataclass(frozen=True)
class RemoveDeletedBill:
    bill_id: str


@dataclass(frozen=True)
class MarkPaidOptimistic:
    paid_bill: Bill
    next_bill: Optional[Bill] = None


@dataclass(frozen=True)
class UndoPaidOptimistic:
    original_bill: Bill
    remove_next_bill_id: Optional[str] = None


def _sorted(bills) -> Tuple[Bill, ...]:
    # 稳定排序，同一到期日保持原有顺序
    return tuple(sorted(bills, key=lambda b: b.due_date))


def _replace(bills: Tuple[Bill, ...], bill: Bill) -> Tuple[Bill, ...]:
    return tuple(bill if b.id == bill.id else b for b in bills)


def _with_mutating(state: BillsState, mutating: Dict[str, MutationState]) -> BillsState:
    return replace(state, mutating=MappingProxyType(mutating))


def reduce(state: BillsState, action) -> BillsState:
    """纯状态转换函数：旧状态 + 动作 -> 新状态"""
    if isinstance(action, SetBills):
        # 变更中的账单（含新增占位）保留本地记录，直到其自身的操作结束
        in_flight = frozenset(
            bill_id for bill_id, mutation in state.mutating.items()
            if mutation != "deleting"
        )
        local = tuple(b for b in state.bills if b.id in in_flight)
        server = tuple(b for b in action.bills if b.id not in in_flight)
        still_deleting = frozenset(
            bill_id for bill_id in state.deleted_ids
            if state.mutating.get(bill_id) == "deleting"
        )
        return replace(
            state,
            bills=_sorted(server + local),
            deleted_ids=still_deleting,
            loading=False,
            last_fetched=action.fetched_at,
        )

    if isinstance(action, SetLoading):
        return replace(state, loading=action.loading)

    if isinstance(action, StartMutation):
        mutating = dict(state.mutating)
        mutating[action.bill_id] = action.state
        return _with_mutating(state, mutating)

    if isinstance(action, EndMutation):
        mutating = dict(state.mutating)
        mutating.pop(action.bill_id, None)
        return _with_mutating(state, mutating)

    if isinstance(action, AddOptimisticBill):
        return replace(state, bills=_sorted((action.bill,) + state.bills))

    if isinstance(action, RemoveOptimisticBill):
        return replace(state, bills=tuple(b for b in state.bills if b.id != action.bill_id))

    if isinstance(action, ReplaceBill):
        return replace(state, bills=_sorted(_replace(state.bills, action.bill)))

    if isinstance(action, AddDeletedBill):
        return replace(state, deleted_ids=state.deleted_ids | {action.bill_id})

    if isinstance(action, RemoveDeletedBill):
        return replace(state, deleted_ids=state.deleted_ids - {action.bill_id})

    if isinstance(action, MarkPaidOptimistic):
        bills = _replace(state.bills, action.paid_bill)
        if action.next_bill is not None:
            bills = tuple(b for b in bills if b.id != action.next_bill.id) + (action.next_bill,)
        return replace(state, bills=_sorted(bills))

    if isinstance(action, UndoPaidOptimistic):
        # 恢复原账单与移除下一期账单在同一次转换中完成
        bills = _replace(state.bills, action.original_bill)
        if action.remove_next_bill_id:
            bills = tuple(b for b in bills if b.id != action.remove_next_bill_id)
        return replace(state, bills=_sorted(bills))

    raise TypeError(f"未知的动作类型: {type(action).__name__}")


Listener = Callable[[BillsState], None]


class BillStore:
    """账单存储：UI读取的唯一数据源，只能通过dispatch修改"""

    def __init__(self, stale_after: float = 300.0, clock: Callable[[], float] = time.time):
        self._state = BillsState()
        self._listeners: List[Listener] = []
        self.stale_after = stale_after
        self.clock = clock

    @property
    def state(self) -> BillsState:
        return self._state

    def dispatch(self, action) -> BillsState:
        self._state = reduce(self._state, action)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"状态监听器执行失败: {e}")
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """注册状态监听器，返回取消订阅函数"""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ---- 只读视图 ----

    @property
    def bills(self) -> List[Bill]:
        """可见账单（排除删除中的账单）"""
        return [b for b in self._state.bills if b.id not in self._state.deleted_ids]

    @property
    def unpaid_bills(self) -> List[Bill]:
        return [b for b in self.bills if not b.is_paid]

    @property
    def paid_bills(self) -> List[Bill]:
        return [b for b in self.bills if b.is_paid]

    @property
    def loading(self) -> bool:
        return self._state.loading

    def get(self, bill_id: str) -> Optional[Bill]:
        for bill in self.bills:
            if bill.id == bill_id:
                return bill
        return None

    def mutation_state(self, bill_id: str) -> Optional[MutationState]:
        return self._state.mutating.get(bill_id)

    def is_locked(self, bill_id: str) -> bool:
        return bill_id in self._state.mutating

    @property
    def is_any_mutating(self) -> bool:
        return len(self._state.mutating) > 0

    def is_stale(self) -> bool:
        last = self._state.last_fetched
        return last is None or self.clock() - last > self.stale_after
