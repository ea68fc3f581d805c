# billsync/services/undo.py
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from billsync.config import settings
from billsync.services.notifications import ToastCenter

logger = logging.getLogger(__name__)

UndoAction = Callable[[], Awaitable[Any]]


@dataclass(frozen=True)
class UndoAffordance:
    token: str
    bill_id: str
    label: str
    action: UndoAction
    expires_at: float
    toast_id: str


class UndoCoordinator:
    """撤销入口管理：每个账单同一时间最多一个有效的撤销"""

    def __init__(
            self,
            toasts: ToastCenter,
            window: Optional[float] = None,
            clock: Optional[Callable[[], float]] = None,
    ):
        self.toasts = toasts
        self.window = window or settings.undo_window_seconds
        self.clock = clock or toasts.clock
        self._pending: Dict[str, UndoAffordance] = {}

    def offer(
            self,
            bill_id: str,
            label: str,
            action: UndoAction,
            description: Optional[str] = None,
            amount: Optional[float] = None,
    ) -> str:
        """发布撤销入口，替换同一账单上已有的撤销"""
        self.dismiss_for(bill_id)
        toast_id = self.toasts.add_toast(
            label,
            type="undo",
            description=description,
            amount=amount,
            duration=self.window,
        )
        token = uuid.uuid4().hex
        self._pending[token] = UndoAffordance(
            token=token,
            bill_id=bill_id,
            label=label,
            action=action,
            expires_at=self.clock() + self.window,
            toast_id=toast_id,
        )
        return token

    def _expired(self, affordance: UndoAffordance) -> bool:
        return self.clock() >= affordance.expires_at

    def _discard(self, token: str) -> Optional[UndoAffordance]:
        affordance = self._pending.pop(token, None)
        if affordance:
            self.toasts.remove_toast(affordance.toast_id)
        return affordance

    def dismiss(self, token: str):
        self._discard(token)

    def dismiss_for(self, bill_id: str):
        for token in [a.token for a in self._pending.values() if a.bill_id == bill_id]:
            self._discard(token)

    def pending_for(self, bill_id: str) -> Optional[UndoAffordance]:
        for affordance in self.active:
            if affordance.bill_id == bill_id:
                return affordance
        return None

    @property
    def active(self) -> List[UndoAffordance]:
        for token in [a.token for a in self._pending.values() if self._expired(a)]:
            self._discard(token)
        return list(self._pending.values())

    def is_active(self, token: str) -> bool:
        affordance = self._pending.get(token)
        return affordance is not None and not self._expired(affordance)

    async def invoke(self, token: str) -> bool:
        """执行撤销；过期或已被替换的撤销不会执行"""
        affordance = self._discard(token)
        if affordance is None:
            logger.debug(f"撤销入口不存在或已失效: {token}")
            return False
        if self._expired(affordance):
            logger.debug(f"撤销入口已过期: {affordance.bill_id}")
            return False

        result = await affordance.action()
        return bool(result)
