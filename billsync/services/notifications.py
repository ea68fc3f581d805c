# billsync/services/notifications.py
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional

from billsync.config import settings
from billsync.models.schemas import Toast, ToastType

logger = logging.getLogger(__name__)


class ToastCenter:
    """非阻塞的用户提示队列，每条提示到期后自动消失"""

    def __init__(
            self,
            default_duration: Optional[float] = None,
            clock: Callable[[], float] = time.monotonic,
    ):
        self.default_duration = default_duration or settings.toast_duration_seconds
        self.clock = clock
        self._toasts: Dict[str, Toast] = {}

    def add_toast(
            self,
            message: str,
            type: ToastType = "info",
            description: Optional[str] = None,
            amount: Optional[float] = None,
            duration: Optional[float] = None,
    ) -> str:
        toast_id = uuid.uuid4().hex[:8]
        self._toasts[toast_id] = Toast(
            id=toast_id,
            message=message,
            description=description,
            amount=amount,
            type=type,
            expires_at=self.clock() + (duration or self.default_duration),
        )
        if type == "error":
            logger.warning(f"错误提示: {message} {description or ''}".strip())
        return toast_id

    def error(self, message: str, description: Optional[str] = None) -> str:
        return self.add_toast(message, type="error", description=description)

    def success(self, message: str, description: Optional[str] = None) -> str:
        return self.add_toast(message, type="success", description=description)

    def remove_toast(self, toast_id: str):
        self._toasts.pop(toast_id, None)

    @property
    def toasts(self) -> List[Toast]:
        """当前可见的提示（顺带清理已过期的）"""
        now = self.clock()
        for toast_id in [t.id for t in self._toasts.values() if t.expires_at <= now]:
            del self._toasts[toast_id]
        return list(self._toasts.values())

    def clear(self):
        self._toasts.clear()
