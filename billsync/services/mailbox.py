# billsync/services/mailbox.py
import importlib
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from fastapi import Request

from billsync.models.schemas import SourceMessage

logger = logging.getLogger(__name__)


class MessageSource(ABC):
    """邮箱来源接口，具体的邮箱接入（OAuth等）由部署方实现"""

    @abstractmethod
    async def fetch_messages(self, max_results: int, days_back: int) -> List[SourceMessage]:
        """拉取最近的邮件，授权失效时抛出 MailboxAuthExpiredError"""


def load_message_source(path: Optional[str]) -> Optional[MessageSource]:
    """按 "模块:类名" 加载并实例化邮箱来源，未配置时返回None"""
    if not path:
        logger.info("未配置邮箱来源，邮件扫描不可用")
        return None

    module_name, sep, class_name = path.partition(":")
    if not sep or not module_name or not class_name:
        raise ValueError(f"邮箱来源格式应为 模块:类名，实际为: {path}")

    source_cls = getattr(importlib.import_module(module_name), class_name)
    source = source_cls()
    if not isinstance(source, MessageSource):
        raise TypeError(f"{path} 不是 MessageSource 的实现")

    logger.info(f"邮箱来源已连接: {path}")
    return source


def get_message_source(request: Request) -> Optional[MessageSource]:
    """获取邮箱来源的依赖注入函数，来源在应用启动时挂到 app.state"""
    return getattr(request.app.state, "message_source", None)
