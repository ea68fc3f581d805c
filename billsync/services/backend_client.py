# billsync/services/backend_client.py
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from billsync.config import settings
from billsync.models.schemas import (
    Bill,
    BillCreate,
    BillUpdate,
    CandidateExtraction,
    ExtractionCorrections,
    PayRequest,
    PayResult,
    ReviewAction,
    ScanRequest,
    ScanResponse,
)

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """账单后端调用失败"""


class BillNotFoundError(BackendError):
    """后端不存在该账单"""


class ExtractionServiceError(Exception):
    """提取服务调用失败"""
    code = "error"


class MailboxNotConnectedError(ExtractionServiceError):
    code = "not-connected"


class MailboxAuthExpiredError(ExtractionServiceError):
    code = "auth-expired"


class BillBackend(ABC):
    """账单持久化后端接口"""

    @abstractmethod
    async def list_bills(self, show_paid: bool = True) -> List[Bill]:
        ...

    @abstractmethod
    async def create_bill(self, fields: BillCreate) -> Bill:
        ...

    @abstractmethod
    async def update_bill(self, bill_id: str, changes: BillUpdate) -> Bill:
        ...

    @abstractmethod
    async def delete_bill(self, bill_id: str) -> None:
        ...

    @abstractmethod
    async def pay_bill(self, bill_id: str, amount: Optional[float] = None) -> PayResult:
        ...

    @abstractmethod
    async def unpay_bill(self, bill_id: str) -> None:
        ...


class ExtractionService(ABC):
    """邮件账单提取服务接口"""

    @abstractmethod
    async def scan(self, max_results: int, days_back: int) -> List[CandidateExtraction]:
        ...

    @abstractmethod
    async def fetch_review_queue(self, limit: int = 50) -> List[CandidateExtraction]:
        ...

    @abstractmethod
    async def confirm(
            self,
            extraction_id: str,
            corrections: Optional[ExtractionCorrections] = None,
            created_bill_id: Optional[str] = None,
    ) -> None:
        ...

    @abstractmethod
    async def reject(self, extraction_id: str) -> None:
        ...

    @abstractmethod
    async def mark_auto_accepted(self, extraction_id: str, created_bill_id: Optional[str]) -> None:
        ...


def _new_client(base_url: Optional[str], timeout: Optional[float]) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=base_url or settings.backend_base_url,
        timeout=timeout or settings.request_timeout,
    )


class HttpBillBackend(BillBackend):
    """基于httpx的账单后端客户端"""

    def __init__(
            self,
            base_url: Optional[str] = None,
            timeout: Optional[float] = None,
            client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client or _new_client(base_url, timeout)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"账单后端请求失败: {method} {url}: {e}")
            raise BackendError(f"账单后端请求失败: {e}") from e

        if response.status_code == 404:
            raise BillNotFoundError(f"账单不存在: {url}")
        if response.is_error:
            logger.error(f"账单后端返回错误: {method} {url}: {response.status_code}")
            raise BackendError(f"账单后端返回错误: {response.status_code}")
        return response

    async def list_bills(self, show_paid: bool = True) -> List[Bill]:
        response = await self._request("GET", "/bills", params={"show_paid": str(show_paid).lower()})
        return [Bill.model_validate(item) for item in response.json()]

    async def create_bill(self, fields: BillCreate) -> Bill:
        response = await self._request("POST", "/bills", json=fields.model_dump(mode="json"))
        return Bill.model_validate(response.json())

    async def update_bill(self, bill_id: str, changes: BillUpdate) -> Bill:
        response = await self._request(
            "PUT",
            f"/bills/{bill_id}",
            json=changes.model_dump(mode="json", exclude_unset=True),
        )
        return Bill.model_validate(response.json())

    async def delete_bill(self, bill_id: str) -> None:
        await self._request("DELETE", f"/bills/{bill_id}")

    async def pay_bill(self, bill_id: str, amount: Optional[float] = None) -> PayResult:
        response = await self._request(
            "POST",
            f"/bills/{bill_id}/pay",
            json=PayRequest(amount=amount).model_dump(mode="json"),
        )
        return PayResult.model_validate(response.json())

    async def unpay_bill(self, bill_id: str) -> None:
        await self._request("DELETE", f"/bills/{bill_id}/pay")

    async def aclose(self):
        await self.client.aclose()


class HttpExtractionService(ExtractionService):
    """基于httpx的提取服务客户端"""

    def __init__(
            self,
            base_url: Optional[str] = None,
            timeout: Optional[float] = None,
            client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client or _new_client(base_url, timeout)

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"提取服务请求失败: {method} {url}: {e}")
            raise ExtractionServiceError(f"提取服务请求失败: {e}") from e

        if response.is_error:
            code = _error_code(response)
            if code == "MAILBOX_NOT_CONNECTED":
                raise MailboxNotConnectedError("邮箱未连接")
            if code == "AUTH_EXPIRED" or response.status_code == 401:
                raise MailboxAuthExpiredError("邮箱授权已过期")
            logger.error(f"提取服务返回错误: {method} {url}: {response.status_code}")
            raise ExtractionServiceError(f"提取服务返回错误: {response.status_code}")
        return response

    async def scan(self, max_results: int, days_back: int) -> List[CandidateExtraction]:
        response = await self._request(
            "POST",
            "/extraction/scan-inbox",
            json=ScanRequest(max_results=max_results, days_back=days_back).model_dump(),
        )
        return ScanResponse.model_validate(response.json()).candidates

    async def fetch_review_queue(self, limit: int = 50) -> List[CandidateExtraction]:
        response = await self._request("GET", "/extraction/review-queue", params={"limit": limit})
        return [CandidateExtraction.model_validate(item) for item in response.json()["items"]]

    async def _review(self, action: ReviewAction) -> None:
        await self._request(
            "PATCH",
            "/extraction/review-queue",
            json=action.model_dump(mode="json", exclude_none=True),
        )

    async def confirm(
            self,
            extraction_id: str,
            corrections: Optional[ExtractionCorrections] = None,
            created_bill_id: Optional[str] = None,
    ) -> None:
        await self._review(ReviewAction(
            extraction_id=extraction_id,
            action="confirm",
            corrections=corrections,
            created_bill_id=created_bill_id,
        ))

    async def reject(self, extraction_id: str) -> None:
        await self._review(ReviewAction(extraction_id=extraction_id, action="reject"))

    async def mark_auto_accepted(self, extraction_id: str, created_bill_id: Optional[str]) -> None:
        await self._review(ReviewAction(
            extraction_id=extraction_id,
            action="auto_accept",
            created_bill_id=created_bill_id,
        ))

    async def aclose(self):
        await self.client.aclose()


def _error_code(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict):
        return detail.get("code")
    return None
