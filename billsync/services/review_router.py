# billsync/services/review_router.py
import logging
from typing import Dict, Iterable, List, Literal, Optional, Set

from pydantic import ValidationError

from billsync.config import settings
from billsync.models.schemas import (
    Bill,
    BillCreate,
    CandidateExtraction,
    EvidenceSnippet,
    ExtractionCorrections,
    ScanSummary,
)
from billsync.services.backend_client import (
    ExtractionService,
    ExtractionServiceError,
    MailboxAuthExpiredError,
    MailboxNotConnectedError,
)

logger = logging.getLogger(__name__)

Route = Literal["auto_accept", "needs_review"]

RESOLVED_STATUSES = {"auto_accepted", "confirmed", "rejected"}


def determine_route(candidate: CandidateExtraction, threshold: Optional[float] = None) -> Route:
    """高于阈值且非疑似重复的候选直接创建，其余进入人工审核"""
    threshold = settings.auto_accept_threshold if threshold is None else threshold
    if candidate.is_duplicate:
        return "needs_review"
    if candidate.confidence > threshold:
        return "auto_accept"
    return "needs_review"


def apply_corrections(
        candidate: CandidateExtraction,
        corrections: Optional[ExtractionCorrections] = None,
) -> BillCreate:
    """合并用户修正与AI猜测（修正优先）"""
    fields = {
        "name": candidate.name,
        "amount": candidate.amount,
        "due_date": candidate.due_date,
        "category": candidate.category,
    }
    if corrections is not None:
        fields.update(corrections.model_dump(exclude_unset=True))
    return BillCreate(
        **fields,
        payment_url=candidate.payment_url,
        source="imported",
        source_message_id=candidate.source_message_id,
    )


class ReviewRouter:
    """提取结果分流：自动创建或进入审核队列"""

    def __init__(self, engine, service: ExtractionService, threshold: Optional[float] = None):
        self.engine = engine
        self.service = service
        self.threshold = threshold
        self._queue: Dict[str, CandidateExtraction] = {}
        self._resolved_messages: Set[str] = set()

    @property
    def toasts(self):
        return self.engine.toasts

    @property
    def review_queue(self) -> List[CandidateExtraction]:
        """待审核候选（疑似重复的也保留并展示原因）"""
        return list(self._queue.values())

    def _is_resolved(self, candidate: CandidateExtraction) -> bool:
        return candidate.status in RESOLVED_STATUSES or candidate.source_message_id in self._resolved_messages

    def _resolve(self, candidate: CandidateExtraction):
        self._queue.pop(candidate.id, None)
        self._resolved_messages.add(candidate.source_message_id)

    def _report_scan_error(self, error: ExtractionServiceError) -> ScanSummary:
        if isinstance(error, MailboxNotConnectedError):
            self.toasts.error("Email not connected", "Connect your email account to scan for bills.")
        elif isinstance(error, MailboxAuthExpiredError):
            self.toasts.error("Email access expired", "Reconnect your email account to keep scanning for bills.")
        else:
            self.toasts.error("Something went wrong", "Failed to scan your inbox. Try again.")
        logger.error(f"扫描邮箱失败({error.code}): {error}")
        return ScanSummary(success=False, error_code=error.code)

    async def scan(self, max_results: int = 100, days_back: int = 60) -> ScanSummary:
        """扫描邮箱并分流所有候选"""
        max_results = min(max_results, settings.scan_max_results)
        days_back = min(days_back, settings.scan_max_days_back)
        try:
            candidates = await self.service.scan(max_results, days_back)
        except ExtractionServiceError as e:
            return self._report_scan_error(e)
        return await self.ingest(candidates)

    async def ingest(self, candidates: Iterable[CandidateExtraction]) -> ScanSummary:
        summary = ScanSummary(success=True)
        for candidate in candidates:
            if self._is_resolved(candidate):
                continue
            summary.total += 1

            if determine_route(candidate, self.threshold) == "needs_review":
                self._queue[candidate.id] = candidate
                summary.needs_review += 1
                continue

            bill = await self._create(candidate, None)
            if bill is None:
                # 自动创建失败时转人工审核，避免丢失
                self._queue[candidate.id] = candidate
                summary.needs_review += 1
                summary.failed += 1
                continue

            self._resolve(candidate)
            summary.auto_accepted += 1
            try:
                await self.service.mark_auto_accepted(candidate.id, bill.id)
            except ExtractionServiceError as e:
                logger.error(f"回写自动创建状态失败: {candidate.id}: {e}")

        logger.info(
            f"候选分流完成: 共{summary.total}条, 自动创建{summary.auto_accepted}条, "
            f"待审核{summary.needs_review}条"
        )
        return summary

    async def refresh_queue(self, limit: int = 50) -> bool:
        """从提取服务拉取审核队列"""
        try:
            items = await self.service.fetch_review_queue(limit)
        except ExtractionServiceError as e:
            self._report_scan_error(e)
            return False
        self._queue = {c.id: c for c in items if not self._is_resolved(c)}
        return True

    def view_evidence(self, extraction_id: str) -> Optional[List[EvidenceSnippet]]:
        candidate = self._queue.get(extraction_id)
        return list(candidate.evidence) if candidate else None

    async def _create(
            self,
            candidate: CandidateExtraction,
            corrections: Optional[ExtractionCorrections],
    ) -> Optional[Bill]:
        try:
            fields = apply_corrections(candidate, corrections)
        except ValidationError as e:
            logger.warning(f"候选账单字段不完整: {candidate.id}: {e}")
            self.toasts.error("Missing details", "Add a name and due date before creating this bill.")
            return None
        return await self.engine.add_bill(fields)

    async def confirm(
            self,
            extraction_id: str,
            corrections: Optional[ExtractionCorrections] = None,
    ) -> Optional[Bill]:
        """确认候选并通过常规新增流程创建账单"""
        candidate = self._queue.get(extraction_id)
        if candidate is None:
            self.toasts.error("Extraction not found")
            return None

        bill = await self._create(candidate, corrections)
        if bill is None:
            return None

        self._resolve(candidate)
        try:
            await self.service.confirm(extraction_id, corrections, bill.id)
        except ExtractionServiceError as e:
            logger.error(f"回写确认状态失败: {extraction_id}: {e}")
        return bill

    async def reject(self, extraction_id: str) -> bool:
        """永久丢弃候选，后续扫描同一邮件不再出现"""
        candidate = self._queue.get(extraction_id)
        if candidate is None:
            self.toasts.error("Extraction not found")
            return False

        try:
            await self.service.reject(extraction_id)
        except ExtractionServiceError as e:
            logger.error(f"拒绝候选失败: {extraction_id}: {e}")
            self.toasts.error("Something went wrong", "Failed to dismiss this bill. Try again.")
            return False

        self._resolve(candidate)
        return True
