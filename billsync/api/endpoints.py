# billsync/api/endpoints.py
import logging
import time
from datetime import datetime, timezone
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse

from billsync.config import settings
from billsync.models.schemas import (
    Bill,
    BillCreate,
    BillUpdate,
    CandidateExtraction,
    PayRequest,
    PayResult,
    ReviewAction,
    ScanRequest,
    ScanResponse,
    SourceMessage,
)
from billsync.services.backend_client import MailboxAuthExpiredError
from billsync.services.database_service import DatabaseService, get_database_service
from billsync.services.duplicates import find_duplicate
from billsync.services.extraction_agent import ExtractionAgent
from billsync.services.mailbox import MessageSource, get_message_source

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache()
def get_extraction_agent() -> ExtractionAgent:
    """获取AI解析服务的依赖注入函数"""
    return ExtractionAgent()


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    return x_user_id or settings.default_user_id


def _not_found(bill_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"账单不存在: {bill_id}")


# ---- 账单 ----

@router.get("/bills", response_model=List[Bill])
async def list_bills(
        show_paid: bool = Query(default=True),
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """查询账单列表"""
    return await db.list_bills(user_id, show_paid=show_paid)


@router.post("/bills", response_model=Bill, status_code=201)
async def create_bill(
        fields: BillCreate,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """新增账单"""
    try:
        return await db.create_bill(user_id, fields)
    except Exception as e:
        logger.error(f"新增账单请求失败: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/bills/{bill_id}", response_model=Bill)
async def update_bill(
        bill_id: str,
        changes: BillUpdate,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """更新账单"""
    try:
        bill = await db.update_bill(user_id, bill_id, changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if bill is None:
        raise _not_found(bill_id)
    return bill


@router.delete("/bills/{bill_id}")
async def delete_bill(
        bill_id: str,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """删除账单"""
    if not await db.delete_bill(user_id, bill_id):
        raise _not_found(bill_id)
    return {"success": True}


@router.post("/bills/{bill_id}/pay", response_model=PayResult)
async def pay_bill(
        bill_id: str,
        payload: Optional[PayRequest] = None,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """标记已支付，周期账单返回生成的下一期"""
    result = await db.pay_bill(user_id, bill_id, payload.amount if payload else None)
    if result is None:
        raise _not_found(bill_id)
    return result


@router.delete("/bills/{bill_id}/pay", response_model=Bill)
async def unpay_bill(
        bill_id: str,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """撤销支付"""
    bill = await db.unpay_bill(user_id, bill_id)
    if bill is None:
        raise _not_found(bill_id)
    return bill


# ---- 邮件提取 ----

async def _extract_candidate(
        message: SourceMessage,
        user_id: str,
        existing: List[Bill],
        agent: ExtractionAgent,
        db: DatabaseService,
) -> Optional[CandidateExtraction]:
    """解析单封邮件并保存候选，非账单邮件记录为已拒绝"""
    extracted = await agent.analyze_message(message)
    common = dict(
        source_message_id=message.id,
        source_subject=message.subject,
        source_sender=message.sender,
        ai_model_used=settings.llm_model,
        ai_reasoning=extracted.reasoning,
    )

    if not extracted.is_bill:
        await db.save_extraction(user_id, status="rejected", **common)
        return None

    duplicate, reason = find_duplicate(extracted.name, extracted.amount, extracted.due_date, existing)
    needs_review = duplicate is not None or extracted.confidence <= settings.auto_accept_threshold

    return await db.save_extraction(
        user_id,
        status="needs_review" if needs_review else "pending",
        extracted_name=extracted.name,
        extracted_amount=extracted.amount,
        extracted_due_date=extracted.due_date,
        extracted_category=extracted.category,
        confidence_overall=extracted.confidence,
        confidence_amount=extracted.confidence_amount,
        confidence_due_date=extracted.confidence_due_date,
        evidence=[e.model_dump() for e in extracted.evidence],
        is_duplicate=duplicate is not None,
        duplicate_of_bill_id=duplicate.id if duplicate else None,
        duplicate_reason=reason,
        **common,
    )


@router.post("/extraction/scan-inbox", response_model=ScanResponse)
async def scan_inbox(
        request: ScanRequest,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
        source: Optional[MessageSource] = Depends(get_message_source),
        agent: ExtractionAgent = Depends(get_extraction_agent),
):
    """扫描邮箱，返回新提取的候选账单"""
    if source is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "MAILBOX_NOT_CONNECTED", "message": "邮箱未连接"},
        )

    max_results = min(request.max_results, settings.scan_max_results)
    days_back = min(request.days_back, settings.scan_max_days_back)
    try:
        messages = await source.fetch_messages(max_results, days_back)
    except MailboxAuthExpiredError as e:
        logger.warning(f"邮箱授权已过期: {user_id}: {e}")
        raise HTTPException(
            status_code=401,
            detail={"code": "AUTH_EXPIRED", "message": "邮箱授权已过期，请重新连接"},
        )

    existing = await db.list_bills(user_id, show_paid=False)
    candidates: List[CandidateExtraction] = []
    seen = set()
    skipped = 0

    for message in messages:
        if message.id in seen or await db.is_message_processed(user_id, message.id):
            skipped += 1
            continue
        seen.add(message.id)

        try:
            candidate = await _extract_candidate(message, user_id, existing, agent, db)
        except Exception as e:
            logger.error(f"邮件提取失败: {message.id}: {e}")
            skipped += 1
            continue

        if candidate is None:
            skipped += 1
        else:
            candidates.append(candidate)

    logger.info(f"邮箱扫描完成: 共{len(messages)}封, 新候选{len(candidates)}条, 跳过{skipped}封")
    return ScanResponse(
        candidates=candidates,
        total_messages=len(messages),
        skipped=skipped,
        scanned_at=datetime.now(timezone.utc),
    )


@router.get("/extraction/review-queue")
async def get_review_queue(
        limit: int = Query(default=50, ge=1, le=200),
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """获取待审核候选"""
    items = await db.get_review_queue(user_id, limit)
    return {"items": [item.model_dump(mode="json") for item in items]}


@router.patch("/extraction/review-queue")
async def review_extraction(
        action: ReviewAction,
        user_id: str = Depends(get_user_id),
        db: DatabaseService = Depends(get_database_service),
):
    """确认、拒绝或回写自动创建的候选"""
    if not await db.review_extraction(user_id, action):
        raise HTTPException(status_code=404, detail=f"提取候选不存在: {action.extraction_id}")
    return {"success": True}


@router.get("/health")
async def health_check(
        db: DatabaseService = Depends(get_database_service),
        source: Optional[MessageSource] = Depends(get_message_source),
):
    """健康检查端点"""
    services_status = {
        "database": await db.check_connection(),
        "mailbox": source is not None,
        "timestamp": time.time()
    }

    status_code = 200 if services_status["database"] else 503

    return JSONResponse(
        status_code=status_code,
        content=services_status
    )
