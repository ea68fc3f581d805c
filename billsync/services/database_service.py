# billsync/services/database_service.py
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncGenerator, List, Optional

from sqlalchemy import delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from billsync.config import settings
from billsync.models.database import Base, BillRecord, ExtractionRecord
from billsync.models.schemas import (
    Bill,
    BillCreate,
    BillUpdate,
    CandidateExtraction,
    EvidenceSnippet,
    PayResult,
    ReviewAction,
)
from billsync.services.due_dates import next_due_date

logger = logging.getLogger(__name__)


def to_candidate(record: ExtractionRecord) -> CandidateExtraction:
    return CandidateExtraction(
        id=record.id,
        source_message_id=record.source_message_id,
        name=record.extracted_name,
        amount=record.extracted_amount,
        due_date=record.extracted_due_date,
        category=record.extracted_category,
        confidence=record.confidence_overall,
        confidence_amount=record.confidence_amount,
        confidence_due_date=record.confidence_due_date,
        evidence=[EvidenceSnippet.model_validate(e) for e in (record.evidence or [])],
        is_duplicate=record.is_duplicate,
        duplicate_reason=record.duplicate_reason,
        duplicate_of_bill_id=record.duplicate_of_bill_id,
        payment_url=record.payment_url,
        source_subject=record.source_subject,
        source_sender=record.source_sender,
        status=record.status,
    )


class DatabaseService:
    """异步数据库服务类（账单持久化后端）"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url
        self.engine = None
        self.async_session = None
        self._initialized = False

    async def initialize(self):
        """初始化数据库连接池并建表"""
        if self._initialized:
            return

        try:
            url = self.database_url or settings.sqlalchemy_url
            engine_options = {"echo": settings.debug, "future": True}
            if not url.startswith("sqlite"):
                engine_options.update(
                    pool_size=10,  # 连接池大小
                    max_overflow=20,  # 最大溢出连接数
                    pool_pre_ping=True,  # 连接前ping检测
                    pool_recycle=3600,  # 连接回收时间(秒)
                )
            self.engine = create_async_engine(url, **engine_options)

            self.async_session = sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=True
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            self._initialized = True
            logger.info("数据库服务初始化成功")

        except Exception as e:
            logger.error(f"数据库服务初始化失败: {e}")
            raise

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """获取数据库会话的上下文管理器"""
        if not self._initialized:
            await self.initialize()

        session = self.async_session()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"数据库操作失败，已回滚: {e}")
            raise
        finally:
            await session.close()

    async def check_connection(self) -> bool:
        """检查数据库连接是否正常"""
        try:
            async with self.get_session() as session:
                result = await session.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"数据库连接检查失败: {e}")
            return False

    async def close(self):
        """关闭数据库连接池"""
        if self.engine:
            await self.engine.dispose()
            self._initialized = False
            logger.info("数据库连接池已关闭")

    # ---- 账单 ----

    @staticmethod
    async def _get_owned(session: AsyncSession, user_id: str, bill_id: str) -> Optional[BillRecord]:
        record = await session.get(BillRecord, bill_id)
        if record is None or record.user_id != user_id:
            return None
        return record

    async def list_bills(self, user_id: str, show_paid: bool = True) -> List[Bill]:
        """查询用户账单，按到期日排序"""
        async with self.get_session() as session:
            query = select(BillRecord).where(BillRecord.user_id == user_id)
            if not show_paid:
                query = query.where(BillRecord.is_paid.is_(False))
            result = await session.execute(query.order_by(BillRecord.due_date, BillRecord.created_at))
            return [Bill.model_validate(row) for row in result.scalars().all()]

    async def get_bill(self, user_id: str, bill_id: str) -> Optional[Bill]:
        async with self.get_session() as session:
            record = await self._get_owned(session, user_id, bill_id)
            return Bill.model_validate(record) if record else None

    async def create_bill(self, user_id: str, fields: BillCreate) -> Bill:
        """创建账单记录"""
        try:
            async with self.get_session() as session:
                record = BillRecord(user_id=user_id, **fields.model_dump())
                session.add(record)
                await session.flush()  # 刷新获取ID但不提交
                bill = Bill.model_validate(record)

            logger.info(f"账单记录创建成功，记录ID: {bill.id}")
            return bill

        except Exception as e:
            logger.error(f"创建账单记录失败: {e}")
            raise Exception(f"数据库操作失败: {e}")

    async def update_bill(self, user_id: str, bill_id: str, changes: BillUpdate) -> Optional[Bill]:
        """更新账单字段"""
        async with self.get_session() as session:
            record = await self._get_owned(session, user_id, bill_id)
            if record is None:
                logger.warning(f"未找到要更新的账单记录: {bill_id}")
                return None

            for key, value in changes.changes().items():
                setattr(record, key, value)
            if not record.is_recurring:
                record.recurrence_interval = None
            elif record.recurrence_interval is None:
                raise ValueError("周期账单必须指定周期")

            await session.flush()
            await session.refresh(record)
            logger.info(f"账单更新成功，记录ID: {bill_id}")
            return Bill.model_validate(record)

    async def delete_bill(self, user_id: str, bill_id: str) -> bool:
        """删除账单记录"""
        async with self.get_session() as session:
            record = await self._get_owned(session, user_id, bill_id)
            if record is None:
                logger.warning(f"未找到要删除的账单记录: {bill_id}")
                return False

            await session.delete(record)
            logger.info(f"账单记录删除成功，记录ID: {bill_id}")
            return True

    async def pay_bill(self, user_id: str, bill_id: str, amount: Optional[float] = None) -> Optional[PayResult]:
        """标记账单已支付，周期账单同时生成下一期"""
        async with self.get_session() as session:
            record = await self._get_owned(session, user_id, bill_id)
            if record is None:
                return None

            if not record.is_paid:
                record.prior_last_paid_amount = record.last_paid_amount
                record.is_paid = True
                record.paid_at = datetime.now(timezone.utc)
                record.paid_method = "autopay" if record.is_autopay else "manual"
                record.last_paid_amount = amount if amount is not None else record.amount

            next_record = None
            if record.is_recurring and record.recurrence_interval and not record.generated_next:
                next_record = BillRecord(
                    user_id=user_id,
                    name=record.name,
                    amount=record.amount,
                    due_date=next_due_date(record.due_date, record.recurrence_interval),
                    category=record.category,
                    is_recurring=True,
                    recurrence_interval=record.recurrence_interval,
                    parent_bill_id=record.id,
                    source=record.source,
                    payment_url=record.payment_url,
                    is_autopay=record.is_autopay,
                    is_variable=record.is_variable,
                    typical_min=record.typical_min,
                    typical_max=record.typical_max,
                    previous_amount=record.amount,
                )
                session.add(next_record)
                record.generated_next = True

            await session.flush()
            await session.refresh(record)
            if next_record is not None:
                await session.refresh(next_record)
            result = PayResult(
                paid_bill=Bill.model_validate(record),
                next_bill=Bill.model_validate(next_record) if next_record else None,
            )

        logger.info(f"账单已支付，记录ID: {bill_id}, 下一期: {result.next_bill.id if result.next_bill else None}")
        return result

    async def unpay_bill(self, user_id: str, bill_id: str) -> Optional[Bill]:
        """撤销支付，删除尚未支付的下一期账单"""
        async with self.get_session() as session:
            record = await self._get_owned(session, user_id, bill_id)
            if record is None:
                return None

            result = await session.execute(
                select(BillRecord).where(
                    BillRecord.user_id == user_id,
                    BillRecord.parent_bill_id == bill_id,
                )
            )
            successors = result.scalars().all()
            unpaid_ids = [s.id for s in successors if not s.is_paid]
            if unpaid_ids:
                await session.execute(delete(BillRecord).where(BillRecord.id.in_(unpaid_ids)))

            record.is_paid = False
            record.paid_at = None
            record.paid_method = None
            record.last_paid_amount = record.prior_last_paid_amount
            record.prior_last_paid_amount = None
            record.generated_next = len(successors) > len(unpaid_ids)

            await session.flush()
            await session.refresh(record)
            logger.info(f"账单支付已撤销，记录ID: {bill_id}, 删除下一期: {unpaid_ids}")
            return Bill.model_validate(record)

    # ---- 提取候选 ----

    async def is_message_processed(self, user_id: str, message_id: str) -> bool:
        async with self.get_session() as session:
            result = await session.execute(
                select(ExtractionRecord.id).where(
                    ExtractionRecord.user_id == user_id,
                    ExtractionRecord.source_message_id == message_id,
                ).limit(1)
            )
            return result.scalar() is not None

    async def save_extraction(self, user_id: str, **fields) -> CandidateExtraction:
        """保存提取候选"""
        async with self.get_session() as session:
            record = ExtractionRecord(user_id=user_id, **fields)
            session.add(record)
            await session.flush()
            return to_candidate(record)

    async def get_review_queue(self, user_id: str, limit: int = 50) -> List[CandidateExtraction]:
        """获取待审核候选，最新的在前"""
        async with self.get_session() as session:
            result = await session.execute(
                select(ExtractionRecord)
                .where(
                    ExtractionRecord.user_id == user_id,
                    # 高置信度的pending候选由客户端自动创建，不进入审核队列
                    ExtractionRecord.status == "needs_review",
                )
                .order_by(ExtractionRecord.created_at.desc())
                .limit(limit)
            )
            return [to_candidate(row) for row in result.scalars().all()]

    async def review_extraction(self, user_id: str, action: ReviewAction) -> bool:
        """记录确认/拒绝/自动创建结果"""
        async with self.get_session() as session:
            record = await session.get(ExtractionRecord, action.extraction_id)
            if record is None or record.user_id != user_id:
                logger.warning(f"未找到提取候选: {action.extraction_id}")
                return False

            if action.action == "reject":
                record.status = "rejected"
            else:
                record.status = "confirmed" if action.action == "confirm" else "auto_accepted"
                record.created_bill_id = action.created_bill_id

            corrections = action.corrections
            if corrections is not None:
                record.user_corrected_name = corrections.name
                record.user_corrected_amount = corrections.amount
                record.user_corrected_due_date = corrections.due_date
                record.user_corrected_category = corrections.category

            record.reviewed_at = datetime.now(timezone.utc)
            logger.info(f"提取候选已处理: {action.extraction_id}, 状态: {record.status}")
            return True


# 创建全局数据库服务实例
database_service = DatabaseService()


# 依赖注入函数
async def get_database_service() -> DatabaseService:
    """获取数据库服务的依赖注入函数"""
    await database_service.initialize()
    return database_service
