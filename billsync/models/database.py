# billsync/models/database.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, Date, DateTime, Float, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BillRecord(Base):
    """账单数据模型"""
    __tablename__ = "bills"

    id = Column(String(50), primary_key=True, default=_uuid)
    user_id = Column(String(50), index=True, nullable=False)
    name = Column(String(200), nullable=False)
    amount = Column(Float)  # 可变账单可为空
    due_date = Column(Date, nullable=False)
    category = Column(String(50))
    is_paid = Column(Boolean, default=False, nullable=False)
    paid_at = Column(DateTime(timezone=True))
    paid_method = Column(String(20))
    last_paid_amount = Column(Float)
    prior_last_paid_amount = Column(Float)  # 撤销支付时恢复
    is_recurring = Column(Boolean, default=False, nullable=False)
    recurrence_interval = Column(String(20))
    parent_bill_id = Column(String(50), index=True)  # 生成该期账单的上一期
    generated_next = Column(Boolean, default=False, nullable=False)  # 防止重复生成下一期
    source = Column(String(20), default="manual", nullable=False)
    source_message_id = Column(String(200))
    payment_url = Column(String(500))
    is_autopay = Column(Boolean, default=False, nullable=False)
    is_variable = Column(Boolean, default=False, nullable=False)
    typical_min = Column(Float)
    typical_max = Column(Float)
    previous_amount = Column(Float)  # 用于涨价检测
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class ExtractionRecord(Base):
    """邮件提取候选数据模型"""
    __tablename__ = "bill_extractions"

    id = Column(String(50), primary_key=True, default=_uuid)
    user_id = Column(String(50), index=True, nullable=False)
    source_message_id = Column(String(200), index=True, nullable=False)
    source_subject = Column(String(500))
    source_sender = Column(String(300))
    status = Column(String(20), default="pending", nullable=False)

    extracted_name = Column(String(200))
    extracted_amount = Column(Float)
    extracted_due_date = Column(Date)
    extracted_category = Column(String(50))

    confidence_overall = Column(Float, default=0.0, nullable=False)
    confidence_amount = Column(Float)
    confidence_due_date = Column(Float)
    evidence = Column(JSON, default=list)

    is_duplicate = Column(Boolean, default=False, nullable=False)
    duplicate_of_bill_id = Column(String(50))
    duplicate_reason = Column(Text)
    payment_url = Column(String(500))

    # 用户修正
    user_corrected_name = Column(String(200))
    user_corrected_amount = Column(Float)
    user_corrected_due_date = Column(Date)
    user_corrected_category = Column(String(50))
    reviewed_at = Column(DateTime(timezone=True))
    created_bill_id = Column(String(50))

    ai_model_used = Column(String(100))
    ai_reasoning = Column(Text)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
