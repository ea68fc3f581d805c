from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

RecurrenceInterval = Literal["weekly", "biweekly", "monthly", "yearly"]
BillSource = Literal["manual", "imported"]
PaidMethod = Literal["manual", "autopay"]
MutationState = Literal[
    "marking_paid",
    "undoing_payment",
    "deleting",
    "adding",
    "editing",
    "snoozing",
]
RiskTag = Literal["overdue", "urgent", "forgot_last_month"]
Urgency = Literal["overdue", "urgent", "soon", "safe", "distant"]
ExtractionStatus = Literal["pending", "needs_review", "auto_accepted", "confirmed", "rejected"]
ToastType = Literal["success", "error", "info", "undo"]

PENDING_ID_PREFIX = "pending-"


def _non_negative(v: Optional[float]) -> Optional[float]:
    if v is not None and v < 0:
        raise ValueError("金额不能为负数")
    return v


class BillCreate(BaseModel):
    """账单创建模型"""
    name: str
    due_date: date
    amount: Optional[float] = None
    category: Optional[str] = None
    is_recurring: bool = False
    recurrence_interval: Optional[RecurrenceInterval] = None
    is_autopay: bool = False
    payment_url: Optional[str] = None
    is_variable: bool = False
    typical_min: Optional[float] = None
    typical_max: Optional[float] = None
    source: BillSource = "manual"
    source_message_id: Optional[str] = None

    @field_validator("amount", "typical_min", "typical_max")
    def amount_must_be_non_negative(cls, v):
        return _non_negative(v)

    @field_validator("name")
    def name_must_not_be_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("账单名称不能为空")
        return v.strip()

    @model_validator(mode="after")
    def recurring_needs_interval(self):
        if self.is_recurring and self.recurrence_interval is None:
            raise ValueError("周期账单必须指定周期")
        return self


class BillUpdate(BaseModel):
    """账单更新模型（只提交变更字段）"""
    name: Optional[str] = None
    due_date: Optional[date] = None
    amount: Optional[float] = None
    category: Optional[str] = None
    is_recurring: Optional[bool] = None
    recurrence_interval: Optional[RecurrenceInterval] = None
    is_autopay: Optional[bool] = None
    payment_url: Optional[str] = None
    is_variable: Optional[bool] = None
    typical_min: Optional[float] = None
    typical_max: Optional[float] = None

    @field_validator("amount", "typical_min", "typical_max")
    def amount_must_be_non_negative(cls, v):
        return _non_negative(v)

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class Bill(BaseModel):
    """账单（不可变，乐观更新通过model_copy生成新对象）"""
    id: str
    user_id: Optional[str] = None
    name: str
    amount: Optional[float] = None
    due_date: date
    category: Optional[str] = None
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    paid_method: Optional[PaidMethod] = None
    last_paid_amount: Optional[float] = None
    is_recurring: bool = False
    recurrence_interval: Optional[RecurrenceInterval] = None
    parent_bill_id: Optional[str] = None
    source: BillSource = "manual"
    source_message_id: Optional[str] = None
    payment_url: Optional[str] = None
    is_autopay: bool = False
    is_variable: bool = False
    typical_min: Optional[float] = None
    typical_max: Optional[float] = None
    previous_amount: Optional[float] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        frozen = True
        from_attributes = True

    @field_validator("amount", "last_paid_amount", "typical_min", "typical_max", "previous_amount")
    def amount_must_be_non_negative(cls, v):
        return _non_negative(v)

    @model_validator(mode="after")
    def check_invariants(self):
        if self.is_paid and self.paid_at is None:
            raise ValueError("已支付账单必须有支付时间")
        if self.is_recurring and self.recurrence_interval is None:
            raise ValueError("周期账单必须指定周期")
        return self

    @property
    def is_pending(self) -> bool:
        return self.id.startswith(PENDING_ID_PREFIX)


class PayRequest(BaseModel):
    amount: Optional[float] = None

    @field_validator("amount")
    def amount_must_be_non_negative(cls, v):
        return _non_negative(v)


class PayResult(BaseModel):
    """支付接口响应：循环账单会附带下一期账单"""
    paid_bill: Bill
    next_bill: Optional[Bill] = None


class MarkPaidResult(BaseModel):
    success: bool
    paid_bill: Optional[Bill] = None
    next_bill: Optional[Bill] = None


class EvidenceSnippet(BaseModel):
    field: Literal["name", "amount", "due_date", "category"]
    snippet: str
    source: str = "ai_extraction"


class CandidateExtraction(BaseModel):
    """AI提取的候选账单（未确认）"""
    id: str
    source_message_id: str
    name: Optional[str] = None
    amount: Optional[float] = None
    due_date: Optional[date] = None
    category: Optional[str] = None
    confidence: float = Field(ge=0, le=1)
    confidence_amount: Optional[float] = Field(default=None, ge=0, le=1)
    confidence_due_date: Optional[float] = Field(default=None, ge=0, le=1)
    evidence: List[EvidenceSnippet] = Field(default_factory=list)
    is_duplicate: bool = False
    duplicate_reason: Optional[str] = None
    duplicate_of_bill_id: Optional[str] = None
    payment_url: Optional[str] = None
    source_subject: Optional[str] = None
    source_sender: Optional[str] = None
    status: ExtractionStatus = "pending"

    class Config:
        frozen = True
        from_attributes = True


class ExtractionCorrections(BaseModel):
    """用户修正字段，优先于AI猜测"""
    name: Optional[str] = None
    amount: Optional[float] = None
    due_date: Optional[date] = None
    category: Optional[str] = None

    @field_validator("amount")
    def amount_must_be_non_negative(cls, v):
        return _non_negative(v)


class ReviewAction(BaseModel):
    extraction_id: str
    action: Literal["confirm", "reject", "auto_accept"]
    corrections: Optional[ExtractionCorrections] = None
    created_bill_id: Optional[str] = None


class ScanRequest(BaseModel):
    max_results: int = Field(default=100, ge=1)
    days_back: int = Field(default=60, ge=1)


class ScanResponse(BaseModel):
    candidates: List[CandidateExtraction]
    total_messages: int = 0
    skipped: int = 0
    scanned_at: datetime


class ScanSummary(BaseModel):
    """客户端扫描结果汇总"""
    success: bool
    total: int = 0
    auto_accepted: int = 0
    needs_review: int = 0
    failed: int = 0
    error_code: Optional[str] = None


class SourceMessage(BaseModel):
    """邮箱中的一封原始邮件"""
    id: str
    subject: str
    sender: str
    received_at: datetime
    body: str


class RiskBill(BaseModel):
    bill: Bill
    risk_type: RiskTag
    message: str
    days_left: int


class RecurringSuggestion(BaseModel):
    bill: Bill
    suggested_interval: RecurrenceInterval
    confidence: float
    reason: str


class Toast(BaseModel):
    id: str
    message: str
    description: Optional[str] = None
    amount: Optional[float] = None
    type: ToastType = "info"
    expires_at: float
