from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# STATUS VOCABULARY
# ============================================
class ApplicationStatus:
    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHECK_READY = "check_ready"

    ALL = (DRAFT, SUBMITTED, NEEDS_REVIEW, APPROVED, REJECTED, CHECK_READY)

    # Line item progress can still be edited in these states
    EDITABLE = (DRAFT, SUBMITTED, NEEDS_REVIEW, REJECTED)

    # Approved money is a permanent record in these states
    LOCKED = (APPROVED, CHECK_READY)


# ============================================
# CONTRACT / LINE ITEM CATALOG MODELS
# ============================================
class Contract(BaseModel):
    id: str
    project_id: str
    contractor_id: str
    contract_amount: float = 0.0


class LineItem(BaseModel):
    id: str
    contract_id: Optional[str] = None
    item_number: Optional[str] = None
    description: str = ""
    scheduled_value: float = 0.0  # Must be >= 0

    class Config:
        frozen = True


# ============================================
# PAYMENT APPLICATION MODELS
# ============================================
class LineItemProgress(BaseModel):
    line_item_id: str
    submitted_percent: float = 0.0  # As reported by the contractor
    pm_verified_percent: Optional[float] = None  # Defaults to submitted_percent
    previous_percent: float = 0.0  # Snapshot of the last approved baseline
    material_stored: float = 0.0
    pm_adjustment_reason: Optional[str] = None

    @model_validator(mode="after")
    def default_verified_to_submitted(self):
        if self.pm_verified_percent is None:
            self.pm_verified_percent = self.submitted_percent
        return self


class ChangeOrder(BaseModel):
    id: str
    description: str
    amount: float
    percentage: float = 0.0  # Informational: amount / contract value * 100


class StatusHistoryEntry(BaseModel):
    action: str
    from_state: Optional[str] = None
    to_state: str
    at: datetime = Field(default_factory=utcnow)
    by: Optional[str] = None
    notes: Optional[str] = None


class PaymentApplication(BaseModel):
    id: str
    contract_id: str
    project_id: str
    contractor_id: str
    status: str = ApplicationStatus.DRAFT
    line_items: List[LineItemProgress] = Field(default_factory=list)
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    approval_notes: Optional[str] = None
    rejection_reason: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    recall_reason: Optional[str] = None
    recalled_at: Optional[datetime] = None
    check_ready_at: Optional[datetime] = None
    change_orders: List[ChangeOrder] = Field(default_factory=list)
    include_change_order_page: bool = False
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    version: int = 1

    @field_validator("status")
    @classmethod
    def status_in_vocabulary(cls, value: str) -> str:
        if value not in ApplicationStatus.ALL:
            raise ValueError(f"Unknown payment application status: {value}")
        return value

    def progress_for(self, line_item_id: str) -> Optional[LineItemProgress]:
        for progress in self.line_items:
            if progress.line_item_id == line_item_id:
                return progress
        return None


class BaselineFreeze(BaseModel):
    """Per-line billed-to-date percents captured when an application is approved."""
    application_id: str
    contract_id: str
    sequence: int
    percents: Dict[str, float]
    frozen_at: datetime = Field(default_factory=utcnow)
    frozen_by: Optional[str] = None


# ============================================
# REQUEST MODELS
# ============================================
class LineItemSubmission(BaseModel):
    line_item_id: str
    submitted_percent: float = 0.0
    material_stored: float = 0.0


class PaymentApplicationCreate(BaseModel):
    line_items: List[LineItemSubmission]
    notes: Optional[str] = None


class LineItemVerify(BaseModel):
    pm_verified_percent: float
    pm_adjustment_reason: Optional[str] = None


class ApprovalRequest(BaseModel):
    notes: Optional[str] = None


class RejectionRequest(BaseModel):
    reason: Optional[str] = None


class RecallRequest(BaseModel):
    reason: Optional[str] = None


class ChangeOrderCreate(BaseModel):
    description: str
    amount: float
    percentage: Optional[float] = None


class LineItemSubmissionUpdate(BaseModel):
    submitted_percent: float
    material_stored: float = 0.0


class LineItemUpsert(BaseModel):
    item_number: Optional[str] = None
    description: str = ""
    scheduled_value: float
