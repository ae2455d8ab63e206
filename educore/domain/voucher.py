"""Domain models for credit vouchers, issuance batches and redemption outcomes."""
import enum
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel


class VoucherStatus(str, enum.Enum):
    """Voucher lifecycle. ``redeemed`` and ``expired`` are terminal."""

    ACTIVE = "active"
    REDEEMED = "redeemed"
    EXPIRED = "expired"


class BatchStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ClassRestriction(BaseModel):
    """Limits redemption to members of one class."""
    class_id: str
    class_name: str
    friendly_class_id: Optional[str] = None


class CreditVoucher(BaseModel):
    """Voucher stored at ``creditVouchers/<code>``; ``id`` is the code itself."""
    id: str
    batch_id: str
    credits: int = Field(gt=0)
    generated_by_teacher_id: str
    generated_by_teacher_name: str
    created_at: datetime
    expiry_date: datetime
    status: VoucherStatus = VoucherStatus.ACTIVE
    redeemed_by_user_id: Optional[str] = None
    redeemed_at: Optional[datetime] = None
    restricted_to_class_id: Optional[str] = None
    restricted_to_class_name: Optional[str] = None
    restricted_to_friendly_class_id: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @model_validator(mode="after")
    def _redeemer_matches_status(self) -> "CreditVoucher":
        redeemed = self.status == VoucherStatus.REDEEMED
        if redeemed != (self.redeemed_by_user_id is not None):
            raise ValueError("redeemedByUserId must be set exactly when status is 'redeemed'")
        return self

    def is_past_expiry(self, now: datetime) -> bool:
        return now > self.expiry_date

    def effective_status(self, now: datetime) -> VoucherStatus:
        """Status with lazy expiry applied, without touching the store."""
        if self.status == VoucherStatus.ACTIVE and self.is_past_expiry(now):
            return VoucherStatus.EXPIRED
        return self.status

    @property
    def restriction(self) -> Optional[ClassRestriction]:
        if not self.restricted_to_class_id:
            return None
        return ClassRestriction(
            class_id=self.restricted_to_class_id,
            class_name=self.restricted_to_class_name or self.restricted_to_class_id,
            friendly_class_id=self.restricted_to_friendly_class_id,
        )

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class VoucherBatch(BaseModel):
    """Bookkeeping record for one issuance call, used for reconciliation."""
    id: str
    teacher_id: str
    credits_per_voucher: int
    requested_count: int
    created_count: int = 0
    credits_charged: int = 0
    status: BatchStatus = BatchStatus.PENDING
    created_at: datetime
    voucher_codes: List[str] = Field(default_factory=list)
    failure_reason: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @property
    def needs_reconciliation(self) -> bool:
        return self.status != BatchStatus.COMPLETED or self.created_count != self.requested_count

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class VoucherBatchResult(BaseModel):
    batch_id: str
    vouchers: List[CreditVoucher]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class RedemptionResult(BaseModel):
    """Outcome of a redemption attempt.

    Rejections (unknown code, expired, ineligible...) are reported here with
    ``success=False`` rather than raised, so callers branch on ``success``.
    """
    success: bool
    message: str
    credits_awarded: Optional[int] = None
    auto_enrolled_class_id: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
