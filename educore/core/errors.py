"""Exception taxonomy for infrastructure and rule violations.

Business outcomes of a redemption attempt (unknown code, expired, already
redeemed, ineligible) are not exceptions; see ``RedemptionResult``. The
classes here are raised for problems the caller cannot render as a normal
outcome: missing profiles, invalid requests, exhausted code space, failed
batches and store errors. Each carries the HTTP status the API answers with.
"""
from typing import Any, Dict, Optional


class EduCoreError(Exception):
    """Base class for errors raised by the service layer."""

    status_code: int = 400

    def __init__(self, detail: str, status_code: Optional[int] = None) -> None:
        super().__init__(detail)
        self.detail = detail
        # Extra fields for the API error body
        self.context: Dict[str, Any] = {}
        if status_code is not None:
            self.status_code = status_code


class ProfileNotFound(EduCoreError):
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User profile {user_id} not found")
        self.user_id = user_id


class TeacherNotFound(EduCoreError):
    status_code = 404

    def __init__(self, teacher_id: str) -> None:
        super().__init__(
            f"Teacher profile {teacher_id} not found. Cannot verify or deduct credits."
        )
        self.teacher_id = teacher_id


class ClassNotFound(EduCoreError):
    status_code = 404

    def __init__(self, class_ref: str) -> None:
        super().__init__(f"Class {class_ref} not found")
        self.class_ref = class_ref


class TicketNotFound(EduCoreError):
    status_code = 404

    def __init__(self, support_id: str) -> None:
        super().__init__(f"Support ticket with ID {support_id} not found")
        self.support_id = support_id


class InvalidAmount(EduCoreError):
    """A credit amount or balance outside the allowed range."""


class InvalidParameters(EduCoreError):
    """Malformed request parameters (non-integers, non-positive counts...)."""


class NotAuthorized(EduCoreError):
    status_code = 403


class InsufficientCredits(EduCoreError):
    status_code = 402

    def __init__(self, required: int, available: int) -> None:
        super().__init__(
            f"Insufficient credits. You need {required} credits, "
            f"but you only have {available}."
        )
        self.required = required
        self.available = available
        self.context = {"required": required, "available": available}


class CodeGenerationExhausted(EduCoreError):
    status_code = 503

    def __init__(self, attempts: int, namespace: str = "code") -> None:
        super().__init__(
            f"Failed to generate a unique {namespace} after {attempts} attempts."
        )
        self.attempts = attempts
        self.namespace = namespace


class VoucherBatchFailed(EduCoreError):
    """A batch stopped part way. Vouchers already written are kept."""

    status_code = 500

    def __init__(
        self,
        batch_id: str,
        created_count: int,
        requested_count: int,
        reason: str,
        credits_restored: bool = False,
    ) -> None:
        detail = (
            f"Voucher batch {batch_id} failed after {created_count} of "
            f"{requested_count} vouchers: {reason}."
        )
        if credits_restored:
            detail += " Teacher credits have been restored."
        super().__init__(detail)
        self.batch_id = batch_id
        self.created_count = created_count
        self.requested_count = requested_count
        self.reason = reason
        self.credits_restored = credits_restored
        self.context = {
            "batchId": batch_id,
            "createdCount": created_count,
            "requestedCount": requested_count,
            "creditsRestored": credits_restored,
        }


class CreditRestorationFailed(EduCoreError):
    """The compensating credit restore after a failed batch did not go through.

    The teacher is left under-credited by ``amount`` and needs manual
    reconciliation.
    """

    status_code = 500

    def __init__(self, teacher_id: str, amount: int, batch_id: str, created_count: int) -> None:
        super().__init__(
            f"Voucher batch {batch_id} failed after {created_count} vouchers and "
            f"restoring {amount} credits to teacher {teacher_id} also failed. "
            f"Manual reconciliation required."
        )
        self.teacher_id = teacher_id
        self.amount = amount
        self.batch_id = batch_id
        self.created_count = created_count
        self.context = {"batchId": batch_id, "createdCount": created_count, "unrestoredCredits": amount}


class StoreError(EduCoreError):
    """The document store could not be reached or rejected an operation."""

    status_code = 503


class ConcurrentModification(EduCoreError):
    status_code = 409

    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(
            f"Document {path} kept changing; gave up after {attempts} attempts"
        )
        self.path = path
        self.attempts = attempts
