"""Credit vouchers: batch issuance and redemption.

Issuance pre-charges the issuing teacher for the whole batch, then writes
one ``creditVouchers/<code>`` document per voucher. The store has no
multi-document transactions, so a failure part way is compensated by
crediting the charge back; vouchers already written are kept and counted in
the error. Each batch also gets a ``voucherBatches/<batch_id>`` record so
incomplete batches can be found and reconciled later.

Redemption walks the voucher state machine::

    active --redeem--> redeemed   (terminal)
    active --expiry--> expired    (terminal, detected lazily on read)

Rejections are returned as ``RedemptionResult(success=False)``; only
infrastructure problems raise.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from educore.core.config import settings
from educore.core.errors import (
    ClassNotFound,
    CreditRestorationFailed,
    EduCoreError,
    InvalidParameters,
    NotAuthorized,
    TeacherNotFound,
    VoucherBatchFailed,
)
from educore.core.logging import LogTimer, get_logger
from educore.domain.classroom import ClassData
from educore.domain.user import UserProfile
from educore.domain.voucher import (
    BatchStatus,
    ClassRestriction,
    CreditVoucher,
    RedemptionResult,
    VoucherBatch,
    VoucherBatchResult,
    VoucherStatus,
)
from educore.infrastructure.store import AbortTransaction
from educore.services.classes import ClassRegistry
from educore.services.codes import (
    ensure_unique,
    generate_batch_id,
    generate_voucher_code,
    is_valid_voucher_code,
    normalize_code,
)
from educore.services.ledger import CreditLedger

logger = get_logger(__name__)

INVALID_CODE = "Invalid voucher code."
ALREADY_REDEEMED = "This voucher has already been redeemed."
EXPIRED = "This voucher has expired."
NOT_ACTIVE = "This voucher is not currently active."


def voucher_path(code: str) -> str:
    return f"creditVouchers/{code}"


def batch_path(batch_id: str) -> str:
    return f"voucherBatches/{batch_id}"


def _positive_int(name: str, value: Any, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidParameters(f"{name} must be a whole number.")
    if value <= 0:
        raise InvalidParameters(f"{name} must be a positive integer.")
    if value > maximum:
        raise InvalidParameters(f"{name} cannot exceed {maximum}.")
    return value


class VoucherService:
    """Issues and redeems credit vouchers."""

    def __init__(self, ledger: CreditLedger, classes: ClassRegistry):
        self.ledger = ledger
        self.classes = classes
        self.store = ledger.store
        self.clock = ledger.clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    async def _resolve_restriction(
        self, teacher: UserProfile, class_ref: Optional[str]
    ) -> Optional[ClassRestriction]:
        """Turn a class id or friendly id into restriction metadata."""
        if not class_ref:
            return None

        data: Optional[ClassData] = None
        if "/" not in class_ref:
            data = await self.classes.get_class(class_ref)
        if data is None:
            data = await self.classes.get_class_by_friendly_id(class_ref)
        if data is None:
            raise ClassNotFound(class_ref)

        if data.teacher_id != teacher.id and not teacher.is_admin:
            raise NotAuthorized("Vouchers can only be restricted to your own classes.")

        return ClassRestriction(
            class_id=data.id,
            class_name=data.name,
            friendly_class_id=data.friendly_id,
        )

    async def issue_vouchers(
        self,
        teacher_id: str,
        credits_per_voucher: int,
        count: int,
        restrict_to_class: Optional[str] = None,
    ) -> VoucherBatchResult:
        """Create ``count`` active vouchers worth ``credits_per_voucher`` each.

        Non-admin issuers pay ``credits_per_voucher * count`` up front.

        Args:
            teacher_id: Issuing teacher or admin
            credits_per_voucher: Value of each voucher
            count: Number of vouchers in the batch
            restrict_to_class: Optional class id or friendly id limiting who may redeem

        Returns:
            The batch id and the created vouchers

        Raises:
            InvalidParameters: Non-integer, non-positive or oversized inputs
            TeacherNotFound: No profile for ``teacher_id``
            NotAuthorized: Issuer is neither teacher nor admin
            InsufficientCredits: Balance below the batch total
            VoucherBatchFailed: Generation stopped part way; credits restored
            CreditRestorationFailed: Generation stopped and the restore failed too
        """
        _positive_int("Credits per voucher", credits_per_voucher, settings.max_credits_per_voucher)
        _positive_int("Number of vouchers", count, settings.max_vouchers_per_batch)

        teacher = await self.ledger.get_profile(teacher_id)
        if teacher is None:
            raise TeacherNotFound(teacher_id)
        if not (teacher.is_teacher or teacher.is_admin):
            raise NotAuthorized("Only teachers and admins can generate vouchers.")

        restriction = await self._resolve_restriction(teacher, restrict_to_class)
        teacher_name = teacher.display_name or teacher.email or teacher_id
        total_required = credits_per_voucher * count

        charged = 0
        if not teacher.is_admin:
            await self.ledger.debit(teacher_id, total_required)
            charged = total_required

        now = self.clock()
        expiry = now + timedelta(days=settings.voucher_expiry_days)
        batch_id: Optional[str] = None
        created: List[CreditVoucher] = []

        with LogTimer(logger, "issue_vouchers", teacher_id=teacher_id):
            try:
                batch_id = await self._open_batch(teacher_id, credits_per_voucher, count, charged, now)

                for _ in range(count):
                    voucher = await self._create_voucher(
                        batch_id=batch_id,
                        credits=credits_per_voucher,
                        teacher_id=teacher_id,
                        teacher_name=teacher_name,
                        created_at=now,
                        expiry=expiry,
                        restriction=restriction,
                    )
                    created.append(voucher)
                    await self.store.update(batch_path(batch_id), {
                        "createdCount": len(created),
                        "voucherCodes": [v.id for v in created],
                    })
            except Exception as e:
                await self._compensate(teacher_id, batch_id, created, count, charged, e)

            await self._close_batch(batch_id, BatchStatus.COMPLETED, len(created))

        logger.info(
            f"{len(created)} credit vouchers created by {teacher_name}. "
            + (f"{charged} credits deducted." if charged else "Credits not deducted (admin user)."),
            extra={"teacher_id": teacher_id, "batch_id": batch_id},
        )
        return VoucherBatchResult(batch_id=batch_id, vouchers=created)

    async def _open_batch(
        self,
        teacher_id: str,
        credits_per_voucher: int,
        count: int,
        charged: int,
        now: datetime,
    ) -> str:
        def batch_for(batch_id: str) -> VoucherBatch:
            return VoucherBatch(
                id=batch_id,
                teacher_id=teacher_id,
                credits_per_voucher=credits_per_voucher,
                requested_count=count,
                credits_charged=charged,
                created_at=now,
            )

        async def taken(candidate: str) -> bool:
            return not await self.store.create(batch_path(candidate), batch_for(candidate).to_document())

        return await ensure_unique(generate_batch_id, taken, namespace="batch ID")

    async def _create_voucher(
        self,
        batch_id: str,
        credits: int,
        teacher_id: str,
        teacher_name: str,
        created_at: datetime,
        expiry: datetime,
        restriction: Optional[ClassRestriction],
    ) -> CreditVoucher:
        """Claim a fresh code and write its voucher in one set-if-absent."""

        def voucher_for(code: str) -> CreditVoucher:
            voucher = CreditVoucher(
                id=code,
                batch_id=batch_id,
                credits=credits,
                generated_by_teacher_id=teacher_id,
                generated_by_teacher_name=teacher_name,
                created_at=created_at,
                expiry_date=expiry,
                status=VoucherStatus.ACTIVE,
            )
            if restriction is not None:
                voucher.restricted_to_class_id = restriction.class_id
                voucher.restricted_to_class_name = restriction.class_name
                voucher.restricted_to_friendly_class_id = restriction.friendly_class_id
            return voucher

        async def taken(candidate: str) -> bool:
            return not await self.store.create(voucher_path(candidate), voucher_for(candidate).to_document())

        code = await ensure_unique(generate_voucher_code, taken, namespace="voucher code")
        logger.debug("Voucher persisted", extra={"batch_id": batch_id, "voucher_code": code})
        return voucher_for(code)

    async def _compensate(
        self,
        teacher_id: str,
        batch_id: Optional[str],
        created: List[CreditVoucher],
        requested: int,
        charged: int,
        error: Exception,
    ) -> None:
        """Give the charge back after a failed batch, then raise the batch error."""
        batch_label = batch_id or "unassigned"
        batch_log = get_logger(__name__, {"teacher_id": teacher_id, "batch_id": batch_label})
        batch_log.warning(
            f"Voucher batch failed after {len(created)} of {requested} vouchers: {error}",
            extra={"error_type": type(error).__name__},
        )

        restored = False
        if charged:
            try:
                await self.ledger.credit(teacher_id, charged)
                restored = True
                batch_log.warning(f"Restored {charged} credits after failed batch")
            except Exception as restore_error:
                batch_log.error(
                    f"Could not restore {charged} credits after failed batch; manual reconciliation required",
                    exc_info=True,
                )
                await self._close_batch(batch_id, BatchStatus.FAILED, len(created), str(error))
                raise CreditRestorationFailed(
                    teacher_id=teacher_id,
                    amount=charged,
                    batch_id=batch_label,
                    created_count=len(created),
                ) from restore_error

        await self._close_batch(batch_id, BatchStatus.FAILED, len(created), str(error))
        raise VoucherBatchFailed(
            batch_id=batch_label,
            created_count=len(created),
            requested_count=requested,
            reason=str(error),
            credits_restored=restored,
        ) from error

    async def _close_batch(
        self,
        batch_id: Optional[str],
        status: BatchStatus,
        created_count: int,
        reason: Optional[str] = None,
    ) -> None:
        """Record the batch outcome. A failure here only affects bookkeeping."""
        if batch_id is None:
            return
        fields: Dict[str, Any] = {"status": status.value, "createdCount": created_count}
        if reason:
            fields["failureReason"] = reason
        try:
            await self.store.update(batch_path(batch_id), fields)
        except Exception:
            logger.error(
                f"Could not mark batch as {status.value}",
                extra={"batch_id": batch_id},
                exc_info=True,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _expire(self, code: str) -> None:
        """Flip an active, past-expiry voucher to expired. Safe to repeat."""
        now = self.clock()

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None or document.get("status") != VoucherStatus.ACTIVE.value:
                raise AbortTransaction()
            voucher = CreditVoucher.model_validate(document)
            if not voucher.is_past_expiry(now):
                raise AbortTransaction()
            return {**document, "status": VoucherStatus.EXPIRED.value}

        if await self.store.transact(voucher_path(code), mutator) is not None:
            logger.info("Voucher marked expired", extra={"voucher_code": code})

    async def get_voucher(self, code: str) -> Optional[CreditVoucher]:
        """Fetch a voucher by code, applying lazy expiry."""
        code = normalize_code(code)
        if not is_valid_voucher_code(code):
            return None
        document = await self.store.get(voucher_path(code))
        if document is None:
            return None
        voucher = CreditVoucher.model_validate(document)
        if voucher.status == VoucherStatus.ACTIVE and voucher.is_past_expiry(self.clock()):
            await self._expire(code)
            voucher = voucher.model_copy(update={"status": VoucherStatus.EXPIRED})
        return voucher

    async def list_vouchers(self, teacher_id: Optional[str] = None) -> List[CreditVoucher]:
        """All vouchers, or one teacher's, newest first.

        Past-expiry vouchers are reported as expired; their stored status is
        flipped the next time they are fetched or redeemed.
        """
        now = self.clock()
        documents = await self.store.children("creditVouchers")
        vouchers = []
        for document in documents.values():
            voucher = CreditVoucher.model_validate(document)
            if teacher_id and voucher.generated_by_teacher_id != teacher_id:
                continue
            status = voucher.effective_status(now)
            if status != voucher.status:
                voucher = voucher.model_copy(update={"status": status})
            vouchers.append(voucher)
        return sorted(vouchers, key=lambda v: v.created_at, reverse=True)

    async def get_batch(self, batch_id: str) -> Optional[VoucherBatch]:
        document = await self.store.get(batch_path(batch_id))
        if document is None:
            return None
        return VoucherBatch.model_validate(document)

    async def find_incomplete_batches(self, grace: timedelta = timedelta(minutes=10)) -> List[VoucherBatch]:
        """Batches that failed, or whose voucher count does not match the request.

        Pending batches younger than ``grace`` are assumed to be in flight.
        """
        cutoff = self.clock() - grace
        documents = await self.store.children("voucherBatches")
        batches = []
        for document in documents.values():
            batch = VoucherBatch.model_validate(document)
            if batch.status == BatchStatus.PENDING and batch.created_at > cutoff:
                continue
            if batch.needs_reconciliation:
                batches.append(batch)
        return sorted(batches, key=lambda b: b.created_at)

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    async def redeem(self, user_id: str, code: str) -> RedemptionResult:
        """Redeem ``code`` for ``user_id``.

        Raises:
            ProfileNotFound: The redeeming user has no profile
        """
        code = normalize_code(code)
        if not is_valid_voucher_code(code):
            return RedemptionResult(success=False, message=INVALID_CODE)

        document = await self.store.get(voucher_path(code))
        if document is None:
            return RedemptionResult(success=False, message=INVALID_CODE)

        status = document.get("status")
        if status == VoucherStatus.REDEEMED.value:
            return RedemptionResult(success=False, message=ALREADY_REDEEMED)
        if status == VoucherStatus.EXPIRED.value:
            return RedemptionResult(success=False, message=EXPIRED)
        if status != VoucherStatus.ACTIVE.value:
            return RedemptionResult(success=False, message=NOT_ACTIVE)

        voucher = CreditVoucher.model_validate(document)
        if voucher.is_past_expiry(self.clock()):
            await self._expire(code)
            return RedemptionResult(success=False, message=EXPIRED)

        profile = await self.ledger.require_profile(user_id)

        auto_enrolled: Optional[ClassRestriction] = None
        restriction = voucher.restriction
        if restriction is not None:
            if not profile.is_enrolled_in(restriction.class_id):
                try:
                    await self.classes.enroll(user_id, restriction.class_id)
                except EduCoreError as e:
                    logger.warning(
                        f"Auto-enrollment failed during redemption: {e.detail}",
                        extra={"user_id": user_id, "voucher_code": code, "class_id": restriction.class_id},
                    )
                    return RedemptionResult(
                        success=False,
                        message=self._join_manually_message(restriction),
                    )
                auto_enrolled = restriction
        else:
            teacher_name = voucher.generated_by_teacher_name
            if not any(profile.enrolled_class_ids.values()):
                return RedemptionResult(
                    success=False,
                    message=f"This voucher is for students of {teacher_name}. "
                            f"You must be enrolled in one of their classes.",
                )
            if not await self.classes.is_taught_by(profile, voucher.generated_by_teacher_id):
                return RedemptionResult(
                    success=False,
                    message=f"To redeem this voucher, you must be enrolled in a class taught by {teacher_name}.",
                )

        rejection = await self._claim(code, user_id)
        if rejection is not None:
            return rejection

        try:
            await self.ledger.credit(user_id, voucher.credits)
        except Exception:
            try:
                await self._release(code, user_id)
            except Exception:
                logger.error(
                    "Could not release voucher after failed credit; voucher is redeemed without credits",
                    extra={"user_id": user_id, "voucher_code": code},
                    exc_info=True,
                )
            raise

        logger.info(
            f"Voucher redeemed for {voucher.credits} credits",
            extra={"user_id": user_id, "voucher_code": code, "batch_id": voucher.batch_id},
        )

        message = f"Successfully redeemed {voucher.credits} credits!"
        if auto_enrolled is not None:
            message += f' You have been enrolled in the class "{auto_enrolled.class_name}".'
        return RedemptionResult(
            success=True,
            message=message,
            credits_awarded=voucher.credits,
            auto_enrolled_class_id=auto_enrolled.class_id if auto_enrolled else None,
        )

    @staticmethod
    def _join_manually_message(restriction: ClassRestriction) -> str:
        class_label = restriction.class_name
        if restriction.friendly_class_id:
            class_label += f" (ID: {restriction.friendly_class_id})"
        return (
            f'This voucher is restricted to students enrolled in the class "{class_label}". '
            f"We could not enroll you automatically; please join the class first, then try again."
        )

    async def _claim(self, code: str, user_id: str) -> Optional[RedemptionResult]:
        """Move the voucher from active to redeemed, unless someone got there first."""
        now = self.clock()

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise AbortTransaction(RedemptionResult(success=False, message=INVALID_CODE))
            status = document.get("status")
            if status == VoucherStatus.REDEEMED.value:
                raise AbortTransaction(RedemptionResult(success=False, message=ALREADY_REDEEMED))
            if status == VoucherStatus.EXPIRED.value:
                raise AbortTransaction(RedemptionResult(success=False, message=EXPIRED))
            if status != VoucherStatus.ACTIVE.value:
                raise AbortTransaction(RedemptionResult(success=False, message=NOT_ACTIVE))
            voucher = CreditVoucher.model_validate(document)
            if voucher.is_past_expiry(now):
                return {**document, "status": VoucherStatus.EXPIRED.value}
            voucher.status = VoucherStatus.REDEEMED
            voucher.redeemed_by_user_id = user_id
            voucher.redeemed_at = now
            return {**document, **voucher.to_document()}

        result = await self.store.transact(voucher_path(code), mutator)
        if isinstance(result, RedemptionResult):
            return result
        if result.get("status") == VoucherStatus.EXPIRED.value:
            logger.info("Voucher marked expired", extra={"voucher_code": code})
            return RedemptionResult(success=False, message=EXPIRED)
        return None

    async def _release(self, code: str, user_id: str) -> None:
        """Undo a claim made by ``user_id`` whose credit did not go through."""

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None or document.get("redeemedByUserId") != user_id:
                raise AbortTransaction()
            released = {
                key: value for key, value in document.items()
                if key not in ("redeemedByUserId", "redeemedAt")
            }
            released["status"] = VoucherStatus.ACTIVE.value
            return released

        await self.store.transact(voucher_path(code), mutator)
        logger.warning("Voucher claim released after failed credit", extra={"user_id": user_id, "voucher_code": code})
