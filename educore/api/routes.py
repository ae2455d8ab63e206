"""Async FastAPI routes for profiles, credits, classes, vouchers and support.

Redemption always answers 200 with a ``success`` flag; rejected codes are a
normal outcome for the UI to render. Service-layer errors are mapped to
status codes by the ``EduCoreError`` handler in ``main.py``.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, StrictInt
from pydantic.alias_generators import to_camel

from educore.api.dependencies import (
    Services,
    get_active_profile,
    get_services,
    require_admin,
    require_teacher,
)
from educore.core.auth import get_current_user
from educore.core.config import settings
from educore.core.errors import ClassNotFound, InsufficientCredits, NotAuthorized
from educore.core.logging import LogTimer, get_logger
from educore.domain.classroom import ClassData
from educore.domain.support import SupportTicket
from educore.domain.user import CurrentUser, ProfileChanges, UserProfile
from educore.domain.voucher import CreditVoucher, RedemptionResult, VoucherBatch, VoucherBatchResult

logger = get_logger(__name__)
router = APIRouter()


class CamelModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


class IssueVouchersRequest(CamelModel):
    # Strict: a JSON true, "10" or 2.0 is rejected rather than coerced
    credits_per_voucher: StrictInt
    number_of_vouchers: StrictInt
    restrict_to_class: Optional[str] = Field(
        default=None, description="Class id or friendly id; omit for any of the teacher's classes"
    )


class RedeemVoucherRequest(CamelModel):
    voucher_code: str


class EnsureProfileRequest(CamelModel):
    email: Optional[str] = None
    display_name: Optional[str] = None


class CreateClassRequest(CamelModel):
    name: str
    description: str


class JoinClassRequest(CamelModel):
    message: Optional[str] = None


class OpenTicketRequest(CamelModel):
    subject: str
    language: str = "English"
    user_comment: Optional[str] = None


class ResolveTicketRequest(CamelModel):
    admin_resolution_message: str


class AccountDisabledRequest(CamelModel):
    disabled: bool


def _profile_out(profile: UserProfile) -> Dict[str, Any]:
    return {"id": profile.id, **profile.to_document()}


def _class_out(data: ClassData) -> Dict[str, Any]:
    return {"id": data.id, **data.to_document()}


# -----------------
# PROFILES & CREDITS
# -----------------

@router.post("/profiles/me")
async def ensure_my_profile(
    req: EnsureProfileRequest,
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    """Create the caller's profile on first sign-in (starting credits) or return it."""
    profile = await services.ledger.ensure_profile(
        user.id,
        email=req.email or user.email,
        display_name=req.display_name or user.name,
    )
    return _profile_out(profile)


@router.get("/profiles/me")
async def get_my_profile(profile: UserProfile = Depends(get_active_profile)):
    return _profile_out(profile)


@router.get("/credits/me")
async def get_my_credits(profile: UserProfile = Depends(get_active_profile)):
    return {"userId": profile.id, "credits": profile.credits}


@router.post("/credits/me/tutor-usage")
async def charge_tutor_usage(
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    """Charge one tutor message; 402 when the balance cannot cover it."""
    cost = settings.tutor_message_cost
    allowed = await services.ledger.try_deduct(profile.id, cost)
    credits = await services.ledger.get_balance(profile.id)
    if not allowed:
        raise InsufficientCredits(cost, credits)
    return {"allowed": True, "credits": credits}


# -----------------
# VOUCHERS
# -----------------

@router.post(
    "/vouchers/batches",
    response_model=VoucherBatchResult,
    status_code=status.HTTP_201_CREATED,
)
async def issue_vouchers(
    req: IssueVouchersRequest,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    with LogTimer(logger, "issue_vouchers_request", user_id=teacher.id):
        return await services.vouchers.issue_vouchers(
            teacher.id,
            req.credits_per_voucher,
            req.number_of_vouchers,
            restrict_to_class=req.restrict_to_class,
        )


@router.get("/vouchers/batches/incomplete", response_model=List[VoucherBatch])
async def incomplete_batches(
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Batches needing reconciliation (failed part way or left pending)."""
    return await services.vouchers.find_incomplete_batches()


@router.get("/vouchers", response_model=List[CreditVoucher])
async def list_vouchers(
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    """Admins see every voucher; teachers see the ones they generated."""
    teacher_filter = None if teacher.is_admin else teacher.id
    return await services.vouchers.list_vouchers(teacher_id=teacher_filter)


@router.post("/vouchers/redeem", response_model=RedemptionResult)
async def redeem_voucher(
    req: RedeemVoucherRequest,
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    with LogTimer(logger, "redeem_voucher", user_id=profile.id):
        return await services.vouchers.redeem(profile.id, req.voucher_code)


@router.get("/vouchers/{code}", response_model=CreditVoucher)
async def get_voucher(
    code: str,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    voucher = await services.vouchers.get_voucher(code)
    if voucher is None or (
        not teacher.is_admin and voucher.generated_by_teacher_id != teacher.id
    ):
        raise HTTPException(status_code=404, detail="Voucher not found")
    return voucher


# -----------------
# CLASSES
# -----------------

@router.post("/classes", status_code=status.HTTP_201_CREATED)
async def create_class(
    req: CreateClassRequest,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    data = await services.classes.create_class(
        req.name,
        req.description,
        teacher.id,
        teacher.display_name or teacher.email or teacher.id,
    )
    return _class_out(data)


@router.get("/classes/mine")
async def my_classes(
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    """Classes the caller teaches, plus the ones they are enrolled in."""
    teaching = await services.classes.classes_by_teacher(profile.id) if profile.is_teacher else []
    enrolled = []
    for class_id, flag in profile.enrolled_class_ids.items():
        if not flag:
            continue
        data = await services.classes.get_class(class_id)
        if data is not None:
            enrolled.append(_class_out(data))
    return {"teaching": [_class_out(c) for c in teaching], "enrolled": enrolled}


@router.get("/classes/{friendly_id}")
async def get_class_by_friendly_id(
    friendly_id: str,
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    data = await services.classes.get_class_by_friendly_id(friendly_id)
    if data is None:
        raise ClassNotFound(friendly_id.upper())
    return {
        "id": data.id,
        "friendlyId": data.friendly_id,
        "name": data.name,
        "description": data.description,
        "instructorName": data.instructor_name,
    }


@router.delete("/classes/{class_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_class(
    class_id: str,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    await services.classes.delete_class(class_id, teacher.id)


@router.post("/classes/{friendly_id}/join-requests", status_code=status.HTTP_202_ACCEPTED)
async def request_to_join(
    friendly_id: str,
    req: JoinClassRequest,
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    data = await services.classes.request_to_join(
        friendly_id,
        profile.id,
        user_name=profile.display_name,
        user_email=profile.email,
        message=req.message,
    )
    return {"classId": data.id, "friendlyId": data.friendly_id, "status": "pending"}


async def _require_owned_class(services: Services, class_id: str, teacher: UserProfile) -> ClassData:
    data = await services.classes.require_class(class_id)
    if data.teacher_id != teacher.id and not teacher.is_admin:
        raise NotAuthorized("Only the class teacher can manage join requests.")
    return data


@router.post("/classes/{class_id}/join-requests/{user_id}/approve")
async def approve_join_request(
    class_id: str,
    user_id: str,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    await _require_owned_class(services, class_id, teacher)
    await services.classes.approve_join_request(class_id, user_id)
    return {"classId": class_id, "userId": user_id, "status": "approved"}


@router.post("/classes/{class_id}/join-requests/{user_id}/deny")
async def deny_join_request(
    class_id: str,
    user_id: str,
    teacher: UserProfile = Depends(require_teacher),
    services: Services = Depends(get_services),
):
    await _require_owned_class(services, class_id, teacher)
    await services.classes.deny_join_request(class_id, user_id)
    return {"classId": class_id, "userId": user_id, "status": "denied"}


@router.post("/classes/{class_id}/leave")
async def leave_class(
    class_id: str,
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    updated = await services.classes.leave(profile.id, class_id)
    return _profile_out(updated)


# -----------------
# SUPPORT
# -----------------

@router.post("/support/tickets", response_model=SupportTicket, status_code=status.HTTP_201_CREATED)
async def open_ticket(
    req: OpenTicketRequest,
    profile: UserProfile = Depends(get_active_profile),
    services: Services = Depends(get_services),
):
    return await services.support.open_ticket(
        profile.id,
        req.subject,
        language=req.language,
        user_display_name=profile.display_name,
        user_comment=req.user_comment,
    )


@router.get("/support/tickets", response_model=List[SupportTicket])
async def list_tickets(
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return await services.support.list_tickets()


@router.post("/support/tickets/{support_id}/resolve", response_model=SupportTicket)
async def resolve_ticket(
    support_id: str,
    req: ResolveTicketRequest,
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    return await services.support.resolve_ticket(support_id, req.admin_resolution_message)


# -----------------
# ADMIN
# -----------------

@router.get("/admin/users")
async def admin_list_users(
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    """Every signed-in user with role flags and balance, for the admin console."""
    return [_profile_out(profile) for profile in await services.ledger.list_profiles()]


@router.patch("/admin/users/{user_id}")
async def admin_update_user(
    user_id: str,
    changes: ProfileChanges,
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    logger.info(f"Admin profile edit for {user_id}", extra={"user_id": admin.id})
    profile = await services.ledger.admin_update_profile(user_id, changes)
    return _profile_out(profile)


@router.post("/admin/users/{user_id}/disabled")
async def admin_set_disabled(
    user_id: str,
    req: AccountDisabledRequest,
    admin: UserProfile = Depends(require_admin),
    services: Services = Depends(get_services),
):
    profile = await services.ledger.set_account_disabled(user_id, req.disabled)
    return _profile_out(profile)
