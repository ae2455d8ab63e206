"""FastAPI dependencies: service wiring and role checks.

Roles come from the stored profile, never from the token, so an admin
demoting a teacher takes effect on the next request.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status

from educore.core.auth import get_current_user
from educore.core.logging import get_logger
from educore.domain.user import CurrentUser, UserProfile
from educore.infrastructure.store import DocumentStore, get_document_store
from educore.services.classes import ClassRegistry
from educore.services.ledger import CreditLedger
from educore.services.support import SupportDesk
from educore.services.vouchers import VoucherService

logger = get_logger(__name__)


@dataclass
class Services:
    store: DocumentStore
    ledger: CreditLedger
    classes: ClassRegistry
    vouchers: VoucherService
    support: SupportDesk

    @classmethod
    def build(cls, store: DocumentStore, clock=None) -> "Services":
        ledger = CreditLedger(store, clock=clock)
        classes = ClassRegistry(ledger)
        return cls(
            store=store,
            ledger=ledger,
            classes=classes,
            vouchers=VoucherService(ledger, classes),
            support=SupportDesk(store, clock=clock),
        )


_services: Optional[Services] = None


def get_services() -> Services:
    """Services bound to the process-wide document store."""
    global _services
    if _services is None:
        _services = Services.build(get_document_store())
    return _services


async def get_active_profile(
    user: CurrentUser = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> UserProfile:
    """The caller's profile; 403 if the account has been disabled."""
    profile = await services.ledger.require_profile(user.id)
    if profile.is_account_disabled:
        logger.warning("Request from disabled account", extra={"user_id": user.id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This account has been disabled.",
        )
    return profile


async def require_teacher(profile: UserProfile = Depends(get_active_profile)) -> UserProfile:
    if not (profile.is_teacher or profile.is_admin):
        logger.warning("Teacher access denied", extra={"user_id": profile.id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Required role: teacher",
        )
    return profile


async def require_admin(profile: UserProfile = Depends(get_active_profile)) -> UserProfile:
    if not profile.is_admin:
        logger.warning("Admin access denied", extra={"user_id": profile.id})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions. Required role: admin",
        )
    return profile
