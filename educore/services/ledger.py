"""User credit ledger.

Each profile at ``users/<id>/profile`` carries an integer ``credits``
balance. Every mutation runs as a compare-and-swap transaction on that
document, so two concurrent deductions can no longer both read the same
balance and overdraw it.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic.alias_generators import to_camel

from educore.core.config import settings
from educore.core.errors import InsufficientCredits, InvalidAmount, ProfileNotFound
from educore.core.logging import get_logger
from educore.domain.user import ProfileChanges, UserProfile
from educore.infrastructure.store import AbortTransaction, DocumentStore

logger = get_logger(__name__)

PROFILE_KEYS = {to_camel(name) for name in UserProfile.model_fields}

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def profile_path(user_id: str) -> str:
    if not user_id or "/" in user_id:
        raise ValueError(f"Invalid user id: {user_id!r}")
    return f"users/{user_id}/profile"


def directory_path(user_id: str) -> str:
    return f"userDirectory/{user_id}"


def _check_amount(amount: Any, allow_zero: bool = False) -> int:
    # bool is an int subclass; True is not a credit amount
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"Credit amount must be a whole number, got {amount!r}")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise InvalidAmount(f"Invalid credit amount: {amount}")
    return amount


def _merge_profile(document: Dict[str, Any], profile: UserProfile) -> Dict[str, Any]:
    """Write profile fields back while keeping keys this service does not model."""
    merged = {key: value for key, value in document.items() if key not in PROFILE_KEYS}
    merged.update(profile.to_document())
    return merged


class CreditLedger:
    """Reads and mutates user profiles and their credit balances."""

    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or utcnow

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        document = await self.store.get(profile_path(user_id))
        if document is None:
            return None
        return UserProfile.from_document(user_id, document)

    async def require_profile(self, user_id: str) -> UserProfile:
        profile = await self.get_profile(user_id)
        if profile is None:
            raise ProfileNotFound(user_id)
        return profile

    async def ensure_profile(
        self,
        user_id: str,
        email: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> UserProfile:
        """Create the profile on first sign-in with the starting balance.

        An existing profile is returned unchanged.
        """
        now = self.clock()
        profile = UserProfile(
            id=user_id,
            email=email,
            display_name=display_name or (email.split("@")[0] if email else None),
            credits=settings.default_initial_credits,
            created_at=now,
            last_updated_at=now,
        )
        created = await self.store.create(profile_path(user_id), profile.to_document())
        # Profiles written before the directory existed are listed on next sign-in
        await self.store.create(directory_path(user_id), {"createdAt": now.isoformat()})
        if created:
            logger.info(
                f"Profile created with {profile.credits} starting credits",
                extra={"user_id": user_id},
            )
            return profile
        return await self.require_profile(user_id)

    async def list_profiles(self) -> List[UserProfile]:
        """Every profile in the user directory, oldest first."""
        entries = await self.store.children("userDirectory")
        profiles = []
        for user_id in entries:
            profile = await self.get_profile(user_id)
            if profile is not None:
                profiles.append(profile)
        profiles.sort(key=lambda p: (p.created_at is None, p.created_at or self.clock(), p.id))
        return profiles

    async def mutate_profile(
        self,
        user_id: str,
        change: Callable[[UserProfile], Any],
    ) -> UserProfile:
        """Run ``change`` on the stored profile inside a CAS transaction."""
        now = self.clock()

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise ProfileNotFound(user_id)
            profile = UserProfile.from_document(user_id, document)
            change(profile)
            profile.last_updated_at = now
            return _merge_profile(document, profile)

        result = await self.store.transact(profile_path(user_id), mutator)
        return UserProfile.from_document(user_id, result)

    async def get_balance(self, user_id: str) -> int:
        profile = await self.require_profile(user_id)
        return profile.credits

    async def set_balance(self, user_id: str, new_balance: int) -> int:
        """Overwrite the balance (admin edits, explicit restores)."""
        _check_amount(new_balance, allow_zero=True)

        def change(profile: UserProfile) -> None:
            profile.credits = new_balance

        await self.mutate_profile(user_id, change)
        logger.info(f"Credits set to {new_balance}", extra={"user_id": user_id})
        return new_balance

    async def try_deduct(self, user_id: str, amount: int) -> bool:
        """Deduct ``amount`` if affordable.

        Admins and teachers are not charged and always succeed. Returns False,
        leaving the balance untouched, when the balance is too low.
        """
        _check_amount(amount)
        now = self.clock()

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise ProfileNotFound(user_id)
            profile = UserProfile.from_document(user_id, document)
            if profile.is_privileged:
                raise AbortTransaction(True)
            if profile.credits < amount:
                raise AbortTransaction(False)
            profile.credits -= amount
            profile.last_updated_at = now
            return _merge_profile(document, profile)

        result = await self.store.transact(profile_path(user_id), mutator)
        if result is True or result is False:
            if not result:
                logger.info(f"Deduction of {amount} refused: balance too low", extra={"user_id": user_id})
            return result
        logger.debug(f"Deducted {amount} credits", extra={"user_id": user_id})
        return True

    async def debit(self, user_id: str, amount: int) -> int:
        """Deduct ``amount`` unconditionally of role; used to pay for voucher batches.

        Returns:
            The new balance

        Raises:
            InsufficientCredits: If the balance is below ``amount``
        """
        _check_amount(amount)

        def change(profile: UserProfile) -> None:
            if profile.credits < amount:
                raise InsufficientCredits(required=amount, available=profile.credits)
            profile.credits -= amount

        profile = await self.mutate_profile(user_id, change)
        logger.info(f"Debited {amount} credits", extra={"user_id": user_id})
        return profile.credits

    async def credit(self, user_id: str, amount: int) -> int:
        """Add ``amount`` to the balance and return the new balance."""
        _check_amount(amount)

        def change(profile: UserProfile) -> None:
            profile.credits += amount

        profile = await self.mutate_profile(user_id, change)
        logger.info(f"Credited {amount} credits", extra={"user_id": user_id})
        return profile.credits

    async def admin_update_profile(self, user_id: str, changes: ProfileChanges) -> UserProfile:
        updates = changes.model_dump(exclude_unset=True)
        if "credits" in updates and updates["credits"] is not None:
            _check_amount(updates["credits"], allow_zero=True)

        def change(profile: UserProfile) -> None:
            for field, value in updates.items():
                if field == "display_name" and value == "":
                    value = None
                if value is None and field != "display_name":
                    continue
                setattr(profile, field, value)

        profile = await self.mutate_profile(user_id, change)
        logger.info(f"Admin updated profile fields {sorted(updates)}", extra={"user_id": user_id})
        return profile

    async def set_account_disabled(self, user_id: str, disabled: bool) -> UserProfile:
        def change(profile: UserProfile) -> None:
            profile.is_account_disabled = disabled

        profile = await self.mutate_profile(user_id, change)
        logger.info(f"Account disabled flag set to {disabled}", extra={"user_id": user_id})
        return profile
