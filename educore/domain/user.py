"""Domain models for user profiles and request identity."""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class UserProfile(BaseModel):
    """Profile stored at ``users/<id>/profile``.

    Attributes:
        id: Stable identity issued by the sign-in provider (not stored in the document)
        email: User's email address
        display_name: Name shown to classmates and teachers
        credits: Spendable credit balance, never negative
        is_admin: Platform administrator
        is_teacher: May create classes and issue vouchers
        is_account_disabled: Account locked by an administrator
        enrolled_class_ids: Classes the user belongs to, as ``{class_id: True}``
        created_at: First sign-in timestamp
        last_updated_at: Last profile mutation
    """
    id: str = Field(exclude=True)
    email: Optional[str] = None
    display_name: Optional[str] = None
    credits: int = Field(default=0, ge=0)
    is_admin: bool = False
    is_teacher: bool = False
    is_account_disabled: bool = False
    enrolled_class_ids: Dict[str, bool] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "id": "uid_123",
                "email": "student@school.lk",
                "displayName": "Nimali",
                "credits": 10,
                "isAdmin": False,
                "isTeacher": False,
                "isAccountDisabled": False,
                "enrolledClassIds": {"-NxClass01": True},
            }
        }

    @property
    def is_privileged(self) -> bool:
        """Admins and teachers are exempt from usage deductions."""
        return self.is_admin or self.is_teacher

    def is_enrolled_in(self, class_id: str) -> bool:
        return bool(self.enrolled_class_ids.get(class_id))

    @classmethod
    def from_document(cls, user_id: str, document: Dict[str, Any]) -> "UserProfile":
        return cls.model_validate({**document, "id": user_id})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


class ProfileChanges(BaseModel):
    """Fields an administrator may edit on another user's profile.

    Unset fields are left untouched; an empty ``display_name`` clears it.
    """
    display_name: Optional[str] = None
    credits: Optional[int] = Field(default=None, ge=0)
    is_admin: Optional[bool] = None
    is_teacher: Optional[bool] = None
    is_account_disabled: Optional[bool] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class CurrentUser(BaseModel):
    """Caller identity extracted from a bearer token."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
