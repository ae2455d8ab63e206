"""Domain models for classes and join requests."""
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


class JoinRequest(BaseModel):
    """A student's pending request to join a class."""
    user_id: str
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    message: Optional[str] = None
    requested_at: datetime

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ClassData(BaseModel):
    """Class stored at ``classes/<id>``; ``friendly_id`` is the shareable code."""
    id: str = Field(exclude=True)
    name: str
    description: str = ""
    instructor_name: str = ""
    teacher_id: str
    friendly_id: str
    pending_join_requests: Dict[str, JoinRequest] = Field(default_factory=dict)

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    @classmethod
    def from_document(cls, class_id: str, document: Dict[str, Any]) -> "ClassData":
        return cls.model_validate({**document, "id": class_id})

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
