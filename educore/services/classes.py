"""Class registry: classes, friendly IDs, enrollment and join requests.

Store layout:
- ``classes/<class_id>`` holds the class document
- ``classFriendlyIdMap/<FRIENDLY_ID>`` maps the shareable code to ``class_id``
- enrollment lives on the student's profile as ``enrolledClassIds``
"""
import uuid
from typing import Any, Dict, List, Optional

from educore.core.errors import ClassNotFound, InvalidParameters, NotAuthorized
from educore.core.logging import get_logger
from educore.domain.classroom import ClassData, JoinRequest
from educore.domain.user import UserProfile
from educore.services.codes import ensure_unique, generate_friendly_class_id, normalize_code
from educore.services.ledger import CreditLedger

logger = get_logger(__name__)


def class_path(class_id: str) -> str:
    if not class_id or "/" in class_id:
        raise ValueError(f"Invalid class id: {class_id!r}")
    return f"classes/{class_id}"


def friendly_id_path(friendly_id: str) -> str:
    return f"classFriendlyIdMap/{normalize_code(friendly_id)}"


class ClassRegistry:
    """Class records plus the enrollment flags kept on user profiles."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger
        self.store = ledger.store
        self.clock = ledger.clock

    async def create_class(
        self,
        name: str,
        description: str,
        teacher_id: str,
        instructor_name: str,
    ) -> ClassData:
        """Create a class with a freshly claimed friendly ID."""
        if not all(value and value.strip() for value in (name, description, teacher_id, instructor_name)):
            raise InvalidParameters("All fields are required to create a class.")

        class_id = uuid.uuid4().hex

        async def friendly_id_taken(candidate: str) -> bool:
            return not await self.store.create(friendly_id_path(candidate), class_id)

        friendly_id = await ensure_unique(
            generate_friendly_class_id, friendly_id_taken, namespace="friendly class ID"
        )

        data = ClassData(
            id=class_id,
            name=name.strip(),
            description=description.strip(),
            instructor_name=instructor_name.strip(),
            teacher_id=teacher_id,
            friendly_id=friendly_id,
        )
        try:
            await self.store.set(class_path(class_id), data.to_document())
        except Exception:
            logger.error(
                f"Error creating class {class_id}; releasing friendly ID {friendly_id}",
                extra={"class_id": class_id, "teacher_id": teacher_id},
                exc_info=True,
            )
            await self.store.remove(friendly_id_path(friendly_id))
            raise

        logger.info(
            f"Class created with friendly ID {friendly_id}",
            extra={"class_id": class_id, "teacher_id": teacher_id},
        )
        return data

    async def get_class(self, class_id: str) -> Optional[ClassData]:
        document = await self.store.get(class_path(class_id))
        if document is None:
            return None
        return ClassData.from_document(class_id, document)

    async def require_class(self, class_id: str) -> ClassData:
        data = await self.get_class(class_id)
        if data is None:
            raise ClassNotFound(class_id)
        return data

    async def resolve_friendly_id(self, friendly_id: str) -> Optional[str]:
        if not normalize_code(friendly_id):
            return None
        return await self.store.get(friendly_id_path(friendly_id))

    async def get_class_by_friendly_id(self, friendly_id: str) -> Optional[ClassData]:
        class_id = await self.resolve_friendly_id(friendly_id)
        if class_id is None:
            return None
        return await self.get_class(class_id)

    async def list_classes(self) -> List[ClassData]:
        documents = await self.store.children("classes")
        return [ClassData.from_document(class_id, doc) for class_id, doc in documents.items()]

    async def classes_by_teacher(self, teacher_id: str) -> List[ClassData]:
        if not teacher_id:
            logger.warning("Teacher ID is required to fetch classes by teacher.")
            return []
        return [cls for cls in await self.list_classes() if cls.teacher_id == teacher_id]

    async def delete_class(self, class_id: str, teacher_id: str) -> None:
        data = await self.require_class(class_id)
        if data.teacher_id != teacher_id:
            raise NotAuthorized("You can only delete classes you have created.")

        await self.store.remove(class_path(class_id))
        await self.store.remove(friendly_id_path(data.friendly_id))
        logger.info(
            f"Class deleted (friendly ID {data.friendly_id})",
            extra={"class_id": class_id, "teacher_id": teacher_id},
        )

    # Enrollment

    async def is_enrolled(self, user_id: str, class_id: str) -> bool:
        profile = await self.ledger.require_profile(user_id)
        return profile.is_enrolled_in(class_id)

    async def enroll(self, user_id: str, class_id: str) -> UserProfile:
        """Add ``class_id`` to the user's enrollments. The class must exist."""
        await self.require_class(class_id)

        def change(profile: UserProfile) -> None:
            profile.enrolled_class_ids[class_id] = True

        profile = await self.ledger.mutate_profile(user_id, change)
        logger.info("User enrolled in class", extra={"user_id": user_id, "class_id": class_id})
        return profile

    async def leave(self, user_id: str, class_id: str) -> UserProfile:
        def change(profile: UserProfile) -> None:
            profile.enrolled_class_ids.pop(class_id, None)

        profile = await self.ledger.mutate_profile(user_id, change)
        logger.info("User left class", extra={"user_id": user_id, "class_id": class_id})
        return profile

    async def is_taught_by(self, profile: UserProfile, teacher_id: str) -> bool:
        """True if any of the user's enrolled classes belongs to ``teacher_id``."""
        for class_id, enrolled in profile.enrolled_class_ids.items():
            if not enrolled:
                continue
            data = await self.get_class(class_id)
            if data is not None and data.teacher_id == teacher_id:
                return True
        return False

    # Join requests

    async def request_to_join(
        self,
        friendly_id: str,
        user_id: str,
        user_name: Optional[str] = None,
        user_email: Optional[str] = None,
        message: Optional[str] = None,
    ) -> ClassData:
        class_id = await self.resolve_friendly_id(friendly_id)
        if class_id is None:
            raise ClassNotFound(normalize_code(friendly_id))
        if await self.is_enrolled(user_id, class_id):
            raise InvalidParameters("You are already enrolled in this class.")

        request = JoinRequest(
            user_id=user_id,
            user_name=user_name,
            user_email=user_email,
            message=message,
            requested_at=self.clock(),
        )

        def add_request(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise ClassNotFound(class_id)
            data = ClassData.from_document(class_id, document)
            data.pending_join_requests[user_id] = request
            return data.to_document()

        document = await self.store.transact(class_path(class_id), add_request)
        logger.info("Join request submitted", extra={"user_id": user_id, "class_id": class_id})
        return ClassData.from_document(class_id, document)

    async def _drop_request(self, class_id: str, user_id: str) -> None:
        def drop(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise ClassNotFound(class_id)
            data = ClassData.from_document(class_id, document)
            data.pending_join_requests.pop(user_id, None)
            return data.to_document()

        await self.store.transact(class_path(class_id), drop)

    async def approve_join_request(self, class_id: str, user_id: str) -> UserProfile:
        profile = await self.enroll(user_id, class_id)
        await self._drop_request(class_id, user_id)
        logger.info("Join request approved", extra={"user_id": user_id, "class_id": class_id})
        return profile

    async def deny_join_request(self, class_id: str, user_id: str) -> None:
        await self._drop_request(class_id, user_id)
        logger.info("Join request denied", extra={"user_id": user_id, "class_id": class_id})
