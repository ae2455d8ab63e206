"""Domain models for support tickets."""
import enum
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class TicketStatus(str, enum.Enum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"


class SupportTicket(BaseModel):
    """Ticket stored at ``supportTickets/<support_id>``."""
    support_id: str
    user_id: str
    user_display_name: Optional[str] = None
    subject: str
    language: str = "English"
    user_comment: Optional[str] = None
    status: TicketStatus = TicketStatus.OPEN
    admin_resolution_message: Optional[str] = None
    timestamp: datetime
    last_updated_at: Optional[datetime] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)
