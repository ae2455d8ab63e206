"""Support ticket creation and resolution.

This module handles:
- Opening tickets with a short unique support ID (e.g. ``1234A``)
- Listing tickets for the admin dashboard
- Moving tickets through Open -> In Progress -> Resolved
- Notifying the user on closure (logged; delivery is handled elsewhere)
"""
from typing import Any, Dict, List, Optional

from educore.core.errors import InvalidParameters, TicketNotFound
from educore.core.logging import get_logger
from educore.domain.support import SupportTicket, TicketStatus
from educore.infrastructure.store import DocumentStore
from educore.services.codes import ensure_unique, generate_support_id, normalize_code
from educore.services.ledger import Clock, utcnow

logger = get_logger(__name__)


def ticket_path(support_id: str) -> str:
    return f"supportTickets/{normalize_code(support_id)}"


class SupportDesk:
    """Support tickets kept at ``supportTickets/<support_id>``."""

    def __init__(self, store: DocumentStore, clock: Optional[Clock] = None):
        self.store = store
        self.clock = clock or utcnow

    async def open_ticket(
        self,
        user_id: str,
        subject: str,
        language: str = "English",
        user_display_name: Optional[str] = None,
        user_comment: Optional[str] = None,
    ) -> SupportTicket:
        """Create a ticket in the Open state.

        Args:
            user_id: User raising the ticket
            subject: Tutor subject the conversation was about
            language: Conversation language
            user_display_name: Name shown to admins
            user_comment: Free-text description from the user

        Returns:
            The stored ticket
        """
        if not user_id or not subject:
            raise InvalidParameters("Invalid support ticket data provided.")

        now = self.clock()

        def ticket_for(support_id: str) -> SupportTicket:
            return SupportTicket(
                support_id=support_id,
                user_id=user_id,
                user_display_name=user_display_name,
                subject=subject,
                language=language,
                user_comment=user_comment or None,
                status=TicketStatus.OPEN,
                timestamp=now,
                last_updated_at=now,
            )

        async def taken(candidate: str) -> bool:
            return not await self.store.create(ticket_path(candidate), ticket_for(candidate).to_document())

        support_id = await ensure_unique(generate_support_id, taken, namespace="support ID")
        logger.info("Support ticket opened", extra={"support_id": support_id, "user_id": user_id})
        return ticket_for(support_id)

    async def get_ticket(self, support_id: str) -> SupportTicket:
        document = await self.store.get(ticket_path(support_id))
        if document is None:
            raise TicketNotFound(support_id)
        return SupportTicket.model_validate(document)

    async def list_tickets(self) -> List[SupportTicket]:
        """All tickets, newest first."""
        documents = await self.store.children("supportTickets")
        tickets = [SupportTicket.model_validate(doc) for doc in documents.values()]
        return sorted(tickets, key=lambda t: t.timestamp, reverse=True)

    async def _set_status(
        self,
        support_id: str,
        status: TicketStatus,
        resolution: Optional[str] = None,
    ) -> SupportTicket:
        now = self.clock()

        def mutator(document: Optional[Dict[str, Any]]) -> Dict[str, Any]:
            if document is None:
                raise TicketNotFound(support_id)
            ticket = SupportTicket.model_validate(document)
            ticket.status = status
            ticket.last_updated_at = now
            if resolution is not None:
                ticket.admin_resolution_message = resolution
            return ticket.to_document()

        document = await self.store.transact(ticket_path(support_id), mutator)
        return SupportTicket.model_validate(document)

    async def mark_in_progress(self, support_id: str) -> SupportTicket:
        ticket = await self._set_status(support_id, TicketStatus.IN_PROGRESS)
        logger.info("Support ticket in progress", extra={"support_id": ticket.support_id})
        return ticket

    async def resolve_ticket(self, support_id: str, admin_resolution_message: str) -> SupportTicket:
        if not admin_resolution_message or not admin_resolution_message.strip():
            raise InvalidParameters("A resolution message is required to resolve a ticket.")

        ticket = await self._set_status(
            support_id, TicketStatus.RESOLVED, admin_resolution_message.strip()
        )
        logger.info("Support ticket resolved", extra={"support_id": ticket.support_id, "user_id": ticket.user_id})
        self.notify_closure(ticket)
        return ticket

    def notify_closure(self, ticket: SupportTicket) -> None:
        logger.info(
            f"Closure notice recorded for ticket {ticket.support_id}",
            extra={"support_id": ticket.support_id, "user_id": ticket.user_id},
        )
