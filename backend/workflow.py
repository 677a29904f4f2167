# workflow.py - Ticket status workflow
# Any status may move to any other status. The only side effect is on
# completed_at: entering Done stamps it, leaving Done clears it.

from datetime import datetime
from typing import Optional, Union

from exceptions import ValidationFailed
from models import Ticket, TicketStatus, utcnow

ALLOWED_STATUSES = [s.value for s in TicketStatus]


def parse_status(value: Union[str, TicketStatus, None]) -> TicketStatus:
    """Convert a client-supplied status string into a TicketStatus, or raise ValidationFailed."""
    if isinstance(value, TicketStatus):
        return value
    candidate = (value or "").strip()
    try:
        return TicketStatus(candidate)
    except ValueError:
        raise ValidationFailed(
            f"Invalid ticket status provided: '{value}'. "
            f"Expected one of: {', '.join(ALLOWED_STATUSES)}."
        )


def apply_status(
    ticket: Ticket,
    new_status: Union[str, TicketStatus],
    now: Optional[datetime] = None,
) -> Optional[TicketStatus]:
    """Move a ticket to new_status.

    Returns the previous status when the status actually changed, None when the
    ticket was already in new_status (nothing is touched in that case).
    """
    target = parse_status(new_status)
    current = TicketStatus(ticket.status) if ticket.status is not None else None

    if current == target:
        if target == TicketStatus.DONE and ticket.completed_at is None:
            ticket.completed_at = now or utcnow()
        return None

    ticket.status = target
    if target == TicketStatus.DONE:
        ticket.completed_at = now or utcnow()
    else:
        ticket.completed_at = None
    return current
