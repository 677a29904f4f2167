# tests/test_workflow.py - Ticket status transitions
from datetime import datetime, timezone

import pytest

from exceptions import ValidationFailed
from models import Ticket, TicketStatus
from workflow import ALLOWED_STATUSES, apply_status, parse_status

NOW = datetime(2026, 3, 14, 15, 9, 26, tzinfo=timezone.utc)


def _ticket(status=TicketStatus.TO_DO, completed_at=None):
    return Ticket(title="t", status=status, completed_at=completed_at)


class TestParseStatus:
    @pytest.mark.parametrize("raw", ALLOWED_STATUSES)
    def test_known_statuses(self, raw):
        assert parse_status(raw).value == raw

    def test_surrounding_whitespace_is_ignored(self):
        assert parse_status("  In_Review\t") == TicketStatus.IN_REVIEW

    def test_enum_passes_through(self):
        assert parse_status(TicketStatus.DONE) is TicketStatus.DONE

    @pytest.mark.parametrize("raw", ["", None, "done", "In Progress", "Closed"])
    def test_rejected(self, raw):
        with pytest.raises(ValidationFailed) as exc:
            parse_status(raw)
        assert exc.value.status_code == 400
        assert "To_Do, In_Progress, In_Review, Done" in exc.value.detail


class TestApplyStatus:
    def test_entering_done_stamps_completion(self):
        ticket = _ticket()
        assert apply_status(ticket, "Done", now=NOW) == TicketStatus.TO_DO
        assert ticket.status == TicketStatus.DONE
        assert ticket.completed_at == NOW

    def test_leaving_done_clears_completion(self):
        ticket = _ticket(TicketStatus.DONE, completed_at=NOW)
        assert apply_status(ticket, TicketStatus.IN_PROGRESS) == TicketStatus.DONE
        assert ticket.completed_at is None

    @pytest.mark.parametrize("start", list(TicketStatus))
    @pytest.mark.parametrize("target", list(TicketStatus))
    def test_every_transition_is_allowed(self, start, target):
        ticket = _ticket(start, completed_at=NOW if start == TicketStatus.DONE else None)
        apply_status(ticket, target, now=NOW)
        assert ticket.status == target
        assert (ticket.completed_at is not None) == (target == TicketStatus.DONE)

    def test_same_status_changes_nothing(self):
        ticket = _ticket(TicketStatus.IN_REVIEW)
        assert apply_status(ticket, "In_Review") is None
        assert ticket.completed_at is None

    def test_done_without_timestamp_is_repaired(self):
        ticket = _ticket(TicketStatus.DONE)
        assert apply_status(ticket, "Done", now=NOW) is None
        assert ticket.completed_at == NOW

    def test_invalid_target_leaves_ticket_alone(self):
        ticket = _ticket(TicketStatus.IN_PROGRESS)
        with pytest.raises(ValidationFailed):
            apply_status(ticket, "Blocked")
        assert ticket.status == TicketStatus.IN_PROGRESS
