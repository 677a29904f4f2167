# tests/test_events.py - Outbox, notifier dispatch and email rendering
from types import SimpleNamespace

import pytest

import email_service
import events
from email_service import (
    LogEmailService, MailgunEmailService, SendGridEmailService,
    create_email_service, render_template, TEMPLATE_NOT_FOUND,
)
from events import ChangeEvent, Notifier, Outbox, ticket_recipients


class FakeBroadcaster:
    def __init__(self, fail=False):
        self.fail = fail
        self.messages = []

    async def broadcast(self, message):
        if self.fail:
            raise RuntimeError("socket gone")
        self.messages.append(message)


class FakeEmailService:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.sent = []

    async def send(self, to, subject, html_body):
        if to in self.fail_for:
            raise RuntimeError("smtp down")
        self.sent.append((to, subject, html_body))
        return True


def _user(uid, email, deleted=False, verified=True):
    return SimpleNamespace(id=uid, email=email, is_deleted=deleted, is_verified=verified)


class TestOutbox:
    def test_email_without_recipients_is_dropped(self):
        outbox = Outbox()
        outbox.email("TicketAssigned", "subject", [])
        assert outbox.emails == []

    def test_placeholders_are_strings(self):
        outbox = Outbox()
        outbox.email("AdminTicketReassignment", "s", ["a@omnitak.com"], TicketCount=3, Missing=None)
        placeholders = outbox.emails[0].placeholders
        assert placeholders["TicketCount"] == "3"
        assert placeholders["Missing"] == ""
        assert placeholders["CurrentYear"].isdigit()

    def test_change_event_message(self):
        message = ChangeEvent("ticket", 7, "updated", old_status="To_Do").to_message()
        assert message["type"] == "entity.changed"
        assert message["entityType"] == "ticket"
        assert message["entityId"] == 7
        assert message["action"] == "updated"
        assert message["oldStatus"] == "To_Do"
        assert "timestamp" in message

    def test_change_event_without_old_status(self):
        assert "oldStatus" not in ChangeEvent("project", 1, "created").to_message()


class TestRecipients:
    def test_deduplicates_and_skips_inactive(self):
        alice = _user(1, "alice@omnitak.com")
        bob = _user(2, "bob@omnitak.com", deleted=True)
        carol = _user(3, "carol@omnitak.com", verified=False)
        assert ticket_recipients(alice, None, bob, carol, alice) == ["alice@omnitak.com"]


@pytest.mark.asyncio
class TestNotifier:
    async def test_dispatch(self):
        broadcaster, mailer = FakeBroadcaster(), FakeEmailService()
        outbox = Outbox()
        outbox.record("ticket", 1, "created")
        outbox.email("NewTicketCreated", "New ticket", ["a@omnitak.com", "b@omnitak.com"], TicketTitle="T")

        await Notifier(broadcaster, mailer).dispatch(outbox)

        assert [m["entityId"] for m in broadcaster.messages] == [1]
        assert [to for to, _, _ in mailer.sent] == ["a@omnitak.com", "b@omnitak.com"]

    async def test_failures_are_isolated(self):
        mailer = FakeEmailService(fail_for={"a@omnitak.com"})
        outbox = Outbox()
        outbox.record("ticket", 1, "updated")
        outbox.record("ticket", 2, "updated")
        outbox.email("TicketAssigned", "Assigned", ["a@omnitak.com", "b@omnitak.com"])

        await Notifier(FakeBroadcaster(fail=True), mailer).dispatch(outbox)

        assert [to for to, _, _ in mailer.sent] == ["b@omnitak.com"]

    async def test_unreadable_template_skips_only_its_email(self, monkeypatch):
        def render(template, placeholders):
            if template == "AccountDeleted":
                raise PermissionError("email_templates/AccountDeleted.html")
            return f"<p>{template}</p>"

        monkeypatch.setattr(events, "render_template", render)
        mailer = FakeEmailService()
        outbox = Outbox()
        outbox.email("AccountDeleted", "Deleted", ["gone@omnitak.com"])
        outbox.email("AdminTicketReassignment", "Reassigned", ["admin@omnitak.com"])

        await Notifier(FakeBroadcaster(), mailer).dispatch(outbox)

        assert mailer.sent == [("admin@omnitak.com", "Reassigned", "<p>AdminTicketReassignment</p>")]


class TestTemplates:
    def test_placeholders_are_html_escaped(self):
        body = render_template("NewCommentAdded", {"CommentContent": "<script>alert(1)</script>"})
        assert "&lt;script&gt;alert(1)&lt;/script&gt;" in body
        assert "<script>" not in body

    def test_every_template_exists(self):
        for name in (
            "AccountDeleted", "AccountVerified", "AdminTicketReassignment", "NewCommentAdded",
            "NewTicketCreated", "TicketAssigned", "TicketStatusUpdated",
        ):
            assert render_template(name, {"CurrentYear": "2026"}) != TEMPLATE_NOT_FOUND

    def test_missing_template_falls_back(self):
        assert render_template("NoSuchTemplate") == TEMPLATE_NOT_FOUND


@pytest.mark.asyncio
class TestEmailProviders:
    async def test_log_provider(self):
        assert await LogEmailService().send("a@omnitak.com", "Hi", "<p>Hi</p>") is True

    async def test_unconfigured_providers_report_failure(self):
        assert await MailgunEmailService(api_key="", domain="").send("a@omnitak.com", "Hi", "x") is False
        assert await SendGridEmailService(api_key="").send("a@omnitak.com", "Hi", "x") is False

    def test_factory(self):
        assert isinstance(create_email_service("log"), LogEmailService)
        assert isinstance(create_email_service("mailgun"), MailgunEmailService)
        assert isinstance(create_email_service("carrier-pigeon"), LogEmailService)

    def test_providers_registry(self):
        assert set(email_service.PROVIDERS) == {"log", "mailgun", "sendgrid", "mailjet"}
