# email_service.py - Outbound email: providers and HTML template rendering
# Providers:
# - log       (default) writes the message to the log, for development
# - mailgun   Mailgun HTTP API
# - sendgrid  SendGrid v3 HTTP API
# - mailjet   Mailjet v3.1 HTTP API
#
# send() never raises for delivery problems: it logs and returns False.

import os
import html
import logging
from pathlib import Path
from typing import Dict, Optional

import httpx

logger = logging.getLogger("stackflow.email")

EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "log").lower()
EMAIL_FROM = os.getenv("EMAIL_FROM", "StackFlow <no-reply@omnitak.com>")
EMAIL_TIMEOUT = float(os.getenv("EMAIL_TIMEOUT", "10"))

MAILGUN_API_KEY = os.getenv("MAILGUN_API_KEY", "")
MAILGUN_DOMAIN = os.getenv("MAILGUN_DOMAIN", "")
MAILGUN_BASE_URL = os.getenv("MAILGUN_BASE_URL", "https://api.mailgun.net/v3")
SENDGRID_API_KEY = os.getenv("SENDGRID_API_KEY", "")
MAILJET_API_KEY = os.getenv("MAILJET_API_KEY", "")
MAILJET_SECRET_KEY = os.getenv("MAILJET_SECRET_KEY", "")

TEMPLATE_DIR = Path(os.getenv("EMAIL_TEMPLATE_DIR", str(Path(__file__).parent / "email_templates")))
TEMPLATE_NOT_FOUND = "Email template not found."


def _split_sender(sender: str):
    """'Name <addr>' -> ('Name', 'addr'); bare addresses get an empty name."""
    if "<" in sender and sender.endswith(">"):
        name, _, addr = sender[:-1].partition("<")
        return name.strip(), addr.strip()
    return "", sender.strip()


# ============================================================
# TEMPLATES
# ============================================================

def render_template(template: str, placeholders: Optional[Dict[str, str]] = None) -> str:
    """Load email_templates/<template>.html and substitute HTML-escaped {{Key}} tokens.

    A missing template yields the literal fallback body instead of an error so
    a misconfigured deployment still sends something.
    """
    filename = template if template.endswith(".html") else f"{template}.html"
    path = TEMPLATE_DIR / filename
    try:
        body = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning(f"Email template not found: {path}")
        return TEMPLATE_NOT_FOUND

    for key, value in (placeholders or {}).items():
        body = body.replace("{{" + key + "}}", html.escape("" if value is None else str(value)))
    return body


# ============================================================
# PROVIDERS
# ============================================================

class EmailService:
    """Base email sender. Subclasses implement _deliver."""

    provider = "base"

    def __init__(self, sender: str = EMAIL_FROM):
        self.sender = sender

    async def send(self, to: str, subject: str, html_body: str) -> bool:
        try:
            ok = await self._deliver(to, subject, html_body)
        except httpx.HTTPError as e:
            logger.error(f"[{self.provider}] sending '{subject}' to {to} failed: {e}")
            return False
        if ok:
            logger.info(f"[{self.provider}] sent '{subject}' to {to}")
        return ok

    async def _deliver(self, to: str, subject: str, html_body: str) -> bool:
        raise NotImplementedError


class LogEmailService(EmailService):
    provider = "log"

    async def _deliver(self, to: str, subject: str, html_body: str) -> bool:
        logger.info(f"[log] email to={to} subject='{subject}' ({len(html_body)} chars)")
        return True


class MailgunEmailService(EmailService):
    provider = "mailgun"

    def __init__(self, api_key: str = MAILGUN_API_KEY, domain: str = MAILGUN_DOMAIN,
                 sender: str = EMAIL_FROM, base_url: str = MAILGUN_BASE_URL):
        super().__init__(sender)
        self.api_key = api_key
        self.domain = domain
        self.base_url = base_url.rstrip("/")

    async def _deliver(self, to: str, subject: str, html_body: str) -> bool:
        if not self.api_key or not self.domain:
            logger.error("Mailgun API key or domain is not configured.")
            return False
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT) as client:
            resp = await client.post(
                f"{self.base_url}/{self.domain}/messages",
                auth=("api", self.api_key),
                data={"from": self.sender, "to": to, "subject": subject, "html": html_body},
            )
        if resp.status_code >= 400:
            logger.error(f"Mailgun rejected email to {to}: {resp.status_code} {resp.text[:200]}")
            return False
        return True


class SendGridEmailService(EmailService):
    provider = "sendgrid"
    API_URL = "https://api.sendgrid.com/v3/mail/send"

    def __init__(self, api_key: str = SENDGRID_API_KEY, sender: str = EMAIL_FROM):
        super().__init__(sender)
        self.api_key = api_key

    async def _deliver(self, to: str, subject: str, html_body: str) -> bool:
        if not self.api_key:
            logger.error("SendGrid API key is not configured.")
            return False
        name, address = _split_sender(self.sender)
        sender = {"email": address}
        if name:
            sender["name"] = name
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT) as client:
            resp = await client.post(
                self.API_URL,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "personalizations": [{"to": [{"email": to}]}],
                    "from": sender,
                    "subject": subject,
                    "content": [{"type": "text/html", "value": html_body}],
                },
            )
        if resp.status_code >= 400:
            logger.error(f"SendGrid rejected email to {to}: {resp.status_code}")
            return False
        return True


class MailjetEmailService(EmailService):
    provider = "mailjet"
    API_URL = "https://api.mailjet.com/v3.1/send"

    def __init__(self, api_key: str = MAILJET_API_KEY, secret_key: str = MAILJET_SECRET_KEY,
                 sender: str = EMAIL_FROM):
        super().__init__(sender)
        self.api_key = api_key
        self.secret_key = secret_key

    async def _deliver(self, to: str, subject: str, html_body: str) -> bool:
        if not self.api_key or not self.secret_key:
            logger.error("Mailjet API key or Secret key is not configured.")
            return False
        name, address = _split_sender(self.sender)
        async with httpx.AsyncClient(timeout=EMAIL_TIMEOUT) as client:
            resp = await client.post(
                self.API_URL,
                auth=(self.api_key, self.secret_key),
                json={"Messages": [{
                    "From": {"Email": address, "Name": name},
                    "To": [{"Email": to}],
                    "Subject": subject,
                    "HTMLPart": html_body,
                }]},
            )
        if resp.status_code >= 400:
            logger.error(f"Mailjet rejected email to {to}: {resp.status_code}")
            return False
        messages = resp.json().get("Messages", [])
        if not messages or messages[0].get("Status") != "success":
            logger.error(f"Mailjet did not accept email to {to}: {messages[:1]}")
            return False
        return True


PROVIDERS = {
    "log": LogEmailService,
    "mailgun": MailgunEmailService,
    "sendgrid": SendGridEmailService,
    "mailjet": MailjetEmailService,
}


def create_email_service(provider: str = EMAIL_PROVIDER) -> EmailService:
    cls = PROVIDERS.get(provider)
    if cls is None:
        logger.warning(f"Unknown EMAIL_PROVIDER '{provider}', falling back to log")
        cls = LogEmailService
    return cls()
