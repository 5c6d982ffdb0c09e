"""Notification sender backed by the Resend HTTP API."""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from runpool.core.config import settings
from runpool.core.errors import SendFailure

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates" / "email"

_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=select_autoescape(["html"], default_for_string=False),
)


@dataclass
class EmailMessage:
    to: str
    subject: str
    html: str


class Mailer(Protocol):
    def send(self, message: EmailMessage) -> str: ...


def base_context() -> dict[str, Any]:
    return {"app_url": settings.SITE_URL.rstrip("/")}


def render_email(template: str, subject: str, to: str, **context: Any) -> EmailMessage:
    ctx = {**base_context(), **context}
    return EmailMessage(
        to=to,
        subject=_env.from_string(subject).render(**ctx),
        html=_env.get_template(template).render(**ctx),
    )


def format_cents(cents: int | None) -> str:
    return f"${(cents or 0) / 100:,.2f}"


_env.filters["cents"] = format_cents


class ResendMailer:
    def __init__(
        self,
        api_key: str,
        sender: str,
        api_url: str = "https://api.resend.com/emails",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.sender = sender
        self.api_url = api_url
        self._client = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def send(self, message: EmailMessage) -> str:
        """Send one message; returns the provider message id.

        Raises ``SendFailure`` on timeout, transport errors and non-2xx
        answers. Resend gives no idempotency guarantee, callers keep their
        own send records.
        """
        try:
            resp = self._client.post(
                self.api_url,
                json={
                    "from": self.sender,
                    "to": [message.to],
                    "subject": message.subject,
                    "html": message.html,
                },
            )
        except httpx.TimeoutException as e:
            raise SendFailure("Notification sender timed out") from e
        except httpx.HTTPError as e:
            raise SendFailure(f"Notification sender unreachable: {e}") from e

        if not resp.is_success:
            raise SendFailure(f"Notification sender answered {resp.status_code}: {resp.text[:200]}")

        try:
            message_id = resp.json().get("id")
        except ValueError:
            message_id = None
        if not message_id:
            raise SendFailure("Notification sender returned no message id")
        return message_id

    def close(self) -> None:
        self._client.close()


def send_best_effort(mailer: Mailer | None, message: EmailMessage) -> str | None:
    """Transactional emails: a failure is logged, never raised."""
    if mailer is None:
        logger.warning("mailer not configured, skipping email to %s (%s)", message.to, message.subject)
        return None
    try:
        return mailer.send(message)
    except SendFailure as e:
        logger.warning("email to %s failed: %s", message.to, e.detail)
        return None
