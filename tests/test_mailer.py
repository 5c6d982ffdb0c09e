import json

import httpx
import pytest

from runpool.core.errors import SendFailure
from runpool.services.mailer import EmailMessage, ResendMailer, format_cents, render_email, send_best_effort

MESSAGE = EmailMessage(to="runner@example.com", subject="Hi", html="<p>Hi</p>")


def _mailer(handler) -> ResendMailer:
    return ResendMailer(
        "re_test_key",
        "RunPool <no-reply@runpool.space>",
        api_url="https://api.resend.test/emails",
        transport=httpx.MockTransport(handler),
    )


def test_send_posts_to_resend():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "email_123"})

    assert _mailer(handler).send(MESSAGE) == "email_123"
    assert seen["auth"] == "Bearer re_test_key"
    assert seen["body"] == {
        "from": "RunPool <no-reply@runpool.space>",
        "to": ["runner@example.com"],
        "subject": "Hi",
        "html": "<p>Hi</p>",
    }


@pytest.mark.parametrize("response", [
    httpx.Response(422, json={"message": "invalid from"}),
    httpx.Response(500, text="oops"),
    httpx.Response(200, json={}),
])
def test_non_accepted_answers_are_send_failures(response):
    with pytest.raises(SendFailure):
        _mailer(lambda request: response).send(MESSAGE)


def test_timeout_is_send_failure():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(SendFailure) as exc:
        _mailer(handler).send(MESSAGE)
    assert "timed out" in exc.value.detail


def test_send_best_effort_swallows_failures(caplog):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    assert send_best_effort(_mailer(handler), MESSAGE) is None
    assert send_best_effort(None, MESSAGE) is None
    assert "runner@example.com" in caplog.text


def test_render_email_uses_templates():
    message = render_email(
        "payment_reminder.html",
        "Reminder for {{ name }}",
        to="runner@example.com",
        name="Ana",
        period_id="2026-W42",
        groups=[{"id": 1, "name": "<G1>", "amount": 2500}],
    )
    assert message.subject == "Reminder for Ana"
    assert "&lt;G1&gt;" in message.html
    assert "$25.00" in message.html
    assert format_cents(123456) == "$1,234.56"
