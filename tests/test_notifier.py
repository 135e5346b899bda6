import smtplib
from datetime import datetime, timezone

import pytest

from config import SmtpSettings
from errors import DailyLimitExceededError, DispatchError
from notifier import EmailSender, render_alert_email
from quota import QuotaCounters

SMTP = SmtpSettings(address="alerts@example.com", password="app-pass", server="smtp.example.com", port=2525)


class FakeSMTP:
    instances = []

    def __init__(self, host, port, timeout=None, fail_on_send=False):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.fail_on_send = fail_on_send
        self.events = []
        self.sent = []
        FakeSMTP.instances.append(self)

    def starttls(self):
        self.events.append("starttls")

    def login(self, user, password):
        self.events.append(("login", user, password))

    def send_message(self, msg):
        if self.fail_on_send:
            raise smtplib.SMTPServerDisconnected("connection lost")
        self.sent.append(msg)

    def quit(self):
        self.events.append("quit")


@pytest.fixture(autouse=True)
def _reset_instances():
    FakeSMTP.instances = []


def test_render_alert_email_escapes_reason():
    subject, body = render_alert_email(
        asset_id="bitcoin",
        name="Bitcoin",
        action="BUY",
        confidence=0.78,
        price=43210.5,
        reason="<script>alert(1)</script>\nsecond line",
    )
    assert subject == "Signal Alert — BUY BITCOIN"
    assert "&lt;script&gt;" in body
    assert "<script>" not in body
    assert "<br>second line" in body
    assert "$43,210.50" in body
    assert "78.0%" in body


def test_render_alert_email_small_price_and_missing_values():
    _, body = render_alert_email(
        asset_id="shiba-inu", name=None, action="HOLD", confidence=None, price=0.00001234, reason=""
    )
    assert "$0.00001234" in body
    assert "Confidence: <strong>N/A</strong>" in body


def test_send_delivers_over_starttls():
    sender = EmailSender(SMTP, smtp_factory=FakeSMTP)

    delivery_id = sender.send("user@example.com", "Subject", "<p>hi</p>")

    server = FakeSMTP.instances[0]
    assert (server.host, server.port, server.timeout) == ("smtp.example.com", 2525, 30)
    assert server.events == ["starttls", ("login", "alerts@example.com", "app-pass"), "quit"]
    msg = server.sent[0]
    assert msg["To"] == "user@example.com"
    assert msg["Message-ID"] == delivery_id


def test_missing_credentials_raise_dispatch_error():
    sender = EmailSender(SmtpSettings(), smtp_factory=FakeSMTP)
    with pytest.raises(DispatchError):
        sender.send("user@example.com", "s", "b")
    with pytest.raises(DispatchError):
        EmailSender(SMTP, smtp_factory=FakeSMTP).send("", "s", "b")
    assert FakeSMTP.instances == []


def test_smtp_failure_is_wrapped_and_connection_closed():
    def factory(host, port, timeout=None):
        return FakeSMTP(host, port, timeout, fail_on_send=True)

    sender = EmailSender(SMTP, smtp_factory=factory)
    with pytest.raises(DispatchError) as excinfo:
        sender.send("user@example.com", "s", "b")
    assert excinfo.value.recipient == "user@example.com"
    assert FakeSMTP.instances[0].events[-1] == "quit"


def test_daily_cap_stops_before_connecting():
    quota = QuotaCounters({"email": 1}, clock=lambda: datetime(2024, 1, 1, tzinfo=timezone.utc))
    sender = EmailSender(SMTP, quota=quota, smtp_factory=FakeSMTP)

    sender.send("a@example.com", "s", "b")
    with pytest.raises(DailyLimitExceededError):
        sender.send("b@example.com", "s", "b")
    assert len(FakeSMTP.instances) == 1
