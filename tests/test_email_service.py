import pytest

from roboclub.models.otp_code import OtpPurpose
from roboclub.services import email_service


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port

    def ehlo(self):
        pass

    def starttls(self):
        pass

    def login(self, user, password):
        pass

    def sendmail(self, sender, recipients, message):
        FakeSMTP.sent.append((sender, recipients, message))

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture
def smtp_configured(monkeypatch):
    monkeypatch.setattr(email_service.settings, "smtp_user", "club@grobots.org")
    monkeypatch.setattr(email_service.settings, "smtp_password", "app-password")
    monkeypatch.setattr(email_service.settings, "smtp_port", 587)
    FakeSMTP.sent = []


@pytest.mark.parametrize(
    "purpose, subject",
    [
        (OtpPurpose.REGISTRATION, "Welcome to GROBOTS - verify your email"),
        (OtpPurpose.LOGIN, "GROBOTS login verification"),
        (OtpPurpose.PASSWORD_RESET, "GROBOTS password reset"),
    ],
)
def test_render_per_purpose(purpose, subject):
    rendered_subject, html, text = email_service.render_otp_email("483920", purpose, "Ada")

    assert rendered_subject == subject
    assert "483920" in html
    assert "Hi Ada," in html
    assert "10 minutes" in html
    assert "483920" in text


def test_render_escapes_name():
    _, html, _ = email_service.render_otp_email("483920", OtpPurpose.REGISTRATION, "<script>x</script>")

    assert "<script>" not in html
    assert "&lt;script&gt;" in html


def test_unconfigured_smtp_reports_failure(monkeypatch):
    monkeypatch.setattr(email_service.settings, "smtp_user", "")

    result = email_service.send_otp_email("a@x.com", "123456", OtpPurpose.LOGIN)

    assert result.success is False


def test_send_otp_email_delivers(smtp_configured, monkeypatch):
    monkeypatch.setattr(email_service.smtplib, "SMTP", FakeSMTP)

    result = email_service.send_otp_email("a@x.com", "123456", OtpPurpose.LOGIN, "Ada")

    assert result.success is True
    sender, recipients, message = FakeSMTP.sent[-1]
    assert sender == "club@grobots.org"
    assert recipients == ["a@x.com"]
    assert "GROBOTS login verification" in message


def test_smtp_error_becomes_failed_result(smtp_configured, monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no route")

    monkeypatch.setattr(email_service.smtplib, "SMTP", refuse)

    result = email_service.send_otp_email("a@x.com", "123456", OtpPurpose.REGISTRATION)

    assert result.success is False
    assert result.error == "ConnectionRefusedError"
