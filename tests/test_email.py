import smtplib

import pytest

from personachat.service.email import EmailService


class FakeSMTP:
    sent = []

    def __init__(self, host, port, timeout=None, context=None):
        self.host = host
        self.port = port
        self.logged_in = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        pass

    def close(self):
        pass

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        FakeSMTP.sent.append((from_addr, to_addr, message))


@pytest.fixture(autouse=True)
def clear_sent():
    FakeSMTP.sent = []
    yield


@pytest.fixture
def smtp_service():
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer@example.com",
        smtp_password="pw",
        from_email="noreply@example.com",
        base_url="https://persona.example.com/",
    )


def test_unconfigured_service_logs_instead_of_sending(monkeypatch):
    service = EmailService()

    def _fail(*args, **kwargs):
        raise AssertionError("SMTP must not be used in dev mode")

    monkeypatch.setattr(smtplib, "SMTP", _fail)

    assert service.is_configured is False
    assert service.send_password_reset("bob@example.com", "Bob", "tok") is True


def test_reset_mail_links_to_frontend(monkeypatch, smtp_service):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

    assert smtp_service.send_password_reset("bob@example.com", "Bob", "abc123") is True

    from_addr, to_addr, message = FakeSMTP.sent[0]
    assert from_addr == "noreply@example.com"
    assert to_addr == ["bob@example.com"]
    assert "https://persona.example.com/reset-password?token=abc123" in message


def test_verification_mail_links_to_frontend(monkeypatch, smtp_service):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

    smtp_service.send_welcome("bob@example.com", "Bob", "xyz789")

    assert "https://persona.example.com/verify-email?token=xyz789" in FakeSMTP.sent[0][2]


@pytest.mark.parametrize("name", ["", "   ", None])
def test_missing_name_greets_generic_user(monkeypatch, smtp_service, name):
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)

    smtp_service.send_welcome("bob@example.com", name, "xyz789")

    message = FakeSMTP.sent[0][2]
    assert "Welcome, User!" in message
    assert "Welcome, !" not in message


def test_implicit_tls_uses_smtp_ssl(monkeypatch):
    monkeypatch.setattr(smtplib, "SMTP_SSL", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_port=465,
        smtp_use_tls=False,
        from_email="noreply@example.com",
    )

    assert service.send_password_changed("bob@example.com", "Bob") is True
    assert len(FakeSMTP.sent) == 1


def test_connection_failure_returns_false(monkeypatch, smtp_service):
    def _refuse(*args, **kwargs):
        raise ConnectionRefusedError("no route")

    monkeypatch.setattr(smtplib, "SMTP", _refuse)

    assert smtp_service.send_email_verification("bob@example.com", "Bob", "tok") is False


def test_auth_failure_returns_false(monkeypatch, smtp_service):
    class BadLogin(FakeSMTP):
        def login(self, user, password):
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    monkeypatch.setattr(smtplib, "SMTP", BadLogin)

    assert smtp_service.send_password_reset("bob@example.com", "Bob", "tok") is False
    assert FakeSMTP.sent == []


def test_names_are_escaped_in_html():
    service = EmailService()

    html_body, text_body = service._render("Hi <b>", ["<script>x</script>"])

    assert "<script>" not in html_body
    assert "&lt;script&gt;" in html_body
    assert "<script>x</script>" in text_body
