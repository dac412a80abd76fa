import smtplib
from unittest.mock import MagicMock, patch

from studiogate.service.email import EmailService


def _configured() -> EmailService:
    return EmailService(
        smtp_host="smtp.example.com",
        smtp_port=587,
        smtp_user="mailer",
        smtp_password="secret",
        from_email="studio@example.com",
    )


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self):
        service = EmailService()

        with patch("studiogate.service.email.smtplib.SMTP") as smtp, patch(
            "studiogate.service.email.logger"
        ) as log:
            result = service.send_access_code(
                "owner@example.com", "AB3DEF", expiry_minutes=5, remaining_attempts=4, attempt_limit=5
            )

        assert service.is_configured is False
        assert result.success is True
        smtp.assert_not_called()
        assert log.info.called
        assert "AB3DEF" not in str(log.mock_calls)

    def test_unconfigured_outside_dev_mode_fails(self):
        service = EmailService(dev_mode=False)

        with patch("studiogate.service.email.smtplib.SMTP") as smtp, patch(
            "studiogate.service.email.logger"
        ) as log:
            result = service.send_access_code(
                "owner@example.com", "AB3DEF", expiry_minutes=5, remaining_attempts=4, attempt_limit=5
            )

        assert result.success is False
        assert result.error == "email not configured"
        smtp.assert_not_called()
        assert "AB3DEF" not in str(log.mock_calls)

    def test_access_code_message(self):
        service = _configured()
        server = MagicMock()

        with patch("studiogate.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            result = service.send_access_code(
                "owner@example.com", "AB3DEF", expiry_minutes=5, remaining_attempts=3, attempt_limit=5
            )

        assert result.success is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        from_addr, to_addr, raw = server.sendmail.call_args.args
        assert from_addr == "studio@example.com"
        assert to_addr == "owner@example.com"
        assert "Subject: Your Access Code" in raw

    def test_access_code_body_mentions_attempts(self):
        service = _configured()

        with patch.object(service, "send") as send:
            service.send_access_code(
                "owner@example.com", "AB3DEF", expiry_minutes=5, remaining_attempts=2, attempt_limit=5
            )

        to_addr, subject, html_body, text_body = send.call_args.args
        assert subject == "Your Access Code"
        assert "AB3DEF" in html_body
        assert "Remaining attempts: 2/5" in text_body
        assert "expires in 5 minutes" in text_body

    def test_smtp_failure_is_reported_not_raised(self):
        service = _configured()

        with patch("studiogate.service.email.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.side_effect = smtplib.SMTPServerDisconnected("gone")
            result = service.send("owner@example.com", "Hi", "<p>Hi</p>", "Hi")

        assert result.success is False
        assert result.error == "SMTPServerDisconnected"

    def test_connection_failure(self):
        service = _configured()

        with patch("studiogate.service.email.smtplib.SMTP", side_effect=OSError("refused")):
            result = service.send("owner@example.com", "Hi", "<p>Hi</p>")

        assert result.success is False
        assert result.error == "smtp connection failed"
