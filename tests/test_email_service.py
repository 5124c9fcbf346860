"""
Tests for plan status emails.
"""

from unittest.mock import MagicMock, patch

from services.email_service import EmailService


class TestPlanStatusEmail:
    def test_unconfigured_service_only_logs(self):
        service = EmailService(api_key="", sender_email="")

        with patch("services.email_service.SendGridAPIClient") as client:
            assert service.send_plan_status_email("c@example.com", "Site", "Essentials", "ACTIVE") is True

        client.assert_not_called()

    def test_sends_through_sendgrid(self):
        service = EmailService(api_key="SG.test", sender_email="billing@studiodesk.test")

        with patch("services.email_service.SendGridAPIClient") as client:
            client.return_value.send.return_value = MagicMock(status_code=202)
            sent = service.send_plan_status_email(
                "c@example.com", "Site", "Essentials", "CANCELLED", sync_warning=True
            )

        assert sent is True
        message = client.return_value.send.call_args.args[0]
        html = str(message.get())
        assert "has been cancelled" in html
        assert "catching up" in html

    def test_sendgrid_failure_returns_false(self):
        service = EmailService(api_key="SG.test", sender_email="billing@studiodesk.test")

        with patch("services.email_service.SendGridAPIClient") as client:
            client.return_value.send.side_effect = RuntimeError("boom")
            assert service.send_plan_status_email("c@example.com", "Site", "Essentials", "PAUSED") is False
