import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import settings

logger = logging.getLogger(__name__)


STATUS_COPY = {
    "ACTIVE": ("is now active", "Your included support hours are available right away."),
    "PAUSED": ("has been paused", "Billing and support are on hold until the plan is resumed."),
    "CANCELLED": (
        "has been cancelled",
        "You keep full access until the end of the current billing period.",
    ),
}


class EmailService:
    """
    Centralized email utility for StudioDesk.
    Sends maintenance plan notifications via SendGrid.
    """

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        self.sendgrid_api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.sender_email = sender_email if sender_email is not None else settings.MAIL_FROM

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    # ============================================================
    # ✅ Plan status notification (synchronous for BackgroundTasks)
    # ============================================================
    def send_plan_status_email(
        self,
        to_email: str,
        project_name: str,
        tier_name: str,
        status: str,
        sync_warning: bool = False,
    ) -> bool:
        headline, detail = STATUS_COPY.get(status, (f"is now {status.lower()}", ""))

        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {to_email}")
            logger.info(f"Plan for {project_name} ({tier_name}) {headline}")
            return True

        subject = f"Your {tier_name} maintenance plan {headline}"
        billing_note = (
            "<p><small>Our billing system is catching up with this change. "
            "No action is needed on your side.</small></p>"
            if sync_warning else ""
        )

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>Maintenance plan update</h2>
            <p>The <strong>{tier_name}</strong> plan for <strong>{project_name}</strong> {headline}.</p>
            <p>{detail}</p>
            <p style="text-align: center; margin: 20px 0;">
                <a href="{settings.FRONTEND_URL}/client/billing" style="
                    background-color: #4F46E5;
                    color: white;
                    padding: 12px 28px;
                    text-decoration: none;
                    border-radius: 6px;
                    font-weight: bold;
                    display: inline-block;
                ">View billing</a>
            </p>
            {billing_note}
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Best regards,<br><strong>The StudioDesk Team</strong></p>
        </div>
        """

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Plan status email sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send plan status email to %s: %s", to_email, e)
            return False


# ============================================================
# ✅ Global instance for app-wide import
# ============================================================
email_service = EmailService()
