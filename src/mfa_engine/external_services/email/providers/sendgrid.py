import asyncio
import logging

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from mfa_engine.external_services.email.base import EmailProvider, EmailProviderConfig

logger = logging.getLogger(__name__)


class SendGridEmailProvider(EmailProvider):
    """Delivers verification code mails through the SendGrid v3 API."""

    def __init__(self, config: EmailProviderConfig) -> None:
        self.sender = config.from_email
        self.client = SendGridAPIClient(config.api_key) if config.api_key else None
        if self.client is None:
            logger.warning("EMAIL_PROVIDER_API_KEY is empty; SendGrid deliveries will be refused.")

    async def send_email(self, to_emails: list[str], subject: str, html_content: str) -> bool:
        if self.client is None:
            logger.error("[SendGrid] Refusing to send: no API key configured")
            return False

        message = Mail(
            from_email=self.sender,
            to_emails=to_emails,
            subject=subject,
            html_content=html_content,
        )

        try:
            # Blocking HTTP client
            response = await asyncio.to_thread(self.client.send, message)
        except Exception as e:
            logger.error(f"[SendGrid] Delivery to {len(to_emails)} recipient(s) failed: {e}")
            return False

        if not 200 <= response.status_code < 300:
            logger.error(f"[SendGrid] Rejected with status {response.status_code}")
            return False

        logger.info(f"[SendGrid] Accepted for {len(to_emails)} recipient(s)")
        return True
