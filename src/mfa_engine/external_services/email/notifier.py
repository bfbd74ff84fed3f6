import logging

from mfa_engine.core.config import settings
from mfa_engine.core.exceptions import NotifierUnavailableError
from mfa_engine.external_services.email.base import EmailProvider

logger = logging.getLogger(__name__)


class EmailNotifier:
    """Delivers login verification codes. Any delivery failure is NotifierUnavailableError."""

    def __init__(self, provider: EmailProvider) -> None:
        self.provider = provider

    async def send_email_code(self, address: str, code: str) -> None:
        minutes = settings.EMAIL_CODE_TTL_SECONDS // 60
        html_content = f"""
        <html>
          <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
            <h2 style="color: #333;">Your {settings.APP_NAME} verification code</h2>
            <p>Use this code to finish signing in:</p>
            <p style="font-size: 28px; letter-spacing: 6px; font-weight: bold;">{code}</p>
            <p style="color:#888;font-size:13px;">
              The code expires in {minutes} minutes and can only be used once.
              If you didn't try to sign in, you can safely ignore this email.
            </p>
          </body>
        </html>
        """

        try:
            sent = await self.provider.send_email(
                [address],
                f"{settings.APP_NAME} verification code",
                html_content,
            )
        except Exception as exc:
            logger.error(f"[EmailCode] Provider raised while sending to {address}: {exc}")
            raise NotifierUnavailableError() from exc

        if not sent:
            logger.error(f"[EmailCode] Provider refused the message for {address}")
            raise NotifierUnavailableError()
