import logging
import re

from mfa_engine.external_services.email.base import EmailProvider

logger = logging.getLogger(__name__)

_TAGS = re.compile(r"<[^>]+>")
_SPACES = re.compile(r"\s+")


class ConsoleEmailProvider(EmailProvider):
    """Writes verification mails to the log instead of sending them. For local development."""

    async def send_email(self, to_emails: list[str], subject: str, html_content: str) -> bool:
        text = _SPACES.sub(" ", _TAGS.sub(" ", html_content)).strip()
        logger.info(f"[ConsoleEmail] to={', '.join(to_emails)} subject={subject!r}")
        logger.info(f"[ConsoleEmail] {text}")
        return True
