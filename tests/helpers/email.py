import re

from mfa_engine.external_services.email import EmailProvider

CODE_PATTERN = re.compile(r">(\d{6})</p>")


class RecordingEmailProvider(EmailProvider):
    """Keeps every message instead of sending it. ``fail`` makes delivery refuse."""

    def __init__(self) -> None:
        self.sent: list[tuple[list[str], str, str]] = []
        self.fail = False

    async def send_email(self, to_emails: list[str], subject: str, html_content: str) -> bool:
        if self.fail:
            return False
        self.sent.append((to_emails, subject, html_content))
        return True

    @property
    def last_code(self) -> str:
        match = CODE_PATTERN.search(self.sent[-1][2])
        assert match, "no verification code in the last email"
        return match.group(1)
