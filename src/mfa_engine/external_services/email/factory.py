import logging

from mfa_engine.core.config import settings
from mfa_engine.external_services.email.base import EmailProvider, EmailProviderConfig
from mfa_engine.external_services.email.providers.console import ConsoleEmailProvider
from mfa_engine.external_services.email.providers.sendgrid import SendGridEmailProvider

logger = logging.getLogger(__name__)


class EmailServiceFactory:
    @staticmethod
    def default_config() -> EmailProviderConfig:
        return EmailProviderConfig(
            provider_type=settings.EMAIL_PROVIDER,
            api_key=settings.EMAIL_PROVIDER_API_KEY,
            from_email=settings.EMAIL_SENDER,
            is_active=True,
        )

    @staticmethod
    def create(config: EmailProviderConfig | None = None) -> EmailProvider:
        config = config or EmailServiceFactory.default_config()
        provider_type = str(config.provider_type).lower()

        if provider_type == "sendgrid":
            return SendGridEmailProvider(config)

        if provider_type != "console":
            logger.warning(f"Unknown provider type: {config.provider_type}. Falling back to Console.")
        return ConsoleEmailProvider()
