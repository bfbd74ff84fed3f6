from mfa_engine.external_services.email.base import EmailProvider, EmailProviderConfig
from mfa_engine.external_services.email.factory import EmailServiceFactory
from mfa_engine.external_services.email.notifier import EmailNotifier

__all__ = [
    "EmailProvider",
    "EmailProviderConfig",
    "EmailServiceFactory",
    "EmailNotifier",
]
