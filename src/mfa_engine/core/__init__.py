from .config import settings
from .security import SecretCodec, SecurityUtils, secret_codec, token_manager

__all__ = ["settings", "SecretCodec", "SecurityUtils", "secret_codec", "token_manager"]
