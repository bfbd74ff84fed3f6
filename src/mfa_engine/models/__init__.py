from .mfa_method import MFAMethodORM
from .user import UserORM

__all__ = [
    "MFAMethodORM",
    "UserORM",
]
