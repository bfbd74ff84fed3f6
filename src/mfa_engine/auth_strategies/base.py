# auth_strategies/base.py

from abc import ABC, abstractmethod
from datetime import UTC, datetime
from typing import Any

from mfa_engine.schemas.mfa import MFAMethod, MFAMethodType, VerificationResult
from mfa_engine.schemas.user import UserRecord


class BaseMFAStrategy(ABC):
    """
    Base class for all second-factor engines
    One strategy per method type; dispatch happens on ``MFAMethod.type``
    """

    def __init__(self, method_type: MFAMethodType):
        self.method_type = method_type
        self.name = method_type.value
        self.created_at = datetime.now(UTC)

    def supports(self, method: MFAMethod) -> bool:
        return method.type == self.method_type

    @abstractmethod
    async def verify(self, method: MFAMethod, proof: Any, user: UserRecord) -> VerificationResult:
        """
        Check a proof of possession against one enrolled method

        Args:
            method: The enrolled method to check against
            proof: Strategy specific proof (a code, or a passkey assertion)
            user: Owner of the method

        Returns:
            VerificationResult; ``metadata`` is set when the method's stored
            state must change (consumed backup code, new sign counter) and the
            caller has to persist it before treating the login as complete.
            A wrong proof is reported as ``verified=False`` rather than raised.
        """
        pass

    def get_strategy_metadata(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "created_at": self.created_at.isoformat(),
        }
