from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mfa_engine.core.postgres import Base
from mfa_engine.schemas.mfa import MFAMethodType


class MFAMethodORM(Base):
    """
    One enrolled second factor of a user.

    The type-specific payload lives in the JSON ``metadata`` column. Passkeys
    also copy their credential id into ``credential_id``, which carries a
    unique index: passwordless login resolves the owner of a credential with a
    direct lookup, and two users can never register the same authenticator.
    """

    __tablename__ = "mfa_methods"

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    id: Mapped[str] = mapped_column(String(32), primary_key=True)

    # Enrollment order within the user
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    type: Mapped[MFAMethodType] = mapped_column(SQLEnum(MFAMethodType), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    method_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSON, nullable=False)

    credential_id: Mapped[str | None] = mapped_column(
        String(1024), unique=True, index=True, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )

    user = relationship("UserORM", back_populates="mfa_methods")

    def __repr__(self) -> str:
        return f"<MFAMethod type={self.type} id={self.id} user_id={self.user_id}>"
