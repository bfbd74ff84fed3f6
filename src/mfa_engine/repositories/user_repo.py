import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mfa_engine.core.exceptions import ConcurrentUpdateError, CredentialConflictError
from mfa_engine.models import MFAMethodORM, UserORM
from mfa_engine.repositories.postgres_repo import PostgresRepository
from mfa_engine.schemas.mfa import MFAMethod
from mfa_engine.schemas.user import UserRecord, UserStatus

logger = logging.getLogger(__name__)


class UserRepository(PostgresRepository[UserORM]):
    """
    User store for the MFA core.

    Reads return ``UserRecord`` snapshots carrying the row's ``revision``.
    ``update`` writes a snapshot back as a single compare-and-swap: it only
    succeeds when nobody else has written the user since the snapshot was read.
    """

    def __init__(self, session: AsyncSession):
        super().__init__(UserORM, session)

    @staticmethod
    def to_record(user: UserORM) -> UserRecord:
        return UserRecord(
            id=user.id,
            email=user.email,
            password_hash=user.password_hash,
            status=user.status,
            revision=user.revision,
            mfa_methods=[
                MFAMethod(
                    id=method.id,
                    type=method.type,
                    name=method.name,
                    enabled=method.enabled,
                    created_at=method.created_at,
                    metadata=method.method_metadata,
                )
                for method in user.mfa_methods
            ],
        )

    async def get_record(self, user_id: str) -> UserRecord | None:
        user = await self.get(user_id)
        return self.to_record(user) if user else None

    async def get_by_email(self, email: str) -> UserRecord | None:
        query = (
            select(self.model)
            .where(self.model.email == email)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        user = result.scalar_one_or_none()
        return self.to_record(user) if user else None

    async def get_by_passkey_credential_id(self, credential_id: str) -> UserRecord | None:
        """Owner of an enabled passkey, resolved through the unique credential index."""
        query = (
            select(self.model)
            .join(MFAMethodORM, MFAMethodORM.user_id == self.model.id)
            .where(
                MFAMethodORM.credential_id == credential_id,
                MFAMethodORM.enabled.is_(True),
            )
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(query)
        user = result.scalar_one_or_none()
        return self.to_record(user) if user else None

    async def create_user(
        self,
        email: str,
        password_hash: str | None,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> UserRecord:
        user = await self.create(
            {
                "id": str(uuid.uuid4()),
                "email": email,
                "password_hash": password_hash,
                "status": status,
                "revision": 0,
            }
        )
        await self.session.commit()
        return self.to_record(user)

    async def update(self, user: UserRecord) -> UserRecord:
        """
        Persist the MFA methods of ``user`` if its revision is still current.

        Raises ConcurrentUpdateError when another write got there first and
        CredentialConflictError when a passkey credential id is already taken.
        """
        now = datetime.now(UTC)
        result = await self.session.execute(
            update(UserORM)
            .where(UserORM.id == user.id, UserORM.revision == user.revision)
            .values(revision=UserORM.revision + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            await self.session.rollback()
            logger.warning(f"Stale write rejected. user_id={user.id} revision={user.revision}")
            raise ConcurrentUpdateError()

        user_orm = await self.get(user.id)
        if user_orm is None:
            await self.session.rollback()
            raise ConcurrentUpdateError()

        existing = {method.id: method for method in user_orm.mfa_methods}
        wanted = set()
        for position, method in enumerate(user.mfa_methods):
            wanted.add(method.id)
            method_orm = existing.get(method.id)
            if method_orm is None:
                method_orm = MFAMethodORM(user_id=user.id, id=method.id)
                user_orm.mfa_methods.append(method_orm)

            method_orm.position = position
            method_orm.type = method.type
            method_orm.name = method.name
            method_orm.enabled = method.enabled
            method_orm.created_at = method.created_at
            method_orm.method_metadata = method.metadata.model_dump(mode="json")
            method_orm.credential_id = method.credential_id

        for method_orm in list(user_orm.mfa_methods):
            if method_orm.id not in wanted:
                user_orm.mfa_methods.remove(method_orm)

        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise CredentialConflictError() from exc

        return user.model_copy(update={"revision": user.revision + 1})
