import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

logger = logging.getLogger(__name__)


class AuditService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.collection = db["audit_logs"]

    async def log(
        self,
        *,
        actor_id: str | None = None,
        action: str,
        resource: str,
        resource_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        status: str = "success",
    ) -> None:
        try:
            document = {
                "_id": str(uuid.uuid4()),
                "actor_id": actor_id,
                "action": action,
                "resource": resource,
                "resource_id": resource_id,
                "status": status,
                "metadata": metadata or {},
                "ip_address": ip_address,
                "user_agent": user_agent,
                "created_at": datetime.now(UTC),
            }
            await self.collection.insert_one(document)
        except Exception as exc:
            # Best effort: an audit outage must not fail an authentication
            logger.warning(f"Audit log write failed. action={action} error={exc}")
