import uuid
from datetime import datetime

from config.constants import AUDIT_RETENTION_DAYS
from utils.repositories import AuditLogRepository

AUDIT_TTL_SECONDS = AUDIT_RETENTION_DAYS * 24 * 60 * 60


class AuditLog:
    def __init__(self, repo: AuditLogRepository, clock=datetime.utcnow):
        self.repo = repo
        self._clock = clock

    async def log(
        self,
        actor_id: str | None,
        actor_role: str,
        action: str,
        metadata: dict | None = None,
    ) -> dict:
        now = self._clock()
        entry = {
            "actor_id": actor_id,
            "actor_role": actor_role,
            "action": action,
            "metadata": metadata or {},
            "created_at": now.isoformat(),
        }
        # ISO prefix keeps scan order chronological
        await self.repo.append(f"{now.isoformat()}:{uuid.uuid4().hex}", entry, AUDIT_TTL_SECONDS)
        return entry

    async def recent(self, limit: int = 100) -> list[dict]:
        return await self.repo.list(limit=limit)
