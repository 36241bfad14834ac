"""Append-only audit trail for playbook lifecycle events."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.playbook import AuditLog

logger = logging.getLogger(__name__)


class AuditService:
    """Writes audit rows inside the caller's transaction; never commits."""

    def __init__(self, db: AsyncSession):
        self.db = db

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: Optional[str],
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditLog:
        entry = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            details=details,
            timestamp=datetime.utcnow(),
        )
        self.db.add(entry)
        logger.debug(
            f"Audit {entity_type}:{entity_id} {action} "
            f"{from_status or '-'} -> {to_status or '-'} by {actor_id}"
        )
        return entry

    async def list_for_entity(self, entity_type: str, entity_id: str) -> List[AuditLog]:
        result = await self.db.execute(
            select(AuditLog)
            .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.timestamp)
        )
        return list(result.scalars().all())
