"""Resolve a manifest's required integrations against a target org."""

import logging
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from models.integration import IntegrationConnection, IntegrationProvider

logger = logging.getLogger(__name__)


class IntegrationMapping(BaseModel):
    provider: str
    connected: bool
    connection_id: Optional[str] = None


class IntegrationMapper:
    """Reports which required providers the target org has connected.

    A missing provider or connection is not an error: deployment goes
    ahead and the gap is surfaced on the installation afterwards.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def map_integrations(
        self,
        required_integrations: List[str],
        target_org_id: str,
        target_workspace_id: Optional[str] = None,
    ) -> List[IntegrationMapping]:
        mappings: List[IntegrationMapping] = []
        seen = set()

        for key in required_integrations:
            if key in seen:
                continue
            seen.add(key)

            provider_result = await self.db.execute(
                select(IntegrationProvider).where(
                    IntegrationProvider.key == key,
                    IntegrationProvider.is_active.is_(True),
                )
            )
            provider = provider_result.scalar_one_or_none()
            if provider is None:
                logger.warning(f"Required integration '{key}' has no registered provider")
                mappings.append(IntegrationMapping(provider=key, connected=False))
                continue

            query = select(IntegrationConnection).where(
                IntegrationConnection.provider_id == provider.id,
                IntegrationConnection.organization_id == target_org_id,
                IntegrationConnection.is_active.is_(True),
            )
            if target_workspace_id:
                query = query.where(
                    or_(
                        IntegrationConnection.workspace_id.is_(None),
                        IntegrationConnection.workspace_id == target_workspace_id,
                    )
                )
            # Prefer a workspace-scoped connection over an org-wide one
            query = query.order_by(IntegrationConnection.workspace_id.is_(None))

            connection_result = await self.db.execute(query.limit(1))
            connection = connection_result.scalar_one_or_none()
            if connection is None:
                logger.warning(
                    f"Org {target_org_id} has no active '{key}' connection; "
                    f"integration will need to be connected after install"
                )
                mappings.append(IntegrationMapping(provider=key, connected=False))
            else:
                mappings.append(
                    IntegrationMapping(provider=key, connected=True, connection_id=connection.id)
                )

        return mappings
