"""Uninstall and rollback: cascade-delete what a deployment created.

Only ids recorded on the installation's provenance lists are touched,
and every delete is scoped to the installation's target workspace.
Rows that are already gone are skipped silently.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import AuthorizationError, ConflictError, NotFoundError
from models.playbook import InstallationStatus, Playbook, PlaybookInstallation
from models.workspace import (
    Agent,
    AgentScorecard,
    AgentTestCase,
    Document,
    GuardrailPolicy,
    Network,
    NetworkPrimitive,
    Skill,
    Workflow,
)
from services.audit_service import AuditService
from services.playbook_stats import recompute_install_count

logger = logging.getLogger(__name__)


def _purge_steps(installation: PlaybookInstallation) -> List[Tuple[str, List[Any]]]:
    """Delete statements in reverse dependency order, grouped by step name."""
    workspace_id = installation.target_workspace_id
    agent_ids = list(installation.created_agent_ids or [])
    network_ids = list(installation.created_network_ids or [])
    workflow_ids = list(installation.created_workflow_ids or [])
    skill_ids = list(installation.created_skill_ids or [])
    document_ids = list(installation.created_document_ids or [])

    def scoped(model, ids):
        return delete(model).where(
            model.id.in_(ids), model.workspace_id == workspace_id
        )

    steps: List[Tuple[str, List[Any]]] = []
    if agent_ids:
        steps.append(("agent_attachments", [
            delete(GuardrailPolicy).where(GuardrailPolicy.agent_id.in_(agent_ids)),
            delete(AgentTestCase).where(AgentTestCase.agent_id.in_(agent_ids)),
            delete(AgentScorecard).where(AgentScorecard.agent_id.in_(agent_ids)),
        ]))
    if network_ids:
        steps.append(("networks", [
            delete(NetworkPrimitive).where(NetworkPrimitive.network_id.in_(network_ids)),
            scoped(Network, network_ids),
        ]))
    if workflow_ids:
        steps.append(("workflows", [scoped(Workflow, workflow_ids)]))
    if agent_ids:
        steps.append(("agents", [scoped(Agent, agent_ids)]))
    if skill_ids:
        steps.append(("skills", [scoped(Skill, skill_ids)]))
    if document_ids:
        steps.append(("documents", [scoped(Document, document_ids)]))
    return steps


class UninstallService:
    """Removes materialized entities and retires installations."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditService(db)

    async def get_installation(self, installation_id: str) -> PlaybookInstallation:
        result = await self.db.execute(
            select(PlaybookInstallation).where(PlaybookInstallation.id == installation_id)
        )
        installation = result.scalar_one_or_none()
        if installation is None:
            raise NotFoundError(
                f"Installation {installation_id} not found", kind="InstallationNotFound"
            )
        return installation

    async def uninstall(
        self,
        installation_id: str,
        requesting_org_id: str,
        requesting_user_id: Optional[str] = None,
    ) -> PlaybookInstallation:
        """Delete everything the installation created and mark it UNINSTALLED.

        The installation and its purchase are kept as the audit trail.
        ``requesting_user_id`` is None for system-initiated uninstalls.
        """
        installation = await self.get_installation(installation_id)

        if installation.target_org_id != requesting_org_id:
            raise AuthorizationError(
                "Only the installing org can uninstall this playbook", kind="NotOwner"
            )
        if installation.status == InstallationStatus.UNINSTALLED.value:
            raise ConflictError(
                f"Installation {installation_id} is already uninstalled",
                kind="AlreadyUninstalled",
            )
        if installation.status == InstallationStatus.IN_PROGRESS.value:
            raise ConflictError(
                f"Installation {installation_id} is still being deployed",
                kind="DeployInProgress",
            )

        previous_status = installation.status
        report: Dict[str, int] = {}
        for step, statements in _purge_steps(installation):
            deleted = 0
            for statement in statements:
                result = await self.db.execute(statement)
                deleted += result.rowcount or 0
            report[step] = deleted

        installation.status = InstallationStatus.UNINSTALLED.value
        installation.uninstalled_at = datetime.utcnow()
        self.audit.record(
            "installation", installation.id, "uninstall", requesting_user_id,
            from_status=previous_status,
            to_status=InstallationStatus.UNINSTALLED.value,
            details={"deleted": report},
        )
        await self.db.flush()

        playbook_result = await self.db.execute(
            select(Playbook).where(Playbook.id == installation.playbook_id)
        )
        playbook = playbook_result.scalar_one()
        await recompute_install_count(self.db, playbook)

        await self.db.commit()
        await self.db.refresh(installation)
        logger.info(
            f"Uninstalled installation {installation.id} of playbook {playbook.slug} "
            f"from workspace {installation.target_workspace_id}: {report}"
        )
        return installation

    async def rollback(self, installation: PlaybookInstallation) -> Dict[str, Any]:
        """Best-effort purge after a failed deployment.

        Each step commits on its own so one failing delete does not keep
        the others from running. Returns a report of deleted row counts
        and the steps that failed.
        """
        installation_id = installation.id
        report: Dict[str, Any] = {"deleted": {}, "errors": {}}
        for step, statements in _purge_steps(installation):
            try:
                deleted = 0
                for statement in statements:
                    result = await self.db.execute(statement)
                    deleted += result.rowcount or 0
                await self.db.commit()
                report["deleted"][step] = deleted
            except SQLAlchemyError as exc:
                await self.db.rollback()
                report["errors"][step] = str(exc)
                logger.warning(
                    f"Rollback of installation {installation_id} could not purge {step}: {exc}"
                )
        return report
