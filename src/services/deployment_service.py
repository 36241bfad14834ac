"""Deployment orchestrator: materialize a playbook version into a workspace.

Entities are created leaves first (documents, skills, agents, workflows,
networks, then agent attachments). Agents are created as shells and
patched in a second pass so peers can reference each other. Every
created id is appended to the installation's provenance list in the
same commit as the entity itself, which is what lets a failed deploy be
rolled back exactly.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_cached_settings
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PartialDeploymentError,
)
from models.base import new_id
from models.playbook import (
    InstallationStatus,
    Playbook,
    PlaybookInstallation,
    PlaybookStatus,
    PlaybookVersion,
)
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
from schemas.manifest import PlaybookManifest, parse_manifest
from services.audit_service import AuditService
from services.integration_mapper import IntegrationMapper
from services.manifest_validator import ensure_valid
from services.playbook_stats import recompute_install_count
from services.purchase_service import PurchaseService
from services.smoke_test_runner import AgentInvoker, SmokeTestRunner
from services.uninstall_service import UninstallService

logger = logging.getLogger(__name__)

LIVE_STATUSES = (InstallationStatus.IN_PROGRESS.value, InstallationStatus.ACTIVE.value)

KIND_MODELS = {
    "document": Document,
    "skill": Skill,
    "agent": Agent,
    "workflow": Workflow,
    "network": Network,
}

LEDGER_ATTRS = {
    "document": "created_document_ids",
    "skill": "created_skill_ids",
    "agent": "created_agent_ids",
    "workflow": "created_workflow_ids",
    "network": "created_network_ids",
}


def generate_unique_slug(base: str, taken: Set[str]) -> str:
    """Return ``base`` or the first of ``base-2``, ``base-3``... not in ``taken``."""
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


def rebind_definition(value: Any, agent_slugs: Dict[str, str], agent_ids: Dict[str, str]) -> Any:
    """Point ``agent_slug`` references inside a workflow definition at deployed agents."""
    if isinstance(value, dict):
        rebound = {k: rebind_definition(v, agent_slugs, agent_ids) for k, v in value.items()}
        slug = value.get("agent_slug")
        if isinstance(slug, str) and slug in agent_ids:
            rebound["agent_slug"] = agent_slugs[slug]
            rebound["agent_id"] = agent_ids[slug]
        return rebound
    if isinstance(value, list):
        return [rebind_definition(v, agent_slugs, agent_ids) for v in value]
    return value


@dataclass
class _DeployContext:
    playbook_id: str
    installation: PlaybookInstallation
    org_id: str
    workspace_id: str
    taken: Dict[str, Set[str]]
    ids: Dict[str, Dict[str, str]] = field(default_factory=dict)
    slugs: Dict[str, Dict[str, str]] = field(default_factory=dict)
    agents: Dict[str, Agent] = field(default_factory=dict)
    step: str = "prepare"


class DeploymentService:
    """Materializes published playbooks into buyer workspaces."""

    def __init__(self, db: AsyncSession, invoker: Optional[AgentInvoker] = None):
        self.db = db
        self.settings = get_cached_settings()
        self.audit = AuditService(db)
        self.invoker = invoker

    # ── Preconditions ────────────────────────────────────────────────────

    async def _load_playbook(self, slug: str) -> Playbook:
        result = await self.db.execute(select(Playbook).where(Playbook.slug == slug))
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise NotFoundError(f"Playbook '{slug}' not found", kind="PlaybookNotFound")
        return playbook

    async def _load_version(self, playbook: Playbook, version: Optional[int]) -> PlaybookVersion:
        query = select(PlaybookVersion).where(PlaybookVersion.playbook_id == playbook.id)
        wanted = version if version is not None else playbook.current_version
        if wanted is not None:
            query = query.where(PlaybookVersion.version == wanted)
        else:
            query = query.order_by(PlaybookVersion.version.desc()).limit(1)
        result = await self.db.execute(query)
        found = result.scalar_one_or_none()
        if found is None:
            raise NotFoundError(
                f"Version {wanted if wanted is not None else 'latest'} of "
                f"'{playbook.slug}' not found",
                details={"version": wanted},
                kind="VersionNotFound",
            )
        return found

    async def _live_installation(
        self, playbook_id: str, target_org_id: str
    ) -> Optional[PlaybookInstallation]:
        result = await self.db.execute(
            select(PlaybookInstallation).where(
                PlaybookInstallation.playbook_id == playbook_id,
                PlaybookInstallation.target_org_id == target_org_id,
                PlaybookInstallation.status.in_(LIVE_STATUSES),
            )
        )
        return result.scalars().first()

    def _already_installed(self, installation: Optional[PlaybookInstallation]) -> ConflictError:
        details = {}
        if installation is not None:
            details = {"installation_id": installation.id, "status": installation.status}
        return ConflictError(
            "Playbook is already installed for this org; uninstall it first",
            details=details,
            kind="AlreadyInstalled",
        )

    # ── Entry point ──────────────────────────────────────────────────────

    async def deploy(
        self,
        playbook_slug: str,
        target_org_id: str,
        target_workspace_id: str,
        installed_by_user_id: str,
        version: Optional[int] = None,
    ) -> PlaybookInstallation:
        """Install ``playbook_slug`` into ``target_workspace_id``.

        All checks run before anything is written. Once the installation
        row exists, any failure rolls back what was created and surfaces
        as PartialDeployment.
        """
        playbook = await self._load_playbook(playbook_slug)
        if playbook.status != PlaybookStatus.PUBLISHED.value:
            raise ConflictError(
                f"Playbook '{playbook_slug}' is not available for deployment",
                details={"status": playbook.status},
                kind="NotPublished",
            )

        purchase = await PurchaseService(self.db).get_completed_purchase(playbook.id, target_org_id)
        if purchase is None:
            raise AuthorizationError(
                f"Org {target_org_id} has no completed purchase of '{playbook_slug}'",
                kind="NotPurchased",
            )

        playbook_version = await self._load_version(playbook, version)
        manifest = ensure_valid(parse_manifest(playbook_version.manifest))

        playbook_id = playbook.id
        existing = await self._live_installation(playbook.id, target_org_id)
        if existing is not None:
            raise self._already_installed(existing)

        installation = PlaybookInstallation(
            id=new_id(),
            playbook_id=playbook.id,
            purchase_id=purchase.id,
            target_org_id=target_org_id,
            target_workspace_id=target_workspace_id,
            installed_by_user_id=installed_by_user_id,
            version_installed=playbook_version.version,
            status=InstallationStatus.IN_PROGRESS.value,
            created_agent_ids=[],
            created_skill_ids=[],
            created_document_ids=[],
            created_workflow_ids=[],
            created_network_ids=[],
            customizations={},
        )
        self.db.add(installation)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            winner = await self._live_installation(playbook_id, target_org_id)
            raise self._already_installed(winner)

        logger.info(
            f"Deploying {playbook.slug} v{playbook_version.version} into workspace "
            f"{target_workspace_id} (installation {installation.id})"
        )

        ctx = _DeployContext(
            playbook_id=playbook.id,
            installation=installation,
            org_id=target_org_id,
            workspace_id=target_workspace_id,
            taken={},
        )
        try:
            ctx.step = "integrations"
            mappings = await IntegrationMapper(self.db).map_integrations(
                sorted(set(manifest.required_integrations) | set(playbook.required_integrations or [])),
                target_org_id,
                target_workspace_id,
            )
            installation.integration_status = [m.model_dump() for m in mappings]
            await self.db.commit()

            await self._materialize(ctx, manifest)

            ctx.step = "smoke_tests"
            test_results = None
            if manifest.test_cases:
                runner = SmokeTestRunner(self.db, invoker=self.invoker)
                test_results = await runner.run(manifest.test_cases, ctx.agents)

            ctx.step = "finalize"
            installation.status = InstallationStatus.ACTIVE.value
            installation.test_results = test_results
            self.audit.record(
                "installation", installation.id, "deploy", installed_by_user_id,
                from_status=InstallationStatus.IN_PROGRESS.value,
                to_status=InstallationStatus.ACTIVE.value,
                details={
                    "playbook_id": playbook_id,
                    "version": playbook_version.version,
                    "workspace_id": target_workspace_id,
                },
            )
            await self.db.flush()
            await recompute_install_count(self.db, playbook)
            await self.db.commit()
        except Exception as exc:
            logger.exception(
                f"Deployment {installation.id} failed during {ctx.step}"
            )
            await self._fail(installation, ctx.step, exc)

        await self.db.refresh(installation)

        logger.info(
            f"Installation {installation.id} ACTIVE: "
            f"{len(installation.created_agent_ids)} agents, "
            f"{len(installation.created_network_ids)} networks"
        )
        return installation

    async def _fail(self, installation: PlaybookInstallation, step: str, exc: Exception) -> None:
        """Mark the installation FAILED, purge what it created, and raise."""
        await self.db.rollback()
        await self.db.refresh(installation)
        installation_id = installation.id

        report = await UninstallService(self.db).rollback(installation)

        await self.db.refresh(installation)
        installation.status = InstallationStatus.FAILED.value
        installation.test_results = {"error": str(exc)}
        installation.failure_details = {
            "step": step,
            "error": f"{type(exc).__name__}: {exc}",
            "rollback": report,
        }
        self.audit.record(
            "installation", installation_id, "deploy_failed", installation.installed_by_user_id,
            from_status=InstallationStatus.IN_PROGRESS.value,
            to_status=InstallationStatus.FAILED.value,
            reason=str(exc),
        )
        await self.db.commit()
        logger.info(f"Installation {installation_id} marked FAILED after rollback: {report}")
        raise PartialDeploymentError(installation_id, step, str(exc), report) from exc

    # ── Materialization ──────────────────────────────────────────────────

    async def _load_taken_slugs(self, ctx: _DeployContext) -> None:
        for kind, model in KIND_MODELS.items():
            result = await self.db.execute(
                select(model.slug).where(model.workspace_id == ctx.workspace_id)
            )
            ctx.taken[kind] = set(result.scalars().all())

    def _claim_slug(self, ctx: _DeployContext, kind: str, slug: str) -> str:
        base = slug
        if not self.settings.CLEAN_SLUGS:
            base = f"{slug}-{ctx.installation.id[-6:]}"
        chosen = generate_unique_slug(base, ctx.taken[kind])
        ctx.taken[kind].add(chosen)
        ctx.slugs.setdefault(kind, {})[slug] = chosen
        if chosen != slug:
            customizations = dict(ctx.installation.customizations or {})
            renames = {k: dict(v) for k, v in customizations.get("slug_renames", {}).items()}
            renames.setdefault(kind, {})[slug] = chosen
            customizations["slug_renames"] = renames
            ctx.installation.customizations = customizations
            logger.info(f"Slug '{slug}' taken in workspace; {kind} deployed as '{chosen}'")
        return chosen

    async def _record(self, ctx: _DeployContext, kind: str, slug: str, entity: Any) -> None:
        """Persist ``entity`` and its provenance entry in one commit."""
        self.db.add(entity)
        attr = LEDGER_ATTRS[kind]
        # Reassign rather than mutate so the JSON column is marked dirty
        setattr(ctx.installation, attr, [*getattr(ctx.installation, attr), entity.id])
        await self.db.commit()
        ctx.ids.setdefault(kind, {})[slug] = entity.id

    def _provenance(self, ctx: _DeployContext) -> Dict[str, Any]:
        return {
            "workspace_id": ctx.workspace_id,
            "organization_id": ctx.org_id,
            "playbook_source_id": ctx.playbook_id,
            "playbook_installation_id": ctx.installation.id,
        }

    async def _materialize(self, ctx: _DeployContext, manifest: PlaybookManifest) -> None:
        await self._load_taken_slugs(ctx)
        ids = ctx.ids

        ctx.step = "documents"
        for spec in manifest.documents:
            document = Document(
                id=new_id(),
                slug=self._claim_slug(ctx, "document", spec.slug),
                name=spec.name,
                description=spec.description,
                content=spec.content,
                content_type=spec.content_type,
                category=spec.category,
                tags=list(spec.tags),
                resource_metadata=spec.metadata,
                version=spec.version,
                **self._provenance(ctx),
            )
            await self._record(ctx, "document", spec.slug, document)

        ctx.step = "skills"
        for spec in manifest.skills:
            skill = Skill(
                id=new_id(),
                slug=self._claim_slug(ctx, "skill", spec.slug),
                name=spec.name,
                description=spec.description,
                instructions=spec.instructions,
                examples=spec.examples,
                category=spec.category,
                tags=list(spec.tags),
                tools=[tool.model_dump() for tool in spec.tools],
                document_ids=[ids["document"][slug] for slug in spec.documents],
                resource_metadata=spec.metadata,
                version=spec.version,
                **self._provenance(ctx),
            )
            await self._record(ctx, "skill", spec.slug, skill)

        ctx.step = "agents"
        for spec in manifest.agents:
            agent = Agent(
                id=new_id(),
                slug=self._claim_slug(ctx, "agent", spec.slug),
                name=spec.name,
                description=spec.description,
                instructions=spec.instructions,
                instructions_template=spec.instructions_template,
                model_provider=spec.model_provider,
                model_name=spec.model_name,
                temperature=spec.temperature,
                max_tokens=spec.max_tokens,
                max_steps=spec.max_steps,
                memory_enabled=spec.memory_enabled,
                memory_config=spec.memory_config,
                sub_agent_ids=[],
                workflow_ids=[],
                tools=[tool.model_dump() for tool in spec.tools],
                skill_ids=[ids["skill"][slug] for slug in spec.skills],
                requires_approval=spec.requires_approval,
                max_spend_usd=spec.max_spend_usd,
                resource_metadata=spec.metadata,
                version=spec.version,
                **self._provenance(ctx),
            )
            await self._record(ctx, "agent", spec.slug, agent)
            ctx.agents[spec.slug] = agent

        ctx.step = "agent_links"
        for spec in manifest.agents:
            if spec.sub_agents:
                ctx.agents[spec.slug].sub_agent_ids = [ids["agent"][s] for s in spec.sub_agents]
                await self.db.commit()

        ctx.step = "workflows"
        for spec in manifest.workflows:
            workflow = Workflow(
                id=new_id(),
                slug=self._claim_slug(ctx, "workflow", spec.slug),
                name=spec.name,
                description=spec.description,
                definition=rebind_definition(
                    spec.definition, ctx.slugs.get("agent", {}), ids.get("agent", {})
                ),
                input_schema=spec.input_schema,
                output_schema=spec.output_schema,
                max_steps=spec.max_steps,
                timeout=spec.timeout,
                retry_config=spec.retry_config,
                version=spec.version,
                **self._provenance(ctx),
            )
            await self._record(ctx, "workflow", spec.slug, workflow)

        ctx.step = "workflow_links"
        for spec in manifest.agents:
            if spec.workflows:
                ctx.agents[spec.slug].workflow_ids = [ids["workflow"][s] for s in spec.workflows]
                await self.db.commit()

        ctx.step = "networks"
        for spec in manifest.networks:
            network = Network(
                id=new_id(),
                slug=self._claim_slug(ctx, "network", spec.slug),
                name=spec.name,
                description=spec.description,
                instructions=spec.instructions,
                model_provider=spec.model_provider,
                model_name=spec.model_name,
                temperature=spec.temperature,
                topology=spec.topology,
                memory_config=spec.memory_config,
                max_steps=spec.max_steps,
                version=spec.version,
                **self._provenance(ctx),
            )
            # Primitives go in the same commit as their network
            self.db.add(network)
            await self.db.flush()
            for order, prim in enumerate(spec.primitives):
                self.db.add(NetworkPrimitive(
                    network_id=network.id,
                    primitive_type=prim.primitive_type,
                    agent_id=ids["agent"][prim.agent_slug] if prim.agent_slug else None,
                    workflow_id=ids["workflow"][prim.workflow_slug] if prim.workflow_slug else None,
                    tool_id=prim.tool_id,
                    description=prim.description,
                    position=prim.position,
                    sort_order=order,
                ))
            await self._record(ctx, "network", spec.slug, network)

        ctx.step = "agent_attachments"
        for spec in manifest.guardrails:
            self.db.add(GuardrailPolicy(
                agent_id=ids["agent"][spec.agent_slug],
                config=spec.config,
                version=spec.version,
            ))
        for spec in manifest.test_cases:
            self.db.add(AgentTestCase(
                agent_id=ids["agent"][spec.agent_slug],
                name=spec.name,
                input_text=spec.input_text,
                expected_output=spec.expected_output,
                tags=list(spec.tags),
            ))
        for spec in manifest.scorecards:
            self.db.add(AgentScorecard(
                agent_id=ids["agent"][spec.agent_slug],
                criteria=spec.criteria,
                sampling_rate=spec.sampling_rate,
                auditor_model=spec.auditor_model,
                evaluate_turns=spec.evaluate_turns,
                version=spec.version,
            ))
        await self.db.commit()

    # ── Reads ────────────────────────────────────────────────────────────

    async def count_live_installations(self, playbook_id: str) -> int:
        result = await self.db.execute(
            select(func.count()).select_from(PlaybookInstallation).where(
                PlaybookInstallation.playbook_id == playbook_id,
                PlaybookInstallation.status.in_(LIVE_STATUSES),
            )
        )
        return result.scalar() or 0
