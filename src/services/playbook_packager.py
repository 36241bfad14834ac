"""Author-side packaging: listings, draft manifests and version bumps."""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import AuthorizationError, ConflictError, NotFoundError, ValidationError
from models.playbook import (
    ComponentType,
    Playbook,
    PlaybookComponent,
    PlaybookStatus,
    PlaybookVersion,
    PricingModel,
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
from schemas.manifest import (
    AgentSpec,
    DocumentSpec,
    EntryPoint,
    GuardrailSpec,
    NetworkPrimitiveSpec,
    NetworkSpec,
    PlaybookManifest,
    ScorecardSpec,
    SkillSpec,
    TestCaseSpec,
    ToolRef,
    WorkflowSpec,
    parse_manifest,
)
from services.manifest_sanitizer import detect_hardcoded_urls, sanitize_manifest
from services.manifest_validator import definition_agent_slugs, ensure_valid

logger = logging.getLogger(__name__)

TOOL_PREFIX_PATTERN = re.compile(r"^([a-zA-Z0-9_-]+)\.")

KNOWN_INTEGRATION_PREFIXES = {
    "airtable", "asana", "confluence", "fathom", "firecrawl", "github",
    "hubspot", "intercom", "jira", "justcall", "linear", "monday",
    "notion", "playwright", "salesforce", "shopify", "slack", "stripe",
}


def normalize_slug(raw: str) -> str:
    slug = re.sub(r"[^a-z0-9-]", "-", raw.strip().lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    if not slug:
        raise ValidationError(
            f"'{raw}' does not contain any usable slug characters", kind="InvalidSlug"
        )
    return slug


def integration_for_tool(tool_id: str) -> Optional[str]:
    """Return the provider key a namespaced tool id such as ``hubspot.get_contact`` needs."""
    match = TOOL_PREFIX_PATTERN.match(tool_id or "")
    if match and match.group(1) in KNOWN_INTEGRATION_PREFIXES:
        return match.group(1)
    return None


def infer_required_integrations(manifest: PlaybookManifest) -> List[str]:
    tool_ids: List[str] = []
    for agent in manifest.agents:
        tool_ids.extend(tool.tool_id for tool in agent.tools)
    for skill in manifest.skills:
        tool_ids.extend(tool.tool_id for tool in skill.tools)
    for network in manifest.networks:
        tool_ids.extend(p.tool_id for p in network.primitives if p.tool_id)
    return sorted({key for key in map(integration_for_tool, tool_ids) if key})


@dataclass
class PackageResult:
    playbook: Playbook
    manifest: PlaybookManifest
    warnings: List[str] = field(default_factory=list)


class PlaybookPackager:
    """Builds and maintains a publisher's playbook listings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_owned_playbook(self, slug: str, actor_org_id: str) -> Playbook:
        result = await self.db.execute(select(Playbook).where(Playbook.slug == slug))
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise NotFoundError(f"Playbook '{slug}' not found", kind="PlaybookNotFound")
        if playbook.publisher_org_id != actor_org_id:
            raise AuthorizationError(
                "Only the publisher can modify this playbook", kind="NotPublisher"
            )
        return playbook

    async def create_playbook(
        self,
        name: str,
        publisher_org_id: str,
        published_by_user_id: Optional[str] = None,
        slug: Optional[str] = None,
        tagline: Optional[str] = None,
        description: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[List[str]] = None,
        pricing_model: PricingModel = PricingModel.FREE,
        price_usd: Optional[float] = None,
        monthly_price_usd: Optional[float] = None,
        per_use_price_usd: Optional[float] = None,
    ) -> Playbook:
        """Create a DRAFT listing with a globally unique slug."""
        slug = normalize_slug(slug or name)
        pricing_model = PricingModel(pricing_model)
        price_field = {
            PricingModel.ONE_TIME: price_usd,
            PricingModel.SUBSCRIPTION: monthly_price_usd,
            PricingModel.PER_USE: per_use_price_usd,
        }
        if pricing_model in price_field and not price_field[pricing_model]:
            raise ValidationError(
                f"{pricing_model.value} playbooks need a positive price",
                kind="PriceRequired",
            )

        existing = await self.db.execute(select(Playbook.id).where(Playbook.slug == slug))
        if existing.first() is not None:
            raise ConflictError(f"Slug '{slug}' is already taken", kind="SlugTaken")

        playbook = Playbook(
            slug=slug,
            name=name,
            tagline=tagline,
            description=description,
            category=category,
            tags=tags or [],
            status=PlaybookStatus.DRAFT.value,
            pricing_model=pricing_model.value,
            price_usd=price_usd,
            monthly_price_usd=monthly_price_usd,
            per_use_price_usd=per_use_price_usd,
            publisher_org_id=publisher_org_id,
            published_by_user_id=published_by_user_id,
            install_count=0,
            review_count=0,
            required_integrations=[],
        )
        self.db.add(playbook)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(f"Slug '{slug}' is already taken", kind="SlugTaken")
        await self.db.refresh(playbook)
        logger.info(f"Created draft playbook {slug} for org {publisher_org_id}")
        return playbook

    async def save_manifest(
        self,
        slug: str,
        manifest: Any,
        actor_org_id: str,
        source_ids: Optional[Dict[str, Dict[str, str]]] = None,
    ) -> PackageResult:
        """Sanitize, validate and store ``manifest`` as the playbook's draft.

        Component index rows are rewritten to match. ``source_ids`` maps
        kind -> slug -> id of the entity each component was taken from.
        """
        playbook = await self._get_owned_playbook(slug, actor_org_id)
        if playbook.status == PlaybookStatus.ARCHIVED.value:
            raise ConflictError("Archived playbooks cannot be edited", kind="PlaybookArchived")

        parsed = parse_manifest(manifest)
        clean, warnings = sanitize_manifest(parsed, actor_org_id)
        for hit in detect_hardcoded_urls(clean, actor_org_id):
            warnings.append(f"{hit.location}: tenant-specific URL {hit.url}")

        clean.required_integrations = sorted(
            set(clean.required_integrations) | set(infer_required_integrations(clean))
        )
        ensure_valid(clean)

        await self.db.execute(
            delete(PlaybookComponent).where(PlaybookComponent.playbook_id == playbook.id)
        )
        for component in self._components(playbook.id, clean, source_ids or {}):
            self.db.add(component)

        playbook.draft_manifest = clean.model_dump(mode="json")
        playbook.required_integrations = list(clean.required_integrations)
        playbook.updated_at = datetime.utcnow()
        await self.db.commit()
        await self.db.refresh(playbook)

        if warnings:
            logger.warning(f"Manifest for {slug} saved with {len(warnings)} warning(s)")
        else:
            logger.info(f"Manifest for {slug} saved ({clean.component_count()} components)")
        return PackageResult(playbook=playbook, manifest=clean, warnings=warnings)

    @staticmethod
    def _components(
        playbook_id: str,
        manifest: PlaybookManifest,
        source_ids: Dict[str, Dict[str, str]],
    ) -> Iterable[PlaybookComponent]:
        entry = manifest.entry_point
        groups = (
            (ComponentType.AGENT, "agent", manifest.agents,
             lambda a: {"model_provider": a.model_provider, "model_name": a.model_name}),
            (ComponentType.SKILL, "skill", manifest.skills,
             lambda s: {"category": s.category}),
            (ComponentType.DOCUMENT, "document", manifest.documents,
             lambda d: {"content_type": d.content_type}),
            (ComponentType.WORKFLOW, "workflow", manifest.workflows,
             lambda w: {"max_steps": w.max_steps}),
            (ComponentType.NETWORK, "network", manifest.networks,
             lambda n: {"model_provider": n.model_provider, "primitive_count": len(n.primitives)}),
        )
        order = 0
        for component_type, kind, items, snapshot in groups:
            for item in items:
                yield PlaybookComponent(
                    playbook_id=playbook_id,
                    component_type=component_type.value,
                    source_entity_id=source_ids.get(kind, {}).get(item.slug),
                    source_slug=item.slug,
                    config_snapshot=snapshot(item),
                    is_entry_point=(entry.type == kind and entry.slug == item.slug),
                    sort_order=order,
                )
                order += 1

    async def bump_version(
        self,
        slug: str,
        actor_id: str,
        actor_org_id: str,
        changelog: Optional[str] = None,
    ) -> PlaybookVersion:
        """Snapshot the draft manifest of a published playbook as version N+1."""
        playbook = await self._get_owned_playbook(slug, actor_org_id)
        if playbook.status != PlaybookStatus.PUBLISHED.value:
            raise ConflictError(
                "Only published playbooks can be versioned; publish the draft instead",
                details={"status": playbook.status},
                kind="NotPublished",
            )
        manifest = ensure_valid(parse_manifest(playbook.draft_manifest))

        latest = await self.db.execute(
            select(PlaybookVersion.version)
            .where(PlaybookVersion.playbook_id == playbook.id)
            .order_by(PlaybookVersion.version.desc())
            .limit(1)
        )
        current = latest.scalar_one_or_none() or 0

        version = PlaybookVersion(
            playbook_id=playbook.id,
            version=current + 1,
            manifest=manifest.model_dump(mode="json"),
            changelog=changelog,
            created_by=actor_id,
            created_at=datetime.utcnow(),
        )
        self.db.add(version)
        playbook.current_version = version.version
        playbook.required_integrations = list(manifest.required_integrations)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                f"Version {current + 1} of '{slug}' was created concurrently",
                kind="VersionConflict",
            )
        await self.db.refresh(version)
        logger.info(f"Playbook {slug} bumped to v{version.version}")
        return version

    # ── Workspace capture ────────────────────────────────────────────────

    async def package_from_workspace(
        self,
        slug: str,
        actor_org_id: str,
        workspace_id: str,
        entry_type: str,
        entry_id: str,
        include_workflow_ids: Optional[List[str]] = None,
        include_network_ids: Optional[List[str]] = None,
        include_skills: bool = True,
        include_documents: bool = True,
    ) -> PackageResult:
        """Walk a workspace graph from its entry point into a draft manifest."""
        walker = _WorkspaceWalker(self.db, workspace_id, include_skills, include_documents)

        if entry_type == "network":
            await walker.network(entry_id)
        elif entry_type == "workflow":
            await walker.workflow(entry_id)
        elif entry_type == "agent":
            await walker.agent(entry_id)
        else:
            raise ValidationError(
                f"Unknown entry point type '{entry_type}'", kind="InvalidEntryPoint"
            )
        for workflow_id in include_workflow_ids or []:
            await walker.workflow(workflow_id)
        for network_id in include_network_ids or []:
            await walker.network(network_id)

        manifest = await walker.build(EntryPoint(
            type=entry_type, slug=walker.slug_of(entry_type, entry_id)
        ))
        return await self.save_manifest(
            slug, manifest, actor_org_id, source_ids=walker.source_ids()
        )


class _WorkspaceWalker:
    """Collects the entities reachable from an entry point, once each."""

    def __init__(
        self,
        db: AsyncSession,
        workspace_id: str,
        include_skills: bool,
        include_documents: bool,
    ):
        self.db = db
        self.workspace_id = workspace_id
        self.include_skills = include_skills
        self.include_documents = include_documents
        self.rows: Dict[str, Dict[str, Any]] = {
            "agent": {}, "skill": {}, "document": {}, "workflow": {}, "network": {},
        }
        self.primitives: Dict[str, List[NetworkPrimitive]] = {}

    async def _load(self, kind: str, model, entity_id: str):
        result = await self.db.execute(
            select(model).where(model.id == entity_id, model.workspace_id == self.workspace_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(
                f"{kind.capitalize()} {entity_id} not found in workspace {self.workspace_id}",
                kind="EntityNotFound",
            )
        self.rows[kind][entity_id] = row
        return row

    async def agent(self, agent_id: str) -> None:
        if agent_id in self.rows["agent"]:
            return
        row = await self._load("agent", Agent, agent_id)
        for sub_id in row.sub_agent_ids or []:
            await self.agent(sub_id)
        for workflow_id in row.workflow_ids or []:
            await self.workflow(workflow_id)
        if self.include_skills:
            for skill_id in row.skill_ids or []:
                await self.skill(skill_id)

    async def skill(self, skill_id: str) -> None:
        if skill_id in self.rows["skill"]:
            return
        row = await self._load("skill", Skill, skill_id)
        if self.include_documents:
            for document_id in row.document_ids or []:
                await self.document(document_id)

    async def document(self, document_id: str) -> None:
        if document_id not in self.rows["document"]:
            await self._load("document", Document, document_id)

    async def workflow(self, workflow_id: str) -> None:
        if workflow_id in self.rows["workflow"]:
            return
        row = await self._load("workflow", Workflow, workflow_id)
        for agent_slug in definition_agent_slugs(row.definition or {}):
            result = await self.db.execute(
                select(Agent.id).where(
                    Agent.workspace_id == self.workspace_id, Agent.slug == agent_slug
                )
            )
            agent_id = result.scalar_one_or_none()
            if agent_id is not None:
                await self.agent(agent_id)

    async def network(self, network_id: str) -> None:
        if network_id in self.rows["network"]:
            return
        await self._load("network", Network, network_id)
        result = await self.db.execute(
            select(NetworkPrimitive)
            .where(NetworkPrimitive.network_id == network_id)
            .order_by(NetworkPrimitive.sort_order)
        )
        primitives = list(result.scalars().all())
        self.primitives[network_id] = primitives
        for prim in primitives:
            if prim.agent_id:
                await self.agent(prim.agent_id)
            if prim.workflow_id:
                await self.workflow(prim.workflow_id)

    def slug_of(self, kind: str, entity_id: str) -> str:
        return self.rows[kind][entity_id].slug

    def source_ids(self) -> Dict[str, Dict[str, str]]:
        return {
            kind: {row.slug: entity_id for entity_id, row in rows.items()}
            for kind, rows in self.rows.items()
        }

    def _slugs(self, kind: str, ids: Iterable[str]) -> List[str]:
        # References outside the walked set (skills/documents left out on
        # purpose) are dropped rather than left dangling
        return [self.rows[kind][i].slug for i in ids or [] if i in self.rows[kind]]

    async def build(self, entry_point: EntryPoint) -> PlaybookManifest:
        agent_ids = list(self.rows["agent"])

        guardrails: List[GuardrailSpec] = []
        test_cases: List[TestCaseSpec] = []
        scorecards: List[ScorecardSpec] = []
        if agent_ids:
            slug_by_agent = {i: self.rows["agent"][i].slug for i in agent_ids}
            for row in (await self.db.execute(
                select(GuardrailPolicy).where(GuardrailPolicy.agent_id.in_(agent_ids))
            )).scalars():
                guardrails.append(GuardrailSpec(
                    agent_slug=slug_by_agent[row.agent_id], config=row.config or {},
                    version=row.version,
                ))
            for row in (await self.db.execute(
                select(AgentTestCase).where(AgentTestCase.agent_id.in_(agent_ids))
            )).scalars():
                test_cases.append(TestCaseSpec(
                    agent_slug=slug_by_agent[row.agent_id], name=row.name,
                    input_text=row.input_text, expected_output=row.expected_output,
                    tags=row.tags or [],
                ))
            for row in (await self.db.execute(
                select(AgentScorecard).where(AgentScorecard.agent_id.in_(agent_ids))
            )).scalars():
                scorecards.append(ScorecardSpec(
                    agent_slug=slug_by_agent[row.agent_id], criteria=row.criteria or [],
                    sampling_rate=row.sampling_rate, auditor_model=row.auditor_model,
                    evaluate_turns=row.evaluate_turns, version=row.version,
                ))

        return PlaybookManifest(
            agents=[
                AgentSpec(
                    slug=a.slug, name=a.name, description=a.description,
                    instructions=a.instructions or "",
                    instructions_template=a.instructions_template,
                    model_provider=a.model_provider, model_name=a.model_name,
                    temperature=a.temperature, max_tokens=a.max_tokens,
                    max_steps=a.max_steps, memory_enabled=a.memory_enabled,
                    memory_config=a.memory_config,
                    sub_agents=self._slugs("agent", a.sub_agent_ids),
                    workflows=self._slugs("workflow", a.workflow_ids),
                    tools=[ToolRef.model_validate(t) for t in a.tools or []],
                    skills=self._slugs("skill", a.skill_ids),
                    requires_approval=a.requires_approval,
                    max_spend_usd=a.max_spend_usd,
                    metadata=a.resource_metadata, version=a.version,
                )
                for a in self.rows["agent"].values()
            ],
            skills=[
                SkillSpec(
                    slug=s.slug, name=s.name, description=s.description,
                    instructions=s.instructions or "", examples=s.examples,
                    category=s.category, tags=s.tags or [],
                    tools=[ToolRef.model_validate(t) for t in s.tools or []],
                    documents=self._slugs("document", s.document_ids),
                    metadata=s.resource_metadata, version=s.version,
                )
                for s in self.rows["skill"].values()
            ],
            documents=[
                DocumentSpec(
                    slug=d.slug, name=d.name, description=d.description,
                    content=d.content or "", content_type=d.content_type,
                    category=d.category, tags=d.tags or [],
                    metadata=d.resource_metadata, version=d.version,
                )
                for d in self.rows["document"].values()
            ],
            workflows=[
                WorkflowSpec(
                    slug=w.slug, name=w.name, description=w.description,
                    definition=w.definition or {}, input_schema=w.input_schema,
                    output_schema=w.output_schema, max_steps=w.max_steps,
                    timeout=w.timeout, retry_config=w.retry_config, version=w.version,
                )
                for w in self.rows["workflow"].values()
            ],
            networks=[
                NetworkSpec(
                    slug=n.slug, name=n.name, description=n.description,
                    instructions=n.instructions or "",
                    model_provider=n.model_provider, model_name=n.model_name,
                    temperature=n.temperature, topology=n.topology or {},
                    memory_config=n.memory_config, max_steps=n.max_steps,
                    version=n.version,
                    primitives=[
                        NetworkPrimitiveSpec(
                            primitive_type=p.primitive_type,
                            agent_slug=self.rows["agent"][p.agent_id].slug if p.agent_id else None,
                            workflow_slug=(
                                self.rows["workflow"][p.workflow_id].slug if p.workflow_id else None
                            ),
                            tool_id=p.tool_id,
                            description=p.description,
                            position=p.position,
                        )
                        for p in self.primitives.get(network_id, [])
                    ],
                )
                for network_id, n in self.rows["network"].items()
            ],
            guardrails=guardrails,
            test_cases=test_cases,
            scorecards=scorecards,
            entry_point=entry_point,
        )
