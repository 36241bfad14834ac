"""Tests for materializing playbooks into buyer workspaces."""

import asyncio

import pytest
from sqlalchemy import func, select

from core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    PartialDeploymentError,
)
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
from services.deployment_service import (
    DeploymentService,
    generate_unique_slug,
    rebind_definition,
)
from services.uninstall_service import UninstallService

from conftest import (
    BUYER_ORG,
    BUYER_USER,
    BUYER_WORKSPACE,
    create_published_playbook,
    purchase_free,
    support_manifest,
)


async def _deploy(db, **kwargs):
    return await DeploymentService(db, **kwargs).deploy(
        "support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER
    )


async def _workspace_rows(db, model, workspace_id=BUYER_WORKSPACE):
    result = await db.execute(select(model).where(model.workspace_id == workspace_id))
    return list(result.scalars().all())


async def _count(db, model):
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar()


class FailingDeploymentService(DeploymentService):
    """Deployment that breaks once it reaches a given entity kind."""

    fail_on = "network"

    async def _record(self, ctx, kind, slug, entity):
        if kind == self.fail_on:
            raise RuntimeError(f"{kind} store unavailable")
        await super()._record(ctx, kind, slug, entity)


class TestHelpers:
    def test_generate_unique_slug(self):
        assert generate_unique_slug("router", set()) == "router"
        assert generate_unique_slug("router", {"router"}) == "router-2"
        assert generate_unique_slug("router", {"router", "router-2", "router-3"}) == "router-4"

    def test_rebind_definition(self):
        definition = {"steps": [{"agent_slug": "router"}, {"agent_slug": "unknown"}], "name": "x"}

        rebound = rebind_definition(definition, {"router": "router-2"}, {"router": "agent-1"})

        assert rebound["steps"][0] == {"agent_slug": "router-2", "agent_id": "agent-1"}
        assert rebound["steps"][1] == {"agent_slug": "unknown"}
        assert definition["steps"][0] == {"agent_slug": "router"}


class TestDeploy:
    """Happy path and preconditions."""

    @pytest.mark.asyncio
    async def test_deploy_materializes_the_whole_graph(self, db_session, purchased_playbook):
        installation = await _deploy(db_session)

        assert installation.status == InstallationStatus.ACTIVE.value
        assert installation.version_installed == 1
        assert len(installation.created_agent_ids) == 3
        assert len(installation.created_network_ids) == 1
        assert len(installation.created_workflow_ids) == 1
        assert len(installation.created_skill_ids) == 1
        assert len(installation.created_document_ids) == 1

        agents = {a.slug: a for a in await _workspace_rows(db_session, Agent)}
        assert set(agents) == {"router", "faq-bot", "escalation"}
        assert set(agents["router"].sub_agent_ids) == {agents["faq-bot"].id, agents["escalation"].id}
        assert all(a.organization_id == BUYER_ORG for a in agents.values())
        assert all(a.playbook_source_id == purchased_playbook.id for a in agents.values())
        assert all(a.playbook_installation_id == installation.id for a in agents.values())

        skill = (await _workspace_rows(db_session, Skill))[0]
        document = (await _workspace_rows(db_session, Document))[0]
        workflow = (await _workspace_rows(db_session, Workflow))[0]
        assert agents["faq-bot"].skill_ids == [skill.id]
        assert agents["faq-bot"].workflow_ids == [workflow.id]
        assert skill.document_ids == [document.id]
        assert workflow.definition["steps"][0]["agent_id"] == agents["router"].id

        network = (await _workspace_rows(db_session, Network))[0]
        primitives = (await db_session.execute(
            select(NetworkPrimitive)
            .where(NetworkPrimitive.network_id == network.id)
            .order_by(NetworkPrimitive.sort_order)
        )).scalars().all()
        assert [p.agent_id for p in primitives] == [
            agents["router"].id, agents["faq-bot"].id, agents["escalation"].id
        ]

        assert await _count(db_session, GuardrailPolicy) == 1
        assert await _count(db_session, AgentTestCase) == 1
        assert await _count(db_session, AgentScorecard) == 1

    @pytest.mark.asyncio
    async def test_deploy_reports_integrations_and_smoke_tests(self, db_session, purchased_playbook):
        installation = await _deploy(db_session)

        assert installation.integration_status == [
            {"provider": "hubspot", "connected": False, "connection_id": None},
            {"provider": "slack", "connected": False, "connection_id": None},
        ]
        assert installation.test_results["total"] == 1
        assert installation.test_results["passed"] == 1

    @pytest.mark.asyncio
    async def test_install_count_tracks_active_installations(self, db_session, purchased_playbook):
        await _deploy(db_session)

        playbook = (await db_session.execute(
            select(Playbook).where(Playbook.id == purchased_playbook.id)
        )).scalar_one()
        assert playbook.install_count == 1

    @pytest.mark.asyncio
    async def test_second_deploy_is_rejected(self, db_session, purchased_playbook):
        first = await _deploy(db_session)

        with pytest.raises(ConflictError) as exc_info:
            await _deploy(db_session)

        assert exc_info.value.kind == "AlreadyInstalled"
        assert exc_info.value.details["installation_id"] == first.id
        assert len(await _workspace_rows(db_session, Agent)) == 3

    @pytest.mark.asyncio
    async def test_requires_completed_purchase(self, db_session, published_playbook):
        with pytest.raises(AuthorizationError) as exc_info:
            await _deploy(db_session)

        assert exc_info.value.kind == "NotPurchased"
        assert await _count(db_session, PlaybookInstallation) == 0

    @pytest.mark.asyncio
    async def test_unknown_version(self, db_session, purchased_playbook):
        with pytest.raises(NotFoundError) as exc_info:
            await DeploymentService(db_session).deploy(
                "support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER, version=7
            )

        assert exc_info.value.kind == "VersionNotFound"

    @pytest.mark.asyncio
    async def test_unknown_playbook(self, db_session):
        with pytest.raises(NotFoundError):
            await DeploymentService(db_session).deploy("ghost", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER)

    @pytest.mark.asyncio
    async def test_redeploy_after_uninstall_creates_fresh_entities(self, db_session, purchased_playbook):
        first = await _deploy(db_session)
        first_agent_ids = set(first.created_agent_ids)
        await UninstallService(db_session).uninstall(first.id, BUYER_ORG)

        second = await _deploy(db_session)

        assert second.id != first.id
        assert first_agent_ids.isdisjoint(second.created_agent_ids)
        assert {a.slug for a in await _workspace_rows(db_session, Agent)} == {
            "router", "faq-bot", "escalation"
        }
    @pytest.mark.asyncio
    async def test_concurrent_deploy_loses_to_live_installation(self, db_session, purchased_playbook):
        in_flight = PlaybookInstallation(
            playbook_id=purchased_playbook.id,
            target_org_id=BUYER_ORG,
            target_workspace_id=BUYER_WORKSPACE,
            installed_by_user_id="user-buyer-2",
            version_installed=1,
            status=InstallationStatus.IN_PROGRESS.value,
        )
        db_session.add(in_flight)
        await db_session.commit()
        in_flight_id = in_flight.id

        service = DeploymentService(db_session)
        lookup = service._live_installation
        calls = []

        async def lookup_before_commit(playbook_id, target_org_id):
            calls.append(target_org_id)
            if len(calls) == 1:
                return None
            return await lookup(playbook_id, target_org_id)

        service._live_installation = lookup_before_commit

        with pytest.raises(ConflictError) as exc_info:
            await service.deploy("support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER)

        assert exc_info.value.kind == "AlreadyInstalled"
        assert exc_info.value.details == {
            "installation_id": in_flight_id,
            "status": InstallationStatus.IN_PROGRESS.value,
        }
        assert await _count(db_session, PlaybookInstallation) == 1
        assert await _workspace_rows(db_session, Agent) == []



class TestSlugCollisions:
    """Existing workspace slugs are never overwritten."""

    @pytest.mark.asyncio
    async def test_colliding_slug_gets_suffix(self, db_session, purchased_playbook):
        own_agent = Agent(
            workspace_id=BUYER_WORKSPACE,
            organization_id=BUYER_ORG,
            slug="router",
            name="Our own router",
            instructions="Hands off.",
            model_provider="openai",
            model_name="gpt-4o",
        )
        db_session.add(own_agent)
        await db_session.commit()

        installation = await _deploy(db_session)

        slugs = {a.slug for a in await _workspace_rows(db_session, Agent)}
        assert slugs == {"router", "router-2", "faq-bot", "escalation"}
        assert installation.customizations["slug_renames"] == {"agent": {"router": "router-2"}}

        workflow = (await _workspace_rows(db_session, Workflow))[0]
        assert workflow.definition["steps"][0]["agent_slug"] == "router-2"

        await db_session.refresh(own_agent)
        assert own_agent.name == "Our own router"

    @pytest.mark.asyncio
    async def test_installation_suffix_when_clean_slugs_disabled(
        self, db_session, purchased_playbook, monkeypatch
    ):
        service = DeploymentService(db_session)
        monkeypatch.setattr(service.settings, "CLEAN_SLUGS", False)

        installation = await service.deploy("support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER)

        suffix = installation.id[-6:]
        slugs = {a.slug for a in await _workspace_rows(db_session, Agent)}
        assert slugs == {f"router-{suffix}", f"faq-bot-{suffix}", f"escalation-{suffix}"}


class TestFailedDeployment:
    """A failure part-way through leaves nothing behind."""

    @pytest.mark.asyncio
    async def test_failure_rolls_back_created_entities(self, db_session, purchased_playbook):
        with pytest.raises(PartialDeploymentError) as exc_info:
            await _deploy_failing(db_session)

        error = exc_info.value
        assert error.kind == "PartialDeployment"
        assert error.step == "networks"
        assert error.details["rollback"]["errors"] == {}
        assert error.details["rollback"]["deleted"]["agents"] == 3

        installation = (await db_session.execute(
            select(PlaybookInstallation).where(PlaybookInstallation.id == error.installation_id)
        )).scalar_one()
        assert installation.status == InstallationStatus.FAILED.value
        assert installation.failure_details["step"] == "networks"
        assert "network store unavailable" in installation.test_results["error"]

        for model in (Agent, Skill, Document, Workflow, Network):
            assert await _workspace_rows(db_session, model) == []
        assert await _count(db_session, NetworkPrimitive) == 0

    @pytest.mark.asyncio
    async def test_failed_install_does_not_count_and_can_be_retried(self, db_session, purchased_playbook):
        with pytest.raises(PartialDeploymentError):
            await _deploy_failing(db_session)

        installation = await _deploy(db_session)

        playbook = (await db_session.execute(
            select(Playbook).where(Playbook.id == purchased_playbook.id)
        )).scalar_one()
        assert installation.status == InstallationStatus.ACTIVE.value
        assert playbook.install_count == 1

    @pytest.mark.asyncio
    async def test_attachment_failure_purges_everything(self, db_session, purchased_playbook):
        service = DeploymentService(db_session)
        original_materialize = service._materialize

        async def materialize_then_fail(ctx, manifest):
            await original_materialize(ctx, manifest)
            ctx.step = "agent_attachments"
            raise RuntimeError("scorecard service down")

        service._materialize = materialize_then_fail

        with pytest.raises(PartialDeploymentError) as exc_info:
            await service.deploy("support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER)

        assert exc_info.value.step == "agent_attachments"
        assert await _count(db_session, GuardrailPolicy) == 0
        assert await _count(db_session, NetworkPrimitive) == 0
        assert await _workspace_rows(db_session, Agent) == []
    @pytest.mark.asyncio
    async def test_failure_while_activating_rolls_back(self, db_session, purchased_playbook, monkeypatch):
        async def broken_recompute(db, playbook):
            raise RuntimeError("install counter unavailable")

        monkeypatch.setattr("services.deployment_service.recompute_install_count", broken_recompute)

        with pytest.raises(PartialDeploymentError) as exc_info:
            await _deploy(db_session)

        assert exc_info.value.step == "finalize"
        assert exc_info.value.details["rollback"]["deleted"]["agents"] == 3
        installation = (await db_session.execute(
            select(PlaybookInstallation).where(PlaybookInstallation.id == exc_info.value.installation_id)
        )).scalar_one()
        assert installation.status == InstallationStatus.FAILED.value
        assert await _workspace_rows(db_session, Agent) == []

        monkeypatch.undo()
        retry = await _deploy(db_session)

        assert retry.status == InstallationStatus.ACTIVE.value



async def _deploy_failing(db):
    return await FailingDeploymentService(db).deploy(
        "support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER
    )


class TestSmokeTestsDuringDeploy:
    """Smoke test outcomes are recorded but never fail a deploy."""

    @pytest.mark.asyncio
    async def test_custom_invoker_output_is_checked(self, db_session):
        manifest = _manifest_with_expectation("account page")
        await create_published_playbook(db_session, manifest=manifest)
        await purchase_free(db_session)

        async def invoker(agent, input_text):
            return "Please use the Account Page to reset it."

        installation = await _deploy(db_session, invoker=invoker)

        assert installation.test_results["passed"] == 1

    @pytest.mark.asyncio
    async def test_failing_smoke_test_still_activates(self, db_session):
        manifest = _manifest_with_expectation("account page")
        await create_published_playbook(db_session, manifest=manifest)
        await purchase_free(db_session)

        async def invoker(agent, input_text):
            await asyncio.sleep(0)
            return "I don't know."

        installation = await _deploy(db_session, invoker=invoker)

        assert installation.status == InstallationStatus.ACTIVE.value
        assert installation.test_results["failed"] == 1
        assert installation.test_results["results"][0]["error"] == "expected output not found in response"


def _manifest_with_expectation(expected):
    manifest = support_manifest()
    manifest["test_cases"][0]["expected_output"] = expected
    return manifest
