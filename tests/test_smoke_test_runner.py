"""Tests for bounded post-deployment smoke tests."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from models.workspace import Agent, Skill
from schemas.manifest import TestCaseSpec
from services.smoke_test_runner import SmokeTestFailure, SmokeTestRunner, structural_invoker


def _agent(slug="faq-bot", **kwargs):
    defaults = dict(
        id=f"agent-{slug}",
        workspace_id="ws-1",
        organization_id="org-1",
        slug=slug,
        name=slug,
        instructions="Answer questions.",
        model_provider="openai",
        model_name="gpt-4o",
    )
    defaults.update(kwargs)
    return Agent(**defaults)


def _case(name="greeting", expected=None, agent_slug="faq-bot"):
    return TestCaseSpec(agent_slug=agent_slug, name=name, input_text="hello", expected_output=expected)


class TestSmokeTestRunner:
    """Failures are recorded per case and never raised."""

    @pytest.mark.asyncio
    async def test_expected_output_match_is_case_insensitive(self, db_session):
        async def invoker(agent, text):
            return "HELLO, how can I help?"

        runner = SmokeTestRunner(db_session, invoker=invoker)
        summary = await runner.run([_case(expected="hello")], {"faq-bot": _agent()})

        assert summary["passed"] == 1
        assert summary["results"][0]["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_timeout_is_a_failure(self, db_session):
        async def slow(agent, text):
            await asyncio.sleep(1)
            return "late"

        runner = SmokeTestRunner(db_session, invoker=slow, timeout_seconds=0.01)
        summary = await runner.run([_case()], {"faq-bot": _agent()})

        assert summary["failed"] == 1
        assert summary["results"][0]["error"].startswith("timed out")

    @pytest.mark.asyncio
    async def test_invoker_errors_are_captured(self, db_session):
        async def broken(agent, text):
            raise SmokeTestFailure("model unavailable")

        async def crashing(agent, text):
            raise KeyError("tools")

        first = await SmokeTestRunner(db_session, invoker=broken).run([_case()], {"faq-bot": _agent()})
        second = await SmokeTestRunner(db_session, invoker=crashing).run([_case()], {"faq-bot": _agent()})

        assert first["results"][0]["error"] == "model unavailable"
        assert second["results"][0]["error"].startswith("KeyError")

    @pytest.mark.asyncio
    async def test_missing_agent_and_case_limit(self, db_session):
        async def invoker(agent, text):
            return None

        runner = SmokeTestRunner(db_session, invoker=invoker, max_cases=2)
        cases = [_case("a", agent_slug="ghost"), _case("b"), _case("c")]

        summary = await runner.run(cases, {"faq-bot": _agent()})

        assert summary["total"] == 2
        assert summary["skipped"] == 1
        assert summary["passed"] == 1
        assert summary["results"][0]["error"] == "agent 'ghost' was not deployed"

    @pytest.mark.asyncio
    async def test_invoker_receives_agent_and_input(self, db_session):
        invoker = AsyncMock(return_value="Escalating to a human")
        agent = _agent()

        summary = await SmokeTestRunner(db_session, invoker=invoker).run(
            [_case(expected="escalating")], {"faq-bot": agent}
        )

        invoker.assert_awaited_once_with(agent, "hello")
        assert summary["passed"] == 1


class TestStructuralInvoker:
    @pytest.mark.asyncio
    async def test_unresolved_skill_fails(self, db_session):
        invoke = structural_invoker(db_session)

        with pytest.raises(SmokeTestFailure) as exc_info:
            await invoke(_agent(skill_ids=["missing-skill"]), "hello")

        assert "skill" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_resolved_references_pass(self, db_session):
        skill = Skill(workspace_id="ws-1", organization_id="org-1", slug="s", name="S")
        db_session.add(skill)
        await db_session.commit()
        invoke = structural_invoker(db_session)

        assert await invoke(_agent(skill_ids=[skill.id]), "hello") is None

    @pytest.mark.asyncio
    async def test_agent_without_instructions_fails(self, db_session):
        invoke = structural_invoker(db_session)

        with pytest.raises(SmokeTestFailure):
            await invoke(_agent(instructions=""), "hello")
