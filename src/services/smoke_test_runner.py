"""Bounded post-deployment smoke tests.

Each manifest test case is sent to the deployed agent through an
``AgentInvoker``. A case that raises or exceeds the per-case deadline is
recorded as failed; nothing here ever fails the deployment itself.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_cached_settings
from models.workspace import Agent, Skill, Workflow
from schemas.manifest import TestCaseSpec

logger = logging.getLogger(__name__)

# (agent, input_text) -> output text, or None when the invoker cannot
# produce text and only checks that the agent is runnable
AgentInvoker = Callable[[Agent, str], Awaitable[Optional[str]]]


class SmokeTestFailure(Exception):
    """Raised by an invoker when the agent cannot handle the input."""


def structural_invoker(db: AsyncSession) -> AgentInvoker:
    """Invoker that checks the agent's references resolve in its workspace."""

    async def invoke(agent: Agent, input_text: str) -> Optional[str]:
        checks = (
            (Agent, agent.sub_agent_ids or [], "sub-agent"),
            (Skill, agent.skill_ids or [], "skill"),
            (Workflow, agent.workflow_ids or [], "workflow"),
        )
        for model, ids, label in checks:
            if not ids:
                continue
            result = await db.execute(
                select(func.count()).select_from(model).where(
                    model.id.in_(ids), model.workspace_id == agent.workspace_id
                )
            )
            found = result.scalar() or 0
            if found != len(set(ids)):
                raise SmokeTestFailure(
                    f"{len(set(ids)) - found} {label} reference(s) of agent "
                    f"'{agent.slug}' do not resolve"
                )
        if not (agent.instructions or agent.instructions_template):
            raise SmokeTestFailure(f"agent '{agent.slug}' has no instructions")
        return None

    return invoke


class SmokeTestRunner:
    def __init__(
        self,
        db: AsyncSession,
        invoker: Optional[AgentInvoker] = None,
        timeout_seconds: Optional[float] = None,
        max_cases: Optional[int] = None,
    ):
        settings = get_cached_settings()
        self.db = db
        self.invoker = invoker or structural_invoker(db)
        self.timeout_seconds = (
            timeout_seconds if timeout_seconds is not None else settings.SMOKE_TEST_TIMEOUT_SECONDS
        )
        self.max_cases = max_cases if max_cases is not None else settings.SMOKE_TEST_MAX_CASES

    async def run(
        self,
        test_cases: List[TestCaseSpec],
        agents_by_slug: Dict[str, Agent],
    ) -> Dict[str, Any]:
        """Run up to ``max_cases`` cases; returns ``{passed, failed, total, skipped, results}``."""
        selected = test_cases[: self.max_cases]
        results: List[Dict[str, Any]] = []

        for case in selected:
            results.append(await self._run_case(case, agents_by_slug.get(case.agent_slug)))

        passed = sum(1 for r in results if r["passed"])
        summary = {
            "passed": passed,
            "failed": len(results) - passed,
            "total": len(results),
            "skipped": len(test_cases) - len(selected),
            "results": results,
        }
        logger.info(
            f"Smoke tests: {summary['passed']}/{summary['total']} passed"
            + (f", {summary['skipped']} skipped" if summary["skipped"] else "")
        )
        return summary

    async def _run_case(self, case: TestCaseSpec, agent: Optional[Agent]) -> Dict[str, Any]:
        outcome: Dict[str, Any] = {
            "name": case.name,
            "agent_slug": case.agent_slug,
            "passed": False,
        }
        if agent is None:
            outcome["error"] = f"agent '{case.agent_slug}' was not deployed"
            return outcome

        started = time.monotonic()
        try:
            output = await asyncio.wait_for(
                self.invoker(agent, case.input_text), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            outcome["error"] = f"timed out after {self.timeout_seconds}s"
            logger.warning(f"Smoke test '{case.name}' timed out")
            return outcome
        except SmokeTestFailure as exc:
            outcome["error"] = str(exc)
            return outcome
        except Exception as exc:
            outcome["error"] = f"{type(exc).__name__}: {exc}"
            logger.warning(f"Smoke test '{case.name}' raised {type(exc).__name__}: {exc}")
            return outcome
        finally:
            outcome["duration_ms"] = int((time.monotonic() - started) * 1000)

        if case.expected_output and output is not None:
            if case.expected_output.lower() not in output.lower():
                outcome["error"] = "expected output not found in response"
                return outcome

        outcome["passed"] = True
        return outcome
