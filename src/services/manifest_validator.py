"""Referential-integrity checks over a playbook manifest.

Pure functions, no I/O. Structural checks (types, required fields) are
done by the pydantic schema; this module checks that every slug a
component mentions resolves to a component of the same manifest.
"""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Set

from core.exceptions import ValidationError
from schemas.manifest import PlaybookManifest


@dataclass
class ManifestValidationResult:
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _duplicates(slugs: Iterable[str]) -> List[str]:
    return sorted(slug for slug, count in Counter(slugs).items() if count > 1)


def definition_agent_slugs(value: Any) -> List[str]:
    """Every ``agent_slug`` named anywhere inside a workflow definition."""
    found: List[str] = []
    if isinstance(value, dict):
        slug = value.get("agent_slug")
        if isinstance(slug, str):
            found.append(slug)
        for child in value.values():
            found.extend(definition_agent_slugs(child))
    elif isinstance(value, list):
        for child in value:
            found.extend(definition_agent_slugs(child))
    return found


def validate(manifest: PlaybookManifest) -> ManifestValidationResult:
    """Return every referential problem found in ``manifest``."""
    errors: List[str] = []

    index: Dict[str, Set[str]] = {
        "agent": {a.slug for a in manifest.agents},
        "skill": {s.slug for s in manifest.skills},
        "document": {d.slug for d in manifest.documents},
        "workflow": {w.slug for w in manifest.workflows},
        "network": {n.slug for n in manifest.networks},
    }

    if manifest.component_count() == 0:
        errors.append("manifest has no components")

    for kind, items in (
        ("agent", manifest.agents),
        ("skill", manifest.skills),
        ("document", manifest.documents),
        ("workflow", manifest.workflows),
        ("network", manifest.networks),
    ):
        for slug in _duplicates(item.slug for item in items):
            errors.append(f"duplicate {kind} slug '{slug}'")

    def check(kind: str, slug: str, where: str) -> None:
        if slug not in index[kind]:
            errors.append(f"{where} references unknown {kind} '{slug}'")

    for agent in manifest.agents:
        where = f"agent '{agent.slug}'"
        for sub in agent.sub_agents:
            if sub == agent.slug:
                errors.append(f"{where} lists itself as a sub-agent")
            else:
                check("agent", sub, where)
        for skill_slug in agent.skills:
            check("skill", skill_slug, where)
        for wf_slug in agent.workflows:
            check("workflow", wf_slug, where)
        for tool in agent.tools:
            if not tool.tool_id.strip():
                errors.append(f"{where} has a tool with an empty tool_id")

    for skill in manifest.skills:
        where = f"skill '{skill.slug}'"
        for doc_slug in skill.documents:
            check("document", doc_slug, where)
        for tool in skill.tools:
            if not tool.tool_id.strip():
                errors.append(f"{where} has a tool with an empty tool_id")

    for workflow in manifest.workflows:
        for agent_slug in definition_agent_slugs(workflow.definition):
            check("agent", agent_slug, f"workflow '{workflow.slug}'")

    for network in manifest.networks:
        for position, prim in enumerate(network.primitives):
            where = f"network '{network.slug}' primitive {position}"
            if prim.primitive_type == "agent":
                if not prim.agent_slug:
                    errors.append(f"{where} is an agent primitive without agent_slug")
                else:
                    check("agent", prim.agent_slug, where)
            elif prim.primitive_type == "workflow":
                if not prim.workflow_slug:
                    errors.append(f"{where} is a workflow primitive without workflow_slug")
                else:
                    check("workflow", prim.workflow_slug, where)
            elif not (prim.tool_id or "").strip():
                errors.append(f"{where} is a tool primitive without tool_id")

    for guardrail in manifest.guardrails:
        check("agent", guardrail.agent_slug, "guardrail")
    for slug in _duplicates(g.agent_slug for g in manifest.guardrails):
        errors.append(f"agent '{slug}' has more than one guardrail")

    for test_case in manifest.test_cases:
        check("agent", test_case.agent_slug, f"test case '{test_case.name}'")

    for scorecard in manifest.scorecards:
        check("agent", scorecard.agent_slug, "scorecard")
    for slug in _duplicates(s.agent_slug for s in manifest.scorecards):
        errors.append(f"agent '{slug}' has more than one scorecard")

    entry = manifest.entry_point
    if entry.slug not in index[entry.type]:
        errors.append(
            f"entry point references unknown {entry.type} '{entry.slug}'"
        )

    return ManifestValidationResult(errors=errors)


def ensure_valid(manifest: PlaybookManifest) -> PlaybookManifest:
    """Raise ManifestInvalid if ``manifest`` has any referential errors."""
    result = validate(manifest)
    if not result.is_valid:
        raise ValidationError(
            "Manifest failed validation",
            details={"errors": result.errors},
            kind="ManifestInvalid",
        )
    return manifest
