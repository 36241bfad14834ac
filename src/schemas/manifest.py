"""Playbook manifest schemas.

A manifest is the portable snapshot of a multi-agent system: every agent,
skill, document, workflow and network it needs, plus the guardrails,
test cases and scorecards attached to its agents. Components reference
each other by slug; ids only exist once a manifest is deployed.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import ValidationError

MANIFEST_VERSION = "1.0"

EntryPointType = Literal["agent", "workflow", "network"]
PrimitiveType = Literal["agent", "workflow", "tool"]

SLUG_PATTERN = r"^[a-z0-9][a-z0-9-]*$"


class ToolRef(BaseModel):
    tool_id: str = Field(..., description="Opaque id resolved by the tool registry")
    config: Optional[Dict[str, Any]] = None


class AgentSpec(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    slug: str = Field(..., min_length=1, max_length=255, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    instructions: str = ""
    instructions_template: Optional[str] = None
    model_provider: str = "openai"
    model_name: str = "gpt-4o"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    max_steps: Optional[int] = None
    memory_enabled: bool = False
    memory_config: Optional[Dict[str, Any]] = None
    sub_agents: List[str] = Field(default_factory=list, description="Peer agent slugs")
    workflows: List[str] = Field(default_factory=list, description="Workflow slugs")
    tools: List[ToolRef] = Field(default_factory=list)
    skills: List[str] = Field(default_factory=list, description="Skill slugs")
    requires_approval: bool = False
    max_spend_usd: Optional[float] = None
    metadata: Optional[Dict[str, Any]] = None
    version: int = 1


class SkillSpec(BaseModel):
    slug: str = Field(..., min_length=1, max_length=255, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    instructions: str = ""
    examples: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    tools: List[ToolRef] = Field(default_factory=list)
    documents: List[str] = Field(default_factory=list, description="Document slugs")
    metadata: Optional[Dict[str, Any]] = None
    version: int = 1


class DocumentSpec(BaseModel):
    slug: str = Field(..., min_length=1, max_length=255, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    content: str = ""
    content_type: str = "markdown"
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Optional[Dict[str, Any]] = None
    version: int = 1


class WorkflowSpec(BaseModel):
    slug: str = Field(..., min_length=1, max_length=255, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    definition: Dict[str, Any] = Field(default_factory=dict)
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None
    max_steps: Optional[int] = None
    timeout: Optional[int] = None
    retry_config: Optional[Dict[str, Any]] = None
    version: int = 1


class NetworkPrimitiveSpec(BaseModel):
    primitive_type: PrimitiveType
    agent_slug: Optional[str] = None
    workflow_slug: Optional[str] = None
    tool_id: Optional[str] = None
    description: Optional[str] = None
    position: Optional[Dict[str, Any]] = None


class NetworkSpec(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    slug: str = Field(..., min_length=1, max_length=255, pattern=SLUG_PATTERN)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    instructions: str = ""
    model_provider: str = "openai"
    model_name: str = "gpt-4o"
    temperature: Optional[float] = None
    topology: Dict[str, Any] = Field(default_factory=dict)
    memory_config: Optional[Dict[str, Any]] = None
    max_steps: Optional[int] = None
    primitives: List[NetworkPrimitiveSpec] = Field(default_factory=list)
    version: int = 1


class GuardrailSpec(BaseModel):
    agent_slug: str
    config: Dict[str, Any] = Field(default_factory=dict)
    version: int = 1


class TestCaseSpec(BaseModel):
    __test__ = False  # keep pytest from collecting this class

    agent_slug: str
    name: str
    input_text: str
    expected_output: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class ScorecardSpec(BaseModel):
    agent_slug: str
    criteria: List[Dict[str, Any]] = Field(default_factory=list)
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    auditor_model: Optional[str] = None
    evaluate_turns: bool = False
    version: int = 1


class EntryPoint(BaseModel):
    type: EntryPointType
    slug: str


class PlaybookManifest(BaseModel):
    version: str = MANIFEST_VERSION
    agents: List[AgentSpec] = Field(default_factory=list)
    skills: List[SkillSpec] = Field(default_factory=list)
    documents: List[DocumentSpec] = Field(default_factory=list)
    workflows: List[WorkflowSpec] = Field(default_factory=list)
    networks: List[NetworkSpec] = Field(default_factory=list)
    guardrails: List[GuardrailSpec] = Field(default_factory=list)
    test_cases: List[TestCaseSpec] = Field(default_factory=list)
    scorecards: List[ScorecardSpec] = Field(default_factory=list)
    required_integrations: List[str] = Field(default_factory=list)
    entry_point: EntryPoint

    def component_count(self) -> int:
        return (
            len(self.agents)
            + len(self.skills)
            + len(self.documents)
            + len(self.workflows)
            + len(self.networks)
        )


def parse_manifest(raw: Any) -> PlaybookManifest:
    """Load a stored manifest value, raising ManifestInvalid on structural errors."""
    if isinstance(raw, PlaybookManifest):
        return raw
    if not isinstance(raw, dict):
        raise ValidationError(
            "Manifest must be an object",
            details={"errors": ["manifest is not an object"]},
            kind="ManifestInvalid",
        )
    try:
        return PlaybookManifest.model_validate(raw)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError(
            "Manifest is structurally invalid",
            details={"errors": errors},
            kind="ManifestInvalid",
        ) from exc


def is_valid_manifest(raw: Any) -> bool:
    """Structural check only; see services.manifest_validator for references."""
    try:
        parse_manifest(raw)
    except ValidationError:
        return False
    return True
