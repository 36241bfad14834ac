"""Workspace entities a playbook deployment materializes.

Agents, skills, documents, workflows and networks are owned outright by
the workspace's organization. Rows created by a deployment carry the
source playbook and installation ids so they can be traced back.
"""

from sqlalchemy import (
    Column, String, Integer, Float, Text, JSON, Boolean,
    ForeignKey, Index, UniqueConstraint,
)
from .base import Base, TimestampMixin, new_id


class ProvenanceMixin:
    playbook_source_id = Column(String(36), nullable=True)
    playbook_installation_id = Column(String(36), nullable=True)


class Document(TimestampMixin, ProvenanceMixin, Base):
    __tablename__ = "documents"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), nullable=False)
    organization_id = Column(String(36), nullable=False)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    content = Column(Text, nullable=False, default="")
    content_type = Column(String(50), nullable=False, default="markdown")
    category = Column(String(100), nullable=True)
    tags = Column(JSON, default=list)
    resource_metadata = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="uq_documents_workspace_slug"),
    )


class Skill(TimestampMixin, ProvenanceMixin, Base):
    __tablename__ = "skills"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), nullable=False)
    organization_id = Column(String(36), nullable=False)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    instructions = Column(Text, nullable=False, default="")
    examples = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    tags = Column(JSON, default=list)
    tools = Column(JSON, default=list)  # [{"tool_id": ...}]
    document_ids = Column(JSON, default=list)
    resource_metadata = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="uq_skills_workspace_slug"),
    )


class Agent(TimestampMixin, ProvenanceMixin, Base):
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), nullable=False)
    organization_id = Column(String(36), nullable=False)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    instructions = Column(Text, nullable=False, default="")
    instructions_template = Column(Text, nullable=True)
    model_provider = Column(String(100), nullable=False)
    model_name = Column(String(255), nullable=False)
    temperature = Column(Float, nullable=True)
    max_tokens = Column(Integer, nullable=True)
    max_steps = Column(Integer, nullable=True)
    memory_enabled = Column(Boolean, nullable=False, default=False)
    memory_config = Column(JSON, nullable=True)
    sub_agent_ids = Column(JSON, default=list)
    workflow_ids = Column(JSON, default=list)
    tools = Column(JSON, default=list)  # [{"tool_id": ..., "config": ...}]
    skill_ids = Column(JSON, default=list)
    requires_approval = Column(Boolean, nullable=False, default=False)
    max_spend_usd = Column(Float, nullable=True)
    resource_metadata = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="uq_agents_workspace_slug"),
    )


class Workflow(TimestampMixin, ProvenanceMixin, Base):
    __tablename__ = "workflows"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), nullable=False)
    organization_id = Column(String(36), nullable=False)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    definition = Column(JSON, nullable=False, default=dict)
    input_schema = Column(JSON, nullable=True)
    output_schema = Column(JSON, nullable=True)
    max_steps = Column(Integer, nullable=True)
    timeout = Column(Integer, nullable=True)
    retry_config = Column(JSON, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="uq_workflows_workspace_slug"),
    )


class Network(TimestampMixin, ProvenanceMixin, Base):
    __tablename__ = "networks"

    id = Column(String(36), primary_key=True, default=new_id)
    workspace_id = Column(String(36), nullable=False)
    organization_id = Column(String(36), nullable=False)
    slug = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    instructions = Column(Text, nullable=False, default="")
    model_provider = Column(String(100), nullable=False)
    model_name = Column(String(255), nullable=False)
    temperature = Column(Float, nullable=True)
    topology = Column(JSON, default=dict)
    memory_config = Column(JSON, nullable=True)
    max_steps = Column(Integer, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("workspace_id", "slug", name="uq_networks_workspace_slug"),
    )


class NetworkPrimitive(Base):
    __tablename__ = "network_primitives"

    id = Column(String(36), primary_key=True, default=new_id)
    network_id = Column(String(36), ForeignKey("networks.id", ondelete="CASCADE"), nullable=False)
    primitive_type = Column(String(50), nullable=False)  # agent, workflow, tool
    agent_id = Column(String(36), nullable=True)
    workflow_id = Column(String(36), nullable=True)
    tool_id = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    position = Column(JSON, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_network_primitives_network", "network_id"),
    )


class GuardrailPolicy(Base):
    __tablename__ = "guardrail_policies"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), nullable=False, unique=True)
    config = Column(JSON, nullable=False, default=dict)
    version = Column(Integer, nullable=False, default=1)


class AgentTestCase(Base):
    __tablename__ = "agent_test_cases"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), nullable=False)
    name = Column(String(255), nullable=False)
    input_text = Column(Text, nullable=False)
    expected_output = Column(Text, nullable=True)
    tags = Column(JSON, default=list)

    __table_args__ = (
        Index("ix_agent_test_cases_agent", "agent_id"),
    )


class AgentScorecard(Base):
    __tablename__ = "agent_scorecards"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), nullable=False, unique=True)
    criteria = Column(JSON, nullable=False, default=list)
    sampling_rate = Column(Float, nullable=False, default=1.0)
    auditor_model = Column(String(255), nullable=True)
    evaluate_turns = Column(Boolean, nullable=False, default=False)
    version = Column(Integer, nullable=False, default=1)
