"""add_workspace_entity_tables

Workspace entities a playbook deployment materializes (documents, skills,
agents, workflows, networks and agent attachments) plus the integration
catalog used for integration mapping.
Uses inspector pattern so tables owned by the host platform are left alone.

Revision ID: a1c4e2f09b7d
Revises:
Create Date: 2026-09-21 10:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "a1c4e2f09b7d"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _provenance_columns():
    return [
        sa.Column("playbook_source_id", sa.String(36), nullable=True),
        sa.Column("playbook_installation_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    connection = op.get_bind()
    inspector = sa.inspect(connection)
    existing_tables = inspector.get_table_names()

    # ── documents ─────────────────────────────────────────────────────
    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("content", sa.Text(), nullable=False, server_default=""),
            sa.Column("content_type", sa.String(50), nullable=False, server_default="markdown"),
            sa.Column("category", sa.String(100), nullable=True),
            sa.Column("tags", sa.JSON(), default=[]),
            sa.Column("resource_metadata", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_provenance_columns(),
            sa.UniqueConstraint("workspace_id", "slug", name="uq_documents_workspace_slug"),
        )

    # ── skills ────────────────────────────────────────────────────────
    if "skills" not in existing_tables:
        op.create_table(
            "skills",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("instructions", sa.Text(), nullable=False, server_default=""),
            sa.Column("examples", sa.Text(), nullable=True),
            sa.Column("category", sa.String(100), nullable=True),
            sa.Column("tags", sa.JSON(), default=[]),
            sa.Column("tools", sa.JSON(), default=[]),
            sa.Column("document_ids", sa.JSON(), default=[]),
            sa.Column("resource_metadata", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_provenance_columns(),
            sa.UniqueConstraint("workspace_id", "slug", name="uq_skills_workspace_slug"),
        )

    # ── agents ────────────────────────────────────────────────────────
    if "agents" not in existing_tables:
        op.create_table(
            "agents",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("instructions", sa.Text(), nullable=False, server_default=""),
            sa.Column("instructions_template", sa.Text(), nullable=True),
            sa.Column("model_provider", sa.String(100), nullable=False),
            sa.Column("model_name", sa.String(255), nullable=False),
            sa.Column("temperature", sa.Float(), nullable=True),
            sa.Column("max_tokens", sa.Integer(), nullable=True),
            sa.Column("max_steps", sa.Integer(), nullable=True),
            sa.Column("memory_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("memory_config", sa.JSON(), nullable=True),
            sa.Column("sub_agent_ids", sa.JSON(), default=[]),
            sa.Column("workflow_ids", sa.JSON(), default=[]),
            sa.Column("tools", sa.JSON(), default=[]),
            sa.Column("skill_ids", sa.JSON(), default=[]),
            sa.Column("requires_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("max_spend_usd", sa.Float(), nullable=True),
            sa.Column("resource_metadata", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_provenance_columns(),
            sa.UniqueConstraint("workspace_id", "slug", name="uq_agents_workspace_slug"),
        )

    # ── workflows ─────────────────────────────────────────────────────
    if "workflows" not in existing_tables:
        op.create_table(
            "workflows",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("definition", sa.JSON(), nullable=False),
            sa.Column("input_schema", sa.JSON(), nullable=True),
            sa.Column("output_schema", sa.JSON(), nullable=True),
            sa.Column("max_steps", sa.Integer(), nullable=True),
            sa.Column("timeout", sa.Integer(), nullable=True),
            sa.Column("retry_config", sa.JSON(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_provenance_columns(),
            sa.UniqueConstraint("workspace_id", "slug", name="uq_workflows_workspace_slug"),
        )

    # ── networks / network_primitives ─────────────────────────────────
    if "networks" not in existing_tables:
        op.create_table(
            "networks",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("workspace_id", sa.String(36), nullable=False),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("slug", sa.String(255), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("instructions", sa.Text(), nullable=False, server_default=""),
            sa.Column("model_provider", sa.String(100), nullable=False),
            sa.Column("model_name", sa.String(255), nullable=False),
            sa.Column("temperature", sa.Float(), nullable=True),
            sa.Column("topology", sa.JSON(), default={}),
            sa.Column("memory_config", sa.JSON(), nullable=True),
            sa.Column("max_steps", sa.Integer(), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            *_provenance_columns(),
            sa.UniqueConstraint("workspace_id", "slug", name="uq_networks_workspace_slug"),
        )

    if "network_primitives" not in existing_tables:
        op.create_table(
            "network_primitives",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "network_id", sa.String(36),
                sa.ForeignKey("networks.id", ondelete="CASCADE"), nullable=False,
            ),
            sa.Column("primitive_type", sa.String(50), nullable=False),
            sa.Column("agent_id", sa.String(36), nullable=True),
            sa.Column("workflow_id", sa.String(36), nullable=True),
            sa.Column("tool_id", sa.String(255), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("position", sa.JSON(), nullable=True),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        )
        op.create_index("ix_network_primitives_network", "network_primitives", ["network_id"])

    # ── agent attachments ─────────────────────────────────────────────
    if "guardrail_policies" not in existing_tables:
        op.create_table(
            "guardrail_policies",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("agent_id", sa.String(36), nullable=False, unique=True),
            sa.Column("config", sa.JSON(), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        )

    if "agent_test_cases" not in existing_tables:
        op.create_table(
            "agent_test_cases",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("agent_id", sa.String(36), nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("input_text", sa.Text(), nullable=False),
            sa.Column("expected_output", sa.Text(), nullable=True),
            sa.Column("tags", sa.JSON(), default=[]),
        )
        op.create_index("ix_agent_test_cases_agent", "agent_test_cases", ["agent_id"])

    if "agent_scorecards" not in existing_tables:
        op.create_table(
            "agent_scorecards",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("agent_id", sa.String(36), nullable=False, unique=True),
            sa.Column("criteria", sa.JSON(), nullable=False),
            sa.Column("sampling_rate", sa.Float(), nullable=False, server_default="1.0"),
            sa.Column("auditor_model", sa.String(255), nullable=True),
            sa.Column("evaluate_turns", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        )

    # ── integration catalog ───────────────────────────────────────────
    if "integration_providers" not in existing_tables:
        op.create_table(
            "integration_providers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("key", sa.String(100), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        )

    if "integration_connections" not in existing_tables:
        op.create_table(
            "integration_connections",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "provider_id", sa.String(36),
                sa.ForeignKey("integration_providers.id"), nullable=False,
            ),
            sa.Column("organization_id", sa.String(36), nullable=False),
            sa.Column("workspace_id", sa.String(36), nullable=True),
            sa.Column("name", sa.String(255), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        )
        op.create_index("ix_integration_connections_org", "integration_connections", ["organization_id"])
        op.create_index("ix_integration_connections_provider", "integration_connections", ["provider_id"])


def downgrade() -> None:
    op.drop_table("integration_connections")
    op.drop_table("integration_providers")
    op.drop_table("agent_scorecards")
    op.drop_table("agent_test_cases")
    op.drop_table("guardrail_policies")
    op.drop_table("network_primitives")
    op.drop_table("networks")
    op.drop_table("workflows")
    op.drop_table("agents")
    op.drop_table("skills")
    op.drop_table("documents")
