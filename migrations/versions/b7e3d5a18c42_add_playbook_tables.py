"""add_playbook_tables

Playbook listings, immutable versions, component index, purchases,
installations (provenance ledger), reviews and the audit trail.

The partial unique indexes on purchases and installations are what keep
concurrent purchase/deploy requests from producing duplicate rows.

Revision ID: b7e3d5a18c42
Revises: a1c4e2f09b7d
Create Date: 2026-09-21 10:30:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "b7e3d5a18c42"
down_revision: Union[str, None] = "a1c4e2f09b7d"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    connection = op.get_bind()
    inspector = sa.inspect(connection)
    existing_tables = inspector.get_table_names()

    # ── playbooks ─────────────────────────────────────────────────────
    if "playbooks" not in existing_tables:
        op.create_table(
            "playbooks",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("slug", sa.String(255), nullable=False, unique=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("tagline", sa.String(500), nullable=True),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category", sa.String(100), nullable=True),
            sa.Column("tags", sa.JSON(), default=[]),
            sa.Column("status", sa.String(50), nullable=False, server_default="DRAFT"),
            sa.Column("pricing_model", sa.String(50), nullable=False, server_default="FREE"),
            sa.Column("price_usd", sa.Float(), nullable=True),
            sa.Column("monthly_price_usd", sa.Float(), nullable=True),
            sa.Column("per_use_price_usd", sa.Float(), nullable=True),
            sa.Column("publisher_org_id", sa.String(36), nullable=False),
            sa.Column("published_by_user_id", sa.String(36), nullable=True),
            sa.Column("install_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("average_rating", sa.Float(), nullable=True),
            sa.Column("review_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("required_integrations", sa.JSON(), default=[]),
            sa.Column("draft_manifest", sa.JSON(), nullable=True),
            sa.Column("current_version", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("published_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_playbooks_status", "playbooks", ["status"])
        op.create_index("ix_playbooks_category", "playbooks", ["category"])
        op.create_index("ix_playbooks_publisher", "playbooks", ["publisher_org_id"])
        op.create_index("ix_playbooks_rating", "playbooks", ["average_rating"])

    # ── playbook_versions ─────────────────────────────────────────────
    if "playbook_versions" not in existing_tables:
        op.create_table(
            "playbook_versions",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("playbook_id", sa.String(36), sa.ForeignKey("playbooks.id"), nullable=False),
            sa.Column("version", sa.Integer(), nullable=False),
            sa.Column("manifest", sa.JSON(), nullable=False),
            sa.Column("changelog", sa.Text(), nullable=True),
            sa.Column("created_by", sa.String(36), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint("playbook_id", "version", name="uq_playbook_versions_playbook_version"),
        )

    # ── playbook_components ───────────────────────────────────────────
    if "playbook_components" not in existing_tables:
        op.create_table(
            "playbook_components",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("playbook_id", sa.String(36), sa.ForeignKey("playbooks.id"), nullable=False),
            sa.Column("component_type", sa.String(50), nullable=False),
            sa.Column("source_entity_id", sa.String(36), nullable=True),
            sa.Column("source_slug", sa.String(255), nullable=False),
            sa.Column("config_snapshot", sa.JSON(), default={}),
            sa.Column("is_entry_point", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        )
        op.create_index("ix_playbook_components_playbook", "playbook_components", ["playbook_id"])

    # ── playbook_purchases ────────────────────────────────────────────
    if "playbook_purchases" not in existing_tables:
        op.create_table(
            "playbook_purchases",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("playbook_id", sa.String(36), sa.ForeignKey("playbooks.id"), nullable=False),
            sa.Column("buyer_org_id", sa.String(36), nullable=False),
            sa.Column("buyer_user_id", sa.String(36), nullable=False),
            sa.Column("status", sa.String(50), nullable=False, server_default="PENDING"),
            sa.Column("pricing_model", sa.String(50), nullable=False),
            sa.Column("amount_usd", sa.Float(), nullable=False, server_default="0"),
            sa.Column("platform_fee_usd", sa.Float(), nullable=False, server_default="0"),
            sa.Column("seller_payout_usd", sa.Float(), nullable=False, server_default="0"),
            sa.Column("payment_ref", sa.String(255), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("refunded_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_playbook_purchases_buyer", "playbook_purchases", ["buyer_org_id"])
        op.create_index(
            "uq_playbook_purchases_completed",
            "playbook_purchases",
            ["playbook_id", "buyer_org_id"],
            unique=True,
            postgresql_where=sa.text("status = 'COMPLETED'"),
            sqlite_where=sa.text("status = 'COMPLETED'"),
        )

    # ── playbook_installations ────────────────────────────────────────
    if "playbook_installations" not in existing_tables:
        op.create_table(
            "playbook_installations",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("playbook_id", sa.String(36), sa.ForeignKey("playbooks.id"), nullable=False),
            sa.Column(
                "purchase_id", sa.String(36),
                sa.ForeignKey("playbook_purchases.id"), nullable=True,
            ),
            sa.Column("target_org_id", sa.String(36), nullable=False),
            sa.Column("target_workspace_id", sa.String(36), nullable=False),
            sa.Column("installed_by_user_id", sa.String(36), nullable=False),
            sa.Column("version_installed", sa.Integer(), nullable=False),
            sa.Column("status", sa.String(50), nullable=False, server_default="IN_PROGRESS"),
            sa.Column("created_agent_ids", sa.JSON(), nullable=False),
            sa.Column("created_skill_ids", sa.JSON(), nullable=False),
            sa.Column("created_document_ids", sa.JSON(), nullable=False),
            sa.Column("created_workflow_ids", sa.JSON(), nullable=False),
            sa.Column("created_network_ids", sa.JSON(), nullable=False),
            sa.Column("customizations", sa.JSON(), nullable=True),
            sa.Column("test_results", sa.JSON(), nullable=True),
            sa.Column("integration_status", sa.JSON(), nullable=True),
            sa.Column("failure_details", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("uninstalled_at", sa.DateTime(), nullable=True),
        )
        op.create_index("ix_playbook_installations_org", "playbook_installations", ["target_org_id"])
        op.create_index("ix_playbook_installations_status", "playbook_installations", ["status"])
        op.create_index(
            "uq_playbook_installations_live",
            "playbook_installations",
            ["playbook_id", "target_org_id"],
            unique=True,
            postgresql_where=sa.text("status IN ('IN_PROGRESS', 'ACTIVE')"),
            sqlite_where=sa.text("status IN ('IN_PROGRESS', 'ACTIVE')"),
        )

    # ── playbook_reviews ──────────────────────────────────────────────
    if "playbook_reviews" not in existing_tables:
        op.create_table(
            "playbook_reviews",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("playbook_id", sa.String(36), sa.ForeignKey("playbooks.id"), nullable=False),
            sa.Column("reviewer_org_id", sa.String(36), nullable=False),
            sa.Column("reviewer_user_id", sa.String(36), nullable=True),
            sa.Column("rating", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(255), nullable=True),
            sa.Column("body", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
            sa.UniqueConstraint("playbook_id", "reviewer_org_id", name="uq_playbook_reviews_reviewer"),
        )
        op.create_index("ix_playbook_reviews_playbook", "playbook_reviews", ["playbook_id"])

    # ── audit_logs ────────────────────────────────────────────────────
    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("entity_type", sa.String(50), nullable=False),
            sa.Column("entity_id", sa.String(36), nullable=False),
            sa.Column("action", sa.String(50), nullable=False),
            sa.Column("actor_id", sa.String(36), nullable=True),
            sa.Column("from_status", sa.String(50), nullable=True),
            sa.Column("to_status", sa.String(50), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("details", sa.JSON(), nullable=True),
            sa.Column("timestamp", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("playbook_reviews")
    op.drop_table("playbook_installations")
    op.drop_table("playbook_purchases")
    op.drop_table("playbook_components")
    op.drop_table("playbook_versions")
    op.drop_table("playbooks")
