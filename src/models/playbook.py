"""Playbook marketplace database models.

A playbook is a marketplace listing wrapping immutable manifest versions.
Purchases license a playbook to a buyer org; installations record each
materialization of a manifest into a buyer workspace together with the
provenance of every entity the deployment created.
"""

from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, Text, JSON, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint, text,
)

from .base import Base, new_id


class PlaybookStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    PUBLISHED = "PUBLISHED"
    SUSPENDED = "SUSPENDED"
    ARCHIVED = "ARCHIVED"


class PricingModel(str, Enum):
    FREE = "FREE"
    ONE_TIME = "ONE_TIME"
    SUBSCRIPTION = "SUBSCRIPTION"
    PER_USE = "PER_USE"


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class InstallationStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    ACTIVE = "ACTIVE"
    FAILED = "FAILED"
    UNINSTALLED = "UNINSTALLED"


class ComponentType(str, Enum):
    AGENT = "AGENT"
    SKILL = "SKILL"
    DOCUMENT = "DOCUMENT"
    WORKFLOW = "WORKFLOW"
    NETWORK = "NETWORK"


class Playbook(Base):
    """A marketplace listing owned by its publisher org. Never hard-deleted."""

    __tablename__ = "playbooks"

    id = Column(String(36), primary_key=True, default=new_id)
    slug = Column(String(255), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    tagline = Column(String(500), nullable=True)
    description = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    tags = Column(JSON, default=list)

    status = Column(String(50), nullable=False, default=PlaybookStatus.DRAFT.value)
    pricing_model = Column(String(50), nullable=False, default=PricingModel.FREE.value)
    price_usd = Column(Float, nullable=True)
    monthly_price_usd = Column(Float, nullable=True)
    per_use_price_usd = Column(Float, nullable=True)

    publisher_org_id = Column(String(36), nullable=False)
    published_by_user_id = Column(String(36), nullable=True)

    # Derived aggregates, recomputed from source rows
    install_count = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=True)
    review_count = Column(Integer, nullable=False, default=0)

    required_integrations = Column(JSON, default=list)
    # Working manifest assembled by the author; snapshotted into versions
    draft_manifest = Column(JSON, nullable=True)
    current_version = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    published_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_playbooks_status", "status"),
        Index("ix_playbooks_category", "category"),
        Index("ix_playbooks_publisher", "publisher_org_id"),
        Index("ix_playbooks_rating", "average_rating"),
    )


class PlaybookVersion(Base):
    """Immutable manifest snapshot. Never mutated after creation."""

    __tablename__ = "playbook_versions"

    id = Column(String(36), primary_key=True, default=new_id)
    playbook_id = Column(String(36), ForeignKey("playbooks.id"), nullable=False)
    version = Column(Integer, nullable=False)
    manifest = Column(JSON, nullable=False)
    changelog = Column(Text, nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("playbook_id", "version", name="uq_playbook_versions_playbook_version"),
    )


class PlaybookComponent(Base):
    """Index row for one manifest component of a playbook."""

    __tablename__ = "playbook_components"

    id = Column(String(36), primary_key=True, default=new_id)
    playbook_id = Column(String(36), ForeignKey("playbooks.id"), nullable=False)
    component_type = Column(String(50), nullable=False)
    source_entity_id = Column(String(36), nullable=True)
    source_slug = Column(String(255), nullable=False)
    config_snapshot = Column(JSON, default=dict)
    is_entry_point = Column(Boolean, nullable=False, default=False)
    sort_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_playbook_components_playbook", "playbook_id"),
    )


class PlaybookPurchase(Base):
    """License ledger row. At most one COMPLETED row per (playbook, buyer org)."""

    __tablename__ = "playbook_purchases"

    id = Column(String(36), primary_key=True, default=new_id)
    playbook_id = Column(String(36), ForeignKey("playbooks.id"), nullable=False)
    buyer_org_id = Column(String(36), nullable=False)
    buyer_user_id = Column(String(36), nullable=False)
    status = Column(String(50), nullable=False, default=PurchaseStatus.PENDING.value)
    pricing_model = Column(String(50), nullable=False)
    amount_usd = Column(Float, nullable=False, default=0.0)
    platform_fee_usd = Column(Float, nullable=False, default=0.0)
    seller_payout_usd = Column(Float, nullable=False, default=0.0)
    payment_ref = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_playbook_purchases_buyer", "buyer_org_id"),
        Index(
            "uq_playbook_purchases_completed",
            "playbook_id",
            "buyer_org_id",
            unique=True,
            postgresql_where=text("status = 'COMPLETED'"),
            sqlite_where=text("status = 'COMPLETED'"),
        ),
    )


class PlaybookInstallation(Base):
    """Provenance ledger for one deployment into a target workspace.

    The created_*_ids lists are appended in the same transaction that
    creates each entity, so a failed deployment can be rolled back
    precisely from whatever was recorded.
    """

    __tablename__ = "playbook_installations"

    id = Column(String(36), primary_key=True, default=new_id)
    playbook_id = Column(String(36), ForeignKey("playbooks.id"), nullable=False)
    purchase_id = Column(String(36), ForeignKey("playbook_purchases.id"), nullable=True)
    target_org_id = Column(String(36), nullable=False)
    target_workspace_id = Column(String(36), nullable=False)
    installed_by_user_id = Column(String(36), nullable=False)
    version_installed = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False, default=InstallationStatus.IN_PROGRESS.value)

    created_agent_ids = Column(JSON, nullable=False, default=list)
    created_skill_ids = Column(JSON, nullable=False, default=list)
    created_document_ids = Column(JSON, nullable=False, default=list)
    created_workflow_ids = Column(JSON, nullable=False, default=list)
    created_network_ids = Column(JSON, nullable=False, default=list)

    customizations = Column(JSON, nullable=True)
    test_results = Column(JSON, nullable=True)
    integration_status = Column(JSON, nullable=True)
    failure_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    uninstalled_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_playbook_installations_org", "target_org_id"),
        Index("ix_playbook_installations_status", "status"),
        Index(
            "uq_playbook_installations_live",
            "playbook_id",
            "target_org_id",
            unique=True,
            postgresql_where=text("status IN ('IN_PROGRESS', 'ACTIVE')"),
            sqlite_where=text("status IN ('IN_PROGRESS', 'ACTIVE')"),
        ),
    )


class PlaybookReview(Base):
    """One review per (playbook, reviewer org); resubmission updates it."""

    __tablename__ = "playbook_reviews"

    id = Column(String(36), primary_key=True, default=new_id)
    playbook_id = Column(String(36), ForeignKey("playbooks.id"), nullable=False)
    reviewer_org_id = Column(String(36), nullable=False)
    reviewer_user_id = Column(String(36), nullable=True)
    rating = Column(Integer, nullable=False)  # 1-5
    title = Column(String(255), nullable=True)
    body = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("playbook_id", "reviewer_org_id", name="uq_playbook_reviews_reviewer"),
        Index("ix_playbook_reviews_playbook", "playbook_id"),
    )


class AuditLog(Base):
    """Append-only audit trail."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    action = Column(String(50), nullable=False)
    actor_id = Column(String(36), nullable=True)
    from_status = Column(String(50), nullable=True)
    to_status = Column(String(50), nullable=True)
    reason = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )
