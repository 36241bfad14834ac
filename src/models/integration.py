"""Integration provider catalog and per-org connections.

Connections are created by the OAuth/credential flows elsewhere; the
playbook engine only reads them to report which required providers a
target org has wired up.
"""

from datetime import datetime
from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, Index,
)

from .base import Base, new_id


class IntegrationProvider(Base):
    __tablename__ = "integration_providers"

    id = Column(String(36), primary_key=True, default=new_id)
    key = Column(String(100), nullable=False, unique=True)  # hubspot, slack, jira ...
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class IntegrationConnection(Base):
    __tablename__ = "integration_connections"

    id = Column(String(36), primary_key=True, default=new_id)
    provider_id = Column(String(36), ForeignKey("integration_providers.id"), nullable=False)
    organization_id = Column(String(36), nullable=False)
    # Null means the connection is shared across the org's workspaces
    workspace_id = Column(String(36), nullable=True)
    name = Column(String(255), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_integration_connections_org", "organization_id"),
        Index("ix_integration_connections_provider", "provider_id"),
    )
