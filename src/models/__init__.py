"""Database models for the playbook engine."""

from .base import Base
from .playbook import (
    Playbook,
    PlaybookVersion,
    PlaybookComponent,
    PlaybookPurchase,
    PlaybookInstallation,
    PlaybookReview,
    AuditLog,
    PlaybookStatus,
    PricingModel,
    PurchaseStatus,
    InstallationStatus,
    ComponentType,
)
from .workspace import (
    Agent,
    Skill,
    Document,
    Workflow,
    Network,
    NetworkPrimitive,
    GuardrailPolicy,
    AgentTestCase,
    AgentScorecard,
)
from .integration import IntegrationProvider, IntegrationConnection

__all__ = [
    "Base",
    "Playbook",
    "PlaybookVersion",
    "PlaybookComponent",
    "PlaybookPurchase",
    "PlaybookInstallation",
    "PlaybookReview",
    "AuditLog",
    "PlaybookStatus",
    "PricingModel",
    "PurchaseStatus",
    "InstallationStatus",
    "ComponentType",
    "Agent",
    "Skill",
    "Document",
    "Workflow",
    "Network",
    "NetworkPrimitive",
    "GuardrailPolicy",
    "AgentTestCase",
    "AgentScorecard",
    "IntegrationProvider",
    "IntegrationConnection",
]
