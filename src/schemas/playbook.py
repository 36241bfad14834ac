"""Request and response schemas for playbooks, purchases, installations and reviews."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from models.playbook import PricingModel
from schemas.manifest import PlaybookManifest


# ── Playbook Schemas ─────────────────────────────────────────────────────────


class PlaybookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255, description="Listing display name")
    slug: Optional[str] = Field(None, max_length=255, description="Defaults to the slugified name")
    tagline: Optional[str] = Field(None, max_length=500, description="One-line summary")
    description: Optional[str] = Field(None, description="Full description (Markdown supported)")
    category: Optional[str] = Field(None, max_length=100)
    tags: List[str] = Field(default_factory=list, description="Searchable tags")
    pricing_model: PricingModel = PricingModel.FREE
    price_usd: Optional[float] = Field(None, ge=0)
    monthly_price_usd: Optional[float] = Field(None, ge=0)
    per_use_price_usd: Optional[float] = Field(None, ge=0)


class PlaybookResponse(BaseModel):
    id: str
    slug: str
    name: str
    tagline: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    status: str
    pricing_model: str
    price_usd: Optional[float] = None
    monthly_price_usd: Optional[float] = None
    per_use_price_usd: Optional[float] = None
    publisher_org_id: str
    install_count: int = 0
    average_rating: Optional[float] = None
    review_count: int = 0
    required_integrations: List[str] = Field(default_factory=list)
    current_version: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    @field_validator("tags", "required_integrations", mode="before")
    @classmethod
    def none_to_list(cls, v: Any) -> Any:
        return v or []

    class Config:
        from_attributes = True


class PlaybookListResponse(BaseModel):
    items: List[PlaybookResponse]
    total: int
    limit: int
    offset: int


class PlaybookSearchRequest(BaseModel):
    query: Optional[str] = Field(None, description="Free-text search query")
    category: Optional[str] = Field(None, description="Filter by category")
    pricing_model: Optional[PricingModel] = None
    sort_by: str = Field(default="install_count", description="Sort field: install_count, average_rating, published_at, name")
    sort_order: str = Field(default="desc", description="Sort order: asc, desc")
    limit: int = Field(default=20, ge=1, le=100)
    offset: int = Field(default=0, ge=0)

    @field_validator("sort_by")
    @classmethod
    def validate_sort_by(cls, v: str) -> str:
        allowed = {"install_count", "average_rating", "published_at", "name"}
        if v not in allowed:
            raise ValueError(f"sort_by must be one of {allowed}")
        return v

    @field_validator("sort_order")
    @classmethod
    def validate_sort_order(cls, v: str) -> str:
        if v not in {"asc", "desc"}:
            raise ValueError("sort_order must be 'asc' or 'desc'")
        return v


class ManifestSaveRequest(BaseModel):
    manifest: PlaybookManifest


class PackageFromWorkspaceRequest(BaseModel):
    workspace_id: str
    entry_type: Literal["agent", "workflow", "network"]
    entry_id: str
    include_workflow_ids: List[str] = Field(default_factory=list)
    include_network_ids: List[str] = Field(default_factory=list)
    include_skills: bool = True
    include_documents: bool = True


class PackageResponse(BaseModel):
    playbook: PlaybookResponse
    warnings: List[str] = Field(default_factory=list)
    component_count: int


class VersionBumpRequest(BaseModel):
    changelog: Optional[str] = None


class PlaybookVersionResponse(BaseModel):
    id: str
    playbook_id: str
    version: int
    changelog: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ── Lifecycle ────────────────────────────────────────────────────────────────


class TransitionRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Required for reject and suspend")
    changelog: Optional[str] = Field(None, description="Recorded on the version created by approve")


# ── Purchases ────────────────────────────────────────────────────────────────


class PurchaseResponse(BaseModel):
    id: str
    playbook_id: str
    buyer_org_id: str
    buyer_user_id: str
    status: str
    pricing_model: str
    amount_usd: float
    platform_fee_usd: float
    seller_payout_usd: float
    payment_ref: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PurchaseListResponse(BaseModel):
    purchases: List[PurchaseResponse]
    total: int


class PaymentCallback(BaseModel):
    outcome: Literal["completed", "failed", "refunded"]
    payment_ref: Optional[str] = None
    reason: Optional[str] = None


# ── Installations ────────────────────────────────────────────────────────────


class DeployRequest(BaseModel):
    target_workspace_id: str
    version: Optional[int] = Field(None, ge=1, description="Defaults to the current version")


class IntegrationMappingResponse(BaseModel):
    provider: str
    connected: bool
    connection_id: Optional[str] = None


class InstallationResponse(BaseModel):
    id: str
    playbook_id: str
    purchase_id: Optional[str] = None
    target_org_id: str
    target_workspace_id: str
    installed_by_user_id: str
    version_installed: int
    status: str
    created_agent_ids: List[str] = Field(default_factory=list)
    created_skill_ids: List[str] = Field(default_factory=list)
    created_document_ids: List[str] = Field(default_factory=list)
    created_workflow_ids: List[str] = Field(default_factory=list)
    created_network_ids: List[str] = Field(default_factory=list)
    customizations: Optional[Dict[str, Any]] = None
    test_results: Optional[Dict[str, Any]] = None
    integration_status: Optional[List[IntegrationMappingResponse]] = None
    failure_details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    uninstalled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InstallationListResponse(BaseModel):
    installations: List[InstallationResponse]
    total: int


# ── Reviews ──────────────────────────────────────────────────────────────────


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5, strict=True, description="Rating from 1 to 5")
    title: Optional[str] = Field(None, max_length=255)
    body: Optional[str] = None


class ReviewResponse(BaseModel):
    id: str
    playbook_id: str
    reviewer_org_id: str
    reviewer_user_id: Optional[str] = None
    rating: int
    title: Optional[str] = None
    body: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ReviewListResponse(BaseModel):
    reviews: List[ReviewResponse]
    total: int
