"""Playbook API endpoints.

Thin routes over the playbook services. Named service errors are
rendered by the application-level exception handler.

Mounted at prefix ``/playbooks`` by the v1 router.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import get_db
from core.dependencies import get_current_actor, verify_payment_signature
from schemas.playbook import (
    DeployRequest,
    InstallationListResponse,
    InstallationResponse,
    ManifestSaveRequest,
    PackageFromWorkspaceRequest,
    PackageResponse,
    PaymentCallback,
    PlaybookCreate,
    PlaybookListResponse,
    PlaybookResponse,
    PlaybookSearchRequest,
    PlaybookVersionResponse,
    PurchaseListResponse,
    PurchaseResponse,
    ReviewCreate,
    ReviewListResponse,
    ReviewResponse,
    TransitionRequest,
    VersionBumpRequest,
)
from services.deployment_service import DeploymentService
from services.marketplace_service import MarketplaceService
from services.playbook_packager import PackageResult, PlaybookPackager
from services.publication_service import PublicationService
from services.purchase_service import PurchaseService
from services.review_service import ReviewService
from services.uninstall_service import UninstallService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["playbooks"])


def _package_response(result: PackageResult) -> PackageResponse:
    return PackageResponse(
        playbook=PlaybookResponse.model_validate(result.playbook),
        warnings=result.warnings,
        component_count=result.manifest.component_count(),
    )


# ── Browse / Search ──────────────────────────────────────────────────────────


@router.get("/", response_model=PlaybookListResponse)
async def browse_playbooks(
    category: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """Browse published playbooks."""
    return await MarketplaceService(db).browse(category=category, limit=limit, offset=offset)


@router.post("/search", response_model=PlaybookListResponse)
async def search_playbooks(
    request: PlaybookSearchRequest,
    db: AsyncSession = Depends(get_db),
):
    return await MarketplaceService(db).search(request)


# ── Org history ──────────────────────────────────────────────────────────────


@router.get("/installations", response_model=InstallationListResponse)
async def list_my_installations(
    status_filter: Optional[str] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    return await MarketplaceService(db).list_installations(actor["org_id"], status_filter)


@router.delete("/installations/{installation_id}", response_model=InstallationResponse)
async def uninstall_playbook(
    installation_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Remove everything an installation created from its workspace."""
    installation = await UninstallService(db).uninstall(
        installation_id, actor["org_id"], actor["id"]
    )
    return InstallationResponse.model_validate(installation)


@router.get("/purchases", response_model=PurchaseListResponse)
async def list_my_purchases(
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    return await MarketplaceService(db).list_purchases(actor["org_id"])


@router.post(
    "/purchases/{purchase_id}/payment",
    response_model=PurchaseResponse,
    dependencies=[Depends(verify_payment_signature)],
)
async def payment_callback(
    purchase_id: str,
    callback: PaymentCallback,
    db: AsyncSession = Depends(get_db),
):
    """Hook for the payment collaborator to settle a purchase.

    Requests must carry an ``X-Payment-Signature`` HMAC of the raw body.
    """
    service = PurchaseService(db)
    if callback.outcome == "completed":
        purchase = await service.complete_purchase(purchase_id, callback.payment_ref)
    elif callback.outcome == "failed":
        purchase = await service.fail_purchase(purchase_id, callback.reason)
    else:
        purchase = await service.refund_purchase(purchase_id, callback.reason)
    return PurchaseResponse.model_validate(purchase)


# ── Authoring ────────────────────────────────────────────────────────────────


@router.post("/", response_model=PlaybookResponse, status_code=status.HTTP_201_CREATED)
async def create_playbook(
    request: PlaybookCreate,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Create a draft listing owned by the caller's org."""
    playbook = await PlaybookPackager(db).create_playbook(
        publisher_org_id=actor["org_id"],
        published_by_user_id=actor["id"],
        **request.model_dump(),
    )
    return PlaybookResponse.model_validate(playbook)


@router.put("/{slug}/manifest", response_model=PackageResponse)
async def save_manifest(
    slug: str,
    request: ManifestSaveRequest,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    result = await PlaybookPackager(db).save_manifest(slug, request.manifest, actor["org_id"])
    return _package_response(result)


@router.post("/{slug}/package", response_model=PackageResponse)
async def package_from_workspace(
    slug: str,
    request: PackageFromWorkspaceRequest,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Capture a workspace's agent graph as the playbook's draft manifest."""
    result = await PlaybookPackager(db).package_from_workspace(
        slug, actor["org_id"], **request.model_dump()
    )
    return _package_response(result)


@router.post("/{slug}/versions", response_model=PlaybookVersionResponse, status_code=status.HTTP_201_CREATED)
async def bump_version(
    slug: str,
    request: VersionBumpRequest,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    version = await PlaybookPackager(db).bump_version(
        slug, actor["id"], actor["org_id"], request.changelog
    )
    return PlaybookVersionResponse.model_validate(version)


# ── Commerce / Deployment ────────────────────────────────────────────────────


@router.post("/{slug}/purchase", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase_playbook(
    slug: str,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    purchase = await PurchaseService(db).purchase(slug, actor["org_id"], actor["id"])
    return PurchaseResponse.model_validate(purchase)


@router.post("/{slug}/deploy", response_model=InstallationResponse, status_code=status.HTTP_201_CREATED)
async def deploy_playbook(
    slug: str,
    request: DeployRequest,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Materialize a purchased playbook into one of the caller's workspaces."""
    installation = await DeploymentService(db).deploy(
        slug,
        target_org_id=actor["org_id"],
        target_workspace_id=request.target_workspace_id,
        installed_by_user_id=actor["id"],
        version=request.version,
    )
    return InstallationResponse.model_validate(installation)


# ── Listing / Reviews ────────────────────────────────────────────────────────


@router.get("/{slug}", response_model=PlaybookResponse)
async def get_playbook(
    slug: str,
    db: AsyncSession = Depends(get_db),
    x_org_id: Optional[str] = Header(None),
):
    return await MarketplaceService(db).get_playbook(slug, viewer_org_id=x_org_id)


@router.get("/{slug}/reviews", response_model=ReviewListResponse)
async def list_reviews(
    slug: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    return await MarketplaceService(db).get_reviews(slug, limit=limit, offset=offset)


@router.put("/{slug}/reviews", response_model=ReviewResponse)
async def submit_review(
    slug: str,
    request: ReviewCreate,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Create or replace the caller org's review."""
    review = await ReviewService(db).submit_review(
        slug,
        actor["org_id"],
        request.rating,
        title=request.title,
        body=request.body,
        reviewer_user_id=actor["id"],
    )
    return ReviewResponse.model_validate(review)


# ── Lifecycle ────────────────────────────────────────────────────────────────


@router.post("/{slug}/{action}", response_model=PlaybookResponse)
async def transition_playbook(
    slug: str,
    action: str,
    request: Optional[TransitionRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Dict[str, Any] = Depends(get_current_actor),
):
    """Apply a lifecycle action: publish, approve, reject, suspend, reinstate or archive."""
    request = request or TransitionRequest()
    playbook = await PublicationService(db).transition(
        slug,
        action,
        actor["id"],
        actor_org_id=actor["org_id"],
        is_admin=actor["is_admin"],
        reason=request.reason,
        changelog=request.changelog,
    )
    return PlaybookResponse.model_validate(playbook)
