"""Playbook Marketplace Service: browse, search, get listing, org history.

Only PUBLISHED playbooks are visible to buyers. Suspended and archived
listings stay readable by their publisher.
"""

import logging
from typing import Optional

from sqlalchemy import select, func, or_, desc, asc
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import NotFoundError
from models.playbook import (
    Playbook,
    PlaybookInstallation,
    PlaybookPurchase,
    PlaybookReview,
    PlaybookStatus,
)
from schemas.playbook import (
    InstallationListResponse,
    InstallationResponse,
    PlaybookListResponse,
    PlaybookResponse,
    PlaybookSearchRequest,
    PurchaseListResponse,
    PurchaseResponse,
    ReviewListResponse,
    ReviewResponse,
)

logger = logging.getLogger(__name__)


class MarketplaceService:
    """Read side of the playbook marketplace."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ── Browse / Search ──────────────────────────────────────────────────

    async def browse(
        self,
        category: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> PlaybookListResponse:
        """Browse published playbooks, most installed first."""
        return await self.search(
            PlaybookSearchRequest(category=category, limit=limit, offset=offset)
        )

    async def search(self, request: PlaybookSearchRequest) -> PlaybookListResponse:
        """Free-text search across published playbooks."""
        filters = [Playbook.status == PlaybookStatus.PUBLISHED.value]

        if request.query:
            filters.append(or_(
                Playbook.name.ilike(f"%{request.query}%"),
                Playbook.tagline.ilike(f"%{request.query}%"),
                Playbook.description.ilike(f"%{request.query}%"),
            ))
        if request.category:
            filters.append(Playbook.category == request.category)
        if request.pricing_model:
            filters.append(Playbook.pricing_model == request.pricing_model.value)

        total_result = await self.db.execute(
            select(func.count()).select_from(Playbook).where(*filters)
        )
        total = total_result.scalar() or 0

        sort_column = getattr(Playbook, request.sort_by)
        order_fn = desc if request.sort_order == "desc" else asc
        result = await self.db.execute(
            select(Playbook)
            .where(*filters)
            .order_by(order_fn(sort_column), Playbook.slug)
            .offset(request.offset)
            .limit(request.limit)
        )
        rows = result.scalars().all()

        return PlaybookListResponse(
            items=[PlaybookResponse.model_validate(r) for r in rows],
            total=total,
            limit=request.limit,
            offset=request.offset,
        )

    # ── Get Playbook ─────────────────────────────────────────────────────

    async def get_playbook(self, slug: str, viewer_org_id: Optional[str] = None) -> PlaybookResponse:
        """Retrieve a listing; non-published listings are only visible to their publisher."""
        result = await self.db.execute(select(Playbook).where(Playbook.slug == slug))
        playbook = result.scalar_one_or_none()
        if playbook is None or (
            playbook.status != PlaybookStatus.PUBLISHED.value
            and playbook.publisher_org_id != viewer_org_id
        ):
            raise NotFoundError(f"Playbook '{slug}' not found", kind="PlaybookNotFound")
        return PlaybookResponse.model_validate(playbook)

    # ── Org history ──────────────────────────────────────────────────────

    async def list_installations(
        self,
        org_id: str,
        status_filter: Optional[str] = None,
    ) -> InstallationListResponse:
        """List an org's installations, newest first."""
        filters = [PlaybookInstallation.target_org_id == org_id]
        if status_filter:
            filters.append(PlaybookInstallation.status == status_filter)

        total_result = await self.db.execute(
            select(func.count()).select_from(PlaybookInstallation).where(*filters)
        )
        total = total_result.scalar() or 0

        result = await self.db.execute(
            select(PlaybookInstallation)
            .where(*filters)
            .order_by(desc(PlaybookInstallation.created_at))
        )
        rows = result.scalars().all()

        return InstallationListResponse(
            installations=[InstallationResponse.model_validate(r) for r in rows],
            total=total,
        )

    async def list_purchases(self, org_id: str) -> PurchaseListResponse:
        result = await self.db.execute(
            select(PlaybookPurchase)
            .where(PlaybookPurchase.buyer_org_id == org_id)
            .order_by(desc(PlaybookPurchase.created_at))
        )
        rows = result.scalars().all()
        return PurchaseListResponse(
            purchases=[PurchaseResponse.model_validate(r) for r in rows],
            total=len(rows),
        )

    # ── Reviews ──────────────────────────────────────────────────────────

    async def get_reviews(
        self,
        slug: str,
        limit: int = 20,
        offset: int = 0,
    ) -> ReviewListResponse:
        """Get reviews for a published playbook."""
        playbook = await self.get_playbook(slug)

        count_result = await self.db.execute(
            select(func.count()).select_from(PlaybookReview).where(
                PlaybookReview.playbook_id == playbook.id,
            )
        )
        total = count_result.scalar() or 0

        result = await self.db.execute(
            select(PlaybookReview)
            .where(PlaybookReview.playbook_id == playbook.id)
            .order_by(desc(PlaybookReview.updated_at))
            .offset(offset)
            .limit(limit)
        )
        rows = result.scalars().all()

        return ReviewListResponse(
            reviews=[ReviewResponse.model_validate(r) for r in rows],
            total=total,
        )
