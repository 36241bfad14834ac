"""Playbook reviews and rating aggregates."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from models.playbook import (
    InstallationStatus,
    Playbook,
    PlaybookInstallation,
    PlaybookReview,
)
from services.playbook_stats import recompute_review_stats

logger = logging.getLogger(__name__)


class ReviewService:
    """Service for submitting playbook reviews."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_playbook(self, slug: str) -> Playbook:
        result = await self.db.execute(select(Playbook).where(Playbook.slug == slug))
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise NotFoundError(f"Playbook '{slug}' not found", kind="PlaybookNotFound")
        return playbook

    async def _find_review(self, playbook_id: str, reviewer_org_id: str) -> Optional[PlaybookReview]:
        result = await self.db.execute(
            select(PlaybookReview).where(
                PlaybookReview.playbook_id == playbook_id,
                PlaybookReview.reviewer_org_id == reviewer_org_id,
            )
        )
        return result.scalar_one_or_none()

    async def submit_review(
        self,
        playbook_slug: str,
        reviewer_org_id: str,
        rating: int,
        title: Optional[str] = None,
        body: Optional[str] = None,
        reviewer_user_id: Optional[str] = None,
    ) -> PlaybookReview:
        """Create or replace the reviewer org's review of a playbook.

        The org must currently have the playbook installed. Rating
        aggregates are recomputed from all reviews afterwards.
        """
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(
                "Rating must be an integer between 1 and 5",
                details={"rating": rating},
                kind="InvalidRating",
            )

        playbook = await self._get_playbook(playbook_slug)
        playbook_id = playbook.id

        installed = await self.db.execute(
            select(PlaybookInstallation.id).where(
                PlaybookInstallation.playbook_id == playbook_id,
                PlaybookInstallation.target_org_id == reviewer_org_id,
                PlaybookInstallation.status == InstallationStatus.ACTIVE.value,
            )
        )
        if installed.first() is None:
            raise AuthorizationError(
                "Only orgs with an active installation can review this playbook",
                kind="NotInstalled",
            )

        review = await self._find_review(playbook_id, reviewer_org_id)
        if review is None:
            review = PlaybookReview(
                playbook_id=playbook_id,
                reviewer_org_id=reviewer_org_id,
                reviewer_user_id=reviewer_user_id,
                rating=rating,
                title=title,
                body=body,
            )
            self.db.add(review)
            try:
                await self.db.flush()
            except IntegrityError:
                # Lost the race to a concurrent first review; update that one
                await self.db.rollback()
                review = await self._find_review(playbook_id, reviewer_org_id)
                playbook = await self._get_playbook(playbook_slug)
                self._apply(review, rating, title, body, reviewer_user_id)
        else:
            self._apply(review, rating, title, body, reviewer_user_id)

        await recompute_review_stats(self.db, playbook)
        await self.db.commit()
        await self.db.refresh(review)

        logger.info(
            f"Review of {playbook_slug} by org {reviewer_org_id}: {rating}/5 "
            f"(average now {playbook.average_rating:.2f} over {playbook.review_count})"
        )
        return review

    @staticmethod
    def _apply(
        review: PlaybookReview,
        rating: int,
        title: Optional[str],
        body: Optional[str],
        reviewer_user_id: Optional[str],
    ) -> None:
        review.rating = rating
        review.title = title
        review.body = body
        if reviewer_user_id:
            review.reviewer_user_id = reviewer_user_id
        review.updated_at = datetime.utcnow()

