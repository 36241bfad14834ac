"""Tests for playbook reviews and rating aggregates."""

import pytest
from sqlalchemy import func, select

from core.exceptions import AuthorizationError, NotFoundError, ValidationError
from models.playbook import PlaybookReview
from services.deployment_service import DeploymentService
from services.review_service import ReviewService

from conftest import BUYER_ORG, BUYER_USER, BUYER_WORKSPACE, purchase_free

OTHER_ORG = "org-other"


async def _install(db, org_id=BUYER_ORG, workspace_id=BUYER_WORKSPACE):
    await purchase_free(db, org_id=org_id)
    return await DeploymentService(db).deploy("support-desk", org_id, workspace_id, BUYER_USER)


class TestSubmitReview:
    """One review per org, aggregates recomputed from all reviews."""

    @pytest.mark.asyncio
    async def test_first_review_sets_aggregates(self, db_session, published_playbook):
        await _install(db_session)

        review = await ReviewService(db_session).submit_review(
            "support-desk", BUYER_ORG, 4, title="Solid", reviewer_user_id=BUYER_USER
        )

        assert review.rating == 4
        await db_session.refresh(published_playbook)
        assert published_playbook.average_rating == 4.0
        assert published_playbook.review_count == 1

    @pytest.mark.asyncio
    async def test_resubmission_replaces_review(self, db_session, published_playbook):
        await _install(db_session)
        service = ReviewService(db_session)

        first = await service.submit_review("support-desk", BUYER_ORG, 5)
        second = await service.submit_review("support-desk", BUYER_ORG, 2, body="Broke after update")

        assert second.id == first.id
        assert second.body == "Broke after update"
        count = await db_session.execute(select(func.count()).select_from(PlaybookReview))
        assert count.scalar() == 1
        await db_session.refresh(published_playbook)
        assert published_playbook.average_rating == 2.0
        assert published_playbook.review_count == 1

    @pytest.mark.asyncio
    async def test_average_over_orgs(self, db_session, published_playbook):
        await _install(db_session)
        await _install(db_session, org_id=OTHER_ORG, workspace_id="ws-other")
        service = ReviewService(db_session)

        await service.submit_review("support-desk", BUYER_ORG, 5)
        await service.submit_review("support-desk", OTHER_ORG, 4)

        await db_session.refresh(published_playbook)
        assert published_playbook.average_rating == 4.5
        assert published_playbook.review_count == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("rating", [0, 6, 3.5, "5", True])
    async def test_invalid_rating(self, db_session, rating):
        with pytest.raises(ValidationError) as exc_info:
            await ReviewService(db_session).submit_review("support-desk", BUYER_ORG, rating)

        assert exc_info.value.kind == "InvalidRating"

    @pytest.mark.asyncio
    async def test_requires_active_installation(self, db_session, published_playbook):
        await purchase_free(db_session)

        with pytest.raises(AuthorizationError) as exc_info:
            await ReviewService(db_session).submit_review("support-desk", BUYER_ORG, 5)

        assert exc_info.value.kind == "NotInstalled"

    @pytest.mark.asyncio
    async def test_unknown_playbook(self, db_session):
        with pytest.raises(NotFoundError):
            await ReviewService(db_session).submit_review("ghost", BUYER_ORG, 5)
