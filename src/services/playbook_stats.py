"""Derived playbook aggregates, recomputed from source rows."""

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from models.playbook import (
    InstallationStatus,
    Playbook,
    PlaybookInstallation,
    PlaybookReview,
)


async def recompute_install_count(db: AsyncSession, playbook: Playbook) -> int:
    """Set install_count to the number of ACTIVE installations. Does not commit."""
    result = await db.execute(
        select(func.count()).select_from(PlaybookInstallation).where(
            PlaybookInstallation.playbook_id == playbook.id,
            PlaybookInstallation.status == InstallationStatus.ACTIVE.value,
        )
    )
    playbook.install_count = result.scalar() or 0
    return playbook.install_count


async def recompute_review_stats(db: AsyncSession, playbook: Playbook) -> None:
    """Set average_rating and review_count over all current reviews. Does not commit."""
    result = await db.execute(
        select(func.avg(PlaybookReview.rating), func.count(PlaybookReview.id)).where(
            PlaybookReview.playbook_id == playbook.id
        )
    )
    average, count = result.one()
    playbook.review_count = count or 0
    playbook.average_rating = float(average) if average is not None else None
