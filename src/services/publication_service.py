"""Publication lifecycle for playbooks.

The lifecycle is an explicit ``(status, action) -> status`` table. The
same table drives runtime checks here and the exhaustive tests, so a
move that is not in the table cannot happen anywhere.

    DRAFT --publish--> PENDING_REVIEW --approve--> PUBLISHED
      ^                     |                        |   ^
      +-------reject--------+               suspend  |   | reinstate
                                                     v   |
                                                   SUSPENDED

Every non-terminal status can also be archived by its publisher.
"""

import logging
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_cached_settings
from core.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from models.playbook import (
    InstallationStatus,
    Playbook,
    PlaybookComponent,
    PlaybookInstallation,
    PlaybookStatus,
    PlaybookVersion,
)
from schemas.manifest import parse_manifest
from services.audit_service import AuditService
from services.manifest_validator import ensure_valid

logger = logging.getLogger(__name__)

S = PlaybookStatus

TRANSITIONS: Dict[Tuple[PlaybookStatus, str], PlaybookStatus] = {
    (S.DRAFT, "publish"): S.PENDING_REVIEW,
    (S.PENDING_REVIEW, "approve"): S.PUBLISHED,
    (S.PENDING_REVIEW, "reject"): S.DRAFT,
    (S.PUBLISHED, "suspend"): S.SUSPENDED,
    (S.SUSPENDED, "reinstate"): S.PUBLISHED,
    (S.DRAFT, "archive"): S.ARCHIVED,
    (S.PENDING_REVIEW, "archive"): S.ARCHIVED,
    (S.PUBLISHED, "archive"): S.ARCHIVED,
    (S.SUSPENDED, "archive"): S.ARCHIVED,
}

ACTIONS = ("publish", "approve", "reject", "suspend", "reinstate", "archive")
PUBLISHER_ACTIONS = {"publish", "archive"}
ADMIN_ACTIONS = {"approve", "reject", "suspend", "reinstate"}
REASON_REQUIRED = {"reject", "suspend"}


def allowed_actions(status: PlaybookStatus) -> List[str]:
    return [action for (state, action) in TRANSITIONS if state == status]


def next_status(status: PlaybookStatus, action: str) -> PlaybookStatus:
    """Look up the transition table, raising InvalidTransition on a miss."""
    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        raise TransitionError(status.value, action, allowed_actions(status)) from None


class PublicationService:
    """Drives playbooks through the publication state machine."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_cached_settings()
        self.audit = AuditService(db)

    async def _get_playbook(self, slug: str) -> Playbook:
        result = await self.db.execute(select(Playbook).where(Playbook.slug == slug))
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise NotFoundError(
                f"Playbook '{slug}' not found", kind="PlaybookNotFound"
            )
        return playbook

    # ── Author actions ───────────────────────────────────────────────────

    async def publish(self, slug: str, actor_id: str, actor_org_id: str) -> Playbook:
        """Submit a draft for review."""
        return await self.transition(slug, "publish", actor_id, actor_org_id=actor_org_id)

    async def archive(
        self,
        slug: str,
        actor_id: str,
        actor_org_id: str,
        reason: Optional[str] = None,
    ) -> Playbook:
        """Retire a playbook for good. Existing installations are left alone."""
        return await self.transition(
            slug, "archive", actor_id, actor_org_id=actor_org_id, reason=reason
        )

    # ── Admin actions ────────────────────────────────────────────────────

    async def approve(
        self, slug: str, actor_id: str, is_admin: bool, changelog: Optional[str] = None
    ) -> Playbook:
        """Publish a reviewed playbook, snapshotting its manifest as a version."""
        return await self.transition(
            slug, "approve", actor_id, is_admin=is_admin, changelog=changelog
        )

    async def reject(self, slug: str, actor_id: str, is_admin: bool, reason: str) -> Playbook:
        return await self.transition(slug, "reject", actor_id, is_admin=is_admin, reason=reason)

    async def suspend(self, slug: str, actor_id: str, is_admin: bool, reason: str) -> Playbook:
        """Hide a published playbook. Existing installations stay ACTIVE."""
        return await self.transition(slug, "suspend", actor_id, is_admin=is_admin, reason=reason)

    async def reinstate(
        self, slug: str, actor_id: str, is_admin: bool, reason: Optional[str] = None
    ) -> Playbook:
        return await self.transition(
            slug, "reinstate", actor_id, is_admin=is_admin, reason=reason
        )

    # ── Core ─────────────────────────────────────────────────────────────

    async def transition(
        self,
        slug: str,
        action: str,
        actor_id: str,
        actor_org_id: Optional[str] = None,
        is_admin: bool = False,
        reason: Optional[str] = None,
        changelog: Optional[str] = None,
    ) -> Playbook:
        """Apply ``action`` if the table allows it from the current status."""
        playbook = await self._get_playbook(slug)
        current = PlaybookStatus(playbook.status)
        target = next_status(current, action)

        if action in PUBLISHER_ACTIONS and actor_org_id != playbook.publisher_org_id:
            raise AuthorizationError(
                f"Only the publisher can {action} this playbook",
                kind="NotPublisher",
            )
        if action in ADMIN_ACTIONS and not is_admin:
            raise AuthorizationError(
                f"Only platform administrators can {action} a playbook",
                kind="NotAdmin",
            )
        if action in REASON_REQUIRED and not (reason and reason.strip()):
            raise ValidationError(
                f"A reason is required to {action} a playbook",
                kind="ReasonRequired",
            )

        if action == "publish":
            await self._check_publishable(playbook)
        elif action == "approve":
            await self._snapshot_version(playbook, actor_id, changelog)
        elif action == "archive":
            await self._check_archivable(playbook)

        playbook.status = target.value
        if target == S.PUBLISHED and playbook.published_at is None:
            playbook.published_at = datetime.utcnow()

        self.audit.record(
            entity_type="playbook",
            entity_id=playbook.id,
            action=action,
            actor_id=actor_id,
            from_status=current.value,
            to_status=target.value,
            reason=reason,
        )
        await self.db.commit()
        await self.db.refresh(playbook)

        logger.info(
            f"Playbook {playbook.slug}: {current.value} -> {target.value} ({action} by {actor_id})"
        )
        return playbook

    async def _check_publishable(self, playbook: Playbook) -> None:
        count_result = await self.db.execute(
            select(func.count()).select_from(PlaybookComponent).where(
                PlaybookComponent.playbook_id == playbook.id
            )
        )
        if not count_result.scalar():
            raise ValidationError(
                "Playbook has no components", kind="NoComponents"
            )
        if playbook.draft_manifest is None:
            raise ValidationError(
                "Playbook has no manifest", kind="ManifestInvalid"
            )
        ensure_valid(parse_manifest(playbook.draft_manifest))

    async def _snapshot_version(
        self, playbook: Playbook, actor_id: str, changelog: Optional[str]
    ) -> None:
        """Point the playbook at a version holding the approved manifest."""
        manifest = ensure_valid(parse_manifest(playbook.draft_manifest))
        manifest_json = manifest.model_dump(mode="json")

        latest_result = await self.db.execute(
            select(PlaybookVersion)
            .where(PlaybookVersion.playbook_id == playbook.id)
            .order_by(PlaybookVersion.version.desc())
            .limit(1)
        )
        latest = latest_result.scalar_one_or_none()
        if latest is not None and latest.manifest == manifest_json:
            playbook.current_version = latest.version
            return

        version = PlaybookVersion(
            playbook_id=playbook.id,
            version=(latest.version + 1) if latest else 1,
            manifest=manifest_json,
            changelog=changelog,
            created_by=actor_id,
            created_at=datetime.utcnow(),
        )
        self.db.add(version)
        playbook.current_version = version.version
        playbook.required_integrations = list(manifest.required_integrations)

    async def _check_archivable(self, playbook: Playbook) -> None:
        if self.settings.ALLOW_ARCHIVE_WITH_ACTIVE_INSTALLATIONS:
            return
        count_result = await self.db.execute(
            select(func.count()).select_from(PlaybookInstallation).where(
                PlaybookInstallation.playbook_id == playbook.id,
                PlaybookInstallation.status == InstallationStatus.ACTIVE.value,
            )
        )
        active = count_result.scalar() or 0
        if active:
            raise ConflictError(
                f"Playbook has {active} active installation(s)",
                details={"active_installations": active},
                kind="HasActiveInstallations",
            )
