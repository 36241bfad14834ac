"""Tests for the playbook publication state machine."""

import pytest
from sqlalchemy import select

from core.exceptions import (
    AuthorizationError,
    ConflictError,
    TransitionError,
    ValidationError,
)
from models.playbook import PlaybookStatus, PlaybookVersion
from services.audit_service import AuditService
from services.deployment_service import DeploymentService
from services.playbook_packager import PlaybookPackager
from services.publication_service import (
    ACTIONS,
    TRANSITIONS,
    PublicationService,
    allowed_actions,
    next_status,
)

from conftest import (
    ADMIN_USER,
    BUYER_ORG,
    BUYER_USER,
    BUYER_WORKSPACE,
    PUBLISHER_ORG,
    PUBLISHER_USER,
    create_published_playbook,
    purchase_free,
    support_manifest,
)


async def _draft(db, slug="support-desk", with_manifest=True):
    packager = PlaybookPackager(db)
    await packager.create_playbook("Support Desk", PUBLISHER_ORG, PUBLISHER_USER, slug=slug)
    if with_manifest:
        await packager.save_manifest(slug, support_manifest(), PUBLISHER_ORG)


class TestTransitionTable:
    """The table is the only source of allowed moves."""

    @pytest.mark.parametrize("status", list(PlaybookStatus))
    @pytest.mark.parametrize("action", ACTIONS)
    def test_every_status_action_pair(self, status, action):
        expected = TRANSITIONS.get((status, action))
        if expected is None:
            with pytest.raises(TransitionError) as exc_info:
                next_status(status, action)
            assert exc_info.value.kind == "InvalidTransition"
            assert exc_info.value.allowed_actions == allowed_actions(status)
        else:
            assert next_status(status, action) == expected

    def test_archived_is_terminal(self):
        assert allowed_actions(PlaybookStatus.ARCHIVED) == []

    def test_draft_cannot_skip_review(self):
        assert (PlaybookStatus.DRAFT, "approve") not in TRANSITIONS
        assert PlaybookStatus.PUBLISHED not in {
            target for (source, _), target in TRANSITIONS.items() if source == PlaybookStatus.DRAFT
        }


class TestPublicationService:
    """Lifecycle moves against the database."""

    @pytest.mark.asyncio
    async def test_publish_then_approve(self, db_session):
        await _draft(db_session)
        service = PublicationService(db_session)

        pending = await service.publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)
        assert pending.status == PlaybookStatus.PENDING_REVIEW.value
        assert pending.published_at is None

        published = await service.approve("support-desk", ADMIN_USER, is_admin=True, changelog="First")
        assert published.status == PlaybookStatus.PUBLISHED.value
        assert published.current_version == 1
        assert published.published_at is not None
        assert published.required_integrations == ["hubspot", "slack"]

        versions = (await db_session.execute(
            select(PlaybookVersion).where(PlaybookVersion.playbook_id == published.id)
        )).scalars().all()
        assert [v.version for v in versions] == [1]
        assert versions[0].changelog == "First"

    @pytest.mark.asyncio
    async def test_each_transition_is_audited(self, db_session):
        playbook = await create_published_playbook(db_session)

        entries = await AuditService(db_session).list_for_entity("playbook", playbook.id)

        assert [(e.action, e.from_status, e.to_status) for e in entries] == [
            ("publish", "DRAFT", "PENDING_REVIEW"),
            ("approve", "PENDING_REVIEW", "PUBLISHED"),
        ]
        assert entries[1].actor_id == ADMIN_USER

    @pytest.mark.asyncio
    async def test_draft_cannot_be_approved(self, db_session):
        await _draft(db_session)

        with pytest.raises(TransitionError) as exc_info:
            await PublicationService(db_session).approve("support-desk", ADMIN_USER, is_admin=True)

        assert exc_info.value.details["from_status"] == "DRAFT"
        assert exc_info.value.details["allowed_actions"] == ["publish", "archive"]

    @pytest.mark.asyncio
    async def test_publish_requires_components(self, db_session):
        await _draft(db_session, with_manifest=False)

        with pytest.raises(ValidationError) as exc_info:
            await PublicationService(db_session).publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)

        assert exc_info.value.kind == "NoComponents"

    @pytest.mark.asyncio
    async def test_only_publisher_can_publish(self, db_session):
        await _draft(db_session)

        with pytest.raises(AuthorizationError) as exc_info:
            await PublicationService(db_session).publish("support-desk", BUYER_USER, BUYER_ORG)

        assert exc_info.value.kind == "NotPublisher"

    @pytest.mark.asyncio
    async def test_only_admin_can_approve(self, db_session):
        await _draft(db_session)
        service = PublicationService(db_session)
        await service.publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)

        with pytest.raises(AuthorizationError) as exc_info:
            await service.approve("support-desk", PUBLISHER_USER, is_admin=False)

        assert exc_info.value.kind == "NotAdmin"

    @pytest.mark.asyncio
    async def test_reject_needs_reason_and_returns_to_draft(self, db_session):
        await _draft(db_session)
        service = PublicationService(db_session)
        await service.publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)

        with pytest.raises(ValidationError) as exc_info:
            await service.reject("support-desk", ADMIN_USER, is_admin=True, reason="  ")
        assert exc_info.value.kind == "ReasonRequired"

        rejected = await service.reject(
            "support-desk", ADMIN_USER, is_admin=True, reason="Escalation agent has no guardrail"
        )
        assert rejected.status == PlaybookStatus.DRAFT.value

        entries = await AuditService(db_session).list_for_entity("playbook", rejected.id)
        assert entries[-1].reason == "Escalation agent has no guardrail"

    @pytest.mark.asyncio
    async def test_suspend_and_reinstate(self, db_session):
        await create_published_playbook(db_session)
        service = PublicationService(db_session)

        suspended = await service.suspend("support-desk", ADMIN_USER, is_admin=True, reason="Abuse report")
        assert suspended.status == PlaybookStatus.SUSPENDED.value

        reinstated = await service.reinstate("support-desk", ADMIN_USER, is_admin=True)
        assert reinstated.status == PlaybookStatus.PUBLISHED.value
        assert reinstated.current_version == 1

    @pytest.mark.asyncio
    async def test_approval_after_rejection_creates_first_version(self, db_session):
        await _draft(db_session)
        service = PublicationService(db_session)
        await service.publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)
        await service.reject("support-desk", ADMIN_USER, is_admin=True, reason="Needs work")
        await service.publish("support-desk", PUBLISHER_USER, PUBLISHER_ORG)

        published = await service.approve("support-desk", ADMIN_USER, is_admin=True)

        versions = (await db_session.execute(
            select(PlaybookVersion.version).where(PlaybookVersion.playbook_id == published.id)
        )).scalars().all()
        assert published.current_version == 1
        assert versions == [1]

    @pytest.mark.asyncio
    async def test_archive_is_terminal(self, db_session):
        await create_published_playbook(db_session)
        service = PublicationService(db_session)

        archived = await service.archive("support-desk", PUBLISHER_USER, PUBLISHER_ORG)
        assert archived.status == PlaybookStatus.ARCHIVED.value

        with pytest.raises(TransitionError):
            await service.reinstate("support-desk", ADMIN_USER, is_admin=True)

    @pytest.mark.asyncio
    async def test_archive_blocked_by_active_installations_when_disallowed(
        self, db_session, purchased_playbook, monkeypatch
    ):
        await DeploymentService(db_session).deploy(
            "support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER
        )
        service = PublicationService(db_session)
        monkeypatch.setattr(service.settings, "ALLOW_ARCHIVE_WITH_ACTIVE_INSTALLATIONS", False)

        with pytest.raises(ConflictError) as exc_info:
            await service.archive("support-desk", PUBLISHER_USER, PUBLISHER_ORG)

        assert exc_info.value.kind == "HasActiveInstallations"
        assert exc_info.value.details["active_installations"] == 1

    @pytest.mark.asyncio
    async def test_archive_leaves_installations_active_by_default(self, db_session, purchased_playbook):
        installation = await DeploymentService(db_session).deploy(
            "support-desk", BUYER_ORG, BUYER_WORKSPACE, BUYER_USER
        )

        await PublicationService(db_session).archive("support-desk", PUBLISHER_USER, PUBLISHER_ORG)
        await db_session.refresh(installation)

        assert installation.status == "ACTIVE"

    @pytest.mark.asyncio
    async def test_suspended_playbook_cannot_be_bought(self, db_session):
        await create_published_playbook(db_session)
        await PublicationService(db_session).suspend(
            "support-desk", ADMIN_USER, is_admin=True, reason="Review"
        )

        with pytest.raises(ConflictError) as exc_info:
            await purchase_free(db_session)

        assert exc_info.value.kind == "NotPublished"
