"""Shared fixtures: an in-memory database and a ready-made support-desk playbook."""

import os
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from models import Base, PricingModel
from services.playbook_packager import PlaybookPackager
from services.publication_service import PublicationService
from services.purchase_service import PurchaseService

PUBLISHER_ORG = "org-publisher"
PUBLISHER_USER = "user-publisher"
BUYER_ORG = "org-buyer"
BUYER_USER = "user-buyer"
BUYER_WORKSPACE = "ws-buyer"
ADMIN_USER = "user-admin"


def support_manifest() -> dict:
    """Router agent fronting an FAQ agent and an escalation agent, wired as a network."""
    return {
        "documents": [
            {
                "slug": "faq-doc",
                "name": "FAQ",
                "content": "Q: How do I reset my password?\nA: Use the account page.",
            },
        ],
        "skills": [
            {
                "slug": "answer-faq",
                "name": "Answer FAQ",
                "instructions": "Answer from the FAQ document.",
                "documents": ["faq-doc"],
                "tools": [{"tool_id": "hubspot.get_contact"}],
            },
        ],
        "agents": [
            {
                "slug": "router",
                "name": "Router",
                "instructions": "Route each ticket to the right agent.",
                "sub_agents": ["faq-bot", "escalation"],
            },
            {
                "slug": "faq-bot",
                "name": "FAQ Bot",
                "instructions": "Answer common questions.",
                "skills": ["answer-faq"],
                "workflows": ["triage-flow"],
            },
            {
                "slug": "escalation",
                "name": "Escalation",
                "instructions": "Hand the ticket to a human.",
                "tools": [{"tool_id": "slack.post_message"}],
            },
        ],
        "workflows": [
            {
                "slug": "triage-flow",
                "name": "Triage",
                "definition": {"steps": [{"name": "classify", "agent_slug": "router"}]},
            },
        ],
        "networks": [
            {
                "slug": "support-net",
                "name": "Support Network",
                "instructions": "Resolve support tickets.",
                "primitives": [
                    {"primitive_type": "agent", "agent_slug": "router"},
                    {"primitive_type": "agent", "agent_slug": "faq-bot"},
                    {"primitive_type": "agent", "agent_slug": "escalation"},
                ],
            },
        ],
        "guardrails": [{"agent_slug": "router", "config": {"blocked_topics": ["billing"]}}],
        "test_cases": [
            {"agent_slug": "faq-bot", "name": "password reset", "input_text": "How do I reset my password?"},
        ],
        "scorecards": [{"agent_slug": "faq-bot", "criteria": [{"name": "accuracy", "weight": 1}]}],
        "entry_point": {"type": "network", "slug": "support-net"},
    }


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine):
    """Session configured like the application's session maker."""
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with maker() as session:
        yield session


@pytest.fixture
def manifest_data():
    return support_manifest()


async def create_published_playbook(
    db: AsyncSession,
    slug: str = "support-desk",
    manifest: dict = None,
    pricing_model: PricingModel = PricingModel.FREE,
    price_usd: float = None,
    category: str = "support",
    name: str = None,
):
    """Create, fill, submit and approve a playbook owned by PUBLISHER_ORG."""
    packager = PlaybookPackager(db)
    await packager.create_playbook(
        name=name or slug.replace("-", " ").title(),
        publisher_org_id=PUBLISHER_ORG,
        published_by_user_id=PUBLISHER_USER,
        slug=slug,
        category=category,
        pricing_model=pricing_model,
        price_usd=price_usd,
    )
    await packager.save_manifest(slug, manifest or support_manifest(), PUBLISHER_ORG)
    publication = PublicationService(db)
    await publication.publish(slug, PUBLISHER_USER, PUBLISHER_ORG)
    return await publication.approve(slug, ADMIN_USER, is_admin=True)


async def purchase_free(db: AsyncSession, slug: str = "support-desk", org_id: str = BUYER_ORG):
    return await PurchaseService(db).purchase(slug, org_id, BUYER_USER)


@pytest_asyncio.fixture
async def published_playbook(db_session):
    return await create_published_playbook(db_session)


@pytest_asyncio.fixture
async def purchased_playbook(db_session, published_playbook):
    await purchase_free(db_session)
    return published_playbook
