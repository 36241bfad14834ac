"""End-to-end tests through the HTTP API."""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from core.app import create_app
from core.config import get_cached_settings
from core.database import get_db
from core.dependencies import sign_payment_body
from models.playbook import PricingModel

from conftest import (
    ADMIN_USER,
    BUYER_ORG,
    BUYER_USER,
    BUYER_WORKSPACE,
    PUBLISHER_ORG,
    PUBLISHER_USER,
    create_published_playbook,
    support_manifest,
)

PREFIX = "/api/v1/playbooks"

PUBLISHER = {"X-User-Id": PUBLISHER_USER, "X-Org-Id": PUBLISHER_ORG}
BUYER = {"X-User-Id": BUYER_USER, "X-Org-Id": BUYER_ORG}
ADMIN = {"X-User-Id": ADMIN_USER, "X-Org-Id": "org-platform", "X-Platform-Admin": "true"}


@pytest_asyncio.fixture
async def client(db_session):
    app = create_app()

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


class TestPlaybookApi:
    """The full publish, buy, deploy, review and uninstall loop."""

    @pytest.mark.asyncio
    async def test_marketplace_loop(self, client):
        response = await client.post(
            f"{PREFIX}/", json={"name": "Support Desk", "category": "support"}, headers=PUBLISHER
        )
        assert response.status_code == 201
        assert response.json()["slug"] == "support-desk"

        response = await client.put(
            f"{PREFIX}/support-desk/manifest",
            json={"manifest": support_manifest()},
            headers=PUBLISHER,
        )
        assert response.status_code == 200
        assert response.json()["component_count"] == 7

        response = await client.post(f"{PREFIX}/support-desk/publish", headers=PUBLISHER)
        assert response.json()["status"] == "PENDING_REVIEW"

        response = await client.post(f"{PREFIX}/support-desk/approve", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["status"] == "PUBLISHED"

        response = await client.get(f"{PREFIX}/")
        assert [p["slug"] for p in response.json()["items"]] == ["support-desk"]

        response = await client.post(f"{PREFIX}/support-desk/purchase", headers=BUYER)
        assert response.status_code == 201
        assert response.json()["status"] == "COMPLETED"

        response = await client.post(
            f"{PREFIX}/support-desk/deploy",
            json={"target_workspace_id": BUYER_WORKSPACE},
            headers=BUYER,
        )
        assert response.status_code == 201
        installation = response.json()
        assert installation["status"] == "ACTIVE"
        assert len(installation["created_agent_ids"]) == 3

        response = await client.put(
            f"{PREFIX}/support-desk/reviews", json={"rating": 5, "title": "Great"}, headers=BUYER
        )
        assert response.status_code == 200

        response = await client.get(f"{PREFIX}/support-desk")
        assert response.json()["average_rating"] == 5.0
        assert response.json()["install_count"] == 1

        response = await client.get(f"{PREFIX}/installations", headers=BUYER)
        assert response.json()["total"] == 1

        response = await client.delete(f"{PREFIX}/installations/{installation['id']}", headers=BUYER)
        assert response.status_code == 200
        assert response.json()["status"] == "UNINSTALLED"


class TestErrorRendering:
    """Named errors come back as {kind, message, details}."""

    @pytest.mark.asyncio
    async def test_missing_identity(self, client):
        response = await client.post(f"{PREFIX}/", json={"name": "Support Desk"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        response = await client.get(f"{PREFIX}/ghost")

        assert response.status_code == 404
        assert response.json()["kind"] == "PlaybookNotFound"

    @pytest.mark.asyncio
    async def test_invalid_transition(self, client):
        await client.post(f"{PREFIX}/", json={"name": "Support Desk"}, headers=PUBLISHER)

        response = await client.post(f"{PREFIX}/support-desk/suspend", json={"reason": "x"}, headers=ADMIN)

        assert response.status_code == 409
        body = response.json()
        assert body["kind"] == "InvalidTransition"
        assert body["details"]["allowed_actions"] == ["publish", "archive"]

    @pytest.mark.asyncio
    async def test_deploy_without_purchase(self, client, published_playbook):
        response = await client.post(
            f"{PREFIX}/support-desk/deploy",
            json={"target_workspace_id": BUYER_WORKSPACE},
            headers=BUYER,
        )

        assert response.status_code == 403
        assert response.json()["kind"] == "NotPurchased"


SETTLE = json.dumps({"outcome": "completed", "payment_ref": "pay_123"}).encode()


class TestPaymentCallback:
    """Only signed callbacks can settle a purchase."""

    SECRET = "whsec-test"

    @pytest_asyncio.fixture
    async def pending_purchase_id(self, client, db_session, monkeypatch):
        monkeypatch.setattr(get_cached_settings(), "PAYMENT_WEBHOOK_SECRET", self.SECRET)
        await create_published_playbook(
            db_session, slug="paid-desk", pricing_model=PricingModel.ONE_TIME, price_usd=100.0
        )
        response = await client.post(f"{PREFIX}/paid-desk/purchase", headers=BUYER)
        assert response.json()["status"] == "PENDING"
        return response.json()["id"]

    async def _settle(self, client, purchase_id, signature=None):
        headers = {"Content-Type": "application/json"}
        if signature is not None:
            headers["X-Payment-Signature"] = signature
        return await client.post(
            f"{PREFIX}/purchases/{purchase_id}/payment", content=SETTLE, headers=headers
        )

    @pytest.mark.asyncio
    async def test_unsigned_callback_is_rejected(self, client, pending_purchase_id):
        response = await self._settle(client, pending_purchase_id)

        assert response.status_code == 401
        purchases = await client.get(f"{PREFIX}/purchases", headers=BUYER)
        assert purchases.json()["purchases"][0]["status"] == "PENDING"

    @pytest.mark.asyncio
    async def test_wrong_signature_is_rejected(self, client, pending_purchase_id):
        forged = sign_payment_body(SETTLE, "not-the-secret")

        response = await self._settle(client, pending_purchase_id, signature=forged)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_signed_callback_completes_purchase(self, client, pending_purchase_id):
        signature = sign_payment_body(SETTLE, self.SECRET)

        response = await self._settle(client, pending_purchase_id, signature=signature)

        assert response.status_code == 200
        purchase = response.json()
        assert purchase["status"] == "COMPLETED"
        assert purchase["platform_fee_usd"] == 15.0
        assert purchase["seller_payout_usd"] == 85.0

    @pytest.mark.asyncio
    async def test_callbacks_refused_without_configured_secret(
        self, client, pending_purchase_id, monkeypatch
    ):
        monkeypatch.setattr(get_cached_settings(), "PAYMENT_WEBHOOK_SECRET", "")

        response = await self._settle(
            client, pending_purchase_id, signature=sign_payment_body(SETTLE, "")
        )

        assert response.status_code == 401
