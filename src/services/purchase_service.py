"""Licensing ledger: purchases, payment callbacks and the revenue split."""

import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_cached_settings
from core.exceptions import AuthorizationError, ConflictError, NotFoundError
from models.playbook import (
    InstallationStatus,
    Playbook,
    PlaybookInstallation,
    PlaybookPurchase,
    PlaybookStatus,
    PricingModel,
    PurchaseStatus,
)
from services.audit_service import AuditService
from services.uninstall_service import UninstallService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def compute_revenue_split(amount_usd: float, fee_rate: float) -> Tuple[float, float]:
    """Return ``(platform_fee, seller_payout)`` rounded half-up to the cent.

    The payout is the remainder, so fee + payout always equals the amount.
    """
    amount = Decimal(str(amount_usd)).quantize(CENT, rounding=ROUND_HALF_UP)
    fee = (amount * Decimal(str(fee_rate))).quantize(CENT, rounding=ROUND_HALF_UP)
    return float(fee), float(amount - fee)


def price_for(playbook: Playbook) -> float:
    pricing = PricingModel(playbook.pricing_model)
    if pricing == PricingModel.ONE_TIME:
        return playbook.price_usd or 0.0
    if pricing == PricingModel.SUBSCRIPTION:
        return playbook.monthly_price_usd or 0.0
    if pricing == PricingModel.PER_USE:
        return playbook.per_use_price_usd or 0.0
    return 0.0


class PurchaseService:
    """Records who may deploy which playbook."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.settings = get_cached_settings()
        self.audit = AuditService(db)

    async def _find_purchase(
        self, playbook_id: str, buyer_org_id: str, status: PurchaseStatus
    ) -> Optional[PlaybookPurchase]:
        result = await self.db.execute(
            select(PlaybookPurchase)
            .where(
                PlaybookPurchase.playbook_id == playbook_id,
                PlaybookPurchase.buyer_org_id == buyer_org_id,
                PlaybookPurchase.status == status.value,
            )
            .order_by(PlaybookPurchase.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_completed_purchase(
        self, playbook_id: str, buyer_org_id: str
    ) -> Optional[PlaybookPurchase]:
        return await self._find_purchase(playbook_id, buyer_org_id, PurchaseStatus.COMPLETED)

    async def get_purchase(self, purchase_id: str) -> PlaybookPurchase:
        result = await self.db.execute(
            select(PlaybookPurchase).where(PlaybookPurchase.id == purchase_id)
        )
        purchase = result.scalar_one_or_none()
        if purchase is None:
            raise NotFoundError(
                f"Purchase {purchase_id} not found", kind="PurchaseNotFound"
            )
        return purchase

    async def purchase(
        self, playbook_slug: str, buyer_org_id: str, buyer_user_id: str
    ) -> PlaybookPurchase:
        """License a playbook to ``buyer_org_id``.

        Free playbooks complete immediately and repeat calls return the
        existing row. Paid playbooks get a PENDING row that the payment
        collaborator later completes or fails.
        """
        result = await self.db.execute(select(Playbook).where(Playbook.slug == playbook_slug))
        playbook = result.scalar_one_or_none()
        if playbook is None:
            raise NotFoundError(
                f"Playbook '{playbook_slug}' not found", kind="PlaybookNotFound"
            )
        if playbook.status != PlaybookStatus.PUBLISHED.value:
            raise ConflictError(
                f"Playbook '{playbook_slug}' is not available for purchase",
                details={"status": playbook.status},
                kind="NotPublished",
            )
        if playbook.publisher_org_id == buyer_org_id:
            raise AuthorizationError(
                "Publishers cannot purchase their own playbook", kind="SelfPurchase"
            )

        playbook_id = playbook.id
        existing = await self.get_completed_purchase(playbook.id, buyer_org_id)
        pricing = PricingModel(playbook.pricing_model)

        if pricing == PricingModel.FREE:
            if existing is not None:
                return existing
            purchase = PlaybookPurchase(
                playbook_id=playbook.id,
                buyer_org_id=buyer_org_id,
                buyer_user_id=buyer_user_id,
                status=PurchaseStatus.COMPLETED.value,
                pricing_model=pricing.value,
                amount_usd=0.0,
                platform_fee_usd=0.0,
                seller_payout_usd=0.0,
                completed_at=datetime.utcnow(),
            )
            self.db.add(purchase)
            try:
                await self.db.commit()
            except IntegrityError:
                # A concurrent call completed first; hand back its row
                await self.db.rollback()
                winner = await self.get_completed_purchase(playbook_id, buyer_org_id)
                if winner is None:
                    raise ConflictError(
                        f"Could not record purchase of '{playbook_slug}'",
                        kind="AlreadyPurchased",
                    )
                return winner
            await self.db.refresh(purchase)
            logger.info(f"Free purchase of {playbook.slug} completed for org {buyer_org_id}")
            return purchase

        if existing is not None:
            raise ConflictError(
                f"Org {buyer_org_id} already owns '{playbook_slug}'",
                details={"purchase_id": existing.id},
                kind="AlreadyPurchased",
            )

        pending = await self._find_purchase(playbook.id, buyer_org_id, PurchaseStatus.PENDING)
        if pending is not None:
            return pending

        purchase = PlaybookPurchase(
            playbook_id=playbook.id,
            buyer_org_id=buyer_org_id,
            buyer_user_id=buyer_user_id,
            status=PurchaseStatus.PENDING.value,
            pricing_model=pricing.value,
            amount_usd=price_for(playbook),
        )
        self.db.add(purchase)
        await self.db.commit()
        await self.db.refresh(purchase)
        logger.info(
            f"Pending {pricing.value} purchase {purchase.id} of {playbook.slug} "
            f"for org {buyer_org_id}: ${purchase.amount_usd:.2f}"
        )
        return purchase

    # ── Payment collaborator hooks ───────────────────────────────────────

    async def complete_purchase(self, purchase_id: str, payment_ref: Optional[str] = None) -> PlaybookPurchase:
        purchase = await self.get_purchase(purchase_id)
        if purchase.status == PurchaseStatus.COMPLETED.value:
            return purchase
        if purchase.status != PurchaseStatus.PENDING.value:
            raise ConflictError(
                f"Purchase {purchase_id} is {purchase.status}, not PENDING",
                details={"status": purchase.status},
                kind="InvalidPurchaseState",
            )

        fee, payout = compute_revenue_split(purchase.amount_usd, self.settings.PLATFORM_FEE_RATE)
        purchase.status = PurchaseStatus.COMPLETED.value
        purchase.platform_fee_usd = fee
        purchase.seller_payout_usd = payout
        purchase.payment_ref = payment_ref
        purchase.completed_at = datetime.utcnow()
        self.audit.record(
            "purchase", purchase.id, "complete", purchase.buyer_user_id,
            from_status=PurchaseStatus.PENDING.value,
            to_status=PurchaseStatus.COMPLETED.value,
            details={"payment_ref": payment_ref, "platform_fee_usd": fee},
        )
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError(
                "Buyer org already holds a completed purchase for this playbook",
                details={"purchase_id": purchase_id},
                kind="AlreadyPurchased",
            )
        await self.db.refresh(purchase)
        logger.info(
            f"Purchase {purchase.id} completed: fee ${fee:.2f}, payout ${payout:.2f}"
        )
        return purchase

    async def fail_purchase(self, purchase_id: str, reason: Optional[str] = None) -> PlaybookPurchase:
        purchase = await self.get_purchase(purchase_id)
        if purchase.status == PurchaseStatus.FAILED.value:
            return purchase
        if purchase.status != PurchaseStatus.PENDING.value:
            raise ConflictError(
                f"Purchase {purchase_id} is {purchase.status}, not PENDING",
                details={"status": purchase.status},
                kind="InvalidPurchaseState",
            )
        purchase.status = PurchaseStatus.FAILED.value
        self.audit.record(
            "purchase", purchase.id, "fail", None,
            from_status=PurchaseStatus.PENDING.value,
            to_status=PurchaseStatus.FAILED.value,
            reason=reason,
        )
        await self.db.commit()
        await self.db.refresh(purchase)
        logger.info(f"Purchase {purchase.id} failed: {reason or 'no reason given'}")
        return purchase

    async def refund_purchase(self, purchase_id: str, reason: Optional[str] = None) -> PlaybookPurchase:
        purchase = await self.get_purchase(purchase_id)
        if purchase.status == PurchaseStatus.REFUNDED.value:
            return purchase
        if purchase.status != PurchaseStatus.COMPLETED.value:
            raise ConflictError(
                f"Purchase {purchase_id} is {purchase.status}, not COMPLETED",
                details={"status": purchase.status},
                kind="InvalidPurchaseState",
            )
        purchase.status = PurchaseStatus.REFUNDED.value
        purchase.refunded_at = datetime.utcnow()
        self.audit.record(
            "purchase", purchase.id, "refund", None,
            from_status=PurchaseStatus.COMPLETED.value,
            to_status=PurchaseStatus.REFUNDED.value,
            reason=reason,
        )
        await self.db.commit()
        await self.db.refresh(purchase)
        logger.info(f"Purchase {purchase.id} refunded")

        installation_result = await self.db.execute(
            select(PlaybookInstallation).where(
                PlaybookInstallation.purchase_id == purchase.id,
                PlaybookInstallation.status == InstallationStatus.ACTIVE.value,
            )
        )
        installation = installation_result.scalar_one_or_none()
        if installation is not None:
            if self.settings.UNINSTALL_ON_REFUND:
                await UninstallService(self.db).uninstall(
                    installation.id, installation.target_org_id
                )
            else:
                logger.warning(
                    f"Refunded purchase {purchase.id} still backs active installation "
                    f"{installation.id}"
                )
        return purchase
