"""
Verification pricing catalog.

Read-mostly list of purchasable verification tiers. The catalog never
blocks a verification: an empty or unreadable table falls back to the
built-in tiers.
"""
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from agency_ledger.core.exceptions import NotFoundError
from agency_ledger.database.connection import get_session_factory
from agency_ledger.database.models import PricingTier

logger = structlog.get_logger(__name__)

DEFAULT_TIERS: List[Dict[str, Any]] = [
    {
        "id": "default-basic",
        "name": "Basic Verification",
        "description": "Standard verification with basic badge",
        "cost": 50.0,
        "features": ["Verified badge", "Basic profile boost"],
        "duration": 30,
    },
    {
        "id": "default-premium",
        "name": "Premium Verification",
        "description": "Premium verification with enhanced features",
        "cost": 75.0,
        "features": ["Verified badge", "Priority listing", "Enhanced profile"],
        "duration": 30,
    },
    {
        "id": "default-vip",
        "name": "VIP Verification",
        "description": "VIP verification with all premium features",
        "cost": 100.0,
        "features": ["VIP badge", "Top listing", "Featured profile", "Priority support"],
        "duration": 30,
    },
]


def default_tiers() -> List[PricingTier]:
    """Fresh, unattached copies of the built-in tiers."""
    return [
        PricingTier(**{**tier, "features": list(tier["features"])}, is_active=True)
        for tier in DEFAULT_TIERS
    ]


class PricingCatalog:
    """Lists and resolves verification tiers."""

    def __init__(
        self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    ) -> None:
        self.session_factory = session_factory or get_session_factory()

    async def list_tiers(self) -> List[PricingTier]:
        """
        Active tiers ordered by ascending cost.

        Returns:
            List[PricingTier]: Stored tiers, or the built-in ones when the
            table is empty or cannot be read
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(
                    select(PricingTier)
                    .where(PricingTier.is_active.is_(True))
                    .order_by(PricingTier.cost.asc())
                )
                tiers = list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.warning("pricing_catalog_unreadable", error=str(e))
            return default_tiers()

        if not tiers:
            logger.info("pricing_catalog_empty_using_defaults")
            return default_tiers()
        return tiers

    async def resolve_tier(
        self, tier_id: str, db: Optional[AsyncSession] = None
    ) -> PricingTier:
        """
        Resolve a tier id to a tier.

        Args:
            tier_id: Tier key
            db: Optional session to read through (an open transaction)

        Returns:
            PricingTier: The active stored tier, else the built-in one

        Raises:
            NotFoundError: PRICING_TIER_NOT_FOUND
        """
        stmt = select(PricingTier).where(
            PricingTier.id == tier_id, PricingTier.is_active.is_(True)
        )
        if db is not None:
            tier = (await db.execute(stmt)).scalar_one_or_none()
        else:
            async with self.session_factory() as session:
                tier = (await session.execute(stmt)).scalar_one_or_none()
        if tier is not None:
            return tier

        for fallback in default_tiers():
            if fallback.id == tier_id:
                return fallback

        raise NotFoundError(
            f"Pricing tier {tier_id} not found",
            error_code="PRICING_TIER_NOT_FOUND",
            user_message="Verification pricing tier not found",
            pricing_tier_id=tier_id,
        )
