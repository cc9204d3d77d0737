"""
Tests for the verification pricing catalog.
"""
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from agency_ledger.core.exceptions import NotFoundError
from agency_ledger.core.pricing import DEFAULT_TIERS, PricingCatalog
from agency_ledger.database.connection import create_session_factory
from agency_ledger.database.models import PricingTier


async def store_tiers(session_factory: Any, *tiers: PricingTier) -> None:
    async with session_factory() as db, db.begin():
        db.add_all(tiers)


class TestPricingCatalog:
    @pytest.mark.asyncio
    async def test_empty_catalog_falls_back_to_defaults(self, catalog: PricingCatalog) -> None:
        tiers = await catalog.list_tiers()

        assert [t.id for t in tiers] == [t["id"] for t in DEFAULT_TIERS]
        assert all(t.cost > 0 for t in tiers)
        assert all(t.duration and t.duration > 0 for t in tiers)

    @pytest.mark.asyncio
    async def test_unreadable_catalog_falls_back_to_defaults(self, tmp_path: Any) -> None:
        # No schema: every read fails with "no such table"
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", poolclass=NullPool
        )
        try:
            tiers = await PricingCatalog(create_session_factory(engine)).list_tiers()
        finally:
            await engine.dispose()

        assert len(tiers) == 3

    @pytest.mark.asyncio
    async def test_stored_tiers_ordered_by_cost(
        self, catalog: PricingCatalog, session_factory: Any
    ) -> None:
        await store_tiers(
            session_factory,
            PricingTier(id="gold", name="Gold", cost=120.0, features=["Gold badge"], duration=90),
            PricingTier(id="lite", name="Lite", cost=20.0, features=[], duration=14),
            PricingTier(id="old", name="Old", cost=10.0, features=[], duration=30, is_active=False),
        )

        tiers = await catalog.list_tiers()

        assert [t.id for t in tiers] == ["lite", "gold"]

    @pytest.mark.asyncio
    async def test_resolve_prefers_stored_tier(
        self, catalog: PricingCatalog, session_factory: Any
    ) -> None:
        await store_tiers(
            session_factory,
            PricingTier(id="default-basic", name="Basic+", cost=55.0, features=[], duration=45),
        )

        tier = await catalog.resolve_tier("default-basic")

        assert tier.cost == 55.0
        assert tier.duration == 45

    @pytest.mark.asyncio
    async def test_resolve_falls_back_to_builtin_tier(self, catalog: PricingCatalog) -> None:
        tier = await catalog.resolve_tier("default-vip")

        assert tier.name == "VIP Verification"
        assert tier.cost == 100.0

    @pytest.mark.asyncio
    async def test_unknown_tier_raises(self, catalog: PricingCatalog) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await catalog.resolve_tier("platinum")

        assert exc_info.value.error_code == "PRICING_TIER_NOT_FOUND"
        assert exc_info.value.http_status == 404
