from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select

import run_maintenance
from storefront.models.cart import AnonymousCart
from storefront.services.anonymous_cart import AnonymousCartService


@pytest.mark.asyncio
async def test_cart_maintenance_job(session_factory, monkeypatch):
    async with session_factory() as session:
        await AnonymousCartService(session, ttl_days=-1).get_or_create("expired")
        await AnonymousCartService(session).get_or_create("fresh")

    engine = MagicMock()
    engine.dispose = AsyncMock()
    monkeypatch.setattr(run_maintenance, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(run_maintenance, "init_models", AsyncMock())
    monkeypatch.setattr(run_maintenance, "engine", engine)

    await run_maintenance.run_cart_maintenance()

    async with session_factory() as session:
        remaining = (await session.execute(select(AnonymousCart.session_id))).scalars().all()
    assert remaining == ["fresh"]
    engine.dispose.assert_awaited_once()
