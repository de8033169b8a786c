import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from storefront.core.config import settings
from storefront.core.db import get_db, init_models
from storefront.dependencies import get_current_user_optional, get_shopify_service
from storefront.main import app
from storefront.services.auth import AuthUser
from storefront.services.shopify import ShopifyService

ADMIN_KEY = "test-admin-key"


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_API_KEY", ADMIN_KEY)
    return ADMIN_KEY


@pytest.fixture
def current_user():
    """Replace with an AuthUser to sign requests in."""
    return {"user": None}


@pytest.fixture
async def async_client(session_factory, current_user):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_current_user_optional():
        return current_user["user"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user_optional] = override_get_current_user_optional

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    if hasattr(app.state, "shopify_service"):
        del app.state.shopify_service


@pytest.fixture
def signed_in(current_user):
    user = AuthUser(id="user-1", email="buyer@example.com")
    current_user["user"] = user
    return user


def make_shopify_service(handler) -> ShopifyService:
    """ShopifyService whose HTTP calls are answered by `handler(request) -> httpx.Response`."""
    return ShopifyService(
        shop="test-shop.myshopify.com",
        access_token="shpat_test",
        api_version="2024-10",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
async def use_shopify():
    """Installs a mocked ShopifyService for routes that depend on it."""
    services = []

    def install(handler) -> ShopifyService:
        service = make_shopify_service(handler)
        services.append(service)
        app.dependency_overrides[get_shopify_service] = lambda: service
        app.state.shopify_service = service
        return service

    yield install

    for service in services:
        await service.close_client()
