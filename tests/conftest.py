from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from creator_vault.api.dependencies import get_current_identity
from creator_vault.database import get_db
from creator_vault.main import app
from creator_vault.services.auth_service import Identity


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def mock_db():
    """An AsyncMock standing in for an AsyncSession."""
    return AsyncMock()


@pytest.fixture
def identity():
    return Identity(uid="alice", email="alice@example.com", email_verified=True)


@pytest.fixture
async def client(mock_db, identity):
    """HTTP client with the session and caller identity overridden."""

    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_identity] = lambda: identity

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
