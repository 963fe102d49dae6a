"""Tests for Firebase identity verification and the auth dependencies."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from firebase_admin import auth as fb_auth
from firebase_admin import exceptions as fb_exceptions
from httpx import ASGITransport, AsyncClient

from creator_vault.api.dependencies import get_identity_verifier
from creator_vault.config import settings
from creator_vault.database import get_db
from creator_vault.errors import ExternalProviderError, Unauthenticated
from creator_vault.main import app
from creator_vault.services.auth_service import Identity, IdentityVerifier


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _verifier(check_revoked: bool = True) -> IdentityVerifier:
    return IdentityVerifier(MagicMock(name="firebase_app"), check_revoked=check_revoked)


_CLAIMS = {"uid": "alice", "email": "Alice@Example.com", "email_verified": True}


# ---------------------------------------------------------------------------
# 1. ID tokens
# ---------------------------------------------------------------------------

def test_verify_id_token_returns_identity():
    verifier = _verifier()
    with patch.object(fb_auth, "verify_id_token", return_value=_CLAIMS) as mock_verify:
        identity = verifier.verify_id_token("good-token")

    mock_verify.assert_called_once_with("good-token", app=verifier._app, check_revoked=True)
    assert identity == Identity(uid="alice", email="alice@example.com", email_verified=True)


@pytest.mark.parametrize(
    "error",
    [
        fb_auth.ExpiredIdTokenError("Token expired", None),
        fb_auth.RevokedIdTokenError("Token revoked"),
        fb_auth.InvalidIdTokenError("Bad signature"),
        ValueError("Illegal ID token"),
    ],
)
def test_verify_id_token_rejections_are_401(error):
    with patch.object(fb_auth, "verify_id_token", side_effect=error):
        with pytest.raises(Unauthenticated) as exc_info:
            _verifier().verify_id_token("bad-token")

    assert exc_info.value.status_code == 401


def test_verify_id_token_empty_is_401():
    with pytest.raises(Unauthenticated):
        _verifier().verify_id_token("")


def test_certificate_fetch_failure_is_provider_error():
    error = fb_auth.CertificateFetchError("Could not fetch certificates", None)
    with patch.object(fb_auth, "verify_id_token", side_effect=error):
        with pytest.raises(ExternalProviderError) as exc_info:
            _verifier().verify_id_token("token")

    assert exc_info.value.provider == "firebase"


def test_claims_without_uid_are_rejected():
    with patch.object(fb_auth, "verify_id_token", return_value={"email": "x@example.com"}):
        with pytest.raises(Unauthenticated):
            _verifier().verify_id_token("token")


# ---------------------------------------------------------------------------
# 2. Session cookies
# ---------------------------------------------------------------------------

def test_verify_session_cookie_returns_identity():
    verifier = _verifier(check_revoked=False)
    with patch.object(fb_auth, "verify_session_cookie", return_value=_CLAIMS) as mock_verify:
        identity = verifier.verify_session_cookie("cookie-value")

    mock_verify.assert_called_once_with("cookie-value", check_revoked=False, app=verifier._app)
    assert identity.uid == "alice"


def test_expired_session_cookie_is_401():
    error = fb_auth.ExpiredSessionCookieError("Session expired", None)
    with patch.object(fb_auth, "verify_session_cookie", side_effect=error):
        with pytest.raises(Unauthenticated) as exc_info:
            _verifier().verify_session_cookie("cookie-value")

    assert exc_info.value.detail == "Session expired"


# ---------------------------------------------------------------------------
# 3. Email lookup
# ---------------------------------------------------------------------------

def test_lookup_uid_by_email():
    user = MagicMock()
    user.uid = "bob"
    with patch.object(fb_auth, "get_user_by_email", return_value=user):
        assert _verifier().lookup_uid_by_email("bob@example.com") == "bob"


def test_lookup_unknown_email_returns_none():
    with patch.object(fb_auth, "get_user_by_email", side_effect=fb_auth.UserNotFoundError("No user")):
        assert _verifier().lookup_uid_by_email("ghost@example.com") is None


def test_lookup_provider_outage_raises():
    with patch.object(fb_auth, "get_user_by_email", side_effect=fb_exceptions.UnavailableError("down")):
        with pytest.raises(ExternalProviderError):
            _verifier().lookup_uid_by_email("bob@example.com")


# ---------------------------------------------------------------------------
# 4. Admin gate
# ---------------------------------------------------------------------------

def test_is_admin_matches_configured_emails(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_EMAILS", ["ops@example.com"])

    assert Identity(uid="o", email="ops@example.com").is_admin is True
    assert Identity(uid="a", email="alice@example.com").is_admin is False
    assert Identity(uid="n").is_admin is False


# ---------------------------------------------------------------------------
# 5. Dependencies over HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
async def auth_client():
    """Client with a mocked verifier but the real identity dependency."""
    verifier = MagicMock()
    mock_db = AsyncMock()

    async def override_get_db():
        yield mock_db

    app.dependency_overrides[get_identity_verifier] = lambda: verifier
    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac, verifier

    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_missing_credentials_is_401(auth_client):
    client, _ = auth_client

    response = await client.get("/api/v1/purchases")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_bearer_token_is_verified(auth_client):
    client, verifier = auth_client
    verifier.verify_id_token.side_effect = Unauthenticated("Token expired")

    response = await client.get(
        "/api/v1/purchases", headers={"Authorization": "Bearer stale-token"}
    )

    assert response.status_code == 401
    verifier.verify_id_token.assert_called_once_with("stale-token")
    verifier.verify_session_cookie.assert_not_called()


@pytest.mark.asyncio
async def test_session_cookie_is_used_without_bearer(auth_client):
    client, verifier = auth_client
    verifier.verify_session_cookie.side_effect = Unauthenticated("Invalid session")
    client.cookies.set(settings.SESSION_COOKIE_NAME, "cookie-value")

    response = await client.get("/api/v1/purchases")

    assert response.status_code == 401
    verifier.verify_session_cookie.assert_called_once_with("cookie-value")


@pytest.mark.asyncio
async def test_non_admin_is_forbidden_from_diagnostics(auth_client, monkeypatch):
    client, verifier = auth_client
    monkeypatch.setattr(settings, "ADMIN_EMAILS", ["ops@example.com"])
    verifier.verify_id_token.return_value = Identity(uid="alice", email="alice@example.com")

    response = await client.post(
        "/api/v1/diagnostics/grants/backfill", headers={"Authorization": "Bearer token"}
    )

    assert response.status_code == 403
