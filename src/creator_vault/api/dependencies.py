"""Shared FastAPI dependencies: identity, provider clients, operator gate."""

from __future__ import annotations

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from creator_vault.config import settings
from creator_vault.database import get_db
from creator_vault.errors import Forbidden, Unauthenticated
from creator_vault.integrations.media_storage import MediaStorage
from creator_vault.integrations.stripe_connect import StripeConnectService
from creator_vault.services.auth_service import Identity, IdentityVerifier
from creator_vault.services.webhook_reconciler import WebhookReconciler

# Optional bearer scheme -- auto_error=False so we can fall back to the session cookie
_bearer_scheme = HTTPBearer(auto_error=False)


def get_identity_verifier(request: Request) -> IdentityVerifier:
    return request.app.state.identity_verifier


def get_stripe_connect(request: Request) -> StripeConnectService:
    return request.app.state.stripe_connect


def get_media_storage(request: Request) -> MediaStorage:
    return request.app.state.media_storage


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> Identity:
    """Verify the caller before any user-scoped data access.

    Credential sources (checked in order):
      1. Authorization: Bearer <Firebase ID token>
      2. Firebase session cookie (``SESSION_COOKIE_NAME``)

    Raises Unauthenticated (401) when neither verifies.
    """
    if credentials is not None:
        identity = verifier.verify_id_token(credentials.credentials)
    else:
        cookie = request.cookies.get(settings.SESSION_COOKIE_NAME)
        if not cookie:
            raise Unauthenticated()
        identity = verifier.verify_session_cookie(cookie)

    request.state.uid = identity.uid
    return identity


async def require_admin(identity: Identity = Depends(get_current_identity)) -> Identity:
    if not identity.is_admin:
        raise Forbidden("Operator access required")
    return identity


async def get_webhook_reconciler(
    db: AsyncSession = Depends(get_db),
    verifier: IdentityVerifier = Depends(get_identity_verifier),
) -> WebhookReconciler:
    return WebhookReconciler(db, identity=verifier)
