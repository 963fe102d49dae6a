"""Identity verification against Firebase Auth.

Turns a Firebase ID token (``Authorization: Bearer``) or a Firebase
session cookie into an ``Identity``. Verification is read-only and runs
before any user-scoped data access.
"""

from __future__ import annotations

from typing import Optional

import firebase_admin
import structlog
from firebase_admin import auth as fb_auth
from firebase_admin import exceptions as fb_exceptions
from pydantic import BaseModel

from creator_vault.config import settings
from creator_vault.errors import ExternalProviderError, Unauthenticated

log = structlog.get_logger()


class Identity(BaseModel):
    uid: str
    email: Optional[str] = None
    email_verified: bool = False

    @property
    def is_admin(self) -> bool:
        if not self.email:
            return False
        admins = {e.strip().lower() for e in settings.ADMIN_EMAILS if e.strip()}
        return self.email.lower() in admins


def _claims_to_identity(claims: dict) -> Identity:
    uid = claims.get("uid") or claims.get("sub")
    if not uid:
        raise Unauthenticated("Invalid token")
    email = claims.get("email")
    return Identity(
        uid=uid,
        email=email.lower() if email else None,
        email_verified=bool(claims.get("email_verified", False)),
    )


class IdentityVerifier:
    """Verifies Firebase credentials using an explicitly constructed app."""

    def __init__(self, app: firebase_admin.App, check_revoked: bool | None = None) -> None:
        self._app = app
        self._check_revoked = (
            settings.FIREBASE_CHECK_REVOKED if check_revoked is None else check_revoked
        )

    def verify_id_token(self, token: str) -> Identity:
        """Verify a Firebase ID token.

        Raises Unauthenticated for missing, malformed, expired or revoked
        tokens, and ExternalProviderError when Google's signing
        certificates cannot be fetched.
        """
        if not token:
            raise Unauthenticated()
        try:
            claims = fb_auth.verify_id_token(
                token, app=self._app, check_revoked=self._check_revoked
            )
        except fb_auth.ExpiredIdTokenError:
            raise Unauthenticated("Token expired")
        except fb_auth.RevokedIdTokenError:
            raise Unauthenticated("Token has been revoked")
        except fb_auth.UserDisabledError:
            raise Unauthenticated("User disabled")
        except fb_auth.CertificateFetchError as exc:
            log.error("firebase_certificate_fetch_failed", error=str(exc))
            raise ExternalProviderError("firebase") from exc
        except (fb_auth.InvalidIdTokenError, ValueError) as exc:
            log.info("id_token_rejected", error=str(exc))
            raise Unauthenticated("Invalid token")
        return _claims_to_identity(claims)

    def verify_session_cookie(self, cookie: str) -> Identity:
        if not cookie:
            raise Unauthenticated()
        try:
            claims = fb_auth.verify_session_cookie(
                cookie, check_revoked=self._check_revoked, app=self._app
            )
        except fb_auth.ExpiredSessionCookieError:
            raise Unauthenticated("Session expired")
        except fb_auth.RevokedSessionCookieError:
            raise Unauthenticated("Session has been revoked")
        except fb_auth.UserDisabledError:
            raise Unauthenticated("User disabled")
        except fb_auth.CertificateFetchError as exc:
            log.error("firebase_certificate_fetch_failed", error=str(exc))
            raise ExternalProviderError("firebase") from exc
        except (fb_auth.InvalidSessionCookieError, ValueError) as exc:
            log.info("session_cookie_rejected", error=str(exc))
            raise Unauthenticated("Invalid session")
        return _claims_to_identity(claims)

    def lookup_uid_by_email(self, email: str) -> str | None:
        """Resolve a Firebase uid from an email; None when no user has it."""
        if not email:
            return None
        try:
            user = fb_auth.get_user_by_email(email, app=self._app)
        except fb_auth.UserNotFoundError:
            return None
        except fb_exceptions.FirebaseError as exc:
            log.error("firebase_user_lookup_failed", error=str(exc))
            raise ExternalProviderError("firebase") from exc
        return user.uid
