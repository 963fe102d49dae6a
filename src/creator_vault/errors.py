"""HTTP-mapped error taxonomy shared by services and routers.

Every class is an ``HTTPException`` so FastAPI renders it without extra
handlers; services raise them directly.
"""

from __future__ import annotations

from fastapi import HTTPException, status


class Unauthenticated(HTTPException):
    def __init__(self, detail: str = "Not authenticated") -> None:
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )


class Forbidden(HTTPException):
    def __init__(self, detail: str = "Forbidden") -> None:
        super().__init__(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


class InvalidSignature(HTTPException):
    """Webhook authenticity failure. Never retried."""

    def __init__(self, detail: str = "Invalid signature") -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class InvalidPayload(HTTPException):
    def __init__(self, detail: str = "Invalid payload") -> None:
        super().__init__(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


class NotFound(HTTPException):
    def __init__(self, detail: str = "Not found") -> None:
        super().__init__(status_code=status.HTTP_404_NOT_FOUND, detail=detail)


class MembershipNotFound(NotFound):
    def __init__(self, uid: str) -> None:
        super().__init__(detail="Membership not found")
        self.uid = uid


class ConflictError(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_409_CONFLICT, detail=detail)


class QuotaExceeded(HTTPException):
    def __init__(self, detail: str) -> None:
        super().__init__(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=detail)


class StorageError(HTTPException):
    """Transient store failure; webhook callers rely on provider redelivery."""

    def __init__(self, detail: str = "Storage temporarily unavailable") -> None:
        super().__init__(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=detail)


class WebhookNotConfigured(HTTPException):
    """No webhook signing secret is set; Stripe keeps redelivering until it is."""

    def __init__(self) -> None:
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook endpoint is not configured",
        )


class ExternalProviderError(HTTPException):
    def __init__(self, provider: str, detail: str = "Upstream provider error") -> None:
        super().__init__(status_code=status.HTTP_502_BAD_GATEWAY, detail=detail)
        self.provider = provider
