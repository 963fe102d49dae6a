"""Explicit Firebase Admin app construction.

The app is built once in the FastAPI lifespan and handed to the
``IdentityVerifier``; nothing relies on the SDK's default app.
"""

from __future__ import annotations

import json

import firebase_admin
import structlog
from firebase_admin import credentials

from creator_vault.config import settings

log = structlog.get_logger()

APP_NAME = "creator-vault"


def init_firebase_app(
    service_account_json: str | None = None,
    project_id: str | None = None,
    name: str = APP_NAME,
) -> firebase_admin.App:
    """Initialise (or reuse) the named Firebase Admin app.

    Falls back to application-default credentials when no service account
    JSON is configured.
    """
    service_account_json = (
        settings.FIREBASE_SERVICE_ACCOUNT_JSON
        if service_account_json is None
        else service_account_json
    )
    project_id = settings.FIREBASE_PROJECT_ID if project_id is None else project_id
    options = {"projectId": project_id} if project_id else None

    try:
        return firebase_admin.get_app(name)
    except ValueError:
        pass

    if service_account_json:
        cred = credentials.Certificate(json.loads(service_account_json))
    else:
        cred = credentials.ApplicationDefault()

    app = firebase_admin.initialize_app(cred, options, name=name)
    log.info("firebase_app_initialized", name=name, project_id=project_id or None)
    return app


def close_firebase_app(app: firebase_admin.App) -> None:
    firebase_admin.delete_app(app)
