"""ORM models package -- re-exports all models and the Base class.

The migration builds the schema from the raw DDL in ``schema_sql``; these
models describe the same tables for Alembic autogenerate and must be edited
together with it. ``tests/test_models.py`` fails when tables, columns or
nullability drift apart.
"""

from creator_vault.models.base import Base
from creator_vault.models.membership import ConnectedAccount, Membership
from creator_vault.models.commerce import (
    AccessGrant,
    ProductBox,
    ProductBoxContent,
    Purchase,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Membership",
    "ConnectedAccount",
    "ProductBox",
    "ProductBoxContent",
    "WebhookEvent",
    "Purchase",
    "AccessGrant",
]
