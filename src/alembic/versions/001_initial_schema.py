"""Initial schema -- memberships, bundles, purchases, grants, webhook log, triggers.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op

from creator_vault.schema_sql import (
    indexes,
    tables_commerce,
    tables_core,
    triggers,
)

revision = "001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _execute_all(statements: list[str]) -> None:
    """Execute a list of SQL statements sequentially."""
    for stmt in statements:
        op.execute(stmt)


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    _execute_all(tables_core.ALL)
    _execute_all(tables_commerce.ALL)
    _execute_all(indexes.ALL)
    _execute_all(triggers.FUNCTIONS_ALL)
    _execute_all(triggers.TRIGGERS_ALL)


def downgrade() -> None:
    _drop_triggers()
    _drop_functions()
    _drop_tables()


def _drop_triggers() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_memberships_undeletable ON memberships;")
    op.execute(
        "DROP TRIGGER IF EXISTS trg_webhook_events_recorded_final ON webhook_events;"
    )
    op.execute("DROP TRIGGER IF EXISTS trg_webhook_events_undeletable ON webhook_events;")
    op.execute("DROP TRIGGER IF EXISTS trg_purchases_immutable_fields ON purchases;")
    op.execute("DROP TRIGGER IF EXISTS trg_purchases_undeletable ON purchases;")


def _drop_functions() -> None:
    op.execute("DROP FUNCTION IF EXISTS check_recorded_webhook_event();")
    op.execute("DROP FUNCTION IF EXISTS check_immutable_purchase_fields();")
    op.execute("DROP FUNCTION IF EXISTS raise_undeletable_error();")


def _drop_tables() -> None:
    tables = [
        "access_grants",
        "purchases",
        "webhook_events",
        "product_box_contents",
        "product_boxes",
        "connected_accounts",
        "memberships",
    ]
    for table in tables:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
