#!/usr/bin/env python3
"""Nightly entitlement reconciliation script.

Cross-checks ``purchases`` against ``access_grants`` and reports:

* completed purchases whose buyer holds no active grant
* active grants with no completed purchase behind them
* purchases whose source webhook event never reached ``recorded``

Usage:
    DATABASE_URL=postgresql://... python scripts/reconcile_entitlements.py

Exit codes:
    0 -- purchases and grants agree
    1 -- one or more discrepancies found
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from datetime import datetime, timezone

import asyncpg  # type: ignore[import-untyped]

DEFAULT_DATABASE_URL = "postgresql://app:devpassword@db:5432/creatorvault"

PURCHASES_WITHOUT_GRANT = """
    SELECT p.purchase_id, p.buyer_uid, p.product_box_id
    FROM purchases p
    LEFT JOIN access_grants g
        ON g.buyer_uid = p.buyer_uid AND g.product_box_id = p.product_box_id
    WHERE p.status = 'completed'
      AND (g.buyer_uid IS NULL OR NOT g.granted)
    ORDER BY p.purchased_at
"""

GRANTS_WITHOUT_PURCHASE = """
    SELECT g.buyer_uid, g.product_box_id, g.purchase_id
    FROM access_grants g
    WHERE g.granted
      AND NOT EXISTS (
          SELECT 1 FROM purchases p
          WHERE p.buyer_uid = g.buyer_uid
            AND p.product_box_id = g.product_box_id
            AND p.status = 'completed'
      )
    ORDER BY g.granted_at
"""

PURCHASES_WITH_UNRECORDED_EVENT = """
    SELECT p.purchase_id, p.source_event_id, e.status
    FROM purchases p
    JOIN webhook_events e ON e.event_id = p.source_event_id
    WHERE e.status <> 'recorded'
"""


def _get_dsn() -> str:
    """Return a raw ``postgresql://`` DSN (strip any SQLAlchemy dialect prefix)."""
    url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)
    # Normalise SQLAlchemy-style URLs that include +asyncpg / +psycopg2 etc.
    for prefix in ("postgresql+asyncpg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = "postgresql://" + url[len(prefix):]
    return url


async def reconcile(conn: asyncpg.Connection) -> dict[str, list[dict]]:
    """Run every check and return discrepancies keyed by check name."""
    missing_grants = await conn.fetch(PURCHASES_WITHOUT_GRANT)
    orphan_grants = await conn.fetch(GRANTS_WITHOUT_PURCHASE)
    unrecorded = await conn.fetch(PURCHASES_WITH_UNRECORDED_EVENT)

    return {
        "purchases_without_grant": [
            {
                "purchase_id": row["purchase_id"],
                "buyer_uid": row["buyer_uid"],
                "product_box_id": str(row["product_box_id"]),
            }
            for row in missing_grants
        ],
        "grants_without_purchase": [
            {
                "buyer_uid": row["buyer_uid"],
                "product_box_id": str(row["product_box_id"]),
                "purchase_id": row["purchase_id"],
            }
            for row in orphan_grants
        ],
        "purchases_with_unrecorded_event": [
            {
                "purchase_id": row["purchase_id"],
                "source_event_id": row["source_event_id"],
                "event_status": row["status"],
            }
            for row in unrecorded
        ],
    }


def build_report(discrepancies: dict[str, list[dict]]) -> dict:
    total = sum(len(items) for items in discrepancies.values())
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "total_discrepancies": total,
        **discrepancies,
    }


async def main() -> int:
    conn: asyncpg.Connection = await asyncpg.connect(_get_dsn())
    try:
        discrepancies = await reconcile(conn)
    finally:
        await conn.close()

    report = build_report(discrepancies)
    json.dump(report, sys.stdout, indent=2)
    sys.stdout.write("\n")

    return 1 if report["total_discrepancies"] else 0


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
