from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.engine import Engine

from rental_core.db.writers._upsert import upsert_with_distinct_check
from rental_core.models.properties import Property
from rental_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

TRACKED_COLUMNS = [
    "owner_id",
    "title",
    "monthly_rate",
    "currency",
    "is_available",
    "min_lease_months",
]


def upsert_properties(engine: Engine, data: list[dict[str, Any]]) -> int:
    """
    Upsert property read-model rows pushed by the listing service.

    Rows are only rewritten when a tracked column actually changed.

    Args:
        engine: SQLAlchemy engine to open a transaction
        data: Property dicts with at least id, owner_id and monthly_rate

    Returns:
        int: number of rows submitted
    """
    now = utc_now()
    rows: list[dict[str, Any]] = []

    for prop in data:
        if not prop.get("id"):
            logger.warning("property_missing_id", payload=prop)
            continue
        rows.append(
            {
                "id": prop["id"],
                "owner_id": prop["owner_id"],
                "title": prop.get("title"),
                "monthly_rate": prop["monthly_rate"],
                "currency": prop.get("currency", "ETB"),
                "is_available": prop.get("is_available", True),
                "min_lease_months": prop.get("min_lease_months"),
                "created_at": now,
                "updated_at": now,
            }
        )

    if not rows:
        return 0

    with engine.begin() as conn:
        upsert_with_distinct_check(
            conn=conn,
            table=Property,
            rows=rows,
            conflict_column="id",
            update_columns=TRACKED_COLUMNS,
        )

    logger.info("properties_upserted", count=len(rows))
    return len(rows)
