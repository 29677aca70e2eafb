from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.engine import Connection

from rental_core.db.records import PropertyRecord
from rental_core.models.properties import Property

properties = Property.__table__


def get_property(
    conn: Connection, property_id: str, for_update: bool = False
) -> Optional[PropertyRecord]:
    """
    Fetch a property read-model row.

    Args:
        conn: Database connection
        property_id: Listing identifier
        for_update: Lock the row for the rest of the transaction (PostgreSQL)

    Returns:
        PropertyRecord or None if the property is unknown
    """
    stmt = select(properties).where(properties.c.id == property_id)
    if for_update:
        stmt = stmt.with_for_update()
    row = conn.execute(stmt).mappings().fetchone()
    return PropertyRecord.from_row(row) if row else None
