"""
Dialect-aware upsert helper with IS DISTINCT FROM optimization.

PostgreSQL and SQLite both support INSERT ... ON CONFLICT DO UPDATE with an
``excluded`` pseudo-table; this picks the matching insert construct for the
connection and only rewrites rows whose tracked columns actually changed.
"""

from typing import Any

from sqlalchemy import or_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Connection


def _insert_for(conn: Connection, table: type) -> Any:
    if conn.dialect.name == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


def upsert_with_distinct_check(
    conn: Connection,
    table: type,
    rows: list[dict[str, Any]],
    conflict_column: str,
    update_columns: list[str],
) -> None:
    """
    Perform upsert, skipping rows whose ``update_columns`` are unchanged.

    Args:
        conn: Active database connection (within transaction)
        table: SQLAlchemy ORM table class (e.g., Property)
        rows: List of row dicts to upsert
        conflict_column: Column name for ON CONFLICT (usually "id")
        update_columns: Columns compared and updated on conflict; "updated_at"
            is always written when any of them changed

    Example:
        >>> with engine.begin() as conn:
        ...     upsert_with_distinct_check(
        ...         conn=conn,
        ...         table=Property,
        ...         rows=[{"id": "p-1", "monthly_rate": 3000, ...}],
        ...         conflict_column="id",
        ...         update_columns=["monthly_rate", "is_available"],
        ...     )
    """
    if not rows:
        return

    stmt = _insert_for(conn, table).values(rows)

    set_dict = {col: getattr(stmt.excluded, col) for col in update_columns}
    set_dict["updated_at"] = stmt.excluded.updated_at

    distinct_check = or_(
        *[
            getattr(table, col).is_distinct_from(getattr(stmt.excluded, col))
            for col in update_columns
        ]
    )

    stmt = stmt.on_conflict_do_update(
        index_elements=[conflict_column],
        set_=set_dict,
        where=distinct_check,
    )

    conn.execute(stmt)
