from typing import Any

from sqlalchemy import insert
from sqlalchemy.engine import Connection

from rental_core.models.audit import AuditLog
from rental_core.utils.datetime import utc_now


def insert_audit_log(conn: Connection, row: dict[str, Any]) -> None:
    conn.execute(insert(AuditLog.__table__).values(created_at=utc_now(), **row))
