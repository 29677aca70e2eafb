"""
SQLAlchemy engine singleton with production-ready connection pooling.

PostgreSQL is the production target. SQLite URLs are accepted for local
development and tests; they get a thread-tolerant connection instead of the
pool sizing options.
"""

from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rental_core.config import DATABASE_URL

if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL is not set.")


def build_engine(url: str) -> Engine:
    """
    Create an engine for ``url`` with pool settings suited to its dialect.

    Args:
        url: SQLAlchemy database URL

    Returns:
        Engine: configured SQLAlchemy engine
    """
    options: dict[str, Any] = {"future": True, "echo": False}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(
            pool_size=10,  # Number of connections to maintain in the pool
            max_overflow=20,  # Additional connections when pool is exhausted
            pool_pre_ping=True,  # Detect stale connections before use
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return create_engine(url, **options)


engine: Engine = build_engine(DATABASE_URL)


def check_engine_health(target: Optional[Engine] = None) -> bool:
    """
    Run ``SELECT 1`` against ``target`` (the shared engine by default).

    Returns:
        bool: False when the database cannot be reached
    """
    try:
        with (target or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return False
    return True
