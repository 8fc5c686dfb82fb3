# backend/coinfolio/utils/sql.py
"""
SQL helpers shared by the catalog and ledger stores.

- escape_like_pattern: make user search input literal inside LIKE
- dialect_insert: INSERT construct with ON CONFLICT support for the bound dialect
- apply_statement_timeout: bound the current transaction (PostgreSQL only)

Usage:
    from coinfolio.utils.sql import dialect_insert

    insert_fn = dialect_insert(db)
    stmt = insert_fn(CatalogEntry).values(rows).on_conflict_do_nothing()
"""

from sqlalchemy import text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

_ON_CONFLICT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def escape_like_pattern(value: str) -> str:
    """
    Escape LIKE wildcards so user input matches literally.

    Backslash is the escape character, so it is doubled first.

    Example:
        >>> escape_like_pattern("50%_off")
        '50\\\\%\\\\_off'
    """
    return (
        value
        .replace("\\", "\\\\")
        .replace("%", "\\%")
        .replace("_", "\\_")
    )


def dialect_name(db: Session) -> str:
    return db.get_bind().dialect.name


def dialect_insert(db: Session):
    """INSERT construct with on_conflict_do_update/do_nothing, or None if unsupported."""
    return _ON_CONFLICT_INSERTS.get(dialect_name(db))


def apply_statement_timeout(db: Session, seconds: int) -> None:
    """
    Set a statement timeout for the rest of the current transaction.

    SET LOCAL ends with the transaction. SQLite has no equivalent, so the
    call is a no-op there.
    """
    if dialect_name(db) != "postgresql":
        return
    db.execute(text(f"SET LOCAL statement_timeout = {int(seconds) * 1000}"))
