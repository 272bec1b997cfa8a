"""
Helpers that keep alembic revisions re-runnable.

Every revision inspects the live schema before it creates or alters
anything, and duplicate column or index errors raised by a racing or
partially applied run are treated as already applied.
"""
import logging
import os
from typing import Optional, Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.exc import DBAPIError, OperationalError, ProgrammingError

logger = logging.getLogger("omw.migrations")

_DUPLICATE_MARKERS = (
    "duplicate column",
    "duplicate key name",
    "already exists",
    "duplicate_object",
    "duplicatecolumn",
    "duplicatetable",
)


def migration_schema() -> Optional[str]:
    s = (os.getenv("DB_SCHEMA") or "").strip()
    return s or None


def has_table(bind, table: str, schema: Optional[str] = None) -> bool:
    return bool(sa.inspect(bind).has_table(table, schema=schema))


def has_column(bind, table: str, column: str, schema: Optional[str] = None) -> bool:
    if not has_table(bind, table, schema):
        return False
    return column in {c["name"] for c in sa.inspect(bind).get_columns(table, schema=schema)}


def has_index(bind, table: str, index: str, schema: Optional[str] = None) -> bool:
    if not has_table(bind, table, schema):
        return False
    insp = sa.inspect(bind)
    names = {i["name"] for i in insp.get_indexes(table, schema=schema)}
    names.update(u["name"] for u in insp.get_unique_constraints(table, schema=schema) if u.get("name"))
    return index in names


def is_duplicate_error(exc: BaseException) -> bool:
    """True for 'column/index already exists' errors across sqlite, MySQL and Postgres."""
    text = str(getattr(exc, "orig", None) or exc).lower()
    return any(m in text for m in _DUPLICATE_MARKERS)


def create_table_if_missing(table: sa.Table) -> bool:
    bind = op.get_bind()
    if has_table(bind, table.name, table.schema):
        return False
    table.create(bind, checkfirst=True)
    logger.info("created table %s", table.name)
    return True


def add_column_if_missing(table: str, column: sa.Column, schema: Optional[str] = None) -> bool:
    bind = op.get_bind()
    if not has_table(bind, table, schema) or has_column(bind, table, column.name, schema):
        return False
    try:
        op.add_column(table, column, schema=schema)
    except (OperationalError, ProgrammingError, DBAPIError) as exc:
        if not is_duplicate_error(exc):
            raise
        logger.info("column %s.%s already present", table, column.name)
        return False
    return True


def create_index_if_missing(
    name: str,
    table: str,
    columns: Sequence[str],
    unique: bool = False,
    schema: Optional[str] = None,
) -> bool:
    bind = op.get_bind()
    if not has_table(bind, table, schema) or has_index(bind, table, name, schema):
        return False
    try:
        op.create_index(name, table, list(columns), unique=unique, schema=schema)
    except (OperationalError, ProgrammingError, DBAPIError) as exc:
        if not is_duplicate_error(exc):
            raise
        logger.info("index %s already present", name)
        return False
    return True
