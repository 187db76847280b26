"""Database utility functions for cross-database compatibility."""

import logging
from collections import defaultdict
from typing import Any, TypeVar

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _dialect_insert(session: AsyncSession, model: type[T]):
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    raise NotImplementedError(f"Upsert not supported for dialect {dialect}")


async def upsert(
    session: AsyncSession,
    model: type[T],
    values: dict[str, Any],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
) -> int:
    """
    Dialect-native upsert (INSERT ... ON CONFLICT DO UPDATE).

    Works on PostgreSQL and SQLite, both of which share the ON CONFLICT syntax.

    Args:
        session: AsyncSession instance
        model: SQLModel table class
        values: Column values to insert/update
        conflict_columns: Columns that define uniqueness (for conflict detection)
        update_columns: Columns to update on conflict (defaults to all non-conflict columns)

    Returns:
        Rowcount reported by the driver

    Example:
        await upsert(
            session,
            Team,
            {"external_id": "abc", "name": "Galatasaray"},
            conflict_columns=["external_id"],
        )
    """
    if update_columns is None:
        update_columns = [k for k in values.keys() if k not in conflict_columns]

    stmt = _dialect_insert(session, model).values(**values)
    if update_columns:
        update_dict = {col: getattr(stmt.excluded, col) for col in update_columns}
        stmt = stmt.on_conflict_do_update(index_elements=conflict_columns, set_=update_dict)
    else:
        stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)

    result = await session.execute(stmt)
    return result.rowcount


async def insert_if_absent(
    session: AsyncSession,
    model: type[T],
    values: dict[str, Any],
    conflict_columns: list[str],
) -> bool:
    """Insert a row unless one with the same natural key exists. Returns True if inserted."""
    stmt = _dialect_insert(session, model).values(**values).on_conflict_do_nothing(
        index_elements=conflict_columns
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def bulk_upsert(
    session: AsyncSession,
    model: type[T],
    values_list: list[dict[str, Any]],
    conflict_columns: list[str],
    chunk_size: int = 500,
) -> int:
    """
    Multi-row upsert, one statement per chunk of rows sharing the same columns.

    Rows repeating a conflict key are collapsed first (last one wins), since
    PostgreSQL refuses to update the same row twice in one statement. Each
    row only overwrites the columns it carries.

    Returns:
        Number of distinct rows sent
    """
    latest: dict[tuple, dict[str, Any]] = {}
    for values in values_list:
        latest[tuple(values[col] for col in conflict_columns)] = values

    groups: dict[tuple, list[dict[str, Any]]] = defaultdict(list)
    for values in latest.values():
        groups[tuple(sorted(values))].append(values)

    for columns, rows in groups.items():
        update_columns = [col for col in columns if col not in conflict_columns]
        for start in range(0, len(rows), chunk_size):
            stmt = _dialect_insert(session, model).values(rows[start:start + chunk_size])
            if update_columns:
                stmt = stmt.on_conflict_do_update(
                    index_elements=conflict_columns,
                    set_={col: getattr(stmt.excluded, col) for col in update_columns},
                )
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=conflict_columns)
            await session.execute(stmt)

    logger.debug(f"Upserted {len(latest)} {model.__name__} rows in {len(groups)} column groups")
    return len(latest)
