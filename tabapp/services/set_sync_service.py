"""Diff-synchronization of persisted collections.

Incoming rows are copied into a temporary staging table inside the caller's
transaction and merged into the real table with set-level statements, so a
reconciliation is a handful of statements no matter how many rows it carries
and is rolled back as a unit.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import Column, MetaData, Table, and_, delete, exists, func, insert, select, true, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session


@dataclass(frozen=True)
class SyncResult:
    inserted: int
    deleted: int


def _table_of(target) -> Table:
    return getattr(target, '__table__', target)


def dialect_insert(db: Session, target):
    """INSERT construct with ON CONFLICT support for the session's database."""
    table = _table_of(target)
    dialect = db.get_bind().dialect.name
    if dialect == 'postgresql':
        return postgresql.insert(table)
    if dialect == 'sqlite':
        return sqlite.insert(table)
    raise NotImplementedError(f'Set synchronization is not supported on {dialect}')


def _matches(table: Table, values: Mapping[str, object]):
    return and_(*(table.c[name] == value for name, value in values.items()))


def _same_keys(left: Table, right: Table, key_columns: Sequence[str]):
    return and_(*(left.c[name] == right.c[name] for name in key_columns))


@contextmanager
def staged_rows(db: Session, target, columns: Sequence[str], rows: list[dict]) -> Iterator[Table]:
    """Yield a temporary table shaped like ``columns`` of ``target`` holding ``rows``.

    The table is dropped when the block completes. If the block raises, the
    table is left for the transaction rollback to discard.
    """
    source = _table_of(target)
    staging = Table(
        f'_staged_{source.name}',
        MetaData(),
        *(Column(name, source.c[name].type) for name in columns),
        prefixes=['TEMPORARY'],
    )
    connection = db.connection()
    staging.create(connection)
    if rows:
        connection.execute(insert(staging), rows)
    yield staging
    staging.drop(connection)


def sync_membership(
    db: Session,
    target,
    *,
    scope: Mapping[str, object],
    key_column: str,
    keys: Iterable,
) -> SyncResult:
    """Make the rows of ``target`` under ``scope`` exactly the given keys.

    Keys already present are left alone; keys absent from ``keys`` are
    deleted. An empty ``keys`` clears the scope.
    """
    table = _table_of(target)
    columns = [*scope, key_column]
    rows = [{**scope, key_column: key} for key in dict.fromkeys(keys)]

    with staged_rows(db, table, columns, rows) as staged:
        inserted = db.execute(
            dialect_insert(db, table)
            .from_select(columns, select(*(staged.c[name] for name in columns)).where(_matches(staged, scope)))
            .on_conflict_do_nothing()
        ).rowcount
        deleted = db.execute(
            delete(table).where(
                _matches(table, scope),
                table.c[key_column].not_in(select(staged.c[key_column])),
            )
        ).rowcount

    return SyncResult(inserted=inserted, deleted=deleted)


def _delta_totals(staged: Table, key_columns: Sequence[str]):
    keys = [staged.c[name] for name in key_columns]
    # SQLite needs a WHERE clause to parse INSERT ... SELECT ... ON CONFLICT.
    return select(*keys, func.sum(staged.c.quantity).label('quantity')).where(true()).group_by(*keys)


def merge_quantities(db: Session, target, staged: Table, *, key_columns: Sequence[str]) -> int:
    """Add staged quantity deltas onto ``target``.

    Existing rows become ``quantity + delta``; missing rows are created with
    the delta. Deltas repeated for one key are summed first. Results are
    stored as computed, negative or not.
    """
    table = _table_of(target)
    stmt = dialect_insert(db, table).from_select([*key_columns, 'quantity'], _delta_totals(staged, key_columns))
    stmt = stmt.on_conflict_do_update(
        index_elements=list(key_columns),
        set_={'quantity': table.c.quantity + stmt.excluded.quantity},
    )
    return db.execute(stmt).rowcount


def overdrawn_rows(db: Session, target, staged: Table, *, key_columns: Sequence[str]) -> list[dict]:
    """Rows whose quantity would drop below zero if the staged deltas were merged."""
    table = _table_of(target)
    totals = _delta_totals(staged, key_columns).subquery()
    current = func.coalesce(table.c.quantity, 0)
    rows = db.execute(
        select(*(totals.c[name] for name in key_columns), current.label('current'), totals.c.quantity.label('delta'))
        .select_from(totals.outerjoin(table, _same_keys(totals, table, key_columns)))
        .where(current + totals.c.quantity < 0)
    ).mappings()
    return [dict(row) for row in rows]


def clamp_negative(db: Session, target, staged: Table, *, key_columns: Sequence[str]) -> int:
    """Reset to zero any staged key whose stored quantity went negative."""
    table = _table_of(target)
    touched = exists(select(1).select_from(staged).where(_same_keys(staged, table, key_columns)))
    return db.execute(update(table).where(table.c.quantity < 0, touched).values(quantity=0)).rowcount
