#!/usr/bin/env python3
"""
SQL-backed presence store

This module provides:
- Entry: one named, time-stamped presence record
- SQLStore: the durable table every other component reads and writes
- The error taxonomy shared by the registry (RegistryError and subclasses)

The table is built with SQLAlchemy Core, so any SQLAlchemy URL works
(mysql+pymysql://, postgresql://, sqlite:///...). Timestamps are naive UTC.
"""

from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Iterable, Iterator

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.dialects import mysql
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..config import validate_registry_name

# MySQL DATETIME drops sub-second precision unless fsp is set.
LAST_ALIVE_TYPE = DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


class RegistryError(Exception):
    """Base class for presence registry errors"""


class StoreError(RegistryError):
    """The backing store failed (connectivity, constraint, aborted transaction)"""


class DuplicateKey(StoreError):
    """Insert hit an existing primary key"""


class NameExists(RegistryError):
    """Register was called for a name that is currently alive"""


@dataclass
class Entry:
    """Presence record as stored in the table"""
    name: str
    content: str
    last_alive: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serialisable dictionary."""
        data = asdict(self)
        data['last_alive'] = self.last_alive.isoformat()
        return data


def build_table(metadata: MetaData, registry_name: str) -> Table:
    """Describe the presence table for *registry_name* on *metadata*."""
    registry_name = validate_registry_name(registry_name)
    return Table(
        f"rollcall_{registry_name}",
        metadata,
        Column("name", String(255), primary_key=True),
        Column("content", Text, nullable=False),
        Column("last_alive", LAST_ALIVE_TYPE, nullable=False, index=True),
    )


class SQLStore:
    """Presence table adapter. Safe to share between threads."""

    def __init__(self, dsn: str | None = None, registry_name: str = "default",
                 engine: Engine | None = None):
        if engine is None:
            if not dsn:
                raise ValueError("SQLStore needs either a dsn or an engine")
            engine = create_engine(dsn, pool_pre_ping=True)
        self._engine = engine
        self._metadata = MetaData()
        self.registry_name = registry_name
        self.table = build_table(self._metadata, registry_name)

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise StoreError(f"{action} failed on {self.table.name}: {exc}") from exc

    def create_table_if_absent(self) -> None:
        with self._guard("create table"):
            self._metadata.create_all(self._engine, tables=[self.table], checkfirst=True)

    def insert(self, name: str, content: str, timestamp: datetime,
               stale_before: datetime | None = None) -> None:
        """Insert a new row for *name*.

        When *stale_before* is given, a leftover row for the same name whose
        last_alive is at or before that cutoff is removed in the same
        transaction, so an expired name can be taken over before the garbage
        collector gets to it. An alive row still raises DuplicateKey.
        """
        t = self.table
        try:
            with self._engine.begin() as conn:
                if stale_before is not None:
                    conn.execute(
                        delete(t).where(t.c.name == name, t.c.last_alive <= stale_before)
                    )
                conn.execute(
                    insert(t).values(name=name, content=content, last_alive=timestamp)
                )
        except IntegrityError as exc:
            raise DuplicateKey(f"{name!r} already exists in {t.name}") from exc
        except SQLAlchemyError as exc:
            raise StoreError(f"insert failed on {t.name}: {exc}") from exc

    def update_timestamp(self, name: str, timestamp: datetime) -> int:
        """Advance last_alive for one name. Returns rows affected (0 if absent)."""
        return self.update_timestamps([name], timestamp)

    def update_timestamps(self, names: Iterable[str], timestamp: datetime) -> int:
        """Advance last_alive for every name in one transaction.

        Either all updates commit or none do. Missing names affect 0 rows and
        rows already newer than *timestamp* are left alone.
        """
        t = self.table
        affected = 0
        with self._guard("batch update"):
            with self._engine.begin() as conn:
                for name in sorted(set(names)):
                    result = conn.execute(
                        update(t)
                        .where(t.c.name == name, t.c.last_alive <= timestamp)
                        .values(last_alive=timestamp)
                    )
                    affected += result.rowcount
        return affected

    def delete(self, name: str) -> None:
        t = self.table
        with self._guard("delete"):
            with self._engine.begin() as conn:
                conn.execute(delete(t).where(t.c.name == name))

    def select_names(self) -> list[str]:
        t = self.table
        with self._guard("list names"):
            with self._engine.connect() as conn:
                return list(conn.execute(select(t.c.name).order_by(t.c.name)).scalars())

    def select_names_alive(self, cutoff: datetime) -> list[str]:
        t = self.table
        with self._guard("list alive names"):
            with self._engine.connect() as conn:
                stmt = select(t.c.name).where(t.c.last_alive > cutoff).order_by(t.c.name)
                return list(conn.execute(stmt).scalars())

    def select_one_if(self, name: str, cutoff: datetime) -> Entry | None:
        """Return the row for *name* if its last_alive is after *cutoff*."""
        t = self.table
        with self._guard("select"):
            with self._engine.connect() as conn:
                row = conn.execute(
                    select(t.c.name, t.c.content, t.c.last_alive)
                    .where(t.c.name == name, t.c.last_alive > cutoff)
                ).first()
        if row is None:
            return None
        return Entry(name=row.name, content=row.content, last_alive=row.last_alive)

    def delete_where(self, cutoff: datetime) -> int:
        """Delete every row whose last_alive is before *cutoff*. Returns rows deleted."""
        t = self.table
        with self._guard("expire"):
            with self._engine.begin() as conn:
                result = conn.execute(delete(t).where(t.c.last_alive < cutoff))
                return result.rowcount

    def close(self) -> None:
        self._engine.dispose()
