"""Lightweight SQLite helpers and simple ORM primitives for the engine store."""
from __future__ import annotations

import contextlib
import sqlite3
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Type, TypeVar

from ..errors import StorageUnavailable

Row = sqlite3.Row
T = TypeVar("T", bound="Record")


class Database:
    """A thin wrapper around sqlite3 with defaults suited to many writer threads.

    Each call to :meth:`connect` opens a fresh connection so worker threads never
    share one.  WAL journaling lets readers proceed while a writer holds the
    lock, and :meth:`transaction` starts with ``BEGIN IMMEDIATE`` so a writer
    either owns the write lock for the whole unit of work or waits for it.
    Operational failures (locked past the busy timeout, missing or read-only
    files, disk errors) surface as :class:`StorageUnavailable`.
    """

    def __init__(self, path: Path | str, *, busy_timeout_s: float = 30.0) -> None:
        self.path = Path(path)
        if not self.path.parent.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout_s = float(busy_timeout_s)

    def _apply_pragmas(self, conn: sqlite3.Connection) -> None:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")

    def connect(self) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.path, timeout=self.busy_timeout_s, check_same_thread=False)
            self._apply_pragmas(conn)
        except sqlite3.OperationalError as exc:
            raise StorageUnavailable(f"cannot open {self.path}: {exc}") from exc
        return conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.OperationalError as exc:
            conn.rollback()
            raise StorageUnavailable(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextlib.contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        except sqlite3.OperationalError as exc:
            raise StorageUnavailable(str(exc)) from exc
        finally:
            conn.close()


class Record:
    """Base class for ORM style records."""

    __tablename__: str = ""
    __schema__: str = ""

    @classmethod
    def create_table(cls, conn: sqlite3.Connection) -> None:
        if not cls.__schema__:
            raise ValueError(f"{cls.__name__} does not define __schema__")
        conn.executescript(cls.__schema__)

    @classmethod
    def from_row(cls: Type[T], row: Row) -> T:
        data = {field.name: row[field.name] for field in fields(cls) if field.name in row.keys()}
        return cls(**data)  # type: ignore[arg-type]

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)

    def insert(self, conn: sqlite3.Connection) -> None:
        names = [f.name for f in fields(self)]
        sql = f"INSERT INTO {self.__tablename__}({', '.join(names)}) VALUES ({', '.join(':' + n for n in names)})"
        conn.execute(sql, self.to_row())

    def save(self, conn: sqlite3.Connection) -> None:
        names = [f.name for f in fields(self)]
        sql = f"INSERT OR REPLACE INTO {self.__tablename__}({', '.join(names)}) VALUES ({', '.join(':' + n for n in names)})"
        conn.execute(sql, self.to_row())


def ensure_schema(conn: sqlite3.Connection, models: Sequence[Type[Record]]) -> None:
    for model in models:
        model.create_table(conn)


def fetch_all(conn: sqlite3.Connection, sql: str, params: Sequence[Any] | None = None) -> List[sqlite3.Row]:
    cur = conn.execute(sql, params or [])
    return cur.fetchall()


def fetch_one(conn: sqlite3.Connection, sql: str, params: Sequence[Any] | None = None) -> Optional[sqlite3.Row]:
    cur = conn.execute(sql, params or [])
    return cur.fetchone()
