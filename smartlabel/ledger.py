"""Append-only audit ledger: the system of record for label provenance."""
from __future__ import annotations

import logging
import sqlite3
from typing import Any, List, Mapping, Optional, Sequence

from .shared.database import Database, fetch_all, fetch_one
from .shared.models import AuditEntry
from .utils.hashing import canonical_json
from .utils.runtime import utc_now

LOGGER = logging.getLogger(__name__)


def make_entry(
    *,
    sample_id: str,
    project_id: str,
    kind: str,
    prev_status: Optional[str],
    status: str,
    inputs: Mapping[str, Any] | None = None,
    actor: str,
) -> AuditEntry:
    return AuditEntry(
        entry_id=None,
        sample_id=sample_id,
        project_id=project_id,
        kind=kind,
        prev_status=prev_status,
        status=status,
        inputs_json=canonical_json(dict(inputs or {})),
        actor=actor,
        ts="",
    )


class AuditLedger:
    """Writes and reads :class:`AuditEntry` rows.

    There is no update or delete method and the table carries
    triggers that abort any attempt to do either.  Timestamps are clamped so
    that a sample's entries never go backwards in time, which keeps
    ``history`` ordering identical to append ordering.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def append(self, entry: AuditEntry, conn: sqlite3.Connection | None = None) -> int:
        if conn is None:
            with self.db.transaction() as own:
                return self.append(entry, own)
        ts = utc_now()
        last = fetch_one(conn, "SELECT MAX(ts) AS ts FROM audit_entries WHERE sample_id=?", (entry.sample_id,))
        if last is not None and last["ts"] and last["ts"] > ts:
            ts = last["ts"]
        return self._insert(conn, entry, ts)

    def restore(self, entries: Sequence[AuditEntry], conn: sqlite3.Connection) -> List[int]:
        """Re-insert previously exported entries, keeping their timestamps.

        Entries must be in history order; a timestamp that goes backwards is
        refused so the restored history reads exactly as it was exported.
        """
        ids: List[int] = []
        previous = ""
        for entry in entries:
            if not entry.ts or entry.ts < previous:
                raise ValueError(f"audit history of {entry.sample_id} is not in timestamp order")
            previous = entry.ts
            ids.append(self._insert(conn, entry, entry.ts))
        return ids

    def _insert(self, conn: sqlite3.Connection, entry: AuditEntry, ts: str) -> int:
        cur = conn.execute(
            """
            INSERT INTO audit_entries(sample_id, project_id, kind, prev_status, status, inputs_json, actor, ts)
            VALUES (?,?,?,?,?,?,?,?)
            """,
            (
                entry.sample_id,
                entry.project_id,
                entry.kind,
                entry.prev_status,
                entry.status,
                entry.inputs_json,
                entry.actor,
                ts,
            ),
        )
        entry_id = int(cur.lastrowid)
        entry.entry_id = entry_id
        entry.ts = ts
        LOGGER.debug(
            "audit entry appended",
            extra={"sample_id": entry.sample_id, "kind": entry.kind, "status": entry.status, "entry_id": entry_id},
        )
        return entry_id

    def history(self, sample_id: str, conn: sqlite3.Connection | None = None) -> List[AuditEntry]:
        sql = "SELECT * FROM audit_entries WHERE sample_id=? ORDER BY ts, entry_id"
        if conn is not None:
            return [AuditEntry.from_row(r) for r in fetch_all(conn, sql, (sample_id,))]
        with self.db.reader() as own:
            return [AuditEntry.from_row(r) for r in fetch_all(own, sql, (sample_id,))]

    def last_entry(self, sample_id: str, conn: sqlite3.Connection | None = None) -> Optional[AuditEntry]:
        entries = self.history(sample_id, conn)
        return entries[-1] if entries else None

    def last_entries_for_project(self, project_id: str) -> dict[str, AuditEntry]:
        """Final entry per sample, used for provenance verification."""
        with self.db.reader() as conn:
            rows = fetch_all(
                conn,
                "SELECT * FROM audit_entries WHERE project_id=? ORDER BY sample_id, ts, entry_id",
                (project_id,),
            )
        latest: dict[str, AuditEntry] = {}
        for row in rows:
            latest[row["sample_id"]] = AuditEntry.from_row(row)
        return latest


__all__ = ["AuditLedger", "make_entry"]
