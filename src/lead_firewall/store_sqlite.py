"""Persistent record store backed by SQLite — survives process restarts.

Drop-in replacement for CanonicalStore when you need durability.

Usage:
    store = SqliteCanonicalStore(db_path="~/.lead-firewall/records.db")
    # Same API as CanonicalStore: get, save, acquire_cooldown, etc.

Both the revision check on ``save`` and ``acquire_cooldown`` are single
upsert statements, so concurrent writers on one database can't both win.
"""

from __future__ import annotations
import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable

from .canonical import CanonicalRecord
from .errors import StaleRevision

_SCHEMA = """
CREATE TABLE IF NOT EXISTS canonical_records (
    lead_id TEXT PRIMARY KEY,
    revision INTEGER NOT NULL,
    updated_at TEXT NOT NULL,
    body TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS cooldowns (
    key TEXT PRIMARY KEY,
    expires_at REAL NOT NULL
);
"""


class SqliteCanonicalStore:
    """Persistent lead id → canonical record store, plus cooldown keys."""

    __slots__ = ("_db", "_clock")

    def __init__(
        self,
        *,
        db_path: str | Path = "records.db",
        clock: Callable[[], float] = time.time,
    ) -> None:
        db_path = Path(db_path).expanduser()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(str(db_path), check_same_thread=False)
        self._db.executescript(_SCHEMA)
        self._clock = clock

    def get(self, lead_id: str) -> CanonicalRecord | None:
        row = self._db.execute(
            "SELECT body FROM canonical_records WHERE lead_id = ?", (lead_id,)
        ).fetchone()
        return CanonicalRecord.from_dict(json.loads(row[0])) if row else None

    def save(self, record: CanonicalRecord) -> None:
        """Store a record; its revision must be newer than the stored one."""
        if not record.lead_id:
            raise ValueError("cannot store a record without a lead id")
        cur = self._db.execute(
            "INSERT INTO canonical_records (lead_id, revision, updated_at, body) VALUES (?, ?, ?, ?) "
            "ON CONFLICT(lead_id) DO UPDATE SET "
            "revision = excluded.revision, updated_at = excluded.updated_at, body = excluded.body "
            "WHERE canonical_records.revision < excluded.revision",
            (
                record.lead_id,
                record.revision,
                record.updated_at,
                json.dumps(record.to_dict(), ensure_ascii=False),
            ),
        )
        self._db.commit()
        if cur.rowcount == 0:
            row = self._db.execute(
                "SELECT revision FROM canonical_records WHERE lead_id = ?", (record.lead_id,)
            ).fetchone()
            raise StaleRevision(record.lead_id, row[0] if row else 0, record.revision)

    def delete(self, lead_id: str) -> bool:
        cur = self._db.execute("DELETE FROM canonical_records WHERE lead_id = ?", (lead_id,))
        self._db.commit()
        return cur.rowcount > 0

    def list_leads(self) -> list[str]:
        rows = self._db.execute("SELECT lead_id FROM canonical_records ORDER BY lead_id").fetchall()
        return [r[0] for r in rows]

    def acquire_cooldown(self, key: str, ttl: float) -> float:
        """Take the cooldown for ``key``; 0 when acquired, else seconds left."""
        now = self._clock()
        cur = self._db.execute(
            "INSERT INTO cooldowns (key, expires_at) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET expires_at = excluded.expires_at "
            "WHERE cooldowns.expires_at <= ?",
            (key, now + ttl, now),
        )
        self._db.commit()
        if cur.rowcount > 0:
            return 0.0
        row = self._db.execute("SELECT expires_at FROM cooldowns WHERE key = ?", (key,)).fetchone()
        return max(row[0] - now, 0.0) if row else 0.0

    def purge_cooldowns(self) -> int:
        """Drop expired cooldown rows. Returns how many went."""
        cur = self._db.execute("DELETE FROM cooldowns WHERE expires_at <= ?", (self._clock(),))
        self._db.commit()
        return cur.rowcount

    @property
    def size(self) -> int:
        return self._db.execute("SELECT COUNT(*) FROM canonical_records").fetchone()[0]

    def dump(self) -> dict[str, dict[str, Any]]:
        rows = self._db.execute("SELECT lead_id, body FROM canonical_records").fetchall()
        return {lead_id: json.loads(body) for lead_id, body in rows}

    def clear(self) -> None:
        self._db.execute("DELETE FROM canonical_records")
        self._db.execute("DELETE FROM cooldowns")
        self._db.commit()

    def close(self) -> None:
        self._db.close()
