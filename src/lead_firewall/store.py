"""CanonicalStore — in-memory key-value store of canonical records by lead id.

Design goals:
  - Records go in and come out through their wire form, so callers never
    share mutable state with the store
  - Cooldowns are a keyed TTL counter; acquiring one is check-and-set

Cooldowns here are per-process and best-effort: a restart clears them.
``SqliteCanonicalStore`` keeps them across restarts on one host.
"""

from __future__ import annotations
import time
from typing import Any, Callable

from .canonical import CanonicalRecord
from .errors import StaleRevision


class CanonicalStore:
    """Lead id → canonical record, plus cooldown keys."""

    __slots__ = ("_records", "_cooldowns", "_clock")

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._records: dict[str, dict[str, Any]] = {}   # lead_id → record wire form
        self._cooldowns: dict[str, float] = {}          # key → expires_at
        self._clock = clock

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, lead_id: str) -> CanonicalRecord | None:
        data = self._records.get(lead_id)
        return CanonicalRecord.from_dict(data) if data is not None else None

    def save(self, record: CanonicalRecord) -> None:
        """Store a record; its revision must be newer than the stored one."""
        if not record.lead_id:
            raise ValueError("cannot store a record without a lead id")
        stored = self._records.get(record.lead_id)
        if stored is not None and stored.get("revision", 0) >= record.revision:
            raise StaleRevision(record.lead_id, stored.get("revision", 0), record.revision)
        self._records[record.lead_id] = record.to_dict()

    def delete(self, lead_id: str) -> bool:
        return self._records.pop(lead_id, None) is not None

    def list_leads(self) -> list[str]:
        return sorted(self._records)

    # ------------------------------------------------------------------
    # Cooldowns
    # ------------------------------------------------------------------

    def acquire_cooldown(self, key: str, ttl: float) -> float:
        """Take the cooldown for ``key``.

        Returns 0 when acquired, otherwise the seconds left on the
        existing one.
        """
        now = self._clock()
        expires = self._cooldowns.get(key)
        if expires is not None and expires > now:
            return expires - now
        self._cooldowns[key] = now + ttl
        return 0.0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self._records)

    def dump(self) -> dict[str, dict[str, Any]]:
        """Return a copy of every stored record (for debugging)."""
        return {k: dict(v) for k, v in self._records.items()}

    def clear(self) -> None:
        self._records.clear()
        self._cooldowns.clear()
