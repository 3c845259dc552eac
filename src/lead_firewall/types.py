"""Core types."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Hard caps on report size
MAX_SAMPLES_PER_KIND = 3
MAX_INJECTION_SIGNALS = 8
MAX_MASKED_CONTACTS = 10


class RedactionKind(str, Enum):
    """Category of sensitive data.  Order here is detection precedence."""
    EMAIL = "email"
    PHONE = "phone"
    IBAN = "iban"
    NATIONAL_ID = "national_id"
    CREDIT_CARD = "credit_card"
    PASSPORT_LIKE = "passport_like"


@dataclass(frozen=True, slots=True)
class RedactionMatch:
    """A single detected sensitive span."""
    kind: RedactionKind
    start: int
    end: int
    text: str              # raw value, never leaves the redactor
    masked: str            # audit-safe rendering, e.g. "j***n@acme.com"
    source: str = "regex"  # "regex" | "presidio"


@dataclass(frozen=True, slots=True)
class InjectionSignal:
    """A prompt-manipulation signature found in raw text."""
    pattern: str
    match: str
    offset: int

    @property
    def key(self) -> tuple[str, str]:
        return (self.pattern, self.match)

    def to_dict(self) -> dict[str, Any]:
        return {"pattern": self.pattern, "match": self.match, "offset": self.offset}


def _zero_counts() -> dict[RedactionKind, int]:
    return {kind: 0 for kind in RedactionKind}


@dataclass(slots=True)
class FirewallReport:
    """What was redacted and which injection signals were seen.

    Holds masked renderings only.  All lists are capped; ``absorb`` merges
    another report in while keeping those caps, so an aggregate over any
    number of fragments stays the same size.
    """
    counts: dict[RedactionKind, int] = field(default_factory=_zero_counts)
    samples_masked: dict[RedactionKind, list[str]] = field(default_factory=dict)
    injection_signals: list[InjectionSignal] = field(default_factory=list)
    masked_emails: list[str] = field(default_factory=list)
    masked_phones: list[str] = field(default_factory=list)

    @property
    def redaction_applied(self) -> bool:
        return any(self.counts.values())

    @property
    def injection_detected(self) -> bool:
        return bool(self.injection_signals)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(self, match: RedactionMatch) -> None:
        """Count one redaction and keep its masked form if under the caps."""
        self.counts[match.kind] += 1
        samples = self.samples_masked.setdefault(match.kind, [])
        if len(samples) < MAX_SAMPLES_PER_KIND:
            samples.append(match.masked)
        if match.kind is RedactionKind.EMAIL:
            _append_unique(self.masked_emails, match.masked)
        elif match.kind is RedactionKind.PHONE:
            _append_unique(self.masked_phones, match.masked)

    def add_signal(self, signal: InjectionSignal) -> bool:
        """Add a signal unless it is a duplicate or the cap is reached."""
        if len(self.injection_signals) >= MAX_INJECTION_SIGNALS:
            return False
        if any(s.key == signal.key for s in self.injection_signals):
            return False
        self.injection_signals.append(signal)
        return True

    def absorb(self, other: FirewallReport) -> None:
        """Fold another report into this one (batch aggregation)."""
        for kind, count in other.counts.items():
            self.counts[kind] += count
        for kind, samples in other.samples_masked.items():
            mine = self.samples_masked.setdefault(kind, [])
            for sample in samples:
                if len(mine) >= MAX_SAMPLES_PER_KIND:
                    break
                mine.append(sample)
        for signal in other.injection_signals:
            self.add_signal(signal)
        for email in other.masked_emails:
            _append_unique(self.masked_emails, email)
        for phone in other.masked_phones:
            _append_unique(self.masked_phones, phone)

    def to_dict(self) -> dict[str, Any]:
        return {
            "redaction_applied": self.redaction_applied,
            "counts": {kind.value: n for kind, n in self.counts.items()},
            "samples_masked": {
                kind.value: list(samples)
                for kind, samples in self.samples_masked.items()
                if samples
            },
            "injection_detected": self.injection_detected,
            "injection_signals": [s.to_dict() for s in self.injection_signals],
            "masked_contacts": {
                "emails": list(self.masked_emails),
                "phones": list(self.masked_phones),
            },
        }


def _append_unique(items: list[str], value: str) -> None:
    if len(items) < MAX_MASKED_CONTACTS and value not in items:
        items.append(value)


@dataclass(slots=True)
class SanitizedFragment:
    """A note (or other text fragment) with sensitive spans replaced."""
    timestamp: str
    sanitized_text: str
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"timestamp": self.timestamp, "sanitized_text": self.sanitized_text}
        if self.id is not None:
            out["id"] = self.id
        return out


@dataclass(slots=True)
class SanitizedEvent(SanitizedFragment):
    """A timeline event: title and free-text notes sanitized separately.

    ``sanitized_text`` carries the sanitized additional notes; every other
    key of the source event is kept as-is in ``metadata``.
    """
    event_type: str = ""
    sanitized_title: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        out = SanitizedFragment.to_dict(self)
        out["event_type"] = self.event_type
        if self.sanitized_title is not None:
            out["sanitized_title"] = self.sanitized_title
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out
