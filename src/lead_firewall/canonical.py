"""Canonical lead record (schema v1.1).

The wire form is snake_case JSON, the shape the model is prompted to emit
and the shape persisted inside a canonical note::

    [AI_CANONICAL_NOTE v1.1]
    {"version": "1.1", "lead_id": "...", ...}

``from_dict`` is lenient: it coerces whatever the model or an older
record holds into the typed shape and upgrades legacy v1.0 records.
Strictness about *whether* model output is usable lives in ``merge``.
"""

from __future__ import annotations
import json
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from .types import FirewallReport

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.1"
CANONICAL_NOTE_TAG = "[AI_CANONICAL_NOTE"

CHANNELS = ("phone", "whatsapp", "email", "note", "unknown")
MISSING_FIELDS = ("phone", "email", "photos", "xray", "passport", "preferred_dates")
DEFAULT_DUE_HOURS = 24.0

_UTC_MIN = datetime.min.replace(tzinfo=timezone.utc)


# ── Coercion helpers ────────────────────────────────────────────────

def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    out = str(value).strip()
    return out or None


def _text_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [s for s in (_text(v) for v in value) if s]


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        out = float(value)
    elif isinstance(value, str):
        try:
            out = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return out if math.isfinite(out) else None


def _score(value: Any) -> float | None:
    """0–100 score; ratios strictly between 0 and 1 are scaled up."""
    out = _number(value)
    if out is None:
        return None
    if 0 < out < 1:
        out *= 100
    return min(100.0, max(0.0, out))


def _mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _int(value: Any) -> int:
    out = _number(value)
    return int(out) if out is not None and out >= 0 else 0


def parse_timestamp(value: Any) -> datetime | None:
    """ISO-8601 → aware datetime (naive values are read as UTC)."""
    text = _text(value)
    if text is None:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _prune(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


# ── Ground truth ────────────────────────────────────────────────────

@dataclass(frozen=True, slots=True)
class LeadFacts:
    """System-of-record values for a lead.  Read-only to this package."""
    id: str
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    source: str | None = None
    treatment: str | None = None
    status: str | None = None
    created_at: str | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> LeadFacts:
        lead_id = _text(data.get("id")) or _text(data.get("lead_id"))
        if lead_id is None:
            raise ValueError("lead record has no id")
        return cls(
            id=lead_id,
            name=_text(data.get("name")),
            phone=_text(data.get("phone")),
            email=_text(data.get("email")),
            source=_text(data.get("source")),
            treatment=_text(data.get("treatment")),
            status=_text(data.get("status")),
            created_at=_text(data.get("created_at")),
        )


# ── Record sections ─────────────────────────────────────────────────

@dataclass(slots=True)
class Facts:
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    source: str | None = None
    language: str | None = None
    country: str | None = None
    city: str | None = None
    treatment_interest: list[str] = field(default_factory=list)
    budget: float | None = None
    time_window: str | None = None
    objections: list[str] = field(default_factory=list)
    preferences: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Facts:
        d = _mapping(data)
        budget = _number(d.get("budget"))
        return cls(
            name=_text(d.get("name")),
            phone=_text(d.get("phone")),
            email=_text(d.get("email")),
            source=_text(d.get("source")),
            language=_text(d.get("language")),
            country=_text(d.get("country")),
            city=_text(d.get("city")),
            treatment_interest=_text_list(d.get("treatment_interest")),
            budget=budget if budget is not None and budget >= 0 else None,
            time_window=_text(d.get("time_window")),
            objections=_text_list(d.get("objections")),
            preferences=_text_list(d.get("preferences")),
        )

    def to_dict(self) -> dict[str, Any]:
        return _prune({
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "source": self.source,
            "language": self.language,
            "country": self.country,
            "city": self.city,
            "treatment_interest": list(self.treatment_interest),
            "budget": self.budget,
            "time_window": self.time_window,
            "objections": list(self.objections),
            "preferences": list(self.preferences),
        })


@dataclass(slots=True)
class EventsSummary:
    last_activity_at: str | None = None
    last_contact_at: str | None = None
    booking_status: str | None = None
    booking_time: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> EventsSummary:
        d = _mapping(data)
        return cls(
            last_activity_at=_text(d.get("last_activity_at")),
            last_contact_at=_text(d.get("last_contact_at")),
            booking_status=_text(d.get("booking_status")),
            booking_time=_text(d.get("booking_time")),
        )

    def to_dict(self) -> dict[str, Any]:
        return _prune({
            "last_activity_at": self.last_activity_at,
            "last_contact_at": self.last_contact_at,
            "booking_status": self.booking_status,
            "booking_time": self.booking_time,
        })


@dataclass(slots=True)
class NextBestAction:
    label: str = ""
    due_hours: float = DEFAULT_DUE_HOURS
    script: list[str] = field(default_factory=list)
    channel: str = "unknown"

    @classmethod
    def from_dict(cls, data: Any) -> NextBestAction:
        d = _mapping(data)
        due = _number(d.get("due_hours"))
        channel = (_text(d.get("channel")) or "unknown").lower()
        return cls(
            label=_text(d.get("label")) or "",
            due_hours=due if due is not None and due >= 0 else DEFAULT_DUE_HOURS,
            script=_text_list(d.get("script")),
            channel=channel if channel in CHANNELS else "unknown",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "due_hours": self.due_hours,
            "script": list(self.script),
            "channel": self.channel,
        }


@dataclass(slots=True)
class Changelog:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> Changelog:
        d = _mapping(data)
        return cls(
            added=_text_list(d.get("added")),
            updated=_text_list(d.get("updated")),
            removed=_text_list(d.get("removed")),
            conflicts=_text_list(d.get("conflicts")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "added": list(self.added),
            "updated": list(self.updated),
            "removed": list(self.removed),
            "conflicts": list(self.conflicts),
        }


@dataclass(slots=True)
class Sources:
    notes_used_count: int = 0
    timeline_used_count: int = 0
    last_note_at: str | None = None

    @classmethod
    def from_dict(cls, data: Any) -> Sources:
        d = _mapping(data)
        return cls(
            notes_used_count=_int(d.get("notes_used_count")),
            timeline_used_count=_int(d.get("timeline_used_count")),
            last_note_at=_text(d.get("last_note_at")),
        )

    def to_dict(self) -> dict[str, Any]:
        return _prune({
            "notes_used_count": self.notes_used_count,
            "timeline_used_count": self.timeline_used_count,
            "last_note_at": self.last_note_at,
        })


@dataclass(slots=True)
class FirewallSnapshot:
    """The batch firewall report as stored on the record (masked values only)."""
    redaction_counts: dict[str, int] = field(default_factory=dict)
    redaction_samples_masked: dict[str, list[str]] = field(default_factory=dict)
    injection_detected: bool = False
    injection_signals: list[dict[str, str]] = field(default_factory=list)
    detected_contacts_masked: dict[str, list[str]] = field(
        default_factory=lambda: {"emails": [], "phones": []}
    )
    applied_at: str | None = None
    run_hash: str | None = None

    @classmethod
    def from_report(
        cls,
        report: FirewallReport,
        *,
        applied_at: str | None = None,
        run_hash: str | None = None,
    ) -> FirewallSnapshot:
        data = report.to_dict()
        return cls(
            redaction_counts=data["counts"],
            redaction_samples_masked=data["samples_masked"],
            injection_detected=data["injection_detected"],
            # offsets point into raw notes; not useful once stored
            injection_signals=[
                {"pattern": s["pattern"], "match": s["match"]} for s in data["injection_signals"]
            ],
            detected_contacts_masked=data["masked_contacts"],
            applied_at=applied_at or utc_now_iso(),
            run_hash=run_hash,
        )

    @classmethod
    def from_dict(cls, data: Any) -> FirewallSnapshot:
        d = _mapping(data)
        contacts = _mapping(d.get("detected_contacts_masked"))
        return cls(
            redaction_counts={str(k): _int(v) for k, v in _mapping(d.get("redaction_counts")).items()},
            redaction_samples_masked={
                str(k): _text_list(v) for k, v in _mapping(d.get("redaction_samples_masked")).items()
            },
            injection_detected=bool(d.get("injection_detected")),
            injection_signals=[
                {"pattern": str(s.get("pattern", "")), "match": str(s.get("match", ""))}
                for s in d.get("injection_signals") or []
                if isinstance(s, Mapping)
            ],
            detected_contacts_masked={
                "emails": _text_list(contacts.get("emails")),
                "phones": _text_list(contacts.get("phones")),
            },
            applied_at=_text(d.get("applied_at")),
            run_hash=_text(d.get("run_hash")),
        )

    def to_dict(self) -> dict[str, Any]:
        return _prune({
            "redaction_counts": dict(self.redaction_counts),
            "redaction_samples_masked": {k: list(v) for k, v in self.redaction_samples_masked.items()},
            "injection_detected": self.injection_detected,
            "injection_signals": [dict(s) for s in self.injection_signals],
            "detected_contacts_masked": {k: list(v) for k, v in self.detected_contacts_masked.items()},
            "applied_at": self.applied_at,
            "run_hash": self.run_hash,
        })


# ── The record ──────────────────────────────────────────────────────

@dataclass(slots=True)
class CanonicalRecord:
    lead_id: str
    updated_at: str
    version: str = SCHEMA_VERSION
    revision: int = 1
    facts: Facts = field(default_factory=Facts)
    events_summary: EventsSummary = field(default_factory=EventsSummary)
    next_best_action: NextBestAction = field(default_factory=NextBestAction)
    missing_fields: list[str] = field(default_factory=list)
    open_questions: list[str] = field(default_factory=list)
    risk_score: float | None = None
    confidence: float | None = None
    changelog: Changelog = field(default_factory=Changelog)
    sources: Sources = field(default_factory=Sources)
    review_required: bool = False
    review_reasons: list[str] = field(default_factory=list)
    firewall: FirewallSnapshot | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CanonicalRecord:
        """Build a record from its wire form, upgrading v1.0 records."""
        if is_legacy(data):
            data = upgrade_legacy(data)
        security = _mapping(data.get("security"))
        return cls(
            version=_text(data.get("version")) or SCHEMA_VERSION,
            lead_id=_text(data.get("lead_id")) or "",
            updated_at=_text(data.get("updated_at")) or "",
            revision=max(_int(data.get("revision")), 1),
            facts=Facts.from_dict(data.get("facts")),
            events_summary=EventsSummary.from_dict(data.get("events_summary")),
            next_best_action=NextBestAction.from_dict(data.get("next_best_action")),
            missing_fields=coerce_missing_fields(data.get("missing_fields")),
            open_questions=_text_list(data.get("open_questions")),
            risk_score=_score(data.get("risk_score")),
            confidence=_score(data.get("confidence")),
            changelog=Changelog.from_dict(data.get("changelog")),
            sources=Sources.from_dict(data.get("sources")),
            review_required=data.get("review_required") is True,
            review_reasons=_text_list(data.get("review_reasons")),
            firewall=FirewallSnapshot.from_dict(security["firewall"]) if "firewall" in security else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "version": self.version,
            "lead_id": self.lead_id,
            "updated_at": self.updated_at,
            "revision": self.revision,
            "facts": self.facts.to_dict(),
            "events_summary": self.events_summary.to_dict(),
            "next_best_action": self.next_best_action.to_dict(),
            "missing_fields": list(self.missing_fields),
            "open_questions": list(self.open_questions),
            "risk_score": self.risk_score,
            "confidence": self.confidence,
            "changelog": self.changelog.to_dict(),
            "sources": self.sources.to_dict(),
            "review_required": self.review_required,
            "review_reasons": list(self.review_reasons),
        }
        if self.firewall is not None:
            out["security"] = {"firewall": self.firewall.to_dict()}
        return out


def coerce_missing_fields(value: Any) -> list[str]:
    out: list[str] = []
    for item in _text_list(value):
        item = item.lower()
        if item in MISSING_FIELDS and item not in out:
            out.append(item)
    return out


# ── Legacy v1.0 records ─────────────────────────────────────────────

def is_legacy(data: Mapping[str, Any]) -> bool:
    """True when ``data`` has the v1.0 shape, whatever its ``version`` says."""
    if isinstance(data.get("facts"), Mapping):
        return False
    return any(key in data for key in ("summary_1line", "constraints", "evidence"))


def upgrade_legacy(data: Mapping[str, Any], lead_id: str | None = None) -> dict[str, Any]:
    """Reshape a v1.0 record into the v1.1 wire form."""
    constraints = _mapping(data.get("constraints"))
    evidence = _mapping(data.get("evidence"))
    nba = _mapping(data.get("next_best_action"))
    return {
        "version": SCHEMA_VERSION,
        "lead_id": lead_id or _text(data.get("leadId")) or _text(data.get("lead_id")) or "",
        "updated_at": _text(data.get("updated_at")) or "",
        "facts": {
            "treatment_interest": data.get("treatment_interest") or [],
            "budget": constraints.get("budget_eur"),
            "time_window": constraints.get("timeline"),
            "objections": data.get("objections") or [],
            "preferences": [],
        },
        "events_summary": {
            "last_activity_at": evidence.get("last_activity_at"),
            "booking_status": "booked" if data.get("status") == "booked" else None,
        },
        "next_best_action": {
            "label": nba.get("label"),
            "due_hours": nba.get("due_hours"),
            "script": nba.get("script") or [],
            "channel": "unknown",
        },
        "missing_fields": data.get("missing_fields") or [],
        "open_questions": [],
        "risk_score": data.get("risk_score"),
        "confidence": data.get("confidence"),
        "changelog": {},
        "sources": {"notes_used_count": evidence.get("notes_used_count") or 0, "timeline_used_count": 0},
        "review_required": False,
        "review_reasons": [],
    }


# ── Canonical notes ─────────────────────────────────────────────────

def is_canonical_note(content: Any) -> bool:
    return isinstance(content, str) and content.lstrip().startswith(CANONICAL_NOTE_TAG)


def render_canonical_note(record: CanonicalRecord) -> str:
    body = json.dumps(record.to_dict(), indent=2, ensure_ascii=False)
    return f"{CANONICAL_NOTE_TAG} v{record.version}]\n{body}"


def parse_canonical_note(content: str) -> CanonicalRecord | None:
    """Parse a stored canonical note; ``None`` if it isn't one or is corrupt."""
    if not is_canonical_note(content):
        return None
    start = content.find("{")
    if start == -1:
        return None
    try:
        data = json.loads(content[start:])
    except json.JSONDecodeError as e:
        logger.warning("unreadable canonical note: %s", e)
        return None
    if not isinstance(data, dict):
        return None
    record = CanonicalRecord.from_dict(data)
    return record if record.lead_id else None


def find_latest_canonical(
    notes: Iterable[Mapping[str, Any]],
    *,
    text_key: str = "text",
    time_key: str = "created_at",
) -> CanonicalRecord | None:
    """Latest (by ``created_at``) canonical note among a lead's notes."""
    candidates = [
        n for n in notes
        if is_canonical_note(n.get(text_key) if n.get(text_key) is not None else n.get("note"))
    ]
    if not candidates:
        return None
    latest = max(candidates, key=lambda n: parse_timestamp(n.get(time_key)) or _UTC_MIN)
    content = latest.get(text_key) if latest.get(text_key) is not None else latest.get("note")
    return parse_canonical_note(content)
