"""Data firewall — what the orchestrator calls before anything reaches a model.

Usage:
    from lead_firewall import sanitize_notes, wrap_untrusted

    fragments, report = sanitize_notes(notes)
    block = wrap_untrusted("notes", "\\n".join(f.sanitized_text for f in fragments))

Order inside ``sanitize_for_model`` is fixed: injection detection on the
raw text first, redaction second.  Redacting first would let placeholders
split injection phrases apart.
"""

from __future__ import annotations
import logging
import re
from typing import Any, Iterable, Mapping

from .injection import detect_injection
from .redactor import Redactor
from .types import FirewallReport, SanitizedEvent, SanitizedFragment

logger = logging.getLogger(__name__)

_default_redactor: Redactor | None = None

_LABEL_UNSAFE = re.compile(r"[^A-Z0-9_]+")
_MARKER = re.compile(r"<<<\s*(/?\s*UNTRUSTED_[^<>]*?)\s*>>>", re.IGNORECASE)


def _get_redactor(redactor: Redactor | None) -> Redactor:
    global _default_redactor
    if redactor is not None:
        return redactor
    if _default_redactor is None:
        _default_redactor = Redactor()
    return _default_redactor


def redact(text: str, *, redactor: Redactor | None = None) -> tuple[str, FirewallReport]:
    """Redaction only — no injection scan."""
    result = _get_redactor(redactor).redact(text)
    return result.text, result.report


def sanitize_for_model(text: str, *, redactor: Redactor | None = None) -> tuple[str, FirewallReport]:
    """Detect injection on raw text, then redact. Never raises."""
    signals = detect_injection(text)
    result = _get_redactor(redactor).redact(text)
    report = result.report
    for signal in signals:
        report.add_signal(signal)
    return result.text, report


def wrap_untrusted(label: str, content: str) -> str:
    """Fence a sanitized block so the prompt template knows where it ends.

    Marker look-alikes inside the content are defanged so a note can't
    close its own block early.
    """
    tag = _LABEL_UNSAFE.sub("_", str(label or "").upper()).strip("_") or "CONTENT"
    body = _MARKER.sub(r"[[\1]]", content if isinstance(content, str) else "")
    return f"<<<UNTRUSTED_{tag}_BEGIN>>>\n{body}\n<<<UNTRUSTED_{tag}_END>>>"


def sanitize_notes(
    notes: Iterable[Mapping[str, Any]],
    *,
    text_key: str = "text",
    time_key: str = "created_at",
    redactor: Redactor | None = None,
) -> tuple[list[SanitizedFragment], FirewallReport]:
    """Sanitize notes in the given order and aggregate one bounded report.

    Each note is a mapping with ``id`` (optional), the text under
    ``text_key`` (falls back to ``note``) and a timestamp under ``time_key``.
    """
    aggregate = FirewallReport()
    fragments: list[SanitizedFragment] = []
    for note in notes:
        raw = note.get(text_key)
        if raw is None:
            raw = note.get("note")
        sanitized, report = sanitize_for_model(raw, redactor=redactor)
        aggregate.absorb(report)
        note_id = note.get("id")
        fragments.append(SanitizedFragment(
            timestamp=_as_str(note.get(time_key)),
            sanitized_text=sanitized,
            id=None if note_id is None else str(note_id),
        ))

    _log_aggregate("notes", len(fragments), aggregate)
    return fragments, aggregate


# Accepted spellings for timeline fields; the first one present wins
_EVENT_TYPE_KEYS = ("event_type", "eventType")
_EVENT_TIME_KEYS = ("received_at", "receivedAt", "created_at")
_EVENT_TITLE_KEYS = ("title",)
_EVENT_NOTES_KEYS = ("additional_notes", "additionalNotes", "notes")


def sanitize_timeline(
    events: Iterable[Mapping[str, Any]],
    *,
    redactor: Redactor | None = None,
) -> tuple[list[SanitizedEvent], FirewallReport]:
    """Sanitize each event's title and free-text notes independently.

    Every other key of the event is carried over unchanged in
    ``SanitizedEvent.metadata``.
    """
    aggregate = FirewallReport()
    out: list[SanitizedEvent] = []
    consumed = {*_EVENT_TYPE_KEYS, *_EVENT_TIME_KEYS, *_EVENT_TITLE_KEYS, *_EVENT_NOTES_KEYS, "id"}
    for event in events:
        title_key = _first_key(event, _EVENT_TITLE_KEYS)
        notes_key = _first_key(event, _EVENT_NOTES_KEYS)

        sanitized_title = None
        if title_key is not None and event[title_key]:
            sanitized_title, report = sanitize_for_model(event[title_key], redactor=redactor)
            aggregate.absorb(report)

        sanitized_notes = ""
        if notes_key is not None and event[notes_key]:
            sanitized_notes, report = sanitize_for_model(event[notes_key], redactor=redactor)
            aggregate.absorb(report)

        type_key = _first_key(event, _EVENT_TYPE_KEYS)
        time_key = _first_key(event, _EVENT_TIME_KEYS)
        event_id = event.get("id")
        out.append(SanitizedEvent(
            timestamp=_as_str(event[time_key]) if time_key else "",
            sanitized_text=sanitized_notes,
            id=None if event_id is None else str(event_id),
            event_type=_as_str(event[type_key]) if type_key else "",
            sanitized_title=sanitized_title,
            metadata={k: v for k, v in event.items() if k not in consumed},
        ))

    _log_aggregate("timeline", len(out), aggregate)
    return out, aggregate


def _first_key(mapping: Mapping[str, Any], keys: Iterable[str]) -> str | None:
    for key in keys:
        if key in mapping:
            return key
    return None


def _as_str(value: Any) -> str:
    return "" if value is None else str(value)


def _log_aggregate(what: str, n: int, report: FirewallReport) -> None:
    if report.redaction_applied or report.injection_detected:
        logger.info(
            "sanitized %d %s fragment(s): redactions=%s injection_signals=%d",
            n,
            what,
            {k.value: c for k, c in report.counts.items() if c},
            len(report.injection_signals),
        )
