"""Privacy-safe audit event for a normalization run.

Only ids, counts, flags, reason labels and a prompt fingerprint — never
note text, contact values or masked samples.  Emitted on the
``lead_firewall.audit`` logger; route that logger wherever audit trails go.
"""

from __future__ import annotations
import logging
from typing import Any

from .canonical import CanonicalRecord
from .types import FirewallReport

audit_logger = logging.getLogger("lead_firewall.audit")


def build_audit_event(
    record: CanonicalRecord,
    report: FirewallReport | None,
    *,
    run_hash: str | None = None,
) -> dict[str, Any]:
    event: dict[str, Any] = {
        "type": "normalize_run",
        "lead_id": record.lead_id,
        "revision": record.revision,
        "run_hash_short": run_hash,
        "review_required": record.review_required,
        "review_reasons": list(record.review_reasons),
        "conflicts_count": len(record.changelog.conflicts),
        "notes_used": record.sources.notes_used_count,
        "timeline_used": record.sources.timeline_used_count,
        "at": record.updated_at,
    }
    if record.risk_score is not None:
        event["score_risk"] = record.risk_score
    if record.confidence is not None:
        event["score_confidence"] = record.confidence
    if report is not None:
        event["firewall_injection_detected"] = report.injection_detected
        event["firewall_redaction_counts"] = {k.value: n for k, n in report.counts.items()}
    return event


def emit_audit(event: dict[str, Any]) -> None:
    audit_logger.info("ai audit %s lead=%s", event["type"], event["lead_id"], extra={"audit": event})
