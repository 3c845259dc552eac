"""Canonical merge — reconcile untrusted model output into a trusted record.

The model's JSON is a *proposal*.  This module decides what survives:

* ``version`` and ``lead_id`` are always ours, never the model's.
* phone / email / source come from the lead record; a differing proposal
  is logged in ``changelog.conflicts`` and forces review.
* the changelog is computed here by diffing against the previous record;
  whatever changelog the model wrote is discarded.
* low confidence, conflicts and firewall findings force review no matter
  what the model claimed.

Output that can't be parsed, or lacks required sections, raises — a
half-understood response must never replace a good record.
"""

from __future__ import annotations
import dataclasses
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .canonical import (
    SCHEMA_VERSION,
    CanonicalRecord,
    Changelog,
    EventsSummary,
    Facts,
    FirewallSnapshot,
    LeadFacts,
    Sources,
    is_legacy,
    parse_timestamp,
    upgrade_legacy,
    utc_now_iso,
)
from .errors import IncompleteModelOutput, LeadMismatch, MalformedModelOutput, ReviewReason
from .patterns import PLACEHOLDER_RE, digits_only, mask_email, mask_phone
from .types import FirewallReport

logger = logging.getLogger(__name__)

INITIAL_SNAPSHOT = "Initial AI snapshot created"

# Values the model uses to mean "I don't know"; not a proposal
_NON_VALUES = {"unknown", "n/a", "na", "none", "null", "-", "?"}


@dataclass(frozen=True)
class MergePolicy:
    """Product thresholds for the review gate."""
    review_confidence_threshold: float = 55.0  # confidence on a 0–100 scale
    insufficient_missing_fields: int = 3       # with an empty script → review


# ── Parsing ─────────────────────────────────────────────────────────

def extract_json_span(raw: str) -> dict[str, Any]:
    """Parse the span from the first ``{`` to the last ``}``.

    Models like to wrap JSON in prose or code fences.  Only ``json.loads``
    ever touches the text.
    """
    if not isinstance(raw, str):
        raise MalformedModelOutput("model output is not text")
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise MalformedModelOutput("no JSON object found in model output")
    try:
        data = json.loads(raw[start:end + 1])
    except json.JSONDecodeError as e:
        raise MalformedModelOutput(f"model output is not valid JSON: {e.msg} at line {e.lineno}") from e
    if not isinstance(data, dict):
        raise MalformedModelOutput("model output is not a JSON object")
    return data


def parse_model_output(raw: str | Mapping[str, Any], *, lead_id: str = "") -> dict[str, Any]:
    """Extract, upgrade and structurally validate model output."""
    data = dict(raw) if isinstance(raw, Mapping) else extract_json_span(raw)
    if is_legacy(data):
        # Validate the v1.0 shape itself; the upgrade fills in every section
        missing = []
        if "summary_1line" not in data and "treatment_interest" not in data:
            missing.append("summary_1line/treatment_interest")
        if not isinstance(data.get("next_best_action"), Mapping):
            missing.append("next_best_action")
        if "risk_score" not in data and "confidence" not in data:
            missing.append("risk_score/confidence")
        if missing:
            raise IncompleteModelOutput(missing)
        return upgrade_legacy(data, lead_id=lead_id)

    missing = []
    if not isinstance(data.get("facts"), Mapping):
        missing.append("facts")
    if not isinstance(data.get("next_best_action"), Mapping):
        missing.append("next_best_action")
    if "risk_score" not in data and "confidence" not in data:
        missing.append("risk_score/confidence")
    if missing:
        raise IncompleteModelOutput(missing)
    return data


# ── Ground truth ────────────────────────────────────────────────────

def _proposal(value: str | None) -> str | None:
    if value is None or value.strip().lower() in _NON_VALUES or PLACEHOLDER_RE.search(value):
        return None
    return value


def _same_phone(a: str, b: str) -> bool:
    # Local and international spellings of one number share their last 10 digits
    da, db = digits_only(a), digits_only(b)
    if len(da) >= 10 and len(db) >= 10:
        return da[-10:] == db[-10:]
    return da == db


def _same_email(a: str, b: str) -> bool:
    return a.strip().lower() == b.strip().lower()


def _same_text(a: str, b: str) -> bool:
    return a.strip() == b.strip()


def _no_mask(value: str) -> str:
    return value


_GROUND_TRUTH: list[tuple[str, Callable[[str, str], bool], Callable[[str], str]]] = [
    ("phone", _same_phone, mask_phone),
    ("email", _same_email, mask_email),
    ("source", _same_text, _no_mask),
]


def reconcile_ground_truth(facts: Facts, lead: LeadFacts) -> list[str]:
    """Force phone/email/source to the lead record's values.

    Returns one conflict entry per field where the model proposed
    something else.  Without a value on file the model's proposal is
    dropped: it only ever saw redacted text, so it can't know one.
    """
    conflicts: list[str] = []
    for name, same, mask in _GROUND_TRUTH:
        truth = getattr(lead, name)
        proposed = _proposal(getattr(facts, name))
        if truth is None:
            if proposed is not None:
                logger.debug("dropping model-proposed %s for lead %s: none on file", name, lead.id)
            setattr(facts, name, None)
            continue
        if proposed is not None and not same(proposed, truth):
            conflicts.append(
                f'{name.capitalize()} conflict: AI suggested "{mask(proposed)}" but lead has "{mask(truth)}"'
            )
        setattr(facts, name, truth)
    return conflicts


# ── Changelog ───────────────────────────────────────────────────────

def _tracked(record: CanonicalRecord) -> list[tuple[str, Any]]:
    """Field paths compared between revisions, in a fixed order."""
    out: list[tuple[str, Any]] = []
    for section, cls in (("facts", Facts), ("events_summary", EventsSummary)):
        obj = getattr(record, section)
        for f in dataclasses.fields(cls):
            out.append((f"{section}.{f.name}", getattr(obj, f.name)))
    nba = record.next_best_action
    out += [
        ("next_best_action.label", nba.label),
        ("next_best_action.due_hours", nba.due_hours),
        ("next_best_action.channel", nba.channel),
        ("next_best_action.script", nba.script),
        ("open_questions", record.open_questions),
        ("risk_score", record.risk_score),
        ("confidence", record.confidence),
    ]
    return out


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _fmt(path: str, value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if path == "facts.phone":
        return mask_phone(str(value))
    if path == "facts.email":
        return mask_email(str(value))
    return str(value)


def diff_records(previous: CanonicalRecord, current: CanonicalRecord) -> Changelog:
    """Field-level diff: added / updated / removed, conflicts left empty."""
    log = Changelog()
    before = dict(_tracked(previous))
    for path, after in _tracked(current):
        old = before.get(path)
        if _empty(old) and _empty(after):
            continue
        if _empty(old):
            log.added.append(f"{path} added: {_fmt(path, after)}")
        elif _empty(after):
            log.removed.append(f"{path} removed")
        elif old != after:
            log.updated.append(f"{path} changed: {_fmt(path, old)} → {_fmt(path, after)}")

    prev_missing = set(previous.missing_fields)
    cur_missing = set(current.missing_fields)
    for name in previous.missing_fields:
        if name not in cur_missing:
            log.updated.append(f"Missing field resolved: {name}")
    for name in current.missing_fields:
        if name not in prev_missing:
            log.added.append(f"Missing field identified: {name}")
    return log


# ── Review gate ─────────────────────────────────────────────────────

def forced_review_reasons(
    record: CanonicalRecord,
    lead: LeadFacts,
    *,
    conflicts: list[str],
    firewall: FirewallReport | None,
    policy: MergePolicy,
) -> list[str]:
    reasons: list[ReviewReason] = []
    if record.confidence is not None and record.confidence < policy.review_confidence_threshold:
        reasons.append(ReviewReason.LOW_CONFIDENCE)
    if conflicts:
        reasons.append(ReviewReason.GROUND_TRUTH_CONFLICT)
    if (
        len(record.missing_fields) >= policy.insufficient_missing_fields
        and not record.next_best_action.script
    ):
        reasons.append(ReviewReason.INSUFFICIENT_INFO)
    if firewall is not None:
        if firewall.injection_detected:
            reasons.append(ReviewReason.INJECTION_DETECTED)
        if (firewall.masked_emails and not lead.email) or (firewall.masked_phones and not lead.phone):
            reasons.append(ReviewReason.CONTACT_DATA_IN_NOTES)
    return [r.value for r in reasons]


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


# ── Entry point ─────────────────────────────────────────────────────

def merge_canonical(
    ground_truth: LeadFacts | Mapping[str, Any],
    model_output: str | Mapping[str, Any],
    previous: CanonicalRecord | Mapping[str, Any] | None = None,
    *,
    firewall: FirewallReport | None = None,
    sources: Sources | None = None,
    policy: MergePolicy | None = None,
    run_hash: str | None = None,
    now: str | None = None,
) -> CanonicalRecord:
    """Build the next canonical record for a lead.

    Args:
        ground_truth: The lead's system-of-record values.
        model_output: Raw model text (or an already-decoded object).
        previous: The current canonical record, if any.
        firewall: Aggregate report of the sanitized input the model saw.
        sources: Input counts; replaces whatever the model reported.
        policy: Review thresholds.
        run_hash: Fingerprint of the prompt, stored with the firewall snapshot.
        now: ISO timestamp to use as "now" (defaults to the clock).

    Raises:
        MalformedModelOutput: no parseable JSON object.
        IncompleteModelOutput: required sections missing.
        LeadMismatch: ``previous`` belongs to another lead.
    """
    lead = ground_truth if isinstance(ground_truth, LeadFacts) else LeadFacts.from_dict(ground_truth)
    policy = policy or MergePolicy()
    now = now or utc_now_iso()

    prior = previous
    if isinstance(prior, Mapping):
        prior = CanonicalRecord.from_dict(prior)
    if prior is not None and prior.lead_id and prior.lead_id != lead.id:
        raise LeadMismatch(lead.id, prior.lead_id)

    record = CanonicalRecord.from_dict(parse_model_output(model_output, lead_id=lead.id))
    model_flag = record.review_required
    model_reasons = record.review_reasons

    if record.lead_id and record.lead_id != lead.id:
        logger.warning("model output named lead %s while normalizing %s; overriding", record.lead_id, lead.id)
    record.version = SCHEMA_VERSION
    record.lead_id = lead.id
    stamped = parse_timestamp(record.updated_at)
    prior_stamp = parse_timestamp(prior.updated_at) if prior is not None else None
    now_stamp = parse_timestamp(now)
    if (
        stamped is None
        or (prior_stamp is not None and stamped < prior_stamp)
        or (now_stamp is not None and stamped > now_stamp)
    ):
        record.updated_at = now
    record.revision = prior.revision + 1 if prior is not None else 1

    conflicts = reconcile_ground_truth(record.facts, lead)
    record.changelog = diff_records(prior, record) if prior is not None else Changelog(added=[INITIAL_SNAPSHOT])
    record.changelog.conflicts = conflicts

    if sources is not None:
        record.sources = sources
    # Never trust a firewall snapshot the model wrote itself
    record.firewall = (
        FirewallSnapshot.from_report(firewall, applied_at=now, run_hash=run_hash)
        if firewall is not None else None
    )

    forced = forced_review_reasons(record, lead, conflicts=conflicts, firewall=firewall, policy=policy)
    record.review_required = model_flag or bool(forced)
    record.review_reasons = _dedupe(model_reasons + forced)

    logger.info(
        "merged canonical record lead=%s revision=%d review_required=%s conflicts=%d",
        lead.id, record.revision, record.review_required, len(conflicts),
    )
    return record
