"""YAML/dict config loader for lead-firewall.

Supports loading from a YAML file or a plain dict (for embedding in a
larger service config).

Example YAML:

    lead_firewall:
      redaction:
        use_presidio: false
        language: en
        score_threshold: 0.35
        phone_tail_digits: 4
        passport_keywords: [passport, pasaport, passeport]
        passport_window: 40
        skip_kinds: []
        allow_list:
          - info@clinic.example
      review:
        confidence_threshold: 55
        insufficient_missing_fields: 3
      normalizer:
        cooldown_seconds: 60
        max_notes: 10
      store:
        backend: sqlite          # "memory" or "sqlite"
        path: ~/.lead-firewall/records.db
"""

from __future__ import annotations
from pathlib import Path
from typing import Any

import yaml

from .merge import MergePolicy
from .normalizer import LeadNormalizer, LLMCall
from .patterns import DEFAULT_PASSPORT_KEYWORDS, DEFAULT_PASSPORT_WINDOW, DEFAULT_PHONE_TAIL
from .redactor import Redactor, RedactorConfig
from .store import CanonicalStore
from .store_sqlite import SqliteCanonicalStore
from .types import RedactionKind


def load_config(data: dict[str, Any] | None) -> dict[str, Any]:
    """Normalize a config dict (from YAML or inline)."""
    data = data or {}
    # Support nested under "lead_firewall" key or flat
    if "lead_firewall" in data:
        data = data["lead_firewall"] or {}

    redaction = data.get("redaction") or {}
    review = data.get("review") or {}
    normalizer = data.get("normalizer") or {}
    store = data.get("store") or {}

    return {
        "use_presidio": bool(redaction.get("use_presidio", False)),
        "language": redaction.get("language", "en"),
        "score_threshold": float(redaction.get("score_threshold", 0.35)),
        "phone_tail": int(redaction.get("phone_tail_digits", DEFAULT_PHONE_TAIL)),
        "passport_keywords": tuple(redaction.get("passport_keywords") or DEFAULT_PASSPORT_KEYWORDS),
        "passport_window": int(redaction.get("passport_window", DEFAULT_PASSPORT_WINDOW)),
        # Unknown kind names raise ValueError here rather than being ignored
        "skip_kinds": {RedactionKind(k) for k in redaction.get("skip_kinds") or []},
        "allow_list": set(redaction.get("allow_list") or []),
        "confidence_threshold": float(review.get("confidence_threshold", 55)),
        "insufficient_missing_fields": int(review.get("insufficient_missing_fields", 3)),
        "cooldown_seconds": float(normalizer.get("cooldown_seconds", 0)),
        "max_notes": int(normalizer.get("max_notes", 10)),
        "store_backend": store.get("backend", "memory"),
        "store_path": store.get("path", "records.db"),
    }


def load_from_yaml(path: str | Path) -> dict[str, Any]:
    """Load config from a YAML file."""
    with open(path) as f:
        return load_config(yaml.safe_load(f))


def build_redactor_config(cfg: dict[str, Any]) -> RedactorConfig:
    return RedactorConfig(
        use_presidio=cfg["use_presidio"],
        language=cfg["language"],
        score_threshold=cfg["score_threshold"],
        phone_tail=cfg["phone_tail"],
        passport_keywords=cfg["passport_keywords"],
        passport_window=cfg["passport_window"],
        skip_kinds=set(cfg["skip_kinds"]),
        allow_list=set(cfg["allow_list"]),
    )


def build_policy(cfg: dict[str, Any]) -> MergePolicy:
    return MergePolicy(
        review_confidence_threshold=cfg["confidence_threshold"],
        insufficient_missing_fields=cfg["insufficient_missing_fields"],
    )


def build_store(cfg: dict[str, Any]) -> CanonicalStore | SqliteCanonicalStore:
    if cfg["store_backend"] == "sqlite":
        return SqliteCanonicalStore(db_path=cfg["store_path"])
    if cfg["store_backend"] != "memory":
        raise ValueError(f"unknown store backend: {cfg['store_backend']!r}")
    return CanonicalStore()


def create_normalizer(config: dict[str, Any], llm: LLMCall) -> LeadNormalizer:
    """Create a fully configured normalizer from a config dict."""
    cfg = load_config(config) if "use_presidio" not in config else config

    return LeadNormalizer(
        redactor=Redactor(build_redactor_config(cfg)),
        llm=llm,
        store=build_store(cfg),
        policy=build_policy(cfg),
        cooldown_seconds=cfg["cooldown_seconds"],
        max_notes=cfg["max_notes"],
    )
