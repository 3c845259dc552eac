"""Redactor — masks sensitive spans with fixed placeholders.

Usage:
    from lead_firewall import Redactor

    redactor = Redactor()            # reusable, stateless after init

    result = redactor.redact("Email me at john@acme.com")
    print(result.text)               # "Email me at [REDACTED_EMAIL]"
    print(result.report.counts)      # {RedactionKind.EMAIL: 1, ...}
    print(result.report.samples_masked)  # {RedactionKind.EMAIL: ["j***n@acme.com"]}

Unlike a reversible tokenizer there is no vault: the placeholders carry no
identity, so nothing the model sees can be mapped back to a patient.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field

from .patterns import (
    DEFAULT_PASSPORT_KEYWORDS,
    DEFAULT_PASSPORT_WINDOW,
    DEFAULT_PHONE_TAIL,
    PLACEHOLDERS,
    placeholder_spans,
    scan_regex,
)
from .types import FirewallReport, RedactionKind, RedactionMatch

logger = logging.getLogger(__name__)


@dataclass
class RedactorConfig:
    """Configuration for the Redactor."""
    use_presidio: bool = False        # enable Layer 2 (Presidio recognizers)
    language: str = "en"
    score_threshold: float = 0.35     # minimum confidence for Presidio
    phone_tail: int = DEFAULT_PHONE_TAIL        # digits left visible in phone samples
    passport_keywords: tuple[str, ...] = DEFAULT_PASSPORT_KEYWORDS
    passport_window: int = DEFAULT_PASSPORT_WINDOW  # max chars between keyword and token
    # Kinds to never redact
    skip_kinds: set[RedactionKind] = field(default_factory=set)
    # Allow-list: exact values that should NEVER be redacted (e.g. the clinic's own number)
    allow_list: set[str] = field(default_factory=set)


@dataclass(slots=True)
class RedactionResult:
    """Result of redacting one text.

    ``matches`` holds raw values and must not be logged or persisted;
    ``report`` is the audit-safe view.  Offsets are relative to the text
    of the pass that found them.
    """
    text: str
    report: FirewallReport = field(default_factory=FirewallReport)
    matches: list[RedactionMatch] = field(default_factory=list)


class Redactor:
    """Ordered-rule PII redactor.

    Layer 1: regex rules in precedence order (email, phone, IBAN, national
             ID, credit card, passport-like)
    Layer 2: Presidio recognizers mapped onto the same kinds (optional)

    Passes repeat until nothing new is found, so redacting already
    redacted text is a no-op.
    """

    def __init__(self, config: RedactorConfig | None = None) -> None:
        self.config = config or RedactorConfig()

    def redact(self, text: str) -> RedactionResult:
        """Redact sensitive spans from text.

        Never raises on degenerate input: anything that is not a string is
        treated as empty.
        """
        if not isinstance(text, str):
            text = ""
        result = RedactionResult(text=text)
        while True:
            found = self._scan(result.text)
            if not found:
                break
            for match in found:
                result.report.record(match)
            result.matches.extend(found)
            result.text = _apply(result.text, found)

        if result.matches:
            logger.debug(
                "redacted %d span(s): %s",
                len(result.matches),
                {k.value: n for k, n in result.report.counts.items() if n},
            )
        return result

    def _scan(self, text: str) -> list[RedactionMatch]:
        cfg = self.config
        matches = scan_regex(
            text,
            skip_kinds=cfg.skip_kinds,
            allow_list=cfg.allow_list,
            phone_tail=cfg.phone_tail,
            passport_keywords=cfg.passport_keywords,
            passport_window=cfg.passport_window,
        )

        if cfg.use_presidio and text:
            from .presidio_layer import scan_presidio
            claimed = placeholder_spans(text) + [(m.start, m.end) for m in matches]
            extra = [
                m for m in scan_presidio(
                    text,
                    language=cfg.language,
                    score_threshold=cfg.score_threshold,
                    exclude_spans=claimed,
                    phone_tail=cfg.phone_tail,
                )
                if m.kind not in cfg.skip_kinds and m.text not in cfg.allow_list
            ]
            matches = sorted(matches + extra, key=lambda m: m.start)

        return matches


def _apply(text: str, matches: list[RedactionMatch]) -> str:
    """Replace matches right-to-left to preserve offsets."""
    result = text
    for match in sorted(matches, key=lambda m: m.start, reverse=True):
        result = result[:match.start] + PLACEHOLDERS[match.kind] + result[match.end:]
    return result
