"""Layer 2 — optional Presidio recognizers for the same six kinds.

Presidio ships recognizers for formats our regexes only approximate
(international phone numbers, non-TR IBANs, US passports).  Its results
are mapped onto ``RedactionKind``; entity types with no counterpart are
ignored so the report vocabulary never grows.
"""

from __future__ import annotations
from typing import TYPE_CHECKING

from .patterns import PLACEHOLDERS, digits_only, mask_email, mask_phone, overlaps
from .types import RedactionKind, RedactionMatch

if TYPE_CHECKING:
    from presidio_analyzer import AnalyzerEngine

# Lazy singleton: don't load spaCy until first use
_engine: AnalyzerEngine | None = None
_engine_lang: str = ""


def _get_engine(language: str = "en") -> AnalyzerEngine:
    """Lazy-init the Presidio analyzer engine."""
    global _engine, _engine_lang
    if _engine is None or _engine_lang != language:
        from presidio_analyzer import AnalyzerEngine
        from presidio_analyzer.nlp_engine import NlpEngineProvider

        provider = NlpEngineProvider(nlp_configuration={
            "nlp_engine_name": "spacy",
            "models": [{"lang_code": language, "model_name": f"{language}_core_web_sm"}],
        })
        nlp_engine = provider.create_engine()
        _engine = AnalyzerEngine(nlp_engine=nlp_engine, supported_languages=[language])
        _engine_lang = language
    return _engine


ENTITY_KINDS: dict[str, RedactionKind] = {
    "EMAIL_ADDRESS": RedactionKind.EMAIL,
    "PHONE_NUMBER": RedactionKind.PHONE,
    "IBAN_CODE": RedactionKind.IBAN,
    "CREDIT_CARD": RedactionKind.CREDIT_CARD,
    "US_PASSPORT": RedactionKind.PASSPORT_LIKE,
}


def _mask(kind: RedactionKind, value: str, phone_tail: int) -> str:
    if kind is RedactionKind.EMAIL:
        return mask_email(value)
    if kind is RedactionKind.PHONE:
        return mask_phone(value, phone_tail)
    tail = digits_only(value)[-4:] if kind is RedactionKind.CREDIT_CARD else value.replace(" ", "")[-4:]
    if not tail:
        return PLACEHOLDERS[kind]
    prefix = "****" if kind is RedactionKind.CREDIT_CARD else "***"
    if kind is RedactionKind.IBAN:
        prefix = value[:2].upper() + "**"
    return prefix + tail


def scan_presidio(
    text: str,
    *,
    language: str = "en",
    score_threshold: float = 0.35,
    exclude_spans: list[tuple[int, int]] | None = None,
    phone_tail: int = 4,
) -> list[RedactionMatch]:
    """Run Presidio analysis on text.

    Args:
        text: Input text to scan.
        language: ISO language code.
        score_threshold: Minimum confidence score.
        exclude_spans: Spans already claimed by the regex layer or placeholders.
        phone_tail: Digits kept visible in masked phone samples.
    """
    engine = _get_engine(language)
    results = engine.analyze(
        text=text,
        language=language,
        entities=list(ENTITY_KINDS),
        score_threshold=score_threshold,
    )

    exclude = list(exclude_spans or [])
    matches: list[RedactionMatch] = []
    # Highest score first so overlapping Presidio results resolve deterministically
    for r in sorted(results, key=lambda r: (-r.score, r.start)):
        kind = ENTITY_KINDS.get(r.entity_type)
        if kind is None or overlaps(r.start, r.end, exclude):
            continue
        value = text[r.start:r.end]
        matches.append(RedactionMatch(
            kind=kind,
            start=r.start,
            end=r.end,
            text=value,
            masked=_mask(kind, value, phone_tail),
            source="presidio",
        ))
        exclude.append((r.start, r.end))

    return sorted(matches, key=lambda m: m.start)
