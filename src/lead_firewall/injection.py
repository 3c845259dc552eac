"""Prompt-injection signature scan.

Runs over the raw, unredacted text.  Matching is deliberately loose: a
false positive only routes the record to a human reviewer.
"""

from __future__ import annotations
import re

from .types import MAX_INJECTION_SIGNALS, InjectionSignal

# (pattern id, regex), scanned in this order
SIGNATURES: list[tuple[str, re.Pattern]] = [
    # Role override
    ("ignore previous instructions", re.compile(
        r"ignore\s+(?:all\s+)?(?:the\s+)?(?:previous|prior|above)\s+instructions", re.IGNORECASE)),
    ("disregard above", re.compile(r"disregard\s+(?:all\s+)?(?:the\s+)?(?:above|previous|prior)", re.IGNORECASE)),
    ("new instructions", re.compile(r"new\s+instructions", re.IGNORECASE)),
    ("override", re.compile(r"\boverride\b", re.IGNORECASE)),
    # Persona hijack
    ("you are chatgpt", re.compile(
        r"you\s+are\s+(?:now\s+)?(?:chatgpt|gpt(?:-?\d\w*)?|claude|gemini|llama|assistant)\b", re.IGNORECASE)),
    ("do anything now", re.compile(r"do\s+anything\s+now", re.IGNORECASE)),
    ("DAN", re.compile(r"\bDAN\b", re.IGNORECASE)),
    ("jailbreak", re.compile(r"\bjail\s*break", re.IGNORECASE)),
    ("developer mode", re.compile(r"developer\s+mode", re.IGNORECASE)),
    # Structural framing
    ("system prompt", re.compile(r"system\s+prompt", re.IGNORECASE)),
    ("developer message", re.compile(r"developer\s+message", re.IGNORECASE)),
    ("### SYSTEM", re.compile(r"###\s*SYSTEM", re.IGNORECASE)),
    ("BEGIN SYSTEM", re.compile(r"BEGIN\s+SYSTEM", re.IGNORECASE)),
    ("role: system", re.compile(r"role\s*:\s*system", re.IGNORECASE)),
    ("role: developer", re.compile(r"role\s*:\s*developer", re.IGNORECASE)),
    # Tool / function-call framing
    ("function call", re.compile(r"function[\s_]+call", re.IGNORECASE)),
    ("tool call", re.compile(r"tool[\s_]+call", re.IGNORECASE)),
    ("tool", re.compile(r"\btool\b", re.IGNORECASE)),
]


def detect_injection(text: str) -> list[InjectionSignal]:
    """Return up to 8 signals, de-duplicated by (pattern, matched text)."""
    if not isinstance(text, str) or not text:
        return []
    signals: list[InjectionSignal] = []
    seen: set[tuple[str, str]] = set()
    for pattern, regex in SIGNATURES:
        for m in regex.finditer(text):
            key = (pattern, m.group())
            if key in seen:
                continue
            seen.add(key)
            signals.append(InjectionSignal(pattern=pattern, match=m.group(), offset=m.start()))
            if len(signals) >= MAX_INJECTION_SIGNALS:
                return signals
    return signals
