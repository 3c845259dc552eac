"""Lead firewall — sanitize untrusted lead text for an LLM and merge its answer into a canonical record."""

from .redactor import Redactor, RedactorConfig, RedactionResult
from .injection import detect_injection
from .firewall import redact, sanitize_for_model, sanitize_notes, sanitize_timeline, wrap_untrusted
from .canonical import SCHEMA_VERSION, CanonicalRecord, LeadFacts
from .merge import MergePolicy, merge_canonical
from .normalizer import LeadNormalizer
from .store import CanonicalStore
from .store_sqlite import SqliteCanonicalStore
from .config import create_normalizer, load_config, load_from_yaml
from .errors import (
    CooldownActive,
    IncompleteModelOutput,
    LeadFirewallError,
    LeadMismatch,
    MalformedModelOutput,
    NormalizationError,
    ReviewReason,
    StaleRevision,
)
from .types import FirewallReport, InjectionSignal, RedactionKind, SanitizedEvent, SanitizedFragment

__all__ = [
    "Redactor", "RedactorConfig", "RedactionResult",
    "detect_injection",
    "redact", "sanitize_for_model", "sanitize_notes", "sanitize_timeline", "wrap_untrusted",
    "SCHEMA_VERSION", "CanonicalRecord", "LeadFacts",
    "MergePolicy", "merge_canonical",
    "LeadNormalizer",
    "CanonicalStore", "SqliteCanonicalStore",
    "create_normalizer", "load_config", "load_from_yaml",
    "CooldownActive", "IncompleteModelOutput", "LeadFirewallError", "LeadMismatch", "MalformedModelOutput",
    "NormalizationError", "ReviewReason", "StaleRevision",
    "FirewallReport", "InjectionSignal", "RedactionKind", "SanitizedEvent", "SanitizedFragment",
]
__version__ = "0.1.0"
