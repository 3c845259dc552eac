"""Error taxonomy.

Only canonicalization fails loudly.  Sanitization never raises, and the
non-failure outcomes (ground-truth conflict, low confidence, ...) surface
as ``ReviewReason`` entries on the record instead.
"""

from __future__ import annotations
from enum import Enum
from typing import Iterable


class LeadFirewallError(Exception):
    """Base class for every error raised by this package."""


class NormalizationError(LeadFirewallError):
    """Model output could not be turned into a canonical record.

    Nothing is persisted; the previous record stays authoritative.
    """


class MalformedModelOutput(NormalizationError):
    """No ``{...}`` span in the model output, or it is not a JSON object."""


class IncompleteModelOutput(NormalizationError):
    """Valid JSON that lacks required top-level sections."""

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing = tuple(missing)
        super().__init__("model output is missing: " + ", ".join(self.missing))


class LeadMismatch(LeadFirewallError, ValueError):
    """A previous record passed to the merge belongs to a different lead."""

    def __init__(self, expected: str, found: str) -> None:
        self.expected = expected
        self.found = found
        super().__init__(f"previous record belongs to lead {found}, not {expected}")


class StaleRevision(LeadFirewallError):
    """The store already holds this revision of the record or a newer one."""

    def __init__(self, lead_id: str, stored: int, attempted: int) -> None:
        self.lead_id = lead_id
        self.stored = stored
        self.attempted = attempted
        super().__init__(f"lead {lead_id} already has revision {stored}; refusing {attempted}")


class CooldownActive(LeadFirewallError):
    """A normalization for the same lead and user ran too recently."""

    def __init__(self, key: str, retry_after: float) -> None:
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"cooldown active for {key}; retry in {retry_after:.0f}s")


class ReviewReason(str, Enum):
    """Why a record was routed to a human reviewer."""
    LOW_CONFIDENCE = "Low confidence"
    GROUND_TRUTH_CONFLICT = "Ground-truth conflict"
    INSUFFICIENT_INFO = "Insufficient info for script"
    INJECTION_DETECTED = "Prompt-injection signals detected"
    CONTACT_DATA_IN_NOTES = "Potential contact data detected in notes"
