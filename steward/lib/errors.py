"""
Error kinds for steward.

Every failure surfaced to a caller carries a machine-readable kind, the
affected identifier and a human-readable message.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass
class StewardError(Exception):
    """Base class for all surfaced failures."""
    identifier: str
    message: str
    details: Optional[dict] = None

    kind = "error"
    retryable = False

    def __str__(self):
        return f"[{self.kind}] {self.identifier}: {self.message}"

    def to_dict(self) -> dict:
        data = {"error": self.kind, "id": self.identifier, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


@dataclass
class PlatformUnavailable(StewardError):
    """External API unreachable, rate-limited or timed out."""
    kind = "PlatformUnavailable"
    retryable = True


@dataclass
class NotFound(StewardError):
    """Referenced topic or request does not exist."""
    kind = "NotFound"


@dataclass
class ConcurrentModification(StewardError):
    """Another operation holds the topic or request."""
    kind = "ConcurrentModification"


@dataclass
class ValidationError(StewardError):
    """Malformed input or data that fails a schema."""
    kind = "ValidationError"


@dataclass
class InvalidTransition(StewardError):
    """A request was asked to move somewhere its state does not allow."""
    kind = "InvalidTransition"


@dataclass
class PolicyDenied(StewardError):
    """Terminal for the action; a new proposal is required."""
    violations: list = field(default_factory=list)

    kind = "PolicyDenied"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["violations"] = [
            {"rule": v.rule_id, "reason": v.reason} for v in self.violations
        ]
        return data
