"""
Data model for steward.

Plain dataclasses with explicit to_dict/from_dict so every persisted record
goes through the JSON Schemas in steward/schemas.
"""

import hashlib
import secrets
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from steward.lib.errors import ValidationError

TOPIC_METADATA_VERSION = 1
BUSINESS_IMPACTS = ("low", "medium", "high")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_ts(value: str | None) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def idempotency_key(subject_id: str, action: str, target: str, salt: str = "") -> str:
    """Deterministic key for one intended mutation (subject + action + target value)."""
    parts = [subject_id, action, target]
    if salt:
        parts.append(salt)
    return hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()


class LedgerAction(Enum):
    RENAME = "rename"
    RE_PIN = "re-pin"
    POLICY_DENY = "policy-deny"
    PROPOSE = "propose"
    REQUEST_APPROVAL = "request-approval"
    APPROVE = "approve"
    DENY = "deny"
    EXPIRE = "expire"
    EXECUTE = "execute"
    CONFIRM = "confirm"
    ROLLBACK = "rollback"
    CREATE = "create"


class Outcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DENIED = "denied"
    SKIPPED = "skipped"


@dataclass
class TopicMetadata:
    """Typed, versioned per-topic extension data."""
    schema_version: int = TOPIC_METADATA_VERSION
    business_impact: str = "low"
    change_request: Optional[str] = None  # Linked RFC / change-request reference
    reply_count: int = 0
    view_count: int = 0
    categorizer_label: Optional[str] = None
    categorizer_confidence: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "business_impact": self.business_impact,
            "change_request": self.change_request,
            "reply_count": self.reply_count,
            "view_count": self.view_count,
            "categorizer_label": self.categorizer_label,
            "categorizer_confidence": self.categorizer_confidence,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "TopicMetadata":
        if not data:
            return cls()
        version = data.get("schema_version", TOPIC_METADATA_VERSION)
        if version != TOPIC_METADATA_VERSION:
            raise ValidationError("metadata", f"Unsupported topic metadata version {version}")
        return cls(**data)


@dataclass
class TopicSnapshot:
    """A topic as the chat platform reports it right now."""
    topic_id: str
    category: str
    title: str
    reply_count: int = 0
    view_count: int = 0


@dataclass
class Topic:
    """Materialized view of one chat topic.

    compliant is derived from raw_title and canonical_name and cannot be set.
    """
    topic_id: str
    category: str
    raw_title: str
    canonical_name: str
    pinned_message_id: Optional[str] = None
    stakeholders: set[str] = field(default_factory=set)
    deadline: Optional[datetime] = None
    dependency_ids: set[str] = field(default_factory=set)
    priority_score: Optional[float] = None
    last_audited_at: Optional[datetime] = None
    last_polished_at: Optional[datetime] = None
    metadata: TopicMetadata = field(default_factory=TopicMetadata)

    @property
    def compliant(self) -> bool:
        return self.raw_title == self.canonical_name

    def to_dict(self) -> dict:
        return {
            "topic_id": self.topic_id,
            "category": self.category,
            "raw_title": self.raw_title,
            "canonical_name": self.canonical_name,
            "compliant": self.compliant,
            "pinned_message_id": self.pinned_message_id,
            "stakeholders": sorted(self.stakeholders),
            "deadline": format_ts(self.deadline) if self.deadline else None,
            "dependency_ids": sorted(self.dependency_ids),
            "priority_score": self.priority_score,
            "last_audited_at": format_ts(self.last_audited_at) if self.last_audited_at else None,
            "last_polished_at": format_ts(self.last_polished_at) if self.last_polished_at else None,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Topic":
        return cls(
            topic_id=data["topic_id"],
            category=data["category"],
            raw_title=data["raw_title"],
            canonical_name=data["canonical_name"],
            pinned_message_id=data.get("pinned_message_id"),
            stakeholders=set(data.get("stakeholders", [])),
            deadline=parse_ts(data.get("deadline")),
            dependency_ids=set(data.get("dependency_ids", [])),
            priority_score=data.get("priority_score"),
            last_audited_at=parse_ts(data.get("last_audited_at")),
            last_polished_at=parse_ts(data.get("last_polished_at")),
            metadata=TopicMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class AuditLedgerEntry:
    """One append-only ledger record."""
    idempotency_key: str
    timestamp: datetime
    actor: str
    action: LedgerAction
    subject_id: str
    outcome: Outcome
    before: Any = None
    after: Any = None
    reason: str = ""
    entry_id: str = field(default_factory=lambda: secrets.token_hex(8))

    def to_dict(self) -> dict:
        return {
            "entry_id": self.entry_id,
            "idempotency_key": self.idempotency_key,
            "timestamp": format_ts(self.timestamp),
            "actor": self.actor,
            "action": self.action.value,
            "subject_id": self.subject_id,
            "outcome": self.outcome.value,
            "before": self.before,
            "after": self.after,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditLedgerEntry":
        return cls(
            entry_id=data["entry_id"],
            idempotency_key=data["idempotency_key"],
            timestamp=parse_ts(data["timestamp"]),
            actor=data["actor"],
            action=LedgerAction(data["action"]),
            subject_id=data["subject_id"],
            outcome=Outcome(data["outcome"]),
            before=data.get("before"),
            after=data.get("after"),
            reason=data.get("reason", ""),
        )


@dataclass
class CapacityMetric:
    category: str
    date: date
    active_count: int
    limit: int

    @property
    def utilization(self) -> float:
        return self.active_count / self.limit

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "date": self.date.isoformat(),
            "active_count": self.active_count,
            "limit": self.limit,
            "utilization": round(self.utilization, 6),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CapacityMetric":
        return cls(
            category=data["category"],
            date=date.fromisoformat(data["date"]),
            active_count=data["active_count"],
            limit=data["limit"],
        )


@dataclass
class RuleViolation:
    rule_id: str
    reason: str

    def to_dict(self) -> dict:
        return {"rule": self.rule_id, "reason": self.reason}


@dataclass
class PolicyDecision:
    """Outcome of one policy evaluation. Never persisted on its own."""
    allowed: bool
    violated_rules: list[RuleViolation] = field(default_factory=list)
    allowed_by: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "violated_rules": [v.to_dict() for v in self.violated_rules],
            "allowed_by": list(self.allowed_by),
        }


class RequestState(Enum):
    PROPOSED = "proposed"
    POLICY_CHECKED = "policy_checked"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    EXECUTING = "executing"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    DENIED = "denied"
    EXPIRED = "expired"


TERMINAL_STATES = frozenset({
    RequestState.CONFIRMED,
    RequestState.ROLLED_BACK,
    RequestState.DENIED,
    RequestState.EXPIRED,
})

SUBJECT_TYPES = ("rename_batch", "release", "destructive")


@dataclass
class Subject:
    """What an approval request is about."""
    type: str
    payload: dict = field(default_factory=dict)
    summary: str = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "payload": self.payload, "summary": self.summary}

    @classmethod
    def from_dict(cls, data: dict) -> "Subject":
        return cls(type=data["type"], payload=data.get("payload", {}), summary=data.get("summary", ""))


def new_request_id(now: datetime | None = None) -> str:
    now = now or utcnow()
    return f"REQ-{now.strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(3)}"


@dataclass
class ApprovalRequest:
    request_id: str
    subject: Subject
    required_roles: list[str]
    state: RequestState
    created_at: datetime
    expires_at: datetime
    received_approvals: dict[str, str] = field(default_factory=dict)  # role -> approver
    proposer: str = ""
    category: Optional[str] = None
    violations: list[RuleViolation] = field(default_factory=list)
    history: list[dict] = field(default_factory=list)
    result: Optional[dict] = None
    card_message_id: Optional[str] = None

    @property
    def missing_roles(self) -> list[str]:
        return [r for r in self.required_roles if r not in self.received_approvals]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "subject": self.subject.to_dict(),
            "required_roles": list(self.required_roles),
            "received_approvals": dict(self.received_approvals),
            "state": self.state.value,
            "created_at": format_ts(self.created_at),
            "expires_at": format_ts(self.expires_at),
            "proposer": self.proposer,
            "category": self.category,
            "violations": [v.to_dict() for v in self.violations],
            "history": list(self.history),
            "result": self.result,
            "card_message_id": self.card_message_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ApprovalRequest":
        return cls(
            request_id=data["request_id"],
            subject=Subject.from_dict(data["subject"]),
            required_roles=list(data["required_roles"]),
            received_approvals=dict(data.get("received_approvals", {})),
            state=RequestState(data["state"]),
            created_at=parse_ts(data["created_at"]),
            expires_at=parse_ts(data["expires_at"]),
            proposer=data.get("proposer", ""),
            category=data.get("category"),
            violations=[RuleViolation(v["rule"], v["reason"]) for v in data.get("violations", [])],
            history=list(data.get("history", [])),
            result=data.get("result"),
            card_message_id=data.get("card_message_id"),
        )
