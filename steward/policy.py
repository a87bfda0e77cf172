"""
Policy Gate.

Rules are ordered, independent predicates over (action, actor, category,
target_state) that each allow, deny or abstain. An action passes only when at
least one rule allows it and none denies it; every denying rule is reported.
Denials are written to the ledger here. Allowed actions are logged by
whoever performs the mutation.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional

from steward.lib.config import RuleSpec
from steward.lib.constants import DEFAULT_MAX_NAME_LENGTH
from steward.lib.errors import ValidationError
from steward.models import (
    LedgerAction,
    Outcome,
    PolicyDecision,
    RuleViolation,
    idempotency_key,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_DENY_RULE = "default-deny"


class Verdict(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ABSTAIN = "abstain"


@dataclass
class PolicyContext:
    """What is being attempted, by whom, where."""
    action: str
    actor: str
    category: Optional[str] = None
    target_state: dict = field(default_factory=dict)
    actor_roles: set[str] = field(default_factory=set)
    subject_id: Optional[str] = None
    now: datetime = field(default_factory=utcnow)

    @classmethod
    def from_dict(cls, data: dict, actor_roles: set[str] | None = None) -> "PolicyContext":
        if "action" not in data or "actor" not in data:
            raise ValidationError("policy-context", "Context needs at least 'action' and 'actor'")
        return cls(
            action=data["action"],
            actor=data["actor"],
            category=data.get("category"),
            target_state=dict(data.get("target_state", {})),
            actor_roles=set(data.get("actor_roles", [])) | (actor_roles or set()),
            subject_id=data.get("subject_id"),
        )


@dataclass
class RuleEnv:
    """Facts rules may consult beyond the context itself."""
    streams: dict
    max_name_length: int = DEFAULT_MAX_NAME_LENGTH
    metrics: object = None


RulePredicate = Callable[[PolicyContext, dict, RuleEnv], tuple[Verdict, str]]

RULE_KINDS: dict[str, RulePredicate] = {}


def rule_kind(name: str):
    """Register a rule predicate under a config kind."""
    def decorator(fn: RulePredicate) -> RulePredicate:
        RULE_KINDS[name] = fn
        return fn
    return decorator


def _applies(ctx: PolicyContext, params: dict) -> bool:
    actions = params.get("actions")
    if actions is not None and ctx.action not in actions:
        return False
    categories = params.get("categories")
    if categories is not None and ctx.category not in categories:
        return False
    return True


@rule_kind("allow_actions")
def _allow_actions(ctx, params, env):
    if not _applies(ctx, params):
        return Verdict.ABSTAIN, ""
    actors = params.get("actors")
    if actors is not None and ctx.actor not in actors:
        return Verdict.ABSTAIN, ""
    roles = params.get("roles")
    if roles is not None and not ctx.actor_roles.intersection(roles):
        return Verdict.ABSTAIN, ""
    return Verdict.ALLOW, f"'{ctx.action}' is a governed action"


@rule_kind("deny_actions")
def _deny_actions(ctx, params, env):
    if _applies(ctx, params):
        where = f" in '{ctx.category}'" if ctx.category else ""
        return Verdict.DENY, f"'{ctx.action}' is not permitted{where}"
    return Verdict.ABSTAIN, ""


@rule_kind("known_category")
def _known_category(ctx, params, env):
    if ctx.category is not None and ctx.category not in env.streams:
        return Verdict.DENY, f"Stream '{ctx.category}' is not configured"
    return Verdict.ABSTAIN, ""


@rule_kind("max_name_length")
def _max_name_length(ctx, params, env):
    limit = params.get("limit", env.max_name_length)
    names = list(ctx.target_state.get("names", []))
    if "name" in ctx.target_state:
        names.append(ctx.target_state["name"])
    too_long = [n for n in names if len(n) > limit]
    if too_long:
        return Verdict.DENY, f"{len(too_long)} name(s) exceed {limit} characters (e.g. '{too_long[0][:40]}')"
    return Verdict.ABSTAIN, ""


@rule_kind("require_role")
def _require_role(ctx, params, env):
    if not _applies(ctx, params):
        return Verdict.ABSTAIN, ""
    roles = set(params.get("roles", []))
    if roles and not ctx.actor_roles.intersection(roles):
        return Verdict.DENY, f"{ctx.actor} needs one of roles {sorted(roles)} for '{ctx.action}'"
    return Verdict.ABSTAIN, ""


@rule_kind("require_fields")
def _require_fields(ctx, params, env):
    if not _applies(ctx, params):
        return Verdict.ABSTAIN, ""
    missing = [f for f in params.get("fields", []) if ctx.target_state.get(f) in (None, "")]
    if missing:
        return Verdict.DENY, f"'{ctx.action}' requires {', '.join(missing)}"
    return Verdict.ABSTAIN, ""


@rule_kind("capacity_guard")
def _capacity_guard(ctx, params, env):
    if not _applies(ctx, params) or ctx.category is None or env.metrics is None:
        return Verdict.ABSTAIN, ""
    latest = env.metrics.latest(ctx.category)
    max_utilization = params.get("max_utilization", 1.0)
    if latest is not None and latest.utilization >= max_utilization:
        return Verdict.DENY, (
            f"Stream '{ctx.category}' is at {latest.utilization:.0%} of its limit "
            f"({latest.active_count}/{latest.limit})"
        )
    return Verdict.ABSTAIN, ""


@rule_kind("freeze_window")
def _freeze_window(ctx, params, env):
    if not _applies(ctx, params):
        return Verdict.ABSTAIN, ""
    start = date.fromisoformat(params["start"])
    end = date.fromisoformat(params["end"])
    today = ctx.now.date()
    if start <= today <= end:
        return Verdict.DENY, f"Change freeze in effect {start.isoformat()} to {end.isoformat()}"
    return Verdict.ABSTAIN, ""


@dataclass
class Rule:
    spec: RuleSpec
    predicate: RulePredicate

    def evaluate(self, ctx: PolicyContext, env: RuleEnv) -> tuple[Verdict, str]:
        verdict, reason = self.predicate(ctx, self.spec.params, env)
        if verdict == Verdict.DENY and self.spec.reason:
            reason = self.spec.reason
        return verdict, reason


class PolicyGate:

    def __init__(self, rules: list[RuleSpec], env: RuleEnv, ledger=None):
        self.rules = []
        for spec in rules:
            predicate = RULE_KINDS.get(spec.kind)
            if predicate is None:
                raise ValidationError(spec.id, f"Unknown policy rule kind '{spec.kind}'")
            if spec.kind == "freeze_window":
                for key in ("start", "end"):
                    try:
                        date.fromisoformat(spec.params[key])
                    except (KeyError, TypeError, ValueError):
                        raise ValidationError(spec.id, f"freeze_window needs an ISO date '{key}'") from None
            self.rules.append(Rule(spec, predicate))
        self.env = env
        self.ledger = ledger

    def evaluate(self, ctx: PolicyContext) -> PolicyDecision:
        """Evaluate every rule; deny wins, and no allow means deny."""
        violations: list[RuleViolation] = []
        allowed_by: list[str] = []

        for rule in self.rules:
            verdict, reason = rule.evaluate(ctx, self.env)
            if verdict == Verdict.DENY:
                violations.append(RuleViolation(rule.spec.id, reason))
            elif verdict == Verdict.ALLOW:
                allowed_by.append(rule.spec.id)

        if not allowed_by and not violations:
            violations.append(RuleViolation(DEFAULT_DENY_RULE, f"No rule allows '{ctx.action}'"))

        decision = PolicyDecision(allowed=bool(allowed_by) and not violations,
                                  violated_rules=violations, allowed_by=allowed_by)

        if decision.allowed:
            logger.debug(f"[POLICY] {ctx.action} by {ctx.actor}: allowed by {allowed_by}")
        else:
            logger.info(f"[POLICY] {ctx.action} by {ctx.actor}: denied by {[v.rule_id for v in violations]}")
            self._record_denial(ctx, decision)
        return decision

    def _record_denial(self, ctx: PolicyContext, decision: PolicyDecision) -> None:
        if self.ledger is None:
            return
        subject = ctx.subject_id or ctx.category or ctx.actor
        target = json.dumps(ctx.target_state, sort_keys=True, default=str)
        self.ledger.record(
            idempotency_key(subject, LedgerAction.POLICY_DENY.value, f"{ctx.action}:{target}"),
            LedgerAction.POLICY_DENY,
            subject,
            Outcome.DENIED,
            ctx.actor,
            reason="; ".join(f"{v.rule_id}: {v.reason}" for v in decision.violated_rules),
            before={"action": ctx.action, "category": ctx.category},
            after=decision.to_dict(),
            timestamp=ctx.now,
        )
