"""
Polish Engine.

Applies the renames and perfect-pin cards an audit asked for. Each topic is
processed independently under its own lock: a failure on one topic is
recorded and the rest carry on. Every attempted rename and re-pin lands in
the ledger, and a rename whose idempotency key already succeeded is skipped,
so re-running a cycle is safe.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from steward.audit import AuditReport
from steward.cards import render_perfect_pin
from steward.lib.constants import DEFAULT_CALLBACK_NAMESPACE, DEFAULT_MAX_NAME_LENGTH
from steward.lib.errors import PolicyDenied, StewardError, ValidationError
from steward.lib.locking import topic_lock
from steward.lib.retry import RetryPolicy, call_with_retry
from steward.models import LedgerAction, Outcome, idempotency_key, utcnow
from steward.policy import PolicyContext

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "steward"


class PolishMode(Enum):
    DRY_RUN = "dry_run"
    APPLY = "apply"


@dataclass
class PolishAction:
    topic_id: str
    action: str  # "rename" | "re-pin"
    before: Optional[str]
    after: str
    status: str  # "planned" | "done" | "skipped" | "failed" | "cancelled"
    error: Optional[str] = None


@dataclass
class PolishResult:
    mode: PolishMode
    reason: str
    renamed: int = 0
    re_pinned: int = 0
    skipped_already_done: int = 0
    failed: int = 0
    cancelled: bool = False
    not_started: list[str] = field(default_factory=list)
    actions: list[PolishAction] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "reason": self.reason,
            "renamed": self.renamed,
            "re_pinned": self.re_pinned,
            "skipped_already_done": self.skipped_already_done,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "not_started": list(self.not_started),
            "actions": [vars(a) for a in self.actions],
            "failures": list(self.failures),
        }


@dataclass
class _Unit:
    """One topic's worth of polish work."""
    topic_id: str
    target: str
    current_title: Optional[str]
    needs_rename: bool


@dataclass
class _UnitOutcome:
    topic_id: str
    actions: list[PolishAction] = field(default_factory=list)
    renamed: bool = False
    re_pinned: bool = False
    skipped: bool = False
    failure: Optional[dict] = None
    cancelled: bool = False


def quarterly_reason(day: date) -> str:
    """Ledger reason for the scheduled run, e.g. 'quarterly-2026-Q1'."""
    return f"quarterly-{day.year}-Q{(day.month - 1) // 3 + 1}"


class PolishEngine:

    def __init__(self, chat, topics, ledger, streams: dict, state_dir: Path,
                 retry: RetryPolicy | None = None,
                 max_name_length: int = DEFAULT_MAX_NAME_LENGTH,
                 namespace: str = DEFAULT_CALLBACK_NAMESPACE,
                 actor: str = SYSTEM_ACTOR,
                 clock: Callable[[], datetime] = utcnow,
                 gate=None):
        self.chat = chat
        self.topics = topics
        self.ledger = ledger
        self.streams = streams
        self.state_dir = state_dir
        self.retry = retry or RetryPolicy()
        self.max_name_length = max_name_length
        self.namespace = namespace
        self.actor = actor
        self.clock = clock
        self.gate = gate

    def _units(self, report: AuditReport) -> list[_Unit]:
        units = [
            _Unit(i.topic_id, i.target_name, i.current_title, needs_rename=True)
            for i in report.items
        ]
        for topic_id in report.missing_pins:
            topic = self.topics.get(topic_id)
            if topic is None:
                continue
            units.append(_Unit(topic_id, topic.canonical_name, topic.raw_title, needs_rename=False))
        return units

    def _keys(self, unit: _Unit, reason: str, force: bool) -> tuple[str, str]:
        salt = reason if force else ""
        return (
            idempotency_key(unit.topic_id, LedgerAction.RENAME.value, unit.target, salt),
            idempotency_key(unit.topic_id, LedgerAction.RE_PIN.value, unit.target, salt),
        )

    def _missing_pin_key(self, unit: _Unit, reason: str, force: bool) -> str:
        """Re-pin key for a compliant topic the store shows as unpinned.

        If a pin for this name already succeeded but is no longer on record,
        the repair is keyed on the message it replaces.
        """
        _, pin_key = self._keys(unit, reason, force)
        if not self.ledger.has_succeeded(pin_key):
            return pin_key
        pinned = [
            e.after for e in self.ledger.entries(unit.topic_id, LedgerAction.RE_PIN)
            if e.outcome == Outcome.SUCCEEDED
        ]
        salt = f"{reason if force else ''}|replaces:{pinned[-1]}"
        return idempotency_key(unit.topic_id, LedgerAction.RE_PIN.value, unit.target, salt)

    def _pinned_since_audit(self, unit: _Unit) -> bool:
        topic = self.topics.get(unit.topic_id)
        return topic is not None and topic.pinned_message_id is not None

    def run(self, report: AuditReport, mode: PolishMode, reason: str,
            force: bool = False, workers: int = 1,
            cancel: threading.Event | None = None) -> PolishResult:
        """Polish every topic the report flags.

        dry_run lists exactly what apply would do without touching the
        platform, the store or the ledger, so the policy gate is only
        consulted on apply. When cancel is set, topics not yet
        started are left for the next cycle; in-flight topics complete.
        """
        if not reason:
            raise ValidationError("polish", "A reason is required")
        cancel = cancel or threading.Event()
        result = PolishResult(mode=mode, reason=reason)
        units = self._units(report)

        if mode == PolishMode.DRY_RUN:
            outcomes = [self._plan(u, reason, force) for u in units]
        elif workers > 1:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="polish") as pool:
                futures = [pool.submit(self._guarded_apply, u, reason, force, cancel) for u in units]
                outcomes = [f.result() for f in futures]
        else:
            outcomes = [self._guarded_apply(u, reason, force, cancel) for u in units]

        for outcome in outcomes:
            result.actions.extend(outcome.actions)
            if outcome.cancelled:
                result.not_started.append(outcome.topic_id)
                continue
            result.renamed += outcome.renamed
            result.re_pinned += outcome.re_pinned
            result.skipped_already_done += outcome.skipped
            if outcome.failure:
                result.failed += 1
                result.failures.append(outcome.failure)
        result.cancelled = bool(result.not_started)

        logger.info(
            f"[POLISH] {mode.value} ({reason}): renamed={result.renamed} re_pinned={result.re_pinned} "
            f"skipped={result.skipped_already_done} failed={result.failed}"
            + (f" not_started={len(result.not_started)}" if result.not_started else "")
        )
        return result

    def _plan(self, unit: _Unit, reason: str, force: bool) -> _UnitOutcome:
        outcome = _UnitOutcome(unit.topic_id)
        rename_key, pin_key = self._keys(unit, reason, force)
        rename_done = self.ledger.has_succeeded(rename_key)
        pin_done = self.ledger.has_succeeded(pin_key)

        if unit.needs_rename and rename_done:
            outcome.skipped = True
            outcome.actions.append(PolishAction(unit.topic_id, "rename", unit.current_title, unit.target, "skipped"))
            return outcome
        if not unit.needs_rename:
            if self._pinned_since_audit(unit):
                outcome.skipped = True
                outcome.actions.append(PolishAction(unit.topic_id, "re-pin", None, unit.target, "skipped"))
                return outcome
            pin_done = self.ledger.has_succeeded(self._missing_pin_key(unit, reason, force))

        if unit.needs_rename:
            outcome.renamed = True
            outcome.actions.append(PolishAction(unit.topic_id, "rename", unit.current_title, unit.target, "planned"))
        if not pin_done:
            outcome.re_pinned = True
            outcome.actions.append(PolishAction(unit.topic_id, "re-pin", None, unit.target, "planned"))
        return outcome

    def _guarded_apply(self, unit: _Unit, reason: str, force: bool, cancel: threading.Event) -> _UnitOutcome:
        if cancel.is_set():
            return _UnitOutcome(unit.topic_id, cancelled=True,
                                actions=[PolishAction(unit.topic_id, "rename" if unit.needs_rename else "re-pin",
                                                      unit.current_title, unit.target, "cancelled")])
        try:
            with topic_lock(self.state_dir, unit.topic_id):
                return self._apply(unit, reason, force)
        except StewardError as e:
            # Lock contention or a missing record; nothing was sent to the platform
            logger.warning(f"[POLISH] {unit.topic_id}: {e}")
            return _UnitOutcome(unit.topic_id, failure={
                "topic_id": unit.topic_id, "kind": e.kind, "message": e.message,
            })
        except Exception as e:
            # Adapter bug; the remaining topics still run
            logger.exception(f"[POLISH] {unit.topic_id}: unexpected error")
            return _UnitOutcome(unit.topic_id, failure={
                "topic_id": unit.topic_id, "kind": type(e).__name__, "message": str(e),
            })

    def _record_failure(self, outcome: _UnitOutcome, key: str, action: LedgerAction,
                        unit: _Unit, before, reason: str, error: StewardError) -> None:
        denied = isinstance(error, PolicyDenied)
        self.ledger.record(
            key, action, unit.topic_id, Outcome.DENIED if denied else Outcome.FAILED, self.actor,
            reason=f"{reason}: {error.kind}: {error.message}",
            before=before, after=unit.target,
        )
        outcome.failure = {"topic_id": unit.topic_id, "kind": error.kind, "message": error.message}
        if denied:
            outcome.failure["violations"] = [v.to_dict() for v in error.violations]
        outcome.actions.append(PolishAction(
            unit.topic_id, action.value, before, unit.target, "failed", f"{error.kind}: {error.message}",
        ))
        logger.warning(f"[POLISH] {unit.topic_id}: {action.value} failed: {error}")

    def _check_policy(self, topic, unit: _Unit) -> None:
        if self.gate is None:
            return
        decision = self.gate.evaluate(PolicyContext(
            action=LedgerAction.RENAME.value,
            actor=self.actor,
            category=topic.category,
            target_state={"name": unit.target},
            subject_id=unit.topic_id,
            now=self.clock(),
        ))
        if not decision.allowed:
            raise PolicyDenied(unit.topic_id, "Rename denied by policy", violations=decision.violated_rules)

    def _apply(self, unit: _Unit, reason: str, force: bool) -> _UnitOutcome:
        outcome = _UnitOutcome(unit.topic_id)
        rename_key, pin_key = self._keys(unit, reason, force)
        topic = self.topics.require(unit.topic_id)

        if not unit.needs_rename:
            if topic.pinned_message_id is not None:
                outcome.skipped = True
                outcome.actions.append(PolishAction(unit.topic_id, "re-pin", None, unit.target, "skipped"))
                return outcome
            pin_key = self._missing_pin_key(unit, reason, force)

        if unit.needs_rename:
            if self.ledger.has_succeeded(rename_key):
                logger.debug(f"[POLISH] {unit.topic_id}: rename already done, skipping")
                outcome.skipped = True
                outcome.actions.append(PolishAction(unit.topic_id, "rename", topic.raw_title, unit.target, "skipped"))
                return outcome

            before = topic.raw_title
            try:
                if len(unit.target) > self.max_name_length:
                    raise ValidationError(
                        unit.topic_id,
                        f"Canonical name is {len(unit.target)} characters, limit is {self.max_name_length}",
                    )
                self._check_policy(topic, unit)
                call_with_retry(
                    lambda: self.chat.rename_topic(unit.topic_id, unit.target),
                    f"rename {unit.topic_id}", self.retry,
                )
            except StewardError as e:
                self._record_failure(outcome, rename_key, LedgerAction.RENAME, unit, before, reason, e)
                self.ledger.record(
                    pin_key, LedgerAction.RE_PIN, unit.topic_id, Outcome.SKIPPED, self.actor,
                    reason=f"{reason}: rename failed", before=topic.pinned_message_id,
                )
                return outcome

            self.ledger.record(
                rename_key, LedgerAction.RENAME, unit.topic_id, Outcome.SUCCEEDED, self.actor,
                reason=reason, before=before, after=unit.target,
            )
            topic.raw_title = unit.target
            topic.last_polished_at = self.clock()
            self.topics.save(topic)
            outcome.renamed = True
            outcome.actions.append(PolishAction(unit.topic_id, "rename", before, unit.target, "done"))
            logger.info(f"[POLISH] {unit.topic_id}: renamed '{before}' -> '{unit.target}'")

        if self.ledger.has_succeeded(pin_key):
            if not unit.needs_rename:
                outcome.skipped = True
                outcome.actions.append(PolishAction(unit.topic_id, "re-pin", None, unit.target, "skipped"))
            return outcome

        previous_pin = topic.pinned_message_id
        stream = self.streams[topic.category]
        try:
            card = render_perfect_pin(topic, stream, self.chat.deep_link(topic.topic_id), self.namespace)
            call_with_retry(lambda: self.chat.unpin_all(topic.topic_id), f"unpin {topic.topic_id}", self.retry)
            message_id = call_with_retry(
                lambda: self.chat.pin_message(topic.topic_id, card),
                f"pin {topic.topic_id}", self.retry,
            )
        except StewardError as e:
            self._record_failure(outcome, pin_key, LedgerAction.RE_PIN, unit, previous_pin, reason, e)
            return outcome

        self.ledger.record(
            pin_key, LedgerAction.RE_PIN, unit.topic_id, Outcome.SUCCEEDED, self.actor,
            reason=reason, before=previous_pin, after=message_id,
        )
        topic.pinned_message_id = message_id
        topic.last_polished_at = self.clock()
        self.topics.save(topic)
        outcome.re_pinned = True
        outcome.actions.append(PolishAction(unit.topic_id, "re-pin", previous_pin, message_id, "done"))
        return outcome


def run_polish_cycle(ctx, reason: str, category: str | None = None,
                     mode: PolishMode = PolishMode.APPLY, force: bool = False,
                     workers: int = 1, cancel: threading.Event | None = None) -> tuple[AuditReport, PolishResult]:
    """Audit then polish: the unit of work of the scheduled job."""
    report = ctx.audit_engine().run(category)
    result = ctx.polish_engine().run(report, mode, reason, force=force, workers=workers, cancel=cancel)
    return report, result
