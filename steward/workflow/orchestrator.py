"""
Orchestrator: drives ApprovalRequests through the approval state machine.

Every event for a request (approval, denial, expiry, execution) runs under
that request's lock and is persisted before the lock is released, so two
approvals clicked at once cannot double-count or skip the role check. Every
transition appends a ledger entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from steward.lib.config import ApprovalsConfig
from steward.lib.errors import (
    InvalidTransition,
    PolicyDenied,
    StewardError,
    ValidationError,
)
from steward.lib.locking import request_lock
from steward.models import (
    SUBJECT_TYPES,
    ApprovalRequest,
    LedgerAction,
    Outcome,
    RequestState,
    RuleViolation,
    Subject,
    idempotency_key,
    new_request_id,
    utcnow,
)
from steward.policy import PolicyContext
from steward.workflow.fsm import ApprovalFSM

logger = logging.getLogger(__name__)

LEDGER_ACTION_FOR_TRIGGER = {
    "policy_pass": (LedgerAction.PROPOSE, Outcome.SUCCEEDED),
    "policy_deny": (LedgerAction.DENY, Outcome.DENIED),
    "request_approval": (LedgerAction.REQUEST_APPROVAL, Outcome.SUCCEEDED),
    "approve": (LedgerAction.APPROVE, Outcome.SUCCEEDED),
    "deny": (LedgerAction.DENY, Outcome.DENIED),
    "expire": (LedgerAction.EXPIRE, Outcome.SUCCEEDED),
    "start_execution": (LedgerAction.EXECUTE, Outcome.SUCCEEDED),
    "confirm": (LedgerAction.CONFIRM, Outcome.SUCCEEDED),
    "rollback": (LedgerAction.ROLLBACK, Outcome.FAILED),
}

EVENT_TYPES = ("approve", "deny", "expire", "execute")


@dataclass
class RequestEvent:
    """An inbound event for one request."""
    type: str
    request_id: str
    actor: str
    role: Optional[str] = None
    message: Optional[str] = None


class Orchestrator:

    def __init__(self, requests, ledger, gate, approvals: ApprovalsConfig,
                 state_dir: Path, executors: dict, notifier=None,
                 clock: Callable[[], datetime] = utcnow):
        self.requests = requests
        self.ledger = ledger
        self.gate = gate
        self.approvals = approvals
        self.state_dir = state_dir
        self.executors = executors
        self.notifier = notifier
        self.clock = clock

    def _fsm(self, request: ApprovalRequest) -> ApprovalFSM:
        return ApprovalFSM(request, on_transition=self._record_transition)

    def _record_transition(self, request: ApprovalRequest, from_state: str, to_state: str,
                           trigger: str, kwargs: dict) -> None:
        action, outcome = LEDGER_ACTION_FOR_TRIGGER[trigger]
        self.ledger.record(
            idempotency_key(request.request_id, action.value, f"{from_state}->{to_state}"),
            action,
            request.request_id,
            outcome,
            kwargs.get("actor") or request.proposer,
            reason=kwargs.get("reason", ""),
            before=from_state,
            after=to_state,
            timestamp=kwargs.get("at"),
        )

    # --- Proposal ---

    def propose(self, subject: Subject, proposer: str, category: str | None = None,
                target_state: dict | None = None) -> ApprovalRequest:
        """Create a request and run it through the policy gate.

        Raises:
            ValidationError: unknown subject type or release kind
            PolicyDenied: the gate denied it; the denied request is persisted
        """
        if subject.type not in SUBJECT_TYPES:
            raise ValidationError(subject.type, f"Unknown subject type; expected one of {', '.join(SUBJECT_TYPES)}")

        now = self.clock()
        request = ApprovalRequest(
            request_id=new_request_id(now),
            subject=subject,
            required_roles=self.approvals.required_roles(subject.type, subject.payload),
            state=RequestState.PROPOSED,
            created_at=now,
            expires_at=now + timedelta(hours=self.approvals.ttl_hours),
            proposer=proposer,
            category=category,
        )

        with request_lock(self.state_dir, request.request_id):
            self.requests.save(request)
            fsm = self._fsm(request)

            decision = self.gate.evaluate(PolicyContext(
                action=subject.type,
                actor=proposer,
                category=category,
                target_state=target_state if target_state is not None else dict(subject.payload),
                actor_roles=self.approvals.roles_for(proposer),
                subject_id=request.request_id,
                now=now,
            ))

            if not decision.allowed:
                request.violations = list(decision.violated_rules)
                fsm.fire("policy_deny", actor=proposer, at=now,
                         reason="; ".join(v.rule_id for v in decision.violated_rules))
                self.requests.save(request)
            else:
                fsm.fire("policy_pass", actor=proposer, at=now)
                fsm.fire("request_approval", actor=proposer, at=now)
                self.requests.save(request)

        if request.state == RequestState.DENIED:
            if self.notifier:
                self.notifier.request_denied(request)
            raise PolicyDenied(
                request.request_id,
                f"{subject.type} denied by policy",
                {"request_id": request.request_id},
                violations=request.violations,
            )

        logger.info(f"Request {request.request_id} awaiting {request.required_roles}")
        self._post_card(request)
        return request

    def _post_card(self, request: ApprovalRequest) -> None:
        if not self.notifier:
            return
        message_id = self.notifier.approval_requested(request)
        if message_id is None:
            return
        with request_lock(self.state_dir, request.request_id):
            current = self.requests.require(request.request_id)
            current.card_message_id = message_id
            self.requests.save(current)
        request.card_message_id = message_id

    # --- Approval events ---

    def _require_awaiting(self, request: ApprovalRequest, fsm: ApprovalFSM, now: datetime) -> None:
        """Expire the request if its time is up; raise unless it can still take approvals."""
        if request.state == RequestState.AWAITING_APPROVAL and now >= request.expires_at:
            fsm.fire("expire", actor="steward", at=now, reason="expired before approval completed")
            self.requests.save(request)
        if request.state != RequestState.AWAITING_APPROVAL:
            raise InvalidTransition(
                request.request_id,
                f"Request is '{request.state.value}', not awaiting approval",
                {"state": request.state.value},
            )

    def _resolve_role(self, request: ApprovalRequest, approver: str, role: str | None) -> str:
        approver_roles = self.approvals.roles_for(approver)
        if role is not None:
            if role not in request.required_roles:
                raise ValidationError(request.request_id, f"Role '{role}' is not required by this request")
            if role not in approver_roles:
                raise PolicyDenied(request.request_id, f"{approver} cannot approve as {role}", violations=[
                    RuleViolation("approver-role", f"{approver} does not hold role '{role}'"),
                ])
            return role

        candidates = [r for r in request.required_roles if r in approver_roles]
        if not candidates:
            raise PolicyDenied(request.request_id, f"{approver} holds none of the required roles", violations=[
                RuleViolation("approver-role", f"{approver} holds none of {request.required_roles}"),
            ])
        missing = [r for r in candidates if r not in request.received_approvals]
        return missing[0] if missing else candidates[0]

    def submit_approval(self, request_id: str, approver: str, role: str | None = None) -> ApprovalRequest:
        """Record one approval; the request moves to approved once every role is covered.

        A second approval for an already-satisfied role changes nothing.

        Raises:
            NotFound: no such request
            InvalidTransition: not awaiting approval (including just expired)
            PolicyDenied: approver lacks the role, or already filled another slot
        """
        with request_lock(self.state_dir, request_id):
            now = self.clock()
            request = self.requests.require(request_id)
            fsm = self._fsm(request)
            self._require_awaiting(request, fsm, now)

            role = self._resolve_role(request, approver, role)
            if role in request.received_approvals:
                logger.info(f"{request_id}: {role} already approved by {request.received_approvals[role]}")
                return request

            if self.approvals.distinct_approvers and approver in request.received_approvals.values():
                held = [r for r, who in request.received_approvals.items() if who == approver]
                raise PolicyDenied(request_id, f"{approver} already approved this request", violations=[
                    RuleViolation("distinct-approvers", f"{approver} already approved as {held[0]}"),
                ])

            request.received_approvals[role] = approver
            self.ledger.record(
                idempotency_key(request_id, LedgerAction.APPROVE.value, f"role:{role}"),
                LedgerAction.APPROVE, request_id, Outcome.SUCCEEDED, approver,
                reason=f"approved as {role}", before=None, after={"role": role, "approver": approver},
                timestamp=now,
            )
            fsm.fire("approve", actor=approver, at=now)
            self.requests.save(request)

        logger.info(f"{request_id}: {approver} approved as {role}; missing {request.missing_roles}")
        if request.state == RequestState.AWAITING_APPROVAL:
            self._post_card(request)
        return request

    def deny(self, request_id: str, actor: str, reason: str = "") -> ApprovalRequest:
        """Human denial by a holder of one of the required roles."""
        with request_lock(self.state_dir, request_id):
            now = self.clock()
            request = self.requests.require(request_id)
            fsm = self._fsm(request)
            self._require_awaiting(request, fsm, now)

            if not self.approvals.roles_for(actor).intersection(request.required_roles):
                raise PolicyDenied(request_id, f"{actor} cannot deny this request", violations=[
                    RuleViolation("approver-role", f"{actor} holds none of {request.required_roles}"),
                ])
            fsm.fire("deny", actor=actor, at=now, reason=reason)
            self.requests.save(request)

        if self.notifier:
            self.notifier.request_denied(request, reason)
        return request

    def expire(self, request_id: str) -> ApprovalRequest:
        """Expire one request if it is past expires_at."""
        with request_lock(self.state_dir, request_id):
            now = self.clock()
            request = self.requests.require(request_id)
            if request.state == RequestState.AWAITING_APPROVAL and now >= request.expires_at:
                self._fsm(request).fire("expire", actor="steward", at=now, reason="expired before approval completed")
                self.requests.save(request)
            return request

    def sweep_expired(self) -> list[str]:
        """Expire every awaiting request past its deadline. Returns the expired ids."""
        now = self.clock()
        expired = []
        for request in self.requests.list(RequestState.AWAITING_APPROVAL):
            if now < request.expires_at:
                continue
            try:
                if self.expire(request.request_id).state == RequestState.EXPIRED:
                    expired.append(request.request_id)
            except StewardError as e:
                logger.warning(f"Could not expire {request.request_id}: {e}")
        if expired:
            logger.info(f"Expired {len(expired)} request(s): {', '.join(expired)}")
        return expired

    # --- Execution ---

    def execute(self, request_id: str, actor: str) -> ApprovalRequest:
        """Run the subject's mutation; confirmed on success, rolled back on failure.

        The executing state is persisted before any external call.
        """
        with request_lock(self.state_dir, request_id):
            request = self.requests.require(request_id)
            executor = self.executors.get(request.subject.type)
            if executor is None:
                raise ValidationError(request_id, f"No executor for subject type '{request.subject.type}'")

            fsm = self._fsm(request)
            fsm.fire("start_execution", actor=actor, at=self.clock())
            self.requests.save(request)

            progress: dict = {}
            error: StewardError | None = None
            try:
                request.result = executor.execute(request, progress)
            except StewardError as e:
                error = e
                logger.warning(f"{request_id}: execution failed: {e}")
            except Exception as e:
                logger.exception(f"{request_id}: execution raised")
                error = StewardError(request_id, f"{type(e).__name__}: {e}")

            if error is None:
                fsm.fire("confirm", actor=actor, at=self.clock())
            else:
                request.result = {"error": error.to_dict(), "rollback": self._rollback(executor, request, progress, error)}
                fsm.fire("rollback", actor=actor, at=self.clock(), reason=f"{error.kind}: {error.message}")
            self.requests.save(request)

        if self.notifier:
            if error is None:
                self.notifier.request_confirmed(request)
            else:
                self.notifier.request_rolled_back(request, error)
        return request

    def _rollback(self, executor, request: ApprovalRequest, progress: dict, error: StewardError) -> dict | None:
        try:
            return executor.rollback(request, progress, error)
        except StewardError as e:
            logger.error(f"{request.request_id}: rollback failed: {e}")
            return {"failed": e.to_dict()}
        except Exception as e:
            logger.exception(f"{request.request_id}: rollback raised")
            return {"failed": {"error": type(e).__name__, "message": str(e)}}

    def handle_event(self, event: RequestEvent, auto_execute: bool = False) -> ApprovalRequest:
        """Apply one inbound event; with auto_execute, an approval that completes the role set also executes."""
        if event.type == "approve":
            request = self.submit_approval(event.request_id, event.actor, event.role)
            if auto_execute and request.state == RequestState.APPROVED:
                request = self.execute(event.request_id, event.actor)
            return request
        if event.type == "deny":
            return self.deny(event.request_id, event.actor, event.message or "")
        if event.type == "expire":
            return self.expire(event.request_id)
        if event.type == "execute":
            return self.execute(event.request_id, event.actor)
        raise ValidationError(event.request_id, f"Unknown event '{event.type}'; expected one of {', '.join(EVENT_TYPES)}")
