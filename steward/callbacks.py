"""
Inbound callback interface.

A callback is {action, subject_id, actor, message?} either posted as JSON
or decoded from a button's callback_data. approve/deny are routed to the
orchestrator as events for the named request. Actions configured as gated
become new approval requests; the rest are invoked directly.
"""

import logging
from typing import Callable, Optional

from pydantic import BaseModel, ValidationError as PydanticValidationError

from steward.cards import parse_callback
from steward.lib.config import CallbacksConfig
from steward.lib.errors import PolicyDenied, StewardError, ValidationError
from steward.lib.locking import topic_lock
from steward.lib.retry import call_with_retry
from steward.models import LedgerAction, Outcome, Subject, Topic, idempotency_key
from steward.policy import PolicyContext
from steward.polish import PolishMode, run_polish_cycle
from steward.workflow.orchestrator import RequestEvent

logger = logging.getLogger(__name__)

REQUEST_EVENTS = ("approve", "deny")


class CallbackPayload(BaseModel):
    """Input schema for inbound callbacks."""
    action: str
    subject_id: str
    actor: str
    message: str = ""
    extra: Optional[str] = None  # Role for approve, release kind for merge

    @classmethod
    def parse(cls, data: dict) -> "CallbackPayload":
        try:
            return cls(**data)
        except PydanticValidationError as e:
            raise ValidationError("callback", f"Invalid callback payload: {e.errors()[0]['msg']}",
                                  {"errors": [".".join(str(p) for p in err["loc"]) for err in e.errors()]}) from None

    @classmethod
    def from_callback_data(cls, data: str, actor: str, namespace: str, message: str = "") -> "CallbackPayload":
        """Decode a button press; the namespace must be ours."""
        parsed = parse_callback(data)
        if parsed.namespace != namespace:
            raise ValidationError(data, f"Callback namespace '{parsed.namespace}' is not '{namespace}'")
        return cls(action=parsed.action, subject_id=parsed.subject_id, actor=actor,
                   message=message, extra=parsed.extra)


def _rename_batch_subject(payload: CallbackPayload) -> tuple[Subject, Optional[str]]:
    category = None if payload.subject_id == "all" else payload.subject_id
    reason = payload.message or f"callback-{payload.action}"
    summary = f"Polish {category or 'all streams'} ({reason})"
    return Subject("rename_batch", {"category": category, "reason": reason}, summary), category


def _release_subject(payload: CallbackPayload) -> tuple[Subject, Optional[str]]:
    kind = payload.extra or "patch"
    summary = f"Merge PR #{payload.subject_id} ({kind} release)"
    return Subject("release", {"pr": payload.subject_id, "release_kind": kind}, summary), None


def _destructive_subject(payload: CallbackPayload) -> tuple[Subject, Optional[str]]:
    summary = f"Archive topic {payload.subject_id}"
    if payload.message:
        summary += f": {payload.message}"
    return Subject("destructive", {"topic_id": payload.subject_id}, summary), None


SUBJECT_BUILDERS = {
    "rename_batch": _rename_batch_subject,
    "release": _release_subject,
    "destructive": _destructive_subject,
}


def create_topic(ctx, category: str, title: str, actor: str) -> dict:
    """Open a topic under its canonical name and start tracking it.

    Creating the same name in the same stream twice returns the first topic.

    Raises:
        ValidationError: no title, unknown stream, or the name is too long
        PlatformUnavailable: the platform call failed after retries
    """
    if not title.strip():
        raise ValidationError(category, "A title is required to create a topic")
    name = ctx.normalizer(category, title)
    key = idempotency_key(category, LedgerAction.CREATE.value, name)

    done = [e for e in ctx.ledger.find(key) if e.outcome == Outcome.SUCCEEDED]
    if done:
        return {"created": False, "topic_id": done[0].after, "name": name}

    try:
        snapshot = call_with_retry(
            lambda: ctx.chat.create_topic(category, name),
            f"create {name}", ctx.config.retry,
        )
    except StewardError as e:
        ctx.ledger.record(key, LedgerAction.CREATE, category, Outcome.FAILED, actor,
                          reason=f"{title}: {e.kind}: {e.message}", after=name)
        raise

    ctx.ledger.record(key, LedgerAction.CREATE, snapshot.topic_id, Outcome.SUCCEEDED, actor,
                      reason=title, after=snapshot.topic_id)
    with topic_lock(ctx.state_dir, snapshot.topic_id):
        ctx.topics.save(Topic(
            topic_id=snapshot.topic_id,
            category=category,
            raw_title=snapshot.title,
            canonical_name=name,
            last_audited_at=ctx.clock(),
        ))
    logger.info(f"Created topic {snapshot.topic_id} '{name}' for {actor}")
    return {
        "created": True,
        "topic_id": snapshot.topic_id,
        "name": name,
        "deep_link": ctx.chat.deep_link(snapshot.topic_id),
    }


class CallbackDispatcher:

    def __init__(self, orchestrator, config: CallbacksConfig,
                 direct_actions: dict[str, Callable[[CallbackPayload], dict]] | None = None,
                 topics=None):
        self.orchestrator = orchestrator
        self.config = config
        self.direct_actions = direct_actions or {}
        self.topics = topics

    @classmethod
    def from_context(cls, ctx) -> "CallbackDispatcher":
        def audit(payload: CallbackPayload) -> dict:
            category = None if payload.subject_id == "all" else payload.subject_id
            return ctx.audit_engine().run(category).to_dict()

        def polish(payload: CallbackPayload) -> dict:
            category = None if payload.subject_id == "all" else payload.subject_id
            _, result = run_polish_cycle(ctx, payload.message or f"callback-{payload.action}",
                                         category=category, mode=PolishMode.APPLY)
            return result.to_dict()

        def status(payload: CallbackPayload) -> dict:
            return ctx.requests.require(payload.subject_id).to_dict()

        def create(payload: CallbackPayload) -> dict:
            category = payload.subject_id
            decision = ctx.gate.evaluate(PolicyContext(
                action="create_topic",
                actor=payload.actor,
                category=category,
                target_state={"title": payload.message},
                actor_roles=ctx.config.approvals.roles_for(payload.actor),
                now=ctx.clock(),
            ))
            if not decision.allowed:
                raise PolicyDenied(category, "Topic creation denied by policy",
                                   violations=decision.violated_rules)
            return create_topic(ctx, category, payload.message, payload.actor)

        return cls(
            ctx.orchestrator,
            ctx.config.callbacks,
            direct_actions={"audit": audit, "polish": polish, "status": status, "create": create},
            topics=ctx.topics,
        )

    def dispatch(self, payload: CallbackPayload) -> dict:
        """Route one callback. Errors propagate as StewardError kinds."""
        logger.info(f"Callback {payload.action} {payload.subject_id} from {payload.actor}")

        if payload.action in REQUEST_EVENTS:
            request = self.orchestrator.handle_event(
                RequestEvent(
                    type=payload.action,
                    request_id=payload.subject_id,
                    actor=payload.actor,
                    role=payload.extra,
                    message=payload.message or None,
                ),
                auto_execute=True,
            )
            return {
                "request_id": request.request_id,
                "state": request.state.value,
                "missing_roles": request.missing_roles,
            }

        subject_type = self.config.gated_actions.get(payload.action)
        if subject_type is not None:
            subject, category = SUBJECT_BUILDERS[subject_type](payload)
            if category is None and subject_type == "destructive" and self.topics is not None:
                category = self.topics.require(payload.subject_id).category
            request = self.orchestrator.propose(subject, payload.actor, category=category)
            return {"request_id": request.request_id, "state": request.state.value,
                    "required_roles": request.required_roles}

        handler = self.direct_actions.get(payload.action)
        if handler is None:
            raise ValidationError(payload.action, f"No handler for callback action '{payload.action}'")
        return handler(payload)
