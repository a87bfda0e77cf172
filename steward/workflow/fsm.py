"""Approval request state machine using transitions library.

Usage:
    from steward.workflow.fsm import ApprovalFSM

    fsm = ApprovalFSM(request, on_transition=record)
    fsm.fire("policy_pass")
    fsm.fire("request_approval")
    fsm.fire("approve")  # False until every required role has approved
"""

import logging
from typing import Callable

from transitions import Machine, MachineError

from steward.lib.errors import InvalidTransition
from steward.models import ApprovalRequest, RequestState, format_ts, utcnow

logger = logging.getLogger(__name__)


STATES = [s.value for s in RequestState]

TRANSITIONS = [
    # Policy gate outcome
    {"trigger": "policy_pass", "source": "proposed", "dest": "policy_checked"},
    {"trigger": "policy_deny", "source": "proposed", "dest": "denied"},

    {"trigger": "request_approval", "source": "policy_checked", "dest": "awaiting_approval"},

    # Only completes once received_approvals covers required_roles
    {"trigger": "approve", "source": "awaiting_approval", "dest": "approved", "conditions": "roles_complete"},
    {"trigger": "deny", "source": "awaiting_approval", "dest": "denied"},
    {"trigger": "expire", "source": "awaiting_approval", "dest": "expired"},

    {"trigger": "start_execution", "source": "approved", "dest": "executing"},
    {"trigger": "confirm", "source": "executing", "dest": "confirmed"},
    {"trigger": "rollback", "source": "executing", "dest": "rolled_back"},
]


class ApprovalFSM:
    """State machine for one ApprovalRequest.

    Keeps request.state and request.history in step with the machine. The
    caller persists the request; on_transition is where ledger entries are
    written.
    """

    def __init__(self, request: ApprovalRequest,
                 on_transition: Callable[[ApprovalRequest, str, str, str, dict], None] | None = None):
        """
        Args:
            request: The request to drive; mutated in place
            on_transition: Optional callback(request, from_state, to_state, trigger, kwargs)
        """
        self.request = request
        self.on_transition = on_transition

        self.machine = Machine(
            model=self,
            states=STATES,
            transitions=TRANSITIONS,
            initial=request.state.value,
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    def roles_complete(self, event) -> bool:
        return not self.request.missing_roles

    def on_state_change(self, event) -> None:
        from_state = event.transition.source
        to_state = event.transition.dest
        trigger = event.event.name
        actor = event.kwargs.get("actor", "")

        logger.info(f"[FSM] {self.request.request_id}: {from_state} -> {to_state} ({trigger})")

        self.request.state = RequestState(to_state)
        self.request.history.append({
            "from": from_state,
            "to": to_state,
            "trigger": trigger,
            "actor": actor,
            "at": format_ts(event.kwargs.get("at") or utcnow()),
        })

        if self.on_transition:
            self.on_transition(self.request, from_state, to_state, trigger, event.kwargs)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current state."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)

    def fire(self, trigger: str, **kwargs) -> bool:
        """Run a trigger by name.

        Returns False when a condition held the transition back.

        Raises:
            InvalidTransition: trigger is not valid from the current state
        """
        if not self.can(trigger):
            raise InvalidTransition(
                self.request.request_id,
                f"Cannot {trigger} a request in state '{self.state}'",
                {"state": self.state, "trigger": trigger, "available": self.get_available_triggers()},
            )
        try:
            return self.trigger(trigger, **kwargs)
        except MachineError as e:
            raise InvalidTransition(self.request.request_id, str(e.value)) from None
