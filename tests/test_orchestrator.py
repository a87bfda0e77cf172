"""Tests for steward.workflow.orchestrator module."""

import threading
from unittest.mock import MagicMock

import pytest

from steward.adapters.github import PRStatus
from steward.lib.errors import (
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    PlatformUnavailable,
    PolicyDenied,
    ValidationError,
)
from steward.lib.locking import request_lock
from steward.models import LedgerAction, Outcome, RequestState, Subject
from steward.workflow.orchestrator import RequestEvent

MINOR_RELEASE = Subject("release", {"pr": "42", "release_kind": "minor"}, "Release 1.4.0")


class FakeExecutor:
    """Records what it was asked to do; optionally fails."""

    def __init__(self, error=None):
        self.error = error
        self.executed = []
        self.rolled_back = []

    def execute(self, request, progress):
        self.executed.append(request.request_id)
        progress["step"] = 1
        if self.error:
            raise self.error
        return {"ok": True}

    def rollback(self, request, progress, error):
        self.rolled_back.append(progress.get("step"))
        return {"undone": progress.get("step")}


def approved(ctx, subject=MINOR_RELEASE):
    request = ctx.orchestrator.propose(subject, "alice")
    ctx.orchestrator.submit_approval(request.request_id, "lead-bob")
    return ctx.orchestrator.submit_approval(request.request_id, "sec-carol")


class TestPropose:
    """Tests for Orchestrator.propose()."""

    def test_awaits_required_roles(self, ctx):
        """A proposal waits for every role its subject requires."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")

        assert request.state == RequestState.AWAITING_APPROVAL
        assert request.required_roles == ["security", "tech-lead"]
        assert request.missing_roles == ["security", "tech-lead"]
        assert ctx.requests.require(request.request_id).state == RequestState.AWAITING_APPROVAL

    def test_release_kind_selects_roles(self, ctx):
        """The release kind selects the approver roles."""
        patch = ctx.orchestrator.propose(Subject("release", {"pr": "1", "release_kind": "patch"}), "alice")
        major = ctx.orchestrator.propose(Subject("release", {"pr": "2", "release_kind": "major"}), "alice")
        assert patch.required_roles == ["tech-lead"]
        assert major.required_roles == ["product", "security", "tech-lead"]

    def test_ledger_and_card(self, ctx, chat):
        """Proposing writes propose and request-approval entries and posts the card."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")

        actions = [e.action for e in ctx.ledger.entries(subject_id=request.request_id)]
        assert actions == [LedgerAction.PROPOSE, LedgerAction.REQUEST_APPROVAL]

        card = chat.messages[request.card_message_id]
        assert card["topic_id"] == "900"
        assert "Release 1.4.0" in card["card"].text
        assert ctx.requests.require(request.request_id).card_message_id == request.card_message_id

    def test_policy_denial_persists_denied_request(self, make_ctx):
        """A policy denial still stores the request, as denied."""
        ctx = make_ctx({"policy": {"rules": [
            {"id": "renames-only", "kind": "allow_actions", "params": {"actions": ["rename_batch"]}},
        ]}})

        with pytest.raises(PolicyDenied) as exc:
            ctx.orchestrator.propose(MINOR_RELEASE, "alice")

        request = ctx.requests.require(exc.value.details["request_id"])
        assert request.state == RequestState.DENIED
        assert [v.rule_id for v in request.violations] == ["default-deny"]
        actions = {e.action for e in ctx.ledger.entries(subject_id=request.request_id)}
        assert actions == {LedgerAction.POLICY_DENY, LedgerAction.DENY}

    def test_unknown_subject_type(self, ctx):
        """An unknown subject type is rejected."""
        with pytest.raises(ValidationError):
            ctx.orchestrator.propose(Subject("teleport"), "alice")

    def test_unknown_release_kind(self, ctx):
        """An unknown release kind is rejected."""
        with pytest.raises(ValidationError):
            ctx.orchestrator.propose(Subject("release", {"pr": "1", "release_kind": "huge"}), "alice")


class TestApprovals:
    """Tests for submit_approval(), deny() and expiry."""

    def test_completes_only_when_every_role_approved(self, ctx):
        """The request is approved only once every role has approved."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")

        partial = ctx.orchestrator.submit_approval(request.request_id, "lead-bob")
        assert partial.state == RequestState.AWAITING_APPROVAL
        assert partial.missing_roles == ["security"]

        done = ctx.orchestrator.submit_approval(request.request_id, "sec-carol")
        assert done.state == RequestState.APPROVED
        assert done.received_approvals == {"tech-lead": "lead-bob", "security": "sec-carol"}

    def test_duplicate_role_approval_is_noop(self, ctx):
        """A repeated approval for a filled role changes nothing."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        ctx.orchestrator.submit_approval(request.request_id, "lead-bob")
        again = ctx.orchestrator.submit_approval(request.request_id, "lead-bob")

        assert again.received_approvals == {"tech-lead": "lead-bob"}
        assert again.state == RequestState.AWAITING_APPROVAL
        assert len(list(ctx.ledger.entries(subject_id=request.request_id, action=LedgerAction.APPROVE))) == 1

    def test_one_person_cannot_fill_two_roles(self, ctx):
        """One person cannot approve in two roles."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        ctx.orchestrator.submit_approval(request.request_id, "both-erin", "tech-lead")

        with pytest.raises(PolicyDenied) as exc:
            ctx.orchestrator.submit_approval(request.request_id, "both-erin", "security")
        assert exc.value.violations[0].rule_id == "distinct-approvers"

    def test_distinct_approvers_can_be_disabled(self, make_ctx):
        """Distinct approvers can be switched off."""
        ctx = make_ctx({"approvals": {"distinct_approvers": False, "approvers": {"both-erin": ["tech-lead", "security"]}}})
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        ctx.orchestrator.submit_approval(request.request_id, "both-erin")
        done = ctx.orchestrator.submit_approval(request.request_id, "both-erin")
        assert done.state == RequestState.APPROVED

    def test_approver_without_role(self, ctx):
        """An approver holding none of the roles is denied."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        with pytest.raises(PolicyDenied) as exc:
            ctx.orchestrator.submit_approval(request.request_id, "gov-alice")
        assert exc.value.violations[0].rule_id == "approver-role"

    def test_role_not_required(self, ctx):
        """Approving for a role the request does not need is rejected."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        with pytest.raises(ValidationError):
            ctx.orchestrator.submit_approval(request.request_id, "lead-bob", "product")

    def test_unknown_request(self, ctx):
        """Approving an unknown request is NotFound."""
        with pytest.raises(NotFound):
            ctx.orchestrator.submit_approval("REQ-missing", "lead-bob")

    def test_approval_after_expiry(self, ctx, clock):
        """An approval after the deadline expires the request instead."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        clock.advance(hours=73)

        with pytest.raises(InvalidTransition):
            ctx.orchestrator.submit_approval(request.request_id, "lead-bob")
        assert ctx.requests.require(request.request_id).state == RequestState.EXPIRED

    def test_sweep_expired(self, ctx, clock):
        """The sweep expires only overdue requests."""
        old = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        clock.advance(hours=48)
        fresh = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        clock.advance(hours=25)

        assert ctx.orchestrator.sweep_expired() == [old.request_id]
        assert ctx.requests.require(fresh.request_id).state == RequestState.AWAITING_APPROVAL

    def test_deny(self, ctx, chat):
        """Denial is terminal and announced."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        denied = ctx.orchestrator.deny(request.request_id, "sec-carol", "not this week")

        assert denied.state == RequestState.DENIED
        assert any("not this week" in m["card"].text for m in chat.messages.values())
        with pytest.raises(InvalidTransition):
            ctx.orchestrator.submit_approval(request.request_id, "lead-bob")

    def test_deny_needs_a_required_role(self, ctx):
        """Only a holder of a required role can deny."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        with pytest.raises(PolicyDenied):
            ctx.orchestrator.deny(request.request_id, "gov-alice")

    def test_approval_refused_while_request_locked(self, ctx):
        """An approval arriving while another event holds the request is refused and changes nothing."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")

        with request_lock(ctx.state_dir, request.request_id):
            with pytest.raises(ConcurrentModification):
                ctx.orchestrator.submit_approval(request.request_id, "lead-bob")

        stored = ctx.requests.require(request.request_id)
        assert stored.received_approvals == {}
        assert stored.state == RequestState.AWAITING_APPROVAL
        assert list(ctx.ledger.entries(subject_id=request.request_id, action=LedgerAction.APPROVE)) == []

    def test_concurrent_approvals_both_counted(self, ctx):
        """Approvals for different roles racing each other are both recorded exactly once."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        start = threading.Barrier(2)
        errors = []

        def approve(approver):
            start.wait()
            for _ in range(20):
                try:
                    ctx.orchestrator.submit_approval(request.request_id, approver)
                    return
                except ConcurrentModification:
                    continue
                except Exception as e:
                    errors.append(e)
                    return

        workers = [threading.Thread(target=approve, args=(a,)) for a in ("lead-bob", "sec-carol")]
        for w in workers:
            w.start()
        for w in workers:
            w.join()

        assert errors == []
        done = ctx.requests.require(request.request_id)
        assert done.received_approvals == {"tech-lead": "lead-bob", "security": "sec-carol"}
        assert done.state == RequestState.APPROVED
        approvals = list(ctx.ledger.entries(subject_id=request.request_id, action=LedgerAction.APPROVE))
        assert len(approvals) == 2


class TestExecute:
    """Tests for Orchestrator.execute()."""

    def test_confirmed(self, ctx):
        """A successful execution confirms the request."""
        executor = FakeExecutor()
        ctx.orchestrator.executors["release"] = executor
        request = approved(ctx)

        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.CONFIRMED
        assert done.result == {"ok": True}
        assert executor.executed == [request.request_id]
        assert [h["trigger"] for h in done.history][-2:] == ["start_execution", "confirm"]

    def test_failure_rolls_back(self, ctx, chat):
        """A failed execution rolls back and records the failure."""
        executor = FakeExecutor(PlatformUnavailable("42", "GitHub down"))
        ctx.orchestrator.executors["release"] = executor
        request = approved(ctx)

        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.ROLLED_BACK
        assert done.result["error"]["error"] == "PlatformUnavailable"
        assert done.result["rollback"] == {"undone": 1}
        assert executor.rolled_back == [1]
        rollback = list(ctx.ledger.entries(subject_id=request.request_id, action=LedgerAction.ROLLBACK))
        assert rollback[0].outcome == Outcome.FAILED

    def test_unexpected_error_rolls_back(self, ctx):
        """An executor raising outside the error kinds still ends rolled back, not stuck executing."""
        executor = FakeExecutor(RuntimeError("boom"))
        ctx.orchestrator.executors["release"] = executor
        request = approved(ctx)

        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.ROLLED_BACK
        assert done.result["error"]["message"] == "RuntimeError: boom"
        assert executor.rolled_back == [1]
        assert ctx.requests.require(request.request_id).state == RequestState.ROLLED_BACK

    def test_rollback_error_recorded(self, ctx):
        """A rollback that itself raises is reported in the result."""
        executor = FakeExecutor(PlatformUnavailable("42", "GitHub down"))
        executor.rollback = MagicMock(side_effect=KeyError("step"))
        ctx.orchestrator.executors["release"] = executor
        request = approved(ctx)

        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.ROLLED_BACK
        assert done.result["rollback"]["failed"]["error"] == "KeyError"

    def test_not_approved(self, ctx):
        """Only approved requests execute."""
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        with pytest.raises(InvalidTransition):
            ctx.orchestrator.execute(request.request_id, "lead-bob")

    def test_cannot_execute_twice(self, ctx):
        """A confirmed request cannot execute again."""
        ctx.orchestrator.executors["release"] = FakeExecutor()
        request = approved(ctx)
        ctx.orchestrator.execute(request.request_id, "lead-bob")
        with pytest.raises(InvalidTransition):
            ctx.orchestrator.execute(request.request_id, "lead-bob")

    def test_handle_event_auto_executes(self, ctx):
        """The approval that completes the roles can execute at once."""
        ctx.orchestrator.executors["release"] = FakeExecutor()
        request = ctx.orchestrator.propose(MINOR_RELEASE, "alice")
        ctx.orchestrator.handle_event(RequestEvent("approve", request.request_id, "lead-bob"), auto_execute=True)
        done = ctx.orchestrator.handle_event(RequestEvent("approve", request.request_id, "sec-carol"), auto_execute=True)
        assert done.state == RequestState.CONFIRMED

    def test_unknown_event(self, ctx):
        """Unknown event types are rejected."""
        with pytest.raises(ValidationError):
            ctx.orchestrator.handle_event(RequestEvent("bless", "REQ-1", "alice"))


class TestReleaseExecutor:
    """Releases merge only with green checks."""

    @pytest.fixture
    def scm(self):
        scm = MagicMock()
        scm.get_status.return_value = PRStatus(state="open", checks="success", reviews=[])
        scm.merge.return_value = "Merged"
        return scm

    def test_merges(self, make_ctx, scm):
        """An approved release with green checks is merged."""
        ctx = make_ctx(scm_override=scm)
        request = approved(ctx)
        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.CONFIRMED
        scm.merge.assert_called_once_with("42")
        assert done.result["merged"] is True

    def test_failing_checks_request_changes(self, make_ctx, scm):
        """Failing checks turn into a change request and a rollback."""
        scm.get_status.return_value = PRStatus(state="open", checks="failure", reviews=[])
        ctx = make_ctx(scm_override=scm)
        request = approved(ctx)
        done = ctx.orchestrator.execute(request.request_id, "lead-bob")

        assert done.state == RequestState.ROLLED_BACK
        scm.merge.assert_not_called()
        scm.request_changes.assert_called_once()
        assert scm.request_changes.call_args.args[:2] == ("42", "alice")


class TestDestructiveExecutor:
    """Archiving a topic moves it to the archive stream."""

    def test_archive(self, ctx, chat):
        """Archiving renames into the archive stream and audits keep it there."""
        ctx.audit_engine().run()
        subject = Subject("destructive", {"topic_id": "101"}, "Archive topic 101")
        request = ctx.orchestrator.propose(subject, "alice", category="sec")
        ctx.orchestrator.submit_approval(request.request_id, "owner-dan")
        ctx.orchestrator.submit_approval(request.request_id, "sec-carol")

        done = ctx.orchestrator.execute(request.request_id, "owner-dan")

        assert done.state == RequestState.CONFIRMED
        assert chat.topics["101"].title == "🗄️ archive-security-discussion"
        assert ctx.topics.require("101").category == "archive"

        report = ctx.audit_engine().run()
        assert "101" not in [i.topic_id for i in report.items]
        assert ctx.topics.require("101").category == "archive"

    def test_rename_failure_rolls_back(self, ctx, chat):
        """A failure after the rename restores the original title."""
        ctx.audit_engine().run()
        chat.fail_topics["unpin"] = {"101"}
        subject = Subject("destructive", {"topic_id": "101"})
        request = ctx.orchestrator.propose(subject, "alice", category="sec")
        ctx.orchestrator.submit_approval(request.request_id, "owner-dan")
        ctx.orchestrator.submit_approval(request.request_id, "sec-carol")

        done = ctx.orchestrator.execute(request.request_id, "owner-dan")

        assert done.state == RequestState.ROLLED_BACK
        assert chat.topics["101"].title == "Security Discussion"
        assert done.result["rollback"] == {"topic_id": "101", "restored": "Security Discussion"}
        assert ctx.topics.require("101").category == "sec"
