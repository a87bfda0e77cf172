"""
Execute and rollback actions for approved requests, one per subject type.

An executor's execute() does the mutating work and returns a JSON-able
result. It records what it has done so far in `progress` so that rollback()
can undo exactly that much if a later step fails.
"""

import logging
from pathlib import Path

from steward.adapters.github import CHECKS_SUCCESS
from steward.lib.constants import ARCHIVE_STREAM
from steward.lib.errors import StewardError, ValidationError
from steward.lib.locking import topic_lock
from steward.lib.retry import RetryPolicy, call_with_retry
from steward.models import ApprovalRequest
from steward.polish import PolishMode

logger = logging.getLogger(__name__)


class RenameBatchExecutor:
    """Audit then apply polish for one stream (or all of them).

    Per-topic failures are reported in the result rather than failing the
    batch; only a failure of the batch itself (e.g. the platform cannot list
    topics) rolls the request back. Renames already applied stay applied.
    """

    def __init__(self, audit_engine_factory, polish_engine_factory):
        self.audit_engine_factory = audit_engine_factory
        self.polish_engine_factory = polish_engine_factory

    def execute(self, request: ApprovalRequest, progress: dict) -> dict:
        payload = request.subject.payload
        reason = payload.get("reason") or request.request_id
        report = self.audit_engine_factory().run(payload.get("category"))
        progress["audited"] = report.total
        result = self.polish_engine_factory().run(
            report, PolishMode.APPLY, reason, force=bool(payload.get("force", False)),
        )
        return {
            "audited": report.total,
            "renamed": result.renamed,
            "re_pinned": result.re_pinned,
            "skipped_already_done": result.skipped_already_done,
            "failed": result.failed,
            "failures": result.failures,
        }

    def rollback(self, request: ApprovalRequest, progress: dict, error: StewardError) -> dict | None:
        return None


class ReleaseExecutor:
    """Merge a release PR once its checks are green.

    Rollback requests changes on the PR with the failure, so the release
    cannot be merged by hand without someone reading why it was stopped.
    """

    def __init__(self, scm, retry: RetryPolicy | None = None):
        self.scm = scm
        self.retry = retry or RetryPolicy()

    def execute(self, request: ApprovalRequest, progress: dict) -> dict:
        pr_id = str(request.subject.payload.get("pr", ""))
        if not pr_id:
            raise ValidationError(request.request_id, "Release payload needs a 'pr'")

        status = call_with_retry(lambda: self.scm.get_status(pr_id), f"status PR #{pr_id}", self.retry)
        if status.checks != CHECKS_SUCCESS:
            raise ValidationError(pr_id, f"PR checks are '{status.checks or 'missing'}', not '{CHECKS_SUCCESS}'")
        progress["checks"] = status.checks

        output = call_with_retry(lambda: self.scm.merge(pr_id), f"merge PR #{pr_id}", self.retry)
        progress["merged"] = True
        logger.info(f"Merged PR #{pr_id} for {request.request_id}")
        return {"pr": pr_id, "merged": True, "output": output.strip()[:500]}

    def rollback(self, request: ApprovalRequest, progress: dict, error: StewardError) -> dict | None:
        pr_id = str(request.subject.payload.get("pr", ""))
        if not pr_id or progress.get("merged"):
            return None
        message = f"steward: release {request.request_id} stopped: {error.message}"
        call_with_retry(
            lambda: self.scm.request_changes(pr_id, request.proposer, message),
            f"request changes PR #{pr_id}", self.retry,
        )
        return {"pr": pr_id, "changes_requested": True}


class DestructiveExecutor:
    """Archive a topic: unpin everything and move it under the archive stream."""

    def __init__(self, chat, topics, normalizer, state_dir: Path, retry: RetryPolicy | None = None):
        self.chat = chat
        self.topics = topics
        self.normalizer = normalizer
        self.state_dir = state_dir
        self.retry = retry or RetryPolicy()

    def execute(self, request: ApprovalRequest, progress: dict) -> dict:
        topic_id = str(request.subject.payload.get("topic_id", ""))
        if not topic_id:
            raise ValidationError(request.request_id, "Destructive payload needs a 'topic_id'")

        with topic_lock(self.state_dir, topic_id):
            topic = self.topics.require(topic_id)
            before = topic.raw_title
            target = self.normalizer(ARCHIVE_STREAM, topic.raw_title)

            call_with_retry(lambda: self.chat.rename_topic(topic_id, target), f"rename {topic_id}", self.retry)
            progress["renamed_from"] = before
            progress["topic_id"] = topic_id
            call_with_retry(lambda: self.chat.unpin_all(topic_id), f"unpin {topic_id}", self.retry)

            topic.category = ARCHIVE_STREAM
            topic.raw_title = target
            topic.canonical_name = target
            topic.pinned_message_id = None
            self.topics.save(topic)

        logger.info(f"Archived topic {topic_id}: '{before}' -> '{target}'")
        return {"topic_id": topic_id, "before": before, "after": target}

    def rollback(self, request: ApprovalRequest, progress: dict, error: StewardError) -> dict | None:
        if "renamed_from" not in progress:
            return None
        topic_id = progress["topic_id"]
        previous = progress["renamed_from"]
        call_with_retry(lambda: self.chat.rename_topic(topic_id, previous), f"restore {topic_id}", self.retry)
        logger.info(f"Restored title of {topic_id} to '{previous}'")
        return {"topic_id": topic_id, "restored": previous}
