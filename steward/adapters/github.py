"""
Source-control adapter for release subjects.

Talks to GitHub through the gh CLI. gh acts as the authenticated account;
the reviewer recorded by steward is carried in the review body.
"""

import json
import logging
import subprocess
from pathlib import Path
from typing import NamedTuple

from steward.lib.errors import NotFound, PlatformUnavailable, ValidationError

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

CHECKS_SUCCESS = "success"
CHECKS_FAILURE = "failure"
CHECKS_PENDING = "pending"


class PRStatus(NamedTuple):
    """GitHub PR status information."""
    state: str  # "open", "closed", "merged"
    checks: str | None  # "success", "failure", "pending", None when no checks
    reviews: list[dict]  # [{"author": ..., "state": "APPROVED" | "CHANGES_REQUESTED" | ...}]
    review_decision: str | None = None


def summarize_checks(rollup: list[dict]) -> str | None:
    """Collapse a statusCheckRollup into one status."""
    if not rollup:
        return None
    states = [(c.get("conclusion") or c.get("state") or "").lower() for c in rollup]
    if all(s in ("success", "completed", "neutral", "skipped") for s in states):
        return CHECKS_SUCCESS
    if any(s in ("failure", "failed", "error", "cancelled", "timed_out") for s in states):
        return CHECKS_FAILURE
    return CHECKS_PENDING


class GitHubSourceControl:
    """Approve / request changes / merge / status for pull requests."""

    def __init__(self, repo_path: Path, timeout_seconds: float = GH_TIMEOUT_SECONDS):
        self.repo_path = repo_path
        self.timeout_seconds = timeout_seconds

    def _gh(self, args: list[str], pr_id: str) -> str:
        try:
            result = subprocess.run(
                ["gh", *args],
                capture_output=True,
                text=True,
                cwd=str(self.repo_path),
                timeout=self.timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            raise PlatformUnavailable(pr_id, f"gh {args[0]} {args[1]} timed out") from None
        except FileNotFoundError:
            raise PlatformUnavailable(pr_id, "GitHub CLI (gh) not found") from None
        except subprocess.SubprocessError as e:
            raise PlatformUnavailable(pr_id, f"gh failed: {e}") from None

        if result.returncode != 0:
            stderr = result.stderr.strip()
            lowered = stderr.lower()
            if "could not resolve" in lowered or "not found" in lowered:
                raise NotFound(pr_id, stderr or "Pull request not found")
            if "rate limit" in lowered or "timeout" in lowered or "502" in lowered or "503" in lowered:
                raise PlatformUnavailable(pr_id, stderr)
            raise ValidationError(pr_id, stderr or f"gh exited {result.returncode}")
        return result.stdout

    def approve(self, pr_id: str, reviewer: str) -> None:
        self._gh(["pr", "review", str(pr_id), "--approve",
                  "--body", f"Approved via steward on behalf of {reviewer}"], pr_id)
        logger.info(f"PR #{pr_id} approved for {reviewer}")

    def request_changes(self, pr_id: str, reviewer: str, message: str) -> None:
        self._gh(["pr", "review", str(pr_id), "--request-changes",
                  "--body", f"{message}\n\n(requested via steward by {reviewer})"], pr_id)
        logger.info(f"PR #{pr_id} changes requested by {reviewer}")

    def merge(self, pr_id: str) -> str:
        output = self._gh(["pr", "merge", str(pr_id), "--merge"], pr_id)
        logger.info(f"PR #{pr_id} merged")
        return output.strip()

    def get_status(self, pr_id: str) -> PRStatus:
        output = self._gh(["pr", "view", str(pr_id),
                           "--json", "state,reviewDecision,statusCheckRollup,reviews"], pr_id)
        try:
            data = json.loads(output)
        except json.JSONDecodeError:
            raise PlatformUnavailable(pr_id, "Invalid JSON from gh") from None

        reviews = [
            {"author": (r.get("author") or {}).get("login", "reviewer"), "state": r.get("state", "")}
            for r in data.get("reviews", [])
        ]
        return PRStatus(
            state=data.get("state", "").lower(),
            checks=summarize_checks(data.get("statusCheckRollup") or []),
            reviews=reviews,
            review_decision=data.get("reviewDecision"),
        )
