"""Tests for steward.adapters.github module."""

import json
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from steward.adapters.github import (
    CHECKS_FAILURE,
    CHECKS_PENDING,
    CHECKS_SUCCESS,
    GitHubSourceControl,
    summarize_checks,
)
from steward.lib.errors import NotFound, PlatformUnavailable, ValidationError


def completed(stdout="", returncode=0, stderr=""):
    return MagicMock(returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def scm(tmp_path):
    return GitHubSourceControl(tmp_path, timeout_seconds=5)


class TestSummarizeChecks:
    """Tests for summarize_checks()."""

    def test_no_checks(self):
        """No checks gives no summary."""
        assert summarize_checks([]) is None

    def test_all_green(self):
        """Success and skipped checks count as green."""
        assert summarize_checks([{"conclusion": "SUCCESS"}, {"state": "SUCCESS"}, {"conclusion": "SKIPPED"}]) == CHECKS_SUCCESS

    def test_any_failure(self):
        """Any failed check fails the summary."""
        assert summarize_checks([{"conclusion": "SUCCESS"}, {"conclusion": "FAILURE"}]) == CHECKS_FAILURE

    def test_in_progress(self):
        """A pending check keeps the summary pending."""
        assert summarize_checks([{"conclusion": "SUCCESS"}, {"state": "PENDING"}]) == CHECKS_PENDING


class TestGitHubSourceControl:
    """Tests for GitHubSourceControl."""

    def test_get_status(self, scm):
        """PR state, checks and reviews are read from gh pr view."""
        payload = {
            "state": "OPEN",
            "reviewDecision": "APPROVED",
            "statusCheckRollup": [{"conclusion": "SUCCESS"}],
            "reviews": [{"author": {"login": "bob"}, "state": "APPROVED"}],
        }
        with patch("steward.adapters.github.subprocess.run", return_value=completed(json.dumps(payload))) as run:
            status = scm.get_status("42")

        assert status.state == "open"
        assert status.checks == CHECKS_SUCCESS
        assert status.reviews == [{"author": "bob", "state": "APPROVED"}]
        assert status.review_decision == "APPROVED"
        args = run.call_args.args[0]
        assert args[:4] == ["gh", "pr", "view", "42"]
        assert run.call_args.kwargs["cwd"] == str(scm.repo_path)
        assert run.call_args.kwargs["timeout"] == 5

    def test_merge(self, scm):
        """merge runs gh pr merge and returns its output."""
        with patch("steward.adapters.github.subprocess.run", return_value=completed("Merged #42\n")) as run:
            assert scm.merge("42") == "Merged #42"
        assert run.call_args.args[0] == ["gh", "pr", "merge", "42", "--merge"]

    def test_approve_carries_reviewer(self, scm):
        """An approval review names the approver in its body."""
        with patch("steward.adapters.github.subprocess.run", return_value=completed()) as run:
            scm.approve("42", "lead-bob")
        args = run.call_args.args[0]
        assert "--approve" in args
        assert "lead-bob" in args[-1]

    def test_request_changes(self, scm):
        """A change request carries the reason."""
        with patch("steward.adapters.github.subprocess.run", return_value=completed()) as run:
            scm.request_changes("42", "alice", "checks failed")
        args = run.call_args.args[0]
        assert "--request-changes" in args
        assert args[-1].startswith("checks failed")

    def test_not_found(self, scm):
        """A missing PR is NotFound."""
        result = completed(returncode=1, stderr="GraphQL: Could not resolve to a PullRequest with the number of 999.")
        with patch("steward.adapters.github.subprocess.run", return_value=result):
            with pytest.raises(NotFound):
                scm.get_status("999")

    def test_rate_limited(self, scm):
        """Rate limiting is PlatformUnavailable."""
        result = completed(returncode=1, stderr="API rate limit exceeded")
        with patch("steward.adapters.github.subprocess.run", return_value=result):
            with pytest.raises(PlatformUnavailable):
                scm.merge("42")

    def test_other_failure(self, scm):
        """Other gh failures are validation errors."""
        result = completed(returncode=1, stderr="Pull request is not mergeable")
        with patch("steward.adapters.github.subprocess.run", return_value=result):
            with pytest.raises(ValidationError):
                scm.merge("42")

    def test_timeout(self, scm):
        """A gh timeout is PlatformUnavailable."""
        with patch("steward.adapters.github.subprocess.run", side_effect=subprocess.TimeoutExpired("gh", 5)):
            with pytest.raises(PlatformUnavailable):
                scm.get_status("42")

    def test_gh_missing(self, scm):
        """A missing gh binary is PlatformUnavailable."""
        with patch("steward.adapters.github.subprocess.run", side_effect=FileNotFoundError()):
            with pytest.raises(PlatformUnavailable):
                scm.merge("42")

    def test_invalid_json(self, scm):
        """Unparseable gh output is PlatformUnavailable."""
        with patch("steward.adapters.github.subprocess.run", return_value=completed("not json")):
            with pytest.raises(PlatformUnavailable):
                scm.get_status("42")

    def test_repo_path(self):
        """The adapter runs against the configured repository path."""
        assert GitHubSourceControl(Path("/repo")).repo_path == Path("/repo")
