"""Tests for steward.lib.locking and steward.lib.retry modules."""

import pytest

from steward.lib.errors import ConcurrentModification, NotFound, PlatformUnavailable
from steward.lib.locking import request_lock, topic_lock, topic_locks
from steward.lib.retry import RetryPolicy, call_with_retry


def assert_held(acquire):
    """Fail unless acquiring the lock right now is refused."""
    with pytest.raises(ConcurrentModification):
        with acquire():
            pass


class TestLocks:
    """Tests for per-key locks."""

    def test_same_key_contended(self, tmp_path):
        """A second holder of the same topic lock is refused."""
        with topic_lock(tmp_path, "101"):
            with pytest.raises(ConcurrentModification) as exc:
                with topic_lock(tmp_path, "101", retry_delay=0):
                    pass
        assert exc.value.identifier == "101"

    def test_different_keys_independent(self, tmp_path):
        """Locks on different topics do not block each other."""
        with topic_lock(tmp_path, "101"):
            with topic_lock(tmp_path, "102", retry_delay=0):
                pass

    def test_topic_and_request_namespaces_separate(self, tmp_path):
        """A topic and a request sharing an id lock independently."""
        with topic_lock(tmp_path, "1"):
            with request_lock(tmp_path, "1", retry_delay=0):
                pass

    def test_released_after_block(self, tmp_path):
        """The lock is refused while held and free once the block exits."""
        with request_lock(tmp_path, "REQ-1"):
            assert_held(lambda: request_lock(tmp_path, "REQ-1", retry_delay=0))
        with request_lock(tmp_path, "REQ-1", retry_delay=0):
            pass

    def test_released_on_error(self, tmp_path):
        """An exception inside the block still releases the lock."""
        with pytest.raises(RuntimeError):
            with topic_lock(tmp_path, "101"):
                raise RuntimeError("boom")
        with topic_lock(tmp_path, "101", retry_delay=0):
            pass

    def test_unsafe_key_characters(self, tmp_path):
        """Path separators in a key cannot escape the lock directory."""
        with topic_lock(tmp_path, "../etc/passwd"):
            pass
        assert list((tmp_path / "locks" / "topics").iterdir())[0].name == ".._etc_passwd.lock"


class TestTopicLocks:
    """Tests for topic_locks()."""

    def test_holds_every_topic(self, tmp_path):
        """Each listed topic is locked for the duration of the block."""
        with topic_locks(tmp_path, ["102", "101", "101"]):
            assert_held(lambda: topic_lock(tmp_path, "101", retry_delay=0))
            assert_held(lambda: topic_lock(tmp_path, "102", retry_delay=0))
        with topic_locks(tmp_path, ["101", "102"], retry_delay=0):
            pass

    def test_one_busy_topic_fails_all(self, tmp_path):
        """If one topic is held elsewhere the block never runs and no lock is kept."""
        ran = []
        with topic_lock(tmp_path, "102"):
            with pytest.raises(ConcurrentModification) as exc:
                with topic_locks(tmp_path, ["101", "102", "103"], retry_delay=0):
                    ran.append(True)
        assert exc.value.identifier == "102"
        assert ran == []
        with topic_lock(tmp_path, "101", retry_delay=0):
            pass

    def test_empty(self, tmp_path):
        """No topics means no locks and the block still runs."""
        with topic_locks(tmp_path, []):
            pass


class TestRetry:
    """Tests for call_with_retry()."""

    def test_retries_platform_unavailable(self):
        """Transient platform errors are retried with growing delays."""
        attempts = []
        sleeps = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise PlatformUnavailable("chat", "503")
            return "ok"

        policy = RetryPolicy(max_attempts=3, base_delay=0.5, backoff_factor=2.0)
        assert call_with_retry(flaky, "flaky", policy, sleep=sleeps.append) == "ok"
        assert sleeps == [0.5, 1.0]

    def test_gives_up(self):
        """The last error surfaces once attempts run out."""
        sleeps = []

        def down():
            raise PlatformUnavailable("chat", "down")

        with pytest.raises(PlatformUnavailable):
            call_with_retry(down, "down", RetryPolicy(max_attempts=2), sleep=sleeps.append)
        assert len(sleeps) == 1

    def test_other_errors_not_retried(self):
        """Non-retryable error kinds propagate on the first attempt."""
        attempts = []

        def missing():
            attempts.append(1)
            raise NotFound("101", "gone")

        with pytest.raises(NotFound):
            call_with_retry(missing, "missing", RetryPolicy(max_attempts=5), sleep=lambda s: None)
        assert len(attempts) == 1

    def test_contention_not_retried(self):
        """Lock contention is reported, not retried."""
        attempts = []

        def busy():
            attempts.append(1)
            raise ConcurrentModification("REQ-1", "busy")

        with pytest.raises(ConcurrentModification):
            call_with_retry(busy, "busy", RetryPolicy(max_attempts=3), sleep=lambda s: None)
        assert len(attempts) == 1

    def test_foreign_errors_propagate(self):
        """Exceptions outside the error taxonomy are not retried."""
        attempts = []

        def broken():
            attempts.append(1)
            raise KeyError("result")

        with pytest.raises(KeyError):
            call_with_retry(broken, "broken", RetryPolicy(max_attempts=3), sleep=lambda s: None)
        assert len(attempts) == 1

    def test_delay_capped(self):
        """Backoff never exceeds max_delay."""
        policy = RetryPolicy(base_delay=1.0, backoff_factor=10.0, max_delay=5.0)
        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(3) == 5.0
