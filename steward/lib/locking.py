"""
Per-key locks for topics and approval requests.

Uses flock on one lock file per key so that operations on the same topic or
request serialize across threads and processes sharing the state directory,
while different keys proceed in parallel.
"""

import fcntl
import os
import re
import time
from contextlib import ExitStack, contextmanager
from pathlib import Path

from steward.lib.errors import ConcurrentModification

# Contention is retried once after this delay, then surfaced
RETRY_DELAY_SECONDS = 0.25

_UNSAFE_KEY_CHARS = re.compile(r'[^A-Za-z0-9_.-]')


def _lock_name(key: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", key)


@contextmanager
def _acquire_lock(lock_file: Path, identifier: str, retry_delay: float):
    """
    Internal helper to acquire a file lock.

    Lock files are never deleted: removing one while another process holds an
    open descriptor would let two holders lock different inodes at one path.

    Args:
        lock_file: Path to the lock file
        identifier: Topic or request id, for the error
        retry_delay: Seconds to wait before the single retry
    """
    lock_file.parent.mkdir(parents=True, exist_ok=True)

    fd = open(lock_file, 'a+')
    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            time.sleep(retry_delay)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                raise ConcurrentModification(
                    identifier, "another operation is in progress for this key"
                ) from None

        fd.seek(0)
        fd.truncate()
        fd.write(f"{os.getpid()}\n")
        fd.flush()
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        fd.close()


@contextmanager
def topic_lock(state_dir: Path, topic_id: str, retry_delay: float = RETRY_DELAY_SECONDS):
    """Serialize mutations of a single topic."""
    lock_file = state_dir / "locks" / "topics" / f"{_lock_name(topic_id)}.lock"
    with _acquire_lock(lock_file, topic_id, retry_delay):
        yield


@contextmanager
def topic_locks(state_dir: Path, topic_ids, retry_delay: float = RETRY_DELAY_SECONDS):
    """Hold the locks of several topics at once, taken in sorted order.

    Raises ConcurrentModification before the block runs if any one of them
    is held elsewhere; locks already taken are released.
    """
    with ExitStack() as stack:
        for topic_id in sorted(set(topic_ids)):
            stack.enter_context(topic_lock(state_dir, topic_id, retry_delay))
        yield


@contextmanager
def request_lock(state_dir: Path, request_id: str, retry_delay: float = RETRY_DELAY_SECONDS):
    """Serialize events for a single approval request."""
    lock_file = state_dir / "locks" / "requests" / f"{_lock_name(request_id)}.lock"
    with _acquire_lock(lock_file, request_id, retry_delay):
        yield


@contextmanager
def file_lock(path: Path):
    """Blocking exclusive lock guarding appends to a shared file."""
    lock_file = path.with_name(path.name + ".lock")
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, 'a+') as fd:
        fcntl.flock(fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
