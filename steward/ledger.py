"""
Append-only audit ledger.

One JSON object per line in <state_dir>/ledger.jsonl. The file is the source
of truth for "has this idempotent action already happened"; an in-memory
index by idempotency key is rebuilt incrementally from the file so several
processes can share it.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional

from steward.lib import validate
from steward.lib.errors import ConcurrentModification
from steward.lib.locking import file_lock
from steward.models import AuditLedgerEntry, LedgerAction, Outcome, utcnow

logger = logging.getLogger(__name__)

LEDGER_FILENAME = "ledger.jsonl"


class AuditLedger:
    """Append-only, idempotency-keyed record of every state-changing action."""

    def __init__(self, path: Path):
        self.path = path
        self._entries: list[AuditLedgerEntry] = []
        self._by_key: dict[str, list[AuditLedgerEntry]] = {}
        self._offset = 0
        self._lock = threading.RLock()

    @classmethod
    def in_state_dir(cls, state_dir: Path) -> "AuditLedger":
        return cls(state_dir / LEDGER_FILENAME)

    def _index(self, entry: AuditLedgerEntry) -> None:
        self._entries.append(entry)
        self._by_key.setdefault(entry.idempotency_key, []).append(entry)

    def _refresh(self) -> None:
        """Read lines appended since the last refresh."""
        if not self.path.exists():
            return
        with open(self.path, "rb") as f:
            f.seek(self._offset)
            chunk = f.read()
        # Only consume complete lines
        end = chunk.rfind(b"\n") + 1
        if end == 0:
            return
        for raw in chunk[:end].split(b"\n"):
            if not raw.strip():
                continue
            try:
                self._index(AuditLedgerEntry.from_dict(json.loads(raw.decode("utf-8"))))
            except (UnicodeDecodeError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"[LEDGER] Skipping corrupted line in {self.path}: {e}")
        self._offset += end

    def append(self, entry: AuditLedgerEntry) -> AuditLedgerEntry:
        """Append one entry.

        Raises:
            ConcurrentModification: a succeeded entry with the same key exists
            ValidationError: entry does not match the ledger schema
        """
        data = entry.to_dict()
        validate.validate_before_write(data, "ledger_entry", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        with self._lock, file_lock(self.path):
            self._refresh()
            if entry.outcome == Outcome.SUCCEEDED and self._succeeded(entry.idempotency_key):
                raise ConcurrentModification(
                    entry.subject_id,
                    f"{entry.action.value} already recorded as succeeded (key {entry.idempotency_key[:12]})",
                )
            line = json.dumps(data, ensure_ascii=False) + "\n"
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()
                os.fsync(f.fileno())
            self._refresh()

        logger.debug(f"[LEDGER] {entry.action.value} {entry.subject_id} -> {entry.outcome.value}")
        return entry

    def record(
        self,
        key: str,
        action: LedgerAction,
        subject_id: str,
        outcome: Outcome,
        actor: str,
        reason: str = "",
        before: Any = None,
        after: Any = None,
        timestamp: Optional[datetime] = None,
    ) -> AuditLedgerEntry:
        """Build and append an entry."""
        return self.append(AuditLedgerEntry(
            idempotency_key=key,
            timestamp=timestamp or utcnow(),
            actor=actor,
            action=action,
            subject_id=subject_id,
            outcome=outcome,
            before=before,
            after=after,
            reason=reason,
        ))

    def _succeeded(self, key: str) -> bool:
        return any(e.outcome == Outcome.SUCCEEDED for e in self._by_key.get(key, []))

    def has_succeeded(self, key: str) -> bool:
        with self._lock:
            self._refresh()
            return self._succeeded(key)

    def find(self, key: str) -> list[AuditLedgerEntry]:
        with self._lock:
            self._refresh()
            return list(self._by_key.get(key, []))

    def entries(
        self,
        subject_id: str | None = None,
        action: LedgerAction | None = None,
    ) -> Iterator[AuditLedgerEntry]:
        with self._lock:
            self._refresh()
            snapshot = list(self._entries)
        for entry in snapshot:
            if subject_id is not None and entry.subject_id != subject_id:
                continue
            if action is not None and entry.action != action:
                continue
            yield entry
