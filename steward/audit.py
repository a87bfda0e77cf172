"""
Audit Engine.

Reads the live topic list from the chat platform, reconciles it into the
Topic Store and reports which topics drift from their canonical names.
The platform is never mutated here.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from steward.lib.constants import ARCHIVE_STREAM
from steward.lib.errors import ValidationError
from steward.lib.locking import topic_locks
from steward.lib.retry import RetryPolicy, call_with_retry
from steward.models import (
    CapacityMetric,
    Topic,
    TopicMetadata,
    TopicSnapshot,
    format_ts,
    parse_ts,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class AuditItem:
    """A non-compliant topic and the name it should have."""
    topic_id: str
    category: str
    current_title: str
    target_name: str


@dataclass
class AuditReport:
    category: Optional[str]
    generated_at: datetime
    total: int = 0
    compliant: int = 0
    needs_polish: int = 0
    items: list[AuditItem] = field(default_factory=list)
    missing_pins: list[str] = field(default_factory=list)  # Compliant topics with no pinned card
    unmanaged: list[str] = field(default_factory=list)  # Topics in streams not configured

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "generated_at": format_ts(self.generated_at),
            "total": self.total,
            "compliant": self.compliant,
            "needs_polish": self.needs_polish,
            "items": [vars(i) for i in self.items],
            "missing_pins": list(self.missing_pins),
            "unmanaged": list(self.unmanaged),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuditReport":
        try:
            return cls(
                category=data.get("category"),
                generated_at=parse_ts(data["generated_at"]),
                total=data["total"],
                compliant=data["compliant"],
                needs_polish=data["needs_polish"],
                items=[AuditItem(**i) for i in data.get("items", [])],
                missing_pins=list(data.get("missing_pins", [])),
                unmanaged=list(data.get("unmanaged", [])),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError("audit-report", f"Malformed audit report: {e}") from None

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n")

    @classmethod
    def load(cls, path: Path) -> "AuditReport":
        if not path.exists():
            raise ValidationError(str(path), "Audit report file not found")
        try:
            return cls.from_dict(json.loads(path.read_text()))
        except json.JSONDecodeError as e:
            raise ValidationError(str(path), f"Invalid JSON: {e}") from None


LAST_REPORT_FILENAME = "last_audit.json"


class AuditEngine:

    def __init__(self, chat, topics, metrics, normalizer, streams: dict, state_dir: Path,
                 retry: RetryPolicy | None = None, clock: Callable[[], datetime] = utcnow):
        self.chat = chat
        self.topics = topics
        self.metrics = metrics
        self.normalizer = normalizer
        self.streams = streams
        self.state_dir = state_dir
        self.retry = retry or RetryPolicy()
        self.clock = clock

    def _reconcile(self, snapshot: TopicSnapshot, now: datetime) -> Topic:
        topic = self.topics.get(snapshot.topic_id)
        category = snapshot.category
        if topic is not None and topic.category == ARCHIVE_STREAM and ARCHIVE_STREAM in self.streams:
            category = ARCHIVE_STREAM
        canonical = self.normalizer(category, snapshot.title)
        if topic is None:
            logger.info(f"[AUDIT] New topic {snapshot.topic_id} in {category}")
            topic = Topic(
                topic_id=snapshot.topic_id,
                category=category,
                raw_title=snapshot.title,
                canonical_name=canonical,
                metadata=TopicMetadata(),
            )
        topic.category = category
        topic.raw_title = snapshot.title
        topic.canonical_name = canonical
        topic.metadata.reply_count = snapshot.reply_count
        topic.metadata.view_count = snapshot.view_count
        # Scores depend on time-varying inputs; a new cycle invalidates them
        topic.priority_score = None
        topic.last_audited_at = now
        return topic

    def run(self, category: str | None = None) -> AuditReport:
        """Audit all topics, or one stream.

        Every audited topic is locked for the whole read, reconcile and save,
        and all locks are taken before the first record is written.

        Raises:
            PlatformUnavailable: listing failed after retries; nothing is written
            ConcurrentModification: a topic is locked elsewhere; nothing is written
            ValidationError: category is not a configured stream
        """
        if category is not None and category not in self.streams:
            raise ValidationError(category, f"Unknown stream '{category}'")

        snapshots = call_with_retry(
            lambda: self.chat.list_topics(category),
            "list_topics",
            self.retry,
        )
        now = self.clock()

        report = AuditReport(category=category, generated_at=now)
        managed = []
        for snapshot in sorted(snapshots, key=lambda s: s.topic_id):
            if snapshot.category not in self.streams:
                logger.warning(f"[AUDIT] {snapshot.topic_id}: stream '{snapshot.category}' not configured, skipping")
                report.unmanaged.append(snapshot.topic_id)
                continue
            managed.append(snapshot)

        with topic_locks(self.state_dir, [s.topic_id for s in managed]):
            reconciled = [self._reconcile(s, now) for s in managed]

            for topic in reconciled:
                report.total += 1
                if topic.compliant:
                    report.compliant += 1
                    if topic.pinned_message_id is None:
                        report.missing_pins.append(topic.topic_id)
                else:
                    report.needs_polish += 1
                    report.items.append(AuditItem(
                        topic_id=topic.topic_id,
                        category=topic.category,
                        current_title=topic.raw_title,
                        target_name=topic.canonical_name,
                    ))

            for topic in reconciled:
                self.topics.save(topic)

        self._record_capacity(category, reconciled, now)
        report.save(self.state_dir / LAST_REPORT_FILENAME)

        logger.info(
            f"[AUDIT] {category or 'all streams'}: total={report.total} "
            f"compliant={report.compliant} needs_polish={report.needs_polish}"
        )
        return report

    def _record_capacity(self, category: str | None, topics: list[Topic], now: datetime) -> None:
        categories = [category] if category else sorted(self.streams)
        for slug in categories:
            count = sum(1 for t in topics if t.category == slug)
            self.metrics.record(CapacityMetric(
                category=slug,
                date=now.date(),
                active_count=count,
                limit=self.streams[slug].limit,
            ))


def load_last_report(state_dir: Path) -> AuditReport:
    return AuditReport.load(state_dir / LAST_REPORT_FILENAME)
