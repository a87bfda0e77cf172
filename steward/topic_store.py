"""
Topic Store: one JSON record per known chat topic.

The chat platform stays the source of truth for titles; this is a
lag-tolerant materialized view refreshed by every audit.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional

from steward.lib.errors import NotFound
from steward.lib.validate import write_json_atomic
from steward.models import Topic

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r'[^A-Za-z0-9_.-]')


class TopicStore:

    def __init__(self, root: Path):
        self.root = root

    @classmethod
    def in_state_dir(cls, state_dir: Path) -> "TopicStore":
        return cls(state_dir / "topics")

    def _path(self, topic_id: str) -> Path:
        return self.root / f"{_UNSAFE.sub('_', topic_id)}.json"

    def get(self, topic_id: str) -> Optional[Topic]:
        path = self._path(topic_id)
        if not path.exists():
            return None
        return Topic.from_dict(json.loads(path.read_text()))

    def require(self, topic_id: str) -> Topic:
        topic = self.get(topic_id)
        if topic is None:
            raise NotFound(topic_id, "Topic not found in store (run an audit first)")
        return topic

    def save(self, topic: Topic) -> None:
        write_json_atomic(topic.to_dict(), "topic", self._path(topic.topic_id))

    def list(self, category: str | None = None) -> list[Topic]:
        if not self.root.exists():
            return []
        topics = []
        for path in sorted(self.root.glob("*.json")):
            try:
                topic = Topic.from_dict(json.loads(path.read_text()))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable topic record {path.name}: {e}")
                continue
            if category is None or topic.category == category:
                topics.append(topic)
        return topics
