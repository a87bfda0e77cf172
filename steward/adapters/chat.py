"""
Chat platform adapters.

ChatPlatform is the boundary the audit/polish engines and the orchestrator
talk to. Implementations raise PlatformUnavailable for transport failures and
timeouts so callers can retry, and NotFound for unknown topics.
"""

import json
import logging
import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from steward.cards import Card
from steward.lib.errors import NotFound, PlatformUnavailable, ValidationError
from steward.models import TopicSnapshot

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class ChatPlatform(ABC):

    @abstractmethod
    def list_topics(self, category: str | None = None) -> list[TopicSnapshot]:
        ...

    @abstractmethod
    def rename_topic(self, topic_id: str, new_name: str) -> None:
        ...

    @abstractmethod
    def send_interactive_card(self, topic_id: str, card: Card) -> str:
        """Post a card, return its message id."""

    @abstractmethod
    def pin_message(self, topic_id: str, card: Card) -> str:
        """Post a card and pin it, return its message id."""

    @abstractmethod
    def create_topic(self, category: str, name: str) -> TopicSnapshot:
        """Open a new topic in the stream, return its snapshot."""

    @abstractmethod
    def unpin_all(self, topic_id: str) -> None:
        ...

    @abstractmethod
    def deep_link(self, topic_id: str) -> str:
        ...


def _load_snapshot(path: Path) -> list[TopicSnapshot]:
    data = json.loads(path.read_text())
    return [TopicSnapshot(**t) for t in data.get("topics", [])]


def _write_snapshot(path: Path, topics: list[TopicSnapshot]) -> None:
    payload = {"topics": [vars(t) for t in topics]}
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    tmp.replace(path)


def _thread_id(topic_id: str) -> int:
    if not str(topic_id).isdigit():
        raise ValidationError(str(topic_id), "Forum topic ids must be numeric message thread ids")
    return int(topic_id)


class InMemoryChatPlatform(ChatPlatform):
    """Chat platform held in process memory, optionally backed by a snapshot file.

    Failures can be injected per operation and topic for exercising retries:
    fail_topics maps an operation name ("rename", "pin", "unpin", "send")
    to topic ids that raise PlatformUnavailable.
    """

    def __init__(self, topics: list[TopicSnapshot] | None = None,
                 snapshot_path: Path | None = None, chat_id: str = "local"):
        self.topics: dict[str, TopicSnapshot] = {t.topic_id: t for t in topics or []}
        self.snapshot_path = snapshot_path
        self.chat_id = chat_id
        self.messages: dict[str, dict] = {}
        self.pins: dict[str, list[str]] = {}
        self.calls: list[tuple] = []
        self.fail_topics: dict[str, set[str]] = {}
        self.unavailable = False
        self._next_id = 1
        self._lock = threading.Lock()

    @classmethod
    def from_snapshot(cls, path: Path, chat_id: str = "local") -> "InMemoryChatPlatform":
        topics = _load_snapshot(path) if path.exists() else []
        return cls(topics, snapshot_path=path, chat_id=chat_id)

    def _check(self, op: str, topic_id: str | None = None) -> None:
        self.calls.append((op, topic_id))
        if self.unavailable:
            raise PlatformUnavailable(topic_id or "chat", f"{op}: platform unavailable")
        if topic_id is not None and topic_id in self.fail_topics.get(op, set()):
            raise PlatformUnavailable(topic_id, f"{op}: injected failure")
        if topic_id is not None and op != "list" and topic_id not in self.topics:
            raise NotFound(topic_id, "Topic does not exist on the platform")

    def _persist(self) -> None:
        if self.snapshot_path is None:
            return
        try:
            _write_snapshot(self.snapshot_path, list(self.topics.values()))
        except OSError as e:
            raise PlatformUnavailable("chat", f"Topic snapshot not writable: {e}") from None

    def list_topics(self, category: str | None = None) -> list[TopicSnapshot]:
        self._check("list")
        return [
            TopicSnapshot(**vars(t)) for t in self.topics.values()
            if category is None or t.category == category
        ]

    def rename_topic(self, topic_id: str, new_name: str) -> None:
        with self._lock:
            self._check("rename", topic_id)
            self.topics[topic_id].title = new_name
            self._persist()

    def send_interactive_card(self, topic_id: str, card: Card) -> str:
        with self._lock:
            self._check("send", topic_id)
            message_id = str(self._next_id)
            self._next_id += 1
            self.messages[message_id] = {"topic_id": topic_id, "card": card}
            return message_id

    def pin_message(self, topic_id: str, card: Card) -> str:
        message_id = self.send_interactive_card(topic_id, card)
        with self._lock:
            self._check("pin", topic_id)
            self.pins.setdefault(topic_id, []).append(message_id)
        return message_id

    def create_topic(self, category: str, name: str) -> TopicSnapshot:
        with self._lock:
            self._check("create")
            numeric = [int(t) for t in self.topics if t.isdigit()]
            topic = TopicSnapshot(str(max(numeric, default=0) + 1), category, name)
            self.topics[topic.topic_id] = topic
            self._persist()
            return TopicSnapshot(**vars(topic))

    def unpin_all(self, topic_id: str) -> None:
        with self._lock:
            self._check("unpin", topic_id)
            self.pins[topic_id] = []

    def deep_link(self, topic_id: str) -> str:
        return f"https://t.me/c/{self.chat_id}/{topic_id}"


class TelegramChatPlatform(ChatPlatform):
    """Telegram forum supergroup through the Bot API.

    The Bot API cannot enumerate forum topics, so list_topics reads a snapshot
    file of {topic_id, category, title} records kept up to date from forum
    service messages; renames and new topics made here are written back to it.
    """

    def __init__(self, token: str, chat_id: str, snapshot_path: Path,
                 timeout_seconds: float = 10.0, client: httpx.Client | None = None):
        if not token:
            raise ValidationError("telegram", "TELEGRAM_BOT_TOKEN is not set")
        self.chat_id = chat_id
        self.snapshot_path = snapshot_path
        self._client = client or httpx.Client(
            base_url=f"{TELEGRAM_API_BASE}/bot{token}/",
            timeout=timeout_seconds,
        )
        self._snapshot_lock = threading.Lock()

    @classmethod
    def from_env(cls, chat_id: str, snapshot_path: Path, timeout_seconds: float = 10.0) -> "TelegramChatPlatform":
        return cls(os.environ.get("TELEGRAM_BOT_TOKEN", ""), chat_id, snapshot_path, timeout_seconds)

    def _call(self, method: str, payload: dict, subject: str) -> dict:
        try:
            response = self._client.post(method, json=payload)
        except httpx.TimeoutException:
            raise PlatformUnavailable(subject, f"{method} timed out") from None
        except httpx.TransportError as e:
            raise PlatformUnavailable(subject, f"{method} failed: {e}") from None

        if response.status_code == 429 or response.status_code >= 500:
            raise PlatformUnavailable(subject, f"{method} returned HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            raise PlatformUnavailable(subject, f"{method} returned invalid JSON") from None

        if not data.get("ok"):
            description = data.get("description", "unknown error")
            if "TOPIC_NOT_MODIFIED" in description:
                # Already has this name; a repeated rename is a no-op
                return {}
            if "not found" in description.lower() or "thread" in description.lower():
                raise NotFound(subject, f"{method}: {description}")
            raise ValidationError(subject, f"{method}: {description}")
        return data.get("result") or {}

    def _read_snapshot(self) -> list[TopicSnapshot]:
        try:
            topics = _load_snapshot(self.snapshot_path)
        except FileNotFoundError:
            raise PlatformUnavailable("chat", f"Topic snapshot {self.snapshot_path} not found") from None
        except (OSError, json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise PlatformUnavailable("chat", f"Topic snapshot unreadable: {e}") from None
        for t in topics:
            _thread_id(t.topic_id)
        return topics

    def _update_snapshot(self, change) -> None:
        """Apply change(topics) to the snapshot file under the snapshot lock."""
        with self._snapshot_lock:
            topics = self._read_snapshot()
            change(topics)
            try:
                _write_snapshot(self.snapshot_path, topics)
            except OSError as e:
                raise PlatformUnavailable("chat", f"Topic snapshot not writable: {e}") from None

    def list_topics(self, category: str | None = None) -> list[TopicSnapshot]:
        return [t for t in self._read_snapshot() if category is None or t.category == category]

    def rename_topic(self, topic_id: str, new_name: str) -> None:
        self._call("editForumTopic", {
            "chat_id": self.chat_id,
            "message_thread_id": _thread_id(topic_id),
            "name": new_name,
        }, topic_id)

        def apply(topics):
            for t in topics:
                if t.topic_id == topic_id:
                    t.title = new_name

        self._update_snapshot(apply)

    def send_interactive_card(self, topic_id: str, card: Card) -> str:
        payload = {
            "chat_id": self.chat_id,
            "message_thread_id": _thread_id(topic_id),
            "text": card.text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        if card.buttons:
            payload["reply_markup"] = {
                "inline_keyboard": [[b.to_dict() for b in row] for row in card.buttons]
            }
        result = self._call("sendMessage", payload, topic_id)
        return str(result.get("message_id"))

    def pin_message(self, topic_id: str, card: Card) -> str:
        message_id = self.send_interactive_card(topic_id, card)
        self._call("pinChatMessage", {
            "chat_id": self.chat_id,
            "message_id": int(message_id),
            "disable_notification": True,
        }, topic_id)
        return message_id

    def create_topic(self, category: str, name: str) -> TopicSnapshot:
        result = self._call("createForumTopic", {"chat_id": self.chat_id, "name": name}, category)
        topic = TopicSnapshot(str(result.get("message_thread_id")), category, result.get("name", name))
        self._update_snapshot(lambda topics: topics.append(topic))
        return topic

    def unpin_all(self, topic_id: str) -> None:
        self._call("unpinAllForumTopicMessages", {
            "chat_id": self.chat_id,
            "message_thread_id": _thread_id(topic_id),
        }, topic_id)

    def deep_link(self, topic_id: str) -> str:
        internal = str(self.chat_id).removeprefix("-100")
        return f"https://t.me/c/{internal}/{topic_id}"


def create_chat_platform(config) -> ChatPlatform:
    """Build the configured adapter."""
    chat = config.chat
    snapshot = Path(chat.snapshot_path) if chat.snapshot_path else config.state_dir / "topics_snapshot.json"
    if chat.adapter == "telegram":
        return TelegramChatPlatform.from_env(chat.chat_id, snapshot, chat.timeout_seconds)
    return InMemoryChatPlatform.from_snapshot(snapshot, chat_id=chat.chat_id or "local")
