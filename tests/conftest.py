"""Shared fixtures for steward tests."""

from datetime import datetime, timedelta, timezone

import pytest
import yaml

from steward.adapters.chat import InMemoryChatPlatform
from steward.lib.config import load_config
from steward.lib.context import StewardContext
from steward.models import TopicSnapshot

APPROVERS = {
    "gov-alice": ["governance"],
    "lead-bob": ["tech-lead"],
    "sec-carol": ["security"],
    "owner-dan": ["owner"],
    "both-erin": ["tech-lead", "security"],
}

REPORT_TOPIC_ID = "900"


class FixedClock:
    """Clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def write_config(tmp_path, overrides: dict | None = None):
    data = {
        "state_dir": str(tmp_path / "state"),
        "retry": {"max_attempts": 2, "base_delay": 0, "max_delay": 0},
        "chat": {"report_topic_id": REPORT_TOPIC_ID},
        "approvals": {"approvers": APPROVERS},
    }
    data.update(overrides or {})
    path = tmp_path / "steward.yaml"
    path.write_text(yaml.safe_dump(data, allow_unicode=True))
    return path


def sample_topics() -> list[TopicSnapshot]:
    return [
        TopicSnapshot("101", "sec", "Security Discussion", reply_count=4, view_count=30),
        TopicSnapshot("102", "sec", "🛡️ sec-security-discussion"),
        TopicSnapshot(REPORT_TOPIC_ID, "governance", "🏛️ governance-reports"),
    ]


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for var in ("STEWARD_STATE_DIR", "STEWARD_CONFIG", "STEWARD_ACTOR", "TELEGRAM_BOT_TOKEN"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def chat():
    return InMemoryChatPlatform(sample_topics())


@pytest.fixture
def make_ctx(tmp_path, chat, clock):
    """Build a StewardContext over tmp_path; config overrides are merged into the YAML."""
    def make(config: dict | None = None, **kwargs) -> StewardContext:
        kwargs.setdefault("chat_override", chat)
        kwargs.setdefault("clock", clock)
        return StewardContext(load_config(write_config(tmp_path, config)), **kwargs)
    return make


@pytest.fixture
def ctx(make_ctx):
    return make_ctx()
