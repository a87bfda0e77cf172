"""
Configuration loader for steward.

Loads steward.yaml, validates it against the config schema and fills in
defaults for every section that is omitted.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from steward.lib import validate
from steward.lib.constants import (
    DEFAULT_CALLBACK_NAMESPACE,
    DEFAULT_CONFIG_PATH,
    DEFAULT_MAX_NAME_LENGTH,
    DEFAULT_MAX_TITLE_SLUG_LENGTH,
    DEFAULT_STATE_DIR,
)
from steward.lib.errors import ValidationError
from steward.lib.retry import RetryPolicy

logger = logging.getLogger(__name__)


@dataclass
class StreamConfig:
    """One category ("stream") of topics."""
    slug: str
    emoji: str
    limit: int
    escalation_contact: str = ""
    description: str = ""


@dataclass
class NamingConfig:
    max_name_length: int = DEFAULT_MAX_NAME_LENGTH
    max_title_slug_length: int = DEFAULT_MAX_TITLE_SLUG_LENGTH


@dataclass
class ChatConfig:
    adapter: str = "memory"
    chat_id: str = ""
    report_topic_id: Optional[str] = None
    timeout_seconds: float = 10.0
    snapshot_path: Optional[str] = None  # Topic list maintained from forum updates (telegram)


@dataclass
class SourceControlConfig:
    repo_path: str = "."
    timeout_seconds: float = 30.0


@dataclass
class ScoringConfig:
    stakeholder_saturation: int = 10  # Stakeholder count that scores 1.0
    dependency_saturation: int = 3
    deadline_window_days: float = 7.0  # Deadlines this close or closer score 1.0
    view_weight: float = 0.1  # One view counts as this many replies
    override_confidence_threshold: Optional[float] = None


@dataclass
class ForecastConfig:
    window: int = 30
    flat_slope_epsilon: float = 0.001  # Utilization change per day treated as flat


@dataclass
class RuleSpec:
    """A configured policy rule; kind selects the predicate."""
    id: str
    kind: str
    reason: str = ""
    params: dict = field(default_factory=dict)


DEFAULT_RULES = [
    RuleSpec(
        id="allow-governed-actions",
        kind="allow_actions",
        params={"actions": [
            "rename", "re-pin", "rename_batch", "release", "destructive",
            "deploy", "merge", "archive", "create_topic",
        ]},
    ),
    RuleSpec(id="known-stream", kind="known_category"),
    RuleSpec(id="name-length", kind="max_name_length"),
    RuleSpec(
        id="capacity-guard",
        kind="capacity_guard",
        params={"actions": ["create_topic"], "max_utilization": 1.0},
    ),
]

# Required approver roles per subject type. Releases are keyed by release kind.
DEFAULT_SUBJECT_ROLES = {
    "rename_batch": ["governance"],
    "destructive": ["owner", "security"],
    "release": {
        "patch": ["tech-lead"],
        "minor": ["tech-lead", "security"],
        "major": ["tech-lead", "security", "product"],
    },
}

DEFAULT_GATED_ACTIONS = {
    "polish": "rename_batch",
    "merge": "release",
    "archive": "destructive",
}

DEFAULT_STREAMS = {
    "governance": StreamConfig("governance", "🏛️", 20, "@council"),
    "sec": StreamConfig("sec", "🛡️", 30, "@security-oncall"),
    "data": StreamConfig("data", "📊", 40, "@data-oncall"),
    "ops": StreamConfig("ops", "⚙️", 40, "@ops-oncall"),
    "release": StreamConfig("release", "🚀", 25, "@release-manager"),
    "archive": StreamConfig("archive", "🗄️", 500, ""),
}


@dataclass
class ApprovalsConfig:
    ttl_hours: float = 72.0
    distinct_approvers: bool = True  # One person cannot fill two role slots
    subjects: dict = field(default_factory=lambda: dict(DEFAULT_SUBJECT_ROLES))
    approvers: dict[str, list[str]] = field(default_factory=dict)

    def required_roles(self, subject_type: str, payload: dict) -> list[str]:
        """Resolve the role set a subject needs, raising ValidationError if unknown."""
        roles = self.subjects.get(subject_type)
        if roles is None:
            raise ValidationError(subject_type, f"No approval roles configured for subject type '{subject_type}'")
        if isinstance(roles, dict):
            kind = payload.get("release_kind", "patch")
            if kind not in roles:
                raise ValidationError(subject_type, f"Unknown release kind '{kind}'")
            roles = roles[kind]
        return sorted(set(roles))

    def roles_for(self, actor: str) -> set[str]:
        return set(self.approvers.get(actor, []))


@dataclass
class CallbacksConfig:
    namespace: str = DEFAULT_CALLBACK_NAMESPACE
    gated_actions: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_GATED_ACTIONS))


@dataclass
class StewardConfig:
    """Top-level configuration."""
    state_dir: Path
    naming: NamingConfig
    streams: dict[str, StreamConfig]
    chat: ChatConfig
    source_control: SourceControlConfig
    retry: RetryPolicy
    scoring: ScoringConfig
    forecast: ForecastConfig
    rules: list[RuleSpec]
    approvals: ApprovalsConfig
    callbacks: CallbacksConfig

    def stream(self, category: str) -> StreamConfig:
        try:
            return self.streams[category]
        except KeyError:
            raise ValidationError(category, f"Unknown stream '{category}'") from None


def _build(data: dict, base_dir: Path) -> StewardConfig:
    state_dir = Path(os.environ.get("STEWARD_STATE_DIR") or data.get("state_dir", DEFAULT_STATE_DIR))
    if not state_dir.is_absolute():
        state_dir = base_dir / state_dir

    if "streams" in data:
        streams = {
            slug: StreamConfig(slug=slug, **spec)
            for slug, spec in data["streams"].items()
        }
    else:
        streams = dict(DEFAULT_STREAMS)

    chat_data = dict(data.get("chat", {}))
    for key in ("chat_id", "report_topic_id"):
        if chat_data.get(key) is not None:
            chat_data[key] = str(chat_data[key])

    if "policy" in data and "rules" in data["policy"]:
        rules = [RuleSpec(**r) for r in data["policy"]["rules"]]
    else:
        rules = list(DEFAULT_RULES)

    approvals_data = dict(data.get("approvals", {}))
    if "subjects" in approvals_data:
        approvals_data["subjects"] = {**DEFAULT_SUBJECT_ROLES, **approvals_data["subjects"]}

    return StewardConfig(
        state_dir=state_dir,
        naming=NamingConfig(**data.get("naming", {})),
        streams=streams,
        chat=ChatConfig(**chat_data),
        source_control=SourceControlConfig(**data.get("source_control", {})),
        retry=RetryPolicy(**data.get("retry", {})),
        scoring=ScoringConfig(**data.get("scoring", {})),
        forecast=ForecastConfig(**data.get("forecast", {})),
        rules=rules,
        approvals=ApprovalsConfig(**approvals_data),
        callbacks=CallbacksConfig(**data.get("callbacks", {})),
    )


def load_config(path: Path | None = None) -> StewardConfig:
    """Load steward.yaml (or $STEWARD_CONFIG) and return StewardConfig.

    A missing file yields the defaults. A malformed file raises ValidationError.
    """
    if path is None:
        path = Path(os.environ.get("STEWARD_CONFIG", DEFAULT_CONFIG_PATH))

    if not path.exists():
        logger.debug(f"Config {path} not found, using defaults")
        return _build({}, Path.cwd())

    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ValidationError(str(path), f"Invalid YAML: {e}") from None

    if not isinstance(data, dict):
        raise ValidationError(str(path), "Config root must be a mapping")

    validate.validate(data, "config", identifier=str(path))
    return _build(data, path.parent.resolve())
