"""
Service wiring for one steward invocation.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import cached_property
from pathlib import Path
from typing import Callable

from steward.adapters.chat import create_chat_platform
from steward.adapters.github import GitHubSourceControl
from steward.audit import AuditEngine
from steward.forecast import CapacityForecaster
from steward.ledger import AuditLedger
from steward.lib.config import StewardConfig, load_config
from steward.metrics_store import CapacityMetricsStore
from steward.models import utcnow
from steward.naming import Normalizer
from steward.notifications import Notifier
from steward.policy import PolicyGate, RuleEnv
from steward.polish import PolishEngine
from steward.request_store import RequestStore
from steward.scoring import PriorityScorer
from steward.topic_store import TopicStore
from steward.workflow.executors import DestructiveExecutor, ReleaseExecutor, RenameBatchExecutor
from steward.workflow.orchestrator import Orchestrator


@dataclass
class StewardContext:
    """Config plus lazily built stores, adapters and engines.

    Adapters can be injected (tests pass an InMemoryChatPlatform); otherwise
    they are built from config on first use.
    """
    config: StewardConfig
    clock: Callable[[], datetime] = utcnow
    chat_override: object = None
    scm_override: object = None
    actor: str = "steward"

    @classmethod
    def load(cls, config_path: Path | None = None, **kwargs) -> "StewardContext":
        return cls(config=load_config(config_path), **kwargs)

    @property
    def state_dir(self) -> Path:
        return self.config.state_dir

    @cached_property
    def ledger(self):
        return AuditLedger.in_state_dir(self.state_dir)

    @cached_property
    def topics(self):
        return TopicStore.in_state_dir(self.state_dir)

    @cached_property
    def metrics(self):
        return CapacityMetricsStore.in_state_dir(self.state_dir)

    @cached_property
    def requests(self):
        return RequestStore.in_state_dir(self.state_dir)

    @cached_property
    def chat(self):
        if self.chat_override is not None:
            return self.chat_override
        return create_chat_platform(self.config)

    @cached_property
    def scm(self):
        if self.scm_override is not None:
            return self.scm_override
        sc = self.config.source_control
        return GitHubSourceControl(Path(sc.repo_path), sc.timeout_seconds)

    @cached_property
    def normalizer(self):
        return Normalizer.from_config(self.config)

    @cached_property
    def gate(self):
        env = RuleEnv(
            streams=self.config.streams,
            max_name_length=self.config.naming.max_name_length,
            metrics=self.metrics,
        )
        return PolicyGate(self.config.rules, env, ledger=self.ledger)

    @cached_property
    def scorer(self):
        return PriorityScorer(self.config.scoring, clock=self.clock)

    @cached_property
    def forecaster(self):
        return CapacityForecaster(self.metrics, self.config.forecast)

    @cached_property
    def notifier(self):
        return Notifier(
            self.chat,
            self.config.streams,
            report_topic_id=self.config.chat.report_topic_id,
            namespace=self.config.callbacks.namespace,
        )

    def audit_engine(self):
        return AuditEngine(
            self.chat, self.topics, self.metrics, self.normalizer, self.config.streams,
            self.state_dir, retry=self.config.retry, clock=self.clock,
        )

    def polish_engine(self):
        return PolishEngine(
            self.chat, self.topics, self.ledger, self.config.streams, self.state_dir,
            retry=self.config.retry,
            max_name_length=self.config.naming.max_name_length,
            namespace=self.config.callbacks.namespace,
            actor=self.actor,
            clock=self.clock,
            gate=self.gate,
        )

    def executors(self) -> dict:
        return {
            "rename_batch": RenameBatchExecutor(self.audit_engine, self.polish_engine),
            "release": ReleaseExecutor(self.scm, self.config.retry),
            "destructive": DestructiveExecutor(
                self.chat, self.topics, self.normalizer, self.state_dir, self.config.retry,
            ),
        }

    @cached_property
    def orchestrator(self):
        return Orchestrator(
            self.requests, self.ledger, self.gate, self.config.approvals, self.state_dir,
            self.executors(), notifier=self.notifier, clock=self.clock,
        )
