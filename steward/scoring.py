"""
Priority Scorer.

Rule-based urgency score in [0, 10]. Each signal is normalized to [0, 1]
and weighted; impact and change-request bonuses are flat addends on top of
the weighted budget, and the total is clamped before scaling.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, Optional

from steward.lib.config import ScoringConfig
from steward.models import Topic, utcnow

logger = logging.getLogger(__name__)

WEIGHT_STAKEHOLDERS = 0.20
WEIGHT_ENGAGEMENT = 0.25
WEIGHT_DEADLINE = 0.30
WEIGHT_DEPENDENCIES = 0.15

IMPACT_BONUS = {"low": 0.0, "medium": 0.05, "high": 0.10}
CHANGE_REQUEST_BONUS = 0.05

# Engagement with no category baseline to compare against
NEUTRAL_ENGAGEMENT = 0.5


@dataclass
class ScoreBreakdown:
    topic_id: str
    score: float
    stakeholders: float
    engagement: float
    deadline: float
    dependencies: float
    impact_bonus: float
    change_request_bonus: float
    requires_review: bool = False

    def to_dict(self) -> dict:
        return dict(vars(self))


def _saturate(count: int, saturation: int) -> float:
    return min(count / saturation, 1.0)


class PriorityScorer:

    def __init__(self, config: ScoringConfig | None = None, clock: Callable[[], datetime] = utcnow):
        self.config = config or ScoringConfig()
        self.clock = clock

    def activity(self, topic: Topic) -> float:
        return topic.metadata.reply_count + self.config.view_weight * topic.metadata.view_count

    def engagement(self, topic: Topic, category_average: Optional[float]) -> float:
        """Activity relative to the category average; average activity scores 0.5."""
        if not category_average:
            return NEUTRAL_ENGAGEMENT
        return min(self.activity(topic) / category_average / 2, 1.0)

    def deadline_urgency(self, deadline: Optional[datetime], now: datetime) -> float:
        if deadline is None:
            return 0.0
        days_remaining = (deadline - now).total_seconds() / 86400
        if days_remaining <= 0:
            return 1.0
        return min(self.config.deadline_window_days / days_remaining, 1.0)

    def breakdown(self, topic: Topic, category_average: Optional[float] = None) -> ScoreBreakdown:
        now = self.clock()
        stakeholders = _saturate(len(topic.stakeholders), self.config.stakeholder_saturation)
        engagement = self.engagement(topic, category_average)
        deadline = self.deadline_urgency(topic.deadline, now)
        dependencies = _saturate(len(topic.dependency_ids), self.config.dependency_saturation)
        impact_bonus = IMPACT_BONUS.get(topic.metadata.business_impact, 0.0)
        cr_bonus = CHANGE_REQUEST_BONUS if topic.metadata.change_request else 0.0

        total = (
            WEIGHT_STAKEHOLDERS * stakeholders
            + WEIGHT_ENGAGEMENT * engagement
            + WEIGHT_DEADLINE * deadline
            + WEIGHT_DEPENDENCIES * dependencies
            + impact_bonus
            + cr_bonus
        )
        total = max(0.0, min(total, 1.0))

        threshold = self.config.override_confidence_threshold
        confidence = topic.metadata.categorizer_confidence
        requires_review = threshold is not None and confidence is not None and confidence < threshold

        return ScoreBreakdown(
            topic_id=topic.topic_id,
            score=round(total * 10, 2),
            stakeholders=round(stakeholders, 4),
            engagement=round(engagement, 4),
            deadline=round(deadline, 4),
            dependencies=round(dependencies, 4),
            impact_bonus=impact_bonus,
            change_request_bonus=cr_bonus,
            requires_review=requires_review,
        )

    def score(self, topic: Topic, peers: Iterable[Topic] | None = None) -> float:
        """Score one topic; peers (same category) supply the engagement baseline."""
        return self.breakdown(topic, self.category_average(peers or [topic])).score

    def category_average(self, topics: Iterable[Topic]) -> Optional[float]:
        activities = [self.activity(t) for t in topics]
        if not activities:
            return None
        return sum(activities) / len(activities)

    def rank(self, topics: list[Topic]) -> list[ScoreBreakdown]:
        """Score a category's topics, highest first."""
        average = self.category_average(topics)
        scored = [self.breakdown(t, average) for t in topics]
        return sorted(scored, key=lambda b: (-b.score, b.topic_id))
