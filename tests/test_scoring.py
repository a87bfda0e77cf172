"""Tests for steward.scoring module."""

from datetime import datetime, timedelta, timezone

import pytest

from steward.lib.config import ScoringConfig
from steward.models import Topic, TopicMetadata
from steward.scoring import NEUTRAL_ENGAGEMENT, PriorityScorer

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_topic(topic_id="t1", **kwargs) -> Topic:
    metadata = kwargs.pop("metadata", TopicMetadata())
    return Topic(topic_id=topic_id, category="sec", raw_title="x", canonical_name="x",
                 metadata=metadata, **kwargs)


@pytest.fixture
def scorer():
    return PriorityScorer(clock=lambda: NOW)


class TestPriorityScorer:
    """Tests for PriorityScorer."""

    def test_reference_topic(self, scorer):
        """12 stakeholders, 5 days to deadline, 2 deps, high impact and a CR."""
        topic = make_topic(
            stakeholders={f"user{i}" for i in range(12)},
            deadline=NOW + timedelta(days=5),
            dependency_ids={"a", "b"},
            metadata=TopicMetadata(business_impact="high", change_request="CR-7"),
        )
        assert scorer.score(topic) == pytest.approx(8.75)

    def test_empty_topic_scores_neutral_engagement_only(self, scorer):
        """A bare topic scores only the neutral engagement share."""
        assert scorer.score(make_topic()) == pytest.approx(NEUTRAL_ENGAGEMENT * 0.25 * 10)

    def test_clamped_to_ten(self, scorer):
        """Scores never exceed ten."""
        busy = make_topic(
            "busy",
            stakeholders={f"u{i}" for i in range(20)},
            deadline=NOW - timedelta(days=1),
            dependency_ids={"a", "b", "c", "d"},
            metadata=TopicMetadata(business_impact="high", change_request="CR-1", reply_count=100),
        )
        quiet = make_topic("quiet")
        assert scorer.score(busy, peers=[busy, quiet]) == 10.0

    def test_deadline_urgency(self, scorer):
        """Urgency is full inside three days and halves at two weeks."""
        assert scorer.deadline_urgency(None, NOW) == 0.0
        assert scorer.deadline_urgency(NOW - timedelta(hours=1), NOW) == 1.0
        assert scorer.deadline_urgency(NOW + timedelta(days=3), NOW) == 1.0
        assert scorer.deadline_urgency(NOW + timedelta(days=14), NOW) == pytest.approx(0.5)

    def test_engagement_relative_to_category(self, scorer):
        """Engagement is relative to the stream average."""
        active = make_topic("a", metadata=TopicMetadata(reply_count=30))
        idle = make_topic("b", metadata=TopicMetadata(reply_count=10))
        average = scorer.category_average([active, idle])
        assert scorer.engagement(active, average) == pytest.approx(0.75)
        assert scorer.engagement(idle, average) == pytest.approx(0.25)

    def test_rank_highest_first(self, scorer):
        """rank orders by score, highest first."""
        low = make_topic("low")
        high = make_topic("high", deadline=NOW + timedelta(days=1))
        ranked = scorer.rank([low, high])
        assert [b.topic_id for b in ranked] == ["high", "low"]
        assert all(0.0 <= b.score <= 10.0 for b in ranked)

    def test_low_confidence_flagged_for_review(self):
        """Low categorizer confidence flags the topic for review."""
        scorer = PriorityScorer(ScoringConfig(override_confidence_threshold=0.6), clock=lambda: NOW)
        unsure = make_topic(metadata=TopicMetadata(categorizer_confidence=0.4))
        sure = make_topic(metadata=TopicMetadata(categorizer_confidence=0.9))
        assert scorer.breakdown(unsure).requires_review
        assert not scorer.breakdown(sure).requires_review

    def test_no_threshold_never_flags(self, scorer):
        """Without a threshold nothing is flagged."""
        unsure = make_topic(metadata=TopicMetadata(categorizer_confidence=0.1))
        assert not scorer.breakdown(unsure).requires_review
