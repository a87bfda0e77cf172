"""Tests for steward.forecast and steward.metrics_store modules."""

from datetime import date, timedelta
from unittest.mock import patch

import pytest

from steward.forecast import (
    TREND_FALLING,
    TREND_FLAT,
    TREND_RISING,
    CapacityForecaster,
    fit_line,
)
from steward.lib.config import ForecastConfig
from steward.lib.errors import NotFound, ValidationError
from steward.metrics_store import CapacityMetricsStore
from steward.models import CapacityMetric

ORIGIN = date(2026, 1, 1)


@pytest.fixture
def metrics(tmp_path):
    return CapacityMetricsStore.in_state_dir(tmp_path)


def record_series(metrics, counts, limit=30, category="sec"):
    for day, count in enumerate(counts):
        metrics.record(CapacityMetric(category, ORIGIN + timedelta(days=day), count, limit))


class TestFitLine:
    """Tests for fit_line()."""

    def test_exact_line(self):
        """A perfect line is fitted exactly."""
        slope, intercept = fit_line([0, 1, 2, 3], [1, 3, 5, 7])
        assert slope == pytest.approx(2.0)
        assert intercept == pytest.approx(1.0)

    def test_single_point_is_flat(self):
        """One point gives a flat fit."""
        assert fit_line([5], [0.4]) == (0.0, 0.4)


class TestCapacityForecaster:
    """Tests for CapacityForecaster.forecast()."""

    def test_linear_growth_breaches_on_day_thirty(self, metrics):
        """Utilization climbing one topic per day toward a limit of 30."""
        record_series(metrics, range(10))
        forecast = CapacityForecaster(metrics).forecast("sec", 90)

        assert forecast.trend == TREND_RISING
        assert forecast.start_date == ORIGIN + timedelta(days=9)
        assert forecast.breach_date == ORIGIN + timedelta(days=30)
        assert forecast.projected_utilization == pytest.approx(99 / 30)

    def test_breach_beyond_horizon(self, metrics):
        """No breach is reported past the horizon."""
        record_series(metrics, range(10))
        assert CapacityForecaster(metrics).forecast("sec", 10).breach_date is None

    def test_flat_series_never_breaches(self, metrics):
        """A flat series never breaches."""
        record_series(metrics, [15] * 7)
        forecast = CapacityForecaster(metrics).forecast("sec", 365)
        assert forecast.trend == TREND_FLAT
        assert forecast.breach_date is None
        assert forecast.projected_utilization == pytest.approx(0.5)

    def test_falling_series_floors_at_zero(self, metrics):
        """A falling series projects down to zero, never below."""
        record_series(metrics, [20, 15, 10, 5])
        forecast = CapacityForecaster(metrics).forecast("sec", 30)
        assert forecast.trend == TREND_FALLING
        assert forecast.projected_utilization == 0.0

    def test_already_at_limit(self, metrics):
        """A stream already at its limit breaches on its last recorded day."""
        record_series(metrics, [28, 29, 30])
        forecast = CapacityForecaster(metrics).forecast("sec", 0)
        assert forecast.breach_date == ORIGIN + timedelta(days=2)

    def test_window_limits_points(self, metrics):
        """Only the last window points are fitted."""
        record_series(metrics, [1, 2, 3, 4, 5, 6])
        forecast = CapacityForecaster(metrics, ForecastConfig(window=3)).forecast("sec", 5)
        assert forecast.points_used == 3

    def test_negative_horizon(self, metrics):
        """A negative horizon is rejected."""
        record_series(metrics, [1, 2])
        with pytest.raises(ValidationError):
            CapacityForecaster(metrics).forecast("sec", -1)

    def test_no_data(self, metrics):
        """Forecasting a stream with no data is a validation error."""
        with pytest.raises(NotFound):
            CapacityForecaster(metrics).forecast("sec", 30)


class TestCapacityMetricsStore:
    """Tests for CapacityMetricsStore."""

    def test_last_write_per_day_wins(self, metrics):
        """A second write on the same day replaces the first."""
        metrics.record(CapacityMetric("sec", ORIGIN, 3, 30))
        metrics.record(CapacityMetric("sec", ORIGIN, 5, 30))
        series = metrics.series("sec")
        assert len(series) == 1
        assert series[0].active_count == 5

    def test_series_filters(self, metrics):
        """Series filter by stream and start date."""
        record_series(metrics, [1, 2, 3])
        record_series(metrics, [9], category="data")
        assert [m.active_count for m in metrics.series("sec", since=ORIGIN + timedelta(days=1))] == [2, 3]
        assert metrics.categories() == ["data", "sec"]

    def test_corrupted_line_skipped(self, metrics):
        """A corrupted metrics line is skipped."""
        record_series(metrics, [1])
        with open(metrics.path, "a") as f:
            f.write("garbage\n")
        record_series(metrics, [1, 2])
        assert metrics.latest("sec").active_count == 2

    def test_undecodable_line_skipped(self, metrics):
        """A line that is not valid UTF-8 is skipped, not fatal."""
        record_series(metrics, [1])
        with open(metrics.path, "ab") as f:
            f.write(b"\xff\xfe garbage\n")
        record_series(metrics, [1, 2])
        assert metrics.latest("sec").active_count == 2

    def test_appends_are_synced(self, metrics):
        """Each recorded point is fsync'd before record() returns."""
        with patch("steward.metrics_store.os.fsync") as fsync:
            record_series(metrics, [1, 2])
        assert fsync.call_count == 2

    def test_invalid_metric_rejected(self, metrics):
        """A negative active count is rejected."""
        with pytest.raises(ValidationError):
            metrics.record(CapacityMetric("sec", ORIGIN, -1, 30))
