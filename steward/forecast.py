"""
Capacity Forecaster.

Ordinary least-squares line through the most recent window of daily
utilization points for a stream, extrapolated forward. Deliberately simple:
the output can be reproduced by hand from metrics.jsonl.
"""

import logging
import math
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Optional

from steward.lib.config import ForecastConfig
from steward.lib.errors import NotFound, ValidationError
from steward.models import CapacityMetric

logger = logging.getLogger(__name__)

TREND_RISING = "rising"
TREND_FALLING = "falling"
TREND_FLAT = "flat"


@dataclass
class Forecast:
    category: str
    start_date: date  # Date of the latest observation
    horizon_days: int
    trend: str
    slope_per_day: float
    current_utilization: float
    projected_utilization: float  # At start_date + horizon_days
    breach_date: Optional[date]
    points_used: int

    def to_dict(self) -> dict:
        return {
            "category": self.category,
            "start_date": self.start_date.isoformat(),
            "horizon_days": self.horizon_days,
            "trend": self.trend,
            "slope_per_day": round(self.slope_per_day, 6),
            "current_utilization": round(self.current_utilization, 4),
            "projected_utilization": round(self.projected_utilization, 4),
            "breach_date": self.breach_date.isoformat() if self.breach_date else None,
            "points_used": self.points_used,
        }


def fit_line(xs: list[float], ys: list[float]) -> tuple[float, float]:
    """Least-squares (slope, intercept). A single point gives a flat line."""
    n = len(xs)
    if n == 1:
        return 0.0, ys[0]
    mean_x = sum(xs) / n
    mean_y = sum(ys) / n
    var_x = sum((x - mean_x) ** 2 for x in xs)
    if var_x == 0:
        return 0.0, mean_y
    slope = sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / var_x
    return slope, mean_y - slope * mean_x


class CapacityForecaster:

    def __init__(self, metrics, config: ForecastConfig | None = None):
        self.metrics = metrics
        self.config = config or ForecastConfig()

    def forecast(self, category: str, horizon_days: int) -> Forecast:
        """Project utilization horizon_days past the latest point.

        Raises:
            ValidationError: horizon_days is negative
            NotFound: no metrics recorded for the stream
        """
        if horizon_days < 0:
            raise ValidationError(category, "Horizon must be zero or more days")

        series = self.metrics.series(category)
        if not series:
            raise NotFound(category, "No capacity metrics recorded for this stream")
        return self.forecast_series(category, series, horizon_days)

    def forecast_series(self, category: str, series: list[CapacityMetric], horizon_days: int) -> Forecast:
        window = series[-self.config.window:]
        origin = window[0].date
        xs = [float((m.date - origin).days) for m in window]
        ys = [m.utilization for m in window]
        slope, intercept = fit_line(xs, ys)

        start = window[-1].date
        start_x = float((start - origin).days)

        def line(days_ahead: float) -> float:
            return intercept + slope * (start_x + days_ahead)

        def projected(days_ahead: float) -> float:
            return max(0.0, line(days_ahead))

        current = window[-1].utilization
        breach = self._breach_date(start, current, slope, line, horizon_days)

        if slope > self.config.flat_slope_epsilon:
            trend = TREND_RISING
        elif slope < -self.config.flat_slope_epsilon:
            trend = TREND_FALLING
        else:
            trend = TREND_FLAT

        result = Forecast(
            category=category,
            start_date=start,
            horizon_days=horizon_days,
            trend=trend,
            slope_per_day=slope,
            current_utilization=current,
            projected_utilization=projected(horizon_days),
            breach_date=breach,
            points_used=len(window),
        )
        logger.debug(f"Forecast {category}: {result.to_dict()}")
        return result

    def _breach_date(self, start: date, current: float, slope: float, line, horizon_days: int) -> Optional[date]:
        """First day in [start, start + horizon] where utilization >= 1.0."""
        if current >= 1.0:
            return start
        if slope <= 0:
            return None
        # Fitted line crosses 1.0 at this offset from start; check the day it lands on
        offset = (1.0 - line(0)) / slope
        day = max(0, math.ceil(offset - 1e-9))
        if day > horizon_days:
            return None
        # Guard against float error leaving the ceiling one day short
        if line(day) < 1.0 - 1e-9:
            day += 1
            if day > horizon_days:
                return None
        return start + timedelta(days=day)
