"""
Capacity Metrics Store.

Per-category topic counts against the configured limit, appended to
<state_dir>/metrics.jsonl. Several writes for the same category and day are
allowed; the last one wins on read.
"""

import json
import logging
import os
from datetime import date
from pathlib import Path

from steward.lib import validate
from steward.lib.locking import file_lock
from steward.models import CapacityMetric

logger = logging.getLogger(__name__)

METRICS_FILENAME = "metrics.jsonl"


class CapacityMetricsStore:

    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def in_state_dir(cls, state_dir: Path) -> "CapacityMetricsStore":
        return cls(state_dir / METRICS_FILENAME)

    def record(self, metric: CapacityMetric) -> None:
        data = metric.to_dict()
        validate.validate_before_write(data, "metric", self.path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with file_lock(self.path):
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(data) + "\n")
                f.flush()
                os.fsync(f.fileno())

    def _load(self) -> list[CapacityMetric]:
        if not self.path.exists():
            return []
        metrics = []
        for line_num, raw in enumerate(self.path.read_bytes().splitlines(), 1):
            if not raw.strip():
                continue
            try:
                metrics.append(CapacityMetric.from_dict(json.loads(raw.decode("utf-8"))))
            except (UnicodeDecodeError, json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping corrupted metrics line {line_num} in {self.path}: {e}")
        return metrics

    def series(self, category: str, since: date | None = None) -> list[CapacityMetric]:
        """Date-ordered series for one category, one point per day."""
        by_day: dict[date, CapacityMetric] = {}
        for metric in self._load():
            if metric.category != category:
                continue
            if since is not None and metric.date < since:
                continue
            by_day[metric.date] = metric
        return [by_day[d] for d in sorted(by_day)]

    def latest(self, category: str) -> CapacityMetric | None:
        series = self.series(category)
        return series[-1] if series else None

    def categories(self) -> list[str]:
        return sorted({m.category for m in self._load()})
