"""
Estimation metrics: counters, drop reasons and histograms.

Drop reasons are grouped by the pipeline stage that rejects the sample or
hypothesis:

- adapter: readings that cannot become distance samples
- consensus: minimal subsets without a model, runs without a consensus
- lifecycle: estimate() calls made before the estimator is ready
- refinement: joint refinement or covariance failures

Histograms keep the most recent METRICS_CONFIG["histogram_size"] values.
"""

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

import numpy as np

from radioloc_core.config import METRICS_CONFIG

logger = logging.getLogger(__name__)


# reason -> (stage, description)
DROP_REASONS = {
    'unknown_source': ('adapter', 'Reading references a source that is not located'),
    'no_power_info': ('adapter', 'RSSI reading against a source without transmitted power'),
    'degenerate_subset': ('consensus', 'Minimal subset produced no model'),
    'robust_estimation_failed': ('consensus', 'Consensus found no acceptable model'),
    'not_ready': ('lifecycle', 'Estimation requested before preconditions were met'),
    'refinement_failed': ('refinement', 'Joint refinement or covariance failed'),
}

STANDARD_COUNTERS = (
    'estimate_attempts',
    'estimate_success',
    'samples_built',
    'consensus_runs',
    'consensus_failures',
    'refinements',
)


def histogram_stats(values, percentile: float) -> Optional[Dict[str, float]]:
    """Summary statistics of a sample sequence, None when empty."""
    if len(values) == 0:
        return None
    samples = np.asarray(values, dtype=float)
    return {
        'count': int(samples.size),
        'min': float(samples.min()),
        'max': float(samples.max()),
        'mean': float(samples.mean()),
        'median': float(np.median(samples)),
        f'p{percentile:g}': float(np.percentile(samples, percentile)),
    }


@dataclass
class MetricsSnapshot:
    """Point-in-time copy of collected metrics."""

    timestamp: float
    uptime: float
    counters: Dict[str, int]
    drop_reasons: Dict[str, int]
    histograms: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def total_dropped(self) -> int:
        return sum(self.drop_reasons.values())

    def drops_by_stage(self) -> Dict[str, int]:
        """Drop totals per pipeline stage; unregistered reasons count as 'other'."""
        totals: Dict[str, int] = defaultdict(int)
        for reason, count in self.drop_reasons.items():
            stage = DROP_REASONS[reason][0] if reason in DROP_REASONS else 'other'
            totals[stage] += count
        return dict(totals)

    def success_rate(self) -> Optional[float]:
        """Fraction of estimate() attempts that returned a result."""
        attempts = self.counters.get('estimate_attempts', 0)
        if attempts == 0:
            return None
        return self.counters.get('estimate_success', 0) / attempts


class MetricsCollector:
    """
    Thread-safe metrics collection shared by all estimators.

    Usage:
        metrics = MetricsCollector()
        metrics.increment('estimate_attempts')
        metrics.increment_drop('degenerate_subset')
        metrics.record_histogram('consensus_iterations', 42)

        snapshot = metrics.snapshot()
        print(snapshot.drops_by_stage(), snapshot.success_rate())
    """

    DROP_REASONS = DROP_REASONS

    def __init__(self, histogram_size: int = METRICS_CONFIG["histogram_size"]):
        if histogram_size < 1:
            raise ValueError(f"Histogram size must be at least 1: {histogram_size}")
        self.histogram_size = histogram_size
        self._lock = threading.Lock()
        self._reset_state()

    def _reset_state(self):
        self._counters: Dict[str, int] = dict.fromkeys(STANDARD_COUNTERS, 0)
        self._drops: Dict[str, int] = dict.fromkeys(DROP_REASONS, 0)
        self._histograms: Dict[str, Deque[float]] = {}
        self._start_time = time.monotonic()

    def increment(self, counter_name: str, value: int = 1):
        with self._lock:
            self._counters[counter_name] = self._counters.get(counter_name, 0) + value

    def increment_drop(self, reason: str, value: int = 1):
        """
        Count a rejected reading or hypothesis.

        Unregistered reasons are still counted, with a warning.
        """
        if reason not in DROP_REASONS:
            logger.warning("Unregistered drop reason '%s'", reason)
        with self._lock:
            self._drops[reason] = self._drops.get(reason, 0) + value

    def record_histogram(self, histogram_name: str, value: float):
        with self._lock:
            samples = self._histograms.get(histogram_name)
            if samples is None:
                samples = deque(maxlen=self.histogram_size)
                self._histograms[histogram_name] = samples
            samples.append(float(value))

    def get_counter(self, counter_name: str) -> int:
        with self._lock:
            return self._counters.get(counter_name, 0)

    def get_drop_count(self, reason: str) -> int:
        with self._lock:
            return self._drops.get(reason, 0)

    def get_histogram_samples(self, histogram_name: str) -> list:
        with self._lock:
            return list(self._histograms.get(histogram_name, ()))

    def get_histogram_stats(self, histogram_name: str) -> Optional[Dict[str, float]]:
        """
        Summary of a histogram.

        Returns:
            Dict with count, min, max, mean, median and the configured
            percentile (e.g. 'p95'), or None if nothing was recorded
        """
        return histogram_stats(self.get_histogram_samples(histogram_name),
                               METRICS_CONFIG["summary_percentile"])

    @property
    def uptime(self) -> float:
        """Seconds since creation or the last reset()."""
        return time.monotonic() - self._start_time

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            counters = dict(self._counters)
            drops = dict(self._drops)
            histograms = {name: list(samples) for name, samples in self._histograms.items()}
        percentile = METRICS_CONFIG["summary_percentile"]
        return MetricsSnapshot(
            timestamp=time.time(),
            uptime=self.uptime,
            counters=counters,
            drop_reasons=drops,
            histograms={name: histogram_stats(samples, percentile)
                        for name, samples in histograms.items()},
        )

    def reset(self):
        with self._lock:
            self._reset_state()

    def log_summary(self, level: int = logging.INFO):
        """Log counters, drops per stage and histogram summaries."""
        snapshot = self.snapshot()
        percentile_key = f"p{METRICS_CONFIG['summary_percentile']:g}"

        lines = [f"Estimation metrics (uptime: {snapshot.uptime:.1f}s)"]
        for name, value in sorted(snapshot.counters.items()):
            lines.append(f"  {name:30s}: {value:8d}")

        rate = snapshot.success_rate()
        if rate is not None:
            lines.append(f"  {'success_rate':30s}: {rate:8.1%}")

        for stage, total in sorted(snapshot.drops_by_stage().items()):
            if total == 0:
                continue
            lines.append(f"  drops[{stage}]: {total}")
            for reason, count in sorted(snapshot.drop_reasons.items()):
                reason_stage = DROP_REASONS.get(reason, ('other', ''))[0]
                if count > 0 and reason_stage == stage:
                    lines.append(f"    {reason:28s}: {count:8d}")

        for name, stats in sorted(snapshot.histograms.items()):
            lines.append(
                f"  {name}: count={stats['count']}, mean={stats['mean']:.3f}, "
                f"{percentile_key}={stats[percentile_key]:.3f}"
            )

        logger.log(level, "\n".join(lines))
