"""
Pytest configuration and shared fixtures for radio source estimation tests.

Provides synthetic emitters and receivers, exact or outlier-corrupted
readings, and a listener that records estimator callbacks.
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np
import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from radioloc_core.metrics import reset_metrics
from radioloc_core.proto import (
    RadioSource,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
)
from radioloc_core.localization import EstimatorListener
from radioloc_core.localization.path_loss import received_power_dbm


FREQUENCY = 2.4e9  # Hz
MIN_POS = -50.0
MAX_POS = 50.0
MIN_POWER_DBM = -10.0
MAX_POWER_DBM = 20.0
MIN_PATH_LOSS_EXPONENT = 1.6
MAX_PATH_LOSS_EXPONENT = 2.0
MIN_RECEIVER_DISTANCE = 1.0
OUTLIER_STD = 10.0


# =============================================================================
# Scenario Fixtures
# =============================================================================


@dataclass
class Scenario:
    """
    Synthetic emitter with readings taken around it.

    Attributes:
        source: Emitter identity
        position: True emitter position
        transmitted_power_dbm: True transmitted power
        path_loss_exponent: True path-loss exponent
        readings: Generated readings
        outliers: Mask of readings corrupted with large error
        quality_scores: One score per reading, higher for clean readings
    """

    source: RadioSource
    position: np.ndarray
    transmitted_power_dbm: float
    path_loss_exponent: float
    readings: List = field(default_factory=list)
    outliers: Optional[np.ndarray] = None
    quality_scores: Optional[np.ndarray] = None


@pytest.fixture(autouse=True)
def fresh_metrics():
    """Give every test its own global metrics collector."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def rng() -> np.random.Generator:
    """Seeded random generator so scenarios are reproducible."""
    return np.random.default_rng(20240517)


@pytest.fixture
def wifi_source() -> RadioSource:
    return RadioSource(source_id="00:11:22:33:44:55", frequency=FREQUENCY)


def _random_receiver(rng, position, dims):
    while True:
        receiver = rng.uniform(MIN_POS, MAX_POS, dims)
        if np.linalg.norm(receiver - position) > MIN_RECEIVER_DISTANCE:
            return receiver


@pytest.fixture
def make_scenario(rng, wifi_source) -> Callable[..., Scenario]:
    """
    Factory for synthetic scenarios.

    Args (of the returned factory):
        dims: 2 or 3
        num_readings: Number of readings
        kind: "ranging", "rssi" or "mixed"
        path_loss_exponent: True exponent, random in [1.6, 2.0] if None
        outlier_fraction: Fraction of readings with large Gaussian error
    """

    def factory(
        dims: int = 2,
        num_readings: int = 60,
        kind: str = "mixed",
        path_loss_exponent: Optional[float] = None,
        outlier_fraction: float = 0.0,
    ) -> Scenario:
        position = rng.uniform(MIN_POS, MAX_POS, dims)
        power = float(rng.uniform(MIN_POWER_DBM, MAX_POWER_DBM))
        if path_loss_exponent is None:
            path_loss_exponent = float(rng.uniform(MIN_PATH_LOSS_EXPONENT,
                                                   MAX_PATH_LOSS_EXPONENT))

        outliers = np.zeros(num_readings, dtype=bool)
        num_outliers = int(round(outlier_fraction * num_readings))
        outliers[rng.choice(num_readings, num_outliers, replace=False)] = True

        readings = []
        for i in range(num_readings):
            receiver = _random_receiver(rng, position, dims)
            distance = float(np.linalg.norm(receiver - position))
            rssi = float(received_power_dbm(power, distance, FREQUENCY, path_loss_exponent))
            if outliers[i]:
                distance = abs(distance + rng.normal(0.0, OUTLIER_STD))
                rssi += rng.normal(0.0, OUTLIER_STD)

            if kind == "ranging":
                reading = RangingReading(wifi_source, distance, position=receiver)
            elif kind == "rssi":
                reading = RssiReading(wifi_source, rssi, position=receiver)
            else:
                reading = RangingAndRssiReading(wifi_source, distance, rssi, position=receiver)
            readings.append(reading)

        quality_scores = np.where(outliers, 0.0, 1.0) + rng.uniform(0.0, 0.5, num_readings)

        return Scenario(
            source=wifi_source,
            position=position,
            transmitted_power_dbm=power,
            path_loss_exponent=path_loss_exponent,
            readings=readings,
            outliers=outliers,
            quality_scores=quality_scores,
        )

    return factory


# =============================================================================
# Listener Fixtures
# =============================================================================


class RecordingListener(EstimatorListener):
    """
    Listener recording callbacks in order.

    An optional hook runs inside every callback with the estimator, so tests
    can probe the estimator while it is locked.
    """

    def __init__(self, hook: Optional[Callable] = None):
        self.events = []
        self.progress = []
        self.hook = hook

    @property
    def starts(self) -> int:
        return self.events.count("start")

    @property
    def ends(self) -> int:
        return self.events.count("end")

    def on_estimate_start(self, estimator):
        self.events.append("start")
        if self.hook:
            self.hook(estimator)

    def on_estimate_progress_change(self, estimator, progress):
        self.events.append("progress")
        self.progress.append(progress)
        if self.hook:
            self.hook(estimator)

    def on_estimate_end(self, estimator):
        self.events.append("end")
        if self.hook:
            self.hook(estimator)


@pytest.fixture
def recording_listener() -> RecordingListener:
    return RecordingListener()


@pytest.fixture
def make_listener() -> Callable[..., RecordingListener]:
    """Factory for recording listeners with an optional hook."""
    return RecordingListener
