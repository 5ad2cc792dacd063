"""
Reading Adapter.

Turns heterogeneous readings into uniform distance samples:
(position, distance, distance std dev, quality score, channel).

Two directions are supported:
- Located sources + fingerprint: sample positions are the source positions
  and distances come from the readings (used to locate a receiver).
- Located readings of one source: readings are split per measurement
  channel (used to locate the source itself).

A RangingAndRssiReading yields one sample per channel. Both samples share
the same position, so the sample count can be twice the reading count.
"""

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, List, Optional, Sequence
import math

import numpy as np

from radioloc_core.errors import InvalidArgumentError
from radioloc_core.config import PATH_LOSS_CONFIG
from radioloc_core.metrics import get_metrics
from radioloc_core.proto.reading import ReadingType, has_ranging, has_rssi
from radioloc_core.localization.path_loss import (
    distance_from_rssi,
    propagate_variances_to_distance,
)

logger = logging.getLogger(__name__)


class SampleChannel(IntEnum):
    """Measurement channel a distance sample was derived from."""

    RANGING = 0
    RSSI = 1


@dataclass
class DistanceSamples:
    """
    Parallel sequences of distance samples.

    Attributes:
        positions: Known positions the distances are measured from
        distances: Distances in meters
        distance_stds: Distance std devs (m), empty when not computed
        quality_scores: One quality score per sample
        channels: Channel each sample was derived from
    """

    positions: List[np.ndarray] = field(default_factory=list)
    distances: List[float] = field(default_factory=list)
    distance_stds: List[float] = field(default_factory=list)
    quality_scores: List[float] = field(default_factory=list)
    channels: List[SampleChannel] = field(default_factory=list)

    def append(
        self,
        position: np.ndarray,
        distance: float,
        channel: SampleChannel,
        distance_std: Optional[float] = None,
        quality_score: float = 0.0,
    ):
        self.positions.append(position)
        self.distances.append(distance)
        if distance_std is not None:
            self.distance_stds.append(distance_std)
        self.quality_scores.append(quality_score)
        self.channels.append(channel)

    def clear(self):
        self.positions.clear()
        self.distances.clear()
        self.distance_stds.clear()
        self.quality_scores.clear()
        self.channels.clear()

    def __len__(self) -> int:
        return len(self.distances)

    def positions_array(self) -> np.ndarray:
        return np.array(self.positions, dtype=float)

    def distances_array(self) -> np.ndarray:
        return np.array(self.distances, dtype=float)

    def distance_stds_array(self) -> Optional[np.ndarray]:
        if not self.distance_stds:
            return None
        return np.array(self.distance_stds, dtype=float)

    def quality_scores_array(self) -> np.ndarray:
        return np.array(self.quality_scores, dtype=float)


def position_variance(covariance) -> Optional[float]:
    """
    Scalar position variance from a covariance matrix.

    Mean of the singular values, i.e. the average variance along the
    principal axes.
    """
    if covariance is None:
        return None
    singular_values = np.linalg.svd(np.asarray(covariance, dtype=float), compute_uv=False)
    return float(np.mean(singular_values))


def _combined_position_variance(source, reading) -> Optional[float]:
    variances = [
        v for v in (
            position_variance(source.position_covariance),
            position_variance(reading.position_covariance),
        )
        if v is not None
    ]
    if not variances:
        return None
    return float(sum(variances))


def _variance(std):
    return None if std is None else std ** 2


def sample_std(measurement_variance, pos_var, fallback_std: float) -> float:
    """Std dev from measurement and position variances, fallback when neither is known."""
    if measurement_variance is None and pos_var is None:
        return fallback_std
    total = (measurement_variance or 0.0) + (pos_var or 0.0)
    return math.sqrt(total) if total > 0 else fallback_std


def _index_sources(sources) -> Dict[tuple, int]:
    index = {}
    for i, source in enumerate(sources):
        index.setdefault(source.identity, i)
    return index


def build_positions_and_distances(sources, fingerprint, samples: DistanceSamples) -> DistanceSamples:
    """
    Build positions and distances, without uncertainty.

    Args:
        sources: Located radio sources
        fingerprint: Readings of those sources
        samples: Output container, cleared before filling

    Returns:
        The samples container (unchanged when sources or fingerprint is None)
    """
    if sources is None or fingerprint is None:
        return samples

    samples.clear()
    index = _index_sources(sources)
    metrics = get_metrics()

    for reading in fingerprint:
        source_index = index.get(reading.source.identity)
        if source_index is None:
            metrics.increment_drop('unknown_source')
            continue
        source = sources[source_index]
        position = source.position_array()

        if has_ranging(reading):
            samples.append(position, float(reading.distance), SampleChannel.RANGING)

        if has_rssi(reading):
            if not source.has_power:
                metrics.increment_drop('no_power_info')
                continue
            distance = float(distance_from_rssi(
                source.transmitted_power_dbm,
                reading.rssi,
                source.frequency,
                source.path_loss_exponent,
            ))
            samples.append(position, distance, SampleChannel.RSSI)

    metrics.increment('samples_built', len(samples))
    return samples


def build_distance_samples(
    sources,
    fingerprint,
    samples: DistanceSamples,
    use_position_covariance: bool = True,
    fallback_distance_std: float = PATH_LOSS_CONFIG["fallback_distance_std_m"],
    source_quality_scores: Optional[Sequence[float]] = None,
    reading_quality_scores: Optional[Sequence[float]] = None,
) -> DistanceSamples:
    """
    Build positions, distances, distance std devs and quality scores.

    Args:
        sources: Located radio sources (empty => empty output)
        fingerprint: Readings of those sources
        samples: Output container, cleared before filling
        use_position_covariance: Add source and reading position
            uncertainty to the distance std dev
        fallback_distance_std: Std dev used when none can be derived
        source_quality_scores: One score per source, if any
        reading_quality_scores: One score per fingerprint reading, if any

    Returns:
        The samples container (unchanged when sources or fingerprint is None)

    Raises:
        InvalidArgumentError: fallback_distance_std is not positive
    """
    if fallback_distance_std <= 0:
        raise InvalidArgumentError(
            f"Fallback distance std must be positive: {fallback_distance_std}"
        )

    if sources is None or fingerprint is None:
        return samples

    samples.clear()
    index = _index_sources(sources)
    metrics = get_metrics()

    for i, reading in enumerate(fingerprint):
        source_index = index.get(reading.source.identity)
        if source_index is None:
            logger.debug("Skipping reading of unknown source %s", reading.source.source_id)
            metrics.increment_drop('unknown_source')
            continue
        source = sources[source_index]
        position = source.position_array()

        quality = 0.0
        if reading_quality_scores is not None:
            quality += float(reading_quality_scores[i])
        if source_quality_scores is not None:
            quality += float(source_quality_scores[source_index])

        pos_var = _combined_position_variance(source, reading) if use_position_covariance else None

        if has_ranging(reading):
            std = sample_std(_variance(reading.distance_std), pos_var, fallback_distance_std)
            samples.append(position, float(reading.distance), SampleChannel.RANGING, std, quality)

        if has_rssi(reading):
            if not source.has_power:
                logger.debug("Skipping RSSI of source %s without power", reading.source.source_id)
                metrics.increment_drop('no_power_info')
                continue

            propagated = propagate_variances_to_distance(
                source.transmitted_power_dbm,
                reading.rssi,
                source.path_loss_exponent,
                source.frequency,
                transmitted_power_variance=_variance(source.transmitted_power_std),
                rssi_variance=_variance(reading.rssi_std),
                path_loss_exponent_variance=_variance(source.path_loss_exponent_std),
            )
            if propagated is None:
                distance = float(distance_from_rssi(
                    source.transmitted_power_dbm,
                    reading.rssi,
                    source.frequency,
                    source.path_loss_exponent,
                ))
                variance = None
            else:
                distance, variance = propagated
            std = sample_std(variance, pos_var, fallback_distance_std)
            samples.append(position, distance, SampleChannel.RSSI, std, quality)

    metrics.increment('samples_built', len(samples))
    return samples


@dataclass
class SplitReadings:
    """Located readings split per measurement channel."""

    ranging_readings: list
    rssi_readings: list
    ranging_quality_scores: Optional[np.ndarray] = None
    rssi_quality_scores: Optional[np.ndarray] = None


def split_located_readings(readings, quality_scores=None) -> SplitReadings:
    """
    Split readings of one source into ranging and RSSI channels.

    A RangingAndRssiReading contributes to both channels, carrying its
    quality score into each.

    Args:
        readings: Located readings
        quality_scores: One score per reading, or None

    Returns:
        SplitReadings
    """
    ranging, rssi = [], []
    ranging_scores, rssi_scores = [], []

    for i, reading in enumerate(readings):
        score = None if quality_scores is None else float(quality_scores[i])
        if reading.reading_type == ReadingType.RANGING_AND_RSSI:
            ranging.append(reading.as_ranging_reading())
            rssi.append(reading.as_rssi_reading())
            ranging_scores.append(score)
            rssi_scores.append(score)
        elif reading.reading_type == ReadingType.RANGING:
            ranging.append(reading)
            ranging_scores.append(score)
        else:
            rssi.append(reading)
            rssi_scores.append(score)

    if quality_scores is None:
        return SplitReadings(ranging, rssi)
    return SplitReadings(
        ranging,
        rssi,
        np.array(ranging_scores, dtype=float),
        np.array(rssi_scores, dtype=float),
    )
