"""
Reading and Fingerprint Schema.

A reading ties one radio source to one observation: a measured distance
(ranging), a received signal strength (RSSI), or both. Readings may carry
the position at which they were taken, and that position's covariance.
"""

from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple
from enum import IntEnum

import numpy as np

from radioloc_core.errors import InvalidArgumentError
from radioloc_core.proto.radio_source import RadioSource, _as_position, _as_covariance


class ReadingType(IntEnum):
    """Measurement channel(s) carried by a reading."""

    RANGING = 0
    RSSI = 1
    RANGING_AND_RSSI = 2


def _check_std(name: str, value: Optional[float]):
    if value is not None and value <= 0:
        raise InvalidArgumentError(f"{name} must be positive: {value}")


class _ReadingLocation:
    """Receiver position handling shared by all reading types."""

    def _init_location(self):
        if self.position is None:
            if self.position_covariance is not None:
                raise InvalidArgumentError("Position covariance given without position")
            return
        position = _as_position(self.position)
        object.__setattr__(self, "position", position)
        object.__setattr__(
            self,
            "position_covariance",
            _as_covariance(self.position_covariance, len(position)),
        )

    @property
    def has_position(self) -> bool:
        return self.position is not None

    @property
    def dimensions(self) -> Optional[int]:
        return None if self.position is None else len(self.position)

    def position_array(self) -> Optional[np.ndarray]:
        if self.position is None:
            return None
        return np.array(self.position, dtype=float)


@dataclass(frozen=True, eq=False)
class RangingReading(_ReadingLocation):
    """
    Measured distance to a radio source.

    Attributes:
        source: Radio source the distance was measured to
        distance: Measured distance in meters
        distance_std: Distance std dev (m), if known
        position: Receiver position, if known
        position_covariance: Receiver position covariance (m²), if known
    """

    source: RadioSource
    distance: float
    distance_std: Optional[float] = None
    position: Optional[Tuple[float, ...]] = None
    position_covariance: Optional[np.ndarray] = None

    reading_type = ReadingType.RANGING

    def __post_init__(self):
        if self.distance < 0:
            raise InvalidArgumentError(f"Distance cannot be negative: {self.distance}")
        _check_std("distance_std", self.distance_std)
        self._init_location()


@dataclass(frozen=True, eq=False)
class RssiReading(_ReadingLocation):
    """
    Received signal strength of a radio source.

    Attributes:
        source: Radio source that was received
        rssi: Received power in dBm
        rssi_std: RSSI std dev (dB), if known
        position: Receiver position, if known
        position_covariance: Receiver position covariance (m²), if known
    """

    source: RadioSource
    rssi: float
    rssi_std: Optional[float] = None
    position: Optional[Tuple[float, ...]] = None
    position_covariance: Optional[np.ndarray] = None

    reading_type = ReadingType.RSSI

    def __post_init__(self):
        _check_std("rssi_std", self.rssi_std)
        self._init_location()


@dataclass(frozen=True, eq=False)
class RangingAndRssiReading(_ReadingLocation):
    """
    Distance and received signal strength measured together.

    Both measurements are independent evidence: consumers derive one
    distance sample from each channel.
    """

    source: RadioSource
    distance: float
    rssi: float
    distance_std: Optional[float] = None
    rssi_std: Optional[float] = None
    position: Optional[Tuple[float, ...]] = None
    position_covariance: Optional[np.ndarray] = None

    reading_type = ReadingType.RANGING_AND_RSSI

    def __post_init__(self):
        if self.distance < 0:
            raise InvalidArgumentError(f"Distance cannot be negative: {self.distance}")
        _check_std("distance_std", self.distance_std)
        _check_std("rssi_std", self.rssi_std)
        self._init_location()

    def as_ranging_reading(self) -> RangingReading:
        return RangingReading(
            source=self.source,
            distance=self.distance,
            distance_std=self.distance_std,
            position=self.position,
            position_covariance=self.position_covariance,
        )

    def as_rssi_reading(self) -> RssiReading:
        return RssiReading(
            source=self.source,
            rssi=self.rssi,
            rssi_std=self.rssi_std,
            position=self.position,
            position_covariance=self.position_covariance,
        )


def has_ranging(reading) -> bool:
    return reading.reading_type in (ReadingType.RANGING, ReadingType.RANGING_AND_RSSI)


def has_rssi(reading) -> bool:
    return reading.reading_type in (ReadingType.RSSI, ReadingType.RANGING_AND_RSSI)


@dataclass
class Fingerprint:
    """
    Ordered readings gathered for one observation.

    A source may appear several times.

    Attributes:
        readings: Readings in acquisition order
        position: Position where the fingerprint was taken, if known
    """

    readings: List = field(default_factory=list)
    position: Optional[Tuple[float, ...]] = None

    def __post_init__(self):
        self.readings = list(self.readings)
        if self.position is not None:
            self.position = _as_position(self.position)

    def add_reading(self, reading):
        self.readings.append(reading)

    def readings_for(self, source: RadioSource) -> list:
        """Get all readings of a given source."""
        return [r for r in self.readings if r.source.identity == source.identity]

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator:
        return iter(self.readings)
