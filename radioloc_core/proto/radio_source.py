"""
Radio Source Schema.

Defines radio emitters (WiFi access points, Bluetooth beacons) and their
located form: a known position plus optional transmitted power and
path-loss exponent.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple
from enum import IntEnum

import numpy as np

from radioloc_core.errors import InvalidArgumentError
from radioloc_core.config import PATH_LOSS_CONFIG


class RadioSourceType(IntEnum):
    """Kind of radio emitter."""

    WIFI_ACCESS_POINT = 0
    BEACON = 1


@dataclass(frozen=True)
class RadioSource:
    """
    Identity of a radio emitter.

    Attributes:
        source_id: Identifier of the emitter (e.g., BSSID "00:11:22:33:44:55")
        frequency: Carrier frequency in Hz
        source_type: Access point or beacon
        identifiers: Extra beacon identifiers (e.g., UUID, major, minor)

    Notes:
        - Two sources are the same emitter when their identities are equal
        - Frequency must be positive
    """

    source_id: str
    frequency: float
    source_type: RadioSourceType = RadioSourceType.WIFI_ACCESS_POINT
    identifiers: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.frequency <= 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency}")
        object.__setattr__(self, "identifiers", tuple(self.identifiers))

    @property
    def identity(self) -> tuple:
        """Key used to match readings to sources."""
        return (self.source_type, self.source_id, self.identifiers)


def _as_position(position, name: str = "position") -> Tuple[float, ...]:
    values = tuple(float(v) for v in np.asarray(position, dtype=float).ravel())
    if len(values) not in (2, 3):
        raise InvalidArgumentError(f"{name} must be 2D or 3D, got {len(values)} values")
    return values


def _as_covariance(covariance, size: int, name: str = "position_covariance"):
    if covariance is None:
        return None
    matrix = np.array(covariance, dtype=float)
    if matrix.shape != (size, size):
        raise InvalidArgumentError(
            f"{name} must be {size}x{size}, got shape {matrix.shape}"
        )
    matrix.setflags(write=False)
    return matrix


@dataclass(frozen=True, eq=False)
class LocatedRadioSource:
    """
    Radio emitter with a known position.

    Attributes:
        source: Emitter identity and frequency
        position: Known position (2D or 3D), meters
        position_covariance: Position covariance (m²), if known
        transmitted_power_dbm: Transmitted power (dBm), if known
        transmitted_power_std: Transmitted power std dev (dB), if known
        path_loss_exponent: Path-loss exponent (2.0 is free space)
        path_loss_exponent_std: Path-loss exponent std dev, if known
    """

    source: RadioSource
    position: Tuple[float, ...]
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std: Optional[float] = None
    path_loss_exponent: float = field(
        default=PATH_LOSS_CONFIG["path_loss_exponent"]
    )
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self):
        position = _as_position(self.position)
        object.__setattr__(self, "position", position)
        object.__setattr__(
            self,
            "position_covariance",
            _as_covariance(self.position_covariance, len(position)),
        )
        if self.path_loss_exponent <= 0:
            raise InvalidArgumentError(
                f"Path-loss exponent must be positive: {self.path_loss_exponent}"
            )
        for name in ("transmitted_power_std", "path_loss_exponent_std"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise InvalidArgumentError(f"{name} cannot be negative: {value}")

    @property
    def identity(self) -> tuple:
        return self.source.identity

    @property
    def frequency(self) -> float:
        return self.source.frequency

    @property
    def dimensions(self) -> int:
        return len(self.position)

    @property
    def has_power(self) -> bool:
        """True when the transmitted power of this source is known."""
        return self.transmitted_power_dbm is not None

    @property
    def transmitted_power(self) -> Optional[float]:
        """Transmitted power in mW, if known."""
        if self.transmitted_power_dbm is None:
            return None
        return 10.0 ** (self.transmitted_power_dbm / 10.0)

    def position_array(self) -> np.ndarray:
        return np.array(self.position, dtype=float)
