"""
Estimation Result Schema.

Output of one estimate() call on a radio source estimator. A result is
created fresh by each call and never mutated afterward.
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import math

import numpy as np

from radioloc_core.proto.radio_source import LocatedRadioSource


@dataclass(frozen=True, eq=False)
class EstimationResult:
    """
    Estimated position and radio parameters of a source.

    Attributes:
        position: Estimated source position (2D or 3D), meters
        position_covariance: Position block of the covariance (m²)

        # Optional radio parameters
        transmitted_power_dbm: Estimated (or assumed) transmitted power (dBm)
        transmitted_power_variance: Power variance (dB²), None when not estimated
        path_loss_exponent: Estimated (or assumed) path-loss exponent
        path_loss_exponent_variance: Exponent variance, None when not estimated

        # Optional diagnostics
        covariance: Full covariance over the jointly estimated unknowns,
            ordered as position, then power, then path-loss exponent
        estimated_source: Located source built from the estimate
        ranging_inliers: Inlier mask over ranging-channel readings
        rssi_inliers: Inlier mask over RSSI-channel readings
        refined: True when the joint refinement succeeded
        refinement_error: Message of the refinement failure, if any

    Notes:
        - Covariance outputs are None when refinement is disabled or failed
        - Variances of parameters held fixed are None, never zero
    """

    position: Tuple[float, ...]
    position_covariance: Optional[np.ndarray] = None
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_variance: Optional[float] = None
    path_loss_exponent: Optional[float] = None
    path_loss_exponent_variance: Optional[float] = None
    covariance: Optional[np.ndarray] = None
    estimated_source: Optional[LocatedRadioSource] = None
    ranging_inliers: Optional[np.ndarray] = None
    rssi_inliers: Optional[np.ndarray] = None
    refined: bool = False
    refinement_error: Optional[str] = None

    @property
    def dimensions(self) -> int:
        return len(self.position)

    @property
    def transmitted_power(self) -> Optional[float]:
        """Transmitted power in mW."""
        if self.transmitted_power_dbm is None:
            return None
        return 10.0 ** (self.transmitted_power_dbm / 10.0)

    @property
    def transmitted_power_std(self) -> Optional[float]:
        if self.transmitted_power_variance is None:
            return None
        return math.sqrt(self.transmitted_power_variance)

    @property
    def path_loss_exponent_std(self) -> Optional[float]:
        if self.path_loss_exponent_variance is None:
            return None
        return math.sqrt(self.path_loss_exponent_variance)

    @property
    def position_std(self) -> Optional[Tuple[float, ...]]:
        """Per-axis position std dev (m), when covariance is available."""
        if self.position_covariance is None:
            return None
        return tuple(float(math.sqrt(max(v, 0.0))) for v in np.diag(self.position_covariance))

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        def _matrix(value):
            return None if value is None else np.asarray(value).tolist()

        return {
            'position': list(self.position),
            'position_covariance': _matrix(self.position_covariance),
            'transmitted_power_dbm': self.transmitted_power_dbm,
            'transmitted_power_variance': self.transmitted_power_variance,
            'path_loss_exponent': self.path_loss_exponent,
            'path_loss_exponent_variance': self.path_loss_exponent_variance,
            'covariance': _matrix(self.covariance),
            'ranging_inliers': _matrix(self.ranging_inliers),
            'rssi_inliers': _matrix(self.rssi_inliers),
            'refined': self.refined,
            'refinement_error': self.refinement_error,
        }
