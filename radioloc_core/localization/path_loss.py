"""
Free-Space Path-Loss Model.

Converts between transmitted power, received power, distance, carrier
frequency and path-loss exponent:

    Pr = Pt * (c / (4*pi*f))^n / d^n

or, in dBm:

    rssi = n * k_dB + Pt_dBm - 10 * n * log10(d),  k_dB = 10 * log10(c / (4*pi*f))

Linear powers are in mW. All functions accept scalars or numpy arrays.
Domain constraints (d > 0, f > 0, n > 0) are the caller's responsibility.
"""

from typing import Optional, Tuple
import math

import numpy as np

SPEED_OF_LIGHT = 299792458.0

LN10 = math.log(10.0)


def dbm_to_power(dbm):
    """Convert dBm to linear power (mW)."""
    return 10.0 ** (np.asarray(dbm, dtype=float) / 10.0)


def power_to_dbm(power):
    """Convert linear power (mW) to dBm."""
    return 10.0 * np.log10(power)


def path_loss_constant(frequency):
    """Linear free-space constant c / (4*pi*f)."""
    return SPEED_OF_LIGHT / (4.0 * math.pi * frequency)


def path_loss_constant_db(frequency):
    """Free-space constant in dB: 10 * log10(c / (4*pi*f))."""
    return 10.0 * np.log10(path_loss_constant(frequency))


def received_power(transmitted_power, distance, frequency, path_loss_exponent):
    """Received power (mW) at a distance from a transmitter of given power (mW)."""
    k = path_loss_constant(frequency)
    return transmitted_power * k ** path_loss_exponent / distance ** path_loss_exponent


def received_power_dbm(transmitted_power_dbm, distance, frequency, path_loss_exponent):
    """Received power (dBm) at a distance from a transmitter of given power (dBm)."""
    return (
        path_loss_exponent * path_loss_constant_db(frequency)
        + transmitted_power_dbm
        - 10.0 * path_loss_exponent * np.log10(distance)
    )


def distance_from_power(transmitted_power, received, frequency, path_loss_exponent):
    """Distance (m) at which a transmitter of given power is received at `received` mW."""
    k = path_loss_constant(frequency)
    return (k ** path_loss_exponent * transmitted_power / received) ** (1.0 / path_loss_exponent)


def distance_from_rssi(transmitted_power_dbm, rssi_dbm, frequency, path_loss_exponent):
    """Distance (m) at which a transmitter of given power (dBm) is received at rssi_dbm."""
    exponent = (
        path_loss_exponent * path_loss_constant_db(frequency)
        + transmitted_power_dbm
        - rssi_dbm
    ) / (10.0 * path_loss_exponent)
    return 10.0 ** exponent


def propagate_variances_to_distance(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    path_loss_exponent: float,
    frequency: float,
    transmitted_power_variance: Optional[float] = None,
    rssi_variance: Optional[float] = None,
    path_loss_exponent_variance: Optional[float] = None,
) -> Optional[Tuple[float, float]]:
    """
    First-order propagation of power and exponent variances to distance.

    Args:
        transmitted_power_dbm: Transmitted power (dBm)
        rssi_dbm: Received power (dBm)
        path_loss_exponent: Path-loss exponent
        frequency: Carrier frequency (Hz)
        transmitted_power_variance: Variance of transmitted power (dB²)
        rssi_variance: Variance of received power (dB²)
        path_loss_exponent_variance: Variance of the exponent

    Returns:
        (distance, distance_variance), or None when every variance is None
    """
    if (
        transmitted_power_variance is None
        and rssi_variance is None
        and path_loss_exponent_variance is None
    ):
        return None

    n = path_loss_exponent
    distance = float(distance_from_rssi(transmitted_power_dbm, rssi_dbm, frequency, n))

    # d = 10^E, E = k_dB/10 + (Pt - Pr) / (10 n)
    d_dtx = LN10 * distance / (10.0 * n)
    d_drx = -d_dtx
    d_dn = -LN10 * distance * (transmitted_power_dbm - rssi_dbm) / (10.0 * n * n)

    variance = 0.0
    if transmitted_power_variance is not None:
        variance += d_dtx ** 2 * transmitted_power_variance
    if rssi_variance is not None:
        variance += d_drx ** 2 * rssi_variance
    if path_loss_exponent_variance is not None:
        variance += d_dn ** 2 * path_loss_exponent_variance

    return distance, variance


def propagate_rssi_variance_to_distance_variance(
    transmitted_power_dbm: float,
    rssi_dbm: float,
    path_loss_exponent: float,
    frequency: float,
    rssi_variance: Optional[float],
) -> Optional[float]:
    """Distance variance (m²) caused by RSSI variance alone, or None if unknown."""
    result = propagate_variances_to_distance(
        transmitted_power_dbm,
        rssi_dbm,
        path_loss_exponent,
        frequency,
        rssi_variance=rssi_variance,
    )
    return None if result is None else result[1]
