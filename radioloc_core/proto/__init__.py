"""
Protocol Module: radio sources, readings and estimation results.

All types are plain in-memory value objects; estimators read them and
never mutate them.
"""

from .radio_source import (
    RadioSource,
    RadioSourceType,
    LocatedRadioSource,
)
from .reading import (
    ReadingType,
    RangingReading,
    RssiReading,
    RangingAndRssiReading,
    Fingerprint,
    has_ranging,
    has_rssi,
)
from .estimation_result import EstimationResult

__all__ = [
    'RadioSource',
    'RadioSourceType',
    'LocatedRadioSource',
    'ReadingType',
    'RangingReading',
    'RssiReading',
    'RangingAndRssiReading',
    'Fingerprint',
    'has_ranging',
    'has_rssi',
    'EstimationResult',
]
