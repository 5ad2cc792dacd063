"""
Radio Source Localization Core Package.

Locates a stationary radio emitter (WiFi access point or Bluetooth beacon)
from ranging and/or RSSI readings taken at known receiver positions, and
optionally estimates its transmitted power and path-loss exponent.

Package structure:
- proto: Radio sources, readings, fingerprints and estimation results
- localization: Path-loss model, reading adaptation, multilateration,
  robust consensus and the sequential estimator
- metrics: Diagnostics, counters, histograms
- config: Default parameters and logging setup
- errors: Exception taxonomy shared by all estimators
"""

__version__ = "0.1.0"
__author__ = "Radio Localization Team"
