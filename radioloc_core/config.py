"""
Default configuration for radio source estimation.

Component config dataclasses take their defaults from these dictionaries,
so tuning a deployment only requires editing this module.
"""

import logging
from typing import Optional

# Robust consensus defaults (shared by ranging and RSSI stages)
CONSENSUS_CONFIG = {
    "method": "PROMEDS",              # RANSAC, MSAC, PROSAC, LMEDS, PROMEDS
    "confidence": 0.99,               # probability that a clean subset is drawn
    "max_iterations": 5000,
    "progress_delta": 0.05,           # notify listeners every 5% of progress
    "ranging_threshold_m": 0.1,       # inlier bound for RANSAC/MSAC/PROSAC
    "rssi_threshold_db": 0.1,         # inlier bound for RANSAC/MSAC/PROSAC
    "stop_threshold": 1e-4,           # median residual stop for LMEDS/PROMEDS
    "lmeds_inlier_factor": 2.5,       # robust sigma multiplier for inliers
}

# Nonlinear least squares (Levenberg-Marquardt) defaults
SOLVER_CONFIG = {
    "max_iterations": 100,
    "tolerance": 1e-12,
    "initial_damping": 1e-3,
    "max_damping": 1e12,
}

# Propagation model defaults
PATH_LOSS_CONFIG = {
    "path_loss_exponent": 2.0,        # free space
    "rssi_std_db": 1.0,               # assumed RSSI std when readings carry none
    "fallback_distance_std_m": 1.0,
}

# Estimator behaviour defaults
ESTIMATOR_CONFIG = {
    "transmitted_power_estimation_enabled": True,
    "path_loss_estimation_enabled": False,
    "refine_result": True,
    "keep_covariance": True,
    "use_reading_position_covariances": True,
}

# Metrics collection
METRICS_CONFIG = {
    "histogram_size": 1000,           # most recent samples kept per histogram
    "summary_percentile": 95,
}

# Logging configuration
LOGGING_CONFIG = {
    "level": "INFO",
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}


def configure_logging(level: Optional[str] = None):
    """
    Configure root logging from LOGGING_CONFIG.

    Args:
        level: Optional level name overriding LOGGING_CONFIG["level"]
    """
    level_name = (level or LOGGING_CONFIG["level"]).upper()
    logging.basicConfig(
        level=getattr(logging, level_name),
        format=LOGGING_CONFIG["format"],
    )
    logging.getLogger("radioloc_core").setLevel(getattr(logging, level_name))
