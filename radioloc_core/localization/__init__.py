"""
Localization Module: path loss, reading adaptation, multilateration, robust estimation.

Key classes:
- path_loss: Free-space path-loss conversions (dBm, mW, distance)
- DistanceSamples / build_distance_samples: Readings to distance samples
- MultilaterationSolver: Weighted nonlinear multilateration
- RadioSourceSolver: Joint position / power / path-loss solver
- RobustConsensus: RANSAC, MSAC, PROSAC, LMEDS, PROMEDS
- LockableEstimator / EstimatorListener: Locked estimate() lifecycle
- RobustRangingEstimator / RobustRssiEstimator: Single-channel estimators
- RobustSequentialEstimator: Two-stage mixed ranging + RSSI estimator
"""

from . import path_loss
from .reading_adapter import (
    DistanceSamples,
    SampleChannel,
    SplitReadings,
    build_distance_samples,
    build_positions_and_distances,
    position_variance,
    split_located_readings,
)
from .multilateration import (
    MultilaterationSolver,
    RadioSourceSolver,
    SolverConfig,
    SolverResult,
    levenberg_marquardt,
    linear_multilateration,
)
from .robust_consensus import (
    ConsensusConfig,
    ConsensusResult,
    RobustConsensus,
    RobustMethod,
    required_iterations,
)
from .lifecycle import (
    EstimatorListener,
    LockableEstimator,
)
from .robust_estimators import (
    RobustRangingEstimator,
    RobustRssiEstimator,
)
from .sequential_estimator import (
    RobustSequentialEstimator,
    SequentialEstimatorConfig,
)

__all__ = [
    'path_loss',
    # Reading adaptation
    'DistanceSamples',
    'SampleChannel',
    'SplitReadings',
    'build_distance_samples',
    'build_positions_and_distances',
    'position_variance',
    'split_located_readings',
    # Solvers
    'MultilaterationSolver',
    'RadioSourceSolver',
    'SolverConfig',
    'SolverResult',
    'levenberg_marquardt',
    'linear_multilateration',
    # Robust consensus
    'ConsensusConfig',
    'ConsensusResult',
    'RobustConsensus',
    'RobustMethod',
    'required_iterations',
    # Estimators
    'EstimatorListener',
    'LockableEstimator',
    'RobustRangingEstimator',
    'RobustRssiEstimator',
    'RobustSequentialEstimator',
    'SequentialEstimatorConfig',
]
