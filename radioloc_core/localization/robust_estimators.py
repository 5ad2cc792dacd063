"""
Single-Channel Robust Radio Source Estimators.

- RobustRangingEstimator: source position from ranging readings
- RobustRssiEstimator: source position, transmitted power and/or path-loss
  exponent from RSSI readings

Both run a robust consensus pass over their readings and optionally refine
the best hypothesis over its inliers. They are used standalone or as the
two stages of RobustSequentialEstimator.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from radioloc_core.config import PATH_LOSS_CONFIG, CONSENSUS_CONFIG, ESTIMATOR_CONFIG
from radioloc_core.errors import (
    InvalidArgumentError,
    DidNotConvergeError,
    RefinementError,
)
from radioloc_core.proto.estimation_result import EstimationResult
from radioloc_core.localization.lifecycle import LockableEstimator, EstimatorListener
from radioloc_core.localization.multilateration import (
    MultilaterationSolver,
    RadioSourceSolver,
    SolverConfig,
    MIN_SQUARED_DISTANCE,
    variance_or_none,
)
from radioloc_core.localization.path_loss import received_power_dbm
from radioloc_core.localization.reading_adapter import position_variance, sample_std
from radioloc_core.localization.robust_consensus import ConsensusConfig, RobustConsensus

logger = logging.getLogger(__name__)

REFINEMENT_ERRORS = (DidNotConvergeError, RefinementError, np.linalg.LinAlgError)


def check_located_readings(readings, dimensions: int) -> list:
    """
    Validate readings of a single source taken at known positions.

    Raises:
        InvalidArgumentError: empty list, missing or mismatched positions,
            or readings of different sources
    """
    readings = list(readings)
    if not readings:
        raise InvalidArgumentError("Readings cannot be empty")
    identity = readings[0].source.identity
    for reading in readings:
        if not reading.has_position:
            raise InvalidArgumentError("Every reading must carry the receiver position")
        if reading.dimensions != dimensions:
            raise InvalidArgumentError(
                f"Reading position has {reading.dimensions} dimensions, expected {dimensions}"
            )
        if reading.source.identity != identity:
            raise InvalidArgumentError("Readings must belong to the same radio source")
    return readings


def draw_random_seed() -> int:
    return int(np.random.default_rng().integers(0, 2 ** 32))


def ranging_arrays(readings, use_position_covariances: bool,
                   fallback_std: float = PATH_LOSS_CONFIG["fallback_distance_std_m"]):
    """Positions, distances and distance std devs of ranging readings."""
    positions = np.array([r.position for r in readings], dtype=float)
    distances = np.array([r.distance for r in readings], dtype=float)
    stds = np.array([
        sample_std(
            None if r.distance_std is None else r.distance_std ** 2,
            position_variance(r.position_covariance) if use_position_covariances else None,
            fallback_std,
        )
        for r in readings
    ])
    return positions, distances, stds


def rssi_arrays(readings, default_std: float = PATH_LOSS_CONFIG["rssi_std_db"]):
    """Positions, RSSI values and RSSI std devs of RSSI readings."""
    positions = np.array([r.position for r in readings], dtype=float)
    values = np.array([r.rssi for r in readings], dtype=float)
    stds = np.array(
        [default_std if r.rssi_std is None else r.rssi_std for r in readings],
        dtype=float,
    )
    return positions, values, stds


def ranging_residuals(position, positions, distances) -> np.ndarray:
    computed = np.sqrt(np.maximum(np.sum((position - positions) ** 2, axis=1),
                                  MIN_SQUARED_DISTANCE))
    return np.abs(computed - distances)


def rssi_residuals(model, positions, values, frequency) -> np.ndarray:
    distances = np.sqrt(np.maximum(np.sum((model.position - positions) ** 2, axis=1),
                                   MIN_SQUARED_DISTANCE))
    predicted = received_power_dbm(
        model.transmitted_power_dbm, distances, frequency, model.path_loss_exponent
    )
    return np.abs(predicted - values)


class _RobustStageEstimator(LockableEstimator):
    """Configuration and readiness shared by the single-channel estimators."""

    def __init__(
        self,
        readings: Optional[Sequence] = None,
        dimensions: int = 2,
        consensus: Optional[ConsensusConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position=None,
        refine_result: bool = ESTIMATOR_CONFIG["refine_result"],
        keep_covariance: bool = ESTIMATOR_CONFIG["keep_covariance"],
        use_reading_position_covariances: bool = ESTIMATOR_CONFIG[
            "use_reading_position_covariances"],
        random_seed: Optional[int] = None,
        solver_config: Optional[SolverConfig] = None,
        listener: Optional[EstimatorListener] = None,
        record_attempts: bool = True,
    ):
        consensus = consensus or ConsensusConfig()
        super().__init__(listener=listener, progress_delta=consensus.progress_delta,
                         record_attempts=record_attempts)
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {dimensions}")
        self._dimensions = dimensions
        self._consensus = consensus
        self._readings = None
        self._quality_scores = None
        self._initial_position = None
        self._refine_result = refine_result
        self._keep_covariance = keep_covariance
        self._use_reading_position_covariances = use_reading_position_covariances
        self._random_seed = draw_random_seed() if random_seed is None else random_seed
        self._solver_config = solver_config or SolverConfig()
        self._result: Optional[EstimationResult] = None

        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores
        if initial_position is not None:
            self.initial_position = initial_position

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def readings(self) -> Optional[list]:
        return self._readings

    @readings.setter
    def readings(self, value):
        self._check_unlocked()
        self._readings = check_located_readings(value, self._dimensions)
        if self._quality_scores is not None and len(self._quality_scores) != len(self._readings):
            logger.debug("Discarding %d quality scores that do not match %d readings",
                         len(self._quality_scores), len(self._readings))
            self._quality_scores = None

    @property
    def quality_scores(self) -> Optional[np.ndarray]:
        return self._quality_scores

    @quality_scores.setter
    def quality_scores(self, value):
        self._check_unlocked()
        if value is None:
            self._quality_scores = None
            return
        scores = np.asarray(value, dtype=float).ravel()
        if self._readings is not None and len(scores) != len(self._readings):
            raise InvalidArgumentError(
                f"Expected {len(self._readings)} quality scores, got {len(scores)}"
            )
        self._quality_scores = scores

    @property
    def consensus(self) -> ConsensusConfig:
        return self._consensus

    @consensus.setter
    def consensus(self, value: ConsensusConfig):
        self._check_unlocked()
        self._consensus = value
        self._progress_delta = value.progress_delta

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return self._initial_position

    @initial_position.setter
    def initial_position(self, value):
        self._check_unlocked()
        if value is None:
            self._initial_position = None
            return
        position = np.asarray(value, dtype=float).ravel()
        if len(position) != self._dimensions:
            raise InvalidArgumentError(
                f"Initial position must have {self._dimensions} values, got {len(position)}"
            )
        self._initial_position = position

    @property
    def refine_result(self) -> bool:
        return self._refine_result

    @refine_result.setter
    def refine_result(self, value: bool):
        self._check_unlocked()
        self._refine_result = value

    @property
    def keep_covariance(self) -> bool:
        return self._keep_covariance

    @keep_covariance.setter
    def keep_covariance(self, value: bool):
        self._check_unlocked()
        self._keep_covariance = value

    @property
    def use_reading_position_covariances(self) -> bool:
        return self._use_reading_position_covariances

    @use_reading_position_covariances.setter
    def use_reading_position_covariances(self, value: bool):
        self._check_unlocked()
        self._use_reading_position_covariances = value

    @property
    def result(self) -> Optional[EstimationResult]:
        """Result of the last successful estimate(), None before."""
        return self._result

    @property
    def min_readings(self) -> int:
        raise NotImplementedError

    def _quality_ready(self) -> bool:
        if not self._consensus.method.requires_quality_scores:
            return True
        return (self._quality_scores is not None
                and len(self._quality_scores) == len(self._readings))

    def is_ready(self) -> bool:
        return (
            self._readings is not None
            and len(self._readings) >= self.min_readings
            and self._quality_ready()
        )

    def _rng(self) -> np.random.Generator:
        return np.random.default_rng(self._random_seed)

    def _warn_refinement(self, error: Exception):
        logger.warning("%s refinement failed: %s", type(self).__name__, error)
        self.metrics.increment_drop('refinement_failed')


class RobustRangingEstimator(_RobustStageEstimator):
    """
    Robust source position from ranging readings.

    Usage:
        estimator = RobustRangingEstimator(readings, dimensions=2)
        result = estimator.estimate()
        print(result.position)
    """

    @property
    def min_readings(self) -> int:
        return self._dimensions + 1

    def _estimate(self) -> EstimationResult:
        positions, distances, stds = ranging_arrays(
            self._readings, self.use_reading_position_covariances
        )
        solver = MultilaterationSolver(self._dimensions, self._solver_config)

        def fit(subset):
            return solver.solve(positions[subset], distances[subset], weighted=False).position

        consensus = RobustConsensus(
            num_samples=len(distances),
            subset_size=self.min_readings,
            fit=fit,
            residuals=lambda position: ranging_residuals(position, positions, distances),
            config=self._consensus,
            default_threshold=CONSENSUS_CONFIG["ranging_threshold_m"],
            quality_scores=self._quality_scores,
            rng=self._rng(),
            progress_callback=self._notify_progress,
        )
        best = consensus.run()

        position = best.model
        covariance = None
        refined = False
        refinement_error = None
        if self.refine_result:
            inliers = best.inliers
            try:
                self.metrics.increment('refinements')
                solution = solver.solve(
                    positions[inliers],
                    distances[inliers],
                    stds[inliers],
                    initial_position=position,
                    weighted=True,
                    compute_covariance=self.keep_covariance,
                )
                position = solution.position
                covariance = solution.covariance
                refined = True
            except REFINEMENT_ERRORS as e:
                self._warn_refinement(e)
                refinement_error = str(e)

        self._result = EstimationResult(
            position=tuple(float(v) for v in position),
            position_covariance=covariance,
            covariance=covariance,
            ranging_inliers=best.inliers,
            refined=refined,
            refinement_error=refinement_error,
        )
        return self._result


class RobustRssiEstimator(_RobustStageEstimator):
    """
    Robust source position, power and path-loss exponent from RSSI readings.

    Position estimation can be disabled when the position is already known
    (initial_position is then held fixed). Transmitted power estimation
    can be disabled when initial_transmitted_power_dbm is known.
    """

    def __init__(
        self,
        readings: Optional[Sequence] = None,
        dimensions: int = 2,
        consensus: Optional[ConsensusConfig] = None,
        quality_scores: Optional[Sequence[float]] = None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = PATH_LOSS_CONFIG["path_loss_exponent"],
        position_estimation_enabled: bool = True,
        transmitted_power_estimation_enabled: bool = ESTIMATOR_CONFIG[
            "transmitted_power_estimation_enabled"],
        path_loss_estimation_enabled: bool = ESTIMATOR_CONFIG["path_loss_estimation_enabled"],
        **kwargs,
    ):
        self._initial_transmitted_power_dbm = initial_transmitted_power_dbm
        self._initial_path_loss_exponent = initial_path_loss_exponent
        self._position_estimation_enabled = position_estimation_enabled
        self._transmitted_power_estimation_enabled = transmitted_power_estimation_enabled
        self._path_loss_estimation_enabled = path_loss_estimation_enabled
        super().__init__(
            readings=readings,
            dimensions=dimensions,
            consensus=consensus,
            quality_scores=quality_scores,
            initial_position=initial_position,
            **kwargs,
        )

    @property
    def initial_transmitted_power_dbm(self) -> Optional[float]:
        return self._initial_transmitted_power_dbm

    @initial_transmitted_power_dbm.setter
    def initial_transmitted_power_dbm(self, value: Optional[float]):
        self._check_unlocked()
        self._initial_transmitted_power_dbm = value

    @property
    def initial_path_loss_exponent(self) -> float:
        return self._initial_path_loss_exponent

    @initial_path_loss_exponent.setter
    def initial_path_loss_exponent(self, value: float):
        self._check_unlocked()
        if value <= 0:
            raise InvalidArgumentError(f"Path-loss exponent must be positive: {value}")
        self._initial_path_loss_exponent = value

    @property
    def position_estimation_enabled(self) -> bool:
        return self._position_estimation_enabled

    @position_estimation_enabled.setter
    def position_estimation_enabled(self, value: bool):
        self._check_unlocked()
        self._position_estimation_enabled = value

    @property
    def transmitted_power_estimation_enabled(self) -> bool:
        return self._transmitted_power_estimation_enabled

    @transmitted_power_estimation_enabled.setter
    def transmitted_power_estimation_enabled(self, value: bool):
        self._check_unlocked()
        self._transmitted_power_estimation_enabled = value

    @property
    def path_loss_estimation_enabled(self) -> bool:
        return self._path_loss_estimation_enabled

    @path_loss_estimation_enabled.setter
    def path_loss_estimation_enabled(self, value: bool):
        self._check_unlocked()
        self._path_loss_estimation_enabled = value

    @property
    def num_unknowns(self) -> int:
        return (
            (self._dimensions if self._position_estimation_enabled else 0)
            + int(self._transmitted_power_estimation_enabled)
            + int(self._path_loss_estimation_enabled)
        )

    @property
    def min_readings(self) -> int:
        return self.num_unknowns + 1

    def is_ready(self) -> bool:
        if self.num_unknowns == 0:
            return False
        if not self._position_estimation_enabled and self._initial_position is None:
            return False
        if (not self._transmitted_power_estimation_enabled
                and self._initial_transmitted_power_dbm is None):
            return False
        return super().is_ready()

    def _solver(self) -> RadioSourceSolver:
        return RadioSourceSolver(
            dimensions=self._dimensions,
            frequency=self._readings[0].source.frequency,
            estimate_position=self._position_estimation_enabled,
            estimate_transmitted_power=self._transmitted_power_estimation_enabled,
            estimate_path_loss=self._path_loss_estimation_enabled,
            config=self._solver_config,
        )

    def _seed_position(self, positions, values) -> Optional[np.ndarray]:
        """Explicit initial position, else RSSI-weighted centroid of receivers."""
        if self._initial_position is not None:
            return self._initial_position
        weights = 10.0 ** ((values - np.max(values)) / 10.0)
        return np.sum(weights[:, None] * positions, axis=0) / np.sum(weights)

    def _estimate(self) -> EstimationResult:
        positions, values, stds = rssi_arrays(self._readings)
        frequency = self._readings[0].source.frequency
        solver = self._solver()

        def fit(subset):
            return solver.solve(
                rssi_positions=positions[subset],
                rssi_values=values[subset],
                initial_position=self._seed_position(positions[subset], values[subset]),
                initial_transmitted_power_dbm=self._initial_transmitted_power_dbm,
                initial_path_loss_exponent=self._initial_path_loss_exponent,
                compute_covariance=False,
            )

        consensus = RobustConsensus(
            num_samples=len(values),
            subset_size=self.min_readings,
            fit=fit,
            residuals=lambda model: rssi_residuals(model, positions, values, frequency),
            config=self._consensus,
            default_threshold=CONSENSUS_CONFIG["rssi_threshold_db"],
            quality_scores=self._quality_scores,
            rng=self._rng(),
            progress_callback=self._notify_progress,
        )
        best = consensus.run()
        model = best.model

        covariance = None
        refined = False
        refinement_error = None
        if self.refine_result:
            inliers = best.inliers
            try:
                self.metrics.increment('refinements')
                model = solver.solve(
                    rssi_positions=positions[inliers],
                    rssi_values=values[inliers],
                    rssi_stds=stds[inliers],
                    initial_position=model.position,
                    initial_transmitted_power_dbm=model.transmitted_power_dbm,
                    initial_path_loss_exponent=model.path_loss_exponent,
                    compute_covariance=self.keep_covariance,
                )
                covariance = model.covariance
                refined = True
            except REFINEMENT_ERRORS as e:
                self._warn_refinement(e)
                refinement_error = str(e)

        self._result = build_result(
            model,
            covariance,
            self._dimensions,
            position_estimated=self._position_estimation_enabled,
            power_estimated=self._transmitted_power_estimation_enabled,
            path_loss_estimated=self._path_loss_estimation_enabled,
            rssi_inliers=best.inliers,
            refined=refined,
            refinement_error=refinement_error,
        )
        return self._result


def parameter_indices(dimensions: int, position_estimated: bool, power_estimated: bool,
                      path_loss_estimated: bool):
    """Covariance indices of (power, path-loss exponent), None when not estimated."""
    index = dimensions if position_estimated else 0
    power_index = None
    if power_estimated:
        power_index = index
        index += 1
    path_loss_index = index if path_loss_estimated else None
    return power_index, path_loss_index


def build_result(
    model,
    covariance: Optional[np.ndarray],
    dimensions: int,
    position_estimated: bool,
    power_estimated: bool,
    path_loss_estimated: bool,
    ranging_inliers: Optional[np.ndarray] = None,
    rssi_inliers: Optional[np.ndarray] = None,
    refined: bool = False,
    refinement_error: Optional[str] = None,
) -> EstimationResult:
    """Assemble an EstimationResult from a SolverResult and its covariance."""
    power_index, path_loss_index = parameter_indices(
        dimensions, position_estimated, power_estimated, path_loss_estimated
    )
    position_covariance = None
    if covariance is not None and position_estimated:
        position_covariance = covariance[:dimensions, :dimensions]

    return EstimationResult(
        position=tuple(float(v) for v in model.position),
        position_covariance=position_covariance,
        transmitted_power_dbm=model.transmitted_power_dbm,
        transmitted_power_variance=variance_or_none(covariance, power_index),
        path_loss_exponent=model.path_loss_exponent,
        path_loss_exponent_variance=variance_or_none(covariance, path_loss_index),
        covariance=covariance,
        ranging_inliers=ranging_inliers,
        rssi_inliers=rssi_inliers,
        refined=refined,
        refinement_error=refinement_error,
    )
