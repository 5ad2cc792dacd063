"""
Robust Sequential Radio Source Estimator.

Locates a radio source from ranging and/or RSSI readings taken at known
receiver positions, optionally estimating its transmitted power and
path-loss exponent.

Pipeline per estimate():
1. Split readings per channel (a RangingAndRssiReading feeds both).
2. Ranging stage: robust consensus position from ranging readings, when
   there are at least dimensions + 1 of them.
3. RSSI stage: robust consensus over RSSI readings for power and/or
   path-loss exponent. Position is held at the ranging result, or also
   estimated here when ranging data is insufficient.
4. Optional joint refinement of all unknowns over the inliers of both
   stages, with Jacobian-based covariance.

Progress: ranging stage maps to [0, 0.5], RSSI stage to [0.5, 1].
"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from radioloc_core.config import CONSENSUS_CONFIG, ESTIMATOR_CONFIG, PATH_LOSS_CONFIG
from radioloc_core.errors import InvalidArgumentError
from radioloc_core.proto.radio_source import LocatedRadioSource
from radioloc_core.proto.estimation_result import EstimationResult
from radioloc_core.localization.lifecycle import LockableEstimator, EstimatorListener
from radioloc_core.localization.multilateration import (
    RadioSourceSolver,
    SolverConfig,
    SolverResult,
)
from radioloc_core.localization.path_loss import dbm_to_power, power_to_dbm
from radioloc_core.localization.reading_adapter import split_located_readings
from radioloc_core.localization.robust_consensus import ConsensusConfig, RobustMethod
from radioloc_core.localization.robust_estimators import (
    REFINEMENT_ERRORS,
    RobustRangingEstimator,
    RobustRssiEstimator,
    build_result,
    check_located_readings,
    draw_random_seed,
    ranging_arrays,
    rssi_arrays,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SequentialEstimatorConfig:
    """
    Configuration for RobustSequentialEstimator.

    Attributes:
        dimensions: 2 or 3
        ranging_method: Robust method of the ranging stage
        rssi_method: Robust method of the RSSI stage
        ranging_threshold: Ranging threshold (m), None for the method default
        rssi_threshold: RSSI threshold (dB), None for the method default
        ranging_confidence: Ranging stage confidence in [0, 1]
        rssi_confidence: RSSI stage confidence in [0, 1]
        ranging_max_iterations: Ranging stage hypothesis budget
        rssi_max_iterations: RSSI stage hypothesis budget
        progress_delta: Minimum progress change between notifications
        transmitted_power_estimation_enabled: Estimate transmitted power
        path_loss_estimation_enabled: Estimate path-loss exponent
        refine_result: Jointly refine over inliers of both stages
        keep_covariance: Compute covariance during refinement
        use_reading_position_covariances: Add receiver position
            uncertainty to ranging std devs
        initial_position: Position seed, None to derive it from data
        initial_transmitted_power_dbm: Power seed, or the fixed power when
            power estimation is disabled
        initial_path_loss_exponent: Exponent seed, or the fixed exponent
        random_seed: Seed for subset sampling, None to draw one per estimator
    """

    dimensions: int = 2
    ranging_method: RobustMethod = RobustMethod[CONSENSUS_CONFIG["method"]]
    rssi_method: RobustMethod = RobustMethod[CONSENSUS_CONFIG["method"]]
    ranging_threshold: Optional[float] = None
    rssi_threshold: Optional[float] = None
    ranging_confidence: float = CONSENSUS_CONFIG["confidence"]
    rssi_confidence: float = CONSENSUS_CONFIG["confidence"]
    ranging_max_iterations: int = CONSENSUS_CONFIG["max_iterations"]
    rssi_max_iterations: int = CONSENSUS_CONFIG["max_iterations"]
    progress_delta: float = CONSENSUS_CONFIG["progress_delta"]
    transmitted_power_estimation_enabled: bool = ESTIMATOR_CONFIG[
        "transmitted_power_estimation_enabled"]
    path_loss_estimation_enabled: bool = ESTIMATOR_CONFIG["path_loss_estimation_enabled"]
    refine_result: bool = ESTIMATOR_CONFIG["refine_result"]
    keep_covariance: bool = ESTIMATOR_CONFIG["keep_covariance"]
    use_reading_position_covariances: bool = ESTIMATOR_CONFIG[
        "use_reading_position_covariances"]
    initial_position: Optional[Tuple[float, ...]] = None
    initial_transmitted_power_dbm: Optional[float] = None
    initial_path_loss_exponent: float = PATH_LOSS_CONFIG["path_loss_exponent"]
    random_seed: Optional[int] = None

    def __post_init__(self):
        if self.dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {self.dimensions}")

        # Stage configs validate the per-stage fields
        ranging = self.ranging_consensus()
        rssi = self.rssi_consensus()
        object.__setattr__(self, "ranging_method", ranging.method)
        object.__setattr__(self, "rssi_method", rssi.method)

        if self.initial_position is not None:
            position = tuple(float(v) for v in np.asarray(self.initial_position).ravel())
            if len(position) != self.dimensions:
                raise InvalidArgumentError(
                    f"Initial position must have {self.dimensions} values, got {len(position)}"
                )
            object.__setattr__(self, "initial_position", position)

        if self.initial_path_loss_exponent <= 0:
            raise InvalidArgumentError(
                f"Path-loss exponent must be positive: {self.initial_path_loss_exponent}"
            )

    def ranging_consensus(self) -> ConsensusConfig:
        return ConsensusConfig(
            method=self.ranging_method,
            threshold=self.ranging_threshold,
            confidence=self.ranging_confidence,
            max_iterations=self.ranging_max_iterations,
            progress_delta=self.progress_delta,
        )

    def rssi_consensus(self) -> ConsensusConfig:
        return ConsensusConfig(
            method=self.rssi_method,
            threshold=self.rssi_threshold,
            confidence=self.rssi_confidence,
            max_iterations=self.rssi_max_iterations,
            progress_delta=self.progress_delta,
        )


def _config_property(name: str, doc: str):
    """Property reading a config field; setting it re-validates the config."""

    def getter(self):
        return getattr(self._config, name)

    def setter(self, value):
        self._update_config(**{name: value})

    return property(getter, setter, doc=doc)


class _StageProgress(EstimatorListener):
    """Maps a stage's progress into half of the overall progress range."""

    def __init__(self, owner: "RobustSequentialEstimator", offset: float):
        self.owner = owner
        self.offset = offset

    def on_estimate_progress_change(self, estimator, progress: float):
        self.owner._notify_progress(self.offset + 0.5 * progress)


class RobustSequentialEstimator(LockableEstimator):
    """
    Robust two-stage estimator of a radio source from mixed readings.

    Usage:
        config = SequentialEstimatorConfig(
            dimensions=2,
            ranging_method=RobustMethod.RANSAC,
            rssi_method=RobustMethod.RANSAC,
        )
        estimator = RobustSequentialEstimator(readings, config=config)
        if estimator.is_ready():
            result = estimator.estimate()
            print(result.position, result.transmitted_power_dbm)

    Notes:
        - Every setter raises LockedError while estimate() runs
        - Result getters return None until an estimate() succeeds
        - A failed estimate() keeps the previous result
    """

    def __init__(
        self,
        readings: Optional[Sequence] = None,
        quality_scores: Optional[Sequence[float]] = None,
        config: Optional[SequentialEstimatorConfig] = None,
        listener: Optional[EstimatorListener] = None,
        solver_config: Optional[SolverConfig] = None,
    ):
        """
        Initialize estimator.

        Args:
            readings: Readings of one source taken at known positions
            quality_scores: One quality score per reading (PROSAC/PROMEDS)
            config: Estimator configuration (uses defaults if None)
            listener: Observer of estimate() calls
            solver_config: Nonlinear solver configuration
        """
        self._config = config or SequentialEstimatorConfig()
        super().__init__(listener=listener, progress_delta=self._config.progress_delta)
        self._solver_config = solver_config or SolverConfig()
        self._seed = (
            draw_random_seed() if self._config.random_seed is None else self._config.random_seed
        )
        self._readings = None
        self._quality_scores = None
        self._result: Optional[EstimationResult] = None

        if readings is not None:
            self.readings = readings
        if quality_scores is not None:
            self.quality_scores = quality_scores

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def _update_config(self, **changes):
        self._check_unlocked()
        config = dataclasses.replace(self._config, **changes)
        if self._readings is not None and config.dimensions != self._config.dimensions:
            check_located_readings(self._readings, config.dimensions)
        self._config = config
        self._progress_delta = config.progress_delta
        if "random_seed" in changes and config.random_seed is not None:
            self._seed = config.random_seed

    @property
    def config(self) -> SequentialEstimatorConfig:
        return self._config

    @config.setter
    def config(self, value: SequentialEstimatorConfig):
        self._update_config(**{f.name: getattr(value, f.name)
                               for f in dataclasses.fields(value)})

    @LockableEstimator.progress_delta.setter
    def progress_delta(self, value: float):
        self._update_config(progress_delta=value)

    dimensions = _config_property("dimensions", "Number of spatial dimensions")
    ranging_method = _config_property("ranging_method", "Ranging stage robust method")
    rssi_method = _config_property("rssi_method", "RSSI stage robust method")
    ranging_threshold = _config_property("ranging_threshold", "Ranging stage threshold")
    rssi_threshold = _config_property("rssi_threshold", "RSSI stage threshold")
    ranging_confidence = _config_property("ranging_confidence", "Ranging stage confidence")
    rssi_confidence = _config_property("rssi_confidence", "RSSI stage confidence")
    ranging_max_iterations = _config_property(
        "ranging_max_iterations", "Ranging stage hypothesis budget")
    rssi_max_iterations = _config_property("rssi_max_iterations", "RSSI stage hypothesis budget")
    transmitted_power_estimation_enabled = _config_property(
        "transmitted_power_estimation_enabled", "Estimate transmitted power")
    path_loss_estimation_enabled = _config_property(
        "path_loss_estimation_enabled", "Estimate path-loss exponent")
    refine_result = _config_property("refine_result", "Jointly refine over inliers")
    keep_covariance = _config_property("keep_covariance", "Compute covariance on refinement")
    use_reading_position_covariances = _config_property(
        "use_reading_position_covariances", "Use receiver position covariances")
    initial_position = _config_property("initial_position", "Position seed")
    initial_transmitted_power_dbm = _config_property(
        "initial_transmitted_power_dbm", "Transmitted power seed (dBm)")
    initial_path_loss_exponent = _config_property(
        "initial_path_loss_exponent", "Path-loss exponent seed")
    random_seed = _config_property("random_seed", "Subset sampling seed")

    @property
    def initial_transmitted_power(self) -> Optional[float]:
        """Transmitted power seed in mW."""
        dbm = self._config.initial_transmitted_power_dbm
        return None if dbm is None else float(dbm_to_power(dbm))

    @initial_transmitted_power.setter
    def initial_transmitted_power(self, value: Optional[float]):
        if value is not None and value <= 0:
            raise InvalidArgumentError(f"Transmitted power must be positive: {value}")
        self._update_config(
            initial_transmitted_power_dbm=None if value is None else float(power_to_dbm(value))
        )

    @property
    def readings(self) -> Optional[list]:
        return self._readings

    @readings.setter
    def readings(self, value):
        self._check_unlocked()
        self._readings = check_located_readings(value, self._config.dimensions)
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

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    @property
    def min_readings(self) -> int:
        """Readings needed when position comes from RSSI data."""
        return (
            self._config.dimensions + 1
            + int(self._config.transmitted_power_estimation_enabled)
            + int(self._config.path_loss_estimation_enabled)
        )

    @property
    def min_rssi_readings_with_fixed_position(self) -> int:
        return (
            1
            + int(self._config.transmitted_power_estimation_enabled)
            + int(self._config.path_loss_estimation_enabled)
        )

    def _channel_counts(self) -> Tuple[int, int]:
        split = split_located_readings(self._readings)
        return len(split.ranging_readings), len(split.rssi_readings)

    def _rssi_position_enabled(self, num_ranging: int) -> bool:
        return num_ranging < self._config.dimensions + 1

    def _rssi_stage_enabled(self, num_ranging: int) -> bool:
        return (
            self._rssi_position_enabled(num_ranging)
            or self._config.transmitted_power_estimation_enabled
            or self._config.path_loss_estimation_enabled
        )

    @property
    def rssi_position_enabled(self) -> bool:
        """True when position must be estimated from RSSI readings."""
        if self._readings is None:
            return True
        num_ranging, _ = self._channel_counts()
        return self._rssi_position_enabled(num_ranging)

    def _quality_ready(self, ranging_stage: bool, rssi_stage: bool) -> bool:
        needs_scores = (
            (ranging_stage and self._config.ranging_method.requires_quality_scores)
            or (rssi_stage and self._config.rssi_method.requires_quality_scores)
        )
        if not needs_scores:
            return True
        return (self._quality_scores is not None
                and len(self._quality_scores) == len(self._readings))

    def is_ready(self) -> bool:
        """
        Check whether estimate() can run with the current configuration.

        Pure function of configuration and readings.
        """
        if self._readings is None:
            return False

        num_ranging, num_rssi = self._channel_counts()
        rssi_position = self._rssi_position_enabled(num_ranging)
        rssi_stage = self._rssi_stage_enabled(num_ranging)

        if not self._quality_ready(not rssi_position, rssi_stage):
            return False

        if rssi_stage and (not self._config.transmitted_power_estimation_enabled
                           and self._config.initial_transmitted_power_dbm is None):
            return False

        if rssi_position:
            return num_rssi >= self.min_readings
        if rssi_stage:
            return num_rssi >= self.min_rssi_readings_with_fixed_position
        return True

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    @property
    def result(self) -> Optional[EstimationResult]:
        """Result of the last successful estimate(), None before."""
        return self._result

    def _result_field(self, name):
        return None if self._result is None else getattr(self._result, name)

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        position = self._result_field("position")
        return None if position is None else np.array(position)

    @property
    def estimated_position_covariance(self) -> Optional[np.ndarray]:
        return self._result_field("position_covariance")

    @property
    def estimated_transmitted_power_dbm(self) -> Optional[float]:
        return self._result_field("transmitted_power_dbm")

    @property
    def estimated_transmitted_power(self) -> Optional[float]:
        """Estimated transmitted power in mW."""
        return self._result_field("transmitted_power")

    @property
    def estimated_transmitted_power_variance(self) -> Optional[float]:
        return self._result_field("transmitted_power_variance")

    @property
    def estimated_path_loss_exponent(self) -> Optional[float]:
        return self._result_field("path_loss_exponent")

    @property
    def estimated_path_loss_exponent_variance(self) -> Optional[float]:
        return self._result_field("path_loss_exponent_variance")

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        return self._result_field("covariance")

    @property
    def estimated_radio_source(self) -> Optional[LocatedRadioSource]:
        return self._result_field("estimated_source")

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------

    def _estimate(self) -> EstimationResult:
        config = self._config
        dims = config.dimensions
        split = split_located_readings(self._readings, self._quality_scores)
        num_ranging = len(split.ranging_readings)
        rssi_position = self._rssi_position_enabled(num_ranging)
        common = dict(
            dimensions=dims,
            refine_result=False,
            keep_covariance=False,
            use_reading_position_covariances=config.use_reading_position_covariances,
            solver_config=self._solver_config,
            record_attempts=False,
        )

        ranging_result = None
        position = config.initial_position
        if not rssi_position:
            logger.debug("Ranging stage over %d readings", num_ranging)
            ranging_result = RobustRangingEstimator(
                readings=split.ranging_readings,
                consensus=config.ranging_consensus(),
                quality_scores=split.ranging_quality_scores,
                random_seed=self._seed,
                listener=_StageProgress(self, 0.0),
                **common,
            ).estimate()
            position = ranging_result.position

        rssi_result = None
        if self._rssi_stage_enabled(num_ranging):
            logger.debug(
                "RSSI stage over %d readings (position %s)",
                len(split.rssi_readings), "estimated" if rssi_position else "fixed",
            )
            rssi_result = RobustRssiEstimator(
                readings=split.rssi_readings,
                consensus=config.rssi_consensus(),
                quality_scores=split.rssi_quality_scores,
                initial_position=position,
                initial_transmitted_power_dbm=config.initial_transmitted_power_dbm,
                initial_path_loss_exponent=config.initial_path_loss_exponent,
                position_estimation_enabled=rssi_position,
                transmitted_power_estimation_enabled=config.transmitted_power_estimation_enabled,
                path_loss_estimation_enabled=config.path_loss_estimation_enabled,
                random_seed=self._seed + 1,
                listener=_StageProgress(self, 0.5),
                **common,
            ).estimate()
            position = rssi_result.position

        consensus_model = SolverResult(
            params=np.asarray(position, dtype=float),
            position=np.asarray(position, dtype=float),
            covariance=None,
            chi_sq=float("nan"),
            iterations=0,
            transmitted_power_dbm=(
                rssi_result.transmitted_power_dbm if rssi_result is not None
                else config.initial_transmitted_power_dbm
            ),
            path_loss_exponent=(
                rssi_result.path_loss_exponent if rssi_result is not None
                else config.initial_path_loss_exponent
            ),
        )

        power_estimated = rssi_result is not None and config.transmitted_power_estimation_enabled
        path_loss_estimated = rssi_result is not None and config.path_loss_estimation_enabled
        ranging_inliers = None if ranging_result is None else ranging_result.ranging_inliers
        rssi_inliers = None if rssi_result is None else rssi_result.rssi_inliers

        model, covariance = consensus_model, None
        refined, refinement_error = False, None
        if config.refine_result:
            try:
                self.metrics.increment('refinements')
                model = self._refine(
                    split, consensus_model, ranging_inliers, rssi_inliers,
                    power_estimated, path_loss_estimated,
                )
                covariance = model.covariance
                refined = True
            except REFINEMENT_ERRORS as e:
                logger.warning("Joint refinement failed, keeping consensus result: %s", e)
                self.metrics.increment_drop('refinement_failed')
                model = consensus_model
                refinement_error = str(e)

        result = build_result(
            model,
            covariance,
            dims,
            position_estimated=True,
            power_estimated=power_estimated,
            path_loss_estimated=path_loss_estimated,
            ranging_inliers=ranging_inliers,
            rssi_inliers=rssi_inliers,
            refined=refined,
            refinement_error=refinement_error,
        )
        self._result = dataclasses.replace(
            result, estimated_source=self._estimated_source(result)
        )
        return self._result

    def _refine(self, split, model: SolverResult, ranging_inliers, rssi_inliers,
                power_estimated: bool, path_loss_estimated: bool) -> SolverResult:
        """Joint weighted refinement over the inliers of both stages."""
        dims = self._config.dimensions
        frequency = self._readings[0].source.frequency

        ranging_readings, ranging_scores = [], None
        if ranging_inliers is not None:
            ranging_readings = [r for r, keep in zip(split.ranging_readings, ranging_inliers)
                                if keep]
            if split.ranging_quality_scores is not None:
                ranging_scores = split.ranging_quality_scores[ranging_inliers]

        rssi_readings, rssi_scores = [], None
        if rssi_inliers is not None:
            rssi_readings = [r for r, keep in zip(split.rssi_readings, rssi_inliers) if keep]
            if split.rssi_quality_scores is not None:
                rssi_scores = split.rssi_quality_scores[rssi_inliers]

        ranging_weights, rssi_weights = _quality_weights(
            ranging_scores, len(ranging_readings), rssi_scores, len(rssi_readings)
        )

        kwargs = {}
        if ranging_readings:
            positions, distances, stds = ranging_arrays(
                ranging_readings, self._config.use_reading_position_covariances
            )
            kwargs.update(ranging_positions=positions, ranging_distances=distances,
                          ranging_stds=stds, ranging_weights=ranging_weights)
        if rssi_readings:
            positions, values, stds = rssi_arrays(rssi_readings)
            kwargs.update(rssi_positions=positions, rssi_values=values,
                          rssi_stds=stds, rssi_weights=rssi_weights)

        solver = RadioSourceSolver(
            dimensions=dims,
            frequency=frequency,
            estimate_position=True,
            estimate_transmitted_power=power_estimated,
            estimate_path_loss=path_loss_estimated,
            config=self._solver_config,
        )
        return solver.solve(
            initial_position=model.position,
            initial_transmitted_power_dbm=model.transmitted_power_dbm,
            initial_path_loss_exponent=model.path_loss_exponent,
            compute_covariance=self._config.keep_covariance,
            **kwargs,
        )

    def _estimated_source(self, result: EstimationResult) -> Optional[LocatedRadioSource]:
        """Located source carrying the estimate, None when it is not physical."""
        exponent = result.path_loss_exponent
        if exponent is None or exponent <= 0:
            logger.warning("Estimated path-loss exponent %s is not positive", exponent)
            return None
        return LocatedRadioSource(
            source=self._readings[0].source,
            position=result.position,
            position_covariance=result.position_covariance,
            transmitted_power_dbm=result.transmitted_power_dbm,
            transmitted_power_std=result.transmitted_power_std,
            path_loss_exponent=exponent,
            path_loss_exponent_std=result.path_loss_exponent_std,
        )


def _quality_weights(ranging_scores, num_ranging: int, rssi_scores, num_rssi: int):
    """
    Per-sample refinement weights from quality scores.

    Scores are clipped at zero and normalised to mean 1 over all samples.
    Returns (None, None) when no scores are available.
    """
    if ranging_scores is None and rssi_scores is None:
        return None, None
    ranging_scores = np.ones(num_ranging) if ranging_scores is None else ranging_scores
    rssi_scores = np.ones(num_rssi) if rssi_scores is None else rssi_scores
    scores = np.clip(np.concatenate([ranging_scores, rssi_scores]), 0.0, None)
    mean = float(np.mean(scores)) if len(scores) else 0.0
    if mean <= 0.0:
        return None, None
    weights = scores / mean
    return weights[:num_ranging], weights[num_ranging:]
