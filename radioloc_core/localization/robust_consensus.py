"""
Robust Consensus (RANSAC family).

Repeatedly fits a model to a minimal subset of samples and scores it
against all samples, keeping the best hypothesis:

- RANSAC: most samples with residual <= threshold
- MSAC: lowest sum of min(r^2, threshold^2)
- PROSAC: RANSAC scoring, subsets drawn progressively from best-quality samples
- LMEDS: lowest median of r^2
- PROMEDS: LMEDS scoring with PROSAC sampling

The iteration count adapts to the inlier ratio of the best hypothesis:
k = log(1 - confidence) / log(1 - w^m), capped at max_iterations.

A hypothesis whose fit fails (degenerate subset, solver failure) scores
nothing and is counted, never propagated.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence

import numpy as np

from radioloc_core.config import CONSENSUS_CONFIG
from radioloc_core.errors import (
    InvalidArgumentError,
    RadioLocError,
    RobustEstimationError,
)
from radioloc_core.metrics import get_metrics

logger = logging.getLogger(__name__)

# Scale factor turning a median absolute residual into a Gaussian std dev
MAD_TO_STD = 1.4826


class RobustMethod(Enum):
    """Robust estimation method."""

    RANSAC = "RANSAC"
    MSAC = "MSAC"
    PROSAC = "PROSAC"
    LMEDS = "LMEDS"
    PROMEDS = "PROMEDS"

    @property
    def requires_quality_scores(self) -> bool:
        return self in (RobustMethod.PROSAC, RobustMethod.PROMEDS)

    @property
    def is_median_based(self) -> bool:
        return self in (RobustMethod.LMEDS, RobustMethod.PROMEDS)


def _validate_unit_interval(name: str, value: float):
    if not 0.0 <= value <= 1.0:
        raise InvalidArgumentError(f"{name} must be in [0, 1]: {value}")


@dataclass(frozen=True)
class ConsensusConfig:
    """
    Configuration for one robust consensus pass.

    Attributes:
        method: Robust method (enum or name)
        threshold: Inlier bound for RANSAC/MSAC/PROSAC, stop threshold on
            the median residual for LMEDS/PROMEDS; None uses the default
        confidence: Probability of drawing at least one clean subset
        max_iterations: Hypothesis budget
        progress_delta: Minimum progress change between notifications
    """

    method: RobustMethod = RobustMethod[CONSENSUS_CONFIG["method"]]
    threshold: Optional[float] = None
    confidence: float = CONSENSUS_CONFIG["confidence"]
    max_iterations: int = CONSENSUS_CONFIG["max_iterations"]
    progress_delta: float = CONSENSUS_CONFIG["progress_delta"]

    def __post_init__(self):
        if isinstance(self.method, str):
            try:
                object.__setattr__(self, "method", RobustMethod[self.method.upper()])
            except KeyError:
                raise InvalidArgumentError(f"Unknown robust method: {self.method}") from None
        if self.threshold is not None and self.threshold <= 0:
            raise InvalidArgumentError(f"Threshold must be positive: {self.threshold}")
        _validate_unit_interval("confidence", self.confidence)
        _validate_unit_interval("progress_delta", self.progress_delta)
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")

    def resolved_threshold(self, default_threshold: float) -> float:
        """Threshold in effect for this method."""
        if self.threshold is not None:
            return self.threshold
        if self.method.is_median_based:
            return CONSENSUS_CONFIG["stop_threshold"]
        return default_threshold


@dataclass
class ConsensusResult:
    """
    Best hypothesis found by a consensus pass.

    Attributes:
        model: Model fitted to the best minimal subset
        inliers: Boolean mask over all samples
        residuals: Absolute residuals of all samples under the model
        iterations: Hypotheses evaluated
        inlier_threshold: Residual bound used to classify inliers
    """

    model: Any
    inliers: np.ndarray
    residuals: np.ndarray
    iterations: int
    inlier_threshold: float

    @property
    def num_inliers(self) -> int:
        return int(np.count_nonzero(self.inliers))


def required_iterations(inlier_ratio: float, subset_size: int, confidence: float,
                        max_iterations: int) -> int:
    """Hypotheses needed to draw a clean subset with the given confidence."""
    if inlier_ratio <= 0.0:
        return max_iterations
    if inlier_ratio >= 1.0 or confidence <= 0.0:
        return 1
    if confidence >= 1.0:
        return max_iterations
    clean = inlier_ratio ** subset_size
    if clean >= 1.0:
        return 1
    if clean <= 0.0:
        return max_iterations
    k = math.log(1.0 - confidence) / math.log(1.0 - clean)
    return int(min(max(math.ceil(k), 1), max_iterations))


class _ProgressiveSampler:
    """PROSAC sampling: subsets grow from the best-ranked samples."""

    def __init__(self, quality_scores: np.ndarray, subset_size: int, max_iterations: int,
                 rng: np.random.Generator):
        self.order = np.argsort(-np.asarray(quality_scores, dtype=float), kind="stable")
        self.num_samples = len(self.order)
        self.m = subset_size
        self.rng = rng
        self.n = subset_size
        self.t = 0
        self.t_n = float(max_iterations)
        for i in range(subset_size):
            self.t_n *= (subset_size - i) / (self.num_samples - i)
        self.t_n_prime = 1

    def sample(self) -> np.ndarray:
        self.t += 1
        if self.t >= self.t_n_prime and self.n < self.num_samples:
            t_n_next = self.t_n * (self.n + 1) / (self.n + 1 - self.m)
            self.t_n_prime += int(math.ceil(t_n_next - self.t_n))
            self.t_n = t_n_next
            self.n += 1

        if self.t_n_prime < self.t:
            chosen = self.rng.choice(self.n, self.m, replace=False)
            return self.order[chosen]

        chosen = self.rng.choice(self.n - 1, self.m - 1, replace=False)
        return np.append(self.order[chosen], self.order[self.n - 1])


class RobustConsensus:
    """
    Generic consensus driver over a sample set.

    Usage:
        consensus = RobustConsensus(
            num_samples=len(distances),
            subset_size=3,
            fit=lambda idx: solver.solve(positions[idx], distances[idx]),
            residuals=lambda model: np.abs(predict(model) - distances),
            config=ConsensusConfig(method="RANSAC"),
            default_threshold=0.1,
        )
        result = consensus.run()
    """

    def __init__(
        self,
        num_samples: int,
        subset_size: int,
        fit: Callable[[np.ndarray], Any],
        residuals: Callable[[Any], np.ndarray],
        config: Optional[ConsensusConfig] = None,
        default_threshold: float = CONSENSUS_CONFIG["ranging_threshold_m"],
        quality_scores: Optional[Sequence[float]] = None,
        rng: Optional[np.random.Generator] = None,
        progress_callback: Optional[Callable[[float], None]] = None,
    ):
        """
        Initialize consensus driver.

        Args:
            num_samples: Number of samples
            subset_size: Samples per minimal subset
            fit: Fits a model to the samples at the given indices
            residuals: Absolute residuals of every sample under a model
            config: Consensus configuration (uses defaults if None)
            default_threshold: Inlier bound when config.threshold is None
            quality_scores: Per-sample quality (required by PROSAC/PROMEDS)
            rng: Random generator for subset sampling
            progress_callback: Called with progress in [0, 1]
        """
        self.config = config or ConsensusConfig()
        if self.config.method.requires_quality_scores:
            if quality_scores is None or len(quality_scores) != num_samples:
                raise InvalidArgumentError(
                    f"{self.config.method.value} requires one quality score per sample"
                )
        self.num_samples = num_samples
        self.subset_size = subset_size
        self.fit = fit
        self.residuals = residuals
        self.threshold = self.config.resolved_threshold(default_threshold)
        self.quality_scores = quality_scores
        self.rng = rng if rng is not None else np.random.default_rng()
        self.progress_callback = progress_callback
        self.metrics = get_metrics()

    def _score(self, residuals: np.ndarray) -> tuple:
        """Cost of a hypothesis, lower is better."""
        method = self.config.method
        if method.is_median_based:
            return (float(np.median(residuals ** 2)), 0.0)
        if method == RobustMethod.MSAC:
            return (float(np.sum(np.minimum(residuals ** 2, self.threshold ** 2))), 0.0)
        inliers = residuals <= self.threshold
        # Ties on inlier count go to the tighter fit
        return (-float(np.count_nonzero(inliers)), float(np.sum(residuals[inliers] ** 2)))

    def _inlier_threshold(self, residuals: np.ndarray) -> float:
        if not self.config.method.is_median_based:
            return self.threshold
        extra = max(self.num_samples - self.subset_size, 1)
        robust_std = MAD_TO_STD * (1.0 + 5.0 / extra) * math.sqrt(float(np.median(residuals ** 2)))
        return max(CONSENSUS_CONFIG["lmeds_inlier_factor"] * robust_std, self.threshold)

    def _notify(self, progress: float):
        if self.progress_callback is not None:
            self.progress_callback(min(max(progress, 0.0), 1.0))

    def run(self) -> ConsensusResult:
        """
        Run consensus.

        Returns:
            ConsensusResult of the best hypothesis

        Raises:
            RobustEstimationError: no hypothesis produced a usable model
        """
        self.metrics.increment('consensus_runs')
        config = self.config

        if self.num_samples < self.subset_size:
            return self._fail(
                f"{self.num_samples} samples cannot form a subset of {self.subset_size}", 0
            )

        sampler = None
        if config.method.requires_quality_scores:
            sampler = _ProgressiveSampler(
                self.quality_scores, self.subset_size, config.max_iterations, self.rng
            )

        best_model, best_cost, best_residuals = None, (math.inf, math.inf), None
        bound = config.max_iterations
        iteration = 0

        while iteration < min(bound, config.max_iterations):
            iteration += 1
            if sampler is not None:
                subset = sampler.sample()
            else:
                subset = self.rng.choice(self.num_samples, self.subset_size, replace=False)

            try:
                model = self.fit(subset)
                residuals = np.abs(np.asarray(self.residuals(model), dtype=float))
            except (RadioLocError, np.linalg.LinAlgError, ValueError, FloatingPointError) as e:
                logger.debug("Degenerate subset %s: %s", subset.tolist(), e)
                self.metrics.increment_drop('degenerate_subset')
                self._notify(iteration / min(bound, config.max_iterations))
                continue

            if model is None or not np.all(np.isfinite(residuals)):
                self.metrics.increment_drop('degenerate_subset')
                self._notify(iteration / min(bound, config.max_iterations))
                continue

            cost = self._score(residuals)
            if cost < best_cost:
                best_model, best_cost, best_residuals = model, cost, residuals
                inlier_ratio = float(
                    np.count_nonzero(best_residuals <= self._inlier_threshold(best_residuals))
                ) / self.num_samples
                bound = required_iterations(
                    inlier_ratio, self.subset_size, config.confidence, config.max_iterations
                )

            self._notify(iteration / min(bound, config.max_iterations))

            if (config.method.is_median_based
                    and math.sqrt(max(best_cost[0], 0.0)) <= self.threshold):
                break

        if best_model is None:
            return self._fail("no hypothesis produced a model", iteration)

        inlier_threshold = self._inlier_threshold(best_residuals)
        inliers = best_residuals <= inlier_threshold
        num_inliers = int(np.count_nonzero(inliers))
        if num_inliers < self.subset_size:
            return self._fail(
                f"best model has {num_inliers} inliers, need {self.subset_size}", iteration
            )

        self._notify(1.0)
        self.metrics.record_histogram('consensus_iterations', iteration)
        self.metrics.record_histogram('consensus_inlier_ratio', num_inliers / self.num_samples)
        logger.debug(
            "%s consensus: %d/%d inliers after %d iterations",
            config.method.value, num_inliers, self.num_samples, iteration,
        )

        return ConsensusResult(
            model=best_model,
            inliers=inliers,
            residuals=best_residuals,
            iterations=iteration,
            inlier_threshold=inlier_threshold,
        )

    def _fail(self, reason: str, iterations: int):
        self.metrics.increment('consensus_failures')
        self.metrics.increment_drop('robust_estimation_failed')
        raise RobustEstimationError(
            f"{self.config.method.value} consensus failed after {iterations} iterations: {reason}"
        )
