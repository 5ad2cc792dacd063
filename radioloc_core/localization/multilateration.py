"""
Weighted Nonlinear Multilateration.

Solves for an emitter position (and optionally its transmitted power and
path-loss exponent) by Levenberg-Marquardt iteration over weighted
residuals:

- ranging residual: ||p - r_i|| - d_i
- RSSI residual: n * k_dB + Pt - 10 * n * log10(||p - r_i||) - rssi_i

Weights are 1 / variance_i, optionally scaled by a per-sample factor.
Covariance of the solved unknowns is (J^T W J)^-1 at the solution.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple
import math

import numpy as np

from radioloc_core.config import SOLVER_CONFIG, PATH_LOSS_CONFIG
from radioloc_core.errors import (
    InvalidArgumentError,
    NotReadyError,
    DidNotConvergeError,
    RefinementError,
)
from radioloc_core.metrics import get_metrics
from radioloc_core.localization.path_loss import path_loss_constant_db, LN10

logger = logging.getLogger(__name__)

# Squared distances are clamped to this to keep log10 and 1/d finite
MIN_SQUARED_DISTANCE = 1e-12

# Normal matrices with a larger condition number are treated as singular
MAX_CONDITION_NUMBER = 1e15


@dataclass
class SolverConfig:
    """
    Configuration for the Levenberg-Marquardt solver.

    Attributes:
        max_iterations: Iteration budget before DidNotConvergeError
        tolerance: Relative step / chi-square decrease considered converged
        initial_damping: Starting Marquardt damping factor
        max_damping: Damping at which no further decrease is possible
    """

    max_iterations: int = SOLVER_CONFIG["max_iterations"]
    tolerance: float = SOLVER_CONFIG["tolerance"]
    initial_damping: float = SOLVER_CONFIG["initial_damping"]
    max_damping: float = SOLVER_CONFIG["max_damping"]

    def __post_init__(self):
        if self.max_iterations < 1:
            raise InvalidArgumentError(f"max_iterations must be >= 1: {self.max_iterations}")
        if self.tolerance <= 0:
            raise InvalidArgumentError(f"tolerance must be positive: {self.tolerance}")
        if self.initial_damping <= 0 or self.max_damping <= self.initial_damping:
            raise InvalidArgumentError(
                f"Invalid damping range: {self.initial_damping} .. {self.max_damping}"
            )


@dataclass
class SolverResult:
    """
    Solution of a nonlinear solve.

    Attributes:
        params: Solved parameter vector
        position: Position part of the solution (fixed position if not solved)
        covariance: (J^T W J)^-1 over the solved parameters, if computed
        chi_sq: Weighted sum of squared residuals at the solution
        iterations: Iterations used
        transmitted_power_dbm: Solved or fixed transmitted power (dBm)
        path_loss_exponent: Solved or fixed path-loss exponent
    """

    params: np.ndarray
    position: np.ndarray
    covariance: Optional[np.ndarray]
    chi_sq: float
    iterations: int
    transmitted_power_dbm: Optional[float] = None
    path_loss_exponent: Optional[float] = None


def levenberg_marquardt(
    model: Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]],
    x0: np.ndarray,
    weights: np.ndarray,
    config: SolverConfig,
) -> Tuple[np.ndarray, float, int, np.ndarray]:
    """
    Minimize sum(w_i * r_i(x)^2).

    Args:
        model: Returns (residuals, jacobian) at x
        x0: Initial parameters
        weights: Per-residual weights
        config: Solver configuration

    Returns:
        Tuple of (x, chi_sq, iterations, J^T W J at x)

    Raises:
        DidNotConvergeError: iteration budget exhausted
    """
    x = np.array(x0, dtype=float)
    residuals, jacobian = model(x)
    chi_sq = float(np.sum(weights * residuals ** 2))
    damping = config.initial_damping
    tol = config.tolerance

    for iteration in range(1, config.max_iterations + 1):
        normal = jacobian.T @ (weights[:, None] * jacobian)
        gradient = jacobian.T @ (weights * residuals)

        if chi_sq <= tol * tol:
            return x, chi_sq, iteration, normal

        scale = np.maximum(np.diag(normal), MIN_SQUARED_DISTANCE)
        try:
            delta = np.linalg.solve(normal + damping * np.diag(scale), -gradient)
        except np.linalg.LinAlgError:
            delta = None

        if delta is not None and np.all(np.isfinite(delta)):
            x_new = x + delta
            residuals_new, jacobian_new = model(x_new)
            chi_sq_new = float(np.sum(weights * residuals_new ** 2))

            if np.isfinite(chi_sq_new) and chi_sq_new < chi_sq:
                small_step = np.linalg.norm(delta) <= tol * (np.linalg.norm(x) + tol)
                small_decrease = (chi_sq - chi_sq_new) <= tol * chi_sq
                x, residuals, jacobian, chi_sq = x_new, residuals_new, jacobian_new, chi_sq_new
                damping = max(damping / 10.0, 1e-15)
                if small_step or small_decrease:
                    normal = jacobian.T @ (weights[:, None] * jacobian)
                    return x, chi_sq, iteration, normal
                continue

        # Step rejected
        damping *= 10.0
        if damping > config.max_damping:
            logger.debug("Damping limit reached after %d iterations (chi_sq=%.3g)", iteration, chi_sq)
            return x, chi_sq, iteration, normal

    raise DidNotConvergeError(
        f"Solver did not converge in {config.max_iterations} iterations (chi_sq={chi_sq:.3g})"
    )


def covariance_from_normal(normal: np.ndarray) -> np.ndarray:
    """
    Invert the normal matrix J^T W J.

    Raises:
        RefinementError: matrix is singular or ill-conditioned
    """
    if not np.all(np.isfinite(normal)) or np.linalg.cond(normal) > MAX_CONDITION_NUMBER:
        raise RefinementError("Normal matrix is singular; covariance unavailable")
    try:
        return np.linalg.inv(normal)
    except np.linalg.LinAlgError as e:
        raise RefinementError(f"Covariance inversion failed: {e}") from e


def linear_multilateration(positions: np.ndarray, distances: np.ndarray) -> Optional[np.ndarray]:
    """
    Closed-form least-squares position from distances.

    Subtracting the first sphere equation from the others gives the linear
    system 2 (r_i - r_0) . p = d_0^2 - d_i^2 + |r_i|^2 - |r_0|^2.

    Returns:
        Position, or None when the geometry is rank deficient
    """
    dims = positions.shape[1]
    if len(positions) < dims + 1:
        return None

    ref = positions[0]
    a = 2.0 * (positions[1:] - ref)
    b = (
        distances[0] ** 2 - distances[1:] ** 2
        + np.sum(positions[1:] ** 2, axis=1) - np.sum(ref ** 2)
    )
    solution, _, rank, _ = np.linalg.lstsq(a, b, rcond=None)
    if rank < dims or not np.all(np.isfinite(solution)):
        return None
    return solution


def _check_samples(positions, values, dims: int, name: str):
    positions = np.asarray(positions, dtype=float)
    if positions.size == 0:
        positions = np.zeros((0, dims))
    elif positions.ndim != 2 or positions.shape[1] != dims:
        raise InvalidArgumentError(
            f"{name}: positions must have shape (N, {dims}), got {positions.shape}"
        )
    values = np.asarray(values, dtype=float).ravel()
    if len(positions) != len(values):
        raise InvalidArgumentError(
            f"{name}: {len(positions)} positions but {len(values)} values"
        )
    return positions, values


def _weights(stds, count: int, extra=None) -> np.ndarray:
    if stds is None:
        weights = np.ones(count)
    else:
        stds = np.asarray(stds, dtype=float).ravel()
        if len(stds) != count:
            raise InvalidArgumentError(f"Expected {count} std devs, got {len(stds)}")
        if np.any(stds <= 0):
            raise InvalidArgumentError("Std devs must be positive")
        weights = 1.0 / stds ** 2
    if extra is not None:
        extra = np.asarray(extra, dtype=float).ravel()
        if len(extra) != count:
            raise InvalidArgumentError(f"Expected {count} weights, got {len(extra)}")
        weights = weights * extra
    return weights


class MultilaterationSolver:
    """
    Weighted nonlinear multilateration from distances.

    Usage:
        solver = MultilaterationSolver(dimensions=2)
        result = solver.solve(positions, distances, distance_stds)
        print(result.position)
    """

    def __init__(self, dimensions: int = 2, config: Optional[SolverConfig] = None):
        """
        Initialize solver.

        Args:
            dimensions: 2 or 3
            config: Solver configuration (uses defaults if None)
        """
        if dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {dimensions}")
        self.dimensions = dimensions
        self.config = config or SolverConfig()
        self.metrics = get_metrics()

    @property
    def min_samples(self) -> int:
        return self.dimensions + 1

    def initial_guess(self, positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
        """Linear least-squares seed, else centroid of positions."""
        seed = linear_multilateration(positions, distances)
        if seed is None:
            seed = np.mean(positions, axis=0)
        return seed

    def solve(
        self,
        positions,
        distances,
        distance_stds=None,
        initial_position=None,
        weighted: bool = True,
        compute_covariance: bool = False,
    ) -> SolverResult:
        """
        Solve for the position minimizing weighted distance residuals.

        Args:
            positions: (N, dims) known positions
            distances: (N,) measured distances
            distance_stds: (N,) distance std devs, used when weighted
            initial_position: Initial guess (linear seed if None)
            weighted: Weight residuals by inverse variance
            compute_covariance: Also return (J^T W J)^-1

        Returns:
            SolverResult

        Raises:
            NotReadyError: fewer than dimensions + 1 samples
            DidNotConvergeError: iteration budget exhausted
            RefinementError: covariance requested but singular
        """
        positions, distances = _check_samples(positions, distances, self.dimensions, "ranging")
        if len(distances) < self.min_samples:
            raise NotReadyError(
                f"Need at least {self.min_samples} samples, got {len(distances)}"
            )

        weights = _weights(distance_stds if weighted else None, len(distances))

        if initial_position is None:
            x0 = self.initial_guess(positions, distances)
        else:
            x0 = np.asarray(initial_position, dtype=float).ravel()

        def model(x):
            diff = x - positions
            computed = np.sqrt(np.maximum(np.sum(diff ** 2, axis=1), MIN_SQUARED_DISTANCE))
            return computed - distances, diff / computed[:, None]

        x, chi_sq, iterations, normal = levenberg_marquardt(model, x0, weights, self.config)
        self.metrics.record_histogram('solver_iterations', iterations)

        covariance = covariance_from_normal(normal) if compute_covariance else None
        return SolverResult(
            params=x,
            position=x.copy(),
            covariance=covariance,
            chi_sq=chi_sq,
            iterations=iterations,
        )


@dataclass
class RadioSourceSolver:
    """
    Joint solver for position, transmitted power and path-loss exponent.

    Unknowns that are not estimated are held at the initial values passed to
    solve(). Parameter order is position, then power (dBm), then exponent.

    Attributes:
        dimensions: 2 or 3
        frequency: Carrier frequency of the source (Hz)
        estimate_position: Solve for position
        estimate_transmitted_power: Solve for transmitted power
        estimate_path_loss: Solve for path-loss exponent
        config: Solver configuration
    """

    dimensions: int
    frequency: float
    estimate_position: bool = True
    estimate_transmitted_power: bool = True
    estimate_path_loss: bool = False
    config: SolverConfig = field(default_factory=SolverConfig)

    def __post_init__(self):
        if self.dimensions not in (2, 3):
            raise InvalidArgumentError(f"Dimensions must be 2 or 3: {self.dimensions}")
        if self.frequency <= 0:
            raise InvalidArgumentError(f"Frequency must be positive: {self.frequency}")
        if not (self.estimate_position or self.estimate_transmitted_power
                or self.estimate_path_loss):
            raise InvalidArgumentError("At least one unknown must be estimated")

    @property
    def num_unknowns(self) -> int:
        return (
            (self.dimensions if self.estimate_position else 0)
            + int(self.estimate_transmitted_power)
            + int(self.estimate_path_loss)
        )

    def _unpack(self, x, position, power, exponent):
        i = 0
        if self.estimate_position:
            position = x[:self.dimensions]
            i = self.dimensions
        if self.estimate_transmitted_power:
            power = x[i]
            i += 1
        if self.estimate_path_loss:
            exponent = x[i]
        return position, power, exponent

    def solve(
        self,
        ranging_positions=(),
        ranging_distances=(),
        rssi_positions=(),
        rssi_values=(),
        ranging_stds=None,
        rssi_stds=None,
        ranging_weights=None,
        rssi_weights=None,
        initial_position=None,
        initial_transmitted_power_dbm: Optional[float] = None,
        initial_path_loss_exponent: float = PATH_LOSS_CONFIG["path_loss_exponent"],
        compute_covariance: bool = True,
    ) -> SolverResult:
        """
        Solve jointly over ranging and RSSI samples.

        Args:
            ranging_positions: (Nr, dims) receiver positions of ranging samples
            ranging_distances: (Nr,) measured distances (m)
            rssi_positions: (Ns, dims) receiver positions of RSSI samples
            rssi_values: (Ns,) measured RSSI (dBm)
            ranging_stds: (Nr,) distance std devs, unit if None
            rssi_stds: (Ns,) RSSI std devs (dB), unit if None
            ranging_weights: (Nr,) extra multiplicative weights
            rssi_weights: (Ns,) extra multiplicative weights
            initial_position: Start (or fixed) position
            initial_transmitted_power_dbm: Start (or fixed) power
            initial_path_loss_exponent: Start (or fixed) exponent
            compute_covariance: Also return (J^T W J)^-1

        Returns:
            SolverResult with position, power and exponent filled in

        Raises:
            InvalidArgumentError: a fixed unknown has no value
            NotReadyError: fewer samples than unknowns
            DidNotConvergeError: iteration budget exhausted
            RefinementError: covariance requested but singular
        """
        dims = self.dimensions
        r_pos, r_dist = _check_samples(ranging_positions, ranging_distances, dims, "ranging")
        s_pos, s_rssi = _check_samples(rssi_positions, rssi_values, dims, "rssi")
        r_weights = _weights(ranging_stds, len(r_dist), ranging_weights)
        s_weights = _weights(rssi_stds, len(s_rssi), rssi_weights)

        total = len(r_dist) + len(s_rssi)
        if total < self.num_unknowns:
            raise NotReadyError(f"Need at least {self.num_unknowns} samples, got {total}")

        if initial_position is None:
            if not self.estimate_position:
                raise InvalidArgumentError("Fixed position requires an initial position")
            initial_position = self._seed_position(r_pos, r_dist, s_pos)
        position0 = np.asarray(initial_position, dtype=float).ravel()

        if initial_transmitted_power_dbm is None:
            if self.estimate_transmitted_power:
                initial_transmitted_power_dbm = self._seed_power(
                    position0, s_pos, s_rssi, initial_path_loss_exponent
                )
            elif len(s_rssi):
                raise InvalidArgumentError("Fixed power requires an initial transmitted power")

        x0 = []
        if self.estimate_position:
            x0.extend(position0)
        if self.estimate_transmitted_power:
            x0.append(initial_transmitted_power_dbm)
        if self.estimate_path_loss:
            x0.append(initial_path_loss_exponent)
        x0 = np.array(x0, dtype=float)

        k_db = float(path_loss_constant_db(self.frequency))
        weights = np.concatenate([r_weights, s_weights])
        nr = len(r_dist)

        def model(x):
            position, power, exponent = self._unpack(
                x, position0, initial_transmitted_power_dbm, initial_path_loss_exponent
            )
            residuals = np.empty(total)
            jacobian = np.zeros((total, len(x)))

            if nr:
                diff = position - r_pos
                computed = np.sqrt(np.maximum(np.sum(diff ** 2, axis=1), MIN_SQUARED_DISTANCE))
                residuals[:nr] = computed - r_dist
                if self.estimate_position:
                    jacobian[:nr, :dims] = diff / computed[:, None]

            if len(s_rssi):
                diff = position - s_pos
                sq_dist = np.maximum(np.sum(diff ** 2, axis=1), MIN_SQUARED_DISTANCE)
                log_dist = 5.0 * np.log10(sq_dist)
                residuals[nr:] = exponent * k_db + power - exponent * log_dist - s_rssi
                col = 0
                if self.estimate_position:
                    jacobian[nr:, :dims] = -10.0 * exponent / LN10 * diff / sq_dist[:, None]
                    col = dims
                if self.estimate_transmitted_power:
                    jacobian[nr:, col] = 1.0
                    col += 1
                if self.estimate_path_loss:
                    jacobian[nr:, col] = k_db - log_dist

            return residuals, jacobian

        x, chi_sq, iterations, normal = levenberg_marquardt(model, x0, weights, self.config)
        get_metrics().record_histogram('solver_iterations', iterations)

        position, power, exponent = self._unpack(
            x, position0, initial_transmitted_power_dbm, initial_path_loss_exponent
        )
        covariance = covariance_from_normal(normal) if compute_covariance else None

        return SolverResult(
            params=x,
            position=np.array(position, dtype=float),
            covariance=covariance,
            chi_sq=chi_sq,
            iterations=iterations,
            transmitted_power_dbm=None if power is None else float(power),
            path_loss_exponent=float(exponent),
        )

    def _seed_position(self, r_pos, r_dist, s_pos) -> np.ndarray:
        if len(r_dist) >= self.dimensions + 1:
            seed = linear_multilateration(r_pos, r_dist)
            if seed is not None:
                return seed
        all_positions = np.vstack([r_pos, s_pos])
        return np.mean(all_positions, axis=0)

    def _seed_power(self, position, s_pos, s_rssi, exponent) -> float:
        """Mean transmitted power implied by the RSSI samples at a position."""
        if not len(s_rssi):
            return 0.0
        sq_dist = np.maximum(np.sum((position - s_pos) ** 2, axis=1), MIN_SQUARED_DISTANCE)
        k_db = float(path_loss_constant_db(self.frequency))
        implied = s_rssi - exponent * k_db + 5.0 * exponent * np.log10(sq_dist)
        return float(np.mean(implied))


def variance_or_none(covariance: Optional[np.ndarray], index: Optional[int]) -> Optional[float]:
    """Diagonal entry of a covariance, or None when unavailable."""
    if covariance is None or index is None:
        return None
    value = float(covariance[index, index])
    return value if math.isfinite(value) else None
