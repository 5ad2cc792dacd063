"""
Exception taxonomy for radio source estimation.

- InvalidArgumentError: malformed configuration, raised by the call that set it
- NotReadyError: estimate() called while preconditions are unmet
- LockedError: mutator (or estimate()) called while an estimation is running
- RobustEstimationError: consensus could not find an acceptable model
- DidNotConvergeError: nonlinear solver ran out of iterations
- RefinementError: numerical failure while refining or computing covariance
"""


class RadioLocError(Exception):
    """Base class for all estimation errors."""


class InvalidArgumentError(RadioLocError, ValueError):
    """Raised when a configuration value or input collection is invalid."""


class NotReadyError(RadioLocError):
    """Raised by estimate() when the estimator is not ready."""


class LockedError(RadioLocError):
    """Raised when an estimator is modified while it is estimating."""


class RobustEstimationError(RadioLocError):
    """Raised when robust consensus fails within its iteration budget."""


class DidNotConvergeError(RadioLocError):
    """Raised when the nonlinear solver exceeds its iteration budget."""


class RefinementError(RadioLocError):
    """Raised when refinement or covariance computation is numerically singular."""
