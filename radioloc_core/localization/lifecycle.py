"""
Estimator Lifecycle and Locking.

Every estimator runs estimate() under a non-reentrant lock:

    check unlocked -> lock -> on_estimate_start -> readiness check
        -> _estimate() (progress notifications) -> on_estimate_end -> unlock

on_estimate_end and the unlock run on every exit path. While locked, every
configuration setter and estimate() itself raise LockedError, including
when called from a listener callback.
"""

import logging
from typing import Optional

from radioloc_core.config import CONSENSUS_CONFIG
from radioloc_core.errors import LockedError, NotReadyError, InvalidArgumentError
from radioloc_core.metrics import get_metrics

logger = logging.getLogger(__name__)


class EstimatorListener:
    """
    Observer of estimate() calls.

    Callbacks run synchronously on the thread calling estimate(). Subclass
    and override the ones of interest.
    """

    def on_estimate_start(self, estimator):
        pass

    def on_estimate_progress_change(self, estimator, progress: float):
        pass

    def on_estimate_end(self, estimator):
        pass


class LockableEstimator:
    """
    Base class providing the locked estimate() lifecycle.

    Subclasses implement is_ready() and _estimate(), call
    self._check_unlocked() at the top of every setter, and report progress
    through self._notify_progress().

    Estimators run as a stage of another estimator pass
    record_attempts=False so one call is counted once.
    """

    def __init__(
        self,
        listener: Optional[EstimatorListener] = None,
        progress_delta: float = CONSENSUS_CONFIG["progress_delta"],
        record_attempts: bool = True,
    ):
        self._locked = False
        self.record_attempts = record_attempts
        self._listener = listener
        self._progress_delta = self._validated_progress_delta(progress_delta)
        self._last_progress: Optional[float] = None
        self.metrics = get_metrics()

    @staticmethod
    def _validated_progress_delta(value: float) -> float:
        if not 0.0 <= value <= 1.0:
            raise InvalidArgumentError(f"progress_delta must be in [0, 1]: {value}")
        return float(value)

    @property
    def is_locked(self) -> bool:
        """True while estimate() is running."""
        return self._locked

    def _check_unlocked(self):
        if self._locked:
            raise LockedError(f"{type(self).__name__} is locked while estimating")

    @property
    def listener(self) -> Optional[EstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, value: Optional[EstimatorListener]):
        self._check_unlocked()
        self._listener = value

    @property
    def progress_delta(self) -> float:
        return self._progress_delta

    @progress_delta.setter
    def progress_delta(self, value: float):
        self._check_unlocked()
        self._progress_delta = self._validated_progress_delta(value)

    def is_ready(self) -> bool:
        raise NotImplementedError

    def _estimate(self):
        raise NotImplementedError

    def _notify_progress(self, progress: float):
        """Forward progress to the listener when it moved by progress_delta."""
        if self._listener is None:
            return
        progress = min(max(float(progress), 0.0), 1.0)
        last = self._last_progress
        if last is not None:
            if progress <= last:
                return
            if progress - last < self._progress_delta and progress < 1.0:
                return
        self._last_progress = progress
        self._listener.on_estimate_progress_change(self, progress)

    def estimate(self):
        """
        Run the estimation.

        Returns:
            Whatever the subclass' _estimate() returns

        Raises:
            LockedError: already estimating
            NotReadyError: preconditions unmet
        """
        self._check_unlocked()
        self._locked = True
        self._last_progress = None
        if self.record_attempts:
            self.metrics.increment('estimate_attempts')
        try:
            if self._listener is not None:
                self._listener.on_estimate_start(self)

            if not self.is_ready():
                logger.debug("%s estimate requested before ready", type(self).__name__)
                self.metrics.increment_drop('not_ready')
                raise NotReadyError(f"{type(self).__name__} is not ready")

            result = self._estimate()
            if self.record_attempts:
                self.metrics.increment('estimate_success')
            return result
        finally:
            try:
                if self._listener is not None:
                    self._listener.on_estimate_end(self)
            finally:
                self._locked = False
