"""
Tests for the locked estimate() lifecycle and listener notifications.
"""

import pytest

from radioloc_core.errors import (
    InvalidArgumentError,
    LockedError,
    NotReadyError,
    RobustEstimationError,
)
from radioloc_core.metrics import get_metrics
from radioloc_core.proto import RangingReading
from radioloc_core.localization import (
    LockableEstimator,
    RobustSequentialEstimator,
    SequentialEstimatorConfig,
)


class ScriptedEstimator(LockableEstimator):
    """Estimator reporting a scripted progress sequence."""

    def __init__(self, progress=(), ready=True, error=None, **kwargs):
        super().__init__(**kwargs)
        self.script = list(progress)
        self.ready = ready
        self.error = error

    def is_ready(self):
        return self.ready

    def _estimate(self):
        for value in self.script:
            self._notify_progress(value)
        if self.error is not None:
            raise self.error
        return "done"


# Mutators of RobustSequentialEstimator with a valid value for each
SEQUENTIAL_MUTATIONS = [
    ("readings", None),
    ("quality_scores", None),
    ("config", SequentialEstimatorConfig()),
    ("listener", None),
    ("progress_delta", 0.5),
    ("dimensions", 2),
    ("ranging_method", "RANSAC"),
    ("rssi_method", "RANSAC"),
    ("ranging_threshold", 1.0),
    ("rssi_threshold", 1.0),
    ("ranging_confidence", 0.9),
    ("rssi_confidence", 0.9),
    ("ranging_max_iterations", 10),
    ("rssi_max_iterations", 10),
    ("transmitted_power_estimation_enabled", True),
    ("path_loss_estimation_enabled", True),
    ("refine_result", False),
    ("keep_covariance", False),
    ("use_reading_position_covariances", False),
    ("initial_position", (0.0, 0.0)),
    ("initial_transmitted_power_dbm", 0.0),
    ("initial_transmitted_power", 1.0),
    ("initial_path_loss_exponent", 2.5),
    ("random_seed", 3),
]


def _locked_probe(estimator, escaped):
    """Try every mutator and estimate(); record the ones that did not raise LockedError."""
    assert estimator.is_locked
    for name, value in SEQUENTIAL_MUTATIONS:
        if name == "readings":
            value = estimator.readings
        try:
            setattr(estimator, name, value)
        except LockedError:
            continue
        escaped.append(name)
    try:
        estimator.estimate()
    except LockedError:
        pass
    else:
        escaped.append("estimate")


class TestLocking:
    """Test that estimators are immutable while estimating."""

    def test_mutators_raise_inside_callbacks(self, make_scenario, make_listener):
        scenario = make_scenario(dims=2, num_readings=20, path_loss_exponent=2.0)
        escaped = []
        calls = []

        def hook(estimator):
            calls.append(estimator)
            _locked_probe(estimator, escaped)

        estimator = RobustSequentialEstimator(
            scenario.readings, scenario.quality_scores,
            config=SequentialEstimatorConfig(random_seed=0),
            listener=make_listener(hook),
        )

        result = estimator.estimate()

        assert escaped == []
        assert len(calls) >= 3
        assert all(c is estimator for c in calls)
        assert not estimator.is_locked
        assert result.refined

    def test_unlocked_after_not_ready(self):
        estimator = RobustSequentialEstimator()

        with pytest.raises(NotReadyError):
            estimator.estimate()

        assert not estimator.is_locked
        estimator.refine_result = False

    def test_unlocked_after_robust_failure(self, make_scenario, rng, recording_listener):
        scenario = make_scenario(dims=2, num_readings=15, kind="ranging")
        noisy = [
            RangingReading(r.source, abs(r.distance + float(rng.normal(0.0, 0.5)) + 1.0),
                           position=r.position)
            for r in scenario.readings
        ]
        estimator = RobustSequentialEstimator(
            noisy,
            config=SequentialEstimatorConfig(
                ranging_method="RANSAC", ranging_threshold=1e-9, ranging_max_iterations=20,
                transmitted_power_estimation_enabled=False, random_seed=0,
            ),
            listener=recording_listener,
        )

        with pytest.raises(RobustEstimationError):
            estimator.estimate()

        assert not estimator.is_locked
        assert recording_listener.starts == 1
        assert recording_listener.ends == 1
        assert recording_listener.events[-1] == "end"
        assert estimator.result is None
        assert get_metrics().get_drop_count('robust_estimation_failed') == 1

    def test_unlocked_after_unexpected_error(self, recording_listener):
        estimator = ScriptedEstimator(error=RuntimeError("boom"), listener=recording_listener)

        with pytest.raises(RuntimeError):
            estimator.estimate()

        assert not estimator.is_locked
        assert recording_listener.events == ["start", "end"]

    def test_base_class_is_abstract(self):
        estimator = LockableEstimator()

        with pytest.raises(NotImplementedError):
            estimator.is_ready()
        with pytest.raises(NotImplementedError):
            estimator._estimate()

    def test_listener_cannot_change_while_locked(self, make_listener):
        seen = []

        def hook(estimator):
            with pytest.raises(LockedError):
                estimator.listener = None
            with pytest.raises(LockedError):
                estimator.progress_delta = 0.5
            seen.append(estimator.is_locked)

        estimator = ScriptedEstimator(progress=[0.5], listener=make_listener(hook))
        estimator.estimate()

        assert seen == [True, True, True]


class TestLifecycleOrder:
    """Test callback ordering and metrics."""

    def test_event_order(self, recording_listener):
        estimator = ScriptedEstimator(progress=[0.0, 0.5, 1.0], listener=recording_listener,
                                      progress_delta=0.1)

        assert estimator.estimate() == "done"

        assert recording_listener.events == ["start", "progress", "progress", "progress", "end"]
        assert recording_listener.progress == [0.0, 0.5, 1.0]

    def test_not_ready_brackets(self, recording_listener):
        estimator = ScriptedEstimator(ready=False, listener=recording_listener)

        with pytest.raises(NotReadyError):
            estimator.estimate()

        assert recording_listener.events == ["start", "end"]
        metrics = get_metrics()
        assert metrics.get_counter('estimate_attempts') == 1
        assert metrics.get_counter('estimate_success') == 0
        assert metrics.get_drop_count('not_ready') == 1

    def test_success_counted(self):
        ScriptedEstimator().estimate()

        metrics = get_metrics()
        assert metrics.get_counter('estimate_attempts') == 1
        assert metrics.get_counter('estimate_success') == 1

    def test_unrecorded_attempts(self):
        ScriptedEstimator(record_attempts=False).estimate()

        metrics = get_metrics()
        assert metrics.get_counter('estimate_attempts') == 0
        assert metrics.get_counter('estimate_success') == 0

    def test_no_listener(self):
        assert ScriptedEstimator(progress=[0.2, 1.0]).estimate() == "done"


class TestProgressThrottling:
    """Test progress notification throttling."""

    def test_throttled_by_delta(self, recording_listener):
        script = [i / 100.0 for i in range(101)]
        estimator = ScriptedEstimator(progress=script, listener=recording_listener,
                                      progress_delta=0.1)

        estimator.estimate()
        progress = recording_listener.progress

        assert progress[0] == 0.0
        assert progress[-1] == 1.0
        assert 9 <= len(progress) <= 11
        assert all(b - a >= 0.1 for a, b in zip(progress[:-2], progress[1:-1]))

    def test_completion_always_reported(self, recording_listener):
        estimator = ScriptedEstimator(progress=[0.0, 0.95, 1.0], listener=recording_listener,
                                      progress_delta=0.5)

        estimator.estimate()

        assert recording_listener.progress == [0.0, 0.95, 1.0]

    def test_non_increasing_progress_ignored(self, recording_listener):
        estimator = ScriptedEstimator(progress=[0.5, 0.2, 0.5, 0.7], listener=recording_listener,
                                      progress_delta=0.0)

        estimator.estimate()

        assert recording_listener.progress == [0.5, 0.7]

    def test_progress_clamped(self, recording_listener):
        estimator = ScriptedEstimator(progress=[-0.5, 1.5], listener=recording_listener,
                                      progress_delta=0.0)

        estimator.estimate()

        assert recording_listener.progress == [0.0, 1.0]

    def test_progress_reset_between_runs(self, recording_listener):
        estimator = ScriptedEstimator(progress=[0.0, 1.0], listener=recording_listener)

        estimator.estimate()
        estimator.estimate()

        assert recording_listener.progress == [0.0, 1.0, 0.0, 1.0]

    @pytest.mark.parametrize("delta", [-0.1, 1.1])
    def test_invalid_delta(self, delta):
        with pytest.raises(InvalidArgumentError):
            ScriptedEstimator(progress_delta=delta)
        with pytest.raises(InvalidArgumentError):
            ScriptedEstimator().progress_delta = delta
