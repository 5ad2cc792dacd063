"""
Tests for converting readings into distance samples.
"""

import math

import numpy as np
import pytest

from radioloc_core.errors import InvalidArgumentError
from radioloc_core.metrics import get_metrics
from radioloc_core.proto import (
    Fingerprint,
    LocatedRadioSource,
    RadioSource,
    RangingAndRssiReading,
    RangingReading,
    RssiReading,
)
from radioloc_core.localization import (
    DistanceSamples,
    SampleChannel,
    build_distance_samples,
    build_positions_and_distances,
    position_variance,
    split_located_readings,
)
from radioloc_core.localization.path_loss import (
    propagate_rssi_variance_to_distance_variance,
    received_power_dbm,
)

FREQUENCY = 2.4e9


@pytest.fixture
def sources():
    """Three located access points, the last one without known power."""
    return [
        LocatedRadioSource(RadioSource("ap-0", FREQUENCY), (0.0, 0.0), transmitted_power_dbm=10.0),
        LocatedRadioSource(RadioSource("ap-1", FREQUENCY), (10.0, 0.0), transmitted_power_dbm=0.0,
                           transmitted_power_std=1.0),
        LocatedRadioSource(RadioSource("ap-2", FREQUENCY), (0.0, 10.0)),
    ]


class TestPositionVariance:
    """Test scalar position variance."""

    def test_none(self):
        assert position_variance(None) is None

    def test_mean_of_singular_values(self):
        assert position_variance(np.diag([1.0, 3.0])) == pytest.approx(2.0)
        assert position_variance(2.0 * np.eye(3)) == pytest.approx(2.0)


class TestBuildPositionsAndDistances:
    """Test sample building without uncertainty."""

    def test_none_inputs_leave_samples_untouched(self, sources):
        samples = DistanceSamples()
        samples.append(np.zeros(2), 1.0, SampleChannel.RANGING)

        build_positions_and_distances(None, Fingerprint(), samples)
        build_positions_and_distances(sources, None, samples)

        assert len(samples) == 1

    def test_output_is_cleared(self, sources):
        samples = DistanceSamples()
        samples.append(np.zeros(2), 1.0, SampleChannel.RANGING)

        build_positions_and_distances(sources, Fingerprint(), samples)

        assert len(samples) == 0

    def test_ranging_and_rssi(self, sources):
        rssi = float(received_power_dbm(10.0, 7.0, FREQUENCY, 2.0))
        fingerprint = Fingerprint([
            RangingReading(sources[1].source, 4.0),
            RssiReading(sources[0].source, rssi),
        ])

        samples = build_positions_and_distances(sources, fingerprint, DistanceSamples())

        assert samples.distances == pytest.approx([4.0, 7.0])
        np.testing.assert_array_equal(samples.positions[0], [10.0, 0.0])
        np.testing.assert_array_equal(samples.positions[1], [0.0, 0.0])
        assert samples.channels == [SampleChannel.RANGING, SampleChannel.RSSI]
        assert samples.distance_stds_array() is None

    def test_mixed_reading_doubles_samples(self, sources):
        """A ranging-and-RSSI reading contributes one sample per channel."""
        rssi = float(received_power_dbm(10.0, 5.0, FREQUENCY, 2.0))
        fingerprint = Fingerprint([
            RangingAndRssiReading(sources[0].source, 5.0, rssi),
            RangingAndRssiReading(sources[0].source, 5.0, rssi),
        ])

        samples = build_positions_and_distances(sources, fingerprint, DistanceSamples())

        assert len(samples) == 2 * len(fingerprint)
        np.testing.assert_allclose(samples.distances_array(), 5.0)

    def test_unknown_source_and_missing_power_dropped(self, sources):
        fingerprint = Fingerprint([
            RangingReading(RadioSource("stranger", FREQUENCY), 3.0),
            RssiReading(sources[2].source, -60.0),
            RangingReading(sources[2].source, 2.0),
        ])

        samples = build_positions_and_distances(sources, fingerprint, DistanceSamples())

        assert samples.distances == [2.0]
        metrics = get_metrics()
        assert metrics.get_drop_count('unknown_source') == 1
        assert metrics.get_drop_count('no_power_info') == 1
        assert metrics.get_counter('samples_built') == 1


class TestBuildDistanceSamples:
    """Test sample building with uncertainty and quality scores."""

    def test_invalid_fallback_std(self, sources):
        with pytest.raises(InvalidArgumentError):
            build_distance_samples(sources, Fingerprint(), DistanceSamples(),
                                   fallback_distance_std=0.0)

    def test_fallback_checked_before_none_inputs(self):
        with pytest.raises(InvalidArgumentError):
            build_distance_samples(None, None, DistanceSamples(), fallback_distance_std=-1.0)

    def test_fallback_std_when_unknown(self, sources):
        fingerprint = Fingerprint([
            RangingReading(sources[0].source, 3.0),
            RssiReading(sources[0].source, -50.0),
        ])

        samples = build_distance_samples(sources, fingerprint, DistanceSamples(),
                                         fallback_distance_std=2.5)

        assert samples.distance_stds == [2.5, 2.5]

    def test_position_variance_replaces_fallback(self, sources):
        source = LocatedRadioSource(sources[0].source, (0.0, 0.0), transmitted_power_dbm=10.0,
                                    position_covariance=4.0 * np.eye(2))
        fingerprint = Fingerprint([
            RangingReading(source.source, 3.0),
            RssiReading(source.source, -50.0),
        ])

        samples = build_distance_samples([source], fingerprint, DistanceSamples(),
                                         fallback_distance_std=0.5)

        assert samples.distance_stds == pytest.approx([2.0, 2.0])

    def test_ranging_std_includes_position_variance(self, sources):
        source = LocatedRadioSource(
            sources[0].source, (0.0, 0.0), position_covariance=np.diag([1.0, 3.0])
        )
        reading = RangingReading(
            source.source, 3.0, distance_std=0.5,
            position=(1.0, 1.0), position_covariance=np.eye(2),
        )

        with_cov = build_distance_samples([source], Fingerprint([reading]), DistanceSamples())
        without_cov = build_distance_samples([source], Fingerprint([reading]), DistanceSamples(),
                                             use_position_covariance=False)

        # source variance 2.0 + reading variance 1.0
        assert with_cov.distance_stds[0] == pytest.approx(math.sqrt(0.25 + 3.0))
        assert without_cov.distance_stds[0] == pytest.approx(0.5)

    def test_rssi_std_propagated(self, sources):
        rssi = float(received_power_dbm(10.0, 6.0, FREQUENCY, 2.0))
        reading = RssiReading(sources[0].source, rssi, rssi_std=2.0)

        samples = build_distance_samples(sources, Fingerprint([reading]), DistanceSamples())

        expected = propagate_rssi_variance_to_distance_variance(10.0, rssi, 2.0, FREQUENCY, 4.0)
        assert samples.distances[0] == pytest.approx(6.0)
        assert samples.distance_stds[0] == pytest.approx(math.sqrt(expected))
        assert samples.channels == [SampleChannel.RSSI]

    def test_source_power_std_used_without_rssi_std(self, sources):
        """Known source power uncertainty alone yields a propagated std."""
        rssi = float(received_power_dbm(0.0, 4.0, FREQUENCY, 2.0))
        reading = RssiReading(sources[1].source, rssi)

        samples = build_distance_samples(sources, Fingerprint([reading]), DistanceSamples(),
                                         fallback_distance_std=100.0)

        assert 0.0 < samples.distance_stds[0] < 100.0

    def test_quality_scores_are_summed(self, sources):
        fingerprint = Fingerprint([
            RangingReading(sources[0].source, 1.0),
            RangingAndRssiReading(sources[1].source, 2.0, -50.0),
        ])

        samples = build_distance_samples(
            sources, fingerprint, DistanceSamples(),
            source_quality_scores=[10.0, 20.0, 30.0],
            reading_quality_scores=[1.0, 2.0],
        )

        assert samples.quality_scores == [11.0, 22.0, 22.0]

    def test_quality_defaults_to_zero(self, sources):
        fingerprint = Fingerprint([RangingReading(sources[0].source, 1.0)])

        samples = build_distance_samples(sources, fingerprint, DistanceSamples())

        np.testing.assert_array_equal(samples.quality_scores_array(), [0.0])

    def test_mixed_reading_without_power_keeps_ranging(self, sources):
        fingerprint = Fingerprint([RangingAndRssiReading(sources[2].source, 2.0, -50.0)])

        samples = build_distance_samples(sources, fingerprint, DistanceSamples())

        assert samples.channels == [SampleChannel.RANGING]
        assert get_metrics().get_drop_count('no_power_info') == 1


class TestSplitLocatedReadings:
    """Test per-channel split of located readings."""

    def test_split_without_scores(self, wifi_source):
        readings = [
            RangingReading(wifi_source, 1.0, position=(0.0, 0.0)),
            RssiReading(wifi_source, -50.0, position=(1.0, 0.0)),
            RangingAndRssiReading(wifi_source, 2.0, -60.0, position=(2.0, 0.0)),
        ]

        split = split_located_readings(readings)

        assert [r.distance for r in split.ranging_readings] == [1.0, 2.0]
        assert [r.rssi for r in split.rssi_readings] == [-50.0, -60.0]
        assert split.ranging_quality_scores is None
        assert split.rssi_quality_scores is None

    def test_scores_follow_readings(self, wifi_source):
        readings = [
            RangingAndRssiReading(wifi_source, 2.0, -60.0, position=(2.0, 0.0)),
            RssiReading(wifi_source, -50.0, position=(1.0, 0.0)),
        ]

        split = split_located_readings(readings, [0.7, 0.3])

        np.testing.assert_array_equal(split.ranging_quality_scores, [0.7])
        np.testing.assert_array_equal(split.rssi_quality_scores, [0.7, 0.3])
