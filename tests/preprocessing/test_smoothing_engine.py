"""Unit tests for track and depth smoothing."""

from datetime import datetime, timedelta

import numpy as np
import pytest

from surveyqc.common.models import NavigationFix, clone_fixes
from surveyqc.errors import ConfigurationError
from surveyqc.preprocessing.qa_report import QualityReport
from surveyqc.preprocessing.smoothing_engine import (
    ChannelSettings,
    SmoothingConfiguration,
    SmoothingEngine,
    SmoothingMethod,
    comparison_frame,
    detect_spikes,
    gaussian_smooth,
    kalman_rts_smooth,
    median_filter,
    moving_average,
    normalize_window,
    remove_spikes,
    savitzky_golay,
    smoothing_statistics,
    threshold_filter,
    weighted_moving_average,
)

T0 = datetime(2024, 5, 1, 12, 0, 0)


def make_fixes(eastings, northings, depths=None):
    depths = depths if depths is not None else [None] * len(eastings)
    return [
        NavigationFix(i + 1, T0 + timedelta(seconds=i), float(e), float(n), depth=d)
        for i, (e, n, d) in enumerate(zip(eastings, northings, depths))
    ]


class TestWindowNormalisation:
    """Test suite for normalize_window."""

    @pytest.mark.parametrize("size, expected", [(0, 3), (1, 3), (2, 3), (3, 3), (4, 5), (5, 5), (8, 9)])
    def test_normalize_window(self, size, expected):
        """Test that windows become odd and at least 3."""
        assert normalize_window(size) == expected

    def test_channel_settings_coerce_window(self):
        """Test that ChannelSettings stores the effective window."""
        assert ChannelSettings(window=6).window == 7

    def test_unknown_method_raises(self):
        """Test that an unknown method name is a configuration error."""
        with pytest.raises(ConfigurationError):
            ChannelSettings(method="wavelet")

    def test_non_positive_noise_raises(self):
        """Test that Kalman noise parameters must be positive."""
        with pytest.raises(ConfigurationError):
            SmoothingConfiguration(process_noise=0.0)
        with pytest.raises(ConfigurationError):
            SmoothingConfiguration(measurement_noise=-1.0)


class TestFilters:
    """Test suite for the individual filter functions."""

    def test_moving_average_shrinks_at_ends(self):
        """Test that end samples are averaged only with themselves."""
        data = np.array([0.0, 0.0, 3.0, 0.0, 0.0])
        out = moving_average(data, 3)

        np.testing.assert_allclose(out, [0.0, 1.0, 1.0, 1.0, 0.0])

    def test_moving_average_handles_large_coordinates(self):
        """Test that a linear track at UTM magnitudes is left unchanged."""
        data = 500000.0 + np.arange(20, dtype=float)
        np.testing.assert_allclose(moving_average(data, 5), data, atol=1e-8)

    def test_weighted_moving_average_weights(self):
        """Test linear weights 1-2-3-2-1 in a window of five."""
        data = np.array([0.0, 0.0, 9.0, 0.0, 0.0])
        out = weighted_moving_average(data, 5)

        assert out[2] == pytest.approx(9.0 * 3 / 9)
        # shrunk window of three: weights 2-3-2
        assert out[1] == pytest.approx(9.0 * 2 / 7)
        assert out[0] == 0.0

    def test_median_removes_isolated_spike(self):
        """Test that a single spike is replaced by its neighbours."""
        data = np.array([1.0, 1.0, 10.0, 1.0, 1.0])
        np.testing.assert_allclose(median_filter(data, 3), np.ones(5))

    def test_median_constant_sequence_unchanged(self):
        """Test idempotence on a constant sequence."""
        data = np.full(12, 7.25)
        np.testing.assert_array_equal(median_filter(data, 5), data)

    def test_median_keeps_monotonic_signal(self):
        """Test that a monotonic signal is a fixed point of the median filter."""
        data = np.cumsum(np.random.default_rng(1).uniform(0.1, 1.0, 30))
        once = median_filter(data, 5)

        np.testing.assert_allclose(once, data)
        np.testing.assert_allclose(median_filter(once, 5), once)

    def test_median_stays_within_window_range(self):
        """Test that every output lies within the range of its window."""
        data = np.random.default_rng(2).normal(0, 1, 50)
        window = 7
        out = median_filter(data, window)

        half = window // 2
        n = len(data)
        for i in range(n):
            h = min(half, i, n - 1 - i)
            win = data[i - h:i + h + 1]
            assert win.min() <= out[i] <= win.max()

    def test_median_2d_columns_independent(self):
        """Test that 2D input is filtered per column."""
        data = np.array([[0.0, 5.0], [1.0, 5.0], [2.0, 50.0], [3.0, 5.0], [4.0, 5.0]])
        out = median_filter(data, 3)

        np.testing.assert_allclose(out[:, 0], data[:, 0])
        np.testing.assert_allclose(out[:, 1], np.full(5, 5.0))

    def test_threshold_filter_replaces_only_outliers(self):
        """Test that only the sample beyond the threshold is replaced."""
        data = np.array([0.0, 1.0, 2.0, 3.0, 20.0, 5.0, 6.0, 7.0, 8.0])
        out = threshold_filter(data, 5, threshold=5.0)

        expected = data.copy()
        expected[4] = 4.0
        np.testing.assert_allclose(out, expected)

    def test_threshold_filter_uses_planimetric_deviation(self):
        """Test the Euclidean deviation for 2D input."""
        data = np.array([[0.0, 0.0], [1.0, 0.0], [2.0, 3.0], [3.0, 0.0], [4.0, 0.0]])

        # deviation of the middle point is exactly 3
        np.testing.assert_allclose(threshold_filter(data, 3, threshold=3.5), data)
        out = threshold_filter(data, 3, threshold=2.5)
        np.testing.assert_allclose(out[2], [2.0, 0.0])

    def test_kalman_constant_signal_unchanged(self):
        """Test that a constant signal passes through the smoother unchanged."""
        data = np.full(25, 42.0)
        np.testing.assert_allclose(kalman_rts_smooth(data, 0.01, 0.1), data)

    def test_kalman_reduces_noise(self):
        """Test that the smoothed signal is closer to the truth than the input."""
        rng = np.random.default_rng(3)
        truth = np.linspace(0.0, 5.0, 200)
        noisy = truth + rng.normal(0, 0.5, truth.size)

        smoothed = kalman_rts_smooth(noisy, 0.01, 0.25)

        assert np.sqrt(np.mean((smoothed - truth) ** 2)) < np.sqrt(np.mean((noisy - truth) ** 2))

    def test_kalman_2d_matches_per_column(self):
        """Test that joint position smoothing equals per-axis smoothing."""
        rng = np.random.default_rng(4)
        xy = rng.normal(0, 1, (30, 2))

        joint = kalman_rts_smooth(xy, 0.05, 0.2)
        np.testing.assert_allclose(joint[:, 0], kalman_rts_smooth(xy[:, 0], 0.05, 0.2))
        np.testing.assert_allclose(joint[:, 1], kalman_rts_smooth(xy[:, 1], 0.05, 0.2))

    def test_savitzky_golay_preserves_quadratic(self):
        """Test that a quadratic is reproduced exactly with order 2."""
        x = np.arange(15, dtype=float)
        data = 0.5 * x ** 2 - 3.0 * x + 2.0

        np.testing.assert_allclose(savitzky_golay(data, 7, order=2), data, atol=1e-9)

    def test_gaussian_keeps_constant_and_endpoints(self):
        """Test normalised weights and unshrunk end samples."""
        data = np.array([5.0, 1.0, 7.0, 3.0, 2.0, 9.0])
        out = gaussian_smooth(data, 5)

        assert out[0] == pytest.approx(5.0)
        assert out[-1] == pytest.approx(9.0)
        np.testing.assert_allclose(gaussian_smooth(np.full(8, 3.0), 5), np.full(8, 3.0))


class TestSpikes:
    """Test suite for spike detection and removal."""

    def test_detect_single_spike(self):
        """Test that only the outlier is flagged."""
        data = [0, 1, 0, 1, 0, 1, 50, 1, 0, 1, 0, 1, 0]
        assert list(detect_spikes(data, 7, n_sigma=3.0)) == [6]

    def test_detect_needs_more_than_two_neighbours(self):
        """Test that end samples and small windows are never flagged."""
        data = np.array([0, 1] * 10, dtype=float)
        data[[0, 10, 19]] = 50.0

        assert list(detect_spikes(data, 5)) == [10]
        assert len(detect_spikes(data, 3)) == 0

    def test_detect_needs_three_samples(self):
        """Test short input yields no spikes."""
        assert len(detect_spikes([1.0, 100.0], 3)) == 0

    def test_remove_spikes_interpolates(self):
        """Test linear interpolation between clean neighbours."""
        np.testing.assert_allclose(remove_spikes([0.0, 1.0, 50.0, 3.0], [2]), [0.0, 1.0, 2.0, 3.0])

    def test_remove_spikes_at_start_uses_nearest(self):
        """Test that a leading spike takes the first clean value."""
        np.testing.assert_allclose(remove_spikes([10.0, 1.0, 2.0], [0]), [1.0, 1.0, 2.0])


class TestSmoothingEngine:
    """Test suite for SmoothingEngine class."""

    def test_position_spike_modified(self):
        """Test that a northing spike is removed and counted once."""
        fixes = make_fixes(range(5), [0, 0, 5, 0, 0])
        config = SmoothingConfiguration(position=ChannelSettings(enabled=True, method="median", window=3))

        result = SmoothingEngine().smooth(fixes, config)

        assert [f.smoothed_northing for f in fixes] == [0.0] * 5
        assert [f.smoothed_easting for f in fixes] == [0.0, 1.0, 2.0, 3.0, 4.0]
        assert fixes[2].northing == 5.0
        assert result.position_modified == 1
        assert result.max_position_correction == pytest.approx(5.0)
        assert result.modified_indices == frozenset({2})
        assert result.spikes_removed == 1

    def test_depth_only_smooths_present_values(self):
        """Test that fixes without depth keep None."""
        depths = [10.0, None, 10.0, 30.0, 10.0, 10.0]
        fixes = make_fixes(range(6), [0] * 6, depths)
        config = SmoothingConfiguration(
            position=ChannelSettings(enabled=False),
            depth=ChannelSettings(enabled=True, method=SmoothingMethod.MEDIAN, window=3),
        )

        result = SmoothingEngine().smooth(fixes, config)

        assert fixes[1].smoothed_depth is None
        assert fixes[3].smoothed_depth == pytest.approx(10.0)
        assert result.depth_modified == 1
        assert result.modified_indices == frozenset({3})
        assert result.position_modified == 0

    def test_disabled_channels_copy_raw_values(self):
        """Test pass-through when nothing is enabled."""
        fixes = make_fixes([1, 2, 3], [4, 5, 6], [7.0, 8.0, 9.0])
        config = SmoothingConfiguration(position=ChannelSettings(enabled=False))

        result = SmoothingEngine().smooth(fixes, config)

        assert [f.smoothed_easting for f in fixes] == [1.0, 2.0, 3.0]
        assert [f.smoothed_depth for f in fixes] == [7.0, 8.0, 9.0]
        assert result.spikes_removed == 0

    def test_too_few_points_pass_through(self):
        """Test that fewer points than the window leave the data unchanged."""
        fixes = make_fixes([0, 10], [0, 10])
        config = SmoothingConfiguration(position=ChannelSettings(enabled=True, window=5))
        report = QualityReport()

        result = SmoothingEngine().smooth(fixes, config, report)

        assert [(f.smoothed_easting, f.smoothed_northing) for f in fixes] == [(0.0, 0.0), (10.0, 10.0)]
        assert result.position_modified == 0
        assert report.has_code("insufficient_data")

    def test_empty_input(self):
        """Test that no fixes give an empty result."""
        result = SmoothingEngine().smooth([], SmoothingConfiguration())
        assert result.total_points == 0
        assert result.spikes_removed == 0

    def test_statistics_and_comparison(self):
        """Test before/after summaries."""
        raw = make_fixes(range(5), [0, 0, 5, 0, 0])
        working = clone_fixes(raw)
        config = SmoothingConfiguration(position=ChannelSettings(enabled=True, method="median", window=3))
        SmoothingEngine().smooth(working, config)

        stats = smoothing_statistics(working)
        assert stats.max_displacement == pytest.approx(5.0)
        assert stats.mean_northing_diff == pytest.approx(-1.0)

        frame = comparison_frame(raw, working)
        assert list(frame["position_shift"]) == pytest.approx([0.0, 0.0, 5.0, 0.0, 0.0])
        assert frame.loc[2, "raw_northing"] == 5.0
