"""Integration tests for the complete conditioning pipeline."""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from surveyqc.common.models import NavigationFix, RouteGeometry, TideCurve
from surveyqc.errors import ConfigurationError
from surveyqc.preprocessing.coordinate_checker import FixedDecision
from surveyqc.preprocessing.pipeline import (
    PipelineConfig,
    StageFlags,
    SurveyPipeline,
    main,
    route_from_frame,
    write_outputs,
)
from surveyqc.preprocessing.smoothing_engine import SmoothingMethod

T0 = datetime(2024, 5, 1, 12, 0, 0)
E0 = 500000.0
N0 = 4000000.0
DEFAULTS_YAML = Path(__file__).resolve().parents[2] / "configs" / "pipeline_defaults.yaml"


def make_route(offset=0.0):
    """Straight eastward route with a vertex every 250 m, KP equal to chainage."""
    xs = np.linspace(E0 + offset, E0 + offset + 2000.0, 9)
    return RouteGeometry.from_vertices(np.column_stack([xs, np.full(9, N0)]))


def make_fixes(count=50):
    """Fixes every 20 m along the route, 10 m to its left, depth 30 m."""
    return [
        NavigationFix(i + 1, T0 + timedelta(seconds=2 * i), E0 + 20.0 * i, N0 + 10.0, depth=30.0)
        for i in range(count)
    ]


def make_tide():
    """Constant 1 m tide sampled every minute around the survey."""
    times = [T0 + timedelta(minutes=m) for m in range(-1, 5)]
    return TideCurve(times, [1.0] * len(times))


def full_config(**overrides):
    data = {
        "stages": {"spline": True, "interval": True},
        "interval": {"interval": 10.0},
    }
    data.update(overrides)
    return PipelineConfig.from_dict(data)


class TestSurveyPipeline:
    """Test suite for SurveyPipeline.run."""

    def test_full_run(self):
        """Test every stage on consistent synthetic data."""
        fixes = make_fixes()
        result = SurveyPipeline(full_config()).run(fixes, make_route(), make_tide())

        assert result.finished
        assert result.completed_stages == [
            "coordinate_check", "smoothing", "tide", "seabed_z",
            "projection", "spline", "interval", "spline_projection",
        ]
        assert result.coordinate_check.passed

        working = result.working
        assert [f.kp for f in working] == pytest.approx([20.0 * i for i in range(50)], abs=1e-6)
        assert [f.dcc for f in working] == pytest.approx([10.0] * 50, abs=1e-6)
        assert all(f.corrected_depth == pytest.approx(29.0) for f in working)
        assert all(f.calculated_z == pytest.approx(29.0) for f in working)
        assert result.tide.corrected == 50
        assert result.z_count == 50

        assert result.spline_points.shape == (500, 3)
        assert len(result.spline_projection.kp) == 500
        assert result.spline_projection.dcc == pytest.approx([10.0] * 500, abs=1e-6)

        distances = [p.distance for p in result.interval_points]
        assert distances[0] == 0.0
        assert np.allclose(np.diff(distances), 10.0)
        assert len(distances) >= 98

    def test_input_and_original_untouched(self):
        """Test that the raw input is never modified."""
        fixes = make_fixes(10)
        result = SurveyPipeline().run(fixes, make_route(), make_tide())

        assert all(f.kp is None and f.smoothed_easting is None for f in fixes)
        assert all(f.kp is None and f.corrected_depth is None for f in result.original)
        assert result.original[0] is not fixes[0]
        assert result.working[0].kp is not None

    def test_declined_mismatch_aborts(self):
        """Test that a declined decision stops the run and keeps the input."""
        decision = FixedDecision(False)
        result = SurveyPipeline(decision=decision).run(make_fixes(), make_route(offset=20000.0), make_tide())

        assert result.aborted
        assert not result.finished
        assert result.completed_stages == []
        assert len(decision.prompts) == 1
        assert "route_distance" in [i.code for i in result.report.issues]
        assert result.report.by_code("user_abort")[0].severity == "hard"
        assert all(f.kp is None for f in result.working)

    def test_confirmed_mismatch_continues(self):
        """Test that an accepted decision lets the run finish."""
        decision = FixedDecision(True)
        result = SurveyPipeline(decision=decision).run(make_fixes(), make_route(offset=20000.0), make_tide())

        assert result.finished
        assert len(decision.prompts) == 1
        assert "projection" in result.completed_stages

    def test_cancel_before_start(self):
        """Test that a set cancel event stops the run before any stage."""
        event = threading.Event()
        event.set()

        result = SurveyPipeline().run(make_fixes(), make_route(), make_tide(), cancel_event=event)

        assert result.cancelled
        assert result.completed_stages == []
        assert result.report.has_code("cancelled")

    def test_cancel_between_stages_keeps_outputs(self):
        """Test that stages completed before cancellation keep their output."""
        event = threading.Event()

        class CancellingPipeline(SurveyPipeline):
            def step_2_smooth(self, fixes, report):
                out = super().step_2_smooth(fixes, report)
                event.set()
                return out

        result = CancellingPipeline().run(make_fixes(), make_route(), make_tide(), cancel_event=event)

        assert result.cancelled
        assert result.completed_stages == ["coordinate_check", "smoothing"]
        assert result.smoothing is not None
        assert result.working[0].smoothed_easting is not None
        assert result.working[0].corrected_depth is None
        assert result.tide is None

    def test_missing_tide_and_route(self):
        """Test that stages without their inputs are skipped with a finding."""
        result = SurveyPipeline().run(make_fixes())

        assert result.finished
        assert result.completed_stages == ["smoothing", "seabed_z"]
        skipped = result.report.by_code("stage_skipped")
        assert sorted(i.stage for i in skipped) == ["projection", "tide"]
        assert result.working[0].calculated_z == pytest.approx(30.0)

    def test_interval_from_route(self):
        """Test resampling the route instead of the spline."""
        config = PipelineConfig.from_dict({
            "stages": {"interval": True},
            "interval": {"interval": 500.0, "source": "route"},
        })
        result = SurveyPipeline(config).run(make_fixes(), make_route())

        assert [p.distance for p in result.interval_points] == pytest.approx([0, 500, 1000, 1500, 2000])
        assert result.spline_points is None

    def test_interval_from_route_needs_route(self):
        """Test that a route-sourced interval stage without a route fails before any stage."""
        config = PipelineConfig.from_dict({"stages": {"interval": True}, "interval": {"source": "route"}})
        with pytest.raises(ConfigurationError, match="needs a route"):
            SurveyPipeline(config).run(make_fixes())

    def test_original_independent_of_working(self):
        """Test that the archived input and the working fixes never share records."""
        result = SurveyPipeline().run(make_fixes(5), make_route())

        result.working[0].easting = 0.0
        assert result.original[0].easting == E0
        assert all(o is not w for o, w in zip(result.original, result.working))

    def test_threaded_projection_matches_inline(self):
        """Test that projection workers do not change the results."""
        fixes = make_fixes()
        inline = SurveyPipeline(PipelineConfig.from_dict({
            "projection": {"chunk_size": 7},
        })).run(fixes, make_route())
        threaded = SurveyPipeline(PipelineConfig.from_dict({
            "workers": 3, "projection": {"chunk_size": 7},
        })).run(fixes, make_route())

        assert [f.kp for f in threaded.working] == [f.kp for f in inline.working]
        assert [f.dcc for f in threaded.working] == [f.dcc for f in inline.working]

    def test_submit(self):
        """Test running on an executor."""
        pipeline = SurveyPipeline()
        with ThreadPoolExecutor(max_workers=2) as executor:
            futures = [pipeline.submit(executor, make_fixes(), make_route()) for _ in range(2)]
            results = [f.result() for f in futures]

        assert all(r.finished for r in results)
        assert results[0].working[5].kp == results[1].working[5].kp

    def test_malformed_route_raises(self):
        """Test that an invalid route is a configuration error."""
        route = make_route()
        route.segments[1] = replace(route.segments[1], start_easting=route.segments[1].start_easting + 5.0)
        with pytest.raises(ConfigurationError):
            SurveyPipeline().run(make_fixes(), route)

    def test_summary_and_frames(self):
        """Test the run summary and tabular exports."""
        result = SurveyPipeline(full_config()).run(make_fixes(), make_route(), make_tide())
        summary = result.summary()

        assert summary["input_fixes"] == 50
        assert summary["tide_corrected"] == 50
        assert summary["spline_points"] == 500
        assert summary["max_kp"] == pytest.approx(980.0)
        assert list(result.spline_frame().columns) == ["x", "y", "z", "kp", "dcc"]
        assert len(result.fixes_frame()) == 50


class TestPipelineConfig:
    """Test suite for PipelineConfig."""

    def test_from_dict(self):
        """Test nested sections and enum parsing."""
        config = PipelineConfig.from_dict({
            "stages": {"spline": True},
            "smoothing": {"position": {"enabled": True, "method": "kalman", "window": 4}},
            "workers": 2,
        })

        assert config.stages == StageFlags(spline=True)
        assert config.smoothing.position.method is SmoothingMethod.KALMAN
        assert config.smoothing.position.window == 5
        assert config.workers == 2

    def test_round_trip(self):
        """Test that to_dict output rebuilds the same configuration."""
        config = full_config(projection={"kp_unit": "nmi", "mode": "kp_only"})
        assert PipelineConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("data", [
        {"smoothingg": {}},
        {"tide": {"compute_z": True}},
        {"tide": [1, 2]},
        {"workers": 0},
        {"interval": {"interval": -1}},
        {"smoothing": {"position": {"window": "abc"}}},
        {"projection": {"dcc_threshold": "far"}},
        {"workers": "many"},
    ])
    def test_invalid(self, data):
        """Test unknown sections, unknown keys and invalid values."""
        with pytest.raises(ConfigurationError):
            PipelineConfig.from_dict(data)

    def test_interval_from_spline_needs_spline_stage(self):
        """Test that resampling a spline that is never fitted is rejected up front."""
        with pytest.raises(ConfigurationError, match="spline stage"):
            PipelineConfig.from_dict({"stages": {"interval": True}})

        config = PipelineConfig.from_dict({"stages": {"interval": True}, "interval": {"source": "smoothed"}})
        assert config.interval.source.value == "smoothed"

    def test_defaults_file_matches_defaults(self):
        """Test that the shipped YAML documents the built-in defaults."""
        assert PipelineConfig.from_yaml(DEFAULTS_YAML) == PipelineConfig()

    def test_from_yaml(self, tmp_path):
        """Test partial YAML files."""
        path = tmp_path / "config.yaml"
        path.write_text("spline:\n  algorithm: b_spline\n  multiplier: 99\n")

        config = PipelineConfig.from_yaml(path)

        assert config.spline.algorithm.value == "b_spline"
        assert config.spline.multiplier == 50

    def test_missing_yaml_gives_defaults(self, tmp_path):
        """Test that an absent file means default settings."""
        assert PipelineConfig.from_yaml(tmp_path / "absent.yaml") == PipelineConfig()


class TestInputOutput:
    """Test suite for table loading, output files and the CLI."""

    def write_inputs(self, directory):
        fixes = pd.DataFrame({
            "timestamp": [T0 + timedelta(seconds=2 * i) for i in range(30)],
            "easting": [E0 + 20.0 * i for i in range(30)],
            "northing": [N0 + 10.0] * 30,
            "depth": [30.0] * 30,
        })
        route = pd.DataFrame({"easting": np.linspace(E0, E0 + 2000.0, 9), "northing": [N0] * 9})
        tide = pd.DataFrame({
            "timestamp": [T0 + timedelta(minutes=m) for m in range(-1, 3)],
            "height": [1.0, 1.0, 1.0, 1.0],
        })
        paths = {}
        for name, frame in (("fixes", fixes), ("route", route), ("tide", tide)):
            paths[name] = directory / f"{name}.csv"
            frame.to_csv(paths[name], index=False)
        return paths

    def test_route_from_frame_chainage(self):
        """Test KP from chainage times the scale."""
        route = route_from_frame(pd.DataFrame({"easting": [0.0, 1000.0], "northing": [0.0, 0.0]}))
        assert route.end_kp == pytest.approx(1.0)

    def test_route_from_frame_with_kp(self):
        """Test that given vertex KPs are used."""
        frame = pd.DataFrame({"easting": [0.0, 100.0, 200.0], "northing": [0.0] * 3, "kp": [5.0, 5.1, 5.2]})
        route = route_from_frame(frame)

        assert route.start_kp == pytest.approx(5.0)
        assert route.segments[1].start_kp == pytest.approx(5.1)

    def test_route_from_frame_missing_columns(self):
        """Test the required columns."""
        with pytest.raises(ConfigurationError):
            route_from_frame(pd.DataFrame({"x": [0.0, 1.0], "y": [0.0, 0.0]}))

    def test_write_outputs(self, tmp_path):
        """Test the files written for a full run."""
        result = SurveyPipeline(full_config()).run(make_fixes(), make_route(), make_tide())
        written = write_outputs(result, tmp_path / "out")

        names = sorted(p.name for p in written)
        assert names == ["fixes.csv", "interval_points.csv", "quality_report.json", "spline.csv"]
        assert len(pd.read_csv(tmp_path / "out" / "spline.csv")) == 500

    def test_main(self, tmp_path):
        """Test the command-line entry point end to end."""
        paths = self.write_inputs(tmp_path)
        config = tmp_path / "config.yaml"
        config.write_text("stages:\n  spline: true\n  interval: true\ninterval:\n  interval: 50.0\n")
        output = tmp_path / "out"

        code = main([
            "--fixes", str(paths["fixes"]),
            "--route", str(paths["route"]),
            "--tide", str(paths["tide"]),
            "--config", str(config),
            "--output", str(output),
            "--kp-scale", "1.0",
            "--assume-yes",
        ])

        assert code == 0
        frame = pd.read_csv(output / "fixes.csv")
        assert frame["kp"].iloc[-1] == pytest.approx(580.0, abs=1e-6)
        assert frame["corrected_depth"].iloc[0] == pytest.approx(29.0)
        assert (output / "interval_points.csv").exists()
        assert (output / "quality_report.json").exists()

    def test_main_invalid_input(self, tmp_path):
        """Test the exit code for an unreadable navigation table."""
        bad = tmp_path / "bad.csv"
        pd.DataFrame({"easting": [1.0], "northing": [2.0]}).to_csv(bad, index=False)

        assert main(["--fixes", str(bad), "--output", str(tmp_path / "out")]) == 2

    def test_main_missing_file(self, tmp_path):
        """Test the exit code for a navigation file that does not exist."""
        missing = tmp_path / "missing.csv"
        assert main(["--fixes", str(missing), "--output", str(tmp_path / "out")]) == 2

    def test_main_unparseable_timestamp(self, tmp_path):
        """Test the exit code for timestamps that cannot be read."""
        bad = tmp_path / "bad_time.csv"
        pd.DataFrame({"timestamp": ["not a time"], "easting": [1.0], "northing": [2.0]}).to_csv(bad, index=False)

        assert main(["--fixes", str(bad), "--output", str(tmp_path / "out")]) == 2

    def test_main_invalid_config_value(self, tmp_path):
        """Test the exit code for a configuration value of the wrong type."""
        paths = self.write_inputs(tmp_path)
        config = tmp_path / "config.yaml"
        config.write_text("smoothing:\n  position:\n    window: abc\n")

        code = main(["--fixes", str(paths["fixes"]), "--config", str(config),
                     "--output", str(tmp_path / "out")])

        assert code == 2
        assert not (tmp_path / "out").exists()

    def test_main_inconsistent_config(self, tmp_path):
        """Test the exit code for an interval stage without its spline."""
        paths = self.write_inputs(tmp_path)
        config = tmp_path / "config.yaml"
        config.write_text("stages:\n  interval: true\n")

        assert main(["--fixes", str(paths["fixes"]), "--config", str(config),
                     "--output", str(tmp_path / "out")]) == 2
