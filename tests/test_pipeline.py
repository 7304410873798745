"""Tests for the command-line steps — label_fusion, report, run_all."""

import csv
import json

import numpy as np
import pytest

from refseg import label_fusion, report, run_all
from refseg.utils import load_volume, save_volume


def _write_raters(tmp_path, make_cube, starts=((3, 3, 3), (3, 3, 3), (4, 3, 3))):
    paths = []
    for i, start in enumerate(starts):
        path = tmp_path / f"rater{i}.nii.gz"
        save_volume(make_cube(start=start, spacing=(0.8, 0.8, 1.5)), path)
        paths.append(str(path))
    return paths


# ---------------------------------------------------------------------------
# label_fusion CLI
# ---------------------------------------------------------------------------
class TestLabelFusionCli:
    def test_parse_defaults(self):
        args = label_fusion.parse_args(["--observers", "a", "b", "--out-dir", "o"])
        assert args.method == "both"
        assert args.cutoff == 0.95
        assert args.profile == "default"
        assert args.max_iterations == 200

    def test_staple_needs_two(self):
        with pytest.raises(SystemExit):
            label_fusion.parse_args(["--observers", "a", "--out-dir", "o"])

    def test_majority_single_observer_ok(self):
        args = label_fusion.parse_args(
            ["--observers", "a", "--out-dir", "o", "--method", "majority"])
        assert args.observers == ["a"]

    def test_main_writes_outputs(self, tmp_path, make_cube):
        paths = _write_raters(tmp_path, make_cube)
        out = tmp_path / "fused"
        label_fusion.main(["--observers", *paths, "--out-dir", str(out),
                           "--profile", "fast"])

        for name in ("majority_vote.nii.gz", "staple_probability.nii.gz",
                     "staple_reference.nii.gz", "fusion_meta.json"):
            assert (out / name).exists()

        mv = load_volume(out / "majority_vote.nii.gz")
        np.testing.assert_array_equal(mv.data, make_cube().data)
        assert mv.grid.spacing == pytest.approx((0.8, 0.8, 1.5))

        meta = json.loads((out / "fusion_meta.json").read_text())
        assert meta["majority_vote"]["tie_voxels"] == 0
        assert meta["majority_vote"]["tie_label"] == 2
        assert meta["staple"]["converged"] is True
        assert set(meta["staple"]["sensitivity"]) == {
            "rater0.nii.gz", "rater1.nii.gz", "rater2.nii.gz"}

        ref = load_volume(out / "staple_reference.nii.gz")
        assert ref.data[4, 4, 4] == 1
        assert ref.data[0, 0, 0] == 0

    def test_main_reports_ties(self, tmp_path, make_cube, capsys):
        paths = _write_raters(tmp_path, make_cube, starts=((3, 3, 3), (6, 6, 6)))
        out = tmp_path / "fused"
        label_fusion.main(["--observers", *paths, "--out-dir", str(out),
                           "--method", "majority", "--tie-label", "9"])
        assert "WARNING" in capsys.readouterr().out
        meta = json.loads((out / "fusion_meta.json").read_text())
        assert meta["majority_vote"]["tie_voxels"] == 54
        assert "staple" not in meta

    def test_missing_input(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            label_fusion.main(["--observers", str(tmp_path / "x.nii.gz"),
                               str(tmp_path / "y.nii.gz"),
                               "--out-dir", str(tmp_path)])
        assert exc.value.code == 1


# ---------------------------------------------------------------------------
# report CLI
# ---------------------------------------------------------------------------
class TestReportCli:
    def test_default_rater_names(self):
        args = report.parse_args(["--segmentations", "dir/alice.nii.gz", "bob.nii",
                                  "--reference", "r", "--out-dir", "o"])
        assert args.raters == ["alice", "bob"]

    def test_rater_count_mismatch(self):
        with pytest.raises(SystemExit):
            report.parse_args(["--segmentations", "a", "b", "--raters", "x",
                               "--reference", "r", "--out-dir", "o"])

    def test_main(self, tmp_path, make_cube):
        paths = _write_raters(tmp_path, make_cube)
        out = tmp_path / "eval"
        table = report.main(["--segmentations", *paths, "--reference", paths[0],
                             "--raters", "a", "b", "c", "--out-dir", str(out),
                             "--latex", "--hausdorff"])
        assert table.raters == ["a", "b", "c"]
        assert table.column("dice")[0] == 1.0
        for name in ("evaluation.csv", "evaluation.json", "evaluation.tex",
                     "evaluation.png"):
            assert (out / name).exists()
        with open(out / "evaluation.csv") as f:
            rows = list(csv.DictReader(f))
        assert "hausdorff_distance" in rows[0]
        # Shifted rater is one 0.8 mm voxel away along axis 0
        assert float(rows[2]["hausdorff_distance"]) == pytest.approx(0.8)

    def test_main_no_images(self, tmp_path, make_cube):
        paths = _write_raters(tmp_path, make_cube)
        out = tmp_path / "eval"
        report.main(["--segmentations", *paths, "--reference", paths[0],
                     "--out-dir", str(out), "--no-images"])
        assert not (out / "evaluation.png").exists()
        assert not (out / "evaluation.tex").exists()


# ---------------------------------------------------------------------------
# run_all
# ---------------------------------------------------------------------------
class TestRunAll:
    def test_build_step_argv_profile(self, tmp_path):
        args = run_all.parse_args(["--observers", "a", "b", "--out-dir",
                                   str(tmp_path), "--profile", "fast"])
        argv = run_all.build_step_argv("refseg.label_fusion", args)
        assert argv[-2:] == ["--profile", "fast"]
        assert "staple" in argv

    def test_build_step_argv_custom(self, tmp_path):
        args = run_all.parse_args(["--observers", "a", "b", "--out-dir",
                                   str(tmp_path), "--max-iterations", "7",
                                   "--epsilon", "0.01"])
        argv = run_all.build_step_argv("refseg.label_fusion", args)
        assert argv[-4:] == ["--max-iterations", "7", "--epsilon", "0.01"]

    def test_report_argv_uses_reference(self, tmp_path):
        args = run_all.parse_args(["--observers", "a", "b", "--out-dir",
                                   str(tmp_path), "--reference-method", "majority",
                                   "--no-images"])
        argv = run_all.build_step_argv("refseg.report", args)
        assert str(tmp_path / "majority_vote.nii.gz") in argv
        assert "--no-images" in argv

    def test_needs_two_observers(self, tmp_path):
        with pytest.raises(SystemExit):
            run_all.parse_args(["--observers", "a", "--out-dir", str(tmp_path)])

    def test_main(self, tmp_path, make_cube):
        paths = _write_raters(tmp_path, make_cube)
        out = tmp_path / "run"
        run_all.main(["--observers", *paths, "--out-dir", str(out),
                      "--raters", "a", "b", "c", "--no-images"])
        assert (out / "staple_reference.nii.gz").exists()
        report_json = json.loads((out / "evaluation.json").read_text())
        assert [r["rater"] for r in report_json["rows"]] == ["a", "b", "c"]
        assert report_json["rows"][0]["dice"] == 1.0
        timings = json.loads((out / "pipeline_timings.json").read_text())
        assert set(timings) == {"Pipeline total", "1. Label Fusion", "2. Evaluation"}
        for record in timings.values():
            assert set(record) == {"seconds", "rss_mb", "rss_delta_mb", "peak_mb"}
            assert record["seconds"] >= 0.0

    def test_main_missing_input_exits(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            run_all.main(["--observers", str(tmp_path / "a.nii.gz"),
                          str(tmp_path / "b.nii.gz"), "--out-dir", str(tmp_path)])
        assert exc.value.code == 1
