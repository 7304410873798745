"""Tests for refseg/profiling.py — step timing context manager."""

import pytest

from refseg.profiling import StepRecord, format_mb, print_timing_summary, step


class TestStep:
    def test_records_elapsed_and_memory(self, capsys):
        timings = {}
        with step("work", timings):
            pass
        rec = timings["work"]
        assert isinstance(rec, StepRecord)
        assert rec.seconds >= 0.0
        assert rec.rss_mb > 0
        assert rec.peak_mb > 0
        assert "[work]" in capsys.readouterr().out

    def test_nested_indent(self, capsys):
        with step("outer"):
            with step("inner"):
                pass
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].startswith("  [inner]")
        assert lines[1].startswith("[outer]")

    def test_records_on_exception(self):
        timings = {}
        with pytest.raises(RuntimeError):
            with step("boom", timings):
                raise RuntimeError("x")
        assert "boom" in timings

    def test_as_dict_keys(self):
        rec = StepRecord(1.5, 300.0, 12.0, 350.0)
        assert rec.as_dict() == {"seconds": 1.5, "rss_mb": 300.0,
                                 "rss_delta_mb": 12.0, "peak_mb": 350.0}


class TestTimingSummary:
    def test_slowest_first(self, capsys):
        timings = {"fast": StepRecord(0.1, 100.0, 1.0, 120.0),
                   "slow": StepRecord(2.5, 200.0, 90.0, 220.0)}
        print_timing_summary(timings)
        lines = capsys.readouterr().out.strip().splitlines()
        assert lines[1].strip().startswith("slow")
        assert lines[2].strip().startswith("fast")
        assert "+90 MB" in lines[1]

    def test_empty_prints_nothing(self, capsys):
        print_timing_summary({})
        assert capsys.readouterr().out == ""


class TestFormatMb:
    def test_megabytes(self):
        assert format_mb(310.4) == "310 MB"

    def test_gigabytes(self):
        assert format_mb(2048) == "2.00 GB"

    def test_signed(self):
        assert format_mb(12, signed=True) == "+12 MB"
        assert format_mb(-12, signed=True) == "-12 MB"
