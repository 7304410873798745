"""Wall time and RSS tracking for pipeline steps.

Usage:
    from refseg.profiling import step

    timings = {}
    with step("fuse", timings):
        result = staple(observers)
    # timings["fuse"] == StepRecord(seconds=0.42, rss_mb=310.2, ...)

Output format (nested steps are indented):
    [fuse] 0.4s | RSS 310 MB (+42 MB) | peak 350 MB
"""

import resource
import threading
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass

_state = threading.local()


@dataclass(frozen=True)
class StepRecord:
    seconds: float
    rss_mb: float
    rss_delta_mb: float
    peak_mb: float

    def as_dict(self):
        return asdict(self)


def _rss_mb():
    """Current RSS in MB; falls back to the peak where /proc is missing."""
    try:
        with open("/proc/self/status") as f:
            for line in f:
                if line.startswith("VmRSS:"):
                    return int(line.split()[1]) / 1024
    except (OSError, ValueError):
        pass
    return _peak_mb()


def _peak_mb():
    # Linux reports ru_maxrss in KB
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024


def format_mb(mb, signed=False):
    """Human-readable size, e.g. '310 MB', '+1.20 GB'."""
    sign = "+" if signed and mb >= 0 else ""
    if abs(mb) >= 1024:
        return f"{sign}{mb / 1024:.2f} GB"
    return f"{sign}{mb:.0f} MB"


def format_record(name, record, depth=0):
    return (f"{'  ' * depth}[{name}] {record.seconds:.1f}s"
            f" | RSS {format_mb(record.rss_mb)} ({format_mb(record.rss_delta_mb, True)})"
            f" | peak {format_mb(record.peak_mb)}")


@contextmanager
def step(name, timings=None):
    """Time a named step and print a summary line on exit.

    If timings is a dict, a StepRecord is stored under name, also when the
    step raises.
    """
    depth = getattr(_state, "depth", 0)
    _state.depth = depth + 1
    rss_start = _rss_mb()
    t_start = time.monotonic()
    try:
        yield
    finally:
        rss_end = _rss_mb()
        record = StepRecord(
            seconds=round(time.monotonic() - t_start, 3),
            rss_mb=round(rss_end, 1),
            rss_delta_mb=round(rss_end - rss_start, 1),
            peak_mb=round(_peak_mb(), 1),
        )
        _state.depth = depth
        if timings is not None:
            timings[name] = record
        print(format_record(name, record, depth))


def print_timing_summary(timings):
    """Print one line per recorded step, slowest first."""
    if not timings:
        return
    width = max(len(name) for name in timings)
    print(f"\n  {'step':<{width}s}  {'time':>8s}  {'RSS':>9s}  {'delta':>9s}")
    for name, rec in sorted(timings.items(), key=lambda kv: -kv[1].seconds):
        print(f"  {name:<{width}s}  {rec.seconds:7.1f}s  {format_mb(rec.rss_mb):>9s}"
              f"  {format_mb(rec.rss_delta_mb, True):>9s}")
