"""Score segmentations against a reference and tabulate the results.

For every (segmentation, rater) pair, computes the overlap measures and the
candidate-to-reference surface distances and appends one row.  The first
error aborts the whole evaluation so a partial table is never returned.

Produces:
  - evaluation.csv   (one row per rater, plus summary rows)
  - evaluation.json  (machine-readable, NaN written as null)
  - evaluation.tex   (optional LaTeX tabular)
  - evaluation.png   (optional bar-chart figure)

Usage:
    python -m refseg.report --segmentations r1.nii.gz r2.nii.gz \
        --reference staple_reference.nii.gz --raters alice bob --out-dir results/
"""

import argparse
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import pandas as pd

from refseg.errors import InvalidInput
from refseg.overlap import OVERLAP_FIELDS, compute_overlap
from refseg.surface_distance import (
    SURFACE_FIELDS, compute_distance_field, compute_hausdorff_distance,
    compute_surface_distance,
)
from refseg.utils import check_same_grid, ensure_inputs_exist, load_volume

# Surface-distance field -> table column
SURFACE_COLUMNS = {f: f"{f}_surface_distance" for f in SURFACE_FIELDS}
SUMMARY_STATS = ("mean", "std", "min", "max")


# ---------------------------------------------------------------------------
# Table types
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class EvaluationRow:
    rater: str
    overlap: object
    surface: object
    hausdorff: float = None

    def as_record(self):
        record = {"rater": self.rater}
        record.update(self.overlap.as_dict())
        for name, value in self.surface.as_dict().items():
            record[SURFACE_COLUMNS[name]] = value
        if self.hausdorff is not None:
            record["hausdorff_distance"] = self.hausdorff
        return record


class EvaluationTable:
    """Ordered evaluation rows keyed by rater."""

    def __init__(self, rows=()):
        self.rows = list(rows)

    def __len__(self):
        return len(self.rows)

    def __iter__(self):
        return iter(self.rows)

    @property
    def raters(self):
        return [row.rater for row in self.rows]

    @property
    def columns(self):
        cols = list(OVERLAP_FIELDS) + [SURFACE_COLUMNS[f] for f in SURFACE_FIELDS]
        if any(row.hausdorff is not None for row in self.rows):
            cols.append("hausdorff_distance")
        return cols

    def as_records(self):
        return [row.as_record() for row in self.rows]

    def to_frame(self):
        """DataFrame indexed by rater, one float column per measure."""
        frame = pd.DataFrame(self.as_records(), columns=["rater"] + self.columns)
        return frame.set_index("rater").astype(np.float64)

    def column(self, name):
        """Values of one column in row order (NaN where absent)."""
        frame = self.to_frame()
        if name not in frame:
            return np.full(len(frame), math.nan)
        return frame[name].to_numpy(dtype=np.float64)

    def summary_frame(self):
        """Per-column mean / std / min / max, ignoring NaN entries.

        std is the population standard deviation (ddof=0).
        """
        frame = self.to_frame()
        stats = pd.DataFrame({
            "mean": frame.mean(),
            "std": frame.std(ddof=0),
            "min": frame.min(),
            "max": frame.max(),
        })
        return stats[list(SUMMARY_STATS)].T

    def summarize(self):
        return self.summary_frame().to_dict(orient="index")


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------
def evaluate(segmentations, reference, reference_distance_field=None,
             labels=None, label=1, hausdorff=False):
    """Evaluate every segmentation against the reference.

    Parameters
    ----------
    segmentations : sequence of Volume
        One label volume per rater.
    reference : Volume
        Reference label volume.
    reference_distance_field : Volume or None
        Unsigned distance to the reference boundary.  Computed from the
        reference when None.
    labels : list of str or None
        Rater names, one per segmentation.  Defaults to rater_0, rater_1, ...
    label : int
        Foreground label to score.
    hausdorff : bool
        Add a symmetric Hausdorff distance column.

    Returns
    -------
    EvaluationTable with one row per segmentation, in input order.
    """
    segmentations = list(segmentations)
    if not segmentations:
        raise InvalidInput("no segmentations to evaluate")
    if labels is None:
        labels = [f"rater_{i}" for i in range(len(segmentations))]
    labels = [str(name) for name in labels]
    if len(labels) != len(segmentations):
        raise InvalidInput(
            f"{len(labels)} rater labels for {len(segmentations)} segmentations")

    if reference_distance_field is None:
        reference_distance_field = compute_distance_field(reference, label)
    check_same_grid([reference, reference_distance_field] + segmentations,
                    names=["reference", "reference distance field"] + labels)

    rows = []
    for seg, name in zip(segmentations, labels):
        overlap = compute_overlap(seg, reference, label)
        surface = compute_surface_distance(seg, reference_distance_field, label)
        hd = compute_hausdorff_distance(seg, reference, label) if hausdorff else None
        rows.append(EvaluationRow(name, overlap, surface, hd))
    return EvaluationTable(rows)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------
def _json_value(value):
    if isinstance(value, float) and math.isnan(value):
        return None
    return value


def write_csv(table, path, summary=True):
    """Write one row per rater, optionally followed by summary rows."""
    frame = table.to_frame()
    if summary and len(table):
        frame = pd.concat([frame, table.summary_frame()])
    frame.to_csv(path, index_label="rater")
    print(f"Saved {path}")


def write_latex(table, path, precision=3):
    """Write a LaTeX tabular of the per-rater rows (NaN as '--')."""
    table.to_frame().to_latex(
        path, float_format=f"{{:.{precision}f}}".format, na_rep="--",
        escape=True)
    print(f"Saved {path}")


def build_report(table, reference_path=None, label=1):
    """Build the evaluation.json dict."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "reference": None if reference_path is None else str(reference_path),
        "label": label,
        "columns": table.columns,
        "rows": [{k: _json_value(v) for k, v in r.items()}
                 for r in table.as_records()],
        "summary": {stat: {k: _json_value(v) for k, v in values.items()}
                    for stat, values in table.summarize().items()},
    }


def write_json(report, path):
    with open(path, "w") as f:
        json.dump(report, f, indent=2)
    print(f"Saved {path}")


def print_console_summary(table):
    """Print the evaluation table in human-readable form."""
    columns = table.columns
    short = [c.replace("_surface_distance", "_sd").replace("volume_", "vol_")
             for c in columns]
    width = 16 + 12 * len(columns)

    print()
    print("=" * width)
    print(f"  Evaluation ({len(table)} raters)")
    print("=" * width)
    print(f"  {'rater':<14s}" + "".join(f"{s[:11]:>12s}" for s in short))
    print(f"  {'─' * (width - 2)}")
    for record in table.as_records():
        print(f"  {record['rater'][:14]:<14s}"
              + "".join(f"{record.get(c, math.nan):12.4f}" for c in columns))
    if len(table) > 1:
        print(f"  {'─' * (width - 2)}")
        for stat, values in table.summarize().items():
            print(f"  {stat:<14s}" + "".join(f"{values[c]:12.4f}" for c in columns))
    print("=" * width)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    """Parse CLI arguments for report."""
    parser = argparse.ArgumentParser(
        description="Evaluate rater segmentations against a reference."
    )
    parser.add_argument("--segmentations", nargs="+", required=True,
                        help="Segmentations to score (NIfTI)")
    parser.add_argument("--reference", required=True,
                        help="Reference segmentation (NIfTI)")
    parser.add_argument("--raters", nargs="+", default=None,
                        help="Rater names (default: segmentation file names)")
    parser.add_argument("--out-dir", required=True, type=Path,
                        help="Output directory")
    parser.add_argument("--label", type=int, default=1,
                        help="Foreground label (default: 1)")
    parser.add_argument("--hausdorff", action="store_true",
                        help="Add a symmetric Hausdorff distance column")
    parser.add_argument("--latex", action="store_true",
                        help="Also write evaluation.tex")
    parser.add_argument("--no-images", action="store_true",
                        help="Skip figure generation")

    args = parser.parse_args(argv)
    if args.raters is None:
        args.raters = [Path(p).name.split(".")[0] for p in args.segmentations]
    if len(args.raters) != len(args.segmentations):
        parser.error("--raters must name every segmentation")
    return args


def main(argv=None):
    """Orchestrate evaluation."""
    args = parse_args(argv)
    ensure_inputs_exist(args.segmentations + [args.reference])

    print(f"Reference: {args.reference}")
    print(f"Raters: {', '.join(args.raters)}")
    print(f"Label: {args.label}")
    print()

    print(f"Loading {args.reference}")
    reference = load_volume(args.reference)
    segmentations = []
    for path in args.segmentations:
        print(f"Loading {path}")
        segmentations.append(load_volume(path))

    print("Computing reference distance field...")
    distance_field = compute_distance_field(reference, args.label)
    dmax = float(np.max(distance_field.data))
    print(f"Distance range: [0.0, {dmax:.1f}] mm")

    table = evaluate(segmentations, reference, distance_field, args.raters,
                     label=args.label, hausdorff=args.hausdorff)
    print_console_summary(table)

    args.out_dir.mkdir(parents=True, exist_ok=True)
    print()
    write_csv(table, args.out_dir / "evaluation.csv")
    write_json(build_report(table, args.reference, args.label),
               args.out_dir / "evaluation.json")
    if args.latex:
        write_latex(table, args.out_dir / "evaluation.tex")

    if not args.no_images:
        from refseg.figures import plot_evaluation
        try:
            plot_evaluation(table, args.out_dir / "evaluation.png")
        except Exception as e:
            print(f"WARNING: evaluation figure failed: {e}")

    return table


if __name__ == "__main__":
    main()
