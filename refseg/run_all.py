"""Build a consensus reference and evaluate every rater against it.

Thin orchestrator that calls each step's main(argv) in order:
  1. Label Fusion   (label_fusion)
  2. Evaluation     (report)

Usage:
    python -m refseg.run_all --observers r1.nii.gz r2.nii.gz r3.nii.gz \
        --out-dir results/ --profile default
"""

import argparse
import importlib
import json
import sys
from pathlib import Path

from refseg.profiling import print_timing_summary, step
from refseg.utils import DEFAULT_CUTOFF, add_staple_args, resolve_staple_args

STEPS = [
    ("1. Label Fusion", "refseg.label_fusion"),
    ("2. Evaluation",   "refseg.report"),
]

REFERENCE_FILES = {
    "staple": "staple_reference.nii.gz",
    "majority": "majority_vote.nii.gz",
}


def parse_args(argv=None):
    """Parse CLI arguments for run_all."""
    parser = argparse.ArgumentParser(
        description="Fuse rater segmentations, then evaluate each rater."
    )
    parser.add_argument("--observers", nargs="+", required=True,
                        help="Rater label volumes (NIfTI), one per rater")
    parser.add_argument("--raters", nargs="+", default=None,
                        help="Rater names (default: file names)")
    parser.add_argument("--out-dir", required=True, type=Path,
                        help="Output directory")
    parser.add_argument("--reference-method", choices=list(REFERENCE_FILES),
                        default="staple",
                        help="Which fused volume is the reference (default: staple)")
    parser.add_argument("--label", type=int, default=1,
                        help="Foreground label (default: 1)")
    parser.add_argument("--cutoff", type=float, default=DEFAULT_CUTOFF,
                        help=f"STAPLE probability cutoff (default: {DEFAULT_CUTOFF})")
    parser.add_argument("--hausdorff", action="store_true",
                        help="Add a symmetric Hausdorff distance column")
    parser.add_argument("--no-images", action="store_true",
                        help="Skip figure generation")
    add_staple_args(parser)

    args = parser.parse_args(argv)
    resolve_staple_args(args, parser)
    if len(args.observers) < 2:
        parser.error("at least 2 --observers are required")
    if args.raters is not None and len(args.raters) != len(args.observers):
        parser.error("--raters must name every observer")
    return args


def _staple_argv(args):
    if args.profile.startswith("custom_"):
        return ["--max-iterations", str(args.max_iterations),
                "--epsilon", str(args.epsilon)]
    return ["--profile", args.profile]


def build_step_argv(step_module, args):
    """Build argv list for a step's main()."""
    out_dir = str(args.out_dir)
    if step_module == "refseg.label_fusion":
        method = "both" if args.reference_method == "majority" else "staple"
        return (["--observers", *args.observers, "--out-dir", out_dir,
                 "--method", method, "--label", str(args.label),
                 "--cutoff", str(args.cutoff)] + _staple_argv(args))

    reference = args.out_dir / REFERENCE_FILES[args.reference_method]
    argv = ["--segmentations", *args.observers, "--reference", str(reference),
            "--out-dir", out_dir, "--label", str(args.label)]
    if args.raters is not None:
        argv += ["--raters", *args.raters]
    if args.hausdorff:
        argv.append("--hausdorff")
    if args.no_images:
        argv.append("--no-images")
    return argv


def main(argv=None):
    """Run all steps."""
    args = parse_args(argv)

    print("=" * 60)
    print(f"  Reference Pipeline: {len(args.observers)} raters")
    print(f"  Reference: {args.reference_method}  cutoff={args.cutoff}")
    print(f"  STAPLE: {args.profile}  (max_iterations={args.max_iterations}, "
          f"epsilon={args.epsilon:g})")
    print("=" * 60)

    timings = {}
    with step("Pipeline total", timings):
        for step_name, module_name in STEPS:
            print(f"\n{'─' * 60}")
            print(f"  {step_name}")
            print(f"{'─' * 60}\n")

            mod = importlib.import_module(module_name)
            step_argv = build_step_argv(module_name, args)

            with step(step_name, timings):
                try:
                    mod.main(step_argv)
                except SystemExit as e:
                    if e.code is not None and e.code != 0:
                        print(f"\nFATAL: {step_name} exited with code {e.code}")
                        sys.exit(e.code)
                except Exception as e:
                    print(f"\nFATAL: {step_name} raised {type(e).__name__}: {e}")
                    sys.exit(1)

    print_timing_summary(timings)
    path = args.out_dir / "pipeline_timings.json"
    with open(path, "w") as f:
        json.dump({name: rec.as_dict() for name, rec in timings.items()}, f, indent=2)
    print(f"Saved {path}")


if __name__ == "__main__":
    main()
