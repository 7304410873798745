"""Fuse several raters' label volumes into one consensus reference.

Two fusion rules:
  - Majority vote: per-voxel plurality.  Voxels where two or more labels
    share the highest count are set to a dedicated tie label instead of
    being resolved, so the caller can find and post-process them.
  - STAPLE: expectation-maximization estimate of the latent true binary
    segmentation and of each rater's sensitivity/specificity.  Produces a
    per-voxel foreground probability; a binary reference is obtained by
    thresholding it at a task-dependent cutoff.

Usage:
    python -m refseg.label_fusion --observers r1.nii.gz r2.nii.gz r3.nii.gz \
        --out-dir results/ --method both --cutoff 0.95
"""

import argparse
import json
import warnings
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from scipy.special import expit

from refseg.errors import GridMismatch, InvalidInput, NonConvergence
from refseg.utils import (
    DEFAULT_CUTOFF, STAPLE_CLAMP, Volume,
    add_staple_args, check_same_grid, ensure_inputs_exist, load_volume,
    resolve_staple_args, save_volume,
)

# Initial sensitivity and specificity for every rater
_INITIAL_PERFORMANCE = 0.99999


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class StapleResult:
    probability: Volume
    sensitivity: tuple
    specificity: tuple
    prior: object
    iterations: int
    converged: bool

    def threshold(self, cutoff=DEFAULT_CUTOFF, label=1):
        return threshold(self.probability, cutoff, label)


# ---------------------------------------------------------------------------
# Input checks
# ---------------------------------------------------------------------------
def _validate_observers(observers, minimum, method):
    observers = list(observers)
    if not observers:
        raise InvalidInput(f"{method}: observer set is empty")
    if len(observers) < minimum:
        raise InvalidInput(
            f"{method}: needs at least {minimum} observers, got {len(observers)}")
    check_same_grid(observers,
                    names=[f"observer {i}" for i in range(len(observers))])
    return observers


def _label_dtype(*values):
    """Smallest dtype holding every value, never narrower than uint8."""
    return np.result_type(np.uint8, *[np.min_scalar_type(v) for v in values])


# ---------------------------------------------------------------------------
# Majority vote
# ---------------------------------------------------------------------------
def majority_vote(observers, tie_label=None):
    """Per-voxel plurality vote across observers.

    Parameters
    ----------
    observers : sequence of Volume
        Label volumes on one shared grid.
    tie_label : int or None
        Value written where the top count is shared by two or more labels.
        Defaults to (max observed label + 1).

    Returns
    -------
    Volume with the fused labels.  Inputs are not modified.
    """
    observers = _validate_observers(observers, 1, "majority vote")
    stack = np.stack([np.asarray(o.data) for o in observers])
    if stack.dtype == np.bool_:
        stack = stack.astype(np.uint8)

    labels = np.unique(stack)
    if tie_label is None:
        tie_label = int(labels.max()) + 1
    out_dtype = _label_dtype(int(labels.min()), int(labels.max()), tie_label)

    shape = stack.shape[1:]
    best_count = np.zeros(shape, dtype=np.int32)
    best_label = np.zeros(shape, dtype=out_dtype)
    n_best = np.zeros(shape, dtype=np.int32)

    for label in labels:
        count = np.count_nonzero(stack == label, axis=0)
        higher = count > best_count
        equal = (count == best_count) & (count > 0)
        best_label[higher] = label
        n_best[higher] = 1
        n_best[equal] += 1
        np.maximum(best_count, count, out=best_count)

    fused = np.where(n_best > 1, tie_label, best_label).astype(out_dtype)
    return observers[0].with_data(fused)


def count_ties(consensus, tie_label):
    """Number of voxels left undecided by majority_vote."""
    return int(np.count_nonzero(consensus.data == tie_label))


# ---------------------------------------------------------------------------
# STAPLE
# ---------------------------------------------------------------------------
def _e_step(votes, log_g, log_1mg, p, q):
    """Posterior P(T=1 | votes) per voxel under rater independence."""
    p = np.clip(p, STAPLE_CLAMP, 1.0 - STAPLE_CLAMP)
    q = np.clip(q, STAPLE_CLAMP, 1.0 - STAPLE_CLAMP)
    log_p, log_1mp = np.log(p), np.log1p(-p)
    log_q, log_1mq = np.log(q), np.log1p(-q)

    log_a = log_g + (log_p - log_1mp) @ votes + log_1mp.sum()
    log_b = log_1mg + (log_1mq - log_q) @ votes + log_q.sum()
    return expit(log_a - log_b)


def _safe_ratio(num, den, fallback):
    if den > 0:
        return num / den
    return fallback.copy()


def _m_step(votes, W, p, q):
    """Weighted agreement rates for each rater."""
    new_p = _safe_ratio(votes @ W, W.sum(), p)
    not_w = 1.0 - W
    new_q = _safe_ratio((1.0 - votes) @ not_w, not_w.sum(), q)
    return new_p, new_q


def _resolve_prior(prior, votes, grid):
    """Return (prior array or scalar, reported prior value)."""
    if prior is None:
        g = float(votes.any(axis=0).mean())
        return g, g
    if isinstance(prior, Volume):
        if not prior.grid.matches(grid):
            raise GridMismatch(
                f"STAPLE prior grid {prior.grid.shape} spacing={prior.grid.spacing} "
                f"origin={prior.grid.origin} differs from observer grid")
        g = np.asarray(prior.data, dtype=np.float64).ravel()
        if np.any((g < 0) | (g > 1)):
            raise InvalidInput("STAPLE prior field must lie in [0, 1]")
        return g, None
    g = float(prior)
    if not 0.0 <= g <= 1.0:
        raise InvalidInput(f"STAPLE prior must lie in [0, 1], got {g}")
    return g, g


def staple(observers, foreground_label=1, max_iterations=200,
           convergence_epsilon=1e-5, prior=None, verbose=False):
    """Estimate the true segmentation of one label from several raters.

    Parameters
    ----------
    observers : sequence of Volume
        At least two label volumes on one shared grid.  Each is read as
        a binary vote: voxel == foreground_label or not.
    foreground_label : int
        Label of interest.  Run once per label for multi-label data.
    max_iterations : int
        Iteration cap.  Hitting it is not an error; a NonConvergence
        warning is emitted and result.converged is False.
    convergence_epsilon : float
        Stop once no sensitivity or specificity moves by this much.
    prior : None, float, or Volume
        P(T=1).  None uses the fraction of voxels any rater marked foreground.
    verbose : bool
        Print one line per iteration.

    Returns
    -------
    StapleResult whose probability is the per-voxel P(T=1), not a binary
    segmentation.
    """
    observers = _validate_observers(observers, 2, "STAPLE")
    if max_iterations < 1:
        raise InvalidInput(f"max_iterations must be >= 1, got {max_iterations}")
    grid = observers[0].grid

    # (R, N) binary decisions
    votes = np.stack([(np.asarray(o.data) == foreground_label).ravel()
                      for o in observers]).astype(np.float64)

    g, prior_value = _resolve_prior(prior, votes, grid)
    g = np.clip(g, STAPLE_CLAMP, 1.0 - STAPLE_CLAMP)
    log_g, log_1mg = np.log(g), np.log1p(-g)

    n_obs = votes.shape[0]
    p = np.full(n_obs, _INITIAL_PERFORMANCE)
    q = np.full(n_obs, _INITIAL_PERFORMANCE)

    converged = False
    iteration = 0
    for iteration in range(1, max_iterations + 1):
        W = _e_step(votes, log_g, log_1mg, p, q)
        new_p, new_q = _m_step(votes, W, p, q)
        delta = max(float(np.abs(new_p - p).max()),
                    float(np.abs(new_q - q).max()))
        p, q = new_p, new_q
        if verbose:
            print(f"  STAPLE iter {iteration:4d}  max |dp|,|dq| = {delta:.3e}")
        if delta < convergence_epsilon:
            converged = True
            break

    if not converged:
        warnings.warn(
            f"STAPLE stopped at max_iterations={max_iterations} "
            f"(last change {delta:.3e} >= {convergence_epsilon:g})",
            NonConvergence, stacklevel=2)

    W = _e_step(votes, log_g, log_1mg, p, q)
    probability = Volume(W.reshape(grid.shape), grid)
    return StapleResult(
        probability=probability,
        sensitivity=tuple(float(v) for v in p),
        specificity=tuple(float(v) for v in q),
        prior=prior_value,
        iterations=iteration,
        converged=converged,
    )


def threshold(probability, cutoff=DEFAULT_CUTOFF, label=1):
    """Binary label volume: label where probability >= cutoff, else 0."""
    mask = np.asarray(probability.data) >= cutoff
    fused = np.where(mask, label, 0).astype(_label_dtype(0, label))
    return probability.with_data(fused)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def parse_args(argv=None):
    """Parse CLI arguments for label_fusion."""
    parser = argparse.ArgumentParser(
        description="Fuse rater segmentations by majority vote and/or STAPLE."
    )
    parser.add_argument("--observers", nargs="+", required=True,
                        help="Rater label volumes (NIfTI), one per rater")
    parser.add_argument("--out-dir", required=True, type=Path,
                        help="Output directory")
    parser.add_argument("--method", choices=["majority", "staple", "both"],
                        default="both", help="Fusion rule (default: both)")
    parser.add_argument("--label", type=int, default=1,
                        help="Foreground label for STAPLE (default: 1)")
    parser.add_argument("--cutoff", type=float, default=DEFAULT_CUTOFF,
                        help=f"STAPLE probability cutoff (default: {DEFAULT_CUTOFF})")
    parser.add_argument("--tie-label", type=int, default=None,
                        help="Majority-vote tie label (default: max label + 1)")
    parser.add_argument("--verbose", action="store_true",
                        help="Print per-iteration STAPLE progress")
    add_staple_args(parser)

    args = parser.parse_args(argv)
    resolve_staple_args(args, parser)
    if args.method != "majority" and len(args.observers) < 2:
        parser.error("STAPLE needs at least 2 --observers")
    return args


def print_rater_performance(result, names):
    """Print per-rater sensitivity and specificity."""
    print("\n" + "=" * 60)
    print("STAPLE Rater Performance")
    print("=" * 60)
    print(f"{'Rater':<32s}  {'Sensitivity':>11s}  {'Specificity':>11s}")
    print("-" * 60)
    for name, p, q in zip(names, result.sensitivity, result.specificity):
        print(f"{name[:32]:<32s}  {p:11.5f}  {q:11.5f}")
    status = "converged" if result.converged else "iteration cap reached"
    print("-" * 60)
    print(f"Iterations: {result.iterations}  ({status})")


def main(argv=None):
    """Orchestrate label fusion."""
    args = parse_args(argv)
    ensure_inputs_exist(args.observers)

    print(f"Observers: {len(args.observers)}")
    print(f"Method: {args.method}")
    if args.method != "majority":
        print(f"STAPLE profile: {args.profile}  "
              f"(max_iterations={args.max_iterations}, epsilon={args.epsilon:g})")
    print()

    observers = []
    for path in args.observers:
        print(f"Loading {path}")
        observers.append(load_volume(path))
    names = [Path(p).name for p in args.observers]
    print(f"Shape: {observers[0].shape}  spacing: {observers[0].grid.spacing}")

    args.out_dir.mkdir(parents=True, exist_ok=True)
    meta = {
        "observers": [str(p) for p in args.observers],
        "method": args.method,
    }

    if args.method in ("majority", "both"):
        tie_label = args.tie_label
        if tie_label is None:
            tie_label = max(int(np.max(o.data)) for o in observers) + 1
        fused = majority_vote(observers, tie_label)
        n_ties = count_ties(fused, tie_label)
        print(f"\nMajority vote: {n_ties} tie voxels (label {tie_label})")
        if n_ties > 0:
            print(f"WARNING: {n_ties} voxels need tie post-processing")
        save_volume(fused, args.out_dir / "majority_vote.nii.gz")
        meta["majority_vote"] = {"tie_label": tie_label, "tie_voxels": n_ties}

    if args.method in ("staple", "both"):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always", NonConvergence)
            result = staple(observers, args.label, args.max_iterations,
                            args.epsilon, verbose=args.verbose)
        for w in caught:
            print(f"WARNING: {w.message}")
        print_rater_performance(result, names)

        prob = result.probability.with_data(
            result.probability.data.astype(np.float32))
        reference = result.threshold(args.cutoff, args.label)
        n_fg = int(np.count_nonzero(reference.data))
        print(f"\nSTAPLE reference at cutoff {args.cutoff}: {n_fg} foreground voxels "
              f"({n_fg * reference.grid.voxel_volume / 1000.0:.2f} mL)")
        print()
        save_volume(prob, args.out_dir / "staple_probability.nii.gz")
        save_volume(reference, args.out_dir / "staple_reference.nii.gz")
        meta["staple"] = {
            "label": args.label,
            "cutoff": args.cutoff,
            "profile": args.profile,
            "max_iterations": args.max_iterations,
            "epsilon": args.epsilon,
            "iterations": result.iterations,
            "converged": result.converged,
            "prior": result.prior,
            "sensitivity": dict(zip(names, result.sensitivity)),
            "specificity": dict(zip(names, result.specificity)),
            "foreground_voxels": n_fg,
        }

    meta_path = args.out_dir / "fusion_meta.json"
    with open(meta_path, "w") as f:
        json.dump(meta, f, indent=2)
    print(f"Saved {meta_path}")


if __name__ == "__main__":
    main()
