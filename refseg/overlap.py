"""Voxel-overlap measures between a candidate and a reference segmentation.

All measures are computed for one label at a time from a single pass that
tallies TP / FP / FN / TN over the shared grid.

Undefined ratios:
  - Jaccard, Dice and mean overlap are 0 when the union is empty.
  - Volume similarity is 0 when both foregrounds are empty.
  - False-negative error is NaN when the reference foreground is empty.
  - False-positive error is NaN when the candidate foreground is empty.
"""

from dataclasses import asdict, dataclass

import numpy as np

from refseg.utils import check_same_grid

OVERLAP_FIELDS = (
    "mean_overlap",
    "jaccard",
    "dice",
    "volume_similarity",
    "false_negative",
    "false_positive",
)


@dataclass(frozen=True)
class OverlapResult:
    mean_overlap: float
    jaccard: float
    dice: float
    volume_similarity: float
    false_negative: float
    false_positive: float

    def as_dict(self):
        return asdict(self)


def confusion_counts(candidate, reference, label=1):
    """Return (tp, fp, fn, tn) voxel counts for one label."""
    check_same_grid([candidate, reference], names=["candidate", "reference"])
    c = np.asarray(candidate.data).ravel() == label
    r = np.asarray(reference.data).ravel() == label
    # code: 0 = TN, 1 = FN (reference only), 2 = FP (candidate only), 3 = TP
    counts = np.bincount(2 * c.astype(np.intp) + r, minlength=4)
    tn, fn, fp, tp = (int(n) for n in counts)
    return tp, fp, fn, tn


def _ratio(num, den, empty):
    return num / den if den > 0 else empty


def compute_overlap(candidate, reference, label=1):
    """Overlap measures of candidate against reference for one label.

    Raises GridMismatch if the two volumes are not on the same grid.
    """
    tp, fp, fn, _ = confusion_counts(candidate, reference, label)
    n_cand = tp + fp
    n_ref = tp + fn

    return OverlapResult(
        mean_overlap=_ratio(2.0 * tp, n_cand + n_ref, 0.0),
        jaccard=_ratio(float(tp), tp + fp + fn, 0.0),
        dice=_ratio(2.0 * tp, 2 * tp + fp + fn, 0.0),
        volume_similarity=_ratio(2.0 * (n_cand - n_ref), n_cand + n_ref, 0.0),
        false_negative=_ratio(float(fn), n_ref, float("nan")),
        false_positive=_ratio(float(fp), n_cand, float("nan")),
    )
