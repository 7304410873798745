"""Surface-distance measures between a candidate and a reference segmentation.

The candidate's boundary voxels are sampled in an unsigned distance field
of the reference boundary.  Boundary voxels are foreground voxels with at
least one background face neighbour (6-connectivity); voxels on the edge of
the grid count as boundary since everything outside the grid is
background.  Distances are in mm and honour the grid spacing.
"""

from dataclasses import asdict, dataclass

import numpy as np
from scipy.ndimage import (
    binary_erosion, distance_transform_edt, generate_binary_structure,
)

from refseg.errors import EmptyBoundary
from refseg.utils import SURFACE_CONNECTIVITY, binary_view, check_same_grid

SURFACE_FIELDS = ("mean", "median", "std", "max")


@dataclass(frozen=True)
class SurfaceDistanceResult:
    mean: float
    median: float
    std: float
    max: float

    def as_dict(self):
        return asdict(self)


# ---------------------------------------------------------------------------
# Boundary extraction
# ---------------------------------------------------------------------------
def extract_boundary(volume, label=1):
    """Boolean mask of the label's boundary voxels."""
    fg = binary_view(volume, label)
    structure = generate_binary_structure(3, SURFACE_CONNECTIVITY)
    interior = binary_erosion(fg, structure=structure, border_value=0)
    return fg & ~interior


# ---------------------------------------------------------------------------
# Distance field
# ---------------------------------------------------------------------------
def compute_distance_field(reference, label=1):
    """Unsigned distance (mm) from every voxel to the reference boundary.

    Zero on boundary voxels.  Raises EmptyBoundary if the reference has no
    foreground.
    """
    boundary = extract_boundary(reference, label)
    if not boundary.any():
        raise EmptyBoundary(f"reference has no voxels with label {label}")
    dist = distance_transform_edt(~boundary, sampling=reference.grid.spacing)
    return reference.with_data(dist.astype(np.float64))


# ---------------------------------------------------------------------------
# Measures
# ---------------------------------------------------------------------------
def sample_boundary_distances(candidate, distance_field, label=1):
    """Distance-field values at the candidate's boundary voxels."""
    check_same_grid([candidate, distance_field],
                    names=["candidate", "reference distance field"])
    boundary = extract_boundary(candidate, label)
    if not boundary.any():
        raise EmptyBoundary(f"candidate has no voxels with label {label}")
    return np.asarray(distance_field.data, dtype=np.float64)[boundary]


def compute_surface_distance(candidate, reference_distance_field, label=1):
    """Mean, median, population std and max candidate-to-reference distance."""
    d = sample_boundary_distances(candidate, reference_distance_field, label)
    return SurfaceDistanceResult(
        mean=float(d.mean()),
        median=float(np.median(d)),
        std=float(d.std(ddof=0)),
        max=float(d.max()),
    )


def compute_hausdorff_distance(candidate, reference, label=1):
    """Symmetric Hausdorff distance (mm) between the two label boundaries."""
    check_same_grid([candidate, reference], names=["candidate", "reference"])
    to_reference = sample_boundary_distances(
        candidate, compute_distance_field(reference, label), label)
    to_candidate = sample_boundary_distances(
        reference, compute_distance_field(candidate, label), label)
    return float(max(to_reference.max(), to_candidate.max()))
