"""Shared utilities for the fusion and evaluation steps.

Provides the voxel grid and volume types, grid-consistency checks, NIfTI
I/O, STAPLE profile configs, and CLI helpers used by all steps.
"""

import sys
from dataclasses import dataclass
from pathlib import Path

import nibabel as nib
from nibabel.affines import apply_affine, voxel_sizes
import numpy as np

from refseg.errors import GridMismatch, InvalidInput

# ---------------------------------------------------------------------------
# Profile configs: name -> (max_iterations, convergence_epsilon)
# ---------------------------------------------------------------------------
STAPLE_PROFILES = {
    "fast": (50, 1e-3),
    "default": (200, 1e-5),
    "strict": (1000, 1e-8),
}

DEFAULT_CUTOFF = 0.95        # empirical threshold for STAPLE probabilities
STAPLE_CLAMP = 1e-10         # p, q and prior kept inside [c, 1 - c]
GRID_RTOL = 1e-6             # NIfTI headers store the affine as float32
GRID_ATOL = 1e-5             # mm
SURFACE_CONNECTIVITY = 1     # scipy rank: 1 = 6-neighbour faces

_IDENTITY = ((1.0, 0.0, 0.0), (0.0, 1.0, 0.0), (0.0, 0.0, 1.0))


# ---------------------------------------------------------------------------
# Grid affine construction
# ---------------------------------------------------------------------------
def build_grid_affine(spacing, origin, direction=None):
    """Build 4x4 grid-to-physical affine.

    Column j of the upper 3x3 block is direction[:, j] * spacing[j];
    voxel (0, 0, 0) maps to origin.
    """
    if direction is None:
        direction = _IDENTITY
    affine = np.eye(4)
    affine[:3, :3] = np.asarray(direction, dtype=np.float64) * np.asarray(
        spacing, dtype=np.float64)
    affine[:3, 3] = origin
    return affine


# ---------------------------------------------------------------------------
# VolumeGrid
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class VolumeGrid:
    """Discrete 3D grid with physical spacing and origin (mm)."""

    shape: tuple
    spacing: tuple = (1.0, 1.0, 1.0)
    origin: tuple = (0.0, 0.0, 0.0)
    direction: tuple = _IDENTITY

    def __post_init__(self):
        shape = tuple(int(n) for n in self.shape)
        spacing = tuple(float(s) for s in self.spacing)
        origin = tuple(float(o) for o in self.origin)
        direction = tuple(tuple(float(v) for v in row) for row in self.direction)

        if len(shape) != 3 or any(n <= 0 for n in shape):
            raise InvalidInput(f"grid shape must be 3 positive ints, got {shape}")
        if len(spacing) != 3 or any(s <= 0 for s in spacing):
            raise InvalidInput(
                f"grid spacing must be 3 positive reals, got {spacing}")
        if len(origin) != 3:
            raise InvalidInput(f"grid origin must have 3 components, got {origin}")
        if len(direction) != 3 or any(len(row) != 3 for row in direction):
            raise InvalidInput("grid direction must be a 3x3 matrix")

        object.__setattr__(self, "shape", shape)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "direction", direction)

    @classmethod
    def from_affine(cls, affine, shape):
        """Recover spacing, origin and direction from a 4x4 affine."""
        affine = np.asarray(affine, dtype=np.float64)
        spacing = voxel_sizes(affine)
        direction = affine[:3, :3] / spacing
        return cls(tuple(shape)[:3], tuple(spacing), tuple(affine[:3, 3]),
                   tuple(map(tuple, direction)))

    @property
    def affine(self):
        return build_grid_affine(self.spacing, self.origin, self.direction)

    @property
    def n_voxels(self):
        return int(np.prod(self.shape))

    @property
    def voxel_volume(self):
        """Physical volume of one voxel in mm^3."""
        return float(np.prod(self.spacing))

    def index_to_physical(self, indices):
        """Map voxel indices of shape (..., 3) to physical points (mm)."""
        idx = np.asarray(indices, dtype=np.float64)
        return apply_affine(self.affine, idx)

    def physical_to_index(self, points):
        """Map physical points of shape (..., 3) to continuous indices."""
        pts = np.asarray(points, dtype=np.float64)
        return apply_affine(np.linalg.inv(self.affine), pts)

    def matches(self, other):
        """True when shape is identical and geometry agrees within GRID_RTOL/GRID_ATOL."""
        if self.shape != other.shape:
            return False
        return (np.allclose(self.spacing, other.spacing, rtol=GRID_RTOL, atol=GRID_ATOL)
                and np.allclose(self.origin, other.origin, rtol=GRID_RTOL, atol=GRID_ATOL)
                and np.allclose(self.direction, other.direction,
                                rtol=GRID_RTOL, atol=GRID_ATOL))


# ---------------------------------------------------------------------------
# Volume
# ---------------------------------------------------------------------------
@dataclass(frozen=True, eq=False)
class Volume:
    """Voxel array bound to its grid.

    The stored array is a read-only view, so no step can modify an input
    volume in place.
    """

    data: np.ndarray
    grid: VolumeGrid = None

    def __post_init__(self):
        arr = np.asarray(self.data)
        if arr.ndim != 3:
            raise InvalidInput(f"volume must be 3D, got shape {arr.shape}")
        grid = self.grid if self.grid is not None else VolumeGrid(arr.shape)
        if arr.shape != grid.shape:
            raise InvalidInput(
                f"array shape {arr.shape} does not match grid shape {grid.shape}")
        arr = arr.view()
        arr.flags.writeable = False
        object.__setattr__(self, "data", arr)
        object.__setattr__(self, "grid", grid)

    @property
    def shape(self):
        return self.grid.shape

    @property
    def dtype(self):
        return self.data.dtype

    def with_data(self, data):
        """New volume on the same grid."""
        return Volume(data, self.grid)


def check_same_grid(volumes, names=None):
    """Raise GridMismatch unless every volume shares the first one's grid."""
    volumes = list(volumes)
    if not volumes:
        return
    if names is None:
        names = [f"volume {i}" for i in range(len(volumes))]
    ref = volumes[0].grid
    for vol, name in zip(volumes[1:], names[1:]):
        if not ref.matches(vol.grid):
            raise GridMismatch(
                f"{name} grid {vol.grid.shape} spacing={vol.grid.spacing} "
                f"origin={vol.grid.origin} differs from {names[0]} grid "
                f"{ref.shape} spacing={ref.spacing} origin={ref.origin}")


def binary_view(volume, label):
    """Boolean mask of voxels equal to label."""
    return volume.data == label


# ---------------------------------------------------------------------------
# NIfTI I/O
# ---------------------------------------------------------------------------
def load_volume(path, dtype=None):
    """Load a NIfTI file as a Volume.

    Integer-typed files keep their on-disk dtype unless dtype is given;
    scaled or float files are read as float.
    """
    img = nib.load(str(path))
    if dtype is None:
        data = np.asanyarray(img.dataobj)
    else:
        data = np.asarray(img.dataobj, dtype=dtype)
    if data.ndim == 4 and data.shape[3] == 1:
        data = data[..., 0]
    grid = VolumeGrid.from_affine(img.affine, data.shape)
    return Volume(data, grid)


def save_volume(volume, path):
    """Save a Volume as NIfTI, preserving its dtype."""
    data = np.asarray(volume.data)
    if data.dtype == np.bool_:
        data = data.astype(np.uint8)
    img = nib.Nifti1Image(data, volume.grid.affine)
    img.header.set_data_dtype(data.dtype)
    nib.save(img, str(path))
    print(f"Saved {path}  shape={data.shape}  dtype={data.dtype}")


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------
def add_staple_args(parser):
    """Add --profile / --max-iterations / --epsilon to an argparse parser."""
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--profile",
        choices=list(STAPLE_PROFILES.keys()),
        help="Named STAPLE profile (default: default)",
    )
    group.add_argument("--max-iterations", type=int,
                       help="STAPLE iteration cap (custom)")
    parser.add_argument(
        "--epsilon", type=float,
        help="Convergence epsilon (required with --max-iterations)",
    )


def resolve_staple_args(args, parser):
    """Fill args.max_iterations / args.epsilon from profile or custom flags."""
    if args.profile is None and args.max_iterations is None:
        args.profile = "default"

    if args.profile is not None:
        if args.epsilon is not None:
            parser.error("--epsilon is only valid with --max-iterations")
        args.max_iterations, args.epsilon = STAPLE_PROFILES[args.profile]
    else:
        if args.epsilon is None:
            parser.error("--epsilon is required when using --max-iterations")
        if args.max_iterations < 1:
            parser.error("--max-iterations must be >= 1")
        args.profile = f"custom_{args.max_iterations}_{args.epsilon}"
    return args


def ensure_inputs_exist(paths):
    """Exit with code 1 if any input file is missing."""
    missing = [p for p in paths if not Path(p).exists()]
    if missing:
        for p in missing:
            print(f"FATAL: input not found: {p}")
        sys.exit(1)
