"""Least-squares sphere fit to edge points in physical space.

Edge detection happens upstream; this module only converts marked voxels
to physical points and solves the linear system

    2*cx*x + 2*cy*y + 2*cz*z + d = x^2 + y^2 + z^2,   d = r^2 - |c|^2

optionally weighting each point (e.g. by gradient magnitude).
"""

from dataclasses import dataclass

import numpy as np

from refseg.errors import InvalidInput


@dataclass(frozen=True)
class SphereFit:
    center: tuple
    radius: float
    rms_residual: float


def edge_points(mask, grid, weights=None):
    """Physical coordinates (mm) of marked voxels, with optional weights.

    Returns (points, point_weights); point_weights is None without weights.
    """
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != grid.shape:
        raise InvalidInput(f"mask shape {mask.shape} != grid shape {grid.shape}")
    idx = np.argwhere(mask)
    points = grid.index_to_physical(idx)
    if weights is None:
        return points, None
    weights = np.asarray(getattr(weights, "data", weights), dtype=np.float64)
    return points, weights[mask]


def fit_sphere(points, weights=None):
    """Fit a sphere to (N, 3) points by (weighted) linear least squares."""
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise InvalidInput(f"points must have shape (N, 3), got {pts.shape}")
    if len(pts) < 4:
        raise InvalidInput(f"need at least 4 points, got {len(pts)}")

    A = np.column_stack([2.0 * pts, np.ones(len(pts))])
    b = np.einsum("ij,ij->i", pts, pts)

    if weights is not None:
        w = np.asarray(weights, dtype=np.float64)
        if w.shape != (len(pts),) or np.any(w < 0):
            raise InvalidInput("weights must be one non-negative value per point")
        sw = np.sqrt(w)
        A = A * sw[:, None]
        b = b * sw

    sol, _, rank, _ = np.linalg.lstsq(A, b, rcond=None)
    if rank < 4:
        raise InvalidInput("degenerate point set (coplanar or repeated points)")

    center = sol[:3]
    r2 = sol[3] + center @ center
    if r2 <= 0:
        raise InvalidInput("fit produced a non-positive squared radius")
    radius = float(np.sqrt(r2))

    dist = np.linalg.norm(pts - center, axis=1)
    rms = float(np.sqrt(np.mean((dist - radius) ** 2)))
    return SphereFit(tuple(float(c) for c in center), radius, rms)
