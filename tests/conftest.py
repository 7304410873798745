"""Shared fixtures for the test suite."""

import numpy as np
import pytest

from refseg.utils import Volume, VolumeGrid


def _make_grid(shape=(10, 10, 10), spacing=(1.0, 1.0, 1.0), origin=(0.0, 0.0, 0.0)):
    """Build a VolumeGrid with identity direction."""
    return VolumeGrid(shape, spacing, origin)


def _make_volume(data, spacing=(1.0, 1.0, 1.0), origin=(0.0, 0.0, 0.0)):
    """Wrap an array in a Volume on a grid of matching shape."""
    data = np.asarray(data)
    return Volume(data, _make_grid(data.shape, spacing, origin))


def _make_cube(shape=(10, 10, 10), start=(3, 3, 3), size=3, label=1,
               spacing=(1.0, 1.0, 1.0), dtype=np.uint8):
    """Binary label volume with one axis-aligned cube of foreground."""
    data = np.zeros(shape, dtype=dtype)
    i, j, k = start
    data[i:i + size, j:j + size, k:k + size] = label
    return _make_volume(data, spacing=spacing)


@pytest.fixture
def make_grid():
    """Factory fixture that returns the _make_grid helper."""
    return _make_grid


@pytest.fixture
def make_volume():
    """Factory fixture that returns the _make_volume helper."""
    return _make_volume


@pytest.fixture
def make_cube():
    """Factory fixture that returns the _make_cube helper."""
    return _make_cube
