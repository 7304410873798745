"""Error kinds raised by the fusion and evaluation steps."""


class RefsegError(ValueError):
    """Base class for all input errors raised by refseg."""


class InvalidInput(RefsegError):
    """Empty or too-small observer set, or mismatched rater count."""


class GridMismatch(RefsegError):
    """Volumes do not share size, spacing and origin."""


class EmptyBoundary(RefsegError):
    """No foreground voxels, so surface statistics are undefined."""


class NonConvergence(RuntimeWarning):
    """STAPLE stopped at its iteration cap before converging.

    Informational only: the best estimate is still returned.
    """
