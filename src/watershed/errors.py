"""
Exception types raised by the watershed engine.

Every stage validates its inputs before computing and raises one of these
instead of returning a partially-correct grid.
"""


class WatershedError(Exception):
    """Base class for all watershed engine errors."""

    pass


class GridMismatch(WatershedError):
    """Raised when co-processed grids differ in shape, transform or CRS."""

    pass


class InvalidInput(WatershedError, ValueError):
    """Raised for degenerate cell sizes, empty grids or malformed coordinates."""

    pass


class NoStreamWithinRadius(WatershedError):
    """Raised when no stream cell lies within the snap distance of a pour point."""

    pass


class InvalidOutlet(WatershedError):
    """Raised when an outlet does not fall on a valid flow-direction cell."""

    pass


class EmptyMask(WatershedError):
    """Raised when a zonal reduction has no masked, valid cells to reduce."""

    pass


class UnresolvableDepression(WatershedError):
    """Raised when conditioning leaves a pit or cells the fill never reached."""

    pass


class Cancelled(WatershedError):
    """Raised when a caller-supplied cancellation token is set between stages."""

    pass
