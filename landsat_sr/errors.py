"""
Exception hierarchy for scene processing.

Every error that aborts a scene derives from SceneProcessingError so a host
running several scenes can catch one type, log it and move on. Per-pixel
problems never raise; they end up as fill values or residual sentinels.
"""


class SceneProcessingError(Exception):
    """Base class for errors that abort processing of a single scene."""


class AllocationError(SceneProcessingError):
    """Scene work arrays could not be allocated."""


class InputValidationError(SceneProcessingError):
    """A scene input (band, mask, geometry, instrument) is malformed."""


class TableValidationError(InputValidationError):
    """Radiative-transfer tables or auxiliary grids have inconsistent axes."""


class GridBoundsError(SceneProcessingError):
    """A pixel geolocates outside the coverage of an auxiliary grid."""

    def __init__(self, message: str, n_pixels: int = 0):
        super().__init__(message)
        self.n_pixels = n_pixels


class TableLookupError(SceneProcessingError):
    """An angle, pressure or AOT value falls outside a table axis."""

    def __init__(self, axis: str, value_min: float, value_max: float,
                 axis_min: float, axis_max: float):
        self.axis = axis
        self.value_range = (value_min, value_max)
        self.axis_range = (axis_min, axis_max)
        super().__init__(
            f"{axis} values [{value_min:.4f}, {value_max:.4f}] outside "
            f"table range [{axis_min:.4f}, {axis_max:.4f}]"
        )


class ProductWriteError(SceneProcessingError):
    """Output products of a scene could not be written."""
