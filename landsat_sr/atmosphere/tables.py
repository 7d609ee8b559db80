"""
Pre-computed radiative-transfer tables and the interpolation helpers used to
look them up.

The tables are generated offline by a radiative-transfer code (6S-style) and
loaded once per run. They are immutable after construction; the corrector
only ever reads them.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

import numpy as np

from landsat_sr.bands import N_TABLE_BANDS
from landsat_sr.errors import TableLookupError, TableValidationError

logger = logging.getLogger(__name__)

AOT550_GRID = np.array([
    0.01, 0.05, 0.10, 0.15, 0.20, 0.30, 0.40, 0.60, 0.80, 1.00, 1.20,
    1.40, 1.60, 1.80, 2.00, 2.30, 2.60, 3.00, 3.50, 4.00, 4.50, 5.00,
])

PRESSURE_GRID = np.array([1050.0, 1013.0, 900.0, 800.0, 700.0, 600.0, 500.0])

TABLE_FIELDS = (
    'aot_grid', 'pressure_grid', 'solar_zenith_grid', 'view_zenith_grid',
    'azimuth_grid', 'zenith_grid', 'intrinsic_reflectance', 'transmittance',
    'spherical_albedo', 'normalized_extinction',
)


def bracket(axis: np.ndarray, values, name: str) -> Tuple[np.ndarray, np.ndarray]:
    """
    Locate values on a monotonic axis for linear interpolation.

    Args:
        axis: Strictly increasing or strictly decreasing grid
        values: Scalar or array of query values
        name: Axis name for error messages

    Returns:
        (index, weight) so that the interpolated value is
        t[index] * (1 - weight) + t[index + 1] * weight

    Raises:
        TableLookupError: if any value lies outside the axis range
    """
    axis = np.asarray(axis, dtype=np.float64)
    values = np.asarray(values, dtype=np.float64)
    # A decreasing axis is increasing after negation, with the same indices
    sign = -1.0 if axis[0] > axis[-1] else 1.0
    axis_s = sign * axis
    values_s = sign * values

    lo, hi = axis_s[0], axis_s[-1]
    tol = 1e-9 * (hi - lo)
    if values.size and (np.nanmin(values_s) < lo - tol or np.nanmax(values_s) > hi + tol
                        or np.isnan(values_s).any()):
        raise TableLookupError(name, float(np.nanmin(values)), float(np.nanmax(values)),
                               float(axis.min()), float(axis.max()))

    v = np.clip(values_s, lo, hi)
    index = np.clip(np.searchsorted(axis_s, v, side='right') - 1, 0, len(axis_s) - 2)
    weight = (v - axis_s[index]) / (axis_s[index + 1] - axis_s[index])
    return index, weight


def interp_axis(table: np.ndarray, axis: int, index: int, weight: float) -> np.ndarray:
    """Linear interpolation of a table along one axis at a single position."""
    lower = np.take(table, index, axis=axis)
    upper = np.take(table, index + 1, axis=axis)
    return lower * (1.0 - weight) + upper * weight


def bilinear(plane: np.ndarray, ip, wp, ia, wa):
    """Bilinear lookup in a (pressure, aot) plane with broadcast indices."""
    return (plane[ip, ia] * (1.0 - wp) * (1.0 - wa)
            + plane[ip + 1, ia] * wp * (1.0 - wa)
            + plane[ip, ia + 1] * (1.0 - wp) * wa
            + plane[ip + 1, ia + 1] * wp * wa)


def _check_axis(name: str, axis: np.ndarray):
    if axis.ndim != 1 or axis.size < 2:
        raise TableValidationError(f"{name} must be 1D with at least 2 values")
    steps = np.diff(axis)
    if not (np.all(steps > 0) or np.all(steps < 0)):
        raise TableValidationError(f"{name} is not strictly monotonic")


@dataclass(frozen=True)
class AtmosphericTables:
    """
    Radiative-transfer lookup tables.

    Attributes:
        aot_grid: AOT at 550 nm (22 values)
        pressure_grid: Surface pressure in hPa (descending)
        solar_zenith_grid: Solar zenith axis in degrees
        view_zenith_grid: View zenith axis in degrees
        azimuth_grid: Relative azimuth axis in degrees
        zenith_grid: Zenith axis of the transmittance table in degrees
        intrinsic_reflectance: [band, pressure, aot, sza, vza, raa]
        transmittance: Up or down total transmittance [band, pressure, aot, zenith]
        spherical_albedo: [band, pressure, aot]
        normalized_extinction: Aerosol extinction relative to 550 nm [band, pressure, aot]
    """
    aot_grid: np.ndarray
    pressure_grid: np.ndarray
    solar_zenith_grid: np.ndarray
    view_zenith_grid: np.ndarray
    azimuth_grid: np.ndarray
    zenith_grid: np.ndarray
    intrinsic_reflectance: np.ndarray
    transmittance: np.ndarray
    spherical_albedo: np.ndarray
    normalized_extinction: np.ndarray

    def __post_init__(self):
        for name in TABLE_FIELDS:
            array = np.array(getattr(self, name), dtype=np.float64)
            array.flags.writeable = False
            object.__setattr__(self, name, array)

        for name in TABLE_FIELDS[:6]:
            _check_axis(name, getattr(self, name))

        n_p, n_a = self.pressure_grid.size, self.aot_grid.size
        expected = {
            'intrinsic_reflectance': (N_TABLE_BANDS, n_p, n_a, self.solar_zenith_grid.size,
                                      self.view_zenith_grid.size, self.azimuth_grid.size),
            'transmittance': (N_TABLE_BANDS, n_p, n_a, self.zenith_grid.size),
            'spherical_albedo': (N_TABLE_BANDS, n_p, n_a),
            'normalized_extinction': (N_TABLE_BANDS, n_p, n_a),
        }
        for name, shape in expected.items():
            actual = getattr(self, name).shape
            if actual != shape:
                raise TableValidationError(f"{name} has shape {actual}, expected {shape}")
            if not np.all(np.isfinite(getattr(self, name))):
                raise TableValidationError(f"{name} contains non-finite values")

        logger.debug(f"Atmospheric tables: {n_p} pressures x {n_a} AOTs, "
                     f"{self.solar_zenith_grid.size}x{self.view_zenith_grid.size}"
                     f"x{self.azimuth_grid.size} angles")

    def save(self, path: Path):
        """Write all tables to a compressed .npz archive."""
        np.savez_compressed(Path(path), **{name: getattr(self, name) for name in TABLE_FIELDS})
        logger.info(f"Saved atmospheric tables to: {path}")

    @classmethod
    def load(cls, path: Path) -> 'AtmosphericTables':
        """Load tables from an .npz archive written by save()."""
        with np.load(Path(path)) as archive:
            missing = [name for name in TABLE_FIELDS if name not in archive]
            if missing:
                raise TableValidationError(f"{path} is missing tables: {missing}")
            tables = cls(**{name: archive[name] for name in TABLE_FIELDS})
        logger.info(f"Loaded atmospheric tables from: {path}")
        return tables
