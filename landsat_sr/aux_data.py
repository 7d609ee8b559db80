"""
Coarse auxiliary grids (CMG) and their per-pixel sampling.

Water vapor, ozone and the DEM come from a global climate-modeling grid
(0.05 degree by default). The same grid carries the band-ratio climatology
used to predict the blue / red / SWIR reflectance ratios of the aerosol
retrieval from the pixel's NDWI.
"""

import logging
from dataclasses import dataclass, fields
from typing import Dict

import numpy as np

from landsat_sr.bands import STANDARD_PRESSURE, BandId
from landsat_sr.errors import GridBoundsError, TableValidationError

logger = logging.getLogger(__name__)

DEM_FILL = -9999
OZONE_DEFAULT = 120          # grid units when the ozone cell is empty
WATER_VAPOR_SCALE = 0.01     # g/cm^2 per unit
OZONE_SCALE = 0.0025         # cm-atm per unit
RATIO_SCALE = 0.001
PRESSURE_SCALE_HEIGHT = 8500.0

# Expected ratios to band 4 when the climatology has no data for a cell
DEFAULT_RATIOS = {
    BandId.B1: 0.4817,
    BandId.B2: 0.4817 / 0.844239,
    BandId.B4: 1.0,
    BandId.B7: 1.79,
}


@dataclass(frozen=True)
class CmgGridSpec:
    """
    Geographic layout of a global grid.

    Attributes:
        ul_lat: Latitude of the center of the upper-left cell
        ul_lon: Longitude of the center of the upper-left cell
        cell_size: Cell size in degrees
    """
    ul_lat: float = 89.975
    ul_lon: float = -179.975
    cell_size: float = 0.05

    def to_grid(self, lat, lon):
        """Fractional (line, sample) grid coordinates of lat/lon."""
        y = (self.ul_lat - np.asarray(lat, dtype=np.float64)) / self.cell_size
        x = (np.asarray(lon, dtype=np.float64) - self.ul_lon) / self.cell_size
        return y, x


@dataclass(frozen=True)
class RatioClimatology:
    """NDWI statistics and band-ratio regression per cell (int16, x0.001)."""
    andwi: np.ndarray
    sndwi: np.ndarray
    ratiob1: np.ndarray
    ratiob2: np.ndarray
    ratiob7: np.ndarray
    intratiob1: np.ndarray
    intratiob2: np.ndarray
    intratiob7: np.ndarray
    slpratiob1: np.ndarray
    slpratiob2: np.ndarray
    slpratiob7: np.ndarray

    @classmethod
    def empty(cls, shape) -> 'RatioClimatology':
        """Climatology with no data anywhere (default ratios everywhere)."""
        return cls(**{f.name: np.zeros(shape, dtype=np.int16) for f in fields(cls)})


@dataclass(frozen=True)
class AuxiliaryGrids:
    """
    Read-only coarse grids sharing one CmgGridSpec.

    Attributes:
        water_vapor: Column water vapor, x0.01 g/cm^2
        ozone: Total ozone, x0.0025 cm-atm (0 = missing)
        dem: Elevation in meters (-9999 = missing)
        ratios: Band-ratio climatology
        spec: Grid layout
    """
    water_vapor: np.ndarray
    ozone: np.ndarray
    dem: np.ndarray
    ratios: RatioClimatology
    spec: CmgGridSpec = CmgGridSpec()

    def __post_init__(self):
        shape = np.shape(self.dem)
        if len(shape) != 2:
            raise TableValidationError(f"Auxiliary grids must be 2D, got {shape}")
        for name in ('water_vapor', 'ozone', 'dem'):
            array = np.array(getattr(self, name))
            if array.shape != shape:
                raise TableValidationError(f"{name} grid has shape {array.shape}, expected {shape}")
            array.flags.writeable = False
            object.__setattr__(self, name, array)
        for f in fields(self.ratios):
            array = np.array(getattr(self.ratios, f.name))
            if array.shape != shape:
                raise TableValidationError(f"{f.name} grid has shape {array.shape}, expected {shape}")
            array.flags.writeable = False
            object.__setattr__(self.ratios, f.name, array)

    @property
    def shape(self):
        return self.dem.shape


@dataclass
class AuxiliaryFields:
    """
    Per-pixel auxiliary values for a set of pixels.

    Attributes:
        water_vapor: g/cm^2
        ozone: cm-atm
        pressure: hPa
        dem_missing: True where the DEM cell is missing (treated as water)
        cell_line: Grid line of the nearest-lower cell
        cell_sample: Grid sample of the nearest-lower cell
    """
    water_vapor: np.ndarray
    ozone: np.ndarray
    pressure: np.ndarray
    dem_missing: np.ndarray
    cell_line: np.ndarray
    cell_sample: np.ndarray


def dem_to_pressure(dem: np.ndarray) -> np.ndarray:
    """Surface pressure (hPa) from elevation, 1013 where the DEM is missing."""
    dem = np.asarray(dem, dtype=np.float64)
    pressure = STANDARD_PRESSURE * np.exp(-dem / PRESSURE_SCALE_HEIGHT)
    return np.where(dem == DEM_FILL, STANDARD_PRESSURE, pressure)


class AuxGridSampler:
    """
    Bilinear sampling of the auxiliary grids at pixel locations.

    Args:
        grids: Auxiliary grids
    """

    def __init__(self, grids: AuxiliaryGrids):
        self.grids = grids
        # Converted once; sampling only indexes these
        self._water_vapor = grids.water_vapor.astype(np.float32)
        self._ozone = np.where(grids.ozone == 0, OZONE_DEFAULT, grids.ozone).astype(np.float32)
        self._pressure = dem_to_pressure(grids.dem).astype(np.float32)

    def _cells(self, lat, lon):
        y, x = self.grids.spec.to_grid(lat, lon)
        line = np.floor(y).astype(np.int64)
        sample = np.floor(x).astype(np.int64)
        nrows, ncols = self.grids.shape
        outside = (line < 0) | (line >= nrows) | (sample < 0) | (sample >= ncols)
        if np.any(outside):
            n_out = int(np.count_nonzero(outside))
            raise GridBoundsError(
                f"{n_out} pixels fall outside the {nrows}x{ncols} auxiliary grid "
                f"(lat {np.min(lat):.3f}..{np.max(lat):.3f}, lon {np.min(lon):.3f}..{np.max(lon):.3f})",
                n_pixels=n_out,
            )
        line1 = np.minimum(line + 1, nrows - 1)
        sample1 = np.minimum(sample + 1, ncols - 1)
        return line, sample, line1, sample1, y - line, x - sample

    @staticmethod
    def _blend(grid, line, sample, line1, sample1, u, v):
        return ((1.0 - u) * (1.0 - v) * grid[line, sample]
                + (1.0 - u) * v * grid[line, sample1]
                + u * (1.0 - v) * grid[line1, sample]
                + u * v * grid[line1, sample1])

    def sample(self, lat, lon) -> AuxiliaryFields:
        """
        Sample water vapor, ozone and pressure at lat/lon.

        Args:
            lat: Latitudes (degrees)
            lon: Longitudes (degrees)

        Returns:
            AuxiliaryFields with one value per input location

        Raises:
            GridBoundsError: if a location falls outside the grid
        """
        lat = np.atleast_1d(np.asarray(lat, dtype=np.float64))
        lon = np.atleast_1d(np.asarray(lon, dtype=np.float64))
        cells = self._cells(lat, lon)
        line, sample = cells[0], cells[1]

        water_vapor = self._blend(self._water_vapor, *cells) * WATER_VAPOR_SCALE
        ozone = self._blend(self._ozone, *cells) * OZONE_SCALE
        # DEM is converted per corner so a missing corner blends in as 1013 hPa
        pressure = self._blend(self._pressure, *cells)
        dem_missing = self.grids.dem[line, sample] == DEM_FILL

        return AuxiliaryFields(
            water_vapor=water_vapor,
            ozone=ozone,
            pressure=pressure,
            dem_missing=dem_missing,
            cell_line=line,
            cell_sample=sample,
        )

    def sample_point(self, lat: float, lon: float):
        """
        Scene-level water vapor, ozone and pressure at one location.

        Returns:
            (pressure_hpa, ozone_cm_atm, water_vapor_g_cm2)
        """
        fields_ = self.sample([lat], [lon])
        return float(fields_.pressure[0]), float(fields_.ozone[0]), float(fields_.water_vapor[0])

    def expected_ratios(self, cell_line: np.ndarray, cell_sample: np.ndarray,
                        sr_band5: np.ndarray, sr_band7: np.ndarray) -> Dict[BandId, np.ndarray]:
        """
        Expected reflectance ratios of bands 1, 2, 4 and 7 to band 4.

        The ratio follows a per-cell linear regression on NDWI, with NDWI
        clamped to two standard deviations around the cell's mean. Cells
        without climatology use fixed default ratios.

        Args:
            cell_line: Grid line of each pixel's cell (AuxiliaryFields.cell_line)
            cell_sample: Grid sample of each pixel's cell
            sr_band5: Scaled surface reflectance of band 5 (constant-AOT pass)
            sr_band7: Scaled surface reflectance of band 7 (constant-AOT pass)

        Returns:
            Dict of BandId -> expected ratio per pixel
        """
        ratios = self.grids.ratios
        line, sample = np.asarray(cell_line), np.asarray(cell_sample)
        n = line.size

        b5 = np.asarray(sr_band5, dtype=np.float64)
        b7 = np.asarray(sr_band7, dtype=np.float64) * 0.5
        denom = b5 + b7
        with np.errstate(divide='ignore', invalid='ignore'):
            ndwi = np.where(denom != 0, (b5 - b7) / np.where(denom != 0, denom, 1.0), 0.0)

        andwi = ratios.andwi[line, sample].astype(np.float64)
        sndwi = ratios.sndwi[line, sample].astype(np.float64)
        upper = (andwi + 2.0 * sndwi) * RATIO_SCALE
        lower = (andwi - 2.0 * sndwi) * RATIO_SCALE
        ndwi = np.minimum(ndwi, upper)
        ndwi = np.maximum(ndwi, lower)

        has_climatology = ratios.ratiob1[line, sample] != 0
        result = {BandId.B4: np.ones(n)}
        for band_id, slope, intercept in (
            (BandId.B1, ratios.slpratiob1, ratios.intratiob1),
            (BandId.B2, ratios.slpratiob2, ratios.intratiob2),
            (BandId.B7, ratios.slpratiob7, ratios.intratiob7),
        ):
            regressed = (ndwi * slope[line, sample] + intercept[line, sample]) * RATIO_SCALE
            result[band_id] = np.where(has_climatology, regressed, DEFAULT_RATIOS[band_id])

        logger.debug(f"Expected ratios: {np.count_nonzero(has_climatology)}/{n} pixels "
                     f"with climatology")
        return result
