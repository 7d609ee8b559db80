"""
Pixel <-> geographic coordinate mapping for scene grids.

Line / sample coordinates are fractional: (0, 0) is the upper-left corner
of the first pixel and (0.5, 0.5) its center.
"""

import logging
from typing import Protocol, Tuple

import numpy as np
from pyproj import CRS, Transformer

from landsat_sr.errors import InputValidationError

logger = logging.getLogger(__name__)


class Geolocation(Protocol):
    """Forward and inverse mapping between scene pixels and lat/lon."""

    def pixel_to_latlon(self, lines, samples) -> Tuple[np.ndarray, np.ndarray]:
        ...

    def latlon_to_pixel(self, lat, lon) -> Tuple[np.ndarray, np.ndarray]:
        ...


class GeographicGeolocation:
    """
    Scene on a regular latitude / longitude grid.

    Args:
        ul_lat: Latitude of the upper-left corner
        ul_lon: Longitude of the upper-left corner
        pixel_size: Cell size in degrees, scalar or (lat_step, lon_step)
    """

    def __init__(self, ul_lat: float, ul_lon: float, pixel_size):
        self.ul_lat = ul_lat
        self.ul_lon = ul_lon
        self.dy, self.dx = np.broadcast_to(np.asarray(pixel_size, dtype=np.float64), (2,))
        if self.dy <= 0 or self.dx <= 0:
            raise InputValidationError(f"Pixel size must be positive, got {pixel_size}")

    def pixel_to_latlon(self, lines, samples):
        lat = self.ul_lat - np.asarray(lines, dtype=np.float64) * self.dy
        lon = self.ul_lon + np.asarray(samples, dtype=np.float64) * self.dx
        return lat, lon

    def latlon_to_pixel(self, lat, lon):
        lines = (self.ul_lat - np.asarray(lat, dtype=np.float64)) / self.dy
        samples = (np.asarray(lon, dtype=np.float64) - self.ul_lon) / self.dx
        return lines, samples


class ProjectedGeolocation:
    """
    Scene on a projected map grid (UTM or polar stereographic).

    Args:
        ul_x: Map x of the upper-left corner
        ul_y: Map y of the upper-left corner
        pixel_size: Cell size in map units
        crs: Anything pyproj.CRS accepts, e.g. "EPSG:32614"
    """

    def __init__(self, ul_x: float, ul_y: float, pixel_size: float, crs):
        if pixel_size <= 0:
            raise InputValidationError(f"Pixel size must be positive, got {pixel_size}")
        self.ul_x = ul_x
        self.ul_y = ul_y
        self.pixel_size = pixel_size
        self.crs = CRS.from_user_input(crs)
        self._to_geographic = Transformer.from_crs(self.crs, "EPSG:4326", always_xy=True)
        self._from_geographic = Transformer.from_crs("EPSG:4326", self.crs, always_xy=True)
        logger.debug(f"Projected geolocation in {self.crs.to_string()}")

    def pixel_to_latlon(self, lines, samples):
        x = self.ul_x + np.asarray(samples, dtype=np.float64) * self.pixel_size
        y = self.ul_y - np.asarray(lines, dtype=np.float64) * self.pixel_size
        lon, lat = self._to_geographic.transform(x, y)
        return np.asarray(lat), np.asarray(lon)

    def latlon_to_pixel(self, lat, lon):
        x, y = self._from_geographic.transform(np.asarray(lon, dtype=np.float64),
                                               np.asarray(lat, dtype=np.float64))
        samples = (np.asarray(x) - self.ul_x) / self.pixel_size
        lines = (self.ul_y - np.asarray(y)) / self.pixel_size
        return lines, samples


def pixel_centers(geolocation: Geolocation, lines: np.ndarray,
                  samples: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Lat/lon of the centers of integer pixel indices."""
    return geolocation.pixel_to_latlon(np.asarray(lines) + 0.5, np.asarray(samples) + 0.5)
