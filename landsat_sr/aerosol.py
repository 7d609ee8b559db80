"""
Per-pixel aerosol optical thickness retrieval.

The retrieval exploits the stable reflectance ratios of dark land surfaces
between the coastal / blue bands, the red band and the 2.2 um SWIR band.
For a trial AOT each band is corrected and the mismatch to the expected
ratios (relative to band 4) is measured:

    residual(aot) = sqrt( sum_b (rho_b(aot) - ratio_b * rho_4(aot))^2 ) / 3,
    b in {1, 2, 7}

The AOT grid of the tables is scanned upward until the first local minimum
(or until band 1 would go negative) and the minimum is refined with a
parabola through the neighboring grid points.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from landsat_sr.atmosphere.corrector import AtmosCorrector
from landsat_sr.bands import BandId, get_band
from landsat_sr.scene import SceneAtmosphere
from landsat_sr.utils.memory import MemoryManager

logger = logging.getLogger(__name__)

RETRIEVAL_BANDS = (BandId.B1, BandId.B2, BandId.B4, BandId.B5, BandId.B7)
RATIO_BANDS = (BandId.B1, BandId.B2, BandId.B7)
REFERENCE_BAND = BandId.B4
GUARD_BAND = BandId.B1

FAILED_RESIDUAL = -0.01
MIN_RESIDUAL = 1e-6


@dataclass
class RetrievalResult:
    """
    Retrieved AOT and fit residual per pixel.

    Residual > 0 marks an accepted retrieval, -0.01 a rejected one (with
    AOT 0).
    """
    aot: np.ndarray
    residual: np.ndarray

    @property
    def accepted(self) -> np.ndarray:
        return self.residual > 0


class AerosolRetriever:
    """
    Retrieve AOT at 550 nm by residual minimization.

    Args:
        corrector: AtmosCorrector for the scene geometry
        atmosphere: Scene-level pressure, ozone and water vapor
        acceptance_base: Residual threshold at zero AOT
        acceptance_slope: Threshold increase per unit slant AOT
        band5_min: Minimum band 5 surface reflectance for a land retrieval
        band1_guard: Band 1 surface reflectance below which the AOT scan stops
        memory: MemoryManager sizing the pixel chunks
    """

    def __init__(self, corrector: AtmosCorrector, atmosphere: SceneAtmosphere,
                 acceptance_base: float = 0.015, acceptance_slope: float = 0.005,
                 band5_min: float = 0.1, band1_guard: float = -0.01,
                 memory: Optional[MemoryManager] = None):
        self.corrector = corrector
        self.atmosphere = atmosphere
        self.acceptance_base = acceptance_base
        self.acceptance_slope = acceptance_slope
        self.band5_min = band5_min
        self.band1_guard = band1_guard
        self.memory = memory or MemoryManager()
        self.aot_grid = corrector.tables.aot_grid
        self.xmus = corrector.geometry.mus

    def surface(self, band_id: BandId, toa, aot):
        """Surface reflectance of one band at the scene-level atmosphere."""
        atm = self.atmosphere
        return self.corrector.correct(get_band(band_id), toa, aot, atm.pressure,
                                      atm.ozone, atm.water_vapor)

    def residual(self, toa: Dict[BandId, np.ndarray], ratios: Dict[BandId, np.ndarray], aot):
        """
        Ratio-fit residual and band 1 surface reflectance at trial AOTs.

        Args:
            toa: TOA reflectance per band, shape (n,)
            ratios: Expected ratio to band 4 per band, shape (n,)
            aot: Trial AOT, shape (n,) or (n, k)

        Returns:
            (residual, band1_surface) with the shape of aot
        """
        aot = np.asarray(aot, dtype=np.float64)
        expand = (lambda a: a[:, None]) if aot.ndim == 2 else (lambda a: a)
        reference = self.surface(REFERENCE_BAND, expand(toa[REFERENCE_BAND]), aot)
        total = np.zeros(aot.shape)
        band1 = None
        for band_id in RATIO_BANDS:
            rho = self.surface(band_id, expand(toa[band_id]), aot)
            if band_id == GUARD_BAND:
                band1 = rho
            total += (rho - expand(ratios[band_id]) * reference) ** 2
        return np.sqrt(total) / 3.0, band1

    def search(self, toa: Dict[BandId, np.ndarray], ratios: Dict[BandId, np.ndarray]):
        """
        Find the residual minimum along the AOT grid for each pixel.

        Returns:
            (aot, residual) arrays of shape (n,)
        """
        grid = self.aot_grid
        n, k = toa[REFERENCE_BAND].size, grid.size
        trial = np.broadcast_to(grid, (n, k))
        res, band1 = self.residual(toa, ratios, trial)
        guard_ok = band1 >= self.band1_guard

        # Stop at the first grid point whose successor is not an improvement
        stop = np.ones((n, k), dtype=bool)
        stop[:, :-1] = (res[:, 1:] >= res[:, :-1]) | ~guard_ok[:, 1:]
        best = np.argmax(stop, axis=1)
        rows = np.arange(n)
        aot = grid[best].astype(np.float64)
        best_res = res[rows, best]

        # Parabolic refinement where the minimum is bracketed
        inner = (best > 0) & (best < k - 1)
        inner[inner] &= guard_ok[rows[inner], best[inner] + 1]
        if np.any(inner):
            idx = rows[inner]
            b = best[inner]
            x0, x1, x2 = grid[b - 1], grid[b], grid[b + 1]
            y0, y1, y2 = res[idx, b - 1], res[idx, b], res[idx, b + 1]
            num = (x1 - x0) ** 2 * (y1 - y2) - (x1 - x2) ** 2 * (y1 - y0)
            den = (x1 - x0) * (y1 - y2) - (x1 - x2) * (y1 - y0)
            with np.errstate(divide='ignore', invalid='ignore'):
                vertex = np.where(den != 0, x1 - 0.5 * num / np.where(den != 0, den, 1.0), x1)
            vertex = np.clip(vertex, x0, x2)

            sub_toa = {band_id: values[idx] for band_id, values in toa.items()}
            sub_ratios = {band_id: values[idx] for band_id, values in ratios.items()}
            refined_res, refined_band1 = self.residual(sub_toa, sub_ratios, vertex)
            better = (refined_res < y1) & (refined_band1 >= self.band1_guard)
            aot[idx[better]] = vertex[better]
            best_res[idx[better]] = refined_res[better]

        return aot, best_res

    def accept(self, toa: Dict[BandId, np.ndarray], aot, residual) -> RetrievalResult:
        """
        Apply the residual threshold and the band 5 / NDVI sanity checks.
        """
        threshold = self.acceptance_base + self.acceptance_slope * aot / self.xmus
        ok = residual < threshold

        ros5 = self.surface(BandId.B5, toa[BandId.B5], aot)
        ros4 = self.surface(BandId.B4, toa[BandId.B4], aot)
        with np.errstate(divide='ignore', invalid='ignore'):
            ndvi = (ros5 - ros4) / (ros5 + ros4)
        ok &= (ros5 > self.band5_min) & (ndvi > 0)

        return RetrievalResult(
            aot=np.where(ok, aot, 0.0),
            residual=np.where(ok, np.maximum(residual, MIN_RESIDUAL), FAILED_RESIDUAL),
        )

    def retrieve(self, toa: Dict[BandId, np.ndarray], ratios: Dict[BandId, np.ndarray]) -> RetrievalResult:
        """
        Retrieve AOT for a set of pixels.

        Args:
            toa: TOA reflectance (unscaled) of bands 1, 2, 4, 5 and 7, shape (n,)
            ratios: Expected ratios to band 4 for bands 1, 2, 4 and 7, shape (n,)

        Returns:
            RetrievalResult of shape (n,)
        """
        n = toa[REFERENCE_BAND].size
        aot = np.zeros(n)
        residual = np.full(n, FAILED_RESIDUAL)
        if n == 0:
            return RetrievalResult(aot=aot, residual=residual)

        # Roughly a dozen (n, k) float64 temporaries per pixel
        chunk = self.memory.pixel_chunk_size(n, bytes_per_pixel=12 * 8 * self.aot_grid.size)
        for start, end in self.memory.iterate_chunks(n, chunk):
            sub_toa = {band_id: np.asarray(values[start:end], dtype=np.float64)
                       for band_id, values in toa.items()}
            sub_ratios = {band_id: np.asarray(values[start:end], dtype=np.float64)
                          for band_id, values in ratios.items()}
            chunk_aot, chunk_res = self.search(sub_toa, sub_ratios)
            result = self.accept(sub_toa, chunk_aot, chunk_res)
            aot[start:end] = result.aot
            residual[start:end] = result.residual

        n_ok = int(np.count_nonzero(residual > 0))
        logger.info(f"Aerosol retrieval: {n_ok}/{n} pixels accepted ({100.0 * n_ok / n:.1f}%)")
        if n_ok:
            logger.debug(f"Retrieved AOT range: {aot[residual > 0].min():.3f} - "
                         f"{aot[residual > 0].max():.3f}")
        return RetrievalResult(aot=aot, residual=residual)
