"""
Cloud, cloud-shadow and aerosol QA masking.

The mask is a set of independent boolean flag planes that is packed into
one byte per pixel only when written:

    bit 0 (1)    cirrus
    bit 1 (2)    cloud
    bit 2 (4)    adjacent to cloud / cirrus
    bit 3 (8)    cloud shadow
    bit 4 (16)   aerosol QA, low bit
    bit 5 (32)   aerosol QA, high bit
    bit 6 (64)   provisional shadow (internal, never written)
    bit 7 (128)  water

Passes run in a fixed order and only ever add flags, except the provisional
shadow mark which is promoted to shadow and cleared in one step.
"""

import logging
from enum import Enum, IntFlag
from typing import Optional

import numpy as np
from scipy import ndimage

from landsat_sr.bands import THERMAL_SCALE, BandId
from landsat_sr.scene import SceneGeometry, SceneState
from landsat_sr.utils.memory import MemoryManager

logger = logging.getLogger(__name__)

CIRRUS_THRESHOLD = 100.0        # scaled TOA reflectance at 1013 hPa
CLEAR_BAND5_MIN = 300
CLEAR_ANOMALY_MAX = 300
CLOUD_ANOMALY_MIN = 500
CLOUD_TEMPERATURE_MARGIN = 2.0  # K below the clear-sky mean
SHADOW_BAND6_MAX = 800
SHADOW_B3_B4_MAX = 100
CLOUD_HEIGHT_SPREAD = 1000.0    # m searched either side of the estimate
CLOUD_HEIGHT_STEP = 10.0        # m


class QaFlag(IntFlag):
    CIRRUS = 1
    CLOUD = 2
    ADJACENT = 4
    SHADOW = 8
    AEROSOL_1 = 16
    AEROSOL_2 = 32
    PROVISIONAL_SHADOW = 64
    WATER = 128


ALL_FLAGS = (QaFlag.CIRRUS, QaFlag.CLOUD, QaFlag.ADJACENT, QaFlag.SHADOW,
             QaFlag.AEROSOL_1, QaFlag.AEROSOL_2, QaFlag.PROVISIONAL_SHADOW, QaFlag.WATER)


class AerosolConfidence(Enum):
    """Agreement between constant-AOT and per-pixel band 1 reflectance."""
    CLOSE = (QaFlag.AEROSOL_1,)
    MEDIUM = (QaFlag.AEROSOL_2,)
    POOR = (QaFlag.AEROSOL_1, QaFlag.AEROSOL_2)


class QualityMask:
    """
    Per-pixel QA flags stored as independent boolean planes.

    Fill pixels can never be flagged.

    Args:
        shape: Scene shape (nlines, nsamps)
        fill: Optional boolean fill mask
    """

    def __init__(self, shape, fill: Optional[np.ndarray] = None):
        self.shape = tuple(shape)
        self._planes = {flag: np.zeros(self.shape, dtype=bool) for flag in ALL_FLAGS}
        self._valid = ~fill if fill is not None else np.ones(self.shape, dtype=bool)

    def set(self, flag: QaFlag, where):
        """Raise a flag where `where` is True (or at the given indices)."""
        plane = self._planes[flag]
        if isinstance(where, np.ndarray) and where.dtype == bool:
            plane |= where & self._valid
        else:
            selected = np.zeros(self.shape, dtype=bool)
            selected[where] = True
            plane |= selected & self._valid

    def clear(self, flag: QaFlag, where=None):
        """Lower a flag where `where` is True, or everywhere."""
        if where is None:
            self._planes[flag][:] = False
        else:
            self._planes[flag][where] = False

    def test(self, flag: QaFlag) -> np.ndarray:
        """Boolean plane of one flag (do not modify)."""
        return self._planes[flag]

    def any(self, *flags: QaFlag) -> np.ndarray:
        """True where at least one of the flags is raised."""
        result = np.zeros(self.shape, dtype=bool)
        for flag in flags:
            result |= self._planes[flag]
        return result

    def is_clear(self) -> np.ndarray:
        """True where no flag at all is raised."""
        return ~self.any(*ALL_FLAGS)

    def count(self, flag: QaFlag) -> int:
        return int(np.count_nonzero(self._planes[flag]))

    def set_aerosol_confidence(self, where, level: AerosolConfidence):
        for flag in level.value:
            self.set(flag, where)

    def mark_provisional_shadow(self, where):
        self.set(QaFlag.PROVISIONAL_SHADOW, where)

    def promote_provisional_shadow(self) -> int:
        """Turn every provisional mark into a shadow flag; returns the count."""
        provisional = self._planes[QaFlag.PROVISIONAL_SHADOW]
        n = int(np.count_nonzero(provisional))
        self._planes[QaFlag.SHADOW] |= provisional
        provisional[:] = False
        return n

    def encode(self) -> np.ndarray:
        """Pack the flags into one uint8 per pixel."""
        packed = np.zeros(self.shape, dtype=np.uint8)
        for flag, plane in self._planes.items():
            packed[plane] |= np.uint8(flag.value)
        return packed

    @classmethod
    def decode(cls, packed: np.ndarray) -> 'QualityMask':
        packed = np.asarray(packed, dtype=np.uint8)
        mask = cls(packed.shape)
        for flag in ALL_FLAGS:
            mask._planes[flag] = (packed & flag.value) != 0
        return mask


def _square(radius: int) -> np.ndarray:
    return np.ones((2 * radius + 1, 2 * radius + 1), dtype=bool)


class CloudMaskEngine:
    """
    Builds the cirrus / cloud / adjacency / shadow flags of a scene.

    Args:
        geometry: Scene geometry (sun direction drives shadow projection)
        cloud_factor: Lapse rate in K per km used for the cloud height
        adjacency_radius: Half width of the adjacency window
        shadow_expansion_radius: Half width of the shadow expansion window
        fallback_clear_temperature: Clear-sky temperature (K) when no pixel qualifies
        memory: MemoryManager sizing the shadow search chunks
    """

    def __init__(self, geometry: SceneGeometry, cloud_factor: float = 6.0,
                 adjacency_radius: int = 5, shadow_expansion_radius: int = 6,
                 fallback_clear_temperature: float = 275.0,
                 memory: Optional[MemoryManager] = None):
        self.geometry = geometry
        self.cloud_factor = cloud_factor
        self.adjacency_radius = adjacency_radius
        self.shadow_expansion_radius = shadow_expansion_radius
        self.fallback_clear_temperature = fallback_clear_temperature
        self.memory = memory or MemoryManager(chunk_size_mb=64)

        tan_ts = np.tan(np.radians(geometry.solar_zenith))
        azimuth = np.radians(geometry.solar_azimuth)
        # Ground displacement per meter of cloud height, in lines / samples
        self.facl = np.cos(azimuth) * tan_ts / geometry.pixel_size
        self.fack = np.sin(azimuth) * tan_ts / geometry.pixel_size

    # -- pass 1 ---------------------------------------------------------

    def seed(self, state: SceneState, dem_missing: np.ndarray):
        """
        Flag water (missing DEM) and cirrus.

        Pixels over a missing DEM get residual -1. The cirrus test compares
        the band 9 TOA reflectance with a pressure-scaled threshold.
        """
        mask = state.mask
        valid = ~state.fill
        water = dem_missing & valid
        mask.set(QaFlag.WATER, water)
        state.residual[water] = -1.0

        cirrus_toa = state.bands[BandId.B9].astype(np.float64)
        with np.errstate(divide='ignore', invalid='ignore'):
            threshold = CIRRUS_THRESHOLD / (state.pressure / 1013.0)
        mask.set(QaFlag.CIRRUS, valid & (cirrus_toa > threshold))
        logger.info(f"Seed mask: {mask.count(QaFlag.WATER)} water, "
                    f"{mask.count(QaFlag.CIRRUS)} cirrus pixels")

    # -- pass 2 ---------------------------------------------------------

    def mean_clear_temperature(self, state: SceneState) -> float:
        """
        Mean band 10 temperature (K) of clear-looking land pixels.

        Clear pixels are non-fill, non-cirrus, with band 5 above 300 and a
        blue / red anomaly below 300 (scaled surface reflectance).
        """
        b2 = state.bands[BandId.B2].astype(np.float64)
        b4 = state.bands[BandId.B4].astype(np.float64)
        b5 = state.bands[BandId.B5]
        temperature = state.bands[BandId.B10] * THERMAL_SCALE
        valid = ~state.fill

        clear = (valid & ~state.mask.test(QaFlag.CIRRUS) & (b5 > CLEAR_BAND5_MIN)
                 & ((b2 - b4 * 0.5) < CLEAR_ANOMALY_MAX))
        n_clear = int(np.count_nonzero(clear))
        if n_clear:
            mclear = float(temperature[clear].mean())
        else:
            mclear = self.fallback_clear_temperature
        if np.any(valid):
            mall = float(temperature[valid].mean())
            logger.info(f"Average clear temperature {mclear:.2f} K "
                        f"({100.0 * n_clear / state.fill.size:.1f}% clear), all {mall:.2f} K")
        return mclear

    def flag_clouds(self, state: SceneState, clear_temperature: float):
        """Cloud (or snow) where retrieval failed, the pixel is bright in blue and cold."""
        b2 = state.bands[BandId.B2].astype(np.float64)
        b4 = state.bands[BandId.B4].astype(np.float64)
        temperature = state.bands[BandId.B10] * THERMAL_SCALE
        cloud = ((state.residual < 0.0)
                 & ((b2 - b4 * 0.5) > CLOUD_ANOMALY_MIN)
                 & (temperature < clear_temperature - CLOUD_TEMPERATURE_MARGIN))
        state.mask.set(QaFlag.CLOUD, cloud)
        logger.info(f"Cloud pixels: {state.mask.count(QaFlag.CLOUD)}")

    # -- pass 3 ---------------------------------------------------------

    def flag_adjacent(self, state: SceneState):
        mask = state.mask
        bad = mask.any(QaFlag.CLOUD, QaFlag.CIRRUS)
        near = ndimage.binary_dilation(bad, structure=_square(self.adjacency_radius))
        mask.set(QaFlag.ADJACENT, near & ~bad)
        logger.info(f"Adjacent pixels: {mask.count(QaFlag.ADJACENT)}")

    # -- pass 4 ---------------------------------------------------------

    def _shadow_candidates(self, lines, samps, temperature, clear_temperature, shape):
        """Ground pixels each cloud could shade, ordered by increasing height."""
        height = np.maximum((clear_temperature - temperature) * 1000.0 / self.cloud_factor, 0.0)
        first = np.floor(np.maximum(height - CLOUD_HEIGHT_SPREAD, 0.0) / CLOUD_HEIGHT_STEP)
        last = np.floor((height + CLOUD_HEIGHT_SPREAD) / CLOUD_HEIGHT_STEP)
        n_steps = int((last - first).max()) + 1

        steps = first[:, None] + np.arange(n_steps)[None, :]
        heights = steps * CLOUD_HEIGHT_STEP
        k = np.trunc(lines[:, None] + self.facl * heights).astype(np.int64)
        l = np.trunc(samps[:, None] - self.fack * heights).astype(np.int64)
        inside = ((steps <= last[:, None]) & (k >= 0) & (k < shape[0])
                  & (l >= 0) & (l < shape[1]))
        return np.where(inside, k * shape[1] + l, -1)

    @staticmethod
    def _pick(candidates, band6, eligible, taken=None):
        """First candidate with the lowest band 6 reflectance, or -1."""
        ok = candidates >= 0
        index = np.where(ok, candidates, 0)
        usable = ok & eligible[index]
        if taken is not None:
            usable &= ~taken[index]
        score = np.where(usable, band6[index], np.iinfo(np.int32).max)
        best = np.argmin(score, axis=-1)
        found = np.take_along_axis(usable, best[..., None], axis=-1)[..., 0]
        chosen = np.take_along_axis(index, best[..., None], axis=-1)[..., 0]
        return np.where(found, chosen, -1)

    def cast_shadows(self, state: SceneState, clear_temperature: float) -> int:
        """
        Project every cloud / cirrus pixel onto the ground and flag a shadow.

        Clouds are visited in row-major order; a ground pixel already shaded
        by an earlier cloud in this pass cannot be chosen again.

        Returns:
            Number of shadow pixels set
        """
        mask = state.mask
        shape = state.shape
        seeds = mask.any(QaFlag.CLOUD, QaFlag.CIRRUS)
        lines, samps = np.nonzero(seeds)
        if lines.size == 0:
            return 0

        b3 = state.bands[BandId.B3].astype(np.int32).ravel()
        b4 = state.bands[BandId.B4].astype(np.int32).ravel()
        band6 = state.bands[BandId.B6].astype(np.int32).ravel()
        temperature = state.bands[BandId.B10][lines, samps] * THERMAL_SCALE
        eligible = ((band6 < SHADOW_BAND6_MAX) & ((b3 - b4) < SHADOW_B3_B4_MAX)
                    & ~mask.any(QaFlag.CLOUD, QaFlag.CIRRUS, QaFlag.SHADOW).ravel()
                    & ~state.fill.ravel())

        # Unconstrained choice per cloud, vectorized in chunks
        n_clouds = lines.size
        first_choice = np.empty(n_clouds, dtype=np.int64)
        max_steps = int(2 * CLOUD_HEIGHT_SPREAD / CLOUD_HEIGHT_STEP) + 2
        chunk = self.memory.pixel_chunk_size(n_clouds, bytes_per_pixel=max_steps * 40)
        for start, end in self.memory.iterate_chunks(n_clouds, chunk):
            candidates = self._shadow_candidates(lines[start:end], samps[start:end],
                                                 temperature[start:end], clear_temperature, shape)
            first_choice[start:end] = self._pick(candidates, band6, eligible)

        # A cloud only needs a second look when an earlier cloud took its pick
        taken = np.zeros(band6.size, dtype=bool)
        for n in range(n_clouds):
            choice = first_choice[n]
            if choice < 0:
                continue
            if taken[choice]:
                candidates = self._shadow_candidates(lines[n:n + 1], samps[n:n + 1],
                                                     temperature[n:n + 1], clear_temperature, shape)
                choice = self._pick(candidates, band6, eligible, taken)[0]
                if choice < 0:
                    continue
            taken[choice] = True

        mask.set(QaFlag.SHADOW, taken.reshape(shape))
        n_shadow = int(np.count_nonzero(taken))
        logger.info(f"Cloud shadow: {n_shadow} pixels from {n_clouds} cloud/cirrus pixels")
        return n_shadow

    # -- pass 5 ---------------------------------------------------------

    def expand_shadows(self, state: SceneState) -> int:
        """
        Grow shadows into neighboring pixels whose retrieval failed.

        Marks are made against a snapshot of the shadow plane so newly
        marked pixels do not grow further, then promoted to shadow.
        """
        mask = state.mask
        shadow = mask.test(QaFlag.SHADOW).copy()
        near = ndimage.binary_dilation(shadow, structure=_square(self.shadow_expansion_radius))
        targets = (near & ~mask.any(QaFlag.CLOUD, QaFlag.SHADOW, QaFlag.PROVISIONAL_SHADOW)
                   & (state.residual < 0.0))
        mask.mark_provisional_shadow(targets)
        n = mask.promote_provisional_shadow()
        logger.info(f"Shadow expansion added {n} pixels")
        return n

    def refine(self, state: SceneState) -> Optional[float]:
        """
        Run passes 2 to 5.

        Without thermal bands the temperature-based cloud test and shadow
        projection are skipped; only adjacency to cirrus is flagged.

        Returns:
            Mean clear-sky temperature (K), or None without thermal data
        """
        if BandId.B10 not in state.bands:
            logger.warning("No thermal band: skipping cloud test and shadow projection")
            self.flag_adjacent(state)
            return None

        clear_temperature = self.mean_clear_temperature(state)
        self.flag_clouds(state, clear_temperature)
        self.flag_adjacent(state)
        self.cast_shadows(state, clear_temperature)
        self.expand_shadows(state)
        return clear_temperature
