"""
Scene-level orchestration of the surface reflectance pipeline.

Phases run strictly in order on one SceneState:

    1. calibration (TOA reflectance / brightness temperature)
    2. constant-AOT correction of bands 1-7 with the scene-level atmosphere
    3. auxiliary sampling, water / cirrus seed mask
    4. per-pixel aerosol retrieval
    5. cloud, adjacency and shadow masking
    6. AOT gap filling
    7. per-pixel correction of bands 1-7 and aerosol QA
    8. product writing
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Protocol

import numpy as np

from landsat_sr.aerosol import FAILED_RESIDUAL, RETRIEVAL_BANDS, AerosolRetriever
from landsat_sr.atmosphere.corrector import AtmosCorrector, CorrectionTerms, forward, invert
from landsat_sr.atmosphere.tables import AtmosphericTables
from landsat_sr.aux_data import AuxGridSampler, AuxiliaryGrids
from landsat_sr.bands import (
    MAX_VALID, MIN_VALID, REFLECTANCE_MULT, REFLECTANCE_SCALE,
    BandDescriptor, BandId, corrected_bands, output_bands,
)
from landsat_sr.calibration import RadiometricCalibrator
from landsat_sr.cloud_mask import AerosolConfidence, CloudMaskEngine, QaFlag, QualityMask
from landsat_sr.errors import ProductWriteError, SceneProcessingError
from landsat_sr.gap_fill import AotGapFiller
from landsat_sr.geolocation import Geolocation, pixel_centers
from landsat_sr.scene import SceneAtmosphere, SceneInputs, SceneState
from landsat_sr.utils.config import Config, get_config
from landsat_sr.utils.memory import MemoryManager

logger = logging.getLogger(__name__)

# Aerosol QA: |constant-AOT band 1 - per-pixel band 1| thresholds
AEROSOL_CLOSE_MAX = 0.015
AEROSOL_MEDIUM_MAX = 0.03


class ProductWriter(Protocol):
    """Destination of a processed scene."""

    def write_band(self, band: BandDescriptor, data: np.ndarray):
        ...

    def write_mask(self, mask: np.ndarray):
        ...

    def close(self):
        ...

    def discard(self):
        """Remove whatever was written for a scene that failed to write."""
        ...


@dataclass
class SceneResult:
    """
    Products of one scene.

    Attributes:
        scene_id: Scene identifier
        instrument: Instrument token
        bands: int16 product bands keyed by BandId
        mask: QA flags
        aot: AOT at 550 nm per pixel
        residual: Retrieval residual per pixel (>0 retrieved / filled)
        atmosphere: Scene-level atmosphere used by the constant-AOT pass
        clear_temperature: Mean clear-sky band 10 temperature (K), if thermal
    """
    scene_id: str
    instrument: str
    bands: Dict[BandId, np.ndarray]
    mask: QualityMask
    aot: np.ndarray
    residual: np.ndarray
    atmosphere: SceneAtmosphere
    clear_temperature: Optional[float] = None

    def summary(self) -> Dict[str, float]:
        n = self.aot.size
        retrieved = self.residual > 0
        return {
            'pixels': n,
            'cloud_percent': 100.0 * self.mask.count(QaFlag.CLOUD) / n,
            'cirrus_percent': 100.0 * self.mask.count(QaFlag.CIRRUS) / n,
            'shadow_percent': 100.0 * self.mask.count(QaFlag.SHADOW) / n,
            'aot_valid_percent': 100.0 * np.count_nonzero(retrieved) / n,
            'mean_aot': float(self.aot[retrieved].mean()) if np.any(retrieved) else float('nan'),
        }


@dataclass
class BatchReport:
    """Outcome of process_many: summaries of good scenes, errors of failed ones."""
    succeeded: Dict[str, Dict[str, float]] = field(default_factory=dict)
    failed: Dict[str, str] = field(default_factory=dict)


class SurfaceReflectanceProcessor:
    """
    Runs the full pipeline for scenes sharing tables and auxiliary grids.

    Args:
        tables: Radiative-transfer tables
        grids: Auxiliary grids (water vapor, ozone, DEM, ratio climatology)
        geolocation: Pixel to lat/lon mapping of the scene grid
        config: Configuration (global config if None)
        memory: MemoryManager (built from config if None)
    """

    def __init__(self, tables: AtmosphericTables, grids: AuxiliaryGrids,
                 geolocation: Geolocation, config: Optional[Config] = None,
                 memory: Optional[MemoryManager] = None):
        self.tables = tables
        self.grids = grids
        self.geolocation = geolocation
        self.config = config or get_config()
        self.memory = memory or MemoryManager(
            limit_gb=self.config.memory_limit_gb,
            chunk_size_mb=self.config.chunk_size_mb,
        )
        self.sampler = AuxGridSampler(grids)
        self.retrieval_params = self.config.section('retrieval')
        self.cloud_params = self.config.section('cloud')
        self.gap_filler = AotGapFiller(**self.config.section('gap_fill'))

    # -- phases -----------------------------------------------------------

    def scene_atmosphere(self, scene: SceneInputs) -> SceneAtmosphere:
        """Caller-supplied atmosphere, or aux grids sampled at the scene center."""
        if scene.atmosphere is not None:
            return scene.atmosphere
        nlines, nsamps = scene.shape
        lat, lon = self.geolocation.pixel_to_latlon(nlines / 2.0, nsamps / 2.0)
        pressure, ozone, water_vapor = self.sampler.sample_point(float(lat), float(lon))
        atmosphere = SceneAtmosphere(
            aot550=self.config.get('atmospheric', 'default_aot550', default=0.05),
            pressure=pressure, ozone=ozone, water_vapor=water_vapor,
        )
        logger.info(f"Scene-center atmosphere: {atmosphere}")
        return atmosphere

    def constant_aot_pass(self, state: SceneState, corrector: AtmosCorrector,
                          atmosphere: SceneAtmosphere) -> Dict[BandId, CorrectionTerms]:
        """
        Correct bands 1-7 with one atmospheric state for the whole scene.

        TOA copies of the retrieval bands are kept in state.toa. Returns the
        per-band terms used, which the final pass needs to rebuild TOA.
        """
        valid = ~state.fill
        terms = {}
        for band in corrected_bands():
            values = state.bands[band.band_id]
            if band.band_id in RETRIEVAL_BANDS:
                state.toa[band.band_id] = values.copy()

            terms[band.band_id] = corrector.terms(band, atmosphere.aot550, atmosphere.pressure,
                                                  atmosphere.ozone, atmosphere.water_vapor)
            surface = invert(values[valid] * REFLECTANCE_SCALE, terms[band.band_id])
            values[valid] = np.clip(np.trunc(surface * REFLECTANCE_MULT), MIN_VALID, MAX_VALID)
            logger.debug(f"Constant-AOT pass {band.name}: tgo={float(terms[band.band_id].tgo):.4f} "
                         f"roatm={float(terms[band.band_id].roatm):.4f}")
        return terms

    def sample_auxiliary(self, state: SceneState):
        """
        Fill per-pixel pressure / ozone / water vapor for non-fill pixels.

        Returns:
            (dem_missing, cell_line, cell_sample) full-scene arrays
        """
        shape = state.shape
        state.pressure = np.full(shape, 1013.0, dtype=np.float32)
        state.ozone = np.zeros(shape, dtype=np.float32)
        state.water_vapor = np.zeros(shape, dtype=np.float32)
        dem_missing = np.zeros(shape, dtype=bool)
        cell_line = np.zeros(shape, dtype=np.int32)
        cell_sample = np.zeros(shape, dtype=np.int32)

        lines, samps = np.nonzero(~state.fill)
        chunk = self.memory.pixel_chunk_size(lines.size, bytes_per_pixel=200)
        for start, end in self.memory.iterate_chunks(lines.size, chunk):
            l, s = lines[start:end], samps[start:end]
            lat, lon = pixel_centers(self.geolocation, l, s)
            aux = self.sampler.sample(lat, lon)
            state.pressure[l, s] = aux.pressure
            state.ozone[l, s] = aux.ozone
            state.water_vapor[l, s] = aux.water_vapor
            dem_missing[l, s] = aux.dem_missing
            cell_line[l, s] = aux.cell_line
            cell_sample[l, s] = aux.cell_sample

        logger.info(f"Sampled auxiliary data for {lines.size} pixels")
        return dem_missing, cell_line, cell_sample

    def retrieve_aerosols(self, state: SceneState, retriever: AerosolRetriever,
                          cell_line: np.ndarray, cell_sample: np.ndarray):
        """Retrieve AOT over non-fill, non-cirrus pixels; skip dark water."""
        mask = state.mask
        candidates = ~state.fill & ~mask.test(QaFlag.CIRRUS)

        b4 = state.bands[BandId.B4].astype(np.float64)
        b5 = state.bands[BandId.B5].astype(np.float64)
        with np.errstate(divide='ignore', invalid='ignore'):
            ndvi = (b5 - b4) / (b5 + b4)
        dark_water = (candidates & mask.test(QaFlag.WATER)
                      & (ndvi < self.retrieval_params['water_ndvi_threshold']))
        state.aot[dark_water] = 0.0
        state.residual[dark_water] = FAILED_RESIDUAL
        logger.info(f"Skipping {np.count_nonzero(dark_water)} water pixels")

        lines, samps = np.nonzero(candidates & ~dark_water)
        toa = {band_id: state.toa[band_id][lines, samps] * REFLECTANCE_SCALE
               for band_id in RETRIEVAL_BANDS}
        ratios = self.sampler.expected_ratios(
            cell_line[lines, samps], cell_sample[lines, samps],
            state.bands[BandId.B5][lines, samps], state.bands[BandId.B7][lines, samps],
        )
        result = retriever.retrieve(toa, ratios)
        state.aot[lines, samps] = result.aot
        state.residual[lines, samps] = result.residual

    def final_correction(self, state: SceneState, corrector: AtmosCorrector,
                         constant_terms: Dict[BandId, CorrectionTerms]):
        """
        Re-correct bands 1-7 with each pixel's own atmosphere.

        Only non-fill pixels with a retrieved or filled AOT that are neither
        cloud nor cirrus are touched. Band 1 also sets the aerosol QA flags
        and falls back to AOT 0.05 where it would go negative.
        """
        mask = state.mask
        eligible = (~state.fill & (state.residual > 0)
                    & ~mask.any(QaFlag.CIRRUS, QaFlag.CLOUD))
        lines, samps = np.nonzero(eligible)
        fallback_aot = self.retrieval_params['fallback_aot']
        negative_limit = self.retrieval_params['negative_band1_threshold']

        chunk = self.memory.pixel_chunk_size(lines.size, bytes_per_pixel=400)
        for start, end in self.memory.iterate_chunks(lines.size, chunk):
            l, s = lines[start:end], samps[start:end]
            aot = state.aot[l, s].astype(np.float64)
            pressure = state.pressure[l, s].astype(np.float64)
            ozone = state.ozone[l, s].astype(np.float64)
            water_vapor = state.water_vapor[l, s].astype(np.float64)

            for band in corrected_bands():
                values = state.bands[band.band_id]
                rsurf = values[l, s] * REFLECTANCE_SCALE
                rotoa = forward(rsurf, constant_terms[band.band_id])
                ros = corrector.correct(band, rotoa, aot, pressure, ozone, water_vapor)

                if band.band_id == BandId.B1:
                    negative = ros < negative_limit
                    if np.any(negative):
                        aot[negative] = fallback_aot
                        state.aot[l[negative], s[negative]] = fallback_aot
                        ros[negative] = corrector.correct(
                            band, rotoa[negative], aot[negative], pressure[negative],
                            ozone[negative], water_vapor[negative])
                    self._flag_aerosol_quality(mask, l[~negative], s[~negative],
                                               np.abs(rsurf - ros)[~negative])

                values[l, s] = np.clip(np.trunc(ros * REFLECTANCE_MULT), MIN_VALID, MAX_VALID)

        logger.info(f"Per-pixel correction applied to {lines.size} pixels")

    @staticmethod
    def _flag_aerosol_quality(mask: QualityMask, lines, samps, difference):
        close = difference <= AEROSOL_CLOSE_MAX
        medium = ~close & (difference < AEROSOL_MEDIUM_MAX)
        poor = ~close & ~medium
        for level, selected in ((AerosolConfidence.CLOSE, close),
                                (AerosolConfidence.MEDIUM, medium),
                                (AerosolConfidence.POOR, poor)):
            mask.set_aerosol_confidence((lines[selected], samps[selected]), level)

    # -- driver -------------------------------------------------------------

    def process(self, scene: SceneInputs, writer: Optional[ProductWriter] = None) -> SceneResult:
        """
        Process one scene end to end.

        Args:
            scene: Scene inputs
            writer: Optional product writer, called only after success

        Returns:
            SceneResult

        Raises:
            SceneProcessingError: on any fatal error; nothing is written
        """
        logger.info("=" * 60)
        logger.info(f"Processing scene {scene.scene_id} ({scene.instrument})")
        logger.info("=" * 60)

        nlines, nsamps = scene.shape
        self.memory.check_scene(nlines, nsamps)

        with self.memory.processing_context(f"scene {scene.scene_id}"):
            geometry = scene.geometry
            state = SceneState(fill=scene.fill)
            state.mask = QualityMask(scene.shape, fill=scene.fill)
            state.aot = np.zeros(scene.shape, dtype=np.float32)
            state.residual = np.zeros(scene.shape, dtype=np.float32)

            logger.info("Step 1: radiometric calibration")
            calibrator = RadiometricCalibrator(geometry, scene.instrument)
            state.bands = calibrator.calibrate(scene.reader, scene.fill)

            logger.info("Step 2: constant-AOT atmospheric correction")
            atmosphere = self.scene_atmosphere(scene)
            corrector = AtmosCorrector(self.tables, geometry)
            constant_terms = self.constant_aot_pass(state, corrector, atmosphere)

            logger.info("Step 3: auxiliary data and seed mask")
            dem_missing, cell_line, cell_sample = self.sample_auxiliary(state)
            cloud_engine = CloudMaskEngine(geometry, memory=self.memory, **self.cloud_params)
            cloud_engine.seed(state, dem_missing)

            logger.info("Step 4: aerosol retrieval")
            retriever = AerosolRetriever(
                corrector, atmosphere,
                acceptance_base=self.retrieval_params['acceptance_base'],
                acceptance_slope=self.retrieval_params['acceptance_slope'],
                band5_min=self.retrieval_params['band5_min'],
                band1_guard=self.retrieval_params['band1_guard'],
                memory=self.memory,
            )
            self.retrieve_aerosols(state, retriever, cell_line, cell_sample)
            state.toa.clear()

            logger.info("Step 5: cloud and shadow masking")
            clear_temperature = cloud_engine.refine(state)

            logger.info("Step 6: AOT gap filling")
            self.gap_filler.fill(state.aot, state.residual, state.mask)

            logger.info("Step 7: per-pixel atmospheric correction")
            self.final_correction(state, corrector, constant_terms)

        result = SceneResult(
            scene_id=scene.scene_id,
            instrument=scene.instrument,
            bands=state.bands,
            mask=state.mask,
            aot=state.aot,
            residual=state.residual,
            atmosphere=atmosphere,
            clear_temperature=clear_temperature,
        )
        logger.info(f"Scene {scene.scene_id} summary: {result.summary()}")

        if writer is not None:
            self.write(result, writer)
        return result

    def write(self, result: SceneResult, writer: ProductWriter):
        """
        Hand every output band and the packed QA mask to the writer.

        Raises:
            ProductWriteError: on an OS error; partial output is discarded first
        """
        logger.info("Step 8: writing products")
        try:
            for band in output_bands(result.instrument):
                writer.write_band(band, result.bands[band.band_id])
            writer.write_mask(result.mask.encode())
            writer.close()
        except OSError as e:
            writer.discard()
            raise ProductWriteError(f"Writing scene {result.scene_id} failed: {e}") from e

    def process_many(self, scenes: Iterable[SceneInputs],
                     writer_factory: Optional[Callable[[SceneInputs], ProductWriter]] = None) -> BatchReport:
        """
        Process several scenes; a failing scene is logged and skipped.

        Args:
            scenes: Scene inputs
            writer_factory: Builds a writer for each scene

        Returns:
            BatchReport
        """
        report = BatchReport()
        for scene in scenes:
            try:
                writer = self._make_writer(writer_factory, scene)
                result = self.process(scene, writer)
            except SceneProcessingError as e:
                logger.error(f"Scene {scene.scene_id} failed: {e}")
                report.failed[scene.scene_id] = str(e)
                continue
            report.succeeded[scene.scene_id] = result.summary()
        logger.info(f"Batch done: {len(report.succeeded)} succeeded, {len(report.failed)} failed")
        return report

    @staticmethod
    def _make_writer(writer_factory, scene: SceneInputs) -> Optional[ProductWriter]:
        if writer_factory is None:
            return None
        try:
            return writer_factory(scene)
        except OSError as e:
            raise ProductWriteError(f"Cannot create output for scene {scene.scene_id}: {e}") from e
