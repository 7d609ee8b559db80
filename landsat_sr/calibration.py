"""
Radiometric calibration of Level-1 DN to scaled TOA products.

Reflective and cirrus bands become TOA reflectance corrected for the solar
zenith angle, thermal bands become brightness temperature. Both are stored
as int16 using the product scaling in landsat_sr.bands.
"""

import logging
from typing import Dict, Iterable, Optional

import numpy as np

from landsat_sr.bands import (
    FILL_VALUE, MAX_VALID, MAX_VALID_TH, MIN_VALID, MIN_VALID_TH,
    REFLECTANCE_MULT, THERMAL_MULT, BandDescriptor, BandId, BandRole,
    bands_with_role, has_thermal,
)
from landsat_sr.errors import InputValidationError
from landsat_sr.scene import BandReader, SceneGeometry

logger = logging.getLogger(__name__)


class RadiometricCalibrator:
    """
    DN to TOA reflectance / brightness temperature.

    Args:
        geometry: Scene geometry (solar zenith sets the cosine correction)
        instrument: Instrument token; thermal bands are skipped for "OLI"
    """

    def __init__(self, geometry: SceneGeometry, instrument: str = "OLI_TIRS"):
        self.geometry = geometry
        self.instrument = instrument
        self.xmus = geometry.mus

    def bands_to_calibrate(self) -> Iterable[BandDescriptor]:
        roles = [BandRole.REFLECTIVE, BandRole.CIRRUS]
        if has_thermal(self.instrument):
            roles.append(BandRole.THERMAL)
        return bands_with_role(*roles)

    def toa_reflectance(self, band: BandDescriptor, dn: np.ndarray,
                        fill: np.ndarray) -> np.ndarray:
        """
        Scaled TOA reflectance for one reflective or cirrus band.

        Args:
            band: Band descriptor
            dn: Level-1 digital numbers
            fill: Boolean fill mask

        Returns:
            int16 array, reflectance * 10000 clamped to the valid range
        """
        rho = (dn.astype(np.float64) * band.gain + band.bias) * REFLECTANCE_MULT / self.xmus
        out = np.clip(np.rint(rho), MIN_VALID, MAX_VALID).astype(np.int16)
        out[fill] = FILL_VALUE
        return out

    def brightness_temperature(self, band: BandDescriptor, dn: np.ndarray,
                               fill: np.ndarray) -> np.ndarray:
        """
        Scaled brightness temperature for one thermal band.

        Returns:
            int16 array, temperature (K) * 10 clamped to the valid range
        """
        radiance = dn.astype(np.float64) * band.gain + band.bias
        with np.errstate(divide='ignore', invalid='ignore'):
            temperature = band.k2 / np.log(band.k1 / radiance + 1.0)
        scaled = np.floor(temperature * THERMAL_MULT + 0.5)
        scaled = np.nan_to_num(scaled, nan=MIN_VALID_TH, posinf=MAX_VALID_TH, neginf=MIN_VALID_TH)
        out = np.clip(scaled, MIN_VALID_TH, MAX_VALID_TH).astype(np.int16)
        out[fill] = FILL_VALUE
        return out

    def calibrate_band(self, band: BandDescriptor, dn: np.ndarray,
                       fill: np.ndarray) -> np.ndarray:
        if dn.shape != fill.shape:
            raise InputValidationError(
                f"{band.name} shape {dn.shape} does not match fill mask {fill.shape}"
            )
        if band.role == BandRole.THERMAL:
            return self.brightness_temperature(band, dn, fill)
        if band.role in (BandRole.REFLECTIVE, BandRole.CIRRUS):
            return self.toa_reflectance(band, dn, fill)
        raise InputValidationError(f"{band.name} ({band.role.value}) is not calibrated")

    def calibrate(self, reader: BandReader, fill: np.ndarray,
                  bands: Optional[Iterable[BandDescriptor]] = None) -> Dict[BandId, np.ndarray]:
        """
        Calibrate every band the instrument provides.

        Args:
            reader: DN source
            fill: Boolean fill mask
            bands: Optional subset of descriptors

        Returns:
            Dict of BandId -> int16 array
        """
        bands = list(bands) if bands is not None else list(self.bands_to_calibrate())
        result = {}
        for band in bands:
            dn = reader.read_band(band.band_id, 0, reader.nlines)
            result[band.band_id] = self.calibrate_band(band, dn, fill)
            logger.debug(f"Calibrated {band.name}")
        logger.info(f"Calibrated {len(result)} bands (instrument {self.instrument})")
        return result
