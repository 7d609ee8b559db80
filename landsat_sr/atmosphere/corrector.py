"""
Lambertian atmospheric correction driven by the radiative-transfer tables.

The sun / view geometry is fixed for a scene, so at construction every
band's tables are reduced over the angle axes to (pressure, aot) planes.
Each correction call then only needs a bilinear lookup plus the analytic
gas and Rayleigh terms, which keeps the per-pixel pass vectorized.

    y    = (rho_toa / tgo - roatm) / ttatmg
    rho_s = y / (1 + satm * y)

and the forward model used to rebuild TOA reflectance:

    rho_toa = (rho_s * ttatmg / (1 - satm * rho_s) + roatm) * tgo
"""

import logging
from dataclasses import dataclass
from typing import Dict

import numpy as np

from landsat_sr.atmosphere.gas import gaseous_transmittance
from landsat_sr.atmosphere.rayleigh import rayleigh_reflectance
from landsat_sr.atmosphere.tables import AtmosphericTables, bilinear, bracket, interp_axis
from landsat_sr.bands import BandDescriptor, BandId, corrected_bands
from landsat_sr.scene import SceneGeometry

logger = logging.getLogger(__name__)


@dataclass
class CorrectionTerms:
    """
    Atmospheric terms for one band at a given atmospheric state.

    Attributes:
        tgo: Gaseous transmittance excluding water vapor
        roatm: Intrinsic atmospheric reflectance (water vapor adjusted)
        ttatmg: Total two-way scattering transmittance times water vapor transmittance
        satm: Spherical albedo
        xrorayp: Rayleigh reflectance
        next: Normalized aerosol extinction
    """
    tgo: np.ndarray
    roatm: np.ndarray
    ttatmg: np.ndarray
    satm: np.ndarray
    xrorayp: np.ndarray
    next: np.ndarray


@dataclass
class _BandPlanes:
    intrinsic: np.ndarray
    ttatm: np.ndarray
    satm: np.ndarray
    next: np.ndarray


def invert(toa, terms: CorrectionTerms):
    """Surface reflectance from TOA reflectance."""
    y = (np.asarray(toa, dtype=np.float64) / terms.tgo - terms.roatm) / terms.ttatmg
    return y / (1.0 + terms.satm * y)


def forward(surface, terms: CorrectionTerms):
    """TOA reflectance from surface reflectance."""
    surface = np.asarray(surface, dtype=np.float64)
    return (surface * terms.ttatmg / (1.0 - terms.satm * surface) + terms.roatm) * terms.tgo


class AtmosCorrector:
    """
    Atmospheric correction for the reflective bands of one scene.

    Args:
        tables: Radiative-transfer tables
        geometry: Scene sun / view geometry

    Raises:
        TableLookupError: if an angle lies outside its table axis
    """

    def __init__(self, tables: AtmosphericTables, geometry: SceneGeometry):
        self.tables = tables
        self.geometry = geometry
        self.airmass = geometry.airmass
        self._planes: Dict[BandId, _BandPlanes] = {}

        i_s, w_s = bracket(tables.solar_zenith_grid, geometry.solar_zenith, 'solar zenith')
        i_v, w_v = bracket(tables.view_zenith_grid, geometry.view_zenith, 'view zenith')
        i_r, w_r = bracket(tables.azimuth_grid, geometry.relative_azimuth, 'relative azimuth')
        j_s, u_s = bracket(tables.zenith_grid, geometry.solar_zenith, 'solar zenith')
        j_v, u_v = bracket(tables.zenith_grid, geometry.view_zenith, 'view zenith')

        for band in corrected_bands():
            b = band.table_index
            # [pressure, aot, sza, vza, raa] -> [pressure, aot]
            intrinsic = interp_axis(tables.intrinsic_reflectance[b], 4, i_r, w_r)
            intrinsic = interp_axis(intrinsic, 3, i_v, w_v)
            intrinsic = interp_axis(intrinsic, 2, i_s, w_s)
            trans = tables.transmittance[b]
            ttatm = interp_axis(trans, 2, j_s, u_s) * interp_axis(trans, 2, j_v, u_v)
            self._planes[band.band_id] = _BandPlanes(
                intrinsic=intrinsic, ttatm=ttatm,
                satm=tables.spherical_albedo[b], next=tables.normalized_extinction[b],
            )

        logger.debug(f"AtmosCorrector ready: sza={geometry.solar_zenith:.2f} "
                     f"vza={geometry.view_zenith:.2f} raa={geometry.relative_azimuth:.2f}")

    def terms(self, band: BandDescriptor, aot, pressure, ozone, water_vapor) -> CorrectionTerms:
        """
        Atmospheric terms for one band.

        Args:
            band: Reflective band descriptor
            aot: AOT at 550 nm (scalar or array)
            pressure: Surface pressure in hPa
            ozone: Total ozone in cm-atm
            water_vapor: Column water vapor in g/cm^2

        Returns:
            CorrectionTerms broadcast over the inputs

        Raises:
            TableLookupError: if pressure or AOT is outside the tables
        """
        planes = self._planes[band.band_id]
        ip, wp = bracket(self.tables.pressure_grid, pressure, 'pressure')
        ia, wa = bracket(self.tables.aot_grid, aot, 'aot')

        roatm = bilinear(planes.intrinsic, ip, wp, ia, wa)
        ttatm = bilinear(planes.ttatm, ip, wp, ia, wa)
        satm = bilinear(planes.satm, ip, wp, ia, wa)
        nxt = bilinear(planes.next, ip, wp, ia, wa)

        gas = gaseous_transmittance(band.gas, self.airmass, pressure, ozone, water_vapor)
        xrorayp = rayleigh_reflectance(band.gas.tauray, pressure, self.geometry.mus,
                                       self.geometry.muv, self.geometry.cos_scattering)

        roatm = (roatm - xrorayp) * gas.water_vapor_half + xrorayp
        return CorrectionTerms(
            tgo=gas.tgo,
            roatm=roatm,
            ttatmg=ttatm * gas.water_vapor,
            satm=satm,
            xrorayp=xrorayp,
            next=nxt,
        )

    def correct(self, band: BandDescriptor, toa, aot, pressure, ozone, water_vapor):
        """Surface reflectance for TOA reflectance at the given atmospheric state."""
        return invert(toa, self.terms(band, aot, pressure, ozone, water_vapor))

    def to_toa(self, band: BandDescriptor, surface, aot, pressure, ozone, water_vapor):
        """TOA reflectance for surface reflectance at the given atmospheric state."""
        return forward(surface, self.terms(band, aot, pressure, ozone, water_vapor))
