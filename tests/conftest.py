"""
Shared fixtures: analytic radiative-transfer tables, uniform auxiliary grids
and a synthetic DN scene builder.
"""

import numpy as np
import pytest

from landsat_sr.atmosphere.tables import AOT550_GRID, PRESSURE_GRID, AtmosphericTables
from landsat_sr.aux_data import AuxiliaryGrids, CmgGridSpec, RatioClimatology
from landsat_sr.bands import BAND_TABLE, BandId, corrected_bands
from landsat_sr.geolocation import GeographicGeolocation
from landsat_sr.scene import SceneAtmosphere, SceneGeometry

SZA_GRID = np.arange(0.0, 81.0, 10.0)
VZA_GRID = np.arange(0.0, 21.0, 5.0)
RAA_GRID = np.arange(0.0, 181.0, 30.0)
ZENITH_GRID = np.arange(0.0, 85.0, 6.0)

AEROSOL_PHASE = 0.27  # single-scattering albedo x phase function


def build_synthetic_tables() -> AtmosphericTables:
    """
    Smooth single-scattering atmosphere: Rayleigh + Angstrom aerosol.

    Path reflectance grows and transmittance drops with AOT, faster in the
    blue than in the SWIR, which is what the aerosol retrieval relies on.
    """
    bands = corrected_bands()
    pressure = PRESSURE_GRID[None, :, None]
    aot = AOT550_GRID[None, None, :]
    tau_r = np.array([b.gas.tauray for b in bands])[:, None, None] * pressure / 1013.0
    angstrom = np.array([(b.wavelength_um / 0.55) ** -1.3 for b in bands])[:, None, None]
    normext = angstrom * np.ones((1, PRESSURE_GRID.size, AOT550_GRID.size))
    tau_a = aot * normext

    spherical_albedo = 1.0 - np.exp(-(0.4 * tau_r + 0.15 * tau_a))
    extinction = 0.5 * tau_r + 0.2 * tau_a
    transmittance = np.exp(-extinction[..., None] / np.cos(np.radians(ZENITH_GRID)))

    ts, tv, phi = np.meshgrid(np.radians(SZA_GRID), np.radians(VZA_GRID),
                              np.radians(RAA_GRID), indexing='ij')
    mus, muv = np.cos(ts), np.cos(tv)
    cos_scat = -mus * muv - np.sin(ts) * np.sin(tv) * np.cos(phi)
    airmass = 1.0 / mus + 1.0 / muv
    geometric = 4.0 * (mus + muv)

    tau_r6 = tau_r[..., None, None, None]
    tau_a6 = tau_a[..., None, None, None]
    rayleigh = 0.75 * (1.0 + cos_scat ** 2) * (1.0 - np.exp(-tau_r6 * airmass)) / geometric
    aerosol = AEROSOL_PHASE * (1.0 - np.exp(-tau_a6 * airmass)) / geometric

    return AtmosphericTables(
        aot_grid=AOT550_GRID,
        pressure_grid=PRESSURE_GRID,
        solar_zenith_grid=SZA_GRID,
        view_zenith_grid=VZA_GRID,
        azimuth_grid=RAA_GRID,
        zenith_grid=ZENITH_GRID,
        intrinsic_reflectance=rayleigh + aerosol,
        transmittance=transmittance,
        spherical_albedo=spherical_albedo,
        normalized_extinction=normext,
    )


def build_uniform_grids(shape=(40, 40), water_vapor=200, ozone=120, dem=0,
                        spec=CmgGridSpec(ul_lat=41.0, ul_lon=-101.0, cell_size=0.05)) -> AuxiliaryGrids:
    return AuxiliaryGrids(
        water_vapor=np.full(shape, water_vapor, dtype=np.uint16),
        ozone=np.full(shape, ozone, dtype=np.uint8),
        dem=np.full(shape, dem, dtype=np.int16),
        ratios=RatioClimatology.empty(shape),
        spec=spec,
    )


def toa_to_dn(toa, solar_zenith):
    """Level-1 DN that calibrates back to the given TOA reflectance."""
    band = BAND_TABLE[BandId.B1]
    dn = (np.asarray(toa) * np.cos(np.radians(solar_zenith)) - band.bias) / band.gain
    return np.clip(np.rint(dn), 0, 65535).astype(np.uint16)


def temperature_to_dn(temperature, band_id=BandId.B10):
    """Level-1 DN of a thermal band for a brightness temperature in K."""
    band = BAND_TABLE[band_id]
    radiance = band.k1 / (np.exp(band.k2 / np.asarray(temperature, dtype=np.float64)) - 1.0)
    return np.clip(np.rint((radiance - band.bias) / band.gain), 0, 65535).astype(np.uint16)


@pytest.fixture(scope="session")
def tables():
    return build_synthetic_tables()


@pytest.fixture
def grids():
    return build_uniform_grids()


@pytest.fixture
def geometry():
    return SceneGeometry(solar_zenith=30.0, solar_azimuth=135.0, view_zenith=5.0,
                         relative_azimuth=60.0, pixel_size=30.0)


@pytest.fixture
def atmosphere():
    """Matches build_uniform_grids: 1013 hPa, 0.3 cm-atm ozone, 2 g/cm2 water vapor."""
    return SceneAtmosphere(aot550=0.05, pressure=1013.0, ozone=0.3, water_vapor=2.0)


@pytest.fixture
def geolocation():
    return GeographicGeolocation(ul_lat=40.0, ul_lon=-100.0, pixel_size=0.001)


@pytest.fixture
def clear_surface():
    """Dark vegetated surface whose ratios match the default climatology."""
    return {
        BandId.B1: 0.4817 * 0.05,
        BandId.B2: 0.4817 / 0.844239 * 0.05,
        BandId.B3: 0.08,
        BandId.B4: 0.05,
        BandId.B5: 0.30,
        BandId.B6: 0.20,
        BandId.B7: 1.79 * 0.05,
    }


@pytest.fixture
def dn_tools():
    """Helpers converting physical values to Level-1 DN."""
    return {'toa': toa_to_dn, 'temperature': temperature_to_dn}


@pytest.fixture
def make_scene(tables, geometry, atmosphere, clear_surface):
    """
    Build a small DN scene: clear pixels seen through AOT `true_aot`, one
    bright cold cloud pixel and one fill pixel.
    """
    from landsat_sr.atmosphere.corrector import AtmosCorrector
    from landsat_sr.scene import ArrayBandReader, SceneInputs

    def _make(shape=(4, 4), true_aot=0.2, cloud=(2, 2), fill=(0, 0),
              instrument="OLI_TIRS", scene_id="LC08_TEST", scene_atmosphere=atmosphere):
        corrector = AtmosCorrector(tables, geometry)
        dn = {}
        for band in corrected_bands():
            toa_clear = corrector.to_toa(band, clear_surface[band.band_id], true_aot,
                                         atmosphere.pressure, atmosphere.ozone,
                                         atmosphere.water_vapor)
            toa = np.full(shape, float(toa_clear))
            if cloud is not None:
                toa[cloud] = 0.5
            dn[band.band_id] = toa_to_dn(toa, geometry.solar_zenith)
        dn[BandId.B9] = toa_to_dn(np.full(shape, 0.002), geometry.solar_zenith)

        if instrument != "OLI":
            temperature = np.full(shape, 295.0)
            if cloud is not None:
                temperature[cloud] = 260.0
            dn[BandId.B10] = temperature_to_dn(temperature, BandId.B10)
            dn[BandId.B11] = temperature_to_dn(temperature - 1.0, BandId.B11)

        fill_mask = np.zeros(shape, dtype=bool)
        if fill is not None:
            fill_mask[fill] = True
            for values in dn.values():
                values[fill] = 0

        return SceneInputs(
            scene_id=scene_id,
            reader=ArrayBandReader(dn),
            fill=fill_mask,
            geometry=geometry,
            instrument=instrument,
            atmosphere=scene_atmosphere,
        )

    return _make
