"""
Tests for auxiliary grid sampling and the band-ratio climatology.

Run with: pytest tests/test_aux_data.py -v
"""

import numpy as np
import pytest

from conftest import build_uniform_grids


class TestAuxGridSampler:
    """Test bilinear sampling of water vapor, ozone and pressure."""

    def test_uniform_grid(self):
        """Uniform grids return their value everywhere."""
        from landsat_sr.aux_data import AuxGridSampler

        sampler = AuxGridSampler(build_uniform_grids())
        fields = sampler.sample([40.0, 39.5, 40.77], [-100.0, -99.5, -100.33])

        np.testing.assert_allclose(fields.water_vapor, 2.0)
        np.testing.assert_allclose(fields.ozone, 0.3)
        np.testing.assert_allclose(fields.pressure, 1013.0, rtol=1e-6)
        assert not fields.dem_missing.any()

    def test_cell_index(self):
        """Cell index is the floor of the fractional grid coordinate."""
        from landsat_sr.aux_data import AuxGridSampler

        sampler = AuxGridSampler(build_uniform_grids())
        fields = sampler.sample([40.0], [-100.0])
        assert fields.cell_line[0] == 20
        assert fields.cell_sample[0] == 20

    def test_outside_grid_raises(self):
        from landsat_sr.aux_data import AuxGridSampler
        from landsat_sr.errors import GridBoundsError

        sampler = AuxGridSampler(build_uniform_grids())
        with pytest.raises(GridBoundsError) as excinfo:
            sampler.sample([40.0, 10.0, 45.0], [-100.0, -100.0, -100.0])
        assert excinfo.value.n_pixels == 2

    def test_missing_ozone_uses_default(self):
        """Empty ozone cells fall back to 120 units (0.3 cm-atm)."""
        from landsat_sr.aux_data import AuxGridSampler

        sampler = AuxGridSampler(build_uniform_grids(ozone=0))
        _, ozone, _ = sampler.sample_point(40.0, -100.0)
        assert ozone == pytest.approx(0.3)

    def test_missing_dem_is_water_at_sea_level(self):
        from landsat_sr.aux_data import DEM_FILL, AuxGridSampler

        sampler = AuxGridSampler(build_uniform_grids(dem=DEM_FILL))
        fields = sampler.sample([40.0], [-100.0])
        assert fields.dem_missing[0]
        assert fields.pressure[0] == pytest.approx(1013.0)

    def test_pressure_from_elevation(self):
        """Pressure falls by 1/e per 8500 m."""
        from landsat_sr.aux_data import AuxGridSampler

        sampler = AuxGridSampler(build_uniform_grids(dem=8500))
        pressure, _, _ = sampler.sample_point(40.0, -100.0)
        assert pressure == pytest.approx(1013.0 / np.e, rel=1e-5)

    def test_bilinear_gradient(self):
        """A linear ramp in the grid is reproduced between cell centers."""
        from landsat_sr.aux_data import AuxGridSampler, AuxiliaryGrids, CmgGridSpec, RatioClimatology

        ramp = np.tile(np.arange(10, dtype=np.uint16) * 100, (10, 1))
        grids = AuxiliaryGrids(
            water_vapor=ramp,
            ozone=np.full((10, 10), 120, dtype=np.uint8),
            dem=np.zeros((10, 10), dtype=np.int16),
            ratios=RatioClimatology.empty((10, 10)),
            spec=CmgGridSpec(ul_lat=10.0, ul_lon=0.0, cell_size=1.0),
        )
        sampler = AuxGridSampler(grids)
        fields = sampler.sample([5.0, 5.0], [2.25, 7.5])
        np.testing.assert_allclose(fields.water_vapor, [2.25, 7.5])

    def test_last_row_and_column_clamped(self):
        """The +1 neighbor of the last cell is the cell itself."""
        from landsat_sr.aux_data import AuxGridSampler

        grids = build_uniform_grids(shape=(4, 4), water_vapor=300)
        sampler = AuxGridSampler(grids)
        lat = grids.spec.ul_lat - 3.5 * grids.spec.cell_size
        lon = grids.spec.ul_lon + 3.5 * grids.spec.cell_size
        _, _, water_vapor = sampler.sample_point(lat, lon)
        assert water_vapor == pytest.approx(3.0)

    def test_grid_shape_mismatch(self):
        from landsat_sr.aux_data import AuxiliaryGrids, RatioClimatology
        from landsat_sr.errors import TableValidationError

        with pytest.raises(TableValidationError):
            AuxiliaryGrids(
                water_vapor=np.zeros((4, 4)),
                ozone=np.zeros((4, 5)),
                dem=np.zeros((4, 4)),
                ratios=RatioClimatology.empty((4, 4)),
            )


class TestExpectedRatios:
    """Test the NDWI-driven band-ratio regression."""

    def test_default_ratios_without_climatology(self):
        from landsat_sr.aux_data import DEFAULT_RATIOS, AuxGridSampler
        from landsat_sr.bands import BandId

        sampler = AuxGridSampler(build_uniform_grids())
        ratios = sampler.expected_ratios(np.array([20]), np.array([20]),
                                         np.array([3000]), np.array([900]))
        for band_id in (BandId.B1, BandId.B2, BandId.B7):
            assert ratios[band_id][0] == pytest.approx(DEFAULT_RATIOS[band_id])
        assert ratios[BandId.B4][0] == 1.0

    def _climatology_grids(self):
        from landsat_sr.aux_data import AuxiliaryGrids, CmgGridSpec, RatioClimatology

        shape = (2, 2)
        values = {
            'andwi': 500, 'sndwi': 100,
            'ratiob1': 480, 'ratiob2': 570, 'ratiob7': 1790,
            'intratiob1': 400, 'intratiob2': 500, 'intratiob7': 1500,
            'slpratiob1': 200, 'slpratiob2': 100, 'slpratiob7': 500,
        }
        ratios = RatioClimatology(**{k: np.full(shape, v, dtype=np.int16) for k, v in values.items()})
        return AuxiliaryGrids(
            water_vapor=np.zeros(shape, dtype=np.uint16),
            ozone=np.zeros(shape, dtype=np.uint8),
            dem=np.zeros(shape, dtype=np.int16),
            ratios=ratios,
            spec=CmgGridSpec(ul_lat=1.0, ul_lon=0.0, cell_size=1.0),
        )

    def test_regression_on_ndwi(self):
        """ratio = (ndwi * slope + intercept) * 0.001 inside the NDWI bounds."""
        from landsat_sr.aux_data import AuxGridSampler
        from landsat_sr.bands import BandId

        sampler = AuxGridSampler(self._climatology_grids())
        # b5 = 3000, b7/2 = 1000 -> ndwi = 0.5
        ratios = sampler.expected_ratios(np.array([0]), np.array([0]),
                                         np.array([3000]), np.array([2000]))
        assert ratios[BandId.B1][0] == pytest.approx((0.5 * 200 + 400) * 0.001)
        assert ratios[BandId.B7][0] == pytest.approx((0.5 * 500 + 1500) * 0.001)

    def test_ndwi_clamped_to_two_sigma(self):
        from landsat_sr.aux_data import AuxGridSampler
        from landsat_sr.bands import BandId

        sampler = AuxGridSampler(self._climatology_grids())
        # ndwi = 1.0 is above andwi + 2 * sndwi = 0.7
        ratios = sampler.expected_ratios(np.array([0, 0]), np.array([0, 1]),
                                         np.array([3000, 0]), np.array([0, 3000]))
        assert ratios[BandId.B2][0] == pytest.approx((0.7 * 100 + 500) * 0.001)
        # ndwi = -1.0 is below andwi - 2 * sndwi = 0.3
        assert ratios[BandId.B2][1] == pytest.approx((0.3 * 100 + 500) * 0.001)
