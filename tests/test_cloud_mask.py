"""
Tests for the QA mask and the cloud / shadow masking passes.

Run with: pytest tests/test_cloud_mask.py -v
"""

import numpy as np
import pytest


def make_state(shape, fill=None, **bands):
    """SceneState with int16 bands (default 0), residual -0.01 and 1013 hPa."""
    from landsat_sr.bands import BandId
    from landsat_sr.cloud_mask import QualityMask
    from landsat_sr.scene import SceneState

    fill = np.zeros(shape, dtype=bool) if fill is None else fill
    values = {}
    for band_id in (BandId.B2, BandId.B3, BandId.B4, BandId.B5, BandId.B6,
                    BandId.B9, BandId.B10):
        given = bands.get(band_id.name, 0)
        values[band_id] = np.broadcast_to(np.asarray(given, dtype=np.int16), shape).copy()
    return SceneState(
        fill=fill,
        bands=values,
        residual=np.full(shape, -0.01, dtype=np.float32),
        pressure=np.full(shape, 1013.0, dtype=np.float32),
        mask=QualityMask(shape, fill=fill),
    )


class TestQualityMask:
    """Test flag planes and byte packing."""

    def test_encode_decode(self):
        from landsat_sr.cloud_mask import QaFlag, QualityMask

        mask = QualityMask((2, 2))
        mask.set(QaFlag.CLOUD, (0, 0))
        mask.set(QaFlag.ADJACENT, (0, 0))
        mask.set(QaFlag.WATER, np.array([[False, False], [False, True]]))

        packed = mask.encode()
        assert packed.dtype == np.uint8
        np.testing.assert_array_equal(packed, [[6, 0], [0, 128]])

        decoded = QualityMask.decode(packed)
        assert decoded.test(QaFlag.CLOUD)[0, 0]
        assert decoded.test(QaFlag.WATER)[1, 1]
        assert decoded.count(QaFlag.ADJACENT) == 1

    def test_fill_never_flagged(self):
        from landsat_sr.cloud_mask import ALL_FLAGS, QualityMask

        fill = np.array([[True, False]])
        mask = QualityMask((1, 2), fill=fill)
        for flag in ALL_FLAGS:
            mask.set(flag, np.ones((1, 2), dtype=bool))
        packed = mask.encode()
        assert packed[0, 0] == 0, "Fill pixel must keep an empty mask"
        assert packed[0, 1] == 255

    def test_aerosol_confidence_bits(self):
        from landsat_sr.cloud_mask import AerosolConfidence, QualityMask

        mask = QualityMask((1, 3))
        mask.set_aerosol_confidence((np.array([0]), np.array([0])), AerosolConfidence.CLOSE)
        mask.set_aerosol_confidence((np.array([0]), np.array([1])), AerosolConfidence.MEDIUM)
        mask.set_aerosol_confidence((np.array([0]), np.array([2])), AerosolConfidence.POOR)
        np.testing.assert_array_equal(mask.encode(), [[16, 32, 48]])

    def test_provisional_shadow_promoted(self):
        from landsat_sr.cloud_mask import QaFlag, QualityMask

        mask = QualityMask((2, 2))
        mask.mark_provisional_shadow(np.array([[True, True], [False, False]]))
        assert mask.encode()[0, 0] == 64

        assert mask.promote_provisional_shadow() == 2
        np.testing.assert_array_equal(mask.encode(), [[8, 8], [0, 0]])
        assert mask.count(QaFlag.PROVISIONAL_SHADOW) == 0

    def test_is_clear(self):
        from landsat_sr.cloud_mask import QaFlag, QualityMask

        mask = QualityMask((1, 3))
        mask.set(QaFlag.AEROSOL_1, (0, 1))
        np.testing.assert_array_equal(mask.is_clear(), [[True, False, True]])


class TestSeed:
    """Test the water / cirrus seed pass."""

    def test_cirrus_threshold_scales_with_pressure(self, geometry):
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((1, 3), B9=[[120, 120, 50]])
        state.pressure[0, 1] = 700.0
        CloudMaskEngine(geometry).seed(state, np.zeros((1, 3), dtype=bool))

        cirrus = state.mask.test(QaFlag.CIRRUS)[0]
        assert list(cirrus) == [True, False, False], "700 hPa raises the threshold to ~145"

    def test_missing_dem_is_water(self, geometry):
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        fill = np.array([[False, True, False]])
        state = make_state((1, 3), fill=fill)
        state.residual[:] = 0.0
        CloudMaskEngine(geometry).seed(state, np.array([[True, True, False]]))

        assert list(state.mask.test(QaFlag.WATER)[0]) == [True, False, False]
        assert state.residual[0, 0] == -1.0
        assert state.residual[0, 1] == 0.0, "Fill pixels are left alone"


class TestCloudFlags:
    """Test the clear-sky temperature, cloud and adjacency passes."""

    def test_mean_clear_temperature(self, geometry):
        from landsat_sr.cloud_mask import CloudMaskEngine

        fill = np.array([[False, False], [False, True]])
        state = make_state((2, 2), fill=fill, B2=100, B4=100,
                           B5=[[400, 400], [200, 400]], B10=[[2900, 2950], [2000, 1000]])
        engine = CloudMaskEngine(geometry)
        assert engine.mean_clear_temperature(state) == pytest.approx(292.5)

    def test_mean_clear_temperature_fallback(self, geometry):
        from landsat_sr.cloud_mask import CloudMaskEngine

        state = make_state((2, 2), B5=200, B10=2900)
        engine = CloudMaskEngine(geometry, fallback_clear_temperature=271.0)
        assert engine.mean_clear_temperature(state) == 271.0

    def test_flag_clouds(self, geometry):
        """Cloud needs a failed retrieval, a blue anomaly and a cold top."""
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((1, 4), B2=[[1500, 1500, 1500, 800]], B4=1000,
                           B10=[[2600, 2600, 2890, 2600]])
        state.residual[0, 1] = 0.01
        CloudMaskEngine(geometry).flag_clouds(state, 290.0)
        assert list(state.mask.test(QaFlag.CLOUD)[0]) == [True, False, False, False]

    def test_adjacency_window(self, geometry):
        """An isolated cloud makes an 11x11 block of adjacent pixels."""
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((21, 21))
        state.mask.set(QaFlag.CLOUD, (10, 10))
        CloudMaskEngine(geometry).flag_adjacent(state)

        adjacent = state.mask.test(QaFlag.ADJACENT)
        assert state.mask.count(QaFlag.ADJACENT) == 120
        assert adjacent[5, 10] and adjacent[15, 15]
        assert not adjacent[4, 10]
        assert not adjacent[10, 10], "The cloud itself is not adjacent"


class TestShadows:
    """Test shadow projection and expansion."""

    def test_cast_shadows_row_major_exclusion(self):
        """
        Sun due north at 45 degrees: a cloud at height h shades the pixel
        h / 30 lines further down. Both clouds prefer the darkest band 6
        pixel; the second one in row-major order gets the next best.
        """
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag
        from landsat_sr.scene import SceneGeometry

        geometry = SceneGeometry(solar_zenith=45.0, solar_azimuth=0.0, pixel_size=30.0)
        band6 = np.full((40, 5), 1000)
        band6[20, 2] = 300
        band6[30, 2] = 200
        state = make_state((40, 5), B6=band6, B10=2900)
        state.mask.set(QaFlag.CLOUD, (np.array([2, 3]), np.array([2, 2])))

        engine = CloudMaskEngine(geometry)
        assert engine.fack == pytest.approx(0.0, abs=1e-12)
        n = engine.cast_shadows(state, 290.0)

        shadow = state.mask.test(QaFlag.SHADOW)
        assert n == 2
        assert shadow[30, 2] and shadow[20, 2]
        assert state.mask.count(QaFlag.SHADOW) == 2

    def test_cast_shadows_off_scene(self, geometry):
        """Shadows falling outside the scene are dropped."""
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((4, 4), B6=100, B10=2600)
        state.mask.set(QaFlag.CLOUD, (2, 2))
        assert CloudMaskEngine(geometry).cast_shadows(state, 275.0) == 0
        assert state.mask.count(QaFlag.SHADOW) == 0

    def test_expand_shadows(self, geometry):
        """Failed retrievals within the 13x13 window around a shadow become shadow."""
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((20, 20))
        state.mask.set(QaFlag.SHADOW, (10, 10))
        state.mask.set(QaFlag.CLOUD, (10, 12))
        state.residual[10, 14] = 0.02

        n = CloudMaskEngine(geometry).expand_shadows(state)
        shadow = state.mask.test(QaFlag.SHADOW)
        assert n == 13 * 13 - 3
        assert shadow[4, 4] and shadow[16, 16]
        assert not shadow[3, 10]
        assert not shadow[10, 14], "Retrieved pixels are not expanded into"
        assert not shadow[10, 12], "Clouds are not expanded into"
        assert state.mask.count(QaFlag.PROVISIONAL_SHADOW) == 0

    def test_refine_without_thermal(self, geometry):
        from landsat_sr.bands import BandId
        from landsat_sr.cloud_mask import CloudMaskEngine, QaFlag

        state = make_state((9, 9))
        del state.bands[BandId.B10]
        state.mask.set(QaFlag.CIRRUS, (4, 4))

        assert CloudMaskEngine(geometry).refine(state) is None
        assert state.mask.count(QaFlag.ADJACENT) == 80
        assert state.mask.count(QaFlag.CLOUD) == 0
