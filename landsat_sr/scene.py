"""
Scene containers: geometry, scene-level atmosphere, band access and the
mutable state threaded through the processing phases.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

import numpy as np

from landsat_sr.bands import INSTRUMENTS, BandId
from landsat_sr.errors import InputValidationError


@dataclass(frozen=True)
class SceneGeometry:
    """
    Fixed sun / view geometry of a scene, angles in degrees.

    Attributes:
        solar_zenith: Solar zenith angle (xts)
        solar_azimuth: Solar azimuth angle (xfs), used for shadow direction
        view_zenith: View zenith angle (xtv)
        relative_azimuth: Sun / view relative azimuth (xfi)
        pixel_size: Ground pixel size in meters
    """
    solar_zenith: float
    solar_azimuth: float
    view_zenith: float = 0.0
    relative_azimuth: float = 0.0
    pixel_size: float = 30.0

    def __post_init__(self):
        if not 0.0 <= self.solar_zenith < 90.0:
            raise InputValidationError(f"Solar zenith {self.solar_zenith} outside [0, 90)")
        if not 0.0 <= self.view_zenith < 90.0:
            raise InputValidationError(f"View zenith {self.view_zenith} outside [0, 90)")
        if self.pixel_size <= 0:
            raise InputValidationError(f"Pixel size must be positive, got {self.pixel_size}")

    @property
    def mus(self) -> float:
        return float(np.cos(np.radians(self.solar_zenith)))

    @property
    def muv(self) -> float:
        return float(np.cos(np.radians(self.view_zenith)))

    @property
    def airmass(self) -> float:
        """Two-way geometric air mass 1/mus + 1/muv."""
        return 1.0 / self.mus + 1.0 / self.muv

    @property
    def cos_scattering(self) -> float:
        """Cosine of the scattering angle between sun and view directions."""
        ts = np.radians(self.solar_zenith)
        tv = np.radians(self.view_zenith)
        phi = np.radians(self.relative_azimuth)
        return float(-np.cos(ts) * np.cos(tv) - np.sin(ts) * np.sin(tv) * np.cos(phi))


@dataclass(frozen=True)
class SceneAtmosphere:
    """
    Scene-level atmospheric state for the constant-AOT pass and retrieval.

    Attributes:
        aot550: Nominal aerosol optical thickness at 550 nm
        pressure: Surface pressure (hPa)
        ozone: Total ozone (cm-atm)
        water_vapor: Total column water vapor (g/cm^2)
    """
    aot550: float
    pressure: float
    ozone: float
    water_vapor: float


class BandReader(Protocol):
    """Source of Level-1 DN lines for one scene."""

    nlines: int
    nsamps: int

    def read_band(self, band_id: BandId, start_line: int = 0,
                  n_lines: Optional[int] = None) -> np.ndarray:
        ...


class ArrayBandReader:
    """BandReader over in-memory DN arrays keyed by band."""

    def __init__(self, bands: Mapping):
        if not bands:
            raise InputValidationError("No bands supplied")
        self._bands = {BandId(k): np.asarray(v) for k, v in bands.items()}
        shapes = {a.shape for a in self._bands.values()}
        if len(shapes) != 1 or len(next(iter(shapes))) != 2:
            raise InputValidationError(f"Bands must be 2D with one shape, got {shapes}")
        self.nlines, self.nsamps = next(iter(shapes))

    def __contains__(self, band_id) -> bool:
        return BandId(band_id) in self._bands

    def read_band(self, band_id, start_line=0, n_lines=None):
        band_id = BandId(band_id)
        if band_id not in self._bands:
            raise InputValidationError(f"Band {int(band_id)} not available")
        if n_lines is None:
            n_lines = self.nlines - start_line
        if start_line < 0 or start_line + n_lines > self.nlines:
            raise InputValidationError(
                f"Lines {start_line}..{start_line + n_lines} outside band of {self.nlines} lines"
            )
        return self._bands[band_id][start_line:start_line + n_lines]


def fill_mask_from_qa(qa: np.ndarray) -> np.ndarray:
    """Level-1 QA band to boolean fill mask (QA value 1 marks fill)."""
    return np.asarray(qa) == 1


@dataclass
class SceneInputs:
    """
    Everything needed to process one scene.

    Attributes:
        scene_id: Identifier used in logs and output names
        reader: DN band source
        fill: Boolean fill mask, or a Level-1 QA array (value 1 = fill)
        geometry: Sun / view geometry
        instrument: "OLI", "OLI_TIRS" or "TIRS"
        atmosphere: Scene-level atmosphere; sampled at scene center if None
    """
    scene_id: str
    reader: BandReader
    fill: np.ndarray
    geometry: SceneGeometry
    instrument: str = "OLI_TIRS"
    atmosphere: Optional[SceneAtmosphere] = None

    def __post_init__(self):
        if self.instrument not in INSTRUMENTS:
            raise InputValidationError(
                f"Unknown instrument '{self.instrument}', expected one of {INSTRUMENTS}"
            )
        fill = np.asarray(self.fill)
        if fill.dtype != bool:
            fill = fill_mask_from_qa(fill)
        if fill.shape != (self.reader.nlines, self.reader.nsamps):
            raise InputValidationError(
                f"Fill mask shape {fill.shape} does not match bands "
                f"{(self.reader.nlines, self.reader.nsamps)}"
            )
        self.fill = fill

    @property
    def shape(self):
        return self.fill.shape


@dataclass
class SceneState:
    """
    Mutable per-pixel state passed through the phases in order.

    bands holds the int16 product values keyed by BandId, toa holds the
    scaled TOA reflectance kept for the aerosol retrieval.
    """
    fill: np.ndarray
    bands: Dict[BandId, np.ndarray] = field(default_factory=dict)
    toa: Dict[BandId, np.ndarray] = field(default_factory=dict)
    aot: Optional[np.ndarray] = None
    residual: Optional[np.ndarray] = None
    pressure: Optional[np.ndarray] = None
    ozone: Optional[np.ndarray] = None
    water_vapor: Optional[np.ndarray] = None
    mask: Any = None

    @property
    def shape(self):
        return self.fill.shape
