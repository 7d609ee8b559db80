"""
Band descriptors for the OLI/TIRS band set.

Each band carries its role, its position in the output stack, its position
on the radiative-transfer table band axis and the constants needed to
calibrate and correct it. Processing code iterates descriptors instead of
branching on band numbers.

Scaling contract for the int16 products:
    reflectance = value * 1e-4, valid range [-2000, 16000]
    brightness temperature (K) = value * 0.1, valid range [1500, 3500]
    fill = -9999 in every band
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Dict, List, Optional


FILL_VALUE = -9999

REFLECTANCE_MULT = 10000.0
REFLECTANCE_SCALE = 1.0e-4
MIN_VALID = -2000
MAX_VALID = 16000

THERMAL_MULT = 10.0
THERMAL_SCALE = 0.1
MIN_VALID_TH = 1500
MAX_VALID_TH = 3500

# Level-1 rescaling shared by all OLI reflective bands
REFL_GAIN = 2.0e-5
REFL_BIAS = -0.1

# TIRS radiance rescaling
THERMAL_GAIN = 3.3420e-4
THERMAL_BIAS = 0.1

STANDARD_PRESSURE = 1013.0


class BandId(IntEnum):
    """Landsat 8/9 band numbers."""
    B1 = 1
    B2 = 2
    B3 = 3
    B4 = 4
    B5 = 5
    B6 = 6
    B7 = 7
    B8 = 8
    B9 = 9
    B10 = 10
    B11 = 11


class BandRole(Enum):
    REFLECTIVE = "reflective"
    CIRRUS = "cirrus"
    PANCHROMATIC = "panchromatic"
    THERMAL = "thermal"


@dataclass(frozen=True)
class GasCoefficients:
    """Molecular optical depth and gaseous transmittance fit coefficients."""
    tauray: float
    oztransa: float
    wvtransa: float
    wvtransb: float
    ogtransa1: float
    ogtransb0: float
    ogtransb1: float


@dataclass(frozen=True)
class BandDescriptor:
    """Static description of one band."""
    band_id: BandId
    role: BandRole
    wavelength_um: float
    output_index: Optional[int] = None
    table_index: Optional[int] = None
    gain: float = REFL_GAIN
    bias: float = REFL_BIAS
    k1: Optional[float] = None
    k2: Optional[float] = None
    gas: Optional[GasCoefficients] = None

    @property
    def name(self) -> str:
        return f"band{int(self.band_id)}"

    @property
    def is_corrected(self) -> bool:
        """True for bands that go through atmospheric correction."""
        return self.role == BandRole.REFLECTIVE


BAND_TABLE: Dict[BandId, BandDescriptor] = {
    BandId.B1: BandDescriptor(
        BandId.B1, BandRole.REFLECTIVE, 0.443, output_index=0, table_index=0,
        gas=GasCoefficients(0.23638, -0.00255649, 2.29849e-27, 0.999742,
                            4.91586e-20, 0.000197019, 9.57011e-16)),
    BandId.B2: BandDescriptor(
        BandId.B2, BandRole.REFLECTIVE, 0.482, output_index=1, table_index=1,
        gas=GasCoefficients(0.16933, -0.0177861, 2.29849e-27, 0.999742,
                            4.91586e-20, 0.000197019, 9.57011e-16)),
    BandId.B3: BandDescriptor(
        BandId.B3, BandRole.REFLECTIVE, 0.561, output_index=2, table_index=2,
        gas=GasCoefficients(0.09070, -0.0969872, 0.00194772, 0.775024,
                            4.91586e-20, 0.000197019, 9.57011e-16)),
    BandId.B4: BandDescriptor(
        BandId.B4, BandRole.REFLECTIVE, 0.655, output_index=3, table_index=3,
        gas=GasCoefficients(0.04827, -0.0611428, 0.00404159, 0.774482,
                            1.04801e-05, 0.640215, -0.348785)),
    BandId.B5: BandDescriptor(
        BandId.B5, BandRole.REFLECTIVE, 0.865, output_index=4, table_index=4,
        gas=GasCoefficients(0.01563, 0.0001, 0.000729136, 0.893085,
                            1.35216e-05, -0.195998, 0.275239)),
    BandId.B6: BandDescriptor(
        BandId.B6, BandRole.REFLECTIVE, 1.609, output_index=5, table_index=5,
        gas=GasCoefficients(0.00129, 0.0001, 0.00067324, 0.939669,
                            0.0205425, 0.326577, 0.0117192)),
    BandId.B7: BandDescriptor(
        BandId.B7, BandRole.REFLECTIVE, 2.201, output_index=6, table_index=6,
        gas=GasCoefficients(0.00037, 0.0001, 0.0177533, 0.65094,
                            0.0256526, 0.243961, 0.0616101)),
    BandId.B8: BandDescriptor(BandId.B8, BandRole.PANCHROMATIC, 0.590),
    BandId.B9: BandDescriptor(BandId.B9, BandRole.CIRRUS, 1.373, output_index=7),
    BandId.B10: BandDescriptor(
        BandId.B10, BandRole.THERMAL, 10.9, output_index=8,
        gain=THERMAL_GAIN, bias=THERMAL_BIAS, k1=774.89, k2=1321.08),
    BandId.B11: BandDescriptor(
        BandId.B11, BandRole.THERMAL, 12.0, output_index=9,
        gain=THERMAL_GAIN, bias=THERMAL_BIAS, k1=480.89, k2=1201.14),
}

N_TABLE_BANDS = 7

# Instrument tokens; thermal bands only exist when TIRS data is present
INSTRUMENTS = ("OLI", "OLI_TIRS", "TIRS")


def get_band(band_id) -> BandDescriptor:
    """Look up a descriptor by BandId or band number."""
    return BAND_TABLE[BandId(band_id)]


def bands_with_role(*roles: BandRole) -> List[BandDescriptor]:
    """Descriptors with any of the given roles, in band order."""
    return [d for d in BAND_TABLE.values() if d.role in roles]


def corrected_bands() -> List[BandDescriptor]:
    """Reflective bands B1-B7 that receive atmospheric correction."""
    return bands_with_role(BandRole.REFLECTIVE)


def output_bands(instrument: str = "OLI_TIRS") -> List[BandDescriptor]:
    """Bands written to the product stack, ordered by output index."""
    roles = [BandRole.REFLECTIVE, BandRole.CIRRUS]
    if has_thermal(instrument):
        roles.append(BandRole.THERMAL)
    return sorted(bands_with_role(*roles), key=lambda d: d.output_index)


def has_thermal(instrument: str) -> bool:
    return instrument != "OLI"
