"""
Gaseous transmittance for the OLI reflective bands.

Ozone, water vapor and the other well-mixed gases (O2, CO2, CH4, N2O) are
handled with per-band empirical fits rather than line-by-line absorption:

    Tg_O3  = exp(oztransa * m * uoz)
    Tg_H2O = exp(-wvtransa * (m * uwv) ** wvtransb)
    Tg_og  = exp(-(ogtransa1 * p) * m ** exp(-(ogtransb0 + ogtransb1 * p)))

with m the two-way air mass, uoz in cm-atm, uwv in g/cm^2 and p the surface
pressure relative to 1013 hPa.
"""

from dataclasses import dataclass

import numpy as np

from landsat_sr.bands import STANDARD_PRESSURE, GasCoefficients


@dataclass
class GasTransmittance:
    """Gaseous transmittance terms for one band (scalars or arrays)."""
    ozone: np.ndarray
    water_vapor: np.ndarray
    water_vapor_half: np.ndarray
    other_gases: np.ndarray

    @property
    def tgo(self):
        """Transmittance of everything except water vapor."""
        return self.other_gases * self.ozone


def _water_vapor_transmittance(coeffs: GasCoefficients, path):
    path = np.asarray(path, dtype=np.float64)
    safe = np.maximum(path, 1e-6)
    trans = np.exp(-coeffs.wvtransa * safe ** coeffs.wvtransb)
    return np.where(path > 1e-6, trans, 1.0)


def gaseous_transmittance(coeffs: GasCoefficients, airmass: float,
                          pressure, ozone, water_vapor) -> GasTransmittance:
    """
    Compute gaseous transmittance for one band.

    Args:
        coeffs: Band fit coefficients
        airmass: Two-way geometric air mass 1/mus + 1/muv
        pressure: Surface pressure in hPa
        ozone: Total ozone in cm-atm
        water_vapor: Column water vapor in g/cm^2

    Returns:
        GasTransmittance with broadcast shapes of the inputs
    """
    ozone = np.asarray(ozone, dtype=np.float64)
    water_vapor = np.asarray(water_vapor, dtype=np.float64)
    p = np.asarray(pressure, dtype=np.float64) / STANDARD_PRESSURE

    tgoz = np.exp(coeffs.oztransa * airmass * ozone)

    wv_path = airmass * water_vapor
    tgwv = _water_vapor_transmittance(coeffs, wv_path)
    tgwv_half = _water_vapor_transmittance(coeffs, 0.5 * wv_path)

    exponent = np.exp(-(coeffs.ogtransb0 + coeffs.ogtransb1 * p))
    tgog = np.exp(-(coeffs.ogtransa1 * p) * airmass ** exponent)

    return GasTransmittance(ozone=tgoz, water_vapor=tgwv,
                            water_vapor_half=tgwv_half, other_gases=tgog)
