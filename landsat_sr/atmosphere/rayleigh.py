"""
Rayleigh Scattering Module

Molecular (Rayleigh) path reflectance for a fixed sun / view geometry.

Physics:
    The intrinsic atmospheric reflectance tabulated for each band contains
    the molecular and aerosol contributions together. Water vapor sits low
    in the atmosphere, so only the light scattered by aerosols (which also
    sit low) crosses it, while most molecular scattering happens above it.
    The corrector therefore splits the Rayleigh part out:

        roatm = (roatm_table - rho_R) * Tg_wv(half path) + rho_R

    rho_R here is the single-scattering Rayleigh reflectance

        rho_R = P(Θ) * (1 - exp(-tau_R * (1/μs + 1/μv))) / (4 (μs + μv))

    with the Rayleigh phase function

        P(Θ) = 3/4 * (1 + cos²Θ)

    and tau_R the band's molecular optical thickness scaled by
    pressure / 1013 hPa.

References:
    - Hansen & Travis, 1974: Light scattering in planetary atmospheres
    - Vermote et al., 1997: Second Simulation of the Satellite Signal in
      the Solar Spectrum (6S) manual
"""

import numpy as np

from landsat_sr.bands import STANDARD_PRESSURE


def phase_function(cos_scattering: float) -> float:
    """
    Rayleigh phase function P(Θ).

    Args:
        cos_scattering: Cosine of the scattering angle

    Returns:
        Phase function value (normalized to 4π)
    """
    return 0.75 * (1.0 + cos_scattering ** 2)


def optical_depth(tauray: float, pressure):
    """
    Molecular optical thickness at the given surface pressure.

    Optical depth scales linearly with pressure (more molecules = more
    scattering).
    """
    return tauray * np.asarray(pressure, dtype=np.float64) / STANDARD_PRESSURE


def rayleigh_reflectance(tauray: float, pressure, mus: float, muv: float,
                         cos_scattering: float):
    """
    Single-scattering Rayleigh path reflectance.

    Args:
        tauray: Band molecular optical thickness at 1013 hPa
        pressure: Surface pressure in hPa (scalar or array)
        mus: Cosine of the solar zenith angle
        muv: Cosine of the view zenith angle
        cos_scattering: Cosine of the scattering angle

    Returns:
        Rayleigh reflectance, same shape as pressure
    """
    tau = optical_depth(tauray, pressure)
    attenuation = 1.0 - np.exp(-tau * (1.0 / mus + 1.0 / muv))
    return phase_function(cos_scattering) * attenuation / (4.0 * (mus + muv))
