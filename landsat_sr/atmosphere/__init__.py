"""
Atmospheric correction: lookup tables, gaseous transmittance, Rayleigh
reflectance and the Lambertian corrector.
"""

from .corrector import AtmosCorrector, CorrectionTerms, forward, invert
from .gas import GasTransmittance, gaseous_transmittance
from .rayleigh import rayleigh_reflectance
from .tables import AOT550_GRID, PRESSURE_GRID, AtmosphericTables

__all__ = [
    'AtmosCorrector',
    'CorrectionTerms',
    'forward',
    'invert',
    'AtmosphericTables',
    'AOT550_GRID',
    'PRESSURE_GRID',
    'GasTransmittance',
    'gaseous_transmittance',
    'rayleigh_reflectance',
]
