"""
Landsat Surface Reflectance Tools
=================================

Atmospheric correction, aerosol retrieval and cloud / shadow QA masking
for Landsat 8/9 OLI/TIRS Level-1 scenes.

Modules:
    calibration: DN to TOA reflectance / brightness temperature
    atmosphere: Radiative-transfer tables and the Lambertian corrector
    aux_data: Water vapor, ozone, DEM and band-ratio climatology grids
    aerosol: Per-pixel AOT retrieval
    cloud_mask: QA flags and cloud / shadow masking
    gap_fill: AOT interpolation over failed retrievals
    processor: Scene pipeline
    utils: Config, memory management, ENVI output

Usage:
    from landsat_sr import process_scene

    result = process_scene(scene, tables, grids, geolocation, output_dir='out')
"""

__version__ = '0.1.0'

from landsat_sr.errors import SceneProcessingError
from landsat_sr.utils.config import Config
from landsat_sr.utils.memory import MemoryManager, get_available_memory

__all__ = [
    'SurfaceReflectanceProcessor',
    'SceneInputs',
    'SceneGeometry',
    'SceneAtmosphere',
    'SceneProcessingError',
    'Config',
    'MemoryManager',
    'get_available_memory',
    'process_scene',
]


def process_scene(scene, tables, grids, geolocation, output_dir=None, **kwargs):
    """Process one scene, writing ENVI products when output_dir is given."""
    from landsat_sr.processor import SurfaceReflectanceProcessor
    from landsat_sr.utils.envi_io import EnviProductWriter

    processor = SurfaceReflectanceProcessor(tables, grids, geolocation, **kwargs)
    writer = EnviProductWriter(output_dir, scene.scene_id) if output_dir is not None else None
    return processor.process(scene, writer)


# Lazy imports keep `import landsat_sr` light
def __getattr__(name):
    if name == 'SurfaceReflectanceProcessor':
        from landsat_sr.processor import SurfaceReflectanceProcessor
        return SurfaceReflectanceProcessor
    if name in ('SceneInputs', 'SceneGeometry', 'SceneAtmosphere'):
        from landsat_sr import scene
        return getattr(scene, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
