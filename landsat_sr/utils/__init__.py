"""Utility modules for landsat_sr."""

from .config import Config, configure_logging, get_config, reset_config
from .envi_io import EnviProductWriter, write_envi_band
from .memory import MemoryManager, estimate_array_memory, get_available_memory

__all__ = [
    'Config',
    'get_config',
    'reset_config',
    'configure_logging',
    'MemoryManager',
    'get_available_memory',
    'estimate_array_memory',
    'EnviProductWriter',
    'write_envi_band',
]
