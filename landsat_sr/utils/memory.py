"""
Memory management for scene-sized work arrays.

The whole scene stays resident; this module checks up front that the
per-pixel work arrays fit and sizes the pixel chunks used by the vectorized
retrieval and shadow passes.
"""

import gc
import logging
from contextlib import contextmanager
from typing import Generator, Optional, Tuple

import numpy as np
import psutil

from landsat_sr.errors import AllocationError

logger = logging.getLogger(__name__)

GB = 1024**3

# Bytes per pixel held by a scene: 10 int16 bands, 5 int16 TOA copies,
# float32 aot/residual/pressure/ozone/water vapor, 8 flag planes.
SCENE_BYTES_PER_PIXEL = 10 * 2 + 5 * 2 + 5 * 4 + 8


def get_available_memory() -> float:
    """Memory the OS reports as available right now, in GB."""
    available_gb = psutil.virtual_memory().available / GB
    logger.debug(f"psutil reports {available_gb:.1f} GB available")
    return available_gb


def get_total_memory() -> float:
    """Installed physical memory in GB."""
    return psutil.virtual_memory().total / GB


def estimate_array_memory(shape: Tuple[int, ...], dtype=np.float32) -> float:
    """
    Size in GB of a dense array of the given shape and dtype.

    Args:
        shape: Array dimensions
        dtype: Element type

    Returns:
        Size in GB (float64 product, so 7800x7700 scenes do not overflow)
    """
    n_bytes = np.prod(shape, dtype=np.float64) * np.dtype(dtype).itemsize
    return float(n_bytes) / GB


class MemoryManager:
    """
    Guards scene allocation and sizes pixel chunks.

    Attributes:
        limit_gb: Ceiling for scene work arrays
        safety_factor: Share of currently available memory we allow ourselves
        chunk_size_mb: Target size of one vectorized work chunk
    """

    def __init__(self, limit_gb: Optional[float] = None, safety_factor: float = 0.8,
                 chunk_size_mb: float = 256):
        self.safety_factor = safety_factor
        self.chunk_size_mb = chunk_size_mb
        self.limit_gb = limit_gb if limit_gb is not None else get_available_memory() * safety_factor
        logger.debug(f"Scene memory limit {self.limit_gb:.1f} GB, "
                     f"chunks of {chunk_size_mb} MB")

    def headroom_gb(self) -> float:
        """Smaller of the configured limit and the usable share of free memory."""
        return min(self.limit_gb, get_available_memory() * self.safety_factor)

    def fits_in_memory(self, shape: Tuple[int, ...], dtype=np.float32) -> bool:
        return estimate_array_memory(shape, dtype) < self.headroom_gb()

    def check_scene(self, nlines: int, nsamps: int):
        """
        Raise AllocationError when the scene work arrays cannot fit.

        Args:
            nlines: Scene lines
            nsamps: Scene samples
        """
        shape = (nlines, nsamps, SCENE_BYTES_PER_PIXEL)
        if not self.fits_in_memory(shape, np.uint8):
            required = estimate_array_memory(shape, np.uint8)
            raise AllocationError(
                f"Scene {nlines}x{nsamps} needs {required:.2f} GB of work arrays, "
                f"limit is {self.limit_gb:.2f} GB"
            )

    def pixel_chunk_size(self, n_pixels: int, bytes_per_pixel: int) -> int:
        """
        Number of pixels per chunk for a vectorized pass.

        Args:
            n_pixels: Pixels to process
            bytes_per_pixel: Temporary bytes needed per pixel

        Returns:
            Pixels per chunk (at least 1)
        """
        chunk_bytes = self.chunk_size_mb * 1024 * 1024
        limit_bytes = self.limit_gb * GB / 2  # half the limit, rest is the scene itself
        per_chunk = int(min(chunk_bytes, limit_bytes) / max(bytes_per_pixel, 1))
        return max(1, min(per_chunk, max(n_pixels, 1)))

    def iterate_chunks(self, n_items: int, chunk_size: int) -> Generator[Tuple[int, int], None, None]:
        """Yield contiguous (start, end) pairs covering range(n_items)."""
        for start in range(0, n_items, chunk_size):
            yield start, min(start + chunk_size, n_items)

    @contextmanager
    def processing_context(self, description: str = "processing"):
        """
        Wrap a memory-heavy phase.

        A MemoryError inside becomes AllocationError; garbage is collected on exit.
        """
        logger.debug(f"{description}: start ({get_available_memory():.1f} GB free)")
        try:
            yield
        except MemoryError as e:
            raise AllocationError(f"Out of memory during {description}") from e
        finally:
            gc.collect()
            logger.debug(f"{description}: done ({get_available_memory():.1f} GB free)")
