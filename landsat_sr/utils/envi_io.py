"""
ENVI output for surface reflectance products.

Each output band and the QA mask are written as single-band ENVI files
(raw binary + .hdr), which GDAL and most remote-sensing tools read directly.
"""

import logging
from pathlib import Path
from typing import List, Optional

import numpy as np

from landsat_sr.bands import FILL_VALUE, BandDescriptor

logger = logging.getLogger(__name__)


# ENVI data type mapping
ENVI_DTYPE_MAP = {
    1: np.uint8,
    2: np.int16,
    3: np.int32,
    4: np.float32,
    5: np.float64,
    12: np.uint16,
}

DTYPE_TO_ENVI = {v: k for k, v in ENVI_DTYPE_MAP.items()}


def write_envi_band(filepath: Path, data: np.ndarray, band_name: str,
                    description: str = "",
                    ignore_value: Optional[int] = None) -> Path:
    """
    Write a 2D array as a single-band ENVI file.

    Args:
        filepath: Output path; the binary gets a .img suffix, the header .hdr
        data: 2D array (lines, samples)
        band_name: Name stored in the header
        description: File description
        ignore_value: Value recorded as "data ignore value"

    Returns:
        Path to written binary file
    """
    filepath = Path(filepath)
    if data.ndim != 2:
        raise ValueError(f"Expected 2D band, got shape {data.shape}")

    lines, samples = data.shape
    if data.dtype.type not in DTYPE_TO_ENVI:
        data = data.astype(np.float32)
    dtype_code = DTYPE_TO_ENVI[data.dtype.type]

    binary_path = filepath.with_suffix('.img')
    np.ascontiguousarray(data.astype(data.dtype.newbyteorder('<'))).tofile(str(binary_path))

    header_lines = [
        "ENVI",
        f"description = {{{description}}}",
        f"samples = {samples}",
        f"lines = {lines}",
        "bands = 1",
        "header offset = 0",
        "file type = ENVI Standard",
        f"data type = {dtype_code}",
        "interleave = bsq",
        "byte order = 0",
        f"band names = {{{band_name}}}",
    ]
    if ignore_value is not None:
        header_lines.append(f"data ignore value = {ignore_value}")

    header_path = filepath.with_suffix('.hdr')
    with open(header_path, 'w') as f:
        f.write('\n'.join(header_lines) + '\n')

    logger.debug(f"Wrote ENVI: {binary_path} ({lines}x{samples})")
    return binary_path


class EnviProductWriter:
    """
    Writes a scene's surface reflectance bands and QA mask as ENVI files.

    Files are named <scene_id>_sr_<band>.img (reflective), <scene_id>_bt_<band>.img
    (thermal) and <scene_id>_cloud_qa.img.
    """

    def __init__(self, output_dir: Path, scene_id: str):
        self.output_dir = Path(output_dir)
        self.scene_id = scene_id
        self.written: List[Path] = []
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def write_band(self, band: BandDescriptor, data: np.ndarray) -> Path:
        kind = "bt" if band.k1 is not None else "sr"
        path = write_envi_band(
            self.output_dir / f"{self.scene_id}_{kind}_{band.name}",
            data.astype(np.int16, copy=False),
            band_name=band.name,
            description=f"{self.scene_id} {kind} {band.name}",
            ignore_value=FILL_VALUE,
        )
        self.written.append(path)
        return path

    def write_mask(self, mask: np.ndarray) -> Path:
        path = write_envi_band(
            self.output_dir / f"{self.scene_id}_cloud_qa",
            mask.astype(np.uint8, copy=False),
            band_name="cloud_qa",
            description=f"{self.scene_id} cloud/shadow/aerosol QA",
        )
        self.written.append(path)
        return path

    def close(self):
        logger.info(f"Wrote {len(self.written)} files to {self.output_dir}")

    def discard(self):
        """Delete every .img / .hdr of this scene, including a half-written one."""
        removed = 0
        for pattern in (f"{self.scene_id}_*.img", f"{self.scene_id}_*.hdr"):
            for path in self.output_dir.glob(pattern):
                path.unlink()
                removed += 1
        self.written.clear()
        logger.warning(f"Discarded {removed} partial files of {self.scene_id} in {self.output_dir}")
