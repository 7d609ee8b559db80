"""
AOT gap filling over pixels where the retrieval failed.

The scene is tiled into square blocks. Inside a block the successful
retrievals on unflagged pixels are averaged with inverse-residual weights
and the average is given to the block's failed pixels. Blocks without any
usable retrieval are holes; the block size doubles until no hole is left or
the size limit is reached.
"""

import logging

import numpy as np

from landsat_sr.cloud_mask import QaFlag, QualityMask

logger = logging.getLogger(__name__)

FILLED_RESIDUAL = 1.0


def _block_sums(values: np.ndarray, step: int) -> np.ndarray:
    """Sum of each step x step block (edge blocks are partial)."""
    nlines, nsamps = values.shape
    pad_l = -nlines % step
    pad_s = -nsamps % step
    padded = np.pad(values, ((0, pad_l), (0, pad_s)))
    nb_l, nb_s = padded.shape[0] // step, padded.shape[1] // step
    return padded.reshape(nb_l, step, nb_s, step).sum(axis=(1, 3))


def _expand(blocks: np.ndarray, step: int, shape) -> np.ndarray:
    """Broadcast per-block values back onto the pixel grid."""
    return np.repeat(np.repeat(blocks, step, axis=0), step, axis=1)[:shape[0], :shape[1]]


class AotGapFiller:
    """
    Block-wise inverse-residual-weighted AOT interpolation.

    Args:
        initial_block: Block size of the first round (pixels)
        max_block: Rounds stop once the block size reaches this value
    """

    def __init__(self, initial_block: int = 10, max_block: int = 1000):
        self.initial_block = initial_block
        self.max_block = max_block

    def fill(self, aot: np.ndarray, residual: np.ndarray, mask: QualityMask) -> int:
        """
        Fill failed retrievals in place.

        Args:
            aot: AOT per pixel (modified)
            residual: Residual per pixel (modified)
            mask: Scene QA mask

        Returns:
            Number of holes left after the last round
        """
        shape = aot.shape
        excluded = mask.any(QaFlag.CIRRUS, QaFlag.CLOUD, QaFlag.WATER)
        holes = 1
        step = self.initial_block
        n_filled = 0

        while holes and step < self.max_block:
            # Recomputed each round since earlier rounds turn filled pixels positive
            usable = (residual > 0) & mask.is_clear()
            with np.errstate(divide='ignore', invalid='ignore'):
                inv = np.where(usable, 1.0 / residual, 0.0)
            weight_sum = _block_sums(inv, step)
            aot_sum = _block_sums(np.where(usable, aot * inv, 0.0), step)
            count = _block_sums(usable.astype(np.int64), step)

            has_data = count > 0
            holes = int(np.count_nonzero(~has_data))
            mean = np.where(has_data, aot_sum / np.where(has_data, weight_sum, 1.0), 0.0)

            target = (residual < 0) & ~excluded & _expand(has_data, step, shape)
            aot[target] = _expand(mean, step, shape)[target]
            residual[target] = FILLED_RESIDUAL
            n_filled += int(np.count_nonzero(target))

            logger.debug(f"Gap fill block {step}: {holes} holes")
            step *= 2

        logger.info(f"AOT gap fill: {n_filled} pixels filled, {holes} holes remaining")
        return holes
