"""
Level-of-detail pyramid builder.

Level 0 is the input; each following level halves the sample axis by
averaging consecutive pairs. With an odd length the trailing unpaired
sample is folded into the last output sample, so every input sample
contributes and len(level[k+1]) == len(level[k]) // 2 exactly.
"""
import logging
from dataclasses import dataclass, field
from typing import List

import numpy as np

from models.volume_layout import PyramidLevel
from processors.base_stage import BaseStage

logger = logging.getLogger(__name__)


def downsample_pairs(samples: np.ndarray) -> np.ndarray:
    """
    Halve the last axis by pairwise averaging.

    For odd n the unpaired last sample is not dropped and not carried over
    as an extra output sample. It is folded into the last output sample,
    which becomes the mean of the final three input samples, so the output
    length stays exactly floor(n/2) and every input sample contributes.

    Args:
        samples: Array whose last axis has at least 2 samples

    Returns:
        float32 array with floor(n/2) samples on the last axis
    """
    n = samples.shape[-1]
    half = n // 2
    if half == 0:
        raise ValueError(f"Cannot downsample an axis of length {n}")

    data = samples.astype(np.float64, copy=False)
    pairs = data[..., :2 * half].reshape(data.shape[:-1] + (half, 2))
    out = pairs.mean(axis=-1)
    if n % 2:
        # Fold the unpaired tail into the last pair
        out[..., -1] = data[..., n - 3:].mean(axis=-1)
    return out.astype(np.float32)


@dataclass
class Pyramid:
    """
    LOD series of one volume.

    Attributes:
        levels: Arrays of shape (lines, traces, samples_k); levels[0] is full resolution
        requested_levels: Number of levels asked for
        warnings: Truncation notices
    """
    levels: List[np.ndarray]
    requested_levels: int
    warnings: List[str] = field(default_factory=list)

    @property
    def level_count(self) -> int:
        return len(self.levels)

    @property
    def sample_counts(self) -> List[int]:
        return [int(level.shape[-1]) for level in self.levels]

    @property
    def nbytes(self) -> int:
        return sum(level.nbytes for level in self.levels)

    def pyramid_levels(self) -> List[PyramidLevel]:
        """Placement of each level in the concatenated buffer of to_bytes()."""
        placements = []
        offset = 0
        for k, level in enumerate(self.levels):
            placements.append(PyramidLevel(level=k, offset=offset, byte_size=level.nbytes))
            offset += level.nbytes
        return placements

    def to_bytes(self) -> bytes:
        """All levels concatenated, little-endian float32."""
        return b''.join(np.ascontiguousarray(level, dtype='<f4').tobytes() for level in self.levels)


class PyramidBuilder(BaseStage):
    """
    Build a pairwise-average LOD pyramid along the sample axis.

    Parameters
    ----------
    levels : int
        Requested number of levels including level 0

    Building stops early when the next level would have one sample or
    fewer; the shortfall is reported as a warning, never padded with
    empty levels.
    """

    stage_name = 'pyramid'

    def _validate_params(self):
        levels = self.params.get('levels', 4)
        if not isinstance(levels, (int, np.integer)) or levels < 1:
            raise ValueError(f"levels must be a positive integer, got {levels!r}")
        self.levels = int(levels)

    def get_description(self) -> str:
        return f"LOD pyramid: {self.levels} levels, pairwise averaging along samples"

    def build(self, samples, levels: int = None) -> Pyramid:
        """
        Build the pyramid.

        Args:
            samples: 1-D sequence or array of shape (..., n_samples)
            levels: Override of the configured level count

        Returns:
            Pyramid; a 1-D input gives 1-D levels
        """
        requested = self.levels if levels is None else int(levels)
        if requested < 1:
            raise ValueError(f"levels must be at least 1, got {requested}")

        current = np.asarray(samples, dtype=np.float32)
        if current.ndim == 0 or current.shape[-1] == 0:
            raise ValueError("Cannot build a pyramid over an empty sample axis")

        result = [current]
        while len(result) < requested:
            self._check_cancelled()
            n = result[-1].shape[-1]
            if n // 2 <= 1:
                break
            result.append(downsample_pairs(result[-1]))
            self._report_progress(len(result), requested, f"Level {len(result) - 1}: {n // 2} samples")
            logger.debug(f"Pyramid level {len(result) - 1}: {result[-1].shape}")

        warnings = []
        if len(result) < requested:
            warnings.append(
                f"Pyramid truncated to {len(result)} of {requested} requested levels: "
                f"level {len(result)} would have {result[-1].shape[-1] // 2} sample(s)"
            )
            logger.warning(warnings[-1])

        return Pyramid(levels=result, requested_levels=requested, warnings=warnings)

    def process(self, data) -> Pyramid:
        return self.build(data)
