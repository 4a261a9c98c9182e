"""
Brick organizer - partitions each pyramid level into fixed-size 3-D bricks.

Volumes are (lines, traces, samples). Axes that are not a multiple of the
brick size are zero-padded at their high boundary; the padding is recorded
as the layout margin. Bricks are emitted in Morton (Z-order) or row-major
order and materialised one at a time.
"""
import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import numpy as np

from models.app_settings import ConversionPolicy
from models.volume_layout import BrickCurve, BrickLayout
from processors.base_stage import BaseStage
from processors.pyramid_builder import Pyramid

logger = logging.getLogger(__name__)

BrickIndex = Tuple[int, int, int]


def part1by2(values: np.ndarray) -> np.ndarray:
    """Spread the low 21 bits of each value so two zero bits separate them."""
    x = np.asarray(values, dtype=np.uint64) & np.uint64(0x1FFFFF)
    x = (x | (x << np.uint64(32))) & np.uint64(0x1F00000000FFFF)
    x = (x | (x << np.uint64(16))) & np.uint64(0x1F0000FF0000FF)
    x = (x | (x << np.uint64(8))) & np.uint64(0x100F00F00F00F00F)
    x = (x | (x << np.uint64(4))) & np.uint64(0x10C30C30C30C30C3)
    x = (x | (x << np.uint64(2))) & np.uint64(0x1249249249249249)
    return x


def morton_encode(i, j, k) -> np.ndarray:
    """Interleave the bits of three grid coordinates (i in the lowest bit)."""
    return part1by2(i) | (part1by2(j) << np.uint64(1)) | (part1by2(k) << np.uint64(2))


def brick_order(grid: Tuple[int, int, int], curve: BrickCurve) -> np.ndarray:
    """
    Brick grid coordinates in emission order.

    Returns:
        int array of shape (n_bricks, 3)
    """
    coords = np.indices(grid).reshape(3, -1).T
    if curve is BrickCurve.MORTON:
        codes = morton_encode(coords[:, 0], coords[:, 1], coords[:, 2])
        coords = coords[np.argsort(codes, kind='stable')]
    return coords


def plan_layout(shape: Tuple[int, int, int], brick_size: Tuple[int, int, int],
                curve: BrickCurve) -> BrickLayout:
    """Compute grid and margins for one volume."""
    if len(shape) != 3 or len(brick_size) != 3:
        raise ValueError(f"Expected 3-D shape and brick size, got {shape} and {brick_size}")
    margin = tuple(int((-d) % b) for d, b in zip(shape, brick_size))
    grid = tuple(int((d + m) // b) for d, m, b in zip(shape, margin, brick_size))
    return BrickLayout(
        brick_size=tuple(int(b) for b in brick_size),
        brick_count=int(np.prod(grid)),
        curve=curve,
        margin=margin,
        dimensions=tuple(int(d) for d in shape),
        grid=grid,
    )


@dataclass
class BrickedLevel:
    """One pyramid level with its brick layout; bricks are cut on demand."""
    level: int
    volume: np.ndarray
    layout: BrickLayout

    def brick_indices(self) -> np.ndarray:
        return brick_order(self.layout.grid, self.layout.curve)

    def extent(self, index: BrickIndex) -> Tuple[int, int, int]:
        """Data-bearing extent of one brick; smaller than the brick size only at the high boundary."""
        return tuple(
            int(min(b, d - int(i) * b))
            for i, b, d in zip(index, self.layout.brick_size, self.layout.dimensions)
        )

    def brick(self, index: BrickIndex) -> np.ndarray:
        """Cut one brick, zero-padded to the full brick size."""
        bx, by, bz = self.layout.brick_size
        i, j, k = (int(v) for v in index)
        block = self.volume[i * bx:(i + 1) * bx, j * by:(j + 1) * by, k * bz:(k + 1) * bz]
        pad = [(0, b - s) for b, s in zip(self.layout.brick_size, block.shape)]
        if any(p[1] for p in pad):
            block = np.pad(block, pad, mode='constant', constant_values=0.0)
        return np.ascontiguousarray(block, dtype=np.float32)

    def iter_bricks(self) -> Iterator[Tuple[BrickIndex, np.ndarray]]:
        """Yield (grid index, brick) in layout order, one brick at a time."""
        for index in self.brick_indices():
            yield tuple(int(v) for v in index), self.brick(index)


@dataclass
class BrickedPyramid:
    """All levels of a pyramid with their layouts."""
    levels: List[BrickedLevel]
    warnings: List[str] = field(default_factory=list)

    @property
    def brick_size(self) -> Tuple[int, int, int]:
        return self.levels[0].layout.brick_size

    @property
    def curve(self) -> BrickCurve:
        return self.levels[0].layout.curve

    @property
    def total_bricks(self) -> int:
        return sum(level.layout.brick_count for level in self.levels)


class BrickOrganizer(BaseStage):
    """
    Partition pyramid levels into bricks.

    Parameters
    ----------
    brick_size : tuple of int
        Brick extent (lines, traces, samples); each in the policy's allowed set
    curve : BrickCurve
        Emission order, Morton by default
    policy : ConversionPolicy, optional
        Supplies the allowed brick sizes
    """

    stage_name = 'bricks'

    def _validate_params(self):
        self.policy: ConversionPolicy = self.params.pop('policy', None) or ConversionPolicy()
        brick_size = tuple(int(b) for b in self.params.get('brick_size', self.policy.default_brick_size))
        if not self.policy.is_allowed_brick_size(brick_size):
            raise ValueError(
                f"Brick size {list(brick_size)} not allowed; each extent must be one of "
                f"{sorted(self.policy.allowed_brick_sizes)}"
            )
        curve = self.params.get('curve', self.policy.default_brick_curve)
        self.brick_size = brick_size
        self.curve = BrickCurve(curve) if not isinstance(curve, BrickCurve) else curve
        self.params['brick_size'] = brick_size
        self.params['curve'] = self.curve

    def get_description(self) -> str:
        return f"Bricks {'x'.join(map(str, self.brick_size))}, {self.curve.value} order"

    def organize(self, pyramid: Pyramid, brick_size: Optional[Tuple[int, int, int]] = None) -> BrickedPyramid:
        """
        Lay out every pyramid level as bricks.

        Args:
            pyramid: Levels of shape (lines, traces, samples_k)
            brick_size: Override of the configured brick size

        Returns:
            BrickedPyramid with one layout per level
        """
        size = tuple(brick_size) if brick_size is not None else self.brick_size
        if not self.policy.is_allowed_brick_size(size):
            raise ValueError(f"Brick size {list(size)} not allowed")

        levels = []
        warnings = []
        for k, volume in enumerate(pyramid.levels):
            self._check_cancelled()
            if volume.ndim != 3:
                raise ValueError(f"Level {k} must be 3-D (lines, traces, samples), got {volume.shape}")
            layout = plan_layout(volume.shape, size, self.curve)
            levels.append(BrickedLevel(level=k, volume=volume, layout=layout))
            self._report_progress(k + 1, pyramid.level_count, f"Level {k}: {layout.brick_count} bricks")
            logger.debug(f"Level {k}: grid {layout.grid}, margin {layout.margin}")

        padded = np.prod(levels[0].layout.padded_dimensions)
        actual = np.prod(levels[0].layout.dimensions)
        if padded > 8 * actual:
            warnings.append(
                f"Bricks {list(size)} are mostly padding for a {list(levels[0].layout.dimensions)} "
                f"volume ({actual / padded:.1%} data)"
            )
            logger.warning(warnings[-1])

        logger.info(f"Organized {len(levels)} levels into "
                    f"{sum(l.layout.brick_count for l in levels)} bricks ({self.curve.value})")
        return BrickedPyramid(levels=levels, warnings=warnings)

    def process(self, data: Pyramid) -> BrickedPyramid:
        return self.organize(data)

    @classmethod
    def _params_from_plain(cls, params):
        params = dict(params)
        if 'brick_size' in params:
            params['brick_size'] = tuple(params['brick_size'])
        if 'curve' in params:
            params['curve'] = BrickCurve(params['curve'])
        return params
