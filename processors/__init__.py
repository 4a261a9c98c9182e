"""
Processors package - volume processing stages run by the format encoders.

Includes a stage registry so recorded stage configurations can be rebuilt.
"""
from typing import Dict, Type, Any

from .base_stage import BaseStage, ProgressCallback
from .pyramid_builder import PyramidBuilder, Pyramid, downsample_pairs
from .brick_organizer import (
    BrickOrganizer,
    BrickedLevel,
    BrickedPyramid,
    brick_order,
    morton_encode,
    plan_layout,
)
from .compression_stage import (
    CompressionStage,
    CompressedLevel,
    CompressedPyramid,
    compress_array,
    decompress_brick,
    finite_bounds,
    finite_range,
    quantization_step,
)

# =============================================================================
# Stage Registry
# =============================================================================

STAGE_REGISTRY: Dict[str, Type[BaseStage]] = {
    'PyramidBuilder': PyramidBuilder,
    'BrickOrganizer': BrickOrganizer,
    'CompressionStage': CompressionStage,
}


def get_stage_class(name: str) -> Type[BaseStage]:
    """
    Get stage class by name from registry.

    Raises:
        KeyError: If stage name not found in registry
    """
    if name not in STAGE_REGISTRY:
        raise KeyError(f"Unknown stage: {name}. Available: {list(STAGE_REGISTRY.keys())}")
    return STAGE_REGISTRY[name]


def create_stage(config: Dict[str, Any]) -> BaseStage:
    """Create a stage instance from a to_dict() configuration."""
    return BaseStage.from_dict(config)


__all__ = [
    'BaseStage',
    'ProgressCallback',
    'PyramidBuilder',
    'Pyramid',
    'downsample_pairs',
    'BrickOrganizer',
    'BrickedLevel',
    'BrickedPyramid',
    'brick_order',
    'morton_encode',
    'plan_layout',
    'CompressionStage',
    'CompressedLevel',
    'CompressedPyramid',
    'compress_array',
    'decompress_brick',
    'finite_bounds',
    'finite_range',
    'quantization_step',
    'STAGE_REGISTRY',
    'get_stage_class',
    'create_stage',
]
