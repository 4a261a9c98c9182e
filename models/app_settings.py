"""
Global converter settings and conversion policy.
Uses JSON file for persistent storage across sessions.

Includes:
- Source size limit and whether exceeding it is fatal
- Brick, LOD and compression defaults
- Cloud-contract policy constants (allowed brick sizes, tolerance ceiling,
  optimization score threshold, brick sample bounds)
- Output and chunking defaults

Pure pipeline components never read this file themselves; they receive a
frozen ConversionPolicy built by get_policy().
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, FrozenSet

from models.volume_layout import BrickCurve

# Set up module logger
logger = logging.getLogger(__name__)

GIB = 1024 ** 3


@dataclass(frozen=True)
class ConversionPolicy:
    """
    Policy constants used by the gate, the encoders and the validator.

    The brick-size set and the tolerance ceiling come from the target ingestion
    service and are kept configurable until confirmed against its contract.
    """

    max_source_bytes: int = 10 * GIB
    size_limit_fatal: bool = False
    allowed_brick_sizes: FrozenSet[int] = field(default_factory=lambda: frozenset({32, 64, 128}))
    tolerance_ceiling: float = 0.05
    optimization_threshold: float = 0.4
    min_brick_samples: int = 4096
    max_brick_samples: int = 1048576
    default_lod_levels: int = 4
    default_brick_size: Tuple[int, int, int] = (64, 64, 64)
    default_brick_curve: BrickCurve = BrickCurve.MORTON
    default_brick_codec: str = 'zstd'
    default_compression_level: int = 5
    default_chunk_size: int = 4 * 1024 * 1024
    compression_workers: int = 1

    def is_allowed_brick_size(self, brick_size) -> bool:
        return len(brick_size) == 3 and all(b in self.allowed_brick_sizes for b in brick_size)


class AppSettings:
    """
    Singleton class for managing converter settings.

    Settings are automatically persisted to a JSON file (~/.seisconvert/settings.json).
    Unknown or malformed values fall back to the defaults.
    """

    _instance: Optional['AppSettings'] = None

    # Settings file location
    SETTINGS_DIR = Path.home() / '.seisconvert'
    SETTINGS_FILE = SETTINGS_DIR / 'settings.json'

    VALID_CODECS = ['zstd', 'lz4', 'lz4hc', 'blosclz', 'zlib']

    def __new__(cls):
        """Singleton pattern - only one instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        """Initialize settings (only once due to singleton)."""
        if self._initialized:
            return

        defaults = ConversionPolicy()
        self._defaults = {
            'max_source_bytes': defaults.max_source_bytes,
            'size_limit_fatal': defaults.size_limit_fatal,
            'allowed_brick_sizes': sorted(defaults.allowed_brick_sizes),
            'tolerance_ceiling': defaults.tolerance_ceiling,
            'optimization_threshold': defaults.optimization_threshold,
            'min_brick_samples': defaults.min_brick_samples,
            'max_brick_samples': defaults.max_brick_samples,
            'default_lod_levels': defaults.default_lod_levels,
            'default_brick_size': list(defaults.default_brick_size),
            'default_brick_curve': defaults.default_brick_curve.value,
            'default_brick_codec': defaults.default_brick_codec,
            'default_compression_level': defaults.default_compression_level,
            'default_chunk_size': defaults.default_chunk_size,
            'compression_workers': defaults.compression_workers,
            # Storage
            'output_directory': None,
        }

        # Current settings (loaded from file or defaults)
        self._settings: Dict[str, Any] = {}

        self._ensure_settings_dir()
        self._load_settings()

        self._initialized = True
        logger.info(f"AppSettings initialized from {self.SETTINGS_FILE}")

    def _ensure_settings_dir(self):
        """Ensure the settings directory exists."""
        try:
            self.SETTINGS_DIR.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create settings directory: {e}")

    def _load_settings(self):
        """Load settings from JSON file."""
        if self.SETTINGS_FILE.exists():
            try:
                with open(self.SETTINGS_FILE, 'r', encoding='utf-8') as f:
                    self._settings = json.load(f)
                logger.debug(f"Loaded settings from {self.SETTINGS_FILE}")
            except (OSError, json.JSONDecodeError) as e:
                logger.warning(f"Could not load settings file: {e}")
                self._settings = {}
        else:
            self._settings = {}
            logger.debug("No settings file found, using defaults")

    def _save_settings(self):
        """Save settings to JSON file."""
        try:
            self._ensure_settings_dir()
            with open(self.SETTINGS_FILE, 'w', encoding='utf-8') as f:
                json.dump(self._settings, f, indent=2, default=str)
            logger.debug(f"Saved settings to {self.SETTINGS_FILE}")
        except OSError as e:
            logger.error(f"Could not save settings: {e}")

    def _get(self, key: str, default=None):
        """Get a setting value, falling back to defaults."""
        if default is None:
            default = self._defaults.get(key)
        return self._settings.get(key, default)

    def _set(self, key: str, value: Any, save: bool = True):
        """Set a setting value and optionally save to file."""
        self._settings[key] = value
        if save:
            self._save_settings()

    def _get_int(self, key: str) -> int:
        value = self._get(key)
        try:
            return int(value)
        except (TypeError, ValueError):
            return self._defaults[key]

    def _get_float(self, key: str) -> float:
        value = self._get(key)
        try:
            return float(value)
        except (TypeError, ValueError):
            return self._defaults[key]

    def reset_to_defaults(self):
        """Reset all settings to default values."""
        self._settings = self._defaults.copy()
        self._save_settings()
        logger.info("Settings reset to defaults")

    # =========================================================================
    # Size Limit
    # =========================================================================

    def get_max_source_bytes(self) -> int:
        """Largest accepted source file, in bytes."""
        return self._get_int('max_source_bytes')

    def set_max_source_bytes(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError(f"Size limit must be positive, got {limit}")
        self._set('max_source_bytes', int(limit))

    def get_size_limit_fatal(self) -> bool:
        """Whether exceeding the size limit aborts the conversion."""
        return bool(self._get('size_limit_fatal'))

    def set_size_limit_fatal(self, fatal: bool) -> None:
        self._set('size_limit_fatal', bool(fatal))

    # =========================================================================
    # Cloud Contract Policy
    # =========================================================================

    def get_allowed_brick_sizes(self) -> FrozenSet[int]:
        value = self._get('allowed_brick_sizes')
        try:
            sizes = frozenset(int(v) for v in value)
        except (TypeError, ValueError):
            sizes = frozenset()
        return sizes or frozenset(self._defaults['allowed_brick_sizes'])

    def set_allowed_brick_sizes(self, sizes) -> None:
        sizes = sorted({int(s) for s in sizes})
        if not sizes or any(s <= 0 for s in sizes):
            raise ValueError(f"Invalid brick sizes: {sizes}")
        self._set('allowed_brick_sizes', sizes)

    def get_tolerance_ceiling(self) -> float:
        """Compression tolerance above which the validator warns."""
        return self._get_float('tolerance_ceiling')

    def set_tolerance_ceiling(self, ceiling: float) -> None:
        if not 0.0 <= ceiling <= 1.0:
            raise ValueError(f"Tolerance ceiling must be within [0, 1], got {ceiling}")
        self._set('tolerance_ceiling', float(ceiling))

    def get_optimization_threshold(self) -> float:
        """Minimum optimization-hint score for cloud compatibility."""
        return self._get_float('optimization_threshold')

    # =========================================================================
    # Encoding Defaults
    # =========================================================================

    def get_default_lod_levels(self) -> int:
        return max(1, self._get_int('default_lod_levels'))

    def set_default_lod_levels(self, levels: int) -> None:
        if levels < 1:
            raise ValueError(f"LOD levels must be at least 1, got {levels}")
        self._set('default_lod_levels', int(levels))

    def get_default_brick_size(self) -> Tuple[int, int, int]:
        value = self._get('default_brick_size')
        try:
            size = tuple(int(v) for v in value)
        except (TypeError, ValueError):
            size = ()
        if len(size) != 3:
            size = tuple(self._defaults['default_brick_size'])
        return size

    def set_default_brick_size(self, size) -> None:
        size = [int(s) for s in size]
        if len(size) != 3:
            raise ValueError(f"Brick size must have three dimensions, got {size}")
        self._set('default_brick_size', size)

    def get_default_brick_curve(self) -> BrickCurve:
        try:
            return BrickCurve(self._get('default_brick_curve'))
        except ValueError:
            return BrickCurve(self._defaults['default_brick_curve'])

    def get_default_brick_codec(self) -> str:
        codec = self._get('default_brick_codec')
        if codec not in self.VALID_CODECS:
            codec = self._defaults['default_brick_codec']
        return codec

    def set_default_brick_codec(self, codec: str) -> None:
        if codec not in self.VALID_CODECS:
            raise ValueError(f"Invalid codec: {codec}. Must be one of {self.VALID_CODECS}")
        self._set('default_brick_codec', codec)

    def get_default_chunk_size(self) -> int:
        return max(1, self._get_int('default_chunk_size'))

    def get_compression_workers(self) -> int:
        return max(1, self._get_int('compression_workers'))

    def set_compression_workers(self, workers: int) -> None:
        self._set('compression_workers', max(1, int(workers)))

    # =========================================================================
    # Output Directory
    # =========================================================================

    def get_default_output_directory(self) -> Path:
        """Get the default output directory path."""
        return Path.home() / '.seisconvert' / 'converted'

    def get_effective_output_directory(self) -> Path:
        """
        Get the effective output directory (configured or default).

        Creates the directory if it doesn't exist.
        """
        custom = self._get('output_directory')
        path = Path(custom) if custom else self.get_default_output_directory()
        path.mkdir(parents=True, exist_ok=True)
        return path

    def set_output_directory(self, path: Optional[str]) -> None:
        self._set('output_directory', str(path) if path else None)
        logger.info(f"Output directory set to: {path or 'default'}")

    # =========================================================================
    # Policy
    # =========================================================================

    def get_policy(self) -> ConversionPolicy:
        """Snapshot the current settings as an immutable policy."""
        return ConversionPolicy(
            max_source_bytes=self.get_max_source_bytes(),
            size_limit_fatal=self.get_size_limit_fatal(),
            allowed_brick_sizes=self.get_allowed_brick_sizes(),
            tolerance_ceiling=self.get_tolerance_ceiling(),
            optimization_threshold=self.get_optimization_threshold(),
            min_brick_samples=self._get_int('min_brick_samples'),
            max_brick_samples=self._get_int('max_brick_samples'),
            default_lod_levels=self.get_default_lod_levels(),
            default_brick_size=self.get_default_brick_size(),
            default_brick_curve=self.get_default_brick_curve(),
            default_brick_codec=self.get_default_brick_codec(),
            default_compression_level=self._get_int('default_compression_level'),
            default_chunk_size=self.get_default_chunk_size(),
            compression_workers=self.get_compression_workers(),
        )

    def __repr__(self) -> str:
        return (f"AppSettings(max_source_bytes={self.get_max_source_bytes()}, "
                f"brick_size={self.get_default_brick_size()})")


# Global singleton instance
def get_settings() -> AppSettings:
    """Get the global settings instance."""
    return AppSettings()
