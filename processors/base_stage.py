"""
Base stage class - abstract interface for the volume processing stages.
Pyramid building, bricking and compression all follow this contract.

Supports serialization so a stage configuration can be recorded next to
the data it produced.
"""
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any, Optional, Callable
import importlib

from utils.cancellation import CancellationToken, check_cancelled

# Type alias for progress callbacks: (current, total, message) -> None
ProgressCallback = Callable[[int, int, str], None]


class BaseStage(ABC):
    """
    Abstract base class for volume processing stages.

    All stages must:
    1. Be pure (don't modify input data)
    2. Return a new result object
    3. Validate parameters in __init__
    4. Check the cancellation token between units of work
    """

    # Stage name used in cancellation and error messages
    stage_name = 'stage'

    def __init__(self, **params):
        """
        Initialize stage with parameters.

        Args:
            **params: Stage-specific parameters
        """
        self.params = params
        self._progress_callback: Optional[ProgressCallback] = None
        self._token: Optional[CancellationToken] = None
        self._validate_params()

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> 'BaseStage':
        """
        Set progress callback for status updates.

        Args:
            callback: Function(current, total, message) to receive progress updates.
                     Set to None to disable progress reporting.

        Returns:
            self for method chaining
        """
        self._progress_callback = callback
        return self

    def set_cancellation_token(self, token: Optional[CancellationToken]) -> 'BaseStage':
        """Attach a cancellation token checked between units of work."""
        self._token = token
        return self

    def _report_progress(self, current: int, total: int, message: str = ""):
        if self._progress_callback is not None:
            self._progress_callback(current, total, message)

    def _check_cancelled(self):
        check_cancelled(self._token, self.stage_name)

    @abstractmethod
    def _validate_params(self):
        """Validate stage parameters. Raise ValueError if invalid."""
        pass

    @abstractmethod
    def process(self, data):
        """
        Run the stage.

        Args:
            data: Output of the previous stage

        Returns:
            New result object (input unchanged)
        """
        pass

    @abstractmethod
    def get_description(self) -> str:
        """Get human-readable description of this stage and its parameters."""
        pass

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.params})"

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize stage configuration.

        Returns:
            Dictionary with class info and JSON-compatible parameters
        """
        return {
            'class_name': self.__class__.__name__,
            'module': self.__class__.__module__,
            'params': {k: _plain(v) for k, v in self.params.items()},
        }

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'BaseStage':
        """
        Reconstruct stage from serialized configuration.

        Raises:
            ValueError: If config is invalid or class not found
        """
        try:
            module = importlib.import_module(config['module'])
            stage_class = getattr(module, config['class_name'])
            if not issubclass(stage_class, BaseStage):
                raise ValueError(f"{config['class_name']} is not a BaseStage subclass")
            return stage_class(**stage_class._params_from_plain(config['params']))
        except KeyError as e:
            raise ValueError(f"Invalid stage config - missing key: {e}")
        except ImportError as e:
            raise ValueError(f"Cannot import stage module '{config.get('module')}': {e}")
        except AttributeError as e:
            raise ValueError(f"Stage class '{config.get('class_name')}' not found: {e}")

    @classmethod
    def _params_from_plain(cls, params: Dict[str, Any]) -> Dict[str, Any]:
        """Turn serialized parameters back into constructor arguments."""
        return dict(params)


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (tuple, frozenset, set)):
        return sorted(value) if not isinstance(value, tuple) else list(value)
    return value
