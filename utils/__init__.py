"""Utilities package - cancellation and output storage."""
from .cancellation import CancellationToken, CancellationError, CancellationReason, check_cancelled
from .storage_manager import (
    StorageManager,
    StorageResult,
    LocalDestination,
    CloudDestination,
    BothDestination,
)

__all__ = [
    'CancellationToken',
    'CancellationError',
    'CancellationReason',
    'check_cancelled',
    'StorageManager',
    'StorageResult',
    'LocalDestination',
    'CloudDestination',
    'BothDestination',
]
