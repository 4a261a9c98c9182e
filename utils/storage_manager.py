"""
Storage manager for converted output.

Persists an encoded output to a local file, a cloud blob container, or
both. Output may be one buffer or the encoder's sequence of segments; it
is streamed chunk by chunk and never joined here. Local files are written
through a temporary file renamed into place. Cloud blobs go through the
Azure block blob client (stage one block per chunk, then commit the block
list), authorised by a SAS token.

persist() never raises; failures come back in StorageResult.error.
"""

import base64
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Iterator, Iterable, List, Union, Callable
from urllib.parse import quote

from azure.core.exceptions import AzureError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from seisio.errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024
BLOB_ENDPOINT_SUFFIX = 'blob.core.windows.net'
OUTPUT_CONTENT_TYPE = 'application/octet-stream'

BytesLike = Union[bytes, bytearray, memoryview]
Output = Union[BytesLike, Iterable[BytesLike]]


@dataclass(frozen=True)
class LocalDestination:
    """Full path of the output file."""
    path: Path

    def __post_init__(self):
        object.__setattr__(self, 'path', Path(self.path))


@dataclass(frozen=True)
class CloudDestination:
    """Block blob addressed by account, container and blob name."""
    account: str
    container: str
    blob_name: str
    auth_token: str
    endpoint_suffix: str = BLOB_ENDPOINT_SUFFIX

    @property
    def account_url(self) -> str:
        return f"https://{self.account}.{self.endpoint_suffix}"


@dataclass(frozen=True)
class BothDestination:
    local: LocalDestination
    cloud: CloudDestination


Destination = Union[LocalDestination, CloudDestination, BothDestination]


@dataclass(frozen=True)
class StorageResult:
    """Outcome of one persist() call."""
    success: bool
    local_path: Optional[Path] = None
    cloud_url: Optional[str] = None
    error: Optional[str] = None
    bytes_written: int = 0

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'localPath': str(self.local_path) if self.local_path else None,
            'cloudUrl': self.cloud_url,
            'error': self.error,
            'bytesWritten': self.bytes_written,
        }


def blob_url(destination: CloudDestination) -> str:
    """Public URL of the blob, without the SAS token."""
    return (f"{destination.account_url}/"
            f"{quote(destination.container)}/{quote(destination.blob_name)}")


def validate_cloud_destination(destination: CloudDestination) -> List[str]:
    """
    Check a cloud destination before any upload.

    Returns:
        Problems found; empty when the destination is usable
    """
    problems = []
    if not destination.account:
        problems.append("Cloud account name is required")
    elif not destination.account.isalnum() or destination.account != destination.account.lower():
        problems.append(f"Cloud account name must be lowercase alphanumeric, got {destination.account!r}")
    if not destination.container:
        problems.append("Cloud container name is required")
    if not destination.blob_name:
        problems.append("Blob name is required")
    if not destination.auth_token:
        problems.append("A SAS token is required for cloud upload")
    return problems


def iter_chunks(data: Output, chunk_size: int) -> Iterator[BytesLike]:
    """
    Re-cut output into chunks of chunk_size bytes; only the last may be shorter.

    Args:
        data: One buffer, or segments in output order
        chunk_size: Bytes per chunk

    Segments longer than a chunk are sliced without copying; shorter ones
    are gathered until a chunk is full.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    segments = [data] if isinstance(data, (bytes, bytearray, memoryview)) else data
    pending = bytearray()
    for segment in segments:
        view = memoryview(segment).cast('B')
        start = 0
        if pending:
            start = min(chunk_size - len(pending), len(view))
            pending += view[:start]
            if len(pending) < chunk_size:
                continue
            yield bytes(pending)
            pending = bytearray()
        while len(view) - start >= chunk_size:
            yield view[start:start + chunk_size]
            start += chunk_size
        pending += view[start:]
    if pending:
        yield bytes(pending)


def _block_id(index: int) -> str:
    # All block IDs of a blob must have the same length
    return base64.b64encode(f"block-{index:08d}".encode('ascii')).decode('ascii')


def blob_service_client(destination: CloudDestination) -> BlobServiceClient:
    """Service client for the destination account, authorised by its SAS token."""
    return BlobServiceClient(account_url=destination.account_url,
                             credential=destination.auth_token.lstrip('?'))


class StorageManager:
    """
    Persist converted output.

    Usage
    -----
    >>> manager = StorageManager()
    >>> result = manager.persist(data, LocalDestination('/tmp/survey.ovds'))
    >>> result.success
    True
    """

    def __init__(self, client_factory: Optional[Callable[[CloudDestination], BlobServiceClient]] = None):
        self.client_factory = client_factory or blob_service_client

    def persist(self, data: Output, destination: Destination,
                chunk_size: Optional[int] = None) -> StorageResult:
        """
        Write output to the destination.

        Args:
            data: Encoded output, as one buffer or a sequence of segments
            destination: Local, cloud or both
            chunk_size: Bytes per write or uploaded block

        Returns:
            StorageResult; success is False with an error message on failure
        """
        chunk_size = chunk_size or DEFAULT_CHUNK_SIZE
        if not isinstance(data, (bytes, bytearray, memoryview, list, tuple)):
            data = list(data)
        local_path, cloud_url, written = None, None, 0
        try:
            if isinstance(destination, BothDestination):
                local_path, written = self._save_local(data, destination.local, chunk_size)
                cloud_url, written = self._save_cloud(data, destination.cloud, chunk_size)
            elif isinstance(destination, LocalDestination):
                local_path, written = self._save_local(data, destination, chunk_size)
            elif isinstance(destination, CloudDestination):
                cloud_url, written = self._save_cloud(data, destination, chunk_size)
            else:
                raise StorageError(f"Unsupported destination type: {type(destination).__name__}")
        except StorageError as e:
            logger.error(f"Storage failed: {e.message}")
            return StorageResult(success=False, local_path=local_path, cloud_url=cloud_url,
                                 error=e.message)

        targets = [str(t) for t in (local_path, cloud_url) if t]
        logger.info(f"Stored {written} bytes to {' and '.join(targets)}")
        return StorageResult(success=True, local_path=local_path, cloud_url=cloud_url,
                             bytes_written=written)

    def _save_local(self, data: Output, destination: LocalDestination, chunk_size: int):
        path = destination.path
        temp = path.with_name(path.name + '.part')
        written = 0
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp, 'wb') as f:
                for chunk in iter_chunks(data, chunk_size):
                    f.write(chunk)
                    written += len(chunk)
            os.replace(temp, path)
        except OSError as e:
            if temp.exists():
                temp.unlink()
            raise StorageError(f"Could not write {path}: {e}") from e
        return path, written

    def _save_cloud(self, data: Output, destination: CloudDestination, chunk_size: int):
        problems = validate_cloud_destination(destination)
        if problems:
            raise StorageError("; ".join(problems))

        url = blob_url(destination)
        blocks = []
        written = 0
        try:
            blob = self.client_factory(destination).get_blob_client(
                container=destination.container, blob=destination.blob_name)
            for index, chunk in enumerate(iter_chunks(data, chunk_size)):
                block_id = _block_id(index)
                blob.stage_block(block_id=block_id, data=bytes(chunk), length=len(chunk))
                blocks.append(BlobBlock(block_id=block_id))
                written += len(chunk)
            blob.commit_block_list(blocks, content_settings=ContentSettings(content_type=OUTPUT_CONTENT_TYPE))
        except AzureError as e:
            raise StorageError(f"Cloud upload to {url} failed: {e}") from e

        logger.debug(f"Uploaded {len(blocks)} blocks to {url}")
        return url, written
