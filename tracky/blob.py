"""
tracky/blob.py

Blob object storage for entity images and QR codes.

Two backends behind one interface:
- LocalBlobStore: files under BLOB_LOCAL_DIR, served by the app at /media (dev)
- AzureBlobStore: Azure Blob Storage container (staging/prod)

`put` returns a durable URL that is stored on the entity; `delete` takes that URL
back. Callers treat deletion as advisory cleanup.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote, urlparse

from azure.core.exceptions import AzureError, ResourceNotFoundError
from azure.storage.blob import BlobServiceClient, ContentSettings

try:
    from tracky.config import (
        AZURE_BLOB_CONTAINER,
        AZURE_STORAGE_CONNECTION_STRING,
        BLOB_BACKEND,
        BLOB_BASE_URL,
        BLOB_LOCAL_DIR,
        IS_DEV,
    )
    from tracky.errors import DependencyFailure
except ModuleNotFoundError:
    from config import (
        AZURE_BLOB_CONTAINER,
        AZURE_STORAGE_CONNECTION_STRING,
        BLOB_BACKEND,
        BLOB_BASE_URL,
        BLOB_LOCAL_DIR,
        IS_DEV,
    )
    from errors import DependencyFailure


class BlobStore(ABC):
    """
    Interface for blob storage operations.

    Enables dependency injection and test fakes for media handling.
    """

    @abstractmethod
    def put(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        """Store bytes at `path` and return the URL to reference them by."""

    @abstractmethod
    def delete(self, url: str) -> bool:
        """Delete the blob behind `url`. Returns False if it was already gone."""


class LocalBlobStore(BlobStore):
    """Filesystem-backed store for local development."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        self.root = Path(root or BLOB_LOCAL_DIR).resolve()
        self.base_url = (base_url or BLOB_BASE_URL).rstrip("/")

    def _target(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValueError(f"Blob path escapes storage root: {path!r}")
        return target

    def put(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        try:
            target = self._target(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            print(f"[BLOB] Failed to write {path}: {e}")
            raise DependencyFailure("Failed to upload file") from e

        if IS_DEV:
            print(f"[BLOB] Wrote {path} ({len(data)} bytes)")
        return f"{self.base_url}/{quote(path)}"

    def path_for_url(self, url: str) -> str:
        prefix = f"{self.base_url}/"
        if not url.startswith(prefix):
            raise ValueError(f"URL is not served by this store: {url}")
        return unquote(url[len(prefix):])

    def delete(self, url: str) -> bool:
        try:
            target = self._target(self.path_for_url(url))
            if not target.exists():
                print(f"[BLOB] Not found for deletion: {url}")
                return False
            target.unlink()
        except (OSError, ValueError) as e:
            raise DependencyFailure(f"Failed to delete file: {url}") from e

        if IS_DEV:
            print(f"[BLOB] Deleted {url}")
        return True


class AzureBlobStore(BlobStore):
    """Azure Blob Storage container, authenticated with a connection string."""

    def __init__(self, connection_string: Optional[str] = None, container: Optional[str] = None):
        connection_string = connection_string or AZURE_STORAGE_CONNECTION_STRING
        if not connection_string:
            raise RuntimeError("BLOB_BACKEND=azure requires AZURE_STORAGE_CONNECTION_STRING")
        self.container = container or AZURE_BLOB_CONTAINER
        self.blob_service = BlobServiceClient.from_connection_string(connection_string)
        self.container_client = self.blob_service.get_container_client(self.container)
        print(f"[BLOB] Azure container: {self.blob_service.account_name}/{self.container}")

    def put(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        try:
            blob_client = self.container_client.get_blob_client(path)
            blob_client.upload_blob(
                data,
                overwrite=True,
                content_settings=ContentSettings(
                    content_type=content_type,
                    cache_control="public,max-age=31536000",
                ),
            )
        except AzureError as e:
            print(f"[BLOB] Failed to upload {self.container}/{path}: {e}")
            raise DependencyFailure("Failed to upload file") from e

        if IS_DEV:
            print(f"[BLOB] Uploaded {self.container}/{path} ({len(data)} bytes)")
        return blob_client.url

    def blob_name_for_url(self, url: str) -> str:
        # URL path is /<container>/<blob name>
        path = unquote(urlparse(url).path).lstrip("/")
        container, _, name = path.partition("/")
        if container != self.container or not name:
            raise ValueError(f"URL is not in container {self.container}: {url}")
        return name

    def delete(self, url: str) -> bool:
        try:
            name = self.blob_name_for_url(url)
            self.container_client.get_blob_client(name).delete_blob()
        except ResourceNotFoundError:
            print(f"[BLOB] Not found for deletion: {url}")
            return False
        except (AzureError, ValueError) as e:
            raise DependencyFailure(f"Failed to delete file: {url}") from e

        if IS_DEV:
            print(f"[BLOB] Deleted {self.container}/{name}")
        return True


_blob_store: Optional[BlobStore] = None


def get_blob_store() -> BlobStore:
    """Process-wide blob store for the configured backend."""
    global _blob_store
    if _blob_store is None:
        if BLOB_BACKEND == "azure":
            _blob_store = AzureBlobStore()
        else:
            _blob_store = LocalBlobStore()
    return _blob_store
