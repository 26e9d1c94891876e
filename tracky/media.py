"""
tracky/media.py

Media Lifecycle Coordinator: entity images and the QR codes that point at them.

Ordering rules the workflow relies on:
- New blobs are uploaded BEFORE the document write that references them, under
  a key that includes the revision being written and a per-attempt token. Two
  writers racing from the same revision never share a key, so a losing writer
  only ever discards its own blobs.
- If the document write fails, the new blobs are discarded.
- Old blobs are discarded only AFTER the write that dropped them committed.
- Discarding is best-effort: failures are logged, never raised.
"""

from __future__ import annotations

import io
import os
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import qrcode

try:
    from tracky.blob import BlobStore
    from tracky.config import IS_DEV, MAX_IMAGE_BYTES
    from tracky.errors import DependencyFailure, InvalidArgument, TrackyError
    from tracky.models import EntityKind
except ModuleNotFoundError:
    from blob import BlobStore
    from config import IS_DEV, MAX_IMAGE_BYTES
    from errors import DependencyFailure, InvalidArgument, TrackyError
    from models import EntityKind


IMAGE_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}

# Document fields owned by this module
MEDIA_FIELDS = ("imageURL", "qrCode")


@dataclass(frozen=True)
class ImageUpload:
    filename: str
    content: bytes

    @property
    def extension(self) -> str:
        return os.path.splitext(self.filename or "")[1].lower()

    @property
    def content_type(self) -> str:
        return IMAGE_CONTENT_TYPES.get(self.extension, "application/octet-stream")


def validate_image(image: ImageUpload) -> None:
    """Reject unsupported or oversized images before anything is written."""
    if image.extension not in IMAGE_CONTENT_TYPES:
        allowed = ", ".join(sorted(IMAGE_CONTENT_TYPES))
        raise InvalidArgument(f"Unsupported image type {image.extension or '(none)'}; allowed: {allowed}")
    if not image.content:
        raise InvalidArgument("Image is empty")
    if len(image.content) > MAX_IMAGE_BYTES:
        raise InvalidArgument(f"Image exceeds {MAX_IMAGE_BYTES} bytes")


def render_qr_png(text: str) -> bytes:
    """Render `text` as a PNG QR code."""
    if not text or not isinstance(text, str):
        raise InvalidArgument("Invalid input for QR code generation")
    buffer = io.BytesIO()
    qrcode.make(text).save(buffer, format="PNG")
    return buffer.getvalue()


def image_key(kind: EntityKind, entity_id: str, version: int, token: str, extension: str) -> str:
    return f"{kind.blob_prefix}/{entity_id}/image-v{version}-{token}{extension}"


def qr_key(kind: EntityKind, entity_id: str, version: int, token: str) -> str:
    return f"{kind.blob_prefix}/{entity_id}/qr-v{version}-{token}.png"


def attempt_token() -> str:
    return uuid.uuid4().hex[:8]


class MediaCoordinator:
    """Uploads images and their QR codes, and cleans up blobs no longer referenced."""

    def __init__(
        self,
        blob_store: BlobStore,
        qr_renderer: Callable[[str], bytes] = render_qr_png,
        token_factory: Callable[[], str] = attempt_token,
    ):
        self.blob_store = blob_store
        self.qr_renderer = qr_renderer
        self.token_factory = token_factory

    def publish(self, kind: EntityKind, entity_id: str, version: int, image: ImageUpload) -> Dict[str, str]:
        """
        Store an image and a QR code encoding the image URL.

        Args:
            version: Revision of the document write that will reference these blobs

        Returns:
            {"imageURL": ..., "qrCode": ...} to merge into the document.

        Raises:
            DependencyFailure: If either upload fails. Nothing is left behind.
        """
        validate_image(image)
        token = self.token_factory()

        image_url = self.blob_store.put(
            image.content,
            image_key(kind, entity_id, version, token, image.extension),
            image.content_type,
        )
        try:
            qr_png = self.qr_renderer(image_url)
            qr_url = self.blob_store.put(qr_png, qr_key(kind, entity_id, version, token), "image/png")
        except TrackyError:
            self.discard([image_url])
            raise
        except Exception as e:
            self.discard([image_url])
            print(f"[MEDIA] QR generation failed for {kind.value} {entity_id}: {e}")
            raise DependencyFailure("Failed to generate QR code") from e

        if IS_DEV:
            print(f"[MEDIA] Published image v{version} for {kind.value} {entity_id}")
        return {"imageURL": image_url, "qrCode": qr_url}

    def discard(self, urls: Iterable[Optional[str]]) -> None:
        """Best-effort delete; a storage failure never propagates."""
        for url in urls:
            if not url:
                continue
            try:
                self.blob_store.delete(url)
            except DependencyFailure as e:
                print(f"[MEDIA] Failed to delete blob {url}: {e.message}")
            except Exception as e:
                print(f"[MEDIA] Unexpected error deleting blob {url}: {e}")

    def discard_for(self, doc: Dict) -> None:
        """Discard every media blob a (removed or superseded) document referenced."""
        self.discard(doc.get(field) for field in MEDIA_FIELDS)
