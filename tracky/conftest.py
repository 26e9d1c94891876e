"""
tracky/conftest.py

Shared fixtures: a fresh SQLite database per test, an in-memory blob store,
actors for each role and a workflow with a fixed valuation clock.
"""

from __future__ import annotations

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List

import pytest

# Point the app at throwaway storage BEFORE anything imports tracky.config
_TEST_ROOT = tempfile.mkdtemp(prefix="tracky-test-")
os.environ.setdefault("DATABASE_PATH", str(Path(_TEST_ROOT) / "app.db"))
os.environ.setdefault("BLOB_LOCAL_DIR", str(Path(_TEST_ROOT) / "media"))

from tracky.blob import BlobStore
from tracky.errors import DependencyFailure
from tracky.media import ImageUpload, MediaCoordinator
from tracky.migrate import run_migrations
from tracky.models import Actor, Role
from tracky.store import EntityStore
from tracky.workflow import ApprovalWorkflow

FIXED_NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class MemoryBlobStore(BlobStore):
    """Blob store fake that records every call and can be told to fail."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_put_on: List[str] = []
        self.fail_delete = False

    def put(self, data: bytes, path: str, content_type: str = "application/octet-stream") -> str:
        if any(marker in path for marker in self.fail_put_on):
            raise DependencyFailure("Failed to upload file")
        url = f"memory://{path}"
        self.blobs[url] = data
        return url

    def delete(self, url: str) -> bool:
        if self.fail_delete:
            raise DependencyFailure(f"Failed to delete file: {url}")
        self.deleted.append(url)
        return self.blobs.pop(url, None) is not None


@pytest.fixture
def db_path(tmp_path) -> str:
    path = str(tmp_path / "tracky.db")
    run_migrations(path)
    return path


@pytest.fixture
def store(db_path) -> EntityStore:
    return EntityStore(database_path=db_path)


@pytest.fixture
def blobs() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def workflow(store, blobs) -> ApprovalWorkflow:
    media = MediaCoordinator(blobs, qr_renderer=lambda text: f"QR:{text}".encode())
    return ApprovalWorkflow(store, media, clock=lambda: FIXED_NOW)


@pytest.fixture
def supervisor() -> Actor:
    return Actor(actor_id="sup-1", role=Role.supervisor)


@pytest.fixture
def operator() -> Actor:
    return Actor(actor_id="op-1", role=Role.operator)


@pytest.fixture
def viewer() -> Actor:
    return Actor(actor_id="view-1", role=Role.viewer)


@pytest.fixture
def png() -> ImageUpload:
    return ImageUpload(filename="photo.png", content=b"\x89PNG fake image bytes")


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


# ========================================================================
# HTTP fixtures
# ========================================================================

def bearer(role: str, sub: str = "user-1", minutes: int = 30) -> Dict[str, str]:
    """Authorization header for a token as the identity provider would mint it."""
    import jwt

    from tracky.config import ALGORITHM, SECRET_KEY

    payload = {"sub": sub, "role": role, "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes)}
    return {"Authorization": f"Bearer {jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)}"}


@pytest.fixture
def client(workflow):
    """TestClient whose routes run against the per-test workflow."""
    from fastapi.testclient import TestClient

    from tracky.dependencies import get_workflow
    from tracky.main import app

    app.dependency_overrides[get_workflow] = lambda: workflow
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_workflow, None)


@pytest.fixture
def as_supervisor() -> Dict[str, str]:
    return bearer("Supervisor", sub="sup-1")


@pytest.fixture
def as_operator() -> Dict[str, str]:
    return bearer("PIC", sub="op-1")


@pytest.fixture
def as_viewer() -> Dict[str, str]:
    return bearer("User", sub="view-1")


@pytest.fixture
def token_for():
    return bearer
