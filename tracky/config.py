# tracky/config.py
# Environment-aware configuration for the Tracky asset/tracker backend

import os
from typing import Literal

# Environment detection
ENV: Literal["dev", "staging", "prod"] = os.environ.get("ENV", "dev")  # type: ignore
IS_DEV = (ENV == "dev")
IS_STAGING = (ENV == "staging")
IS_PROD = (ENV == "prod")

# Bearer token verification (tokens are minted by the identity provider)
SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key")
ALGORITHM = "HS256"

# Database configuration
# DATABASE_URL takes precedence (managed Postgres)
# Falls back to SQLite for local development
DATABASE_URL = os.environ.get("DATABASE_URL", "").strip()
DATABASE_PATH = os.environ.get("DATABASE_PATH", "tracky.db")

# Blob storage configuration
BLOB_BACKEND: Literal["local", "azure"] = os.environ.get("BLOB_BACKEND", "local")  # type: ignore
BLOB_LOCAL_DIR = os.environ.get("BLOB_LOCAL_DIR", "media")
BLOB_BASE_URL = os.environ.get("BLOB_BASE_URL", "http://localhost:8000/media").rstrip("/")
AZURE_STORAGE_CONNECTION_STRING = os.environ.get("AZURE_STORAGE_CONNECTION_STRING", "")
AZURE_BLOB_CONTAINER = os.environ.get("AZURE_BLOB_CONTAINER", "tracky-media")

# Upload ceiling for asset/tracker images
MAX_IMAGE_BYTES = int(os.environ.get("MAX_IMAGE_BYTES", str(10 * 1024 * 1024)))

# How many times an unconditional field merge re-reads after losing a revision race
STALE_WRITE_RETRIES = int(os.environ.get("STALE_WRITE_RETRIES", "3"))

# CORS origins (expand for staging/prod)
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

if IS_STAGING or IS_PROD:
    extra_origins = os.environ.get("CORS_ORIGINS", "")
    if extra_origins:
        CORS_ORIGINS.extend(o.strip() for o in extra_origins.split(",") if o.strip())

# Database type detection
IS_POSTGRES = DATABASE_URL.startswith(("postgres://", "postgresql://"))
IS_SQLITE = not IS_POSTGRES

print(f"[CONFIG] Environment: {ENV}")
print(f"[CONFIG] Database: {'PostgreSQL' if IS_POSTGRES else 'SQLite (local dev)'}")
print(f"[CONFIG] Blob backend: {BLOB_BACKEND}")
print(f"[CONFIG] Max image size: {MAX_IMAGE_BYTES} bytes")
