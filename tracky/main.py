# ---------------------------------------------------------
# tracky/main.py
# Tracky - Asset & Tracker Backend
#
# Run: uvicorn tracky.main:app --reload (from repo root)
#
# - FastAPI + SQLite (dev) / PostgreSQL (prod)
# - /asset   : asset CRUD, edit-request / approve workflow, images + QR codes
# - /tracker : tracker CRUD, edit-request / approve workflow, location history
# - /media   : locally stored images (BLOB_BACKEND=local only)
# ---------------------------------------------------------

from __future__ import annotations

from pathlib import Path as FsPath
from typing import Dict

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

# Import local modules (robust fallback for different run contexts)
try:
    from tracky.config import BLOB_BACKEND, BLOB_LOCAL_DIR, CORS_ORIGINS, IS_DEV, IS_PROD
    from tracky.errors import InvalidArgument, TrackyError
    from tracky.migrate import run_migrations
    from tracky.routes_assets import router as assets_router
    from tracky.routes_trackers import router as trackers_router
except ModuleNotFoundError:
    from config import BLOB_BACKEND, BLOB_LOCAL_DIR, CORS_ORIGINS, IS_DEV, IS_PROD
    from errors import InvalidArgument, TrackyError
    from migrate import run_migrations
    from routes_assets import router as assets_router
    from routes_trackers import router as trackers_router


# ---------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------
app = FastAPI(title="Tracky Backend", version="0.1")

# CORS configuration from config module
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS if IS_PROD else ["*"],  # Restrict origins in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

run_migrations()


# ---------------------------------------------------------
# Error mapping
# ---------------------------------------------------------
@app.exception_handler(TrackyError)
def handle_tracky_error(request: Request, exc: TrackyError) -> JSONResponse:
    if IS_DEV or exc.status_code >= 500:
        print(f"[API] {request.method} {request.url.path} -> {exc.status_code} {exc.kind}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    error = InvalidArgument(problems or "Invalid request")
    if IS_DEV:
        print(f"[API] {request.method} {request.url.path} -> 400 InvalidArgument: {error.message}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# ---------------------------------------------------------
# Routes
# ---------------------------------------------------------
@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


app.include_router(assets_router)
app.include_router(trackers_router)

if BLOB_BACKEND == "local":
    media_root = FsPath(BLOB_LOCAL_DIR).resolve()
    media_root.mkdir(parents=True, exist_ok=True)
    app.mount("/media", StaticFiles(directory=str(media_root)), name="media")
