from __future__ import annotations
import os
import sys
import time
import logging
import mimetypes
import threading
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from fastapi import FastAPI, APIRouter, HTTPException, Query, Body, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, FileResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

import config
from catalog import CatalogCache, MediaCatalog
from commands import CommandRunner, SubprocessRunner, ffmpeg_available, ffprobe_available
from config import env_path, log
from errors import DailiesError, NotFoundError, ValidationError
from monitoring import FileAuditor
from projects import ProjectRegistry
from streaming import ConnectionTracker, RangeNotSatisfiable, iter_file, parse_range
from transcode import CompressionService, is_workspace_profile, load_compression_config

__version__ = "1.0.0"

logger = logging.getLogger("dailies")

# Process-wide state; rebuilt wholesale by configure().
STATE: Dict[str, Any] = {}

LEGACY_WORKDIR = "_legacy"  # underscore keeps it out of the slug namespace
MONITORING_DIR = "_monitoring"


def configure(
    workspace_root: Optional[Path] = None,
    legacy_dir: Optional[Path] = None,
    compression_config: Optional[Path] = None,
    runner: Optional[CommandRunner] = None,
    audit_root: Optional[Path] = None,
) -> Dict[str, Any]:
    """(Re)build registry, catalog cache, compressor and auditor.

    Arguments override the environment (WORKSPACE_ROOT, LEGACY_DAILIES,
    COMPRESSION_CONFIG, AUDIT_ROOT). Tests call this with a temp workspace
    and a fake runner.
    """
    ws = Path(workspace_root).resolve() if workspace_root else config.workspace_root()
    ws.mkdir(parents=True, exist_ok=True)
    run = runner or SubprocessRunner()
    legacy = Path(legacy_dir).resolve() if legacy_dir else env_path("LEGACY_DAILIES")
    registry = ProjectRegistry(ws)
    catalogs = CatalogCache(
        registry,
        runner=run,
        legacy_dir=legacy,
        legacy_workdir=(ws / LEGACY_WORKDIR) if legacy else None,
    )
    cfg_path = Path(compression_config) if compression_config else env_path("COMPRESSION_CONFIG", "./compression-config.json")
    cfg = load_compression_config(cfg_path)
    out_root = Path(cfg.output_dir)
    if not out_root.is_absolute():
        out_root = ws / out_root
    auditor = FileAuditor(
        Path(audit_root) if audit_root else (env_path("AUDIT_ROOT") or ws),
        ws / MONITORING_DIR,
    )
    auditor.add_exclude_pattern(MONITORING_DIR)

    STATE.clear()
    STATE.update({
        "workspace": ws,
        "runner": run,
        "registry": registry,
        "catalogs": catalogs,
        "compressor": CompressionService(cfg, out_root, runner=run),
        "auditor": auditor,
        "connections": ConnectionTracker(),
        "progress": {},
        "progress_lock": threading.Lock(),
    })
    log("projects", f"[startup] workspace={ws} legacy={legacy} profiles={len(cfg.profiles)}")
    return STATE


def _registry() -> ProjectRegistry:
    if not STATE:
        configure()
    return STATE["registry"]


def _catalogs() -> CatalogCache:
    if not STATE:
        configure()
    return STATE["catalogs"]


def _compressor() -> CompressionService:
    if not STATE:
        configure()
    return STATE["compressor"]


def _legacy_catalog() -> MediaCatalog:
    cat = _catalogs().legacy()
    if cat is None:
        raise_api_error(
            "No legacy dailies directory is configured (set LEGACY_DAILIES)",
            status_code=404,
            error="Legacy catalog not configured",
        )
    return cat  # type: ignore[return-value]


# -----------------------------
# Response helpers
# -----------------------------
def api_error(message: str, status_code: int = 400, *, error: Optional[str] = None, headers: Optional[dict] = None):
    body = {"success": False, "error": error or message, "message": message}
    return JSONResponse(body, status_code=status_code, headers=headers)


def raise_api_error(message: str, status_code: int = 400, *, error: Optional[str] = None):
    raise HTTPException(
        status_code=status_code,
        detail={"success": False, "error": error or message, "message": message},
    )


def _video_not_found(video_id: str):
    raise_api_error(f"No video found with ID: {video_id}", status_code=404, error="Video not found")


# -----------------------------
# CORS: configure via CORS_ALLOW_ORIGINS (comma-separated). Defaults to *.
# -----------------------------
def _cors_origins() -> list[str]:
    v = os.environ.get("CORS_ALLOW_ORIGINS")
    if not v or not v.strip():
        return ["*"]
    out = [s.strip() for s in v.split(",") if s.strip()]
    return out or ["*"]


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    if not STATE:
        configure()
    log("projects", f"[startup] serving workspace={STATE.get('workspace')}")
    try:
        yield
    finally:
        active = STATE["connections"].stats()["active"] if STATE else 0
        log("stream", f"[shutdown] open streams={active}")


app = FastAPI(title="Dailies Server", version=__version__, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DailiesError)
async def dailies_error_handler(request: Request, exc: DailiesError):
    if exc.status_code >= 500:
        logger.error("[api] %s %s failed: %s", request.method, request.url.path, exc)
    return api_error(str(exc), status_code=exc.status_code, error=exc.error)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("success") is False:
        return JSONResponse(exc.detail, status_code=exc.status_code, headers=getattr(exc, "headers", None))
    return api_error(str(exc.detail), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return api_error(f"invalid request: {exc.errors()}", status_code=400, error="Invalid request")


# -----------------------------
# Request bodies
# -----------------------------
class ProjectCreate(BaseModel):  # type: ignore
    name: str = ""
    slug: Optional[str] = None


class ProjectRename(BaseModel):  # type: ignore
    name: str = ""


class CompressRequest(BaseModel):  # type: ignore
    profile: Optional[str] = None


def _parse(model, payload: dict):
    try:
        return model(**(payload or {}))
    except Exception as e:
        raise_api_error(f"invalid payload: {e}", error="Invalid request")


# -----------------------------
# Streaming
# -----------------------------
def _serve_range(request: Request, cat: MediaCatalog, video_id: str):
    if not cat.has(video_id):
        _video_not_found(video_id)
    file_path = cat.video_path(video_id)
    if not file_path.is_file():
        raise_api_error(
            f"Video file for {video_id} is missing from disk",
            status_code=404,
            error="Video file not found",
        )
    file_size = file_path.stat().st_size
    media_type = mimetypes.guess_type(file_path.name)[0] or "video/mp4"
    range_header = request.headers.get("range")
    try:
        rng = parse_range(range_header, file_size)
    except RangeNotSatisfiable as e:
        log("stream", f"[range][416] video={video_id} range={range_header!r} size={file_size}")
        return api_error(
            str(e),
            status_code=416,
            error="Range not satisfiable",
            headers={"Content-Range": f"bytes */{file_size}"},
        )

    tracker: ConnectionTracker = STATE["connections"]
    client = request.client.host if request.client else None
    cid = tracker.open("video-stream", client=client, target=f"{cat.key}/{video_id}")
    release = BackgroundTask(tracker.close, cid)

    if rng is not None:
        start, end = rng
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
            "Content-Type": media_type,
        }
        log("stream", f"[range][206] video={video_id} {start}-{end}/{file_size} ct={media_type}")
        body = iter_file(file_path, start, end, on_close=lambda: tracker.close(cid))
        return StreamingResponse(body, status_code=206, headers=headers, media_type=media_type, background=release)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Type": media_type,
        "Content-Length": str(file_size),
    }
    log("stream", f"[range][200] video={video_id} full bytes ct={media_type} size={file_size}")
    body = iter_file(file_path, 0, file_size - 1, on_close=lambda: tracker.close(cid))
    return StreamingResponse(body, status_code=200, headers=headers, media_type=media_type, background=release)


# -----------------------------
# Compression helpers
# -----------------------------
def _record_progress(tick: dict, *, key: str, profile: str) -> None:
    with STATE["progress_lock"]:
        STATE["progress"][f"{key}/{tick['videoId']}"] = {
            **tick,
            "project": key,
            "profile": profile,
            "updated": time.time(),
        }


def _progress_callback(cat: MediaCatalog, profile: Optional[str]):
    name = profile or _compressor().config.default_profile
    return lambda tick: _record_progress(tick, key=cat.key, profile=name)


def _profile_from(payload: dict, query_profile: Optional[str]) -> Optional[str]:
    req = _parse(CompressRequest, payload)
    return req.profile or query_profile


def _compress_one(cat: MediaCatalog, video_id: str, profile: Optional[str]) -> dict:
    if not cat.has(video_id):
        _video_not_found(video_id)
    svc = _compressor()
    return svc.compress_one(cat, video_id, profile, _progress_callback(cat, profile))


def _compress_batch(cat: MediaCatalog, profile: Optional[str]) -> dict:
    svc = _compressor()
    return svc.compress_all(cat, profile, _progress_callback(cat, profile))


def _catalog_for(project: Optional[str]) -> MediaCatalog:
    if project:
        return _catalogs().get(project)
    return _legacy_catalog()


# -----------------------------
# Projects
# -----------------------------
projects_api = APIRouter(prefix="/projects", tags=["projects"])


@projects_api.get("")
def projects_list():
    return {"success": True, "projects": _registry().list_projects()}


@projects_api.post("")
def projects_create(payload: dict = Body(default_factory=dict)):
    req = _parse(ProjectCreate, payload)
    info = _registry().create_project(req.name, req.slug or None)
    return JSONResponse(
        {"success": True, "message": f"Project '{info['name']}' created successfully", "project": info},
        status_code=201,
    )


@projects_api.get("/{slug}")
def projects_get(slug: str):
    reg = _registry()
    project = reg.get_project(slug)
    project["stats"] = reg.get_project_stats(slug)
    return {"success": True, "project": project}


@projects_api.put("/{slug}")
def projects_rename(slug: str, payload: dict = Body(default_factory=dict)):
    req = _parse(ProjectRename, payload)
    _registry().rename_project(slug, req.name)
    return {"success": True, "message": f"Project renamed to '{req.name.strip()}'"}


@projects_api.delete("/{slug}")
def projects_delete(slug: str):
    _registry().delete_project(slug)
    _catalogs().invalidate(slug)
    return {"success": True, "message": f"Project '{slug}' deleted successfully"}


@projects_api.get("/{slug}/videos")
def project_videos(slug: str):
    cat = _catalogs().get(slug)
    return {"success": True, "project": slug, "videos": cat.values()}


@projects_api.get("/{slug}/project")
def project_with_dailies(slug: str):
    cat = _catalogs().get(slug)
    project = _registry().get_project(slug)
    project["dailies"] = cat.values()
    return project


@projects_api.get("/{slug}/video/{video_id}")
def project_video(slug: str, video_id: str):
    cat = _catalogs().get(slug)
    entry = cat.get(video_id)
    if entry is None:
        _video_not_found(video_id)
    return entry


@projects_api.get("/{slug}/video/{video_id}/exists")
def project_video_exists(slug: str, video_id: str):
    cat = _catalogs().get(slug)
    exists = cat.has(video_id)
    return {
        "videoId": video_id,
        "project": slug,
        "exists": exists,
        "message": "Video found" if exists else "Video not found",
    }


@projects_api.get("/{slug}/video/{video_id}/thumbnail")
def project_video_thumbnail(slug: str, video_id: str):
    cat = _catalogs().get(slug)
    if not cat.has(video_id):
        _video_not_found(video_id)
    thumb = cat.thumbnail_path(video_id)
    if not thumb.is_file():
        raise_api_error(f"No thumbnail for {video_id}", status_code=404, error="Thumbnail not found")
    return FileResponse(str(thumb), media_type="image/jpeg")


@projects_api.get("/{slug}/video/{video_id}/stream")
def project_video_stream(slug: str, video_id: str, request: Request):
    return _serve_range(request, _catalogs().get(slug), video_id)


@projects_api.post("/{slug}/refresh")
def project_refresh(slug: str):
    cat = _catalogs().refresh(slug)
    return {
        "success": True,
        "message": "Project video database refreshed successfully",
        "project": slug,
        "count": cat.size(),
    }


@projects_api.post("/{slug}/compress/batch")
def project_compress_batch(slug: str, profile: Optional[str] = Query(default=None), payload: dict = Body(default_factory=dict)):
    cat = _catalogs().get(slug)
    return _compress_batch(cat, _profile_from(payload, profile))


@projects_api.post("/{slug}/compress/{video_id}")
def project_compress_one(slug: str, video_id: str, profile: Optional[str] = Query(default=None), payload: dict = Body(default_factory=dict)):
    cat = _catalogs().get(slug)
    return _compress_one(cat, video_id, _profile_from(payload, profile))


# -----------------------------
# Compression
# -----------------------------
compression_api = APIRouter(tags=["compression"])


@compression_api.get("/compression/profiles")
def compression_profiles():
    svc = _compressor()
    return {
        "profiles": {k: p.model_dump() for k, p in svc.profiles().items()},
        "default": svc.config.default_profile,
    }


@compression_api.get("/compression/workspace")
def compression_workspace(project: Optional[str] = Query(default=None)):
    svc = _compressor()
    if project:
        default = _registry().default_workspace_profile(project)
    else:
        default = svc.config.default_workspace_profile
    return {
        "profiles": {k: p.model_dump() for k, p in svc.workspace_profiles().items()},
        "default": default,
        "description": "Video editing optimized compression profiles",
    }


@compression_api.get("/compression/outputs")
def compression_outputs():
    return {"success": True, "outputs": _compressor().list_outputs()}


@compression_api.get("/compression/progress")
def compression_progress():
    with STATE["progress_lock"]:
        ticks = sorted(STATE["progress"].values(), key=lambda t: t["updated"], reverse=True)
    return {"success": True, "progress": ticks}


@compression_api.post("/compress/batch")
def compress_batch(
    project: Optional[str] = Query(default=None),
    profile: Optional[str] = Query(default=None),
    payload: dict = Body(default_factory=dict),
):
    return _compress_batch(_catalog_for(project), _profile_from(payload, profile))


@compression_api.post("/compress/workspace/{video_id}")
def compress_workspace(
    video_id: str,
    project: Optional[str] = Query(default=None),
    profile: Optional[str] = Query(default=None),
    payload: dict = Body(default_factory=dict),
):
    cat = _catalog_for(project)
    svc = _compressor()
    name = _profile_from(payload, profile)
    if not name:
        name = _registry().default_workspace_profile(project) if project else svc.config.default_workspace_profile
    prof = svc.config.profiles.get(name)
    if prof is not None and not is_workspace_profile(name, prof):
        raise ValidationError(f"'{name}' is not a workspace profile")
    return _compress_one(cat, video_id, name)


@compression_api.post("/compress/{video_id}")
def compress_one(
    video_id: str,
    project: Optional[str] = Query(default=None),
    profile: Optional[str] = Query(default=None),
    payload: dict = Body(default_factory=dict),
):
    return _compress_one(_catalog_for(project), video_id, _profile_from(payload, profile))


# -----------------------------
# Monitoring / housekeeping
# -----------------------------
@app.get("/monitoring/files")
def monitoring_files():
    report = STATE["auditor"].generate_report()
    return {"success": True, "message": "File monitoring report generated successfully", "data": report}


@app.get("/monitoring/files/json")
def monitoring_files_json():
    data = STATE["auditor"].latest()
    if data is None:
        raise NotFoundError("No monitoring data found. Generate a report first.")
    return {"success": True, "data": data}


@app.get("/connections")
def connections():
    return {"success": True, "data": STATE["connections"].stats()}


@app.get("/health")
def health():
    # liveness only: report the legacy count if loaded, never import for it
    legacy = _catalogs().loaded_legacy()
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "videoCount": legacy.size() if legacy is not None else 0,
        "projectCount": len(_registry().list_projects()),
        "ffmpeg": ffmpeg_available(),
        "ffprobe": ffprobe_available(),
        "version": __version__,
    }


# -----------------------------
# Legacy single-directory endpoints
# -----------------------------
@app.get("/project")
def legacy_project():
    return {"dailies": _legacy_catalog().values()}


@app.get("/videos")
def legacy_videos():
    return _legacy_catalog().values()


@app.get("/video/{video_id}")
def legacy_video(video_id: str):
    entry = _legacy_catalog().get(video_id)
    if entry is None:
        _video_not_found(video_id)
    return entry


@app.get("/video/{video_id}/exists")
def legacy_video_exists(video_id: str):
    exists = _legacy_catalog().has(video_id)
    return {"videoId": video_id, "exists": exists, "message": "Video found" if exists else "Video not found"}


@app.get("/video/{video_id}/stream")
def legacy_video_stream(video_id: str, request: Request):
    return _serve_range(request, _legacy_catalog(), video_id)


@app.post("/refresh")
def legacy_refresh():
    cat = _legacy_catalog()
    cat.refresh()
    return {"success": True, "message": "Video database refreshed successfully", "count": cat.size()}


app.include_router(projects_api)
app.include_router(compression_api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except Exception:
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    # Require an explicit opt-in to start the server when running this file directly
    run_flag = os.environ.get("RUN_SERVER")
    if str(run_flag).strip().lower() not in {"1", "true", "yes", "y"}:
        sys.stderr.write("[app] Not starting server. To run directly, set RUN_SERVER=1.\n")
        sys.exit(0)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    configure()
    host = os.environ.get("HOST", "127.0.0.1")
    port = config.env_int("PORT", 3000)
    uvicorn.run(app, host=host, port=port)
