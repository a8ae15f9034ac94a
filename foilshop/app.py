from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse
from pyrate_limiter import Limiter, Rate

from foilshop.auth import AuthSettings, extract_basic_auth, load_auth
from foilshop.catalog import Catalog, CatalogHolder
from foilshop.config import AppConfig, load_settings, validate_settings
from foilshop.responses import (
    PLACEHOLDER_PNG,
    build_catalog_response,
    build_shop_root_files,
    build_shop_sections_payload,
    catalog_sections,
    map_to_entries,
    section_files,
)
from foilshop.scanner import LibraryScanner, scan_library
from foilshop.serve_files import FileServeError, sanitize_relative_path, stream_with_range_support
from foilshop.titledb import TitleDb

logger = logging.getLogger(__name__)

AUTH_REALM = 'Basic realm="foilshop"'
OPEN_PATHS = {"/health"}
DEFAULT_SECTION_LIMIT = 50
IMAGE_CACHE_CONTROL = "public, max-age=604800, immutable"
REQUEST_ID_HEADER = "x-request-id"
RATE_LIMIT_KEY = "global"


@dataclass
class ShopState:
    settings: AppConfig
    library_root: Path
    holder: CatalogHolder
    auth: AuthSettings
    titledb: TitleDb
    scanner: LibraryScanner
    rate_limiter: Limiter


STATE: ShopState | None = None


def build_rate_limiter(per_second: int, burst: int) -> Limiter:
    """Allow ``burst`` requests per window, refilling at ``per_second`` on average."""

    window_ms = max(1, burst * 1000 // per_second)
    return Limiter([Rate(burst, window_ms)], raise_when_fail=False)


def configure_shop(settings: AppConfig, *, validate: bool = True) -> ShopState:
    """Build the shared state for ``settings`` and run the initial scan.

    The initial scan is startup-fatal: a missing root raises instead of
    serving an empty catalog.
    """

    global STATE

    if validate:
        validate_settings(settings)

    library_root = settings.library_root.resolve()
    holder = CatalogHolder(Catalog.from_files(scan_library(library_root)))
    auth = load_auth(None if settings.public_shop else settings.auth_file)

    STATE = ShopState(
        settings=settings,
        library_root=library_root,
        holder=holder,
        auth=auth,
        titledb=TitleDb(settings.titledb, settings.data_dir),
        scanner=LibraryScanner(library_root, holder, interval_seconds=settings.scan_interval_seconds),
        rate_limiter=build_rate_limiter(settings.rate_limit_per_second, settings.rate_limit_burst),
    )
    logger.info(
        "shop configured root=%s files=%d auth_users=%d public=%s",
        library_root,
        len(holder.snapshot()),
        auth.user_count(),
        settings.public_shop,
    )
    return STATE


def get_state() -> ShopState:
    if STATE is None:
        raise RuntimeError("shop is not configured")
    return STATE


def _startup() -> None:
    state = STATE
    if state is None:
        state = configure_shop(load_settings())
    state.scanner.start()
    state.titledb.start()


def _shutdown() -> None:
    if STATE is None:
        return
    STATE.scanner.stop()
    STATE.titledb.stop()


@asynccontextmanager
async def lifespan(app: FastAPI):
    _startup()
    try:
        yield
    finally:
        _shutdown()


app = FastAPI(title="foilshop", lifespan=lifespan)


@app.middleware("http")
async def basic_auth_guard(request, call_next):
    """Require HTTP Basic credentials when users are configured."""
    state = STATE
    if request.scope.get("path") in OPEN_PATHS or state is None or not state.auth.is_enabled():
        return await call_next(request)

    credentials = extract_basic_auth(request.headers.get("authorization"))
    if credentials is None or not state.auth.is_authorized(*credentials):
        logger.warning(
            "authentication failed path=%s client=%s",
            request.scope.get("path"),
            request.client.host if request.client else "-",
        )
        return JSONResponse(
            status_code=401,
            content={"status": "error", "message": "authentication required"},
            headers={"WWW-Authenticate": AUTH_REALM},
        )
    return await call_next(request)


@app.middleware("http")
async def global_rate_limit(request, call_next):
    """Share one request budget across all clients."""
    state = STATE
    if state is not None and not state.rate_limiter.try_acquire(RATE_LIMIT_KEY):
        logger.warning("rate limit exceeded path=%s", request.scope.get("path"))
        return JSONResponse(status_code=429, content={"status": "error", "message": "too many requests"})
    return await call_next(request)


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for client compatibility."""
    path = request.scope.get("path", "")
    if path == "/api":
        request.scope["path"] = "/"
    elif path.startswith("/api/"):
        request.scope["path"] = path[4:]
    return await call_next(request)


@app.middleware("http")
async def propagate_request_id(request, call_next):
    """Reuse the caller's `x-request-id` or mint one, and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message})


def _download_response(relative_path: str, request: Request) -> Response:
    include_body = request.method != "HEAD"
    try:
        result = stream_with_range_support(
            get_state().library_root,
            relative_path,
            request.headers.get("range"),
            include_body=include_body,
        )
    except FileServeError as exc:
        return _error_response(exc.status_code, str(exc))

    if result.status_code == 416:
        return Response(status_code=416, headers=result.headers)
    if not include_body:
        return Response(status_code=result.status_code, headers=result.headers)

    return StreamingResponse(
        result.body,
        status_code=result.status_code,
        headers=result.headers,
        media_type=result.media_type,
    )


@app.get("/health")
def health_check():
    catalog_files = len(STATE.holder.snapshot()) if STATE is not None else 0
    return {"status": "ok", "catalog_files": catalog_files}


@app.get("/")
@app.get("/shop")
def shop_root():
    catalog = get_state().holder.snapshot()
    return {"success": "ok", "files": build_shop_root_files(catalog.files())}


@app.get("/catalog")
@app.get("/titles")
@app.get("/index")
def list_catalog():
    catalog = get_state().holder.snapshot()
    return build_catalog_response(map_to_entries(catalog.files()))


@app.get("/sections")
def list_sections():
    return {"sections": catalog_sections()}


@app.get("/sections/{section}")
def list_section(section: str):
    catalog = get_state().holder.snapshot()
    return build_catalog_response(map_to_entries(section_files(catalog, section.lower())))


@app.get("/shop/sections")
def shop_sections(limit: int = DEFAULT_SECTION_LIMIT):
    catalog = get_state().holder.snapshot()
    return build_shop_sections_payload(catalog.files(), max(1, limit))


@app.get("/search")
def search_catalog(q: str = ""):
    catalog = get_state().holder.snapshot()
    return build_catalog_response(map_to_entries(catalog.search(q)))


@app.get("/title/{title_id}/versions")
def title_versions(title_id: str):
    versions = get_state().holder.snapshot().versions(title_id)
    if versions is None:
        return _error_response(404, f"no content for title {title_id.upper()}")
    return versions.to_dict()


@app.api_route("/download/{requested_path:path}", methods=["GET", "HEAD"])
def download(requested_path: str, request: Request):
    try:
        relative_path = sanitize_relative_path(requested_path)
    except FileServeError as exc:
        logger.warning("rejected download path=%r: %s", requested_path, exc)
        return _error_response(exc.status_code, str(exc))
    return _download_response(relative_path, request)


@app.api_route("/get_game/{file_id}", methods=["GET", "HEAD"])
def get_game(file_id: int, request: Request):
    item = get_state().holder.snapshot().get_by_position(file_id)
    if item is None:
        return _error_response(404, "file not found")
    return _download_response(item.relative_path, request)


def _image_response(title_id: str, field_name: str) -> Response:
    if title_id.lower().endswith(".png"):
        title_id = title_id[: -len(".png")]

    info = get_state().titledb.lookup(title_id)
    url = getattr(info, field_name) if info is not None else None
    if url and url.startswith("http"):
        return RedirectResponse(url, status_code=307)
    return Response(
        content=PLACEHOLDER_PNG,
        media_type="image/png",
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )


@app.get("/shop/icon/{title_id}")
def shop_icon(title_id: str):
    return _image_response(title_id, "icon_url")


@app.get("/shop/banner/{title_id}")
def shop_banner(title_id: str):
    return _image_response(title_id, "banner_url")


@app.get("/saves/list")
def list_saves():
    return {"success": True, "saves": []}
