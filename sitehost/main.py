"""Site Host - static site hosting service.

This FastAPI service lets registered users upload a single HTML file or a ZIP
bundle and publishes it at a per-user URL:

1. **Project API** (Bearer token required)
   - POST /api/projects - Upload a new project (multipart: name, description, file)
   - GET /api/projects - List own projects (?search=)
   - DELETE /api/projects/{id} - Remove a project and its files

2. **Accounts**
   - POST /api/auth/register - Create an account
   - POST /api/auth/login - Exchange credentials for a token
   - POST /api/auth/change-password - Change own password (Bearer token)

3. **Admin** (role ADMIN required)
   - GET /api/admin/users, PATCH /api/admin/users/{id}/status, DELETE /api/admin/users/{id}
   - PATCH /api/admin/users/{id}/reset-password
   - GET /api/admin/projects, PATCH /api/admin/projects/{id}/status

4. **Site Serving** (GET only)
   - /sites/{username}/{project}/{path} on any host
   - {username}.{domain}/{project}/{path} on subdomain hosts

5. **Dashboard** - every other GET is served from the built frontend, with an
   SPA fallback to its index.html.

Security:
    - ZIP extraction rejects path traversal and enforces size/entry limits
    - Served paths are confined to the project's storage root
    - Single-file uploads must be declared as text/html

Environment Variables:
    See sitehost.config.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from urllib.parse import quote

from fastapi import FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, RedirectResponse, Response
from pydantic import BaseModel
from starlette.background import BackgroundTask
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import auth, paths
from .config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    API_PREFIXES,
    FRONTEND_DIR,
    MAX_EXTRACT_SIZE,
    MAX_UPLOAD_SIZE,
    PUBLIC_BASE_URL,
    SITE_PREFIX,
    UPLOAD_MAX_MB,
)
from .errors import ExtractionError, ExtractionErrorKind, NameConflictError, ServeError, ServeErrorKind
from .extractor import ExtractionResult, ingest_upload
from .routing import RESERVED_PROJECT_SEGMENTS, Route, classify_request, is_under_prefix
from .site_server import SiteRedirect, record_visit, render_html, resolve_site_request
from .site_urls import build_site_url
from .state_manager import PROJECT_STATUSES, USER_STATUSES, Project, User, state

_LOG = logging.getLogger(__name__)

app = FastAPI(title="Site Host", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["*"],
)

UPLOAD_CHUNK_SIZE: int = 1024 * 1024
"""Bytes read from the multipart upload per iteration."""

MULTIPART_OVERHEAD: int = 64 * 1024
"""Allowance for multipart boundaries and form fields on top of the file size."""

UPLOAD_PATH: str = "/api/projects"

RESERVED_USERNAMES: frozenset[str] = frozenset({"api", "sites", "www", "admin"})
"""Usernames that would collide with service hostnames or routes."""


# =============================================================================
# Application Lifecycle
# =============================================================================


@app.on_event("startup")
async def startup() -> None:
    """Prepare storage and create the bootstrap admin account."""
    paths.ensure_storage_dirs()
    ensure_admin()


def ensure_admin() -> None:
    """Create the administrator from SITEHOST_ADMIN_* if it does not exist yet."""
    if not ADMIN_USERNAME or not ADMIN_PASSWORD:
        return
    if state.get_user_by_username(ADMIN_USERNAME):
        return
    try:
        state.create_user(ADMIN_USERNAME, auth.hash_password(ADMIN_PASSWORD), role="ADMIN")
        _LOG.info("Created admin user %s", ADMIN_USERNAME)
    except NameConflictError:
        _LOG.info("Admin user %s was created concurrently", ADMIN_USERNAME)


# =============================================================================
# Error Handlers
# =============================================================================


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render API errors as {"message": ...}."""
    return JSONResponse({"message": exc.detail}, status_code=exc.status_code, headers=exc.headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed request bodies as 400."""
    fields = ", ".join(".".join(str(part) for part in err.get("loc", ())[1:]) for err in exc.errors())
    message = f"Invalid request: {fields}" if fields else "Invalid request"
    return JSONResponse({"message": message}, status_code=400)


@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Log unexpected failures; never leak details to the caller."""
    _LOG.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"message": "Internal server error"}, status_code=500)


# =============================================================================
# Request Models
# =============================================================================


class CredentialsRequest(BaseModel):
    """Request body for register and login.

    Attributes:
        username: Account name (lowercase alphanumeric with hyphens).
        password: Plain-text password.
    """

    username: str
    password: str


class StatusUpdateRequest(BaseModel):
    """Request body for admin status toggles."""

    status: str


class ChangePasswordRequest(BaseModel):
    """Request body for a user changing their own password."""

    oldPassword: str | None = None
    newPassword: str | None = None


class ResetPasswordRequest(BaseModel):
    """Request body for an admin setting a user's password."""

    newPassword: str | None = None


# =============================================================================
# Helpers
# =============================================================================


def require_user(authorization: str | None) -> User:
    """Resolve the Authorization header to an active user.

    Args:
        authorization: Authorization header value ("Bearer <token>").

    Raises:
        HTTPException 401: Missing, invalid or expired token.
        HTTPException 403: Banned account.
    """
    if not authorization:
        raise HTTPException(status_code=401, detail="Access denied. No token provided.")

    token = authorization
    if authorization.startswith("Bearer "):
        token = authorization[7:]

    user_id = auth.verify_token(token)
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = state.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    if user.status == "BANNED":
        raise HTTPException(status_code=403, detail="Account is banned")
    return user


def require_admin(authorization: str | None) -> User:
    """Like require_user, but the user must have the ADMIN role."""
    user = require_user(authorization)
    if user.role != "ADMIN":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def public_base_url(request: Request) -> str:
    """Base URL for site links: configured value or the request's own origin."""
    return PUBLIC_BASE_URL or str(request.base_url).rstrip("/")


def project_payload(project: Project, base_url: str, username: str | None = None) -> dict:
    """API representation of a project, including its public siteUrl."""
    owner = username or project.owner_username or ""
    return {
        "id": project.id,
        "userId": project.user_id,
        "name": project.name,
        "description": project.description,
        "entryFile": project.entry_file,
        "size": project.size,
        "visitCount": project.visit_count,
        "status": project.status,
        "createdAt": project.created_at,
        "user": {"username": owner},
        "siteUrl": build_site_url(base_url, owner, project.name, project.entry_file),
    }


def user_payload(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "role": user.role,
        "status": user.status,
        "createdAt": user.created_at,
        "lastLoginAt": user.last_login_at,
    }


def remove_storage(storage_path: str) -> None:
    """Delete a project's storage subtree.

    Refuses to touch anything outside STORAGE_ROOT.
    """
    target = Path(storage_path).resolve()
    root = paths.STORAGE_ROOT.resolve()
    if target == root or not target.is_relative_to(root):
        _LOG.error("Refusing to delete storage outside %s: %s", root, target)
        return
    if target.exists():
        shutil.rmtree(target)


async def save_upload(file: UploadFile, destination: Path) -> int:
    """Copy an uploaded file to disk, enforcing MAX_UPLOAD_SIZE.

    Raises:
        HTTPException 413: Upload exceeds MAX_UPLOAD_SIZE.
    """
    size = 0
    with open(destination, "wb") as out:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            size += len(chunk)
            if size > MAX_UPLOAD_SIZE:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large. Maximum size is {UPLOAD_MAX_MB} MB",
                )
            out.write(chunk)
    return size


def commit_project(
    user: User,
    name: str,
    description: str | None,
    staging: Path,
    result: ExtractionResult,
) -> Project:
    """Record a project and move its staged files into place.

    The insert runs first so the unique constraint decides between concurrent
    uploads of the same name before any live directory is touched.

    Raises:
        NameConflictError: The owner already has a project with this name.
    """
    target = paths.allocate(user.id, name)
    project = state.create_project(
        user_id=user.id,
        name=name,
        description=description,
        storage_path=str(target),
        entry_file=result.entry_file,
        size=result.total_bytes,
    )
    try:
        if target.exists():
            # Left behind by an earlier crash; this record now owns the name
            _LOG.warning("Replacing orphaned project directory %s", target)
            shutil.rmtree(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        staging.rename(target)
    except OSError:
        state.delete_project(project.id)
        raise
    return project


def request_raw_path(request: Request) -> str:
    """The request path exactly as sent (still percent-encoded)."""
    raw = request.scope.get("raw_path")
    if raw:
        return raw.decode("latin-1").split("?", 1)[0]
    return quote(request.scope.get("path", "/"))


# =============================================================================
# Health Check
# =============================================================================


@app.get("/health")
async def health() -> dict:
    """Health check endpoint for monitoring and load balancers."""
    return {
        "status": "healthy",
        "projects_count": state.count_projects(),
    }


# =============================================================================
# Account Endpoints
# =============================================================================


@app.post("/api/auth/register", status_code=201)
async def register(request: CredentialsRequest) -> dict:
    """Create a user account."""
    username = request.username.strip()
    if not paths.validate_name(username):
        raise HTTPException(
            status_code=400,
            detail="Username must be lowercase alphanumeric with hyphens, 1-32 chars",
        )
    if username in RESERVED_USERNAMES:
        raise HTTPException(status_code=400, detail=f"Username '{username}' is reserved")
    if not request.password:
        raise HTTPException(status_code=400, detail="Password is required")

    try:
        user = state.create_user(username, auth.hash_password(request.password))
    except NameConflictError:
        raise HTTPException(status_code=400, detail="Username already exists")
    return {"id": user.id, "username": user.username}


@app.post("/api/auth/login")
async def login(request: CredentialsRequest) -> dict:
    """Validate credentials and return a signed token."""
    if not auth.is_configured():
        raise HTTPException(status_code=503, detail="Authentication not configured")

    user = state.get_user_by_username(request.username)
    if user is None or not auth.verify_password(request.password, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid credentials")
    if user.status == "BANNED":
        raise HTTPException(status_code=403, detail="Account is banned")

    state.record_login(user.id)
    return {"token": auth.generate_token(user.id), "username": user.username, "role": user.role}


@app.post("/api/auth/change-password")
async def change_password(
    request: ChangePasswordRequest,
    authorization: str | None = Header(None),
) -> dict:
    """Change the caller's password after checking the current one."""
    user = require_user(authorization)
    if not request.oldPassword or not request.newPassword:
        raise HTTPException(status_code=400, detail="oldPassword and newPassword are required")
    if not auth.verify_password(request.oldPassword, user.password_hash):
        raise HTTPException(status_code=400, detail="Invalid old password")

    state.set_password_hash(user.id, auth.hash_password(request.newPassword))
    _LOG.info("User %s changed their password", user.username)
    return {"message": "Password changed"}


# =============================================================================
# Project Endpoints
# =============================================================================


@app.post("/api/projects")
async def create_project(
    request: Request,
    name: str | None = Form(None),
    description: str | None = Form(None),
    file: UploadFile | None = File(None),
    authorization: str | None = Header(None),
) -> JSONResponse:
    """Upload a single HTML file or a ZIP bundle as a new project."""
    user = require_user(authorization)

    if file is None or not name:
        raise HTTPException(status_code=400, detail="File and project name are required")
    if not paths.validate_name(name):
        raise HTTPException(
            status_code=400,
            detail="Project name must be lowercase alphanumeric with hyphens, 1-32 chars",
        )
    if name in RESERVED_PROJECT_SEGMENTS:
        raise HTTPException(status_code=400, detail=f"Project name '{name}' is reserved")
    if state.find_project(user.id, name):
        raise HTTPException(status_code=400, detail="Project name already exists")

    paths.ensure_storage_dirs()
    staging = paths.staging_dir()
    upload_path = staging.with_name(staging.name + ".upload")
    try:
        await save_upload(file, upload_path)
        result = await asyncio.to_thread(
            ingest_upload,
            upload_path,
            file.filename,
            file.content_type,
            staging,
            MAX_EXTRACT_SIZE,
        )
        project = await asyncio.to_thread(commit_project, user, name, description, staging, result)
    except ExtractionError as e:
        if e.kind == ExtractionErrorKind.QUOTA_EXCEEDED:
            detail = f"Extracted content too large: {e.detail}"
        elif e.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE:
            detail = "Malicious zip file detected"
        else:
            detail = e.detail
        raise HTTPException(status_code=e.http_status, detail=detail)
    except NameConflictError:
        raise HTTPException(status_code=400, detail="Project name already exists")
    finally:
        upload_path.unlink(missing_ok=True)
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    return JSONResponse(
        project_payload(project, public_base_url(request), username=user.username),
        status_code=201,
    )


@app.get("/api/projects")
async def list_projects(
    request: Request,
    search: str | None = Query(None),
    authorization: str | None = Header(None),
) -> list[dict]:
    """List the caller's projects, newest first."""
    user = require_user(authorization)
    base_url = public_base_url(request)
    return [
        project_payload(p, base_url, username=user.username)
        for p in state.list_projects(user_id=user.id, search=search)
    ]


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str, authorization: str | None = Header(None)) -> dict:
    """Delete one of the caller's projects, files first."""
    user = require_user(authorization)

    project = state.get_project(project_id)
    if project is None or project.user_id != user.id:
        raise HTTPException(status_code=404, detail="Project not found")

    await asyncio.to_thread(remove_storage, project.storage_path)
    state.delete_project(project.id)
    _LOG.info("User %s deleted project %s", user.username, project.name)
    return {"message": "Project deleted"}


# =============================================================================
# Admin Endpoints
# =============================================================================


@app.get("/api/admin/users")
async def admin_list_users(
    search: str | None = Query(None),
    sortBy: str | None = Query(None),
    order: str = Query("desc"),
    authorization: str | None = Header(None),
) -> list[dict]:
    """List users with project counts and storage totals."""
    require_admin(authorization)
    return [
        {**user_payload(s.user), "projectCount": s.project_count, "totalSize": s.total_size}
        for s in state.list_users(search=search, sort_by=sortBy, order=order)
    ]


@app.patch("/api/admin/users/{user_id}/status")
async def admin_set_user_status(
    user_id: str,
    request: StatusUpdateRequest,
    authorization: str | None = Header(None),
) -> dict:
    """Ban or unban a user."""
    require_admin(authorization)
    if request.status not in USER_STATUSES:
        raise HTTPException(status_code=400, detail="Status must be ACTIVE or BANNED")

    user = state.set_user_status(user_id, request.status)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user_payload(user)


@app.patch("/api/admin/users/{user_id}/reset-password")
async def admin_reset_password(
    user_id: str,
    request: ResetPasswordRequest,
    authorization: str | None = Header(None),
) -> dict:
    """Set a new password for a non-admin user."""
    admin = require_admin(authorization)
    if not request.newPassword:
        raise HTTPException(status_code=400, detail="newPassword is required")

    user = state.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == "ADMIN":
        raise HTTPException(status_code=400, detail="Cannot reset admin password")

    state.set_password_hash(user.id, auth.hash_password(request.newPassword))
    _LOG.info("Admin %s reset the password of %s", admin.username, user.username)
    return {"message": "Password reset"}


@app.delete("/api/admin/users/{user_id}")
async def admin_delete_user(user_id: str, authorization: str | None = Header(None)) -> dict:
    """Delete a user, their projects' files, and their records."""
    require_admin(authorization)

    user = state.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    if user.role == "ADMIN":
        raise HTTPException(status_code=400, detail="Cannot delete admin user")

    for project in state.list_projects(user_id=user.id):
        try:
            await asyncio.to_thread(remove_storage, project.storage_path)
        except OSError as e:
            _LOG.error("Failed to delete storage for project %s: %s", project.id, e)

    state.delete_user(user.id)
    return {"message": "User deleted"}


@app.get("/api/admin/projects")
async def admin_list_projects(
    request: Request,
    search: str | None = Query(None),
    userId: str | None = Query(None),
    sortBy: str | None = Query(None),
    order: str = Query("desc"),
    authorization: str | None = Header(None),
) -> list[dict]:
    """List all projects; search also matches owner usernames."""
    require_admin(authorization)
    base_url = public_base_url(request)
    projects = state.list_projects(
        user_id=userId,
        search=search,
        sort_by=sortBy,
        order=order,
        search_owner=True,
    )
    return [project_payload(p, base_url) for p in projects]


@app.patch("/api/admin/projects/{project_id}/status")
async def admin_set_project_status(
    request: Request,
    project_id: str,
    body: StatusUpdateRequest,
    authorization: str | None = Header(None),
) -> dict:
    """Enable or disable a project."""
    require_admin(authorization)
    if body.status not in PROJECT_STATUSES:
        raise HTTPException(status_code=400, detail="Status must be ACTIVE or DISABLED")

    project = state.set_project_status(project_id, body.status)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project_payload(project, public_base_url(request))


# =============================================================================
# Site Serving
# =============================================================================


async def serve_site(route: Route, request: Request) -> Response:
    """Answer a classified site request with a file, redirect, or plain-text error."""
    try:
        result = await asyncio.to_thread(
            resolve_site_request,
            state,
            route.username,
            route.project_name,
            route.file_path,
            route.mount_path,
            request.url.query,
        )
        if isinstance(result, SiteRedirect):
            return RedirectResponse(result.location, status_code=302)

        background = None
        if result.count_visit:
            background = BackgroundTask(record_visit, state, result.project.id)

        if result.is_html:
            try:
                content = await asyncio.to_thread(render_html, result.path)
            except FileNotFoundError as e:
                raise ServeError(ServeErrorKind.FILE_NOT_FOUND, str(result.path)) from e
            return Response(content, media_type="text/html", background=background)

        return FileResponse(result.path, background=background)

    except ServeError as e:
        _LOG.info("Site %s/%s%s -> %d (%s)", route.username, route.project_name, route.file_path, e.http_status, e.kind.value)
        return PlainTextResponse(e.message, status_code=e.http_status)
    except Exception:
        _LOG.exception("Error serving site %s/%s%s", route.username, route.project_name, route.file_path)
        return PlainTextResponse("Server error", status_code=500)


@app.middleware("http")
async def site_dispatch(request: Request, call_next):
    """Route GET requests for hosted sites before normal API routing."""
    if request.method != "GET":
        return await call_next(request)

    route = classify_request(
        request.headers.get("host"),
        request_raw_path(request),
        api_prefixes=API_PREFIXES,
        site_prefix=SITE_PREFIX,
    )
    if not route.is_site:
        return await call_next(request)
    return await serve_site(route, request)


@app.middleware("http")
async def upload_guard(request: Request, call_next):
    """Refuse uploads before the multipart body is parsed.

    Unauthenticated callers get 401/403 and declared bodies over the upload
    limit get 413 without the body being spooled to disk. Chunked bodies
    without Content-Length are still capped by save_upload.
    """
    if request.method != "POST" or request_raw_path(request).rstrip("/") != UPLOAD_PATH:
        return await call_next(request)

    try:
        require_user(request.headers.get("authorization"))
    except HTTPException as e:
        return JSONResponse({"message": e.detail}, status_code=e.status_code)

    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > MAX_UPLOAD_SIZE + MULTIPART_OVERHEAD:
        return JSONResponse(
            {"message": f"File too large. Maximum size is {UPLOAD_MAX_MB} MB"},
            status_code=413,
        )
    return await call_next(request)


# =============================================================================
# Dashboard Frontend
# =============================================================================


@app.get("/{full_path:path}")
async def serve_frontend(full_path: str) -> FileResponse:
    """Serve dashboard assets, falling back to index.html for client routes.

    Unmatched API and site paths get a 404 instead of the dashboard page.
    """
    path = "/" + full_path
    if any(is_under_prefix(path, prefix) for prefix in API_PREFIXES) or is_under_prefix(path, SITE_PREFIX):
        raise HTTPException(status_code=404, detail="Not found")

    root = FRONTEND_DIR.resolve()
    if full_path:
        file_path = (root / full_path).resolve()
        # Security: ensure we're still within the frontend directory
        if file_path.is_relative_to(root) and file_path.is_file():
            return FileResponse(file_path)

    index = root / "index.html"
    if index.is_file():
        return FileResponse(index)
    raise HTTPException(status_code=404, detail="Not found")
