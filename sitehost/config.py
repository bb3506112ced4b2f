"""Runtime configuration for the site host service.

All settings are read once from the environment at import time. Paths that
describe where project files live are kept in ``sitehost.paths`` so they can
be patched independently in tests.

Environment Variables:
    SITEHOST_DATA_DIR: Base directory for all service data (default: /data/sitehost)
    SITEHOST_DB_PATH: SQLite database path (default: $SITEHOST_DATA_DIR/sitehost.db)
    SITEHOST_UPLOAD_MAX_MB: Maximum upload size in MB (default: 20)
    SITEHOST_EXTRACT_MAX_MB: Maximum extracted size in MB (default: 5x upload)
    SITEHOST_MAX_ARCHIVE_ENTRIES: Maximum entries per ZIP (default: 10000)
    SITEHOST_ZIP_LEGACY_ENCODING: Charset for non-UTF-8 ZIP names (default: gbk)
    SITEHOST_PUBLIC_BASE_URL: Base URL used to build site URLs (default: from request)
    SITEHOST_FRONTEND_DIR: Built dashboard directory (default: ./client/dist)
    SITEHOST_SECRET: Secret key for HMAC token signing
    SITEHOST_ADMIN_USERNAME / SITEHOST_ADMIN_PASSWORD: Bootstrap admin account
    SITEHOST_HOST / SITEHOST_PORT: Bind address (default: 0.0.0.0:4000)
"""

from __future__ import annotations

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    """Read an integer env var, returning `default` on missing/invalid."""
    value = os.environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


# =============================================================================
# Data Locations
# =============================================================================

DATA_DIR: Path = Path(os.environ.get("SITEHOST_DATA_DIR", "/data/sitehost"))
"""Root directory for all site host data."""

DB_PATH: Path = Path(os.environ.get("SITEHOST_DB_PATH", str(DATA_DIR / "sitehost.db")))
"""Path to the SQLite database holding users and projects."""

FRONTEND_DIR: Path = Path(os.environ.get("SITEHOST_FRONTEND_DIR", "client/dist"))
"""Directory containing the built dashboard (served as an SPA)."""

# =============================================================================
# Upload Limits
# =============================================================================

UPLOAD_MAX_MB: int = _env_int("SITEHOST_UPLOAD_MAX_MB", 20)
"""Maximum upload size in megabytes."""

MAX_UPLOAD_SIZE: int = UPLOAD_MAX_MB * 1024 * 1024
"""Maximum upload size in bytes."""

EXTRACT_MAX_MB: int = _env_int("SITEHOST_EXTRACT_MAX_MB", UPLOAD_MAX_MB * 5)
"""Maximum total uncompressed size of an extracted bundle in megabytes."""

MAX_EXTRACT_SIZE: int = EXTRACT_MAX_MB * 1024 * 1024
"""Maximum total uncompressed size of an extracted bundle in bytes."""

MAX_ARCHIVE_ENTRIES: int = _env_int("SITEHOST_MAX_ARCHIVE_ENTRIES", 10_000)
"""Maximum number of entries accepted in a single ZIP archive."""

ZIP_LEGACY_ENCODING: str = os.environ.get("SITEHOST_ZIP_LEGACY_ENCODING", "gbk")
"""Charset used for ZIP entry names stored without the UTF-8 flag."""

# =============================================================================
# Public URLs and Routing
# =============================================================================

PUBLIC_BASE_URL: str = os.environ.get("SITEHOST_PUBLIC_BASE_URL", "").rstrip("/")
"""Base URL for site links. Empty means derive it from the request."""

API_PREFIXES: tuple[str, ...] = ("/api",)
"""Path prefixes that always belong to the JSON API."""

SITE_PREFIX: str = "/sites"
"""Path prefix for path-based site URLs (/sites/{user}/{project}/...)."""

# =============================================================================
# Authentication
# =============================================================================

SECRET: str = os.environ.get("SITEHOST_SECRET", "")
"""Secret key for HMAC token signing. Keep this secure!"""

ADMIN_USERNAME: str = os.environ.get("SITEHOST_ADMIN_USERNAME", "")
"""Username of the administrator created on startup, if set."""

ADMIN_PASSWORD: str = os.environ.get("SITEHOST_ADMIN_PASSWORD", "")
"""Password of the administrator created on startup."""

# =============================================================================
# Server
# =============================================================================

HOST: str = os.environ.get("SITEHOST_HOST", "0.0.0.0")
PORT: int = _env_int("SITEHOST_PORT", 4000)
