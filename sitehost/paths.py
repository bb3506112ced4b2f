"""Centralized storage path definitions for hosted projects.

Every project gets its own directory, named from the owner's id and the
project name. Owner ids never change, so usernames can be renamed later
without moving files, and project names are unique per owner, so two
projects never share a directory.

Directory Structure:
    /data/sitehost/sites/
    +-- .staging/                  # In-flight uploads (one dir per upload)
    |   +-- 3f2a...e1/
    +-- <owner_id>/                # One directory per user
        +-- blog/                  # One directory per project
        |   +-- index.html
        +-- docs/
            +-- app/main.html

Usage:
    from sitehost.paths import allocate, staging_dir

    target = allocate(user.id, "blog")   # /data/sitehost/sites/<id>/blog
    work = staging_dir()                 # /data/sitehost/sites/.staging/<uuid>
"""

from __future__ import annotations

import os
import re
import uuid
from pathlib import Path

from .config import DATA_DIR

# =============================================================================
# Base Paths
# =============================================================================

STORAGE_ROOT: Path = Path(os.environ.get("SITEHOST_STORAGE_ROOT", str(DATA_DIR / "sites"))).resolve()
"""Root directory under which every project's files are stored."""

STAGING_NAME: str = ".staging"
"""Name of the directory (inside STORAGE_ROOT) holding in-flight uploads."""

DEFAULT_ENTRY_FILE: str = "index.html"
"""Entry file assumed when a bundle has no better candidate."""

# Regex for validating project names and usernames (DNS label and folder safe)
NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,30}[a-z0-9]$|^[a-z0-9]$")


def validate_name(name: str) -> bool:
    """Validate that a project name or username is DNS and folder safe.

    Args:
        name: Name to validate.

    Returns:
        True if the name is lowercase alphanumeric with inner hyphens, 1-32 chars.
    """
    if not name:
        return False
    return bool(NAME_PATTERN.match(name))


# =============================================================================
# Project Path Functions
# =============================================================================


def owner_dir(owner_id: str) -> Path:
    """Get the directory holding all projects of one owner.

    Example:
        >>> owner_dir("9b1c")
        Path('/data/sitehost/sites/9b1c')
    """
    return STORAGE_ROOT / owner_id


def allocate(owner_id: str, project_name: str) -> Path:
    """Get the storage directory for a project.

    The result is deterministic, so the same (owner, name) pair always maps to
    the same directory. The directory itself is not created here; uploads
    move a finished staging directory into place.

    Args:
        owner_id: Id of the owning user.
        project_name: Project name, already unique for this owner.

    Returns:
        Absolute path to the project's storage directory.

    Raises:
        ValueError: If the name could escape the owner directory.
    """
    if not validate_name(project_name):
        raise ValueError(f"Invalid project name: {project_name!r}")
    if not owner_id or "/" in owner_id or "\\" in owner_id or owner_id in (".", ".."):
        raise ValueError(f"Invalid owner id: {owner_id!r}")
    return owner_dir(owner_id) / project_name


def staging_dir() -> Path:
    """Get a fresh, unique directory path for extracting one upload.

    Staging lives inside STORAGE_ROOT so that moving the finished directory
    into place is a same-filesystem rename.
    """
    return STORAGE_ROOT / STAGING_NAME / uuid.uuid4().hex


# =============================================================================
# Utility Functions
# =============================================================================


def ensure_storage_dirs() -> None:
    """Ensure the storage root and staging directory exist."""
    (STORAGE_ROOT / STAGING_NAME).mkdir(parents=True, exist_ok=True)
