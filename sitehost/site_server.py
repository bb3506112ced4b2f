"""Serving hosted project files.

A site request names an owner, a project and a path inside the project. The
resolution order is fixed so visitors and operators can tell outcomes apart:

    unknown user / project   -> 404
    disabled project         -> 403 (distinct body)
    bare project root        -> redirect (entry file or trailing slash)
    path escapes storage     -> 403, logged as a security event
    missing file             -> 404
    entry page               -> file, visit counted
    anything else            -> file

HTML files get a small script injected that blanks the page when it is opened
from a ``file://`` URL, so downloaded copies do not work outside the host.
"""

from __future__ import annotations

import logging
import posixpath
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from .errors import ServeError, ServeErrorKind
from .paths import DEFAULT_ENTRY_FILE
from .site_urls import entry_suffix
from .state_manager import Project, StateManager

_LOG = logging.getLogger(__name__)

PROTECTION_SCRIPT: str = """<script>
(function() {
    function blockLocalExecution() {
        if (window.location.protocol === 'file:') {
            var msg = '<div style="display:flex;justify-content:center;align-items:center;height:100vh;background:#000;color:#fff;font-size:24px;text-align:center;"><div><h1>Access Denied</h1><p>Please open this page through its hosted link.</p></div></div>';
            if (document.body) {
                document.body.innerHTML = msg;
            }
            throw new Error('Local execution forbidden');
        }
    }
    if (document.readyState === 'complete' || document.readyState === 'interactive') {
        blockLocalExecution();
    } else {
        document.addEventListener('DOMContentLoaded', blockLocalExecution);
    }
})();
</script>"""
"""Script injected into every served HTML page."""

_HEAD_CLOSE = re.compile(r"</head\s*>", re.IGNORECASE)
_BODY_OPEN = re.compile(r"<body\b[^>]*>", re.IGNORECASE)


@dataclass
class SiteFile:
    """A file to send back to the visitor.

    Attributes:
        project: The project the file belongs to.
        path: Absolute path of the file on disk.
        relative_path: Normalized posix path relative to the storage root.
        count_visit: True when this request loads the entry page.
    """

    project: Project
    path: Path
    relative_path: str
    count_visit: bool

    @property
    def is_html(self) -> bool:
        return self.path.suffix.lower() == ".html"


@dataclass
class SiteRedirect:
    """A redirect to another URL of the same project."""

    location: str


def normalize_requested_path(file_path: str) -> str:
    """Turn the raw path below a project into a relative file path.

    Args:
        file_path: Percent-encoded path after the project segment ("" or "/...").

    Returns:
        Decoded path without the leading slash; the root maps to index.html.
    """
    decoded = unquote(file_path)
    if decoded in ("", "/"):
        return DEFAULT_ENTRY_FILE
    return decoded[1:] if decoded.startswith("/") else decoded


def resolve_in_storage(storage_path: str | Path, relative: str) -> tuple[Path, str]:
    """Resolve a relative path strictly inside a project's storage root.

    Args:
        storage_path: The project's storage root.
        relative: Decoded relative path from the request.

    Returns:
        (absolute path, normalized posix path relative to the root).

    Raises:
        ServeError: ACCESS_DENIED if the path resolves outside the root.
    """
    root = Path(storage_path).resolve()
    normalized = posixpath.normpath(relative)
    try:
        target = (root / normalized).resolve()
    except (ValueError, OSError) as e:
        raise ServeError(ServeErrorKind.ACCESS_DENIED, f"Unresolvable path {relative!r}") from e

    if target == root or not target.is_relative_to(root):
        _LOG.warning("[Security] Blocked path traversal attempt: %r -> %s (root %s)", relative, target, root)
        raise ServeError(ServeErrorKind.ACCESS_DENIED, f"Path {relative!r} escapes {root}")
    return target, target.relative_to(root).as_posix()


def resolve_site_request(
    state: StateManager,
    username: str,
    project_name: str,
    file_path: str,
    mount_path: str,
    query_string: str = "",
) -> SiteFile | SiteRedirect:
    """Resolve a site request to a file or a redirect.

    Args:
        state: Store used to look up the owner and project.
        username: Owner's username.
        project_name: Project name.
        file_path: Raw path after the project segment ("" for the bare root).
        mount_path: Raw URL path of the project root, used for redirects.
        query_string: Raw query string, preserved on redirects.

    Returns:
        SiteFile for a servable file, SiteRedirect for the project root when
        the entry page lives elsewhere or the trailing slash is missing.

    Raises:
        ServeError: For every error outcome.
    """
    _, project = state.lookup_project(username, project_name)

    if project.status == "DISABLED":
        raise ServeError(ServeErrorKind.PROJECT_DISABLED, f"{username}/{project_name}")

    if file_path in ("", "/"):
        location = None
        if project.entry_file and project.entry_file != DEFAULT_ENTRY_FILE:
            location = mount_path + entry_suffix(project.entry_file)
        elif file_path == "":
            location = mount_path + "/"
        if location is not None:
            if query_string:
                location = f"{location}?{query_string}"
            return SiteRedirect(location=location)

    relative = normalize_requested_path(file_path)
    target, normalized = resolve_in_storage(project.storage_path, relative)
    _LOG.debug("Site %s/%s requested %s -> %s", username, project_name, file_path, target)

    if not target.is_file():
        raise ServeError(ServeErrorKind.FILE_NOT_FOUND, str(target))

    count_visit = normalized in (DEFAULT_ENTRY_FILE, project.entry_file)
    return SiteFile(project=project, path=target, relative_path=normalized, count_visit=count_visit)


def inject_protection_script(html: str) -> str:
    """Insert PROTECTION_SCRIPT exactly once.

    Placed before the first </head>, else right after the first <body> tag,
    else at the very start of the document.
    """
    match = _HEAD_CLOSE.search(html)
    if match:
        return html[:match.start()] + PROTECTION_SCRIPT + html[match.start():]
    match = _BODY_OPEN.search(html)
    if match:
        return html[:match.end()] + PROTECTION_SCRIPT + html[match.end():]
    return PROTECTION_SCRIPT + html


def render_html(path: Path) -> bytes:
    """Read an HTML file and return it with the protection script.

    Undecodable bytes pass through unchanged (surrogateescape).
    """
    text = path.read_bytes().decode("utf-8", errors="surrogateescape")
    return inject_protection_script(text).encode("utf-8", errors="surrogateescape")


def record_visit(state: StateManager, project_id: str) -> None:
    """Count an entry page load. Failures are logged, never raised."""
    try:
        state.increment_visit_count(project_id)
    except sqlite3.Error:
        _LOG.exception("Failed to increment visit count for project %s", project_id)
