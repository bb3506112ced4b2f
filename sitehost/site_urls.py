"""Public URL construction for hosted projects."""

from __future__ import annotations

import re
from urllib.parse import quote, urlsplit

from .paths import DEFAULT_ENTRY_FILE

_IPV4_PATTERN = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")


def _segment(value: str) -> str:
    return quote(value, safe="")


def entry_suffix(entry_file: str | None) -> str:
    """URL suffix for a non-default entry file, each segment percent-encoded."""
    if not entry_file or entry_file == DEFAULT_ENTRY_FILE:
        return ""
    return "/" + "/".join(_segment(part) for part in entry_file.split("/"))


def build_site_url(
    base_url: str,
    username: str,
    project_name: str,
    entry_file: str | None = None,
) -> str:
    """Build the public URL of a project.

    Hosts that cannot carry per-user subdomains (localhost, IPv4 addresses,
    single-label names, unparsable bases) get path-based URLs::

        http://localhost:4000/sites/alice/blog

    Everything else gets a subdomain of the root domain (last two labels)::

        https://alice.example.com/blog

    Args:
        base_url: Public base URL of the service.
        username: Owner's username.
        project_name: Project name.
        entry_file: Project entry file; appended when not index.html.

    Returns:
        Absolute site URL.
    """
    trimmed = base_url.rstrip("/")
    suffix = entry_suffix(entry_file)
    path_based = f"{trimmed}/sites/{_segment(username)}/{_segment(project_name)}{suffix}"

    try:
        parts = urlsplit(trimmed)
        hostname = parts.hostname or ""
    except ValueError:
        return path_based
    if not parts.scheme or not hostname:
        return path_based

    if hostname in ("localhost", "127.0.0.1") or _IPV4_PATTERN.match(hostname):
        return path_based

    labels = hostname.split(".")
    if len(labels) < 2:
        return path_based

    root_domain = ".".join(labels[-2:])
    return f"{parts.scheme}://{_segment(username)}.{root_domain}/{_segment(project_name)}{suffix}"
