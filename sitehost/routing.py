"""Request classification: API call, hosted site, or dashboard frontend.

Sites are reachable two ways:

    Path-based:   https://example.com/sites/alice/blog/post.html
    Subdomain:    https://alice.example.com/blog/post.html

``classify_request`` is a pure function of the Host header and the raw
(still percent-encoded) request path, so it can be tested without a server.
Rules, in order:

    1. Path equal to or under an API prefix -> API
    2. /sites/{username}/{project}[/...]    -> PATH_SITE
    3. Host with 3+ labels (not an IP), first path segment not reserved
                                            -> SUBDOMAIN_SITE
    4. Anything else                        -> FRONTEND
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote

RESERVED_PROJECT_SEGMENTS: frozenset[str] = frozenset({"api", "sites", "health"})
"""First path segments never read as project names on subdomain hosts."""

_IPV4_PATTERN = re.compile(r"^\d{1,3}(?:\.\d{1,3}){3}$")


class RouteKind(str, Enum):
    API = "API"
    PATH_SITE = "PATH_SITE"
    SUBDOMAIN_SITE = "SUBDOMAIN_SITE"
    FRONTEND = "FRONTEND"


@dataclass
class Route:
    """Result of classifying a request.

    Attributes:
        kind: Which handler owns the request.
        username: Site owner (site kinds only), decoded.
        project_name: Project name (site kinds only), decoded.
        file_path: Remainder of the path after the project segment, still
            percent-encoded, always starting with "/" or empty.
        mount_path: Raw URL path of the project root (e.g. "/sites/alice/blog"),
            used to build redirects.
    """

    kind: RouteKind
    username: str | None = None
    project_name: str | None = None
    file_path: str = ""
    mount_path: str = ""

    @property
    def is_site(self) -> bool:
        return self.kind in (RouteKind.PATH_SITE, RouteKind.SUBDOMAIN_SITE)


def is_under_prefix(path: str, prefix: str) -> bool:
    """Check whether path is prefix itself or below it, segment-wise."""
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


def split_host(host: str | None) -> str:
    """Strip the port from a Host header value and lowercase it."""
    if not host:
        return ""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, never a site host
        return host.split("]", 1)[0] + "]"
    return host.split(":", 1)[0].rstrip(".")


def _split_project(segments_path: str) -> tuple[str, str]:
    """Split "/blog/a/b.html" into ("blog", "/a/b.html")."""
    stripped = segments_path[1:] if segments_path.startswith("/") else segments_path
    if "/" in stripped:
        project, rest = stripped.split("/", 1)
        return project, "/" + rest
    return stripped, ""


def classify_request(
    host: str | None,
    path: str,
    api_prefixes: tuple[str, ...] = ("/api",),
    site_prefix: str = "/sites",
) -> Route:
    """Decide which handler owns a GET request.

    Args:
        host: Host header value (may include a port).
        path: Raw request path without query string.
        api_prefixes: Prefixes reserved for the JSON API.
        site_prefix: Prefix of path-based site URLs.

    Returns:
        The Route describing the request.

    Example:
        >>> classify_request("alice.example.com", "/blog/post.html")
        Route(kind=<RouteKind.SUBDOMAIN_SITE: ...>, username='alice',
              project_name='blog', file_path='/post.html', mount_path='/blog')
    """
    path = path or "/"

    if any(is_under_prefix(path, prefix) for prefix in api_prefixes):
        return Route(RouteKind.API)

    site_prefix = site_prefix.rstrip("/")
    if path.startswith(site_prefix + "/"):
        remainder = path[len(site_prefix) + 1:]
        if "/" in remainder:
            raw_user, rest = remainder.split("/", 1)
            raw_project, file_path = _split_project(rest)
            if raw_user and raw_project:
                return Route(
                    RouteKind.PATH_SITE,
                    username=unquote(raw_user),
                    project_name=unquote(raw_project),
                    file_path=file_path,
                    mount_path=f"{site_prefix}/{raw_user}/{raw_project}",
                )
        return Route(RouteKind.FRONTEND)

    hostname = split_host(host)
    labels = hostname.split(".") if hostname else []
    if len(labels) >= 3 and not _IPV4_PATTERN.match(hostname) and all(labels):
        raw_project, file_path = _split_project(path)
        project_name = unquote(raw_project)
        if project_name and project_name not in RESERVED_PROJECT_SEGMENTS:
            return Route(
                RouteKind.SUBDOMAIN_SITE,
                username=labels[0],
                project_name=project_name,
                file_path=file_path,
                mount_path=f"/{raw_project}",
            )

    return Route(RouteKind.FRONTEND)
