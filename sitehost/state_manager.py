"""SQLite persistence for users and hosted projects.

Thread-safe SQLite access is achieved through one connection per thread, WAL
mode and a generous busy timeout. Concurrency rules live in the database:

- ``UNIQUE(user_id, name)`` decides which of two concurrent uploads with the
  same project name wins; the loser gets NameConflictError.
- Visit counters are bumped with a single ``UPDATE ... + 1`` statement, never
  read-modify-write from Python.

Usage:
    from sitehost.state_manager import state

    # Users
    state.create_user(username, password_hash, role="USER") -> User
    state.get_user(user_id) -> User | None
    state.get_user_by_username(username) -> User | None
    state.set_password_hash(user_id, password_hash) -> bool
    state.set_user_status(user_id, status) -> User | None
    state.list_users(search=None, sort_by=None, order="desc") -> list[UserSummary]
    state.delete_user(user_id) -> None

    # Projects
    state.create_project(...) -> Project
    state.lookup_project(username, name) -> tuple[User, Project]
    state.list_projects(user_id=None, search=None) -> list[Project]
    state.increment_visit_count(project_id)
    state.set_project_status(project_id, status) -> Project | None
    state.delete_project(project_id)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .config import DB_PATH as DEFAULT_DB_PATH
from .errors import NameConflictError, ServeError, ServeErrorKind

_LOG = logging.getLogger(__name__)

USER_STATUSES: frozenset[str] = frozenset({"ACTIVE", "BANNED"})
PROJECT_STATUSES: frozenset[str] = frozenset({"ACTIVE", "DISABLED"})
ROLES: frozenset[str] = frozenset({"USER", "ADMIN"})

# API sort keys -> SQL expressions (whitelist, never interpolate user input)
_USER_SORT_COLUMNS: dict[str, str] = {
    "createdAt": "u.created_at",
    "lastLoginAt": "u.last_login_at",
    "username": "u.username",
    "projectCount": "project_count",
    "totalSize": "total_size",
}

_PROJECT_SORT_COLUMNS: dict[str, str] = {
    "createdAt": "p.created_at",
    "name": "p.name",
    "size": "p.size",
    "visitCount": "p.visit_count",
    "status": "p.status",
}


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _like_pattern(text: str) -> str:
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


@dataclass
class User:
    """A registered account.

    Attributes:
        id: Opaque hex identifier.
        username: DNS-safe name used in site URLs.
        password_hash: Salted hash from sitehost.auth.hash_password.
        role: 'USER' or 'ADMIN'.
        status: 'ACTIVE' or 'BANNED'.
        created_at: ISO timestamp of registration.
        last_login_at: ISO timestamp of last successful login, or None.
    """

    id: str
    username: str
    password_hash: str
    role: str
    status: str
    created_at: str
    last_login_at: str | None


@dataclass
class UserSummary:
    """A user plus aggregate project figures, for the admin listing."""

    user: User
    project_count: int
    total_size: int


@dataclass
class Project:
    """A hosted site.

    Attributes:
        id: Opaque hex identifier.
        user_id: Owning user's id.
        name: Project name, unique per owner.
        description: Optional free text.
        storage_path: Absolute path of the project's storage root.
        entry_file: Landing page, relative to storage_path.
        size: Bytes stored.
        visit_count: Entry page loads.
        status: 'ACTIVE' or 'DISABLED'.
        created_at: ISO timestamp of creation.
        owner_username: Owner's username when loaded with a join, else None.
    """

    id: str
    user_id: str
    name: str
    description: str | None
    storage_path: str
    entry_file: str
    size: int
    visit_count: int
    status: str
    created_at: str
    owner_username: str | None = None


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        username=row["username"],
        password_hash=row["password_hash"],
        role=row["role"],
        status=row["status"],
        created_at=row["created_at"],
        last_login_at=row["last_login_at"],
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    keys = row.keys()
    return Project(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        description=row["description"],
        storage_path=row["storage_path"],
        entry_file=row["entry_file"],
        size=row["size"],
        visit_count=row["visit_count"],
        status=row["status"],
        created_at=row["created_at"],
        owner_username=row["owner_username"] if "owner_username" in keys else None,
    )


class StateManager:
    """Thread-safe SQLite state manager.

    Uses a connection per thread with proper locking.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        """Initialize the state manager.

        Args:
            db_path: Path to SQLite database. Uses SITEHOST_DB_PATH or default.
        """
        self.db_path = db_path or DEFAULT_DB_PATH
        self._local = threading.local()
        self._lock = threading.Lock()
        self._initialized = False

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create a connection for the current thread."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._local.conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrent access
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        # Initialize schema if not done
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._init_schema(self._local.conn)
                    self._initialized = True

        return self._local.conn

    def _init_schema(self, conn: sqlite3.Connection) -> None:
        """Initialize database schema."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'USER',
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                created_at TEXT NOT NULL,
                last_login_at TEXT
            );

            CREATE TABLE IF NOT EXISTS projects (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                description TEXT,
                storage_path TEXT NOT NULL,
                entry_file TEXT NOT NULL DEFAULT 'index.html',
                size INTEGER NOT NULL DEFAULT 0,
                visit_count INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL DEFAULT 'ACTIVE',
                created_at TEXT NOT NULL,
                UNIQUE (user_id, name)
            );

            CREATE INDEX IF NOT EXISTS idx_projects_user ON projects(user_id);
        """)
        conn.commit()
        _LOG.info("State manager schema initialized at %s", self.db_path)

    def close(self) -> None:
        """Close the current thread's connection, if any."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # =========================================================================
    # Users
    # =========================================================================

    def create_user(self, username: str, password_hash: str, role: str = "USER") -> User:
        """Create a user account.

        Raises:
            NameConflictError: If the username is taken.
        """
        if role not in ROLES:
            raise ValueError(f"Unknown role: {role}")
        conn = self._get_conn()
        user_id = uuid.uuid4().hex
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO users (id, username, password_hash, role, status, created_at)
                    VALUES (?, ?, ?, ?, 'ACTIVE', ?)
                    """,
                    (user_id, username, password_hash, role, _now())
                )
        except sqlite3.IntegrityError as e:
            raise NameConflictError(f"Username '{username}' already exists") from e
        _LOG.info("Created user %s (role=%s)", username, role)
        return self.get_user(user_id)

    def get_user(self, user_id: str) -> User | None:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> User | None:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM users WHERE username = ?", (username,)).fetchone()
        return _row_to_user(row) if row else None

    def record_login(self, user_id: str) -> None:
        """Stamp the user's last successful login time."""
        conn = self._get_conn()
        with conn:
            conn.execute("UPDATE users SET last_login_at = ? WHERE id = ?", (_now(), user_id))

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        """Replace a user's stored password hash.

        Returns:
            True if the user exists and was updated.
        """
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                "UPDATE users SET password_hash = ? WHERE id = ?",
                (password_hash, user_id)
            )
        return cursor.rowcount > 0

    def set_user_status(self, user_id: str, status: str) -> User | None:
        """Ban or unban a user.

        Returns:
            The updated user, or None if no such user exists.
        """
        if status not in USER_STATUSES:
            raise ValueError(f"Unknown user status: {status}")
        conn = self._get_conn()
        with conn:
            cursor = conn.execute("UPDATE users SET status = ? WHERE id = ?", (status, user_id))
        if cursor.rowcount == 0:
            return None
        _LOG.info("User %s status set to %s", user_id, status)
        return self.get_user(user_id)

    def list_users(
        self,
        search: str | None = None,
        sort_by: str | None = None,
        order: str = "desc",
    ) -> list[UserSummary]:
        """List users with their project count and total storage.

        Args:
            search: Substring filter on username.
            sort_by: One of createdAt, lastLoginAt, username, projectCount,
                totalSize. Unknown keys fall back to createdAt.
            order: 'asc' or 'desc'.
        """
        column = _USER_SORT_COLUMNS.get(sort_by or "", "u.created_at")
        direction = "ASC" if order == "asc" else "DESC"
        params: list = []
        where = ""
        if search:
            where = "WHERE u.username LIKE ? ESCAPE '\\'"
            params.append(_like_pattern(search))

        conn = self._get_conn()
        rows = conn.execute(
            f"""
            SELECT u.*,
                   COUNT(p.id) AS project_count,
                   COALESCE(SUM(p.size), 0) AS total_size
            FROM users u
            LEFT JOIN projects p ON p.user_id = u.id
            {where}
            GROUP BY u.id
            ORDER BY {column} {direction}, u.id
            """,
            params
        ).fetchall()
        return [
            UserSummary(
                user=_row_to_user(row),
                project_count=row["project_count"],
                total_size=row["total_size"],
            )
            for row in rows
        ]

    def delete_user(self, user_id: str) -> None:
        """Delete a user and all of their project records in one transaction.

        Callers remove project storage before calling this.
        """
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM projects WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        _LOG.info("Deleted user %s and their projects", user_id)

    # =========================================================================
    # Projects
    # =========================================================================

    def create_project(
        self,
        user_id: str,
        name: str,
        description: str | None,
        storage_path: str,
        entry_file: str,
        size: int,
    ) -> Project:
        """Insert a project record.

        Raises:
            NameConflictError: If the owner already has a project with this name.
        """
        conn = self._get_conn()
        project_id = uuid.uuid4().hex
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO projects
                        (id, user_id, name, description, storage_path, entry_file,
                         size, visit_count, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, 0, 'ACTIVE', ?)
                    """,
                    (project_id, user_id, name, description, storage_path, entry_file, size, _now())
                )
        except sqlite3.IntegrityError as e:
            raise NameConflictError(f"Project name '{name}' already exists") from e
        _LOG.info("Created project %s for user %s (entry=%s, size=%d)", name, user_id, entry_file, size)
        return self.get_project(project_id)

    def get_project(self, project_id: str) -> Project | None:
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT p.*, u.username AS owner_username
            FROM projects p JOIN users u ON u.id = p.user_id
            WHERE p.id = ?
            """,
            (project_id,)
        ).fetchone()
        return _row_to_project(row) if row else None

    def find_project(self, user_id: str, name: str) -> Project | None:
        """Get a project by owner id and name."""
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM projects WHERE user_id = ? AND name = ?",
            (user_id, name)
        ).fetchone()
        return _row_to_project(row) if row else None

    def lookup_project(self, username: str, name: str) -> tuple[User, Project]:
        """Resolve an (owner username, project name) pair from a site URL.

        Raises:
            ServeError: USER_NOT_FOUND or PROJECT_NOT_FOUND.
        """
        user = self.get_user_by_username(username)
        if user is None:
            raise ServeError(ServeErrorKind.USER_NOT_FOUND, username)
        project = self.find_project(user.id, name)
        if project is None:
            raise ServeError(ServeErrorKind.PROJECT_NOT_FOUND, f"{username}/{name}")
        project.owner_username = user.username
        return user, project

    def list_projects(
        self,
        user_id: str | None = None,
        search: str | None = None,
        sort_by: str | None = None,
        order: str = "desc",
        search_owner: bool = False,
    ) -> list[Project]:
        """List projects, newest first by default.

        Args:
            user_id: Restrict to one owner.
            search: Substring filter on name or description (and owner
                username when search_owner is set).
            sort_by: One of createdAt, name, size, visitCount, status.
            order: 'asc' or 'desc'.
            search_owner: Also match the search text against usernames.
        """
        column = _PROJECT_SORT_COLUMNS.get(sort_by or "", "p.created_at")
        direction = "ASC" if order == "asc" else "DESC"
        clauses: list[str] = []
        params: list = []
        if user_id:
            clauses.append("p.user_id = ?")
            params.append(user_id)
        if search:
            pattern = _like_pattern(search)
            matches = ["p.name LIKE ? ESCAPE '\\'", "p.description LIKE ? ESCAPE '\\'"]
            params.extend([pattern, pattern])
            if search_owner:
                matches.append("u.username LIKE ? ESCAPE '\\'")
                params.append(pattern)
            clauses.append("(" + " OR ".join(matches) + ")")
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        conn = self._get_conn()
        rows = conn.execute(
            f"""
            SELECT p.*, u.username AS owner_username
            FROM projects p JOIN users u ON u.id = p.user_id
            {where}
            ORDER BY {column} {direction}, p.id
            """,
            params
        ).fetchall()
        return [_row_to_project(row) for row in rows]

    def count_projects(self) -> int:
        conn = self._get_conn()
        return conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]

    def increment_visit_count(self, project_id: str) -> None:
        """Atomically add one visit to a project."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "UPDATE projects SET visit_count = visit_count + 1 WHERE id = ?",
                (project_id,)
            )

    def set_project_status(self, project_id: str, status: str) -> Project | None:
        """Enable or disable a project.

        Returns:
            The updated project, or None if no such project exists.
        """
        if status not in PROJECT_STATUSES:
            raise ValueError(f"Unknown project status: {status}")
        conn = self._get_conn()
        with conn:
            cursor = conn.execute("UPDATE projects SET status = ? WHERE id = ?", (status, project_id))
        if cursor.rowcount == 0:
            return None
        _LOG.info("Project %s status set to %s", project_id, status)
        return self.get_project(project_id)

    def delete_project(self, project_id: str) -> None:
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))


# Global singleton instance
state = StateManager()
