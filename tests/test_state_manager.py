"""Tests for the StateManager SQLite state module."""

import tempfile
import threading
from pathlib import Path

import pytest

from sitehost.errors import NameConflictError, ServeError, ServeErrorKind
from sitehost.state_manager import Project, StateManager, User


@pytest.fixture
def temp_db():
    """Create a temporary database for testing."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    yield db_path
    # Cleanup
    for suffix in ("", "-wal", "-shm"):
        path = Path(str(db_path) + suffix)
        if path.exists():
            path.unlink()


@pytest.fixture
def state_manager(temp_db):
    """Create a StateManager with a temporary database."""
    manager = StateManager(db_path=temp_db)
    yield manager
    manager.close()


@pytest.fixture
def alice(state_manager):
    return state_manager.create_user("alice", "hash")


def make_project(state_manager, user, name="blog", size=100, entry_file="index.html"):
    return state_manager.create_project(
        user_id=user.id,
        name=name,
        description=f"{name} description",
        storage_path=f"/srv/{user.id}/{name}",
        entry_file=entry_file,
        size=size,
    )


class TestUsers:
    """Tests for user-related methods."""

    def test_create_and_get_user(self, state_manager):
        """create_user stores the account with defaults."""
        user = state_manager.create_user("alice", "hash")

        assert isinstance(user, User)
        assert user.role == "USER"
        assert user.status == "ACTIVE"
        assert user.last_login_at is None
        assert state_manager.get_user(user.id) == user
        assert state_manager.get_user_by_username("alice") == user

    def test_get_user_nonexistent(self, state_manager):
        """get_user returns None for unknown ids."""
        assert state_manager.get_user("missing") is None
        assert state_manager.get_user_by_username("nobody") is None

    def test_duplicate_username_conflicts(self, state_manager, alice):
        """A second account with the same username raises NameConflictError."""
        with pytest.raises(NameConflictError):
            state_manager.create_user("alice", "other")

    def test_unknown_role_rejected(self, state_manager):
        """create_user refuses roles outside USER/ADMIN."""
        with pytest.raises(ValueError):
            state_manager.create_user("bob", "hash", role="ROOT")

    def test_record_login(self, state_manager, alice):
        """record_login stamps last_login_at."""
        state_manager.record_login(alice.id)
        assert state_manager.get_user(alice.id).last_login_at is not None

    def test_set_password_hash(self, state_manager, alice):
        """set_password_hash replaces the stored hash and reports missing users."""
        assert state_manager.set_password_hash(alice.id, "new-hash")
        assert state_manager.get_user(alice.id).password_hash == "new-hash"
        assert not state_manager.set_password_hash("missing", "new-hash")

    def test_set_user_status(self, state_manager, alice):
        """set_user_status updates and returns the user."""
        user = state_manager.set_user_status(alice.id, "BANNED")
        assert user.status == "BANNED"

    def test_set_user_status_missing_user(self, state_manager):
        """set_user_status returns None for unknown ids."""
        assert state_manager.set_user_status("missing", "BANNED") is None

    def test_set_user_status_invalid(self, state_manager, alice):
        """set_user_status rejects unknown statuses."""
        with pytest.raises(ValueError):
            state_manager.set_user_status(alice.id, "DELETED")

    def test_list_users_aggregates(self, state_manager, alice):
        """list_users reports project counts and total sizes."""
        bob = state_manager.create_user("bob", "hash")
        make_project(state_manager, alice, "one", size=10)
        make_project(state_manager, alice, "two", size=32)

        summaries = {s.user.username: s for s in state_manager.list_users()}
        assert summaries["alice"].project_count == 2
        assert summaries["alice"].total_size == 42
        assert summaries["bob"].project_count == 0
        assert summaries["bob"].total_size == 0
        assert bob.id == summaries["bob"].user.id

    def test_list_users_search_and_sort(self, state_manager, alice):
        """list_users filters by username substring and sorts by whitelisted keys."""
        state_manager.create_user("bob", "hash")
        state_manager.create_user("alicia", "hash")

        found = [s.user.username for s in state_manager.list_users(search="ali", sort_by="username", order="asc")]
        assert found == ["alice", "alicia"]

    def test_list_users_search_escapes_wildcards(self, state_manager, alice):
        """LIKE wildcards in the search text match literally."""
        assert state_manager.list_users(search="%") == []

    def test_delete_user_removes_projects(self, state_manager, alice):
        """delete_user removes the user and all of their projects."""
        project = make_project(state_manager, alice)
        state_manager.delete_user(alice.id)

        assert state_manager.get_user(alice.id) is None
        assert state_manager.get_project(project.id) is None


class TestProjects:
    """Tests for project-related methods."""

    def test_create_and_get_project(self, state_manager, alice):
        """create_project stores the record with zero visits."""
        project = make_project(state_manager, alice, entry_file="app/main.html")

        assert isinstance(project, Project)
        assert project.visit_count == 0
        assert project.status == "ACTIVE"
        assert project.entry_file == "app/main.html"
        assert project.owner_username == "alice"
        assert state_manager.get_project(project.id) == project

    def test_duplicate_name_conflicts(self, state_manager, alice):
        """A second project with the same name for one owner raises NameConflictError."""
        make_project(state_manager, alice)
        with pytest.raises(NameConflictError):
            make_project(state_manager, alice)

    def test_same_name_different_owner(self, state_manager, alice):
        """Project names are only unique per owner."""
        bob = state_manager.create_user("bob", "hash")
        make_project(state_manager, alice)
        project = make_project(state_manager, bob)
        assert project.user_id == bob.id

    def test_lookup_project(self, state_manager, alice):
        """lookup_project resolves username and project name."""
        created = make_project(state_manager, alice)
        user, project = state_manager.lookup_project("alice", "blog")
        assert user.id == alice.id
        assert project.id == created.id
        assert project.owner_username == "alice"

    def test_lookup_project_unknown_user(self, state_manager):
        """lookup_project raises USER_NOT_FOUND for unknown owners."""
        with pytest.raises(ServeError) as exc_info:
            state_manager.lookup_project("nobody", "blog")
        assert exc_info.value.kind == ServeErrorKind.USER_NOT_FOUND

    def test_lookup_project_unknown_project(self, state_manager, alice):
        """lookup_project raises PROJECT_NOT_FOUND for unknown projects."""
        with pytest.raises(ServeError) as exc_info:
            state_manager.lookup_project("alice", "missing")
        assert exc_info.value.kind == ServeErrorKind.PROJECT_NOT_FOUND

    def test_list_projects_filters(self, state_manager, alice):
        """list_projects filters by owner and search text."""
        bob = state_manager.create_user("bob", "hash")
        make_project(state_manager, alice, "blog")
        make_project(state_manager, alice, "docs")
        make_project(state_manager, bob, "game")

        assert {p.name for p in state_manager.list_projects(user_id=alice.id)} == {"blog", "docs"}
        assert [p.name for p in state_manager.list_projects(search="doc")] == ["docs"]
        assert [p.name for p in state_manager.list_projects(search="bob", search_owner=True)] == ["game"]
        assert state_manager.list_projects(search="bob") == []

    def test_list_projects_sorting(self, state_manager, alice):
        """list_projects sorts by whitelisted keys and ignores unknown ones."""
        make_project(state_manager, alice, "small", size=1)
        make_project(state_manager, alice, "large", size=100)

        by_size = [p.name for p in state_manager.list_projects(sort_by="size", order="asc")]
        assert by_size == ["small", "large"]
        assert len(state_manager.list_projects(sort_by="size; DROP TABLE projects")) == 2

    def test_count_projects(self, state_manager, alice):
        make_project(state_manager, alice, "one")
        make_project(state_manager, alice, "two")
        assert state_manager.count_projects() == 2

    def test_set_project_status(self, state_manager, alice):
        """set_project_status toggles ACTIVE/DISABLED."""
        project = make_project(state_manager, alice)
        assert state_manager.set_project_status(project.id, "DISABLED").status == "DISABLED"
        assert state_manager.set_project_status("missing", "DISABLED") is None
        with pytest.raises(ValueError):
            state_manager.set_project_status(project.id, "BANNED")

    def test_delete_project(self, state_manager, alice):
        project = make_project(state_manager, alice)
        state_manager.delete_project(project.id)
        assert state_manager.get_project(project.id) is None


class TestVisitCounting:
    """Tests for the visit counter."""

    def test_increment_visit_count(self, state_manager, alice):
        """increment_visit_count adds one per call."""
        project = make_project(state_manager, alice)
        state_manager.increment_visit_count(project.id)
        state_manager.increment_visit_count(project.id)
        assert state_manager.get_project(project.id).visit_count == 2

    def test_concurrent_increments_are_not_lost(self, state_manager, alice):
        """Increments from many threads all land."""
        project = make_project(state_manager, alice)

        def bump():
            for _ in range(10):
                state_manager.increment_visit_count(project.id)
            state_manager.close()

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert state_manager.get_project(project.id).visit_count == 80


class TestThreadSafety:
    """Tests for thread-safe database access."""

    def test_concurrent_creates_single_winner(self, state_manager, alice):
        """Concurrent creates of the same name yield exactly one project."""
        results = []
        lock = threading.Lock()

        def create():
            try:
                make_project(state_manager, alice)
                outcome = "ok"
            except NameConflictError:
                outcome = "conflict"
            finally:
                state_manager.close()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=create) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == 4
        assert len(state_manager.list_projects(user_id=alice.id)) == 1
