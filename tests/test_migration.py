"""
Tests for the MigrationRunner
"""

# Standard
from datetime import timedelta

# Third Party
import pytest

# Local
from upgr8.clients.base import TaskState
from upgr8.exceptions import PreconditionError
from upgr8.migration import MigrationRunner, MigrationState, migration_task_name
from upgr8.test_helpers.helpers import FakeTaskLauncher, make_app

STRATEGY = {
    "type": "RollingWithMigration",
    "migration": {"image": "registry.example.com/migrate:2", "command": ["up"]},
}


@pytest.fixture
def app():
    return make_app(target_version="2", strategy=STRATEGY)


def test_task_name_is_deterministic(app):
    """Make sure the task name is stable and differs per version"""
    assert migration_task_name(app, "2") == migration_task_name(app, "2")
    assert migration_task_name(app, "2") != migration_task_name(app, "3")
    assert migration_task_name(app, "2") == "test-app-migrate-2"


def test_ensure_creates_once(app):
    """Make sure repeated calls launch exactly one task"""
    launcher = FakeTaskLauncher()
    runner = MigrationRunner(launcher, poll_seconds=7)

    first = runner.ensure_migration(app, "2")
    second = runner.ensure_migration(app, "2")
    assert first.state == MigrationState.RUNNING
    assert second.state == MigrationState.RUNNING
    assert first.requeue_after == timedelta(seconds=7)
    assert launcher.created == [
        ("test-app-migrate-2", "registry.example.com/migrate:2", ("up",))
    ]


def test_ensure_reports_completion(app):
    """Make sure a finished task is reported without launching another"""
    launcher = FakeTaskLauncher()
    runner = MigrationRunner(launcher, poll_seconds=0)
    runner.ensure_migration(app, "2")

    launcher.finish()
    assert runner.ensure_migration(app, "2").state == MigrationState.SUCCEEDED
    assert len(launcher.created) == 1


def test_ensure_reports_failure(app):
    """Make sure a failed task is reported with its message"""
    launcher = FakeTaskLauncher()
    runner = MigrationRunner(launcher, poll_seconds=0)
    runner.ensure_migration(app, "2")

    launcher.finish(succeeded=False)
    result = runner.ensure_migration(app, "2")
    assert result.state == MigrationState.FAILED
    assert "exited 1" in result.message


def test_check_does_not_create(app):
    """Make sure check_migration is read only"""
    launcher = FakeTaskLauncher()
    runner = MigrationRunner(launcher)
    assert runner.check_migration(app, "2").state == MigrationState.NOT_STARTED
    assert not launcher.created


def test_ensure_without_migration():
    """Make sure a migration can't be run for an application without one"""
    runner = MigrationRunner(FakeTaskLauncher())
    with pytest.raises(PreconditionError):
        runner.ensure_migration(make_app(), "2")


def test_cleanup(app):
    """Make sure cleanup removes the task for the given version only"""
    launcher = FakeTaskLauncher(initial_state=TaskState.SUCCEEDED)
    runner = MigrationRunner(launcher)
    runner.ensure_migration(app, "2")
    runner.ensure_migration(app, "3")
    runner.cleanup(app, "2")
    assert launcher.deleted == ["test-app-migrate-2"]
    assert "test-app-migrate-3" in launcher.tasks
