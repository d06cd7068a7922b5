"""
The MigrationRunner launches and polls the one-shot migration task that must
succeed before a new version is exposed
"""

# Standard
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

# First Party
import alog

# Local
from . import config, constants
from .application import ManagedApplication
from .clients.base import CreateResult, TaskLauncherBase, TaskState
from .exceptions import assert_precondition
from .utils import make_resource_name

log = alog.use_channel("MIGRT")


class MigrationState(Enum):
    """Progress of the migration for one (application, version) pair"""

    NOT_STARTED = "notStarted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class MigrationResult:
    state: MigrationState
    task_id: str
    message: str = ""
    requeue_after: Optional[timedelta] = None


def migration_task_name(app: ManagedApplication, version: str) -> str:
    """The deterministic task name for an (application, version) pair. Tasks
    are created in the namespace of the application, so the name only needs to
    be unique within it.
    """
    return make_resource_name(app.name, constants.MIGRATION_INFIX, str(version))


class MigrationRunner:
    """Drives a migration through a TaskLauncherBase"""

    def __init__(
        self,
        task_launcher: TaskLauncherBase,
        poll_seconds: Optional[float] = None,
    ):
        """
        Args:
            task_launcher:  TaskLauncherBase
                The launcher that runs the task
            poll_seconds:  Optional[float]
                The interval between polls of a running task
        """
        self.task_launcher = task_launcher
        self.poll_interval = timedelta(
            seconds=config.migration_poll_seconds
            if poll_seconds is None
            else poll_seconds
        )

    def check_migration(self, app: ManagedApplication, version: str) -> MigrationResult:
        """Read the state of the migration without creating anything"""
        task_id = migration_task_name(app, version)
        task_status = self.task_launcher.get_task_status(task_id)
        log.debug2("Task [%s] is %s", task_id, task_status.state.value)
        if task_status.state == TaskState.NOT_FOUND:
            return MigrationResult(MigrationState.NOT_STARTED, task_id)
        if task_status.state == TaskState.SUCCEEDED:
            return MigrationResult(MigrationState.SUCCEEDED, task_id)
        if task_status.state == TaskState.FAILED:
            return MigrationResult(
                MigrationState.FAILED,
                task_id,
                message=task_status.message or f"migration task {task_id} failed",
            )
        return MigrationResult(
            MigrationState.RUNNING, task_id, requeue_after=self.poll_interval
        )

    def ensure_migration(
        self, app: ManagedApplication, version: str
    ) -> MigrationResult:
        """Make sure the migration task for this version exists and report its
        progress. Repeated calls never create a second task.

        Args:
            app:  ManagedApplication
                The application with a migration spec
            version:  str
                The version being migrated to

        Returns:
            result:  MigrationResult
                RUNNING, SUCCEEDED or FAILED
        """
        migration = app.strategy.migration
        assert_precondition(
            migration is not None, f"{app.app_id} has no migration configured"
        )
        result = self.check_migration(app, version)
        if result.state != MigrationState.NOT_STARTED:
            return result

        create_result = self.task_launcher.create_task(
            result.task_id, migration.image, migration.command
        )
        if create_result == CreateResult.ALREADY_EXISTS:
            log.debug("Task [%s] was created concurrently", result.task_id)
        else:
            log.info("Launched migration task [%s]", result.task_id)
        return MigrationResult(
            MigrationState.RUNNING,
            result.task_id,
            message="migration task launched",
            requeue_after=self.poll_interval,
        )

    def cleanup(self, app: ManagedApplication, version: str):
        """Delete the migration task for this version if present"""
        task_id = migration_task_name(app, version)
        log.debug("Cleaning up migration task [%s]", task_id)
        self.task_launcher.delete_task(task_id)
