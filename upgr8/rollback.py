"""
The RollbackManager undoes an in-flight upgrade attempt. It restores the
primary workload to the last promoted version and removes the rollout
artifacts of the attempt. It never changes currentVersion.
"""

# Standard
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

# First Party
import alog

# Local
from . import constants, status
from .application import ManagedApplication
from .clients.base import WorkloadManagerBase
from .exceptions import ClusterError
from .migration import MigrationRunner

log = alog.use_channel("RLBCK")


class RollbackState(Enum):
    DONE = "done"
    ERROR = "error"


@dataclass
class RollbackResult:
    state: RollbackState
    status: dict
    message: str = ""


class RollbackManager:
    """Rollback over the workload manager and the migration runner"""

    def __init__(
        self,
        workload_manager: WorkloadManagerBase,
        migration_runner: MigrationRunner,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.workload_manager = workload_manager
        self.migration_runner = migration_runner
        self.clock = clock or datetime.now

    def rollback(self, app: ManagedApplication, current_status: dict) -> RollbackResult:
        """Restore the last promoted version and clear the attempt's artifacts

        Args:
            app:  ManagedApplication
                The application whose attempt failed
            current_status:  dict
                The persisted status. It is not modified.

        Returns:
            result:  RollbackResult
                DONE with the cleaned status, or ERROR if any cluster operation
                failed. The RolledBack condition records the outcome either way.
        """
        new_status = status.copy_status(current_status)
        now = self.clock()
        current_version = new_status.get(status.CURRENT_VERSION)
        attempted_version = (
            new_status.get(status.ATTEMPTED_VERSION) or app.target_version
        )
        workload_id = app.workload.name

        notes = []
        try:
            if current_version:
                log.info("Restoring %s to version %s", app.app_id, current_version)
                self.workload_manager.apply_version(
                    workload_id, current_version, constants.ROLE_PRIMARY
                )
                notes.append(f"restored {current_version}")
            else:
                log.info("No promoted version of %s to restore", app.app_id)
                notes.append("no promoted version to restore")

            if app.strategy.uses_canary_workload or new_status.get(
                status.CANARY_WEIGHT
            ):
                self.workload_manager.delete_canary(workload_id)
                notes.append("removed canary")

            if app.strategy.migration is not None or new_status.get(
                status.MIGRATION_TASK
            ):
                self.migration_runner.cleanup(app, attempted_version)
                notes.append("removed migration task")

        except ClusterError as err:
            log.warning("Rollback of %s failed: %s", app.app_id, err)
            message = f"rollback of {attempted_version} failed: {err}"
            status.set_condition(
                new_status,
                status.ROLLED_BACK_CONDITION,
                False,
                status.Reason.ROLLBACK_FAILED,
                message,
                now=now,
            )
            return RollbackResult(RollbackState.ERROR, new_status, message)

        new_status[status.CANARY_WEIGHT] = 0
        for key in [
            status.CANARY_STEP_INDEX,
            status.CANARY_PAUSE_UNTIL,
            status.HEALTH_GATE,
            status.MIGRATION_TASK,
        ]:
            new_status.pop(key, None)
        for key in [status.WORKLOAD_VERSION, status.PRIMARY_VERSION]:
            if current_version:
                new_status[key] = current_version
            else:
                new_status.pop(key, None)

        message = f"rolled back {attempted_version}: {', '.join(notes)}"
        status.set_condition(
            new_status,
            status.ROLLED_BACK_CONDITION,
            True,
            status.Reason.ROLLBACK_SUCCEEDED,
            message,
            now=now,
        )
        return RollbackResult(RollbackState.DONE, new_status, message)
