"""
Contracts for the external collaborators driven by the upgrade core. Each
component receives concrete instances of these at construction time.
"""

# Standard
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Tuple
import abc

## Results #####################################################################


class CreateResult(Enum):
    """Outcome of an idempotent create"""

    CREATED = "created"
    ALREADY_EXISTS = "alreadyExists"


class TaskState(Enum):
    """Completion state of a one-shot task"""

    NOT_FOUND = "notFound"
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TaskStatus:
    """The observed state of a one-shot task and any message it reported"""

    state: TaskState
    message: str = ""


## Collaborators ###############################################################


class WorkloadManagerBase(abc.ABC):
    """Create/update/delete of the deployable units for an application"""

    @abc.abstractmethod
    def apply_version(self, workload_id: str, version: str, role: str):
        """Run the given version of the workload in the given role (primary or
        canary)

        Raises:
            ClusterError: If the workload could not be applied
        """

    @abc.abstractmethod
    def set_traffic_weight(self, workload_id: str, percent: int):
        """Route percent of the traffic to the canary workload

        Raises:
            ClusterError: If the traffic split could not be applied
        """

    @abc.abstractmethod
    def get_workload_health(self, workload_id: str, role: str) -> int:
        """Get the number of ready replicas of the workload in the given role

        Raises:
            ClusterError: If the workload could not be read
        """

    @abc.abstractmethod
    def delete_canary(self, workload_id: str):
        """Remove the canary workload and the traffic split. Missing artifacts
        are not an error.

        Raises:
            ClusterError: If the artifacts could not be deleted
        """


class TaskLauncherBase(abc.ABC):
    """Launcher for one-shot tasks such as migrations"""

    @abc.abstractmethod
    def create_task(
        self, task_id: str, image: str, command: Sequence[str]
    ) -> CreateResult:
        """Create the task if it does not already exist

        Raises:
            ClusterError: If the create failed for any other reason
        """

    @abc.abstractmethod
    def get_task_status(self, task_id: str) -> TaskStatus:
        """Read the completion state of a task"""

    @abc.abstractmethod
    def delete_task(self, task_id: str):
        """Delete a task. Missing tasks are not an error."""


class HealthProbeClientBase(abc.ABC):
    """Client used by the health gate"""

    @abc.abstractmethod
    def http_probe(self, url: str, timeout: float) -> bool:
        """Probe the url, returning True on pass and False on fail. Transport
        errors are a fail, never an exception.
        """


class StatusStoreBase(abc.ABC):
    """Persistence for the status subtree of a ManagedApplication with
    optimistic concurrency
    """

    @abc.abstractmethod
    def read_status(
        self, app_id: str, resource: Optional[dict] = None
    ) -> Tuple[Optional[dict], Optional[str]]:
        """Read the current status and the version token it was read at

        Args:
            app_id:  str
                The <namespace>/<name> identity of the application
            resource:  Optional[dict]
                The full resource if it was just read. Stores that keep the
                status on the resource itself take status and token from it so
                that the spec and the token come from the same read.

        Returns:
            status:  Optional[dict]
                The persisted status (None if never written)
            version_token:  Optional[str]
                The token to pass to write_status
        """

    @abc.abstractmethod
    def write_status(
        self, app_id: str, status: dict, version_token: Optional[str]
    ) -> Optional[str]:
        """Write the status if the resource has not changed since the read that
        produced version_token

        Returns:
            version_token:  Optional[str]
                The token after the write

        Raises:
            StatusConflictError: If version_token is stale
        """
