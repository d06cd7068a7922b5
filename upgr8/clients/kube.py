"""
Kubernetes implementations of the collaborator contracts. Every object is built
as a plain manifest and handed to a DeployManager, so the same code runs
against a real cluster and the in-memory dry run cluster.

Layout of the objects for a workload named <w>:
    Deployment <w>            primary role, the promoted version
    Deployment <w>-canary     canary role, the version under test
    Service <w>               all pods of the application
    Service <w>-primary       primary pods
    Service <w>-canary        canary pods
    TrafficSplit <w>          weights between <w>-primary and <w>-canary
    Job <w>-migrate-<v>       migration task for version <v>
"""

# Standard
from typing import List, Optional, Sequence, Tuple

# First Party
import alog

# Local
from .. import config, constants
from ..application import ManagedApplication
from ..deploy_manager import DeployManagerBase
from ..exceptions import ClusterError, assert_cluster
from .base import (
    CreateResult,
    StatusStoreBase,
    TaskLauncherBase,
    TaskState,
    TaskStatus,
    WorkloadManagerBase,
)

log = alog.use_channel("KUBE")

DEPLOYMENT_API_VERSION = "apps/v1"
SERVICE_API_VERSION = "v1"
JOB_API_VERSION = "batch/v1"


def role_suffix(role: str) -> str:
    """The name suffix of the per-role objects"""
    return f"-{role}"


## Workloads ###################################################################


class KubeWorkloadManager(WorkloadManagerBase):
    """Manages the Deployments, Services and TrafficSplit of one application"""

    def __init__(self, deploy_manager: DeployManagerBase, app: ManagedApplication):
        self.deploy_manager = deploy_manager
        self.app = app

    def apply_version(self, workload_id: str, version: str, role: str):
        log.debug("Applying %s version %s as %s", workload_id, version, role)
        manifests = [
            self.deployment_manifest(workload_id, version, role),
            self.service_manifest(workload_id, role),
        ]
        if role == constants.ROLE_PRIMARY:
            manifests.append(self.service_manifest(workload_id, None))
        success, changed = self.deploy_manager.deploy(manifests)
        assert_cluster(success, f"Failed to apply {role} workload {workload_id}")
        log.debug2("Applied %s/%s (changed: %s)", workload_id, role, changed)

    def set_traffic_weight(self, workload_id: str, percent: int):
        log.debug("Setting canary weight of %s to %d", workload_id, percent)
        success, _ = self.deploy_manager.deploy(
            [self.traffic_split_manifest(workload_id, percent)]
        )
        assert_cluster(success, f"Failed to set traffic weight for {workload_id}")

    def get_workload_health(self, workload_id: str, role: str) -> int:
        success, content = self.deploy_manager.get_object_current_state(
            kind="Deployment",
            name=self.workload_name(workload_id, role),
            namespace=self.app.namespace,
            api_version=DEPLOYMENT_API_VERSION,
        )
        assert_cluster(success, f"Failed to read {role} workload {workload_id}")
        if content is None:
            return 0
        # During a rollout ready pods of the old template are not counted
        deploy_status = content.get("status") or {}
        ready = deploy_status.get("readyReplicas") or 0
        if "updatedReplicas" in deploy_status:
            ready = min(ready, deploy_status.get("updatedReplicas") or 0)
        return ready

    def delete_canary(self, workload_id: str):
        log.debug("Deleting canary artifacts for %s", workload_id)
        success, _ = self.deploy_manager.disable(
            [
                self._ref(
                    config.traffic_split.api_version,
                    config.traffic_split.kind,
                    workload_id,
                ),
                self._ref(
                    DEPLOYMENT_API_VERSION,
                    "Deployment",
                    self.workload_name(workload_id, constants.ROLE_CANARY),
                ),
                self._ref(
                    SERVICE_API_VERSION,
                    "Service",
                    workload_id + role_suffix(constants.ROLE_CANARY),
                ),
            ]
        )
        assert_cluster(success, f"Failed to delete canary artifacts of {workload_id}")

    ## Manifests ###############################################################

    @staticmethod
    def workload_name(workload_id: str, role: str) -> str:
        """The primary Deployment carries the workload name itself"""
        if role == constants.ROLE_CANARY:
            return workload_id + constants.CANARY_SUFFIX
        return workload_id

    def labels(self, role: Optional[str] = None, version: Optional[str] = None):
        """Labels identifying the objects of this application"""
        labels = {constants.APPLICATION_LABEL: self.app.name}
        if role:
            labels[constants.ROLE_LABEL] = role
        if version:
            labels[constants.VERSION_LABEL] = version
        return labels

    def deployment_manifest(self, workload_id: str, version: str, role: str) -> dict:
        """Build the Deployment running the given version in the given role"""
        port = self.app.workload.port
        return {
            "apiVersion": DEPLOYMENT_API_VERSION,
            "kind": "Deployment",
            "metadata": {
                "name": self.workload_name(workload_id, role),
                "namespace": self.app.namespace,
                "labels": self.labels(role, version),
            },
            "spec": {
                "replicas": self.app.workload.replicas,
                "selector": {"matchLabels": self.labels(role)},
                "template": {
                    "metadata": {"labels": self.labels(role, version)},
                    "spec": {
                        "containers": [
                            {
                                "name": workload_id,
                                "image": self.app.image_for(version),
                                "ports": [{"containerPort": port}],
                            }
                        ]
                    },
                },
            },
        }

    def service_manifest(self, workload_id: str, role: Optional[str]) -> dict:
        """Build the Service selecting the pods of a role, or all pods of the
        application when role is None
        """
        name = workload_id + (role_suffix(role) if role else "")
        return {
            "apiVersion": SERVICE_API_VERSION,
            "kind": "Service",
            "metadata": {
                "name": name,
                "namespace": self.app.namespace,
                "labels": self.labels(role),
            },
            "spec": {
                "selector": self.labels(role),
                "ports": [
                    {
                        "port": self.app.workload.port,
                        "targetPort": self.app.workload.port,
                    }
                ],
            },
        }

    def traffic_split_manifest(self, workload_id: str, percent: int) -> dict:
        """Build the SMI TrafficSplit sending percent of the traffic to the
        canary backend
        """
        return {
            "apiVersion": config.traffic_split.api_version,
            "kind": config.traffic_split.kind,
            "metadata": {
                "name": workload_id,
                "namespace": self.app.namespace,
                "labels": self.labels(),
            },
            "spec": {
                "service": workload_id,
                "backends": [
                    {
                        "service": workload_id + role_suffix(constants.ROLE_PRIMARY),
                        "weight": 100 - percent,
                    },
                    {
                        "service": workload_id + role_suffix(constants.ROLE_CANARY),
                        "weight": percent,
                    },
                ],
            },
        }

    def _ref(self, api_version: str, kind: str, name: str) -> dict:
        return {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": {"name": name, "namespace": self.app.namespace},
        }


## Tasks #######################################################################


class KubeTaskLauncher(TaskLauncherBase):
    """Runs one-shot tasks as batch/v1 Jobs that never restart their pods"""

    def __init__(
        self,
        deploy_manager: DeployManagerBase,
        app: ManagedApplication,
        backoff_limit: int = 0,
    ):
        self.deploy_manager = deploy_manager
        self.app = app
        self.backoff_limit = backoff_limit

    def create_task(
        self, task_id: str, image: str, command: Sequence[str]
    ) -> CreateResult:
        if self._get_job(task_id) is not None:
            log.debug2("Job %s already exists", task_id)
            return CreateResult.ALREADY_EXISTS
        log.debug("Creating job %s", task_id)
        success, _ = self.deploy_manager.deploy(
            [self.job_manifest(task_id, image, command)]
        )
        assert_cluster(success, f"Failed to create job {task_id}")
        return CreateResult.CREATED

    def get_task_status(self, task_id: str) -> TaskStatus:
        job = self._get_job(task_id)
        if job is None:
            return TaskStatus(state=TaskState.NOT_FOUND)
        job_status = job.get("status") or {}
        if (job_status.get("succeeded") or 0) > 0:
            return TaskStatus(state=TaskState.SUCCEEDED)

        failed_cond = [
            cond
            for cond in job_status.get("conditions") or []
            if cond.get("type") == "Failed" and cond.get("status") == "True"
        ]
        failures = job_status.get("failed") or 0
        if failed_cond or failures > self.backoff_limit:
            message = (
                failed_cond[0].get("message")
                if failed_cond and failed_cond[0].get("message")
                else f"job {task_id} failed {failures} time(s)"
            )
            return TaskStatus(state=TaskState.FAILED, message=message)
        return TaskStatus(state=TaskState.PENDING)

    def delete_task(self, task_id: str):
        log.debug("Deleting job %s", task_id)
        success, _ = self.deploy_manager.disable(
            [
                {
                    "apiVersion": JOB_API_VERSION,
                    "kind": "Job",
                    "metadata": {"name": task_id, "namespace": self.app.namespace},
                }
            ]
        )
        assert_cluster(success, f"Failed to delete job {task_id}")

    def job_manifest(self, task_id: str, image: str, command: Sequence[str]) -> dict:
        """Build the Job for a task"""
        labels = {
            constants.APPLICATION_LABEL: self.app.name,
            constants.ROLE_LABEL: constants.ROLE_MIGRATION,
        }
        container = {"name": "task", "image": image}
        if command:
            container["command"] = list(command)
        return {
            "apiVersion": JOB_API_VERSION,
            "kind": "Job",
            "metadata": {
                "name": task_id,
                "namespace": self.app.namespace,
                "labels": labels,
            },
            "spec": {
                "backoffLimit": self.backoff_limit,
                "template": {
                    "metadata": {"labels": labels},
                    "spec": {
                        "restartPolicy": "Never",
                        "containers": [container],
                    },
                },
            },
        }

    def _get_job(self, task_id: str) -> Optional[dict]:
        success, content = self.deploy_manager.get_object_current_state(
            kind="Job",
            name=task_id,
            namespace=self.app.namespace,
            api_version=JOB_API_VERSION,
        )
        assert_cluster(success, f"Failed to read job {task_id}")
        return content


## Status ######################################################################


class KubeStatusStore(StatusStoreBase):
    """Reads and writes the status subresource of ManagedApplications using
    metadata.resourceVersion as the version token
    """

    def __init__(
        self,
        deploy_manager: DeployManagerBase,
        api_version: Optional[str] = None,
        kind: Optional[str] = None,
    ):
        self.deploy_manager = deploy_manager
        self.api_version = api_version or (
            f"{config.resource.group}/{config.resource.version}"
        )
        self.kind = kind or config.resource.kind

    def read_status(
        self, app_id: str, resource: Optional[dict] = None
    ) -> Tuple[Optional[dict], Optional[str]]:
        if resource is None:
            resource = self.read_resource(app_id)
        if resource is None:
            return None, None
        return (
            resource.get("status"),
            resource.get("metadata", {}).get("resourceVersion"),
        )

    def write_status(
        self, app_id: str, status: dict, version_token: Optional[str]
    ) -> Optional[str]:
        namespace, name = split_app_id(app_id)
        success, _ = self.deploy_manager.set_status(
            kind=self.kind,
            name=name,
            namespace=namespace,
            status=status,
            api_version=self.api_version,
            resource_version=version_token,
        )
        assert_cluster(success, f"Failed to write status for {app_id}")
        resource = self.read_resource(app_id)
        return (resource or {}).get("metadata", {}).get("resourceVersion")

    def read_resource(self, app_id: str) -> Optional[dict]:
        """Read the full ManagedApplication"""
        namespace, name = split_app_id(app_id)
        success, content = self.deploy_manager.get_object_current_state(
            kind=self.kind,
            name=name,
            namespace=namespace,
            api_version=self.api_version,
        )
        if not success:
            raise ClusterError(f"Failed to read {self.kind} {app_id}")
        return content


def split_app_id(app_id: str) -> List[str]:
    """Split a <namespace>/<name> identity"""
    namespace, _, name = app_id.rpartition("/")
    return [namespace or constants.DEFAULT_NAMESPACE, name]
