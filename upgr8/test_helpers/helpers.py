"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple
from unittest import mock
import copy
import inspect
import os

# First Party
import aconfig
import alog

# Local
from upgr8 import constants
from upgr8.application import ManagedApplication
from upgr8.clients.base import (
    CreateResult,
    HealthProbeClientBase,
    StatusStoreBase,
    TaskLauncherBase,
    TaskState,
    TaskStatus,
    WorkloadManagerBase,
)
from upgr8.config import library_config as config_detail_dict
from upgr8.deploy_manager.dry_run_deploy_manager import DryRunDeployManager
from upgr8.exceptions import ClusterError, StatusConflictError
from upgr8.state_machine import IMMEDIATELY, StepResult, UpgradeStateMachine

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_INSTANCE_NAME = "test-app"
TEST_INSTANCE_UID = "12345678-1234-1234-1234-123456789012"
TEST_NAMESPACE = "test"
TEST_API_VERSION = "upgr8.example.com/v1alpha1"
TEST_KIND = "ManagedApplication"
TEST_IMAGE = "registry.example.com/test-app"
TEST_ENDPOINT = "http://test-app-canary.test.svc/healthz?v={version}"

# A fixed starting point for the fake clock
START_TIME = datetime(2024, 1, 1, 12, 0, 0)


## Resources ###################################################################


def setup_cr(
    target_version="1.0.0",
    strategy=None,
    workload=None,
    paused=False,
    image=TEST_IMAGE,
    name=TEST_INSTANCE_NAME,
    namespace=TEST_NAMESPACE,
    status=None,
    **kwargs,
):
    """Build a ManagedApplication manifest"""
    cr_dict = kwargs or {}
    cr_dict.setdefault("kind", TEST_KIND)
    cr_dict.setdefault("apiVersion", TEST_API_VERSION)
    cr_dict.setdefault("metadata", {}).setdefault("name", name)
    cr_dict.setdefault("metadata", {}).setdefault("namespace", namespace)
    cr_dict.setdefault("metadata", {}).setdefault("uid", TEST_INSTANCE_UID)
    spec = cr_dict.setdefault("spec", {})
    spec.setdefault("targetVersion", target_version)
    spec.setdefault("image", image)
    if paused:
        spec["paused"] = paused
    if strategy is not None:
        spec["upgradeStrategy"] = copy.deepcopy(strategy)
    if workload is not None:
        spec["workload"] = copy.deepcopy(workload)
    if status is not None:
        cr_dict["status"] = copy.deepcopy(status)
    return aconfig.Config(cr_dict, override_env_vars=False)


def make_app(*args, **kwargs) -> ManagedApplication:
    """Parse a manifest built by setup_cr"""
    return ManagedApplication.from_manifest(setup_cr(*args, **kwargs))


def health_check(endpoint=TEST_ENDPOINT, **kwargs) -> dict:
    """Build a healthCheck section with fast defaults"""
    section = {
        "endpoint": endpoint,
        "initialDelaySeconds": 0,
        "periodSeconds": 10,
        "successThreshold": 1,
        "failureThreshold": 1,
    }
    section.update(kwargs)
    return section


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        if isinstance(val, dict):
            val = aconfig.Config(val, override_env_vars=False)
        config_detail_dict[key] = val

    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


## Clock #######################################################################


class Clock:
    """A settable clock usable anywhere a Callable[[], datetime] is taken"""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


## Failure injection ###########################################################


def get_failable_method(fail_flag, method, failure_return=False):
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        log.debug4(
            "Running failable mock of [%s] with fail flag: %s", str(method), fail_flag
        )
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        elif callable(fail_flag):
            log.debug4("Calling callable fail flag")
            res = fail_flag()
            if res is not None:
                return res
        elif fail_flag == "assert":
            log.debug4("Asserting in failable mock")
            raise AssertionError(f"You told me to fail {method}!")
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        res = method(*args, **kwargs)
        log.debug4("Passthrough res: %s", res)
        return res

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            return self.fail_val
        log.debug("Not failing on call %d", self.call_count)
        return


class MockDeployManager(DryRunDeployManager):
    """The MockDeployManager wraps a standard DryRunDeployManager and adds
    configuration options to simulate failures in each of its operations.
    """

    def __init__(
        self,
        deploy_fail=False,
        deploy_raise=False,
        disable_fail=False,
        disable_raise=False,
        get_state_fail=False,
        get_state_raise=False,
        set_status_fail=False,
        set_status_raise=False,
        auto_enable=True,
        resources=None,
        **kwargs,
    ):
        resources = resources or []
        for resource in resources:
            resource.setdefault("apiVersion", "v1")
        super().__init__(resources, **kwargs)

        self.deploy_fail = "assert" if deploy_raise else deploy_fail
        self.disable_fail = "assert" if disable_raise else disable_fail
        self.get_state_fail = "assert" if get_state_raise else get_state_fail
        self.set_status_fail = "assert" if set_status_raise else set_status_fail

        # If auto-enabling, turn the mocks on now
        if auto_enable:
            self.enable_mocks()

    #######################
    ## Helpers for Tests ##
    #######################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.deploy = mock.Mock(
            side_effect=get_failable_method(
                self.deploy_fail, super().deploy, (False, False)
            )
        )
        self.disable = mock.Mock(
            side_effect=get_failable_method(
                self.disable_fail, super().disable, (False, False)
            )
        )
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.set_status = mock.Mock(
            side_effect=get_failable_method(
                self.set_status_fail, super().set_status, (False, False)
            )
        )

    def get_obj(self, kind, name, namespace=TEST_NAMESPACE, api_version=None):
        return self.get_object_current_state(kind, name, namespace, api_version)[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None


## Collaborator fakes ##########################################################


class FakeWorkloadManager(WorkloadManagerBase):
    """In-memory workload manager. Applied roles report default_ready ready
    replicas unless overridden in ready.
    """

    def __init__(self, default_ready: int = 1):
        self.default_ready = default_ready
        self.ready: Dict[str, int] = {}
        self.versions: Dict[str, str] = {}
        self.weight = 0
        self.calls: List[tuple] = []
        self.fail_apply = False
        self.fail_weight = False
        self.fail_delete = False

    def apply_version(self, workload_id: str, version: str, role: str):
        self.calls.append(("apply_version", workload_id, version, role))
        if self.fail_apply:
            raise ClusterError(f"apply of {workload_id} failed")
        self.versions[role] = version

    def set_traffic_weight(self, workload_id: str, percent: int):
        self.calls.append(("set_traffic_weight", workload_id, percent))
        if self.fail_weight:
            raise ClusterError(f"traffic split of {workload_id} failed")
        self.weight = percent

    def get_workload_health(self, workload_id: str, role: str) -> int:
        if role not in self.versions:
            return 0
        return self.ready.get(role, self.default_ready)

    def delete_canary(self, workload_id: str):
        self.calls.append(("delete_canary", workload_id))
        if self.fail_delete:
            raise ClusterError(f"delete of {workload_id} canary failed")
        self.versions.pop(constants.ROLE_CANARY, None)
        self.weight = 0

    def calls_to(self, name: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == name]


class FakeTaskLauncher(TaskLauncherBase):
    """In-memory task launcher. New tasks start in initial_state."""

    def __init__(self, initial_state: TaskState = TaskState.PENDING):
        self.initial_state = initial_state
        self.tasks: Dict[str, TaskStatus] = {}
        self.created: List[Tuple[str, str, Tuple[str, ...]]] = []
        self.deleted: List[str] = []
        self.fail_delete = False

    def create_task(
        self, task_id: str, image: str, command: Sequence[str]
    ) -> CreateResult:
        if task_id in self.tasks:
            return CreateResult.ALREADY_EXISTS
        self.created.append((task_id, image, tuple(command)))
        self.tasks[task_id] = TaskStatus(state=self.initial_state)
        return CreateResult.CREATED

    def get_task_status(self, task_id: str) -> TaskStatus:
        return self.tasks.get(task_id, TaskStatus(state=TaskState.NOT_FOUND))

    def delete_task(self, task_id: str):
        if self.fail_delete:
            raise ClusterError(f"delete of {task_id} failed")
        self.deleted.append(task_id)
        self.tasks.pop(task_id, None)

    def finish(self, task_id: Optional[str] = None, succeeded: bool = True):
        """Complete the given task (or every task)"""
        state = TaskState.SUCCEEDED if succeeded else TaskState.FAILED
        for name in [task_id] if task_id else list(self.tasks):
            self.tasks[name] = TaskStatus(
                state=state, message="" if succeeded else f"{name} exited 1"
            )


class FakeProbeClient(HealthProbeClientBase):
    """Probe client returning scripted results, then default"""

    def __init__(self, results: Optional[List[bool]] = None, default: bool = True):
        self.results = list(results or [])
        self.default = default
        self.calls: List[Tuple[str, float]] = []

    def http_probe(self, url: str, timeout: float) -> bool:
        self.calls.append((url, timeout))
        if self.results:
            return self.results.pop(0)
        return self.default


class FakeStatusStore(StatusStoreBase):
    """In-memory status store with integer version tokens"""

    def __init__(self):
        self.statuses: Dict[str, dict] = {}
        self.tokens: Dict[str, int] = {}
        self.writes = 0

    def read_status(
        self, app_id: str, resource: Optional[dict] = None
    ) -> Tuple[Optional[dict], Optional[str]]:
        if app_id not in self.tokens:
            return None, None
        return copy.deepcopy(self.statuses.get(app_id)), str(self.tokens[app_id])

    def write_status(
        self, app_id: str, status: dict, version_token: Optional[str]
    ) -> Optional[str]:
        current = str(self.tokens.get(app_id, 0))
        if version_token is not None and version_token != current:
            raise StatusConflictError(
                f"{app_id}: {version_token} != {current}", version_token=current
            )
        self.statuses[app_id] = copy.deepcopy(status)
        self.tokens[app_id] = self.tokens.get(app_id, 0) + 1
        self.writes += 1
        return str(self.tokens[app_id])

    def bump(self, app_id: str):
        """Simulate a concurrent write to the resource"""
        self.tokens[app_id] = self.tokens.get(app_id, 0) + 1


## State machine helpers #######################################################


def make_state_machine(
    workload_manager: Optional[FakeWorkloadManager] = None,
    task_launcher: Optional[FakeTaskLauncher] = None,
    probe_client: Optional[FakeProbeClient] = None,
    clock: Optional[Clock] = None,
    **kwargs,
) -> UpgradeStateMachine:
    """Build a state machine over fakes with zero poll intervals"""
    kwargs.setdefault("deploy_poll_seconds", 0)
    kwargs.setdefault("requeue_after_seconds", 60)
    return UpgradeStateMachine.from_collaborators(
        workload_manager=workload_manager or FakeWorkloadManager(),
        task_launcher=task_launcher or FakeTaskLauncher(),
        probe_client=probe_client or FakeProbeClient(),
        clock=clock or Clock(),
        **kwargs,
    )


def drive(
    state_machine: UpgradeStateMachine,
    app: ManagedApplication,
    current_status: Optional[dict] = None,
    clock: Optional[Clock] = None,
    max_steps: int = 50,
) -> Tuple[StepResult, List[str]]:
    """Step until the machine stops asking for an immediate requeue. If a clock
    is given, it is advanced by every delayed requeue too, and driving stops
    only when no requeue is requested.

    Returns:
        result:  StepResult
            The last result
        phases:  List[str]
            The phase after every step
    """
    phases = []
    result = StepResult(copy.deepcopy(current_status or {}))
    for _ in range(max_steps):
        result = state_machine.step(app, result.status)
        phases.append(result.phase.value)
        if result.requeue_after is None:
            return result, phases
        if result.requeue_after == IMMEDIATELY:
            continue
        if clock is None:
            return result, phases
        clock.advance(seconds=result.requeue_after.total_seconds())
    return result, phases
