"""
Tests for the UpgradeStateMachine
"""

# Standard
from datetime import timedelta
import itertools

# Third Party
import pytest

# First Party
import alog

# Local
from upgr8 import constants, status
from upgr8.clients.base import TaskState
from upgr8.state_machine import IMMEDIATELY
from upgr8.status import Phase, Reason
from upgr8.test_helpers.helpers import (
    Clock,
    FakeProbeClient,
    FakeTaskLauncher,
    FakeWorkloadManager,
    drive,
    health_check,
    make_app,
    make_state_machine,
)

log = alog.use_channel("TEST")

MIGRATION = {"image": "registry.example.com/migrate:2", "command": ["up"]}
CANARY_STEPS = [{"weight": 10, "pauseSeconds": 60}, {"weight": 100}]
THREE_STEPS = [
    {"weight": 10, "pauseSeconds": 60},
    {"weight": 50, "pauseSeconds": 60},
    {"weight": 100, "pauseSeconds": 0},
]

## Helpers #####################################################################


class Fixture:
    """Bundle of a state machine and the fakes it drives"""

    def __init__(self, probe_results=None, probe_default=True, **kwargs):
        self.clock = Clock()
        self.workload_manager = FakeWorkloadManager()
        self.task_launcher = FakeTaskLauncher(
            kwargs.pop("task_state", TaskState.PENDING)
        )
        self.probe_client = FakeProbeClient(probe_results, default=probe_default)
        self.state_machine = make_state_machine(
            workload_manager=self.workload_manager,
            task_launcher=self.task_launcher,
            probe_client=self.probe_client,
            clock=self.clock,
            **kwargs,
        )

    def drive(self, app, current_status=None, **kwargs):
        return drive(
            self.state_machine, app, current_status, clock=self.clock, **kwargs
        )

    def step(self, app, current_status=None):
        return self.state_machine.step(app, current_status)

    def applied(self):
        return [
            (call[2], call[3])
            for call in self.workload_manager.calls_to("apply_version")
        ]

    def weights(self):
        return [
            call[2] for call in self.workload_manager.calls_to("set_traffic_weight")
        ]


def healthy_at(version):
    return {status.PHASE: Phase.HEALTHY.value, status.CURRENT_VERSION: version}


def cond(current_status, type_name):
    if isinstance(type_name, Phase):
        type_name = type_name.value
    return status.get_condition(type_name, current_status)


def assert_no_cycle_fields(current_status):
    for key in [
        status.ATTEMPTED_VERSION,
        status.WORKLOAD_VERSION,
        status.PRIMARY_VERSION,
        status.MIGRATION_TASK,
        status.HEALTH_GATE,
        status.CANARY_STEP_INDEX,
        status.CANARY_PAUSE_UNTIL,
        status.ROLLBACK,
    ]:
        assert key not in current_status, key


## Full upgrade cycles #########################################################


def test_rolling_upgrade():
    """Make sure a rolling upgrade with a passing health check is promoted"""
    fix = Fixture()
    app = make_app(target_version="2", strategy={"healthCheck": health_check()})
    result, phases = fix.drive(app, healthy_at("1"))

    assert phases == [
        "Deploying",
        "Deploying",
        "HealthChecking",
        "Promoting",
        "Healthy",
        "Healthy",
    ]
    assert result.requeue_after is None
    assert result.status[status.CURRENT_VERSION] == "2"
    assert fix.applied() == [("2", constants.ROLE_PRIMARY)]
    assert fix.probe_client.calls[0][0] == health_check()["endpoint"].replace(
        "{version}", "2"
    )
    assert_no_cycle_fields(result.status)

    # Each phase the cycle passed through is now False
    for phase in [Phase.DEPLOYING, Phase.HEALTH_CHECKING, Phase.PROMOTING]:
        assert cond(result.status, phase)["status"] == "False"
    assert cond(result.status, Phase.HEALTHY)["status"] == "True"
    assert cond(result.status, Phase.HEALTHY)["reason"] == Reason.PROMOTED.value


def test_initial_install():
    """Make sure a resource with no status installs its target version"""
    fix = Fixture()
    result, _ = fix.drive(make_app(target_version="1"), None)
    assert result.phase == Phase.HEALTHY
    assert result.status[status.CURRENT_VERSION] == "1"


def test_migration_then_rolling():
    """Make sure the migration runs before the new version is deployed"""
    fix = Fixture(task_state=TaskState.SUCCEEDED)
    app = make_app(
        target_version="2",
        strategy={"type": "RollingWithMigration", "migration": MIGRATION},
    )
    result, phases = fix.drive(app, healthy_at("1"))
    assert phases == [
        "Migrating",
        "Migrating",
        "Deploying",
        "Deploying",
        "HealthChecking",
        "Promoting",
        "Healthy",
        "Healthy",
    ]
    assert result.status[status.CURRENT_VERSION] == "2"
    assert len(fix.task_launcher.created) == 1
    assert fix.task_launcher.deleted == ["test-app-migrate-2"]
    assert cond(result.status, Phase.MIGRATING)["status"] == "False"


def test_migration_failure_rolls_back():
    """Make sure a failed migration ends in Failed after a rollback and the
    new version is never deployed
    """
    fix = Fixture(task_state=TaskState.FAILED)
    app = make_app(
        target_version="2",
        strategy={"type": "RollingWithMigration", "migration": MIGRATION},
    )
    result, phases = fix.drive(app, healthy_at("1"))

    assert phases[-3:] == ["RollingBack", "Failed", "Failed"]
    assert "Deploying" not in phases
    assert result.requeue_after is None
    assert result.status[status.CURRENT_VERSION] == "1"
    assert result.status[status.ATTEMPTED_VERSION] == "2"
    assert fix.applied() == [("1", constants.ROLE_PRIMARY)]
    assert fix.task_launcher.deleted == ["test-app-migrate-2"]
    assert cond(result.status, status.ROLLED_BACK_CONDITION)["status"] == "True"
    assert (
        cond(result.status, Phase.MIGRATING)["reason"]
        == Reason.MIGRATION_FAILED.value
    )


def test_canary_promotion():
    """Make sure a canary walks the schedule and promotes the new version"""
    fix = Fixture()
    app = make_app(
        target_version="2",
        strategy={
            "type": "Canary",
            "healthCheck": health_check(),
            "canary": {"steps": CANARY_STEPS},
        },
    )
    result, phases = fix.drive(app, healthy_at("1"))

    assert "Canary" in phases
    assert result.phase == Phase.HEALTHY
    assert result.status[status.CURRENT_VERSION] == "2"
    assert result.status[status.CANARY_WEIGHT] == 0
    assert fix.weights() == [10, 100, 0]
    assert fix.applied() == [
        ("2", constants.ROLE_CANARY),
        ("2", constants.ROLE_PRIMARY),
    ]
    assert fix.workload_manager.calls_to("delete_canary")
    assert_no_cycle_fields(result.status)


def test_blue_green_promotion():
    """Make sure blue-green cuts all traffic over in one step"""
    fix = Fixture()
    app = make_app(target_version="2", strategy={"type": "BlueGreen"})
    result, _ = fix.drive(app, healthy_at("1"))
    assert result.status[status.CURRENT_VERSION] == "2"
    assert fix.weights() == [100, 0]


def test_canary_failure_rolls_back():
    """Make sure a failing canary step returns all traffic to the old version"""
    fix = Fixture(probe_results=[True, False])
    app = make_app(
        target_version="2",
        strategy={
            "type": "Canary",
            "healthCheck": health_check(),
            "canary": {"steps": CANARY_STEPS},
        },
    )
    result, phases = fix.drive(app, healthy_at("1"))

    assert phases[-3:] == ["RollingBack", "Failed", "Failed"]
    assert result.status[status.CURRENT_VERSION] == "1"
    assert result.status[status.CANARY_WEIGHT] == 0
    assert fix.weights() == [10]
    assert fix.applied()[-1] == ("1", constants.ROLE_PRIMARY)
    assert fix.workload_manager.calls_to("delete_canary")
    assert cond(result.status, Phase.CANARY)["reason"] == Reason.CANARY_FAILED.value
    assert cond(result.status, status.ROLLED_BACK_CONDITION)["status"] == "True"


def test_canary_three_step_schedule():
    """Make sure a three step schedule shifts 10, 50 and 100 percent of the
    traffic before promoting
    """
    fix = Fixture()
    app = make_app(
        target_version="2",
        strategy={
            "type": "Canary",
            "healthCheck": health_check(),
            "canary": {"steps": THREE_STEPS},
        },
    )
    result, phases = fix.drive(app, healthy_at("1"), max_steps=100)

    assert [phase for phase, _ in itertools.groupby(phases)] == [
        "Deploying",
        "HealthChecking",
        "Canary",
        "Promoting",
        "Healthy",
    ]
    assert fix.weights() == [10, 50, 100, 0]
    assert result.status[status.CURRENT_VERSION] == "2"
    assert result.requeue_after is None


def test_canary_probes_during_pause():
    """Make sure the pause after a passing step is spent probing and a failure
    inside it fails the upgrade before the next weight is applied
    """
    fix = Fixture()
    app = make_app(
        target_version="2",
        strategy={
            "type": "Canary",
            "healthCheck": health_check(),
            "canary": {"steps": CANARY_STEPS},
        },
    )
    current = healthy_at("1")
    pause_started = None
    for _ in range(30):
        result = fix.step(app, current)
        current = result.status
        if result.phase == Phase.FAILED:
            break
        if pause_started is None and current.get(status.CANARY_PAUSE_UNTIL):
            pause_started = fix.clock()
            assert result.requeue_after == timedelta(
                seconds=health_check()["periodSeconds"]
            )
            fix.probe_client.default = False
        fix.clock.advance(result.requeue_after.total_seconds())

    assert result.phase == Phase.FAILED
    assert fix.clock() - pause_started < timedelta(seconds=60)
    assert fix.weights() == [10]
    assert current[status.CANARY_WEIGHT] == 10
    assert cond(current, Phase.CANARY)["reason"] == Reason.CANARY_FAILED.value


def test_canary_failure_keeps_weight_until_rollback():
    """Make sure a canary failing at 50 percent reports Failed with the weight
    still at 50 and the rollback then returns it to 0
    """
    fix = Fixture()
    app = make_app(
        target_version="2",
        strategy={
            "type": "Canary",
            "healthCheck": health_check(),
            "canary": {"steps": THREE_STEPS},
        },
    )
    current = healthy_at("1")
    failed = None
    for _ in range(100):
        result = fix.step(app, current)
        current = result.status
        if current.get(status.CANARY_WEIGHT) == 50:
            fix.probe_client.default = False
        if failed is None and result.phase == Phase.FAILED:
            failed = result
        if result.requeue_after is None:
            break
        fix.clock.advance(result.requeue_after.total_seconds())

    assert failed.status[status.CANARY_WEIGHT] == 50
    assert status.get_condition(status.ROLLED_BACK_CONDITION, failed.status) is None
    assert fix.weights() == [10, 50]
    assert result.phase == Phase.FAILED
    assert result.status[status.CANARY_WEIGHT] == 0
    assert result.status[status.CURRENT_VERSION] == "1"
    assert cond(result.status, status.ROLLED_BACK_CONDITION)["status"] == "True"


def test_health_check_failure_threshold():
    """Make sure the health check tolerates failures below the threshold"""
    fix = Fixture(probe_default=False)
    app = make_app(
        target_version="2",
        strategy={"healthCheck": health_check(failureThreshold=3)},
    )
    result, phases = fix.drive(app, healthy_at("1"))
    assert phases.count("HealthChecking") == 3
    assert len(fix.probe_client.calls) == 3
    assert result.phase == Phase.FAILED
    assert (
        cond(result.status, Phase.HEALTH_CHECKING)["reason"]
        == Reason.HEALTH_CHECK_FAILED.value
    )


## Single steps ################################################################


def test_healthy_no_op():
    """Make sure a healthy application at its target does nothing"""
    fix = Fixture()
    app = make_app(target_version="1")
    first = fix.step(app, healthy_at("1"))
    second = fix.step(app, first.status)
    assert first.requeue_after is None
    assert not status.status_changed(first.status, second.status)
    assert not fix.workload_manager.calls
    assert cond(first.status, status.CONFIG_CONDITION)["status"] == "True"


def test_step_does_not_modify_input():
    """Make sure the persisted status passed in is left untouched"""
    fix = Fixture()
    current = healthy_at("1")
    fix.step(make_app(target_version="2"), current)
    assert current == healthy_at("1")


def test_deploying_not_ready():
    """Make sure Deploying waits for the workload without re-applying it"""
    fix = Fixture(deploy_poll_seconds=5)
    fix.workload_manager.default_ready = 0
    app = make_app(target_version="2", workload={"replicas": 2})
    current = fix.step(app, healthy_at("1")).status

    result = fix.step(app, current)
    assert result.requeue_after == timedelta(seconds=5)
    for _ in range(3):
        result = fix.step(app, result.status)
        assert result.phase == Phase.DEPLOYING
        assert result.requeue_after == timedelta(seconds=5)
    assert fix.applied() == [("2", constants.ROLE_PRIMARY)]
    assert (
        cond(result.status, Phase.DEPLOYING)["reason"]
        == Reason.WORKLOAD_NOT_READY.value
    )

    fix.workload_manager.ready[constants.ROLE_PRIMARY] = 2
    assert fix.step(app, result.status).phase == Phase.HEALTH_CHECKING


def test_replayed_step_is_idempotent():
    """Make sure replaying a step from the same persisted status yields the same
    status and never launches a second migration task
    """
    fix = Fixture()
    app = make_app(
        target_version="2",
        strategy={"type": "RollingWithMigration", "migration": MIGRATION},
    )
    migrating = fix.step(app, healthy_at("1")).status
    first = fix.step(app, migrating)
    second = fix.step(app, migrating)
    assert not status.status_changed(first.status, second.status)
    assert first.requeue_after == second.requeue_after
    assert len(fix.task_launcher.created) == 1


def test_paused():
    """Make sure a paused application takes no action and resumes where it
    left off
    """
    fix = Fixture()
    app = make_app(target_version="2", paused=True)
    result = fix.step(app, healthy_at("1"))
    assert result.phase == Phase.HEALTHY
    assert result.requeue_after == timedelta(seconds=60)
    assert cond(result.status, status.PAUSED_CONDITION)["status"] == "True"
    assert not fix.workload_manager.calls

    resumed = fix.step(make_app(target_version="2"), result.status)
    assert resumed.phase == Phase.DEPLOYING
    paused_cond = cond(resumed.status, status.PAUSED_CONDITION)
    assert paused_cond["status"] == "False"
    assert paused_cond["reason"] == Reason.RESUMED.value


def test_target_change_mid_cycle():
    """Make sure a target edited mid-cycle is picked up after the in-flight
    cycle ends
    """
    fix = Fixture()
    current = fix.step(make_app(target_version="2"), healthy_at("1")).status
    assert current[status.ATTEMPTED_VERSION] == "2"

    result, _ = fix.drive(make_app(target_version="3"), current)
    assert result.status[status.CURRENT_VERSION] == "3"
    assert fix.applied() == [
        ("2", constants.ROLE_PRIMARY),
        ("3", constants.ROLE_PRIMARY),
    ]


def test_migration_removed_mid_cycle():
    """Make sure a cycle in Migrating continues without a migration spec"""
    fix = Fixture()
    current = {
        status.PHASE: Phase.MIGRATING.value,
        status.CURRENT_VERSION: "1",
        status.ATTEMPTED_VERSION: "2",
    }
    result = fix.step(make_app(target_version="2"), current)
    assert result.phase == Phase.DEPLOYING
    assert not fix.task_launcher.created


## Failure handling ############################################################


def test_rollback_disabled():
    """Make sure a failure without rollback stays Failed and touches nothing"""
    fix = Fixture(probe_default=False)
    app = make_app(
        target_version="2",
        strategy={"rollbackEnabled": False, "healthCheck": health_check()},
    )
    result, phases = fix.drive(app, healthy_at("1"))
    assert "RollingBack" not in phases
    assert result.phase == Phase.FAILED
    assert result.requeue_after is None
    rolled_back = cond(result.status, status.ROLLED_BACK_CONDITION)
    assert rolled_back["status"] == "False"
    assert rolled_back["reason"] == Reason.ROLLBACK_DISABLED.value
    assert fix.applied() == [("2", constants.ROLE_PRIMARY)]


def test_rollback_retry_backoff():
    """Make sure a failed rollback is retried with a capped backoff"""
    fix = Fixture()
    fix.workload_manager.fail_apply = True
    app = make_app(target_version="2")
    current = {
        status.PHASE: Phase.ROLLING_BACK.value,
        status.CURRENT_VERSION: "1",
        status.ATTEMPTED_VERSION: "2",
        status.ROLLBACK: {
            status.ROLLBACK_ATTEMPTS: 0,
            status.ROLLBACK_COMPLETED: False,
        },
    }

    result = fix.step(app, current)
    assert result.phase == Phase.ROLLING_BACK
    assert result.requeue_after == timedelta(seconds=5)
    assert result.status[status.ROLLBACK][status.ROLLBACK_ATTEMPTS] == 1

    # Not yet time to retry
    fix.clock.advance(2)
    waiting = fix.step(app, result.status)
    assert waiting.requeue_after == timedelta(seconds=3)
    assert len(fix.applied()) == 1

    # Second failure doubles the backoff
    fix.clock.advance(3)
    result = fix.step(app, waiting.status)
    assert result.requeue_after == timedelta(seconds=10)
    assert result.status[status.ROLLBACK][status.ROLLBACK_ATTEMPTS] == 2

    fix.workload_manager.fail_apply = False
    fix.clock.advance(10)
    done = fix.step(app, result.status)
    assert done.phase == Phase.FAILED
    assert done.status[status.ROLLBACK][status.ROLLBACK_COMPLETED]
    assert status.ROLLBACK_NEXT_ATTEMPT not in done.status[status.ROLLBACK]


def failed_status():
    return {
        status.PHASE: Phase.FAILED.value,
        status.CURRENT_VERSION: "1",
        status.ATTEMPTED_VERSION: "2",
        status.ROLLBACK: {status.ROLLBACK_ATTEMPTS: 0, status.ROLLBACK_COMPLETED: True},
        status.CONDITIONS: [
            status.make_condition(
                status.ROLLED_BACK_CONDITION, True, Reason.ROLLBACK_SUCCEEDED
            )
        ],
    }


def test_failed_stays_failed():
    """Make sure Failed does not retry the same target"""
    fix = Fixture()
    result = fix.step(make_app(target_version="2"), failed_status())
    assert result.phase == Phase.FAILED
    assert result.requeue_after is None
    assert not fix.workload_manager.calls


def test_failed_target_reverted():
    """Make sure reverting the target to the current version goes Healthy"""
    fix = Fixture()
    result = fix.step(make_app(target_version="1"), failed_status())
    assert result.phase == Phase.HEALTHY
    assert cond(result.status, Phase.HEALTHY)["reason"] == (
        Reason.UPGRADE_ABANDONED.value
    )
    assert_no_cycle_fields(result.status)


def test_failed_new_target():
    """Make sure a new target starts a fresh cycle"""
    fix = Fixture()
    result = fix.step(make_app(target_version="3"), failed_status())
    assert result.phase == Phase.DEPLOYING
    assert result.requeue_after == IMMEDIATELY
    assert result.status[status.ATTEMPTED_VERSION] == "3"
    assert not cond(result.status, status.ROLLED_BACK_CONDITION)
    assert status.ROLLBACK not in result.status


@pytest.mark.parametrize("phase", list(Phase))
def test_every_phase_handled(phase):
    """Make sure every phase can be stepped from a minimal status"""
    fix = Fixture()
    current = {
        status.PHASE: phase.value,
        status.CURRENT_VERSION: "1",
        status.ATTEMPTED_VERSION: "2",
    }
    result = fix.step(make_app(target_version="2"), current)
    assert isinstance(result.phase, Phase)
