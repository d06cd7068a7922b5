"""
The UpgradeStateMachine owns the phase of one ManagedApplication. Each call to
step reads the persisted status, drives the single leaf component relevant to
the current phase, and returns the status to persist together with when it
wants to be invoked again. Nothing is carried between calls in memory.

Phases:

    Healthy ──▶ Migrating ──▶ Deploying ──▶ HealthChecking ──▶ Promoting ──▶ Healthy
       │                         ▲                │    │            ▲
       └─────────────────────────┘                │    └─▶ Canary ──┘
                                                  ▼          │
                      Failed ◀──────────────────────────────┘
                       │  ▲
                       ▼  │
                    RollingBack

Any phase may also go to Failed when its leaf reports an execution failure.
"""

# Standard
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional

# First Party
import alog

# Local
from . import config, constants, status
from .application import ManagedApplication
from .canary import CanaryController, CanaryState
from .clients.base import WorkloadManagerBase
from .health_gate import GateState, HealthGate
from .migration import MigrationRunner, MigrationState
from .rollback import RollbackManager, RollbackState
from .status import Phase, Reason
from .utils import capped_backoff, format_timestamp, parse_timestamp

log = alog.use_channel("UPSM")

# Requeue used to move directly into the next phase
IMMEDIATELY = timedelta(seconds=0)

# Per-cycle bookkeeping cleared when a cycle starts or ends
_CYCLE_FIELDS = [
    status.ATTEMPTED_VERSION,
    status.WORKLOAD_VERSION,
    status.PRIMARY_VERSION,
    status.MIGRATION_TASK,
    status.HEALTH_GATE,
    status.CANARY_STEP_INDEX,
    status.CANARY_PAUSE_UNTIL,
    status.ROLLBACK,
]


@dataclass
class StepResult:
    """The outcome of one state machine invocation

    Attributes:
        status:  dict
            The complete status to persist
        requeue_after:  Optional[timedelta]
            When to invoke step again. None means only on the next external
            change or periodic resync.
    """

    status: dict
    requeue_after: Optional[timedelta] = None

    @property
    def phase(self) -> Phase:
        return status.get_phase(self.status)


class UpgradeStateMachine:
    """The upgrade state machine for ManagedApplications. All collaborators are
    given at construction so that a machine can be driven entirely by fakes.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        workload_manager: WorkloadManagerBase,
        migration_runner: MigrationRunner,
        health_gate: HealthGate,
        canary_controller: CanaryController,
        rollback_manager: RollbackManager,
        clock: Optional[Callable[[], datetime]] = None,
        deploy_poll_seconds: Optional[float] = None,
        requeue_after_seconds: Optional[float] = None,
    ):
        self.workload_manager = workload_manager
        self.migration_runner = migration_runner
        self.health_gate = health_gate
        self.canary_controller = canary_controller
        self.rollback_manager = rollback_manager
        self.clock = clock or datetime.now
        self.deploy_poll = timedelta(
            seconds=config.deploy_poll_seconds
            if deploy_poll_seconds is None
            else deploy_poll_seconds
        )
        self.idle_requeue = timedelta(
            seconds=config.requeue_after_seconds
            if requeue_after_seconds is None
            else requeue_after_seconds
        )
        self._handlers = {
            Phase.HEALTHY: self._healthy,
            Phase.MIGRATING: self._migrating,
            Phase.DEPLOYING: self._deploying,
            Phase.HEALTH_CHECKING: self._health_checking,
            Phase.CANARY: self._canary,
            Phase.PROMOTING: self._promoting,
            Phase.FAILED: self._failed,
            Phase.ROLLING_BACK: self._rolling_back,
        }

    @classmethod
    def from_collaborators(
        cls,
        workload_manager: WorkloadManagerBase,
        task_launcher,
        probe_client,
        clock: Optional[Callable[[], datetime]] = None,
        **kwargs,
    ) -> "UpgradeStateMachine":
        """Wire up the leaf components from the three external collaborators"""
        clock = clock or datetime.now
        migration_runner = MigrationRunner(task_launcher)
        health_gate = HealthGate(probe_client, clock=clock)
        return cls(
            workload_manager=workload_manager,
            migration_runner=migration_runner,
            health_gate=health_gate,
            canary_controller=CanaryController(
                workload_manager, health_gate, clock=clock
            ),
            rollback_manager=RollbackManager(
                workload_manager, migration_runner, clock=clock
            ),
            clock=clock,
            **kwargs,
        )

    @alog.logged_function(log.debug2)
    def step(
        self, app: ManagedApplication, current_status: Optional[dict]
    ) -> StepResult:
        """Perform one invocation of the state machine

        Args:
            app:  ManagedApplication
                The parsed application
            current_status:  Optional[dict]
                The persisted status. It is not modified.

        Returns:
            result:  StepResult
                The status to persist and the requested requeue
        """
        new_status = status.copy_status(current_status)
        now = self.clock()
        phase = status.get_phase(new_status)
        new_status[status.PHASE] = phase.value
        status.set_condition(
            new_status, status.CONFIG_CONDITION, True, Reason.VALID, now=now
        )

        if app.paused:
            log.debug("%s is paused in %s", app.app_id, phase.value)
            status.set_condition(
                new_status,
                status.PAUSED_CONDITION,
                True,
                Reason.PAUSED,
                f"upgrade paused in phase {phase.value}",
                now=now,
            )
            return StepResult(new_status, self.idle_requeue)
        if status.get_condition(status.PAUSED_CONDITION, new_status):
            status.set_condition(
                new_status,
                status.PAUSED_CONDITION,
                False,
                Reason.RESUMED,
                f"upgrade resumed in phase {phase.value}",
                now=now,
            )

        # Work in flight always targets the version the cycle started with
        cycle_app = app
        attempted = new_status.get(status.ATTEMPTED_VERSION)
        if phase not in status.TERMINAL_PHASES and attempted:
            cycle_app = replace(app, target_version=attempted)

        log.debug2("Stepping %s in phase %s", app.app_id, phase.value)
        return self._handlers[phase](cycle_app, new_status, now)

    ## Phases ##################################################################

    def _healthy(self, app, new_status, now) -> StepResult:
        if app.target_version == new_status.get(status.CURRENT_VERSION):
            if not status.get_condition(Phase.HEALTHY.value, new_status):
                status.set_condition(
                    new_status, Phase.HEALTHY, True, Reason.PROMOTED, now=now
                )
            return StepResult(new_status)
        return self._start_cycle(app, new_status, now)

    def _migrating(self, app, new_status, now) -> StepResult:
        if app.strategy.migration is None:
            log.debug("Migration removed from %s. Skipping to deploy", app.app_id)
            self._transition(
                new_status,
                Phase.DEPLOYING,
                Reason.MIGRATION_SUCCEEDED,
                "no migration configured",
                now,
            )
            return StepResult(new_status, IMMEDIATELY)

        result = self.migration_runner.ensure_migration(app, app.target_version)
        new_status[status.MIGRATION_TASK] = result.task_id
        if result.state == MigrationState.SUCCEEDED:
            self._transition(
                new_status,
                Phase.DEPLOYING,
                Reason.MIGRATION_SUCCEEDED,
                f"migration task {result.task_id} succeeded",
                now,
            )
            return StepResult(new_status, IMMEDIATELY)
        if result.state == MigrationState.FAILED:
            return self._fail(
                app, new_status, Reason.MIGRATION_FAILED, result.message, now
            )
        status.set_condition(
            new_status,
            Phase.MIGRATING,
            True,
            Reason.MIGRATION_RUNNING,
            f"waiting for migration task {result.task_id}",
            now=now,
        )
        return StepResult(new_status, result.requeue_after)

    def _deploying(self, app, new_status, now) -> StepResult:
        role = self._rollout_role(app)
        version = app.target_version
        workload_id = app.workload.name

        if new_status.get(status.WORKLOAD_VERSION) != version:
            log.info("Applying %s version %s as %s", app.app_id, version, role)
            self.workload_manager.apply_version(workload_id, version, role)
            new_status[status.WORKLOAD_VERSION] = version
            status.set_condition(
                new_status,
                Phase.DEPLOYING,
                True,
                Reason.WORKLOAD_APPLIED,
                f"applied {version} to the {role} workload",
                now=now,
            )
            return StepResult(new_status, self.deploy_poll)

        ready = self.workload_manager.get_workload_health(workload_id, role)
        desired = app.workload.replicas
        if ready < desired:
            status.set_condition(
                new_status,
                Phase.DEPLOYING,
                True,
                Reason.WORKLOAD_NOT_READY,
                f"{ready}/{desired} replicas of {version} ready",
                now=now,
            )
            return StepResult(new_status, self.deploy_poll)

        new_status.pop(status.HEALTH_GATE, None)
        self._transition(
            new_status,
            Phase.HEALTH_CHECKING,
            Reason.WORKLOAD_READY,
            f"{ready}/{desired} replicas of {version} ready",
            now,
        )
        return StepResult(new_status, IMMEDIATELY)

    def _health_checking(self, app, new_status, now) -> StepResult:
        health_check = app.strategy.health_check
        result = self.health_gate.probe(
            f"{app.app_id}/{Phase.HEALTH_CHECKING.value}/{app.target_version}",
            health_check,
            new_status.get(status.HEALTH_GATE),
            url=health_check.url_for(app.target_version) if health_check else None,
        )
        new_status[status.HEALTH_GATE] = result.gate

        if result.state == GateState.FAILING:
            return self._fail(
                app, new_status, Reason.HEALTH_CHECK_FAILED, result.message, now
            )
        if result.state == GateState.PENDING:
            status.set_condition(
                new_status,
                Phase.HEALTH_CHECKING,
                True,
                Reason.HEALTH_CHECK_PENDING,
                result.message,
                now=now,
            )
            return StepResult(new_status, result.requeue_after)

        new_status.pop(status.HEALTH_GATE, None)
        if app.strategy.rollout_steps:
            new_status[status.CANARY_STEP_INDEX] = 0
            new_status.pop(status.CANARY_PAUSE_UNTIL, None)
            next_phase = Phase.CANARY
        else:
            next_phase = Phase.PROMOTING
        self._transition(
            new_status, next_phase, Reason.HEALTH_CHECK_PASSED, result.message, now
        )
        return StepResult(new_status, IMMEDIATELY)

    def _canary(self, app, new_status, now) -> StepResult:
        if not app.strategy.rollout_steps:
            log.debug("%s has no rollout schedule. Promoting", app.app_id)
            self._transition(
                new_status,
                Phase.PROMOTING,
                Reason.CANARY_COMPLETE,
                f"no traffic shift for {app.strategy.type.value}",
                now,
            )
            return StepResult(new_status, IMMEDIATELY)

        result = self.canary_controller.advance(app, new_status)
        new_status = result.status

        if result.state == CanaryState.FAILED:
            return self._fail(
                app, new_status, Reason.CANARY_FAILED, result.message, now
            )
        if result.state == CanaryState.COMPLETE:
            new_status.pop(status.HEALTH_GATE, None)
            new_status.pop(status.CANARY_PAUSE_UNTIL, None)
            self._transition(
                new_status,
                Phase.PROMOTING,
                Reason.CANARY_COMPLETE,
                f"canary of {app.target_version} complete",
                now,
            )
            return StepResult(new_status, IMMEDIATELY)

        if result.state == CanaryState.STEP_APPLIED:
            reason = Reason.CANARY_STEP_APPLIED
        elif new_status.get(status.CANARY_PAUSE_UNTIL):
            reason = Reason.CANARY_STEP_PAUSED
        else:
            reason = Reason.HEALTH_CHECK_PENDING
        status.set_condition(
            new_status, Phase.CANARY, True, reason, result.message, now=now
        )
        return StepResult(new_status, result.requeue_after)

    def _promoting(self, app, new_status, now) -> StepResult:
        version = app.target_version
        workload_id = app.workload.name

        if app.strategy.uses_canary_workload:
            # Move the primary to the new version before shifting traffic off
            # the canary
            if new_status.get(status.PRIMARY_VERSION) != version:
                log.info("Promoting %s primary to %s", app.app_id, version)
                self.workload_manager.apply_version(
                    workload_id, version, constants.ROLE_PRIMARY
                )
                new_status[status.PRIMARY_VERSION] = version
                status.set_condition(
                    new_status,
                    Phase.PROMOTING,
                    True,
                    Reason.WORKLOAD_APPLIED,
                    f"applied {version} to the primary workload",
                    now=now,
                )
                return StepResult(new_status, self.deploy_poll)

            ready = self.workload_manager.get_workload_health(
                workload_id, constants.ROLE_PRIMARY
            )
            desired = app.workload.replicas
            if ready < desired:
                status.set_condition(
                    new_status,
                    Phase.PROMOTING,
                    True,
                    Reason.WORKLOAD_NOT_READY,
                    f"{ready}/{desired} primary replicas of {version} ready",
                    now=now,
                )
                return StepResult(new_status, self.deploy_poll)

            if new_status.get(status.CANARY_WEIGHT):
                self.workload_manager.set_traffic_weight(workload_id, 0)
                new_status[status.CANARY_WEIGHT] = 0
                return StepResult(new_status, IMMEDIATELY)

            self.workload_manager.delete_canary(workload_id)

        if new_status.get(status.MIGRATION_TASK) or app.strategy.migration:
            self.migration_runner.cleanup(app, version)

        log.info("Promoted %s to %s", app.app_id, version)
        new_status[status.CURRENT_VERSION] = version
        new_status[status.CANARY_WEIGHT] = 0
        self._clear_cycle(new_status)
        self._transition(
            new_status, Phase.HEALTHY, Reason.PROMOTED, f"promoted {version}", now
        )
        return StepResult(new_status, IMMEDIATELY)

    def _failed(self, app, new_status, now) -> StepResult:
        current = new_status.get(status.CURRENT_VERSION)
        attempted = new_status.get(status.ATTEMPTED_VERSION)
        rollback = new_status.get(status.ROLLBACK) or {}

        if (
            app.strategy.rollback_enabled
            and attempted
            and not rollback.get(status.ROLLBACK_COMPLETED)
        ):
            new_status[status.ROLLBACK] = {
                status.ROLLBACK_ATTEMPTS: rollback.get(status.ROLLBACK_ATTEMPTS, 0),
                status.ROLLBACK_COMPLETED: False,
            }
            self._transition(
                new_status,
                Phase.ROLLING_BACK,
                Reason.UPGRADE_ABANDONED,
                f"rolling back {attempted}",
                now,
            )
            return StepResult(new_status, IMMEDIATELY)

        if app.target_version == current:
            log.info("%s returned to %s", app.app_id, current)
            self._clear_cycle(new_status)
            self._transition(
                new_status,
                Phase.HEALTHY,
                Reason.UPGRADE_ABANDONED,
                f"target returned to {current}",
                now,
            )
            return StepResult(new_status)

        if app.target_version != attempted:
            return self._start_cycle(app, new_status, now)

        log.debug3("%s remains failed at %s", app.app_id, attempted)
        return StepResult(new_status)

    def _rolling_back(self, app, new_status, now) -> StepResult:
        rollback = dict(new_status.get(status.ROLLBACK) or {})
        next_attempt = parse_timestamp(rollback.get(status.ROLLBACK_NEXT_ATTEMPT))
        if next_attempt is not None and now < next_attempt:
            return StepResult(new_status, next_attempt - now)

        result = self.rollback_manager.rollback(app, new_status)
        new_status = result.status
        if result.state == RollbackState.DONE:
            rollback[status.ROLLBACK_COMPLETED] = True
            rollback.pop(status.ROLLBACK_NEXT_ATTEMPT, None)
            new_status[status.ROLLBACK] = rollback
            self._transition(
                new_status,
                Phase.FAILED,
                Reason.ROLLBACK_SUCCEEDED,
                result.message,
                now,
            )
            return StepResult(new_status, IMMEDIATELY)

        attempts = rollback.get(status.ROLLBACK_ATTEMPTS, 0) + 1
        backoff = capped_backoff(attempts)
        rollback[status.ROLLBACK_ATTEMPTS] = attempts
        rollback[status.ROLLBACK_NEXT_ATTEMPT] = format_timestamp(now + backoff)
        new_status[status.ROLLBACK] = rollback
        status.set_condition(
            new_status,
            Phase.ROLLING_BACK,
            True,
            Reason.ROLLBACK_FAILED,
            f"attempt {attempts} failed, retrying in {backoff}: {result.message}",
            now=now,
        )
        log.warning(
            "Rollback of %s failed %d time(s). Retrying in %s",
            app.app_id,
            attempts,
            backoff,
        )
        return StepResult(new_status, backoff)

    ## Implementation Details ##################################################

    def _start_cycle(self, app, new_status, now) -> StepResult:
        version = app.target_version
        log.info(
            "Starting upgrade of %s from %s to %s",
            app.app_id,
            new_status.get(status.CURRENT_VERSION),
            version,
        )
        self._clear_cycle(new_status)
        status.remove_condition(new_status, status.ROLLED_BACK_CONDITION)
        new_status[status.ATTEMPTED_VERSION] = version
        next_phase = (
            Phase.MIGRATING if app.strategy.migration is not None else Phase.DEPLOYING
        )
        self._transition(
            new_status,
            next_phase,
            Reason.UPGRADE_STARTED,
            f"upgrading to {version} with {app.strategy.type.value}",
            now,
        )
        return StepResult(new_status, IMMEDIATELY)

    def _fail(self, app, new_status, reason: Reason, message: str, now) -> StepResult:
        log.info("Upgrade of %s failed: %s", app.app_id, message)
        new_status[status.ROLLBACK] = {
            status.ROLLBACK_ATTEMPTS: 0,
            status.ROLLBACK_COMPLETED: False,
        }
        self._transition(new_status, Phase.FAILED, reason, message, now)
        if not app.strategy.rollback_enabled:
            status.set_condition(
                new_status,
                status.ROLLED_BACK_CONDITION,
                False,
                Reason.ROLLBACK_DISABLED,
                "rollback is disabled",
                now=now,
            )
        return StepResult(new_status, IMMEDIATELY)

    @staticmethod
    def _transition(new_status, new_phase: Phase, reason: Reason, message, now):
        """Move to a new phase. The old phase's condition is marked False and
        the new phase's condition True, both with the same reason.
        """
        old_phase = status.get_phase(new_status)
        if old_phase != new_phase:
            log.debug(
                "Phase %s -> %s (%s)", old_phase.value, new_phase.value, reason.value
            )
            status.set_condition(new_status, old_phase, False, reason, message, now=now)
        new_status[status.PHASE] = new_phase.value
        status.set_condition(new_status, new_phase, True, reason, message, now=now)

    @staticmethod
    def _clear_cycle(new_status):
        for key in _CYCLE_FIELDS:
            new_status.pop(key, None)

    @staticmethod
    def _rollout_role(app: ManagedApplication) -> str:
        if app.strategy.uses_canary_workload:
            return constants.ROLE_CANARY
        return constants.ROLE_PRIMARY
