"""
The CanaryController drives the weighted traffic shift from the primary
workload to the canary workload, one step per health-gated window.

The position in the schedule is the persisted canaryStepIndex. A step's weight
is only applied when the persisted canaryWeight differs from it, so repeated
invocations never re-apply a weight and repeated weights in the schedule are
handled by the index.
"""

# Standard
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

# First Party
import alog

# Local
from . import status
from .application import ManagedApplication
from .clients.base import WorkloadManagerBase
from .health_gate import GateState, HealthGate
from .utils import format_timestamp, parse_timestamp

log = alog.use_channel("CANRY")


class CanaryState(Enum):
    STEP_APPLIED = "stepApplied"
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class CanaryResult:
    """Outcome of one advance call

    Attributes:
        state:  CanaryState
            The outcome
        status:  dict
            The status with the canary bookkeeping updated
        weight:  Optional[int]
            The weight in effect after this call
        requeue_after:  Optional[timedelta]
            When to invoke advance again
        message:  str
            Human readable detail
    """

    state: CanaryState
    status: dict
    weight: Optional[int] = None
    requeue_after: Optional[timedelta] = None
    message: str = ""


class CanaryController:
    """Canary controller over a workload manager and a health gate"""

    def __init__(
        self,
        workload_manager: WorkloadManagerBase,
        health_gate: HealthGate,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.workload_manager = workload_manager
        self.health_gate = health_gate
        self.clock = clock or datetime.now

    def advance(self, app: ManagedApplication, current_status: dict) -> CanaryResult:
        """Make one unit of progress through the rollout schedule

        Args:
            app:  ManagedApplication
                The application being upgraded
            current_status:  dict
                The persisted status. It is not modified.

        Returns:
            result:  CanaryResult
                The outcome and the status to persist
        """
        new_status = status.copy_status(current_status)
        steps = app.strategy.rollout_steps
        index = min(
            max(new_status.get(status.CANARY_STEP_INDEX) or 0, 0), len(steps) - 1
        )
        new_status[status.CANARY_STEP_INDEX] = index
        step = steps[index]
        current_weight = new_status.get(status.CANARY_WEIGHT) or 0

        # Apply the weight for the current step if not yet in effect
        if current_weight != step.weight:
            return self._apply_step(app, new_status, index)

        now = self.clock()
        pause_until = parse_timestamp(new_status.get(status.CANARY_PAUSE_UNTIL))
        if pause_until is not None:
            if now >= pause_until:
                if index + 1 < len(steps):
                    log.debug("Pause of step %d for %s elapsed", index, app.app_id)
                    new_status[status.CANARY_STEP_INDEX] = index + 1
                    new_status.pop(status.CANARY_PAUSE_UNTIL, None)
                    return self._apply_step(app, new_status, index + 1)
                new_status.pop(status.CANARY_PAUSE_UNTIL, None)
                return CanaryResult(
                    CanaryState.COMPLETE, new_status, weight=step.weight
                )
            return self._watch_pause(app, new_status, index, now, pause_until)

        # Health gate for the step
        key = self._gate_key(app, index)
        gate_result = self.health_gate.probe(
            key,
            app.strategy.health_check,
            new_status.get(status.HEALTH_GATE),
            url=self._url(app),
        )
        new_status[status.HEALTH_GATE] = gate_result.gate
        if gate_result.state == GateState.FAILING:
            log.info("Canary step %d of %s failed", index, app.app_id)
            return CanaryResult(
                CanaryState.FAILED,
                new_status,
                weight=step.weight,
                message=f"step {index} at weight {step.weight}: {gate_result.message}",
            )
        if gate_result.state == GateState.PENDING:
            return CanaryResult(
                CanaryState.PENDING,
                new_status,
                weight=step.weight,
                requeue_after=gate_result.requeue_after,
                message=gate_result.message,
            )

        if index == len(steps) - 1:
            log.info("Final canary step of %s passed", app.app_id)
            return CanaryResult(CanaryState.COMPLETE, new_status, weight=step.weight)

        pause = timedelta(seconds=step.pause_seconds)
        new_status[status.CANARY_PAUSE_UNTIL] = format_timestamp(now + pause)
        log.debug("Step %d of %s passed. Pausing for %s", index, app.app_id, pause)

        # Come back within the pause to keep probing
        requeue_after = pause
        if app.strategy.health_check is not None:
            requeue_after = min(
                pause, timedelta(seconds=app.strategy.health_check.period_seconds)
            )
        return CanaryResult(
            CanaryState.PENDING,
            new_status,
            weight=step.weight,
            requeue_after=requeue_after,
            message=f"step {index} passed, pausing {step.pause_seconds}s",
        )

    ## Implementation Details ##################################################

    def _apply_step(
        self, app: ManagedApplication, new_status: dict, index: int
    ) -> CanaryResult:
        step = app.strategy.rollout_steps[index]
        if (new_status.get(status.CANARY_WEIGHT) or 0) != step.weight:
            log.info("Applying canary weight %d for %s", step.weight, app.app_id)
            self.workload_manager.set_traffic_weight(app.workload.name, step.weight)
            new_status[status.CANARY_WEIGHT] = step.weight
        new_status[status.CANARY_STEP_INDEX] = index
        new_status.pop(status.CANARY_PAUSE_UNTIL, None)
        new_status.pop(status.HEALTH_GATE, None)
        return CanaryResult(
            CanaryState.STEP_APPLIED,
            new_status,
            weight=step.weight,
            requeue_after=timedelta(seconds=0),
            message=f"step {index} at weight {step.weight}",
        )

    def _watch_pause(
        self,
        app: ManagedApplication,
        new_status: dict,
        index: int,
        now: datetime,
        pause_until: datetime,
    ) -> CanaryResult:
        """Keep probing during a pause. Only failures count while paused, so a
        passing window is reopened after each success.
        """
        weight = app.strategy.rollout_steps[index].weight
        remaining = pause_until - now
        health_check = app.strategy.health_check
        if health_check is None:
            return CanaryResult(
                CanaryState.PENDING, new_status, weight=weight, requeue_after=remaining
            )

        gate_result = self.health_gate.probe(
            self._gate_key(app, index, paused=True),
            health_check,
            new_status.get(status.HEALTH_GATE),
            url=self._url(app),
        )
        gate = gate_result.gate
        if gate_result.state == GateState.FAILING:
            new_status[status.HEALTH_GATE] = gate
            log.info("Canary step %d of %s failed during pause", index, app.app_id)
            return CanaryResult(
                CanaryState.FAILED,
                new_status,
                weight=weight,
                message=(
                    f"step {index} at weight {weight} failed during pause: "
                    f"{gate_result.message}"
                ),
            )
        if gate_result.state == GateState.PASSING:
            gate[status.GATE_SUCCESSES] = 0
        new_status[status.HEALTH_GATE] = gate

        requeue_after = remaining
        if gate_result.requeue_after is not None:
            requeue_after = min(remaining, gate_result.requeue_after)
        elif gate_result.state == GateState.PASSING:
            requeue_after = min(
                remaining, timedelta(seconds=health_check.period_seconds)
            )
        return CanaryResult(
            CanaryState.PENDING,
            new_status,
            weight=weight,
            requeue_after=requeue_after,
            message=f"step {index} paused until {format_timestamp(pause_until)}",
        )

    @staticmethod
    def _gate_key(app: ManagedApplication, index: int, paused: bool = False) -> str:
        suffix = "/pause" if paused else ""
        return f"{app.app_id}/canary/{index}/{app.target_version}{suffix}"

    @staticmethod
    def _url(app: ManagedApplication) -> Optional[str]:
        if app.strategy.health_check is None:
            return None
        return app.strategy.health_check.url_for(app.target_version)
