"""
The HealthGate decides whether a running version is operational by repeatedly
probing its health endpoint. All bookkeeping for the confirmation window lives
in a small dict that the caller persists in status, so a restarted process
resumes the window it observed rather than a window held in memory.
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
from .application import HealthCheckSpec
from .clients.base import HealthProbeClientBase
from .utils import format_timestamp, parse_timestamp

log = alog.use_channel("GATE")


class GateState(Enum):
    """The decision of the gate for a single call"""

    PASSING = "passing"
    FAILING = "failing"
    PENDING = "pending"


@dataclass
class GateResult:
    """The decision plus the bookkeeping to persist

    Attributes:
        state:  GateState
            The decision
        gate:  dict
            The updated bookkeeping for the healthGate status field
        requeue_after:  Optional[timedelta]
            For PENDING, when the gate can next make progress
        message:  str
            Human readable summary of the window
    """

    state: GateState
    gate: dict
    requeue_after: Optional[timedelta] = None
    message: str = ""


class HealthGate:
    """Health gate over a HealthProbeClientBase"""

    def __init__(
        self,
        probe_client: HealthProbeClientBase,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Args:
            probe_client:  HealthProbeClientBase
                The client used to run individual probes
            clock:  Optional[Callable[[], datetime]]
                Source of the current time
        """
        self.probe_client = probe_client
        self.clock = clock or datetime.now

    def probe(
        self,
        key: str,
        spec: Optional[HealthCheckSpec],
        gate_state: Optional[dict],
        url: Optional[str] = None,
    ) -> GateResult:
        """Run at most one probe and decide whether the window is complete

        Args:
            key:  str
                Identity of the window (application, phase, step and version).
                Bookkeeping stored under any other key is discarded.
            spec:  Optional[HealthCheckSpec]
                The health check config. Without one the gate passes.
            gate_state:  Optional[dict]
                The persisted bookkeeping from the previous call
            url:  Optional[str]
                The url to probe (defaults to the spec endpoint)

        Returns:
            result:  GateResult
                The decision and updated bookkeeping
        """
        now = self.clock()
        gate = self._load_window(key, gate_state, now)

        if spec is None:
            log.debug2("No health check configured for [%s]. Passing", key)
            return GateResult(GateState.PASSING, gate, message="no health check")

        decided = self._decide(gate, spec)
        if decided:
            log.debug2("Window [%s] already decided: %s", key, decided.value)
            return GateResult(decided, gate, message=self._summary(gate, spec))

        started_at = parse_timestamp(gate.get(status.GATE_STARTED_AT)) or now
        ready_at = started_at + timedelta(seconds=spec.initial_delay_seconds)
        if now < ready_at:
            log.debug2("Window [%s] in initial delay until %s", key, ready_at)
            return GateResult(
                GateState.PENDING,
                gate,
                requeue_after=ready_at - now,
                message="waiting for initial delay",
            )

        last_probe = parse_timestamp(gate.get(status.GATE_LAST_PROBE_TIME))
        if last_probe is not None:
            next_probe = last_probe + timedelta(seconds=spec.period_seconds)
            if now < next_probe:
                log.debug3("Window [%s] waiting for probe period", key)
                return GateResult(
                    GateState.PENDING,
                    gate,
                    requeue_after=next_probe - now,
                    message=self._summary(gate, spec),
                )

        probe_url = url or spec.endpoint
        passed = self.probe_client.http_probe(probe_url, spec.timeout_seconds)
        log.debug("Probe of [%s] for window [%s] passed: %s", probe_url, key, passed)
        if passed:
            gate[status.GATE_SUCCESSES] = gate.get(status.GATE_SUCCESSES, 0) + 1
            gate[status.GATE_FAILURES] = 0
        else:
            gate[status.GATE_FAILURES] = gate.get(status.GATE_FAILURES, 0) + 1
            gate[status.GATE_SUCCESSES] = 0
        gate[status.GATE_LAST_PROBE_TIME] = format_timestamp(now)

        decided = self._decide(gate, spec)
        if decided:
            return GateResult(decided, gate, message=self._summary(gate, spec))
        return GateResult(
            GateState.PENDING,
            gate,
            requeue_after=timedelta(seconds=spec.period_seconds),
            message=self._summary(gate, spec),
        )

    ## Implementation Details ##################################################

    @staticmethod
    def _load_window(key: str, gate_state: Optional[dict], now: datetime) -> dict:
        """Continue the persisted window for this key or start a new one"""
        if (
            isinstance(gate_state, dict)
            and gate_state.get(status.GATE_KEY) == key
            and parse_timestamp(gate_state.get(status.GATE_STARTED_AT)) is not None
        ):
            return dict(gate_state)
        log.debug2("Starting new health window [%s]", key)
        return {
            status.GATE_KEY: key,
            status.GATE_STARTED_AT: format_timestamp(now),
            status.GATE_SUCCESSES: 0,
            status.GATE_FAILURES: 0,
        }

    @staticmethod
    def _decide(gate: dict, spec: HealthCheckSpec) -> Optional[GateState]:
        if gate.get(status.GATE_FAILURES, 0) >= spec.failure_threshold:
            return GateState.FAILING
        if gate.get(status.GATE_SUCCESSES, 0) >= spec.success_threshold:
            return GateState.PASSING
        return None

    @staticmethod
    def _summary(gate: dict, spec: HealthCheckSpec) -> str:
        return (
            f"{gate.get(status.GATE_SUCCESSES, 0)}/{spec.success_threshold} passes, "
            f"{gate.get(status.GATE_FAILURES, 0)}/{spec.failure_threshold} failures"
        )
