"""
Tests for the CanaryController
"""

# Standard
from datetime import timedelta

# Third Party
import pytest

# Local
from upgr8 import status
from upgr8.canary import CanaryController, CanaryState
from upgr8.health_gate import HealthGate
from upgr8.test_helpers.helpers import (
    Clock,
    FakeProbeClient,
    FakeWorkloadManager,
    health_check,
    make_app,
)

STEPS = [
    {"weight": 10, "pauseSeconds": 60},
    {"weight": 50, "pauseSeconds": 60},
    {"weight": 100},
]

## Helpers #####################################################################


def make_controller(results=None, default=True):
    clock = Clock()
    workload_manager = FakeWorkloadManager()
    probe_client = FakeProbeClient(results, default=default)
    controller = CanaryController(
        workload_manager, HealthGate(probe_client, clock=clock), clock=clock
    )
    return controller, workload_manager, probe_client, clock


def canary_app(steps=None, **check_kwargs):
    strategy = {
        "type": "Canary",
        "canary": {"steps": STEPS if steps is None else steps},
        "healthCheck": health_check(**check_kwargs),
    }
    return make_app(target_version="2", strategy=strategy)


def weights(workload_manager):
    return [call[2] for call in workload_manager.calls_to("set_traffic_weight")]


## Tests #######################################################################


def test_full_schedule():
    """Make sure every step is applied, gated and paused in order"""
    controller, workload_manager, _, clock = make_controller()
    app = canary_app()
    current = {}
    seen = []
    for _ in range(40):
        result = controller.advance(app, current)
        current = result.status
        seen.append(result.state)
        if result.state == CanaryState.COMPLETE:
            break
        if result.requeue_after:
            clock.advance(result.requeue_after.total_seconds())
    assert seen[-1] == CanaryState.COMPLETE
    assert weights(workload_manager) == [10, 50, 100]
    assert current[status.CANARY_WEIGHT] == 100
    assert current[status.CANARY_STEP_INDEX] == 2


def test_weight_applied_once():
    """Make sure repeated calls never re-apply the current weight"""
    controller, workload_manager, _, _ = make_controller()
    app = canary_app()
    result = controller.advance(app, {})
    assert result.state == CanaryState.STEP_APPLIED
    assert result.requeue_after == timedelta(0)
    for _ in range(3):
        result = controller.advance(app, result.status)
    assert weights(workload_manager) == [10]


def test_input_status_not_modified():
    """Make sure advance works on a copy of the status"""
    controller, _, _, _ = make_controller()
    current = {}
    controller.advance(canary_app(), current)
    assert current == {}


def test_pause_then_advance():
    """Make sure a passing step pauses and the next weight is applied once the
    pause elapses
    """
    controller, workload_manager, _, clock = make_controller()
    app = canary_app()
    current = controller.advance(app, {}).status
    result = controller.advance(app, current)
    assert result.state == CanaryState.PENDING
    assert result.status[status.CANARY_PAUSE_UNTIL]
    assert result.requeue_after == timedelta(seconds=health_check()["periodSeconds"])

    clock.advance(60)
    result = controller.advance(app, result.status)
    assert result.state == CanaryState.STEP_APPLIED
    assert result.weight == 50
    assert status.CANARY_PAUSE_UNTIL not in result.status
    assert weights(workload_manager) == [10, 50]


def test_gate_failure_fails():
    """Make sure a failing step gate fails the canary"""
    controller, _, _, _ = make_controller(default=False)
    app = canary_app()
    current = controller.advance(app, {}).status
    result = controller.advance(app, current)
    assert result.state == CanaryState.FAILED
    assert result.weight == 10


def test_failure_during_pause():
    """Make sure a probe failing while paused fails the canary immediately"""
    controller, _, probe_client, clock = make_controller(results=[True])
    app = canary_app()
    current = controller.advance(app, {}).status
    current = controller.advance(app, current).status
    assert current[status.CANARY_PAUSE_UNTIL]

    probe_client.default = False
    clock.advance(10)
    result = controller.advance(app, current)
    assert result.state == CanaryState.FAILED
    assert "during pause" in result.message


def test_probing_continues_during_pause():
    """Make sure passing probes keep the pause going without completing it"""
    controller, _, probe_client, clock = make_controller()
    app = canary_app()
    current = controller.advance(app, {}).status
    current = controller.advance(app, current).status
    for _ in range(5):
        clock.advance(10)
        result = controller.advance(app, current)
        assert result.state == CanaryState.PENDING
        current = result.status
    assert len(probe_client.calls) == 6


def test_no_health_check():
    """Make sure steps pass without probing when nothing is configured"""
    controller, workload_manager, probe_client, clock = make_controller()
    app = make_app(
        target_version="2", strategy={"type": "Canary", "canary": {"steps": STEPS}}
    )
    current = controller.advance(app, {}).status
    result = controller.advance(app, current)
    assert result.state == CanaryState.PENDING
    assert result.requeue_after == timedelta(seconds=60)
    clock.advance(60)
    assert controller.advance(app, result.status).weight == 50
    assert not probe_client.calls


def test_repeated_weights():
    """Make sure equal consecutive weights are separate steps"""
    controller, workload_manager, _, clock = make_controller()
    app = canary_app(
        steps=[
            {"weight": 20, "pauseSeconds": 5},
            {"weight": 20, "pauseSeconds": 5},
            {"weight": 100},
        ]
    )
    current = {}
    for _ in range(20):
        result = controller.advance(app, current)
        current = result.status
        if result.state == CanaryState.COMPLETE:
            break
        if result.requeue_after:
            clock.advance(result.requeue_after.total_seconds())
    assert result.state == CanaryState.COMPLETE
    assert weights(workload_manager) == [20, 100]


@pytest.mark.parametrize("index", [-3, 17])
def test_index_clamped(index):
    """Make sure a corrupted step index stays inside the schedule"""
    controller, _, _, _ = make_controller()
    result = controller.advance(canary_app(), {status.CANARY_STEP_INDEX: index})
    assert 0 <= result.status[status.CANARY_STEP_INDEX] <= 2
