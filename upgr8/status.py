"""
This module holds the common functionality used to represent the status of a
ManagedApplication. The status subtree is owned exclusively by the upgrade
state machine. The schema is:
{
    "phase": "Healthy" | "Migrating" | "Deploying" | "HealthChecking" |
             "Canary" | "Promoting" | "Failed" | "RollingBack",
    "currentVersion": last fully promoted version,
    "attemptedVersion": target version of the in-flight (or last failed) cycle,
    "workloadVersion": version applied to the workload during this cycle,
    "primaryVersion": version applied to the primary workload when promoting
                      or rolling back a canary,
    "migrationTask": name of the launched migration task,
    "canaryWeight": 0-100,
    "canaryStepIndex": index of the active canary step,
    "canaryPauseUntil": end of the active step's pause,
    "healthGate": {
        "key": identity of the confirmation window,
        "startedAt": first observation of the key,
        "lastProbeTime": time of the most recent probe,
        "consecutiveSuccesses": N,
        "consecutiveFailures": N,
    },
    "rollback": {"attempts": N, "nextAttemptTime": ..., "completed": bool},
    "reconcileErrors": consecutive reconciles that ended in an error,
    "conditions": [
        {"type", "status", "reason", "message", "lastTransitionTime"}, ...
    ],
}
"""

# Standard
from datetime import datetime
from enum import Enum
from typing import Optional, Union
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

log = alog.use_channel("STTUS")

## Public ######################################################################

# Top-level status fields
PHASE = "phase"
CURRENT_VERSION = "currentVersion"
ATTEMPTED_VERSION = "attemptedVersion"
WORKLOAD_VERSION = "workloadVersion"
PRIMARY_VERSION = "primaryVersion"
MIGRATION_TASK = "migrationTask"
CANARY_WEIGHT = "canaryWeight"
CANARY_STEP_INDEX = "canaryStepIndex"
CANARY_PAUSE_UNTIL = "canaryPauseUntil"
HEALTH_GATE = "healthGate"
ROLLBACK = "rollback"
CONDITIONS = "conditions"
RECONCILE_ERRORS = "reconcileErrors"

# Health gate bookkeeping fields
GATE_KEY = "key"
GATE_STARTED_AT = "startedAt"
GATE_LAST_PROBE_TIME = "lastProbeTime"
GATE_SUCCESSES = "consecutiveSuccesses"
GATE_FAILURES = "consecutiveFailures"

# Rollback bookkeeping fields
ROLLBACK_ATTEMPTS = "attempts"
ROLLBACK_NEXT_ATTEMPT = "nextAttemptTime"
ROLLBACK_COMPLETED = "completed"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"

# Condition types that are not phases
PAUSED_CONDITION = "Paused"
CONFIG_CONDITION = "ConfigurationValid"
ROLLED_BACK_CONDITION = "RolledBack"
RECONCILE_ERROR_CONDITION = "ReconcileError"


class Phase(Enum):
    """The discrete stage of the upgrade cycle for one application"""

    HEALTHY = "Healthy"
    MIGRATING = "Migrating"
    DEPLOYING = "Deploying"
    HEALTH_CHECKING = "HealthChecking"
    CANARY = "Canary"
    PROMOTING = "Promoting"
    FAILED = "Failed"
    ROLLING_BACK = "RollingBack"


# Phases in which no upgrade work is in flight
TERMINAL_PHASES = [Phase.HEALTHY, Phase.FAILED]


class Reason(Enum):
    """Machine-readable reasons used in conditions"""

    # Cycle boundaries
    UPGRADE_STARTED = "UpgradeStarted"
    UPGRADE_ABANDONED = "UpgradeAbandoned"
    PROMOTED = "Promoted"

    # Migration
    MIGRATION_RUNNING = "MigrationRunning"
    MIGRATION_SUCCEEDED = "MigrationSucceeded"
    MIGRATION_FAILED = "MigrationFailed"

    # Deploying
    WORKLOAD_APPLIED = "WorkloadApplied"
    WORKLOAD_NOT_READY = "WorkloadNotReady"
    WORKLOAD_READY = "WorkloadReady"

    # Health gate
    HEALTH_CHECK_PENDING = "HealthCheckPending"
    HEALTH_CHECK_PASSED = "HealthCheckPassed"
    HEALTH_CHECK_FAILED = "HealthCheckFailed"

    # Canary
    CANARY_STEP_APPLIED = "CanaryStepApplied"
    CANARY_STEP_PAUSED = "CanaryStepPaused"
    CANARY_COMPLETE = "CanaryComplete"
    CANARY_FAILED = "CanaryFailed"

    # Rollback
    ROLLBACK_SUCCEEDED = "RollbackSucceeded"
    ROLLBACK_FAILED = "RollbackFailed"
    ROLLBACK_DISABLED = "RollbackDisabled"

    # Non-phase conditions
    PAUSED = "Paused"
    RESUMED = "Resumed"
    VALID = "Valid"
    INVALID_CONFIG = "InvalidConfig"
    CLUSTER_ERROR = "ClusterError"
    ERRORED = "Errored"
    CLEANUP_FAILED = "CleanupFailed"
    RECOVERED = "Recovered"


def get_phase(current_status: dict) -> Phase:
    """Extract the phase from a status object. A resource that has never been
    reconciled is Healthy (idle).

    Args:
        current_status:  dict
            The dict representation of the status for a given application

    Returns:
        phase:  Phase
            The persisted phase
    """
    phase = (current_status or {}).get(PHASE)
    if phase is None:
        return Phase.HEALTHY
    return Phase(phase)


def get_condition(type_name: str, current_status: dict) -> dict:
    """Extract the given condition type from a status object

    Args:
        type_name:  str
            The condition type to fetch
        current_status:  dict
            The dict representation of the status for a given application

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    cond = [
        cond
        for cond in (current_status or {}).get(CONDITIONS, [])
        if cond.get("type") == type_name
    ]
    if cond:
        assert len(cond) == 1, f"Found multiple condition entries for {type_name}"
        return cond[0]
    return {}


def make_condition(
    type_name: str,
    status: bool,
    reason: Union[Reason, str],
    message: str = "",
    last_transition_time: Optional[datetime] = None,
) -> dict:
    """Convert the condition to the dict representation stored on the resource"""
    if isinstance(reason, str):
        reason = Reason(reason)
    last_transition_time = last_transition_time or datetime.now()
    return {
        "type": type_name,
        "status": str(status),
        "reason": reason.value,
        "message": message,
        TIMESTAMP_KEY: last_transition_time.isoformat(),
    }


def set_condition(
    current_status: dict,
    type_name: Union[Phase, str],
    status: bool,
    reason: Union[Reason, str],
    message: str = "",
    now: Optional[datetime] = None,
) -> dict:
    """Insert or update a condition in place. Conditions keep their position in
    the ordered list; a new type is appended. The timestamp only moves when the
    status, reason or message change so that repeated identical reports don't
    produce meaningless status writes.

    Args:
        current_status:  dict
            The status to modify
        type_name:  Union[Phase, str]
            The condition type (a Phase uses its value)
        status:  bool
            The truth value of the condition
        reason:  Union[Reason, str]
            Machine-readable reason
        message:  str
            Human-readable message
        now:  Optional[datetime]
            The timestamp to record if the condition changed

    Returns:
        condition:  dict
            The condition as stored in the status
    """
    if isinstance(type_name, Phase):
        type_name = type_name.value
    new_cond = make_condition(type_name, status, reason, message, now)
    conditions = current_status.setdefault(CONDITIONS, [])
    for idx, cond in enumerate(conditions):
        if cond.get("type") != type_name:
            continue
        if all(
            cond.get(key) == new_cond[key] for key in ["status", "reason", "message"]
        ):
            log.debug3("Condition %s unchanged", type_name)
            return cond
        log.debug2("Updating condition %s -> %s", type_name, new_cond["reason"])
        conditions[idx] = new_cond
        return new_cond
    log.debug2("Adding condition %s -> %s", type_name, new_cond["reason"])
    conditions.append(new_cond)
    return new_cond


def remove_condition(current_status: dict, type_name: str) -> bool:
    """Remove a condition type if present

    Returns:
        removed:  bool
            True if a condition was removed
    """
    conditions = current_status.get(CONDITIONS, [])
    kept = [cond for cond in conditions if cond.get("type") != type_name]
    if len(kept) == len(conditions):
        return False
    current_status[CONDITIONS] = kept
    return True


def copy_status(current_status: Optional[dict]) -> dict:
    """Make a deep copy of a status so that it can be modified without changing
    the object it was read from
    """
    return copy.deepcopy(current_status or {})


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a condition timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current resource
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True

    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )
