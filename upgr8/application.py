"""
The data model for the ManagedApplication custom resource. This module parses a
raw resource manifest into typed, validated objects. Every configuration error
is detected here, before the state machine takes any step.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

# First Party
import aconfig
import alog

# Local
from . import config
from .exceptions import assert_config

log = alog.use_channel("APP")


class StrategyType(Enum):
    """The closed set of upgrade strategy variants"""

    ROLLING = "Rolling"
    ROLLING_WITH_MIGRATION = "RollingWithMigration"
    CANARY = "Canary"
    BLUE_GREEN = "BlueGreen"


@dataclass(frozen=True)
class CanaryStep:
    """One (traffic weight, pause duration) pair of a rollout schedule"""

    weight: int
    pause_seconds: int = 0


# The implicit schedule used by an empty canary spec and by BlueGreen cutover
FULL_CUTOVER = (CanaryStep(weight=100, pause_seconds=0),)


@dataclass(frozen=True)
class MigrationTaskSpec:
    """The one-shot job run before a new version is exposed"""

    image: str
    command: Tuple[str, ...] = ()
    backoff_limit: int = 0


@dataclass(frozen=True)
class HealthCheckSpec:
    """Configuration for the health gate. The endpoint may contain a {version}
    placeholder which is replaced with the version under test.
    """

    endpoint: str
    initial_delay_seconds: int = 0
    period_seconds: int = 10
    success_threshold: int = 1
    failure_threshold: int = 3
    timeout_seconds: float = 5

    def url_for(self, version: str) -> str:
        """Get the probe url for a given version"""
        return self.endpoint.replace("{version}", str(version))


@dataclass(frozen=True)
class CanarySpec:
    """An ordered sequence of canary steps"""

    steps: Tuple[CanaryStep, ...] = ()

    @property
    def effective_steps(self) -> Tuple[CanaryStep, ...]:
        """An empty spec is a single full cutover step"""
        return self.steps or FULL_CUTOVER


@dataclass(frozen=True)
class UpgradeStrategy:
    """Tagged variant holding the per-strategy payloads"""

    type: StrategyType
    rollback_enabled: bool = True
    migration: Optional[MigrationTaskSpec] = None
    health_check: Optional[HealthCheckSpec] = None
    canary: Optional[CanarySpec] = None

    @property
    def uses_canary_workload(self) -> bool:
        """Canary and BlueGreen run the new version beside the old one"""
        return self.type in [StrategyType.CANARY, StrategyType.BLUE_GREEN]

    @property
    def rollout_steps(self) -> Tuple[CanaryStep, ...]:
        """The traffic shift schedule for this strategy. Rolling variants have
        no traffic shift.
        """
        if self.type == StrategyType.CANARY:
            return (self.canary or CanarySpec()).effective_steps
        if self.type == StrategyType.BLUE_GREEN:
            return FULL_CUTOVER
        return ()


@dataclass(frozen=True)
class WorkloadSpec:
    """The deployable unit being upgraded"""

    name: str
    replicas: int = 1
    port: int = 80


@dataclass
class ManagedApplication:
    """The parsed, validated representation of a ManagedApplication resource"""

    name: str
    namespace: str
    api_version: str
    kind: str
    target_version: str
    image: str
    workload: WorkloadSpec
    strategy: UpgradeStrategy
    paused: bool = False
    uid: Optional[str] = None
    deleting: bool = False
    manifest: dict = field(default_factory=dict, repr=False, compare=False)

    @property
    def app_id(self) -> str:
        """The identity of the application within the cluster"""
        return f"{self.namespace}/{self.name}"

    def image_for(self, version: str) -> str:
        """Get the full image reference for a version of this application"""
        return f"{self.image}:{version}"

    @classmethod
    def from_manifest(
        cls, manifest: Union[dict, aconfig.Config]
    ) -> "ManagedApplication":
        """Parse a raw resource manifest

        Args:
            manifest:  Union[dict, aconfig.Config]
                The full resource (metadata, spec and status)

        Returns:
            app:  ManagedApplication
                The parsed application

        Raises:
            ConfigError: If any part of the spec is invalid
        """
        metadata = manifest.get("metadata") or {}
        spec = manifest.get("spec") or {}
        name = metadata.get("name")
        assert_config(name, "metadata.name is required")

        target_version = spec.get("targetVersion")
        assert_config(
            isinstance(target_version, (str, int, float)) and str(target_version),
            "spec.targetVersion is required",
        )
        image = spec.get("image")
        assert_config(
            isinstance(image, str) and image, "spec.image must be a non-empty string"
        )
        paused = spec.get("paused", False)
        assert_config(isinstance(paused, bool), "spec.paused must be a boolean")

        return cls(
            name=name,
            namespace=metadata.get("namespace"),
            api_version=manifest.get("apiVersion"),
            kind=manifest.get("kind"),
            uid=metadata.get("uid"),
            target_version=str(target_version),
            image=image,
            paused=paused,
            workload=parse_workload(spec.get("workload") or {}, name),
            strategy=parse_strategy(spec.get("upgradeStrategy") or {}),
            deleting=bool(metadata.get("deletionTimestamp")),
            manifest=dict(manifest),
        )


## Parsing #####################################################################


def parse_workload(workload: dict, default_name: str) -> WorkloadSpec:
    """Parse the workload section"""
    replicas = workload.get("replicas", 1)
    port = workload.get("port", 80)
    assert_config(
        _is_int(replicas) and replicas >= 0,
        "spec.workload.replicas must be a non-negative integer",
    )
    assert_config(
        _is_int(port) and 0 < port <= 65535,
        "spec.workload.port must be a valid port",
    )
    return WorkloadSpec(
        name=workload.get("name") or default_name, replicas=replicas, port=port
    )


def parse_strategy(strategy: dict) -> UpgradeStrategy:
    """Parse and validate the upgradeStrategy section. Each variant declares
    which payloads it requires or rejects.
    """
    type_name = strategy.get("type", StrategyType.ROLLING.value)
    valid_types = [typ.value for typ in StrategyType]
    assert_config(
        type_name in valid_types,
        f"spec.upgradeStrategy.type must be one of {valid_types}",
    )
    strategy_type = StrategyType(type_name)

    rollback_enabled = strategy.get("rollbackEnabled", config.rollback_enabled)
    assert_config(
        isinstance(rollback_enabled, bool),
        "spec.upgradeStrategy.rollbackEnabled must be a boolean",
    )

    migration = None
    if strategy.get("migration") is not None:
        migration = parse_migration(strategy["migration"])
    health_check = None
    if strategy.get("healthCheck") is not None:
        health_check = parse_health_check(strategy["healthCheck"])
    canary = None
    if strategy.get("canary") is not None:
        canary = parse_canary(strategy["canary"])

    if strategy_type == StrategyType.ROLLING_WITH_MIGRATION:
        assert_config(
            migration is not None,
            "spec.upgradeStrategy.migration is required for RollingWithMigration",
        )
    if strategy_type != StrategyType.CANARY:
        assert_config(
            canary is None or not canary.steps,
            f"spec.upgradeStrategy.canary is not supported for {type_name}",
        )

    return UpgradeStrategy(
        type=strategy_type,
        rollback_enabled=rollback_enabled,
        migration=migration,
        health_check=health_check,
        canary=canary,
    )


def parse_migration(migration: dict) -> MigrationTaskSpec:
    """Parse the migration task section"""
    assert_config(
        isinstance(migration, dict), "spec.upgradeStrategy.migration must be a map"
    )
    image = migration.get("image")
    assert_config(
        isinstance(image, str) and image,
        "spec.upgradeStrategy.migration.image is required",
    )
    command = migration.get("command") or []
    assert_config(
        isinstance(command, list) and all(isinstance(arg, str) for arg in command),
        "spec.upgradeStrategy.migration.command must be a list of strings",
    )
    backoff_limit = migration.get("backoffLimit", 0)
    assert_config(
        _is_int(backoff_limit) and backoff_limit >= 0,
        "spec.upgradeStrategy.migration.backoffLimit must be a non-negative integer",
    )
    return MigrationTaskSpec(
        image=image, command=tuple(command), backoff_limit=backoff_limit
    )


def parse_health_check(health_check: dict) -> HealthCheckSpec:
    """Parse the health check section, filling omitted fields from config"""
    assert_config(
        isinstance(health_check, dict),
        "spec.upgradeStrategy.healthCheck must be a map",
    )
    endpoint = health_check.get("endpoint")
    assert_config(
        isinstance(endpoint, str) and endpoint,
        "spec.upgradeStrategy.healthCheck.endpoint is required",
    )
    defaults = config.health_check
    values = {
        "initial_delay_seconds": (
            health_check.get("initialDelaySeconds", defaults.initial_delay_seconds),
            0,
        ),
        "period_seconds": (
            health_check.get("periodSeconds", defaults.period_seconds),
            1,
        ),
        "success_threshold": (
            health_check.get("successThreshold", defaults.success_threshold),
            1,
        ),
        "failure_threshold": (
            health_check.get("failureThreshold", defaults.failure_threshold),
            1,
        ),
    }
    for key, (val, minimum) in values.items():
        assert_config(
            _is_int(val) and val >= minimum,
            f"spec.upgradeStrategy.healthCheck.{key} must be an integer >= {minimum}",
        )
    timeout = health_check.get("timeoutSeconds", config.probe_timeout_seconds)
    assert_config(
        isinstance(timeout, (int, float))
        and not isinstance(timeout, bool)
        and timeout > 0,
        "spec.upgradeStrategy.healthCheck.timeoutSeconds must be positive",
    )
    return HealthCheckSpec(
        endpoint=endpoint,
        timeout_seconds=timeout,
        **{key: val for key, (val, _) in values.items()},
    )


def parse_canary(canary: dict) -> CanarySpec:
    """Parse the canary section and validate the step sequence as a whole"""
    assert_config(isinstance(canary, dict), "spec.upgradeStrategy.canary must be a map")
    raw_steps = canary.get("steps") or []
    assert_config(
        isinstance(raw_steps, list), "spec.upgradeStrategy.canary.steps must be a list"
    )
    steps = []
    for idx, raw_step in enumerate(raw_steps):
        assert_config(
            isinstance(raw_step, dict),
            f"spec.upgradeStrategy.canary.steps[{idx}] must be a map",
        )
        steps.append(
            CanaryStep(
                weight=raw_step.get("weight"),
                pause_seconds=raw_step.get("pauseSeconds", 0),
            )
        )
    validate_canary_steps(steps)
    return CanarySpec(steps=tuple(steps))


def validate_canary_steps(steps: List[CanaryStep]):
    """Validate a canary step sequence: every weight in 1..100, every pause
    non-negative, weights non-decreasing and the final weight exactly 100. An
    empty sequence is valid.

    Raises:
        ConfigError: If the sequence is malformed
    """
    for idx, step in enumerate(steps):
        assert_config(
            _is_int(step.weight) and 1 <= step.weight <= 100,
            f"canary step {idx}: weight must be an integer in 1..100",
        )
        assert_config(
            _is_int(step.pause_seconds) and step.pause_seconds >= 0,
            f"canary step {idx}: pauseSeconds must be a non-negative integer",
        )
        if idx > 0:
            assert_config(
                step.weight >= steps[idx - 1].weight,
                f"canary step {idx}: weights must be non-decreasing "
                f"({steps[idx - 1].weight} -> {step.weight})",
            )
    if steps:
        assert_config(
            steps[-1].weight == 100,
            f"the final canary step must have weight 100, got {steps[-1].weight}",
        )


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
