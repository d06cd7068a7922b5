"""
Package exports
"""

# Local
from . import config, constants, exceptions, status
from .application import (
    CanaryStep,
    HealthCheckSpec,
    ManagedApplication,
    MigrationTaskSpec,
    StrategyType,
    UpgradeStrategy,
)
from .canary import CanaryController
from .deploy_manager import DeployManagerBase
from .exceptions import assert_cluster, assert_config, assert_precondition
from .health_gate import HealthGate
from .migration import MigrationRunner
from .reconcile import ReconcileManager, ReconciliationResult
from .rollback import RollbackManager
from .scheduler import ReconcileScheduler
from .state_machine import StepResult, UpgradeStateMachine
