"""
The ReconcileManager class manages an individual reconcile of a
ManagedApplication. It parses the resource, wires the collaborators for this
resource, runs one step of the upgrade state machine and persists the result.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, Union
import base64
import logging
import uuid

# First Party
import aconfig
import alog

# Local
from . import config, constants, status
from .application import ManagedApplication
from .clients.base import HealthProbeClientBase, StatusStoreBase
from .clients.http_probe import HttpProbeClient
from .clients.kube import KubeStatusStore, KubeTaskLauncher, KubeWorkloadManager
from .deploy_manager import (
    DeployManagerBase,
    DryRunDeployManager,
    OpenshiftDeployManager,
)
from .exceptions import ClusterError, ConfigError, StatusConflictError
from .log_format import Upgr8JsonFormatter
from .state_machine import UpgradeStateMachine
from .utils import add_finalizer, capped_backoff, remove_finalizer

log = alog.use_channel("RECONCILE")


## Data models #################################################################


@dataclass
class RequeueParams:
    """RequeueParams holds parameters for requeue request"""

    requeue_after: timedelta = field(
        default_factory=lambda: timedelta(
            seconds=float(config.requeue_after_seconds)
        )
    )


@dataclass
class ReconciliationResult:
    """ReconciliationResult is the result of a reconciliation session"""

    # Flag to control requeue of current reconcile request
    requeue: bool
    # Parameters for requeue request
    requeue_params: RequeueParams = field(default_factory=RequeueParams)
    # Flag to identify if the reconciliation raised an exception
    exception: Exception = None


# Factory building the state machine for one reconcile of one application
STATE_MACHINE_FACTORY = Callable[
    [ManagedApplication, DeployManagerBase], UpgradeStateMachine
]

## ReconcileManager ############################################################


class ReconcileManager:
    """This class manages reconciliations of ManagedApplications. Its primary
    function is to run one state machine step given a resource manifest and
    the current cluster state via a DeployManager.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        deploy_manager: Optional[DeployManagerBase] = None,
        status_store: Optional[StatusStoreBase] = None,
        probe_client: Optional[HealthProbeClientBase] = None,
        state_machine_factory: Optional[STATE_MACHINE_FACTORY] = None,
        clock: Optional[Callable[[], datetime]] = None,
        finalizer: Optional[str] = None,
    ):
        """The constructor sets up the properties used across every
        reconcile.

        Args:
            deploy_manager:  Optional[DeployManagerBase]
                Deploy manager to use. If not given, a new DeployManager will
                be created for each reconcile.
            status_store:  Optional[StatusStoreBase]
                Store for the status subtree. If not given, the status
                subresource is used through the deploy manager.
            probe_client:  Optional[HealthProbeClientBase]
                Client used by the health gate (defaults to HTTP)
            state_machine_factory:  Optional[STATE_MACHINE_FACTORY]
                Builds the state machine for a reconcile. If not given, the
                kubernetes collaborators are used.
            clock:  Optional[Callable[[], datetime]]
                Source of the current time
            finalizer:  Optional[str]
                The finalizer gating deletion (defaults to config)
        """
        self.deploy_manager = deploy_manager
        self.status_store = status_store
        self.probe_client = probe_client or HttpProbeClient()
        self.state_machine_factory = state_machine_factory
        self.clock = clock or datetime.now
        self.finalizer = finalizer or config.finalizer_name

    ## Reconciliation ##########################################################

    @alog.logged_function(log.info)
    @alog.timed_function(log.info, "Reconcile finished in: ")
    def reconcile(
        self, resource: Union[dict, aconfig.Config]
    ) -> ReconciliationResult:
        """This is the main entrypoint for reconciliations. The general
        reconcile path is as follows:

            1. Parse the raw manifest and set up logging
            2. Re-read the resource, its status and its version token
            3. Run the cleanup hook if the resource is being deleted, otherwise
               make sure the finalizer is registered
            4. Parse and validate the application spec
            5. Run one step of the state machine
            6. Persist the new status if it changed

        Args:
            resource:  Union[dict, aconfig.Config]
                A raw representation of the resource to be reconciled. Only
                its identity and logging annotations are used; the spec is
                re-read from the cluster.

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile

        Raises:
            StatusConflictError: If the resource changed since it was read
        """
        cr_manifest = self.parse_manifest(resource)
        reconcile_id = self.generate_id()
        self.configure_logging(cr_manifest, reconcile_id)

        deploy_manager = self.setup_deploy_manager(cr_manifest)
        status_store = self.setup_status_store(deploy_manager, cr_manifest)
        app_id = self.get_app_id(cr_manifest)

        # The request may carry an older copy of the resource
        cr_manifest, current_status, version_token = self.read_current_state(
            deploy_manager, status_store, cr_manifest
        )
        if cr_manifest is None:
            log.info("%s no longer exists. Nothing to do", app_id)
            return ReconciliationResult(requeue=False)

        if cr_manifest.get("metadata", {}).get("deletionTimestamp"):
            return self.finalize(cr_manifest, deploy_manager, current_status)

        if add_finalizer(deploy_manager, cr_manifest, self.finalizer):
            cr_manifest, current_status, version_token = self.read_current_state(
                deploy_manager, status_store, cr_manifest
            )
            if cr_manifest is None:
                log.info("%s was removed while adding the finalizer", app_id)
                return ReconciliationResult(requeue=False)

        try:
            app = ManagedApplication.from_manifest(cr_manifest)
        except ConfigError as err:
            log.warning("Invalid configuration for %s: %s", app_id, err)
            new_status = status.copy_status(current_status)
            status.set_condition(
                new_status,
                status.CONFIG_CONDITION,
                False,
                status.Reason.INVALID_CONFIG,
                str(err),
                now=self.clock(),
            )
            self._write_status(
                status_store, app_id, current_status, new_status, version_token
            )
            return ReconciliationResult(requeue=False, exception=err)

        state_machine = self.setup_state_machine(app, deploy_manager)
        result = state_machine.step(app, current_status)
        new_status = result.status
        self._clear_errors(new_status)
        self._write_status(
            status_store, app_id, current_status, new_status, version_token
        )

        log.info(
            "%s is %s (requeue after %s)",
            app_id,
            result.phase.value,
            result.requeue_after,
        )
        if result.requeue_after is None:
            return ReconciliationResult(requeue=False)
        return ReconciliationResult(
            requeue=True,
            requeue_params=RequeueParams(requeue_after=result.requeue_after),
        )

    def safe_reconcile(
        self, resource: Union[dict, aconfig.Config]
    ) -> ReconciliationResult:
        """This function calls out to reconcile but catches any errors thrown.
        This function guarantees a safe result which is needed by the
        scheduler.

        Args:
            resource:  Union[dict, aconfig.Config]
                A raw representation of the resource to be reconciled

        Returns:
            reconcile_result:  ReconciliationResult
                The result of the reconcile
        """
        try:
            return self.reconcile(resource)

        # A stale status write is expected under concurrent edits. Re-read
        # and retry shortly without recording an error.
        except StatusConflictError as exc:
            log.info("Status conflict during reconcile. Requeueing: %s", exc)
            return ReconciliationResult(
                requeue=True,
                requeue_params=RequeueParams(
                    requeue_after=timedelta(
                        seconds=float(config.conflict_requeue_seconds)
                    )
                ),
                exception=exc,
            )

        # Capture all generic exceptions
        except Exception as exc:  # pylint: disable=broad-except
            log.warning("Handling caught error in reconcile: %s", exc, exc_info=True)
            error = exc

        error_count = 1
        try:
            error_count = self._update_error_status(resource, error)
            log.debug("Updated status with error message")
        except Exception as exc:  # pylint: disable=broad-except
            log.error("Failed to update status: %s", exc, exc_info=True)

        backoff = capped_backoff(error_count)
        log.info("Requeuing resource in %s due to error during reconcile", backoff)
        return ReconciliationResult(
            requeue=True,
            requeue_params=RequeueParams(requeue_after=backoff),
            exception=error,
        )

    def finalize(
        self,
        cr_manifest: aconfig.Config,
        deploy_manager: DeployManagerBase,
        current_status: Optional[dict],
    ) -> ReconciliationResult:
        """Tear down the in-flight rollout artifacts of a deleted application
        and release the finalizer. The finalizer is only removed once cleanup
        succeeded.

        Raises:
            ClusterError: If cleanup failed and must be retried
        """
        finalizers = cr_manifest.get("metadata", {}).get("finalizers") or []
        if self.finalizer not in finalizers:
            log.debug("Finalizer already released")
            return ReconciliationResult(requeue=False)

        try:
            app = ManagedApplication.from_manifest(cr_manifest)
        except ConfigError as err:
            # Nothing was ever rolled out for an invalid spec that the owner
            # references won't collect
            log.warning("Skipping cleanup of invalid application: %s", err)
            app = None

        if app is not None:
            log.info("Cleaning up rollout artifacts of %s", app.app_id)
            state_machine = self.setup_state_machine(app, deploy_manager)
            current_status = current_status or {}
            if app.strategy.uses_canary_workload or current_status.get(
                status.CANARY_WEIGHT
            ):
                state_machine.workload_manager.delete_canary(app.workload.name)
            attempted = current_status.get(status.ATTEMPTED_VERSION)
            if attempted and (
                app.strategy.migration or current_status.get(status.MIGRATION_TASK)
            ):
                state_machine.migration_runner.cleanup(app, attempted)

        remove_finalizer(deploy_manager, cr_manifest, self.finalizer)
        return ReconciliationResult(requeue=False)

    ## Reconciliation Stages ###################################################

    @classmethod
    def parse_manifest(cls, resource: Union[dict, aconfig.Config]) -> aconfig.Config:
        """Parse a raw resource into an aconfig Config

        Args:
            resource: Union[dict, aconfig.Config])
                The resource to be parsed into a manifest

        Returns
            cr_manifest: aconfig.Config
                The parsed config
        """
        try:
            cr_manifest = aconfig.Config(resource, override_env_vars=False)
        except (ValueError, SyntaxError, AttributeError) as exc:
            raise ValueError("Failed to parse resource") from exc
        return cr_manifest

    @classmethod
    def configure_logging(cls, cr_manifest: aconfig.Config, reconciliation_id: str):
        """Configure the logging for a given reconcile from the config with
        overrides from the resource's annotations

        Args:
            cr_manifest: aconfig.Config
                The resource to get annotation overrides from
            reconciliation_id: str
                The unique id for the reconciliation
        """
        annotations = cr_manifest.get("metadata", {}).get("annotations", {}) or {}
        default_level = annotations.get(
            constants.LOG_DEFAULT_LEVEL_NAME, config.log_level
        )
        filters = annotations.get(constants.LOG_FILTERS_NAME, config.log_filters)
        log_json = annotations.get(constants.LOG_JSON_NAME, str(config.log_json))
        log_thread_id = annotations.get(
            constants.LOG_THREAD_ID_NAME, str(config.log_thread_id)
        )

        # Convert boolean args
        log_json = (log_json or "").lower() == "true"
        log_thread_id = (log_thread_id or "").lower() == "true"

        # Keep the old handler so that any handler configured by the host
        # process is preserved
        handler_generator = None
        if logging.root.handlers:
            old_handler = logging.root.handlers[0]

            def handler_generator():
                return old_handler

        alog.configure(
            default_level=default_level,
            filters=filters,
            formatter=Upgr8JsonFormatter(cr_manifest, reconciliation_id)
            if log_json
            else "pretty",
            thread_id=log_thread_id,
            handler_generator=handler_generator,
        )

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for this reconciliation

        Returns:
            id: str
                A unique base32 encoded id
        """
        base32_str = base64.b32encode(uuid.uuid4().bytes).decode("utf-8")
        reconcile_id = base32_str[:22]
        log.debug("Generated reconcile id: %s", reconcile_id)
        return reconcile_id

    @staticmethod
    def get_app_id(cr_manifest: aconfig.Config) -> str:
        """The <namespace>/<name> identity of the resource"""
        metadata = cr_manifest.get("metadata", {})
        namespace = metadata.get("namespace") or constants.DEFAULT_NAMESPACE
        return f"{namespace}/{metadata.get('name')}"

    def setup_deploy_manager(self, cr_manifest: aconfig.Config) -> DeployManagerBase:
        """Configure a deploy_manager for a reconcile given a manifest

        Args:
            cr_manifest: aconfig.Config
                The resource to be used as an owner_ref

        Returns:
            deploy_manager: DeployManagerBase
                The deploy_manager to be used during reconcile
        """
        if self.deploy_manager:
            return self.deploy_manager

        if config.dry_run:
            log.debug("Using DryRunDeployManager")
            return DryRunDeployManager(resources=[cr_manifest], owner_cr=cr_manifest)

        log.debug("Using OpenshiftDeployManager")
        return OpenshiftDeployManager(owner_cr=cr_manifest)

    def setup_status_store(
        self, deploy_manager: DeployManagerBase, cr_manifest: aconfig.Config
    ) -> StatusStoreBase:
        """Get the status store for the resource being reconciled"""
        if self.status_store:
            return self.status_store
        return KubeStatusStore(
            deploy_manager,
            api_version=cr_manifest.get("apiVersion"),
            kind=cr_manifest.get("kind"),
        )

    def read_current_state(
        self,
        deploy_manager: DeployManagerBase,
        status_store: StatusStoreBase,
        cr_manifest: aconfig.Config,
    ) -> Tuple[Optional[aconfig.Config], Optional[dict], Optional[str]]:
        """Read the latest copy of the resource along with its status and the
        version token of that same read

        Returns:
            cr_manifest:  Optional[aconfig.Config]
                The latest manifest (None if the resource is gone)
            current_status:  Optional[dict]
                The persisted status
            version_token:  Optional[str]
                The token to write the status with

        Raises:
            ClusterError: If the resource could not be read
        """
        metadata = cr_manifest.get("metadata", {})
        app_id = self.get_app_id(cr_manifest)
        success, content = deploy_manager.get_object_current_state(
            kind=cr_manifest.get("kind"),
            name=metadata.get("name"),
            namespace=metadata.get("namespace") or constants.DEFAULT_NAMESPACE,
            api_version=cr_manifest.get("apiVersion"),
        )
        if not success:
            raise ClusterError(f"Failed to read {app_id}")
        if content is None:
            return None, None, None

        latest = self.parse_manifest(content)
        latest_version = latest.get("metadata", {}).get("resourceVersion")
        if metadata.get("resourceVersion") != latest_version:
            log.debug(
                "Reconciling %s at resourceVersion %s instead of %s",
                app_id,
                latest_version,
                metadata.get("resourceVersion"),
            )
        current_status, version_token = status_store.read_status(app_id, content)
        return latest, current_status, version_token

    def setup_state_machine(
        self, app: ManagedApplication, deploy_manager: DeployManagerBase
    ) -> UpgradeStateMachine:
        """Build the state machine with the collaborators for this application"""
        if self.state_machine_factory:
            return self.state_machine_factory(app, deploy_manager)
        migration = app.strategy.migration
        return UpgradeStateMachine.from_collaborators(
            workload_manager=KubeWorkloadManager(deploy_manager, app),
            task_launcher=KubeTaskLauncher(
                deploy_manager,
                app,
                backoff_limit=migration.backoff_limit if migration else 0,
            ),
            probe_client=self.probe_client,
            clock=self.clock,
        )

    ## Implementation Details ##################################################

    @staticmethod
    def _write_status(
        status_store: StatusStoreBase,
        app_id: str,
        current_status: Optional[dict],
        new_status: dict,
        version_token: Optional[str],
    ):
        if not status.status_changed(current_status, new_status):
            log.debug2("No status change for %s", app_id)
            return
        log.debug3("Writing status for %s: %s", app_id, new_status)
        status_store.write_status(app_id, new_status, version_token)

    def _clear_errors(self, new_status: dict):
        """A completed step resolves any error from a previous reconcile"""
        new_status.pop(status.RECONCILE_ERRORS, None)
        if status.get_condition(status.RECONCILE_ERROR_CONDITION, new_status):
            status.set_condition(
                new_status,
                status.RECONCILE_ERROR_CONDITION,
                False,
                status.Reason.RECOVERED,
                now=self.clock(),
            )

    def _update_error_status(
        self, resource: Union[dict, aconfig.Config], error: Exception
    ) -> int:
        """Record a reconcile error on the resource. This sets up its own deploy
        manager and store so errors at any stage can still be reported.

        Returns:
            error_count:  int
                The number of consecutive reconciles that ended in an error
        """
        cr_manifest = self.parse_manifest(resource)
        deploy_manager = self.setup_deploy_manager(cr_manifest)
        status_store = self.setup_status_store(deploy_manager, cr_manifest)
        app_id = self.get_app_id(cr_manifest)

        current_status, version_token = status_store.read_status(app_id)
        if current_status is None and version_token is None:
            return 1

        if cr_manifest.get("metadata", {}).get("deletionTimestamp"):
            reason = status.Reason.CLEANUP_FAILED
        elif isinstance(error, ClusterError):
            reason = status.Reason.CLUSTER_ERROR
        else:
            reason = status.Reason.ERRORED

        new_status = status.copy_status(current_status)
        error_count = (new_status.get(status.RECONCILE_ERRORS) or 0) + 1
        new_status[status.RECONCILE_ERRORS] = error_count
        status.set_condition(
            new_status,
            status.RECONCILE_ERROR_CONDITION,
            True,
            reason,
            str(error),
            now=self.clock(),
        )
        status_store.write_status(app_id, new_status, version_token)
        return error_count
