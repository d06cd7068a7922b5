"""
This DeployManager is responsible for delegating cluster operations to the
openshift library. It is the one that will be used when the orchestrator is
running in the cluster or with a kubeconfig.
"""

# Standard
from typing import Callable, List, Optional, Tuple
import threading
import time

# Third Party
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from openshift.dynamic.resource import Resource
import kubernetes

# First Party
import alog

# Local
from .. import config
from ..exceptions import StatusConflictError, assert_cluster
from .base import DeployManagerBase
from .owner_references import update_owner_references

log = alog.use_channel("OSFTD")


class OpenshiftDeployManager(DeployManagerBase):
    """This DeployManager uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, owner_cr: Optional[dict] = None, client=None):
        """
        Args:
            owner_cr:  Optional[dict]
                The dict content of the ManagedApplication being reconciled. If
                given, deployed objects will have an ownerReference added to
                assign ownership to this CR instance.
            client:  Optional[DynamicClient]
                A preconfigured client. If not given, one is created lazily
                from the in-cluster or kubeconfig credentials.
        """
        self._owner_cr = owner_cr
        self._client = client

        # Status writes for the same resource from concurrent threads are
        # serialized to avoid needless 409 Conflicts
        self._status_lock = threading.Lock()

    @property
    def client(self):
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    @alog.logged_function(log.debug)
    def deploy(
        self,
        resource_definitions: List[dict],
        manage_owner_references: bool = True,
        **_,
    ) -> Tuple[bool, bool]:
        """Deploy using server-side apply

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to apply to the cluster
            manage_owner_references:  bool
                If true, ownerReferences for the parent CR will be applied to
                the deployed object

        Returns:
            success:  bool
                True if deploy succeeded, False otherwise
            changed:  bool
                Whether or not the deployment resulted in changes
        """
        if manage_owner_references and self._owner_cr:
            for resource_definition in resource_definitions:
                update_owner_references(self, self._owner_cr, resource_definition)
        return self._retried_operation(resource_definitions, self._apply)

    @alog.logged_function(log.debug)
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """Delete each of the given resources if present

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to delete

        Returns:
            success:  bool
                True if the delete succeeded, False otherwise
            changed:  bool
                Whether or not the delete resulted in changes
        """
        return self._retried_operation(resource_definitions, self._disable)

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Fetch the current state of an object with a direct api call

        Args:
            kind:  str
                The kind of the object ot fetch
            name:  str
                The full name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object or None for no namespace
            api_version:  Optional[str]
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, None
        if not namespace:
            resources.namespaced = False

        try:
            resource = resources.get(name=name, namespace=namespace)
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, None
        except NotFoundError:
            log.debug(
                "No object named [%s/%s] found in namespace [%s]", kind, name, namespace
            )
            return True, None
        return True, resource.to_dict()

    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Replace the status subresource of an object. When resource_version is
        given it is sent with the write so the server rejects stale updates;
        such a rejection is raised as a StatusConflictError and never retried
        here.

        Returns:
            success:  bool
                Whether or not the status update operation succeeded
            changed:  bool
                Whether or not the status update resulted in a change
        """
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle, f"Failed to fetch resource handle for {api_version}/{kind}"
        )
        if not namespace:
            resource_handle.namespaced = False

        with self._status_lock:
            try:
                resource = resource_handle.get(name=name, namespace=namespace).to_dict()
            except NotFoundError:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False

            current_version = resource.get("metadata", {}).get("resourceVersion")
            if resource_version is not None and resource_version != current_version:
                raise StatusConflictError(
                    f"Stale status write for {kind}/{name}",
                    version_token=current_version,
                )
            if resource.get("status") == status:
                log.debug("Status has not changed. No update")
                return True, False

            resource["status"] = status
            try:
                resource_handle.status.replace(body=resource)
            except ConflictError as err:
                raise StatusConflictError(
                    f"Conflict writing status for {kind}/{name}: {err}"
                ) from err
            log.debug2(
                "Successfully set the status for [%s/%s] in %s", kind, name, namespace
            )
            return True, True

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client():
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            return DynamicClient(kubernetes.client.ApiClient(kube_config))
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(
        self, kind: str, api_version: Optional[str]
    ) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        try:
            return self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            log.debug(
                "No objects of kind [%s] found or multiple objects matching request found",
                kind,
            )
            return None

    def _retried_operation(
        self,
        resource_definitions: List[dict],
        operation: Callable[[dict], bool],
    ) -> Tuple[bool, bool]:
        """Run the operation on each resource in order, retrying write conflicts
        with a linear backoff. The first failure stops processing since later
        resources may depend on earlier ones.
        """
        success = True
        changed = False
        for resource_definition in resource_definitions:
            try:
                changed = (
                    self._run_with_retries(
                        operation, resource_definition, config.deploy_retries
                    )
                    or changed
                )
            except Exception as err:  # pylint: disable=broad-except
                log.warning(
                    "Operation [%s] failed to execute: %s",
                    operation.__name__,
                    err,
                    exc_info=True,
                )
                success = False
                break
        return success, changed

    def _run_with_retries(
        self,
        operation: Callable[[dict], bool],
        resource_definition: dict,
        remaining_retries: int,
    ) -> bool:
        try:
            return operation(resource_definition)
        except ConflictError as err:
            log.debug2("Handling ConflictError: %s", err)
            if not remaining_retries:
                raise
            backoff_duration = config.retry_backoff_base_seconds * (
                config.deploy_retries - remaining_retries + 1
            )
            log.debug3("Retrying in %fs", backoff_duration)
            time.sleep(backoff_duration)
            return self._run_with_retries(
                operation, resource_definition, remaining_retries - 1
            )

    def _apply(self, resource_definition: dict) -> bool:
        """Server-side apply a single resource, forcing ownership of any fields
        another manager holds

        Returns:
            changed:  bool
                Whether or not the apply changed the object's resourceVersion
        """
        api_version = resource_definition.get("apiVersion")
        kind = resource_definition.get("kind")
        metadata = resource_definition.setdefault("metadata", {})
        name = metadata.get("name")
        namespace = metadata.get("namespace")

        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle,
            f"Failed to fetch resource handle for {namespace}/{api_version}/{kind}",
        )
        success, current = self.get_object_current_state(
            kind=kind, name=name, namespace=namespace, api_version=api_version
        )
        assert_cluster(
            success, f"Failed to fetch current state for {api_version}/{kind}/{name}"
        )

        # The server owns these fields
        metadata.pop("resourceVersion", None)
        metadata["managedFields"] = None

        log.debug2(
            "Attempting to apply [%s/%s/%s] in %s", api_version, kind, name, namespace
        )
        applied = resource_handle.server_side_apply(
            resource_definition,
            name=name,
            namespace=namespace,
            field_manager=config.field_manager,
            force_conflicts=True,
        ).to_dict()
        old_version = (current or {}).get("metadata", {}).get("resourceVersion")
        return applied.get("metadata", {}).get("resourceVersion") != old_version

    def _disable(self, resource_definition: dict) -> bool:
        """Delete a single resource if it exists

        Returns:
            changed:  bool
                Whether or not a resource was deleted
        """
        api_version = resource_definition.get("apiVersion")
        kind = resource_definition.get("kind")
        metadata = resource_definition.get("metadata", {})
        name = metadata.get("name")
        namespace = metadata.get("namespace")

        try:
            resource_handle = self.client.resources.get(
                api_version=api_version, kind=kind
            )
            if not namespace:
                resource_handle.namespaced = False
            log.debug2(
                "Attempting to delete [%s/%s/%s] from %s",
                api_version,
                kind,
                name,
                namespace,
            )
            resource_handle.delete(name=name, namespace=namespace)
            return True

        # If the kind or instance is not found, that's a success without change
        except (ResourceNotFoundError, NotFoundError) as err:
            log.debug2("Valid error caught when disabling [%s/%s]: %s", kind, name, err)
            return False
