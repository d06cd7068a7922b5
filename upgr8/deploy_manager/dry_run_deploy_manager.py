"""
The DryRunDeployManager implements the DeployManager interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map.
"""

# Standard
from datetime import datetime
from threading import RLock
from typing import List, Optional
import copy
import itertools
import uuid

# First Party
import alog

# Local
from ..exceptions import StatusConflictError
from ..utils import merge_configs
from .base import DeployManagerBase
from .owner_references import update_owner_references

log = alog.use_channel("DRY-RUN")


class DryRunDeployManager(DeployManagerBase):
    """
    Deploy manager which doesn't actually deploy!

    Deploys behave like an apply: the given manifest is merged onto the
    existing object (lists are replaced). Every write bumps a monotonically
    increasing metadata.resourceVersion so that optimistic concurrency on
    status writes can be exercised without a cluster.
    """

    def __init__(self, resources: Optional[List[dict]] = None, owner_cr=None):
        """
        Args:
            resources:  Optional[List[dict]]
                Resources to preload into the in-memory cluster
            owner_cr:  Optional[dict]
                If given, deployed objects get an ownerReference to this CR
        """
        self._owner_cr = owner_cr
        self._cluster_content = {}
        self._lock = RLock()
        self._resource_versions = itertools.count(1)

        self._deploy(resources or [], manage_owner_references=False)

    ## Interface ###############################################################

    def deploy(self, resource_definitions, manage_owner_references=True, **_):
        log.info("DRY RUN deploy")
        return self._deploy(
            resource_definitions, manage_owner_references=manage_owner_references
        )

    def disable(self, resource_definitions):
        log.info("DRY RUN disable")
        changed = False
        for resource in resource_definitions:
            api_version, kind, name, namespace = _identifiers(resource)
            with self._lock:
                current = self._entries(namespace, kind, api_version).get(name)
                if current is None:
                    continue
                changed = True
                metadata = current.setdefault("metadata", {})
                if metadata.get("finalizers"):
                    log.debug2(
                        "Marking [%s/%s] for deletion pending finalizers", kind, name
                    )
                    metadata.setdefault(
                        "deletionTimestamp",
                        datetime.now().strftime("%Y-%m-%dT%H:%M:%SZ"),
                    )
                    metadata["resourceVersion"] = self._next_resource_version()
                else:
                    self._delete_key(namespace, kind, api_version, name)
        return True, changed

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )
        with self._lock:
            matches = [
                entries[name]
                for api_ver, entries in self._cluster_content.get(namespace, {})
                .get(kind, {})
                .items()
                if name in entries and api_version in [None, api_ver]
            ]
        if len(matches) == 1:
            return True, copy.deepcopy(matches[0])
        return True, None

    def set_status(
        self,
        kind,
        name,
        namespace,
        status,
        api_version=None,
        resource_version=None,
    ):  # pylint: disable=too-many-arguments
        log.info(
            "DRY RUN set_status of [%s.%s/%s] in %s", api_version, kind, name, namespace
        )
        log.debug4("Status: %s", status)
        with self._lock:
            success, current = self.get_object_current_state(
                kind, name, namespace, api_version
            )
            if not success or current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False

            current_version = current.get("metadata", {}).get("resourceVersion")
            if resource_version is not None and resource_version != current_version:
                raise StatusConflictError(
                    f"Stale status write for {kind}/{name}: "
                    f"{resource_version} != {current_version}",
                    version_token=current_version,
                )

            if current.get("status") == status:
                return True, False
            api_version = current.get("apiVersion")
            stored = self._entries(namespace, kind, api_version)[name]
            stored["status"] = copy.deepcopy(status)
            stored["metadata"]["resourceVersion"] = self._next_resource_version()
            return True, True

    ## Implementation Details ##################################################

    def _next_resource_version(self) -> str:
        return str(next(self._resource_versions))

    def _entries(self, namespace, kind, api_version) -> dict:
        return (
            self._cluster_content.setdefault(namespace, {})
            .setdefault(kind, {})
            .setdefault(api_version, {})
        )

    def _delete_key(self, namespace, kind, api_version, name):
        del self._cluster_content[namespace][kind][api_version][name]
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]

    def _deploy(self, resource_definitions, manage_owner_references=True):
        changes = False
        for resource in resource_definitions:
            resource = copy.deepcopy(resource)
            api_version, kind, name, namespace = _identifiers(resource)
            log.debug(
                "DRY RUN deploy [%s/%s/%s/%s]", namespace, kind, api_version, name
            )
            log.debug4(resource)

            if self._owner_cr and manage_owner_references:
                log.debug2("Adding dry-run owner references")
                update_owner_references(self, self._owner_cr, resource)

            with self._lock:
                entries = self._entries(namespace, kind, api_version)
                current = entries.get(name)
                resource.setdefault("metadata", {}).pop("resourceVersion", None)
                comparable = copy.deepcopy(current or {})
                comparable.get("metadata", {}).pop("resourceVersion", None)
                if current is None:
                    updated = resource
                    updated["metadata"].setdefault(
                        "creationTimestamp", datetime.now().isoformat()
                    )
                    updated["metadata"].setdefault("uid", str(uuid.uuid4()))
                else:
                    updated = merge_configs(copy.deepcopy(comparable), resource)

                if comparable == updated:
                    continue

                changes = True
                updated["metadata"]["resourceVersion"] = self._next_resource_version()
                entries[name] = updated

                # An object marked for deletion goes away once its finalizers
                # are cleared
                metadata = updated["metadata"]
                if metadata.get("deletionTimestamp") and not metadata.get(
                    "finalizers"
                ):
                    log.debug2("Finalizers cleared for [%s/%s]. Deleting", kind, name)
                    self._delete_key(namespace, kind, api_version, name)

        return True, changes


def _identifiers(resource: dict):
    metadata = resource.get("metadata", {})
    return (
        resource.get("apiVersion"),
        resource.get("kind"),
        metadata.get("name"),
        metadata.get("namespace"),
    )
