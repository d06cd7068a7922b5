"""
This defines the base class for all DeployManager types. A DeployManager is the
only path by which upgr8 touches the cluster.
"""

# Standard
from typing import List, Optional, Tuple
import abc


class DeployManagerBase(abc.ABC):
    """
    Base class for deploy managers which are responsible for applying, deleting
    and reading objects in the cluster on behalf of a ManagedApplication
    """

    @abc.abstractmethod
    def deploy(
        self,
        resource_definitions: List[dict],
        manage_owner_references: bool = True,
    ) -> Tuple[bool, bool]:
        """Ensure that the resources defined in the list of definitions are
        present in the cluster with the given content

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts to apply to the cluster
            manage_owner_references:  bool
                If true, ownerReferences for the owning ManagedApplication will
                be applied to the deployed object

        Returns:
            success:  bool
                Whether or not the deploy succeeded
            changed:  bool
                Whether or not the deployment resulted in changes
        """

    @abc.abstractmethod
    def disable(self, resource_definitions: List[dict]) -> Tuple[bool, bool]:
        """Ensure that the resources defined in the list of definitions are
        deleted from the cluster. Missing resources are a success without
        change.

        Args:
            resource_definitions:  list(dict)
                List of resource object dicts identifying what to delete

        Returns:
            success:  bool
                Whether or not the delete succeeded
            changed:  bool
                Whether or not the delete resulted in changes
        """

    @abc.abstractmethod
    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Fetch the current state of a given object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The full name of the object to fetch
            namespace:  str
                The namespace to search for the object
            api_version:  str
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  dict or None
                The dict representation of the current object's configuration,
                or None if not present
        """

    @abc.abstractmethod
    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
        resource_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Set the status for an object managed by upgr8. When a
        resource_version is given, the write is only accepted if it matches the
        object's current metadata.resourceVersion.

        Args:
            kind:  str
                The kind of the object to update
            name:  str
                The full name of the object to update
            namespace:  Optional[str]
                The namespace of the object
            status:  dict
                The status object to set onto the given object
            api_version:  str
                The api_version of the resource to update
            resource_version:  Optional[str]
                The version token from the read the status is based on

        Returns:
            success:  bool
                Whether or not the status update operation succeeded
            changed:  bool
                Whether or not the status update resulted in a change

        Raises:
            StatusConflictError: If resource_version is stale
        """
