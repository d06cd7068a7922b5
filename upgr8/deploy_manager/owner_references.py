"""
Helpers used by the DeployManager implementations to attach ownerReferences
for the owning ManagedApplication to every rollout artifact
"""

# First Party
import alog

# Local
from ..exceptions import assert_cluster
from .base import DeployManagerBase

log = alog.use_channel("OWNRF")


def update_owner_references(
    deploy_manager: DeployManagerBase,
    owner_cr: dict,
    child_obj: dict,
):
    """Merge a reference to owner_cr into the ownerReferences of child_obj,
    keeping any references already present on the object in the cluster. The
    child object is modified in place.

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used to look up the child's current state
        owner_cr:  dict
            The full manifest of the owning ManagedApplication
        child_obj:  dict
            The manifest about to be applied
    """
    _validate_object_struct(owner_cr)
    _validate_object_struct(child_obj)

    metadata = child_obj["metadata"]
    owner_uid = owner_cr["metadata"].get("uid")
    if owner_uid is None or owner_uid == metadata.get("uid"):
        log.debug2("No owner uid or owner is the child. Skipping owner refs")
        return
    if metadata["namespace"] != owner_cr["metadata"]["namespace"]:
        log.debug2("Cross-namespace ownership is not allowed. Skipping owner refs")
        return

    success, content = deploy_manager.get_object_current_state(
        kind=child_obj["kind"],
        name=metadata["name"],
        namespace=metadata["namespace"],
        api_version=child_obj["apiVersion"],
    )
    assert_cluster(
        success,
        f"Failed to fetch current state of {child_obj['kind']}/{metadata['name']}",
    )
    owner_refs = list(metadata.get("ownerReferences") or [])
    if content is not None:
        owner_refs.extend(
            ref
            for ref in content.get("metadata", {}).get("ownerReferences", [])
            if ref.get("uid") not in [known.get("uid") for known in owner_refs]
        )

    if owner_uid not in [ref.get("uid") for ref in owner_refs]:
        log.debug2(
            "Adding owner reference to %s/%s", child_obj["kind"], metadata["name"]
        )
        owner_refs.append(make_owner_reference(owner_cr))
    metadata["ownerReferences"] = owner_refs


def make_owner_reference(owner_cr: dict) -> dict:
    """Make the metadata.ownerReferences entry pointing at owner_cr. The
    controller flag is left unset since only adoption uses it.
    """
    metadata = owner_cr.get("metadata", {})
    return {
        "apiVersion": owner_cr.get("apiVersion"),
        "kind": owner_cr.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "blockOwnerDeletion": True,
    }


def _validate_object_struct(obj: dict):
    assert "kind" in obj, "Got object without 'kind'"
    assert "apiVersion" in obj, "Got object without 'apiVersion'"
    metadata = obj.get("metadata")
    assert isinstance(metadata, dict), "Got object with non-dict 'metadata'"
    assert "name" in metadata, "Got object without 'metadata.name'"
    assert "namespace" in metadata, "Got object without 'metadata.namespace'"
