"""Tests for the DryRunDeployManager

NOTE: The majority of the functionality is exercised by the reconcile and
    client tests, so the tests here only test elements that are particularly
    delicate and/or not covered elsewhere.
"""
# Third Party
import pytest

# First Party
import aconfig

# Local
from upgr8.deploy_manager import DryRunDeployManager
from upgr8.exceptions import StatusConflictError
from upgr8.test_helpers.helpers import TEST_NAMESPACE, setup_cr

## Helpers #####################################################################

SOME_OTHER_NAMESPACE = "other"


def make_obj(
    api_version="foo.bar/v1",
    kind="Foo",
    name="foobar",
    namespace=TEST_NAMESPACE,
    spec=None,
):
    return aconfig.Config(
        {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {"app": "foobar"},
            },
            "spec": spec or {"a": 1},
        },
        override_env_vars=False,
    )


def get_obj(dm, obj):
    success, content = dm.get_object_current_state(
        obj["kind"],
        obj["metadata"]["name"],
        obj["metadata"]["namespace"],
        obj["apiVersion"],
    )
    assert success
    return content


## Tests #######################################################################


def test_deploy_creates_and_reports_change():
    """Make sure a first deploy creates the object and a repeat is a no-op"""
    dm = DryRunDeployManager()
    obj = make_obj()
    assert dm.deploy([obj]) == (True, True)
    assert dm.deploy([obj]) == (True, False)
    content = get_obj(dm, obj)
    assert content["spec"] == {"a": 1}
    assert content["metadata"]["uid"]
    assert content["metadata"]["creationTimestamp"]


def test_deploy_merges_onto_existing():
    """Make sure a deploy behaves like an apply: dicts merge, lists replace"""
    dm = DryRunDeployManager()
    dm.deploy([make_obj(spec={"a": 1, "b": [1, 2]})])
    dm.deploy([make_obj(spec={"c": 3, "b": [3]})])
    content = get_obj(dm, make_obj())
    assert content["spec"] == {"a": 1, "b": [3], "c": 3}


def test_resource_version_increments():
    """Make sure every write bumps the resourceVersion"""
    dm = DryRunDeployManager()
    obj = make_obj()
    dm.deploy([obj])
    first = get_obj(dm, obj)["metadata"]["resourceVersion"]
    dm.deploy([make_obj(spec={"a": 2})])
    second = get_obj(dm, obj)["metadata"]["resourceVersion"]
    dm.set_status("Foo", "foobar", TEST_NAMESPACE, {"ready": True})
    third = get_obj(dm, obj)["metadata"]["resourceVersion"]
    assert int(first) < int(second) < int(third)


def test_get_missing_object():
    """Make sure a missing object is a success with no content"""
    dm = DryRunDeployManager()
    assert dm.get_object_current_state("Foo", "missing", TEST_NAMESPACE) == (
        True,
        None,
    )


def test_get_by_api_version():
    """Make sure the api_version filter distinguishes between versions"""
    dm = DryRunDeployManager()
    dm.deploy([make_obj(api_version="foo.bar/v1")])
    assert dm.get_object_current_state("Foo", "foobar", TEST_NAMESPACE)[1]
    assert not dm.get_object_current_state(
        "Foo", "foobar", TEST_NAMESPACE, "foo.bar/v2"
    )[1]


def test_objects_are_copies():
    """Make sure mutating a returned object does not change the cluster"""
    dm = DryRunDeployManager()
    obj = make_obj()
    dm.deploy([obj])
    content = get_obj(dm, obj)
    content["spec"]["a"] = 42
    assert get_obj(dm, obj)["spec"]["a"] == 1


def test_namespaces_are_isolated():
    """Make sure objects with the same name in other namespaces are distinct"""
    dm = DryRunDeployManager()
    dm.deploy([make_obj(), make_obj(namespace=SOME_OTHER_NAMESPACE, spec={"a": 2})])
    assert get_obj(dm, make_obj())["spec"]["a"] == 1
    assert get_obj(dm, make_obj(namespace=SOME_OTHER_NAMESPACE))["spec"]["a"] == 2


def test_disable():
    """Make sure disable deletes existing objects and tolerates missing ones"""
    dm = DryRunDeployManager()
    obj = make_obj()
    dm.deploy([obj])
    assert dm.disable([obj]) == (True, True)
    assert get_obj(dm, obj) is None
    assert dm.disable([obj]) == (True, False)


def test_disable_with_finalizers():
    """Make sure an object with finalizers is only marked for deletion and is
    removed once its finalizers are cleared
    """
    obj = make_obj()
    obj["metadata"]["finalizers"] = ["upgr8.example.com/finalizer"]
    dm = DryRunDeployManager([obj])
    dm.disable([obj])
    content = get_obj(dm, obj)
    assert content["metadata"]["deletionTimestamp"]

    content["metadata"]["finalizers"] = []
    dm.deploy([content], manage_owner_references=False)
    assert get_obj(dm, obj) is None


def test_set_status():
    """Make sure set_status replaces the status subtree only"""
    dm = DryRunDeployManager()
    obj = make_obj()
    dm.deploy([obj])
    assert dm.set_status("Foo", "foobar", TEST_NAMESPACE, {"x": 1}) == (True, True)
    assert dm.set_status("Foo", "foobar", TEST_NAMESPACE, {"x": 1}) == (True, False)
    assert dm.set_status("Foo", "foobar", TEST_NAMESPACE, {"y": 2}) == (True, True)
    content = get_obj(dm, obj)
    assert content["status"] == {"y": 2}
    assert content["spec"] == {"a": 1}


def test_set_status_missing_object():
    """Make sure writing the status of a missing object fails"""
    dm = DryRunDeployManager()
    assert dm.set_status("Foo", "foobar", TEST_NAMESPACE, {"x": 1}) == (
        False,
        False,
    )


def test_set_status_version_check():
    """Make sure a status write with a stale resourceVersion is rejected and
    reports the current version
    """
    dm = DryRunDeployManager()
    obj = make_obj()
    dm.deploy([obj])
    current = get_obj(dm, obj)["metadata"]["resourceVersion"]

    assert dm.set_status(
        "Foo", "foobar", TEST_NAMESPACE, {"x": 1}, resource_version=current
    ) == (True, True)
    with pytest.raises(StatusConflictError) as exc_info:
        dm.set_status(
            "Foo", "foobar", TEST_NAMESPACE, {"x": 2}, resource_version=current
        )
    assert exc_info.value.version_token == (
        get_obj(dm, obj)["metadata"]["resourceVersion"]
    )
    assert get_obj(dm, obj)["status"] == {"x": 1}


def test_owner_references_added():
    """Make sure deployed objects are owned by the owner CR when one is given"""
    cr = setup_cr()
    dm = DryRunDeployManager(resources=[cr], owner_cr=cr)
    obj = make_obj()
    dm.deploy([obj])
    refs = get_obj(dm, obj)["metadata"]["ownerReferences"]
    assert [ref["uid"] for ref in refs] == [cr["metadata"]["uid"]]

    other = make_obj(name="unowned")
    dm.deploy([other], manage_owner_references=False)
    assert "ownerReferences" not in get_obj(dm, other)["metadata"]
