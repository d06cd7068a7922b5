"""
Common utilities shared across components in the library
"""

# Standard
from datetime import datetime, timedelta
from typing import Optional
import copy
import hashlib
import re

# Third Party
import dateutil.parser

# First Party
import alog

# Local
from . import config, constants
from .exceptions import assert_cluster

log = alog.use_channel("UGUTL")

## Dicts #######################################################################


def merge_configs(base, overrides) -> dict:
    """Helper to perform a deep merge of the overrides into the base. The merge
    is done in place, but the resulting dict is also returned for convenience.

    If both the base and overrides have a key and the type of the key for both
    is a dict, recursively merge, otherwise set the base value to the override
    value.

    Args:
        base:  dict
            The base config that will be updated with the overrides
        overrides:  dict
            The override config

    Returns:
        merged:  dict
            The merged results of overrides merged onto base
    """
    for key, value in overrides.items():
        if (
            key not in base
            or not isinstance(base[key], dict)
            or not isinstance(value, dict)
        ):
            base[key] = value
        else:
            base[key] = merge_configs(base[key], value)

    return base


## Time ########################################################################

# CITE: https://stackoverflow.com/questions/4628122
_time_delta_regex = re.compile(
    r"^((?P<hours>\d+?)hr)?((?P<minutes>\d+?)m)?((?P<seconds>\d*\.?\d+?)s)?$"
)


def parse_time_delta(time_str: str) -> Optional[timedelta]:
    """Parse a string into a timedelta. Accepts values in the following
    formats: 1hr, 5m, 10s, 1hr30m, etc

    Args:
        time_str: str
            The string representation of a timedelta

    Returns:
        result: Optional[timedelta]
            The parsed timedelta if one could be found
    """
    parts = _time_delta_regex.match(time_str or "")
    if not parts or all(part is None for part in parts.groupdict().values()):
        return None
    time_params = {
        name: float(param) for name, param in parts.groupdict().items() if param
    }
    return timedelta(**time_params)


def format_timestamp(timestamp: datetime) -> str:
    """Serialize a timestamp for storage in status"""
    return timestamp.isoformat()


def parse_timestamp(timestamp: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp previously stored in status. Unparseable values are
    treated as missing so that a corrupted field restarts a window rather than
    crashing the reconcile.
    """
    if not timestamp:
        return None
    try:
        return dateutil.parser.isoparse(timestamp)
    except (ValueError, TypeError):
        log.warning("Ignoring unparseable timestamp [%s]", timestamp)
        return None


def capped_backoff(
    attempts: int,
    base_seconds: Optional[float] = None,
    max_seconds: Optional[float] = None,
) -> timedelta:
    """Compute an exponential backoff for the given number of failed attempts,
    capped at max_seconds

    Args:
        attempts:  int
            The number of consecutive failures so far (1 for the first)
        base_seconds:  Optional[float]
            The backoff for the first failure (defaults to config)
        max_seconds:  Optional[float]
            The upper bound (defaults to config)

    Returns:
        backoff:  timedelta
            The duration to wait before the next attempt
    """
    base_seconds = config.backoff.base_seconds if base_seconds is None else base_seconds
    max_seconds = config.backoff.max_seconds if max_seconds is None else max_seconds
    exponent = max(attempts - 1, 0)
    # Avoid building enormous floats for long-failing resources
    if exponent > 32:
        return timedelta(seconds=max_seconds)
    return timedelta(seconds=min(base_seconds * (2**exponent), max_seconds))


## Naming ######################################################################


def make_resource_name(*parts: str) -> str:
    """Build a DNS-1123 compliant name from the given parts. Names that would
    exceed the kubernetes limit are truncated and suffixed with a short hash of
    the full name so that distinct inputs stay distinct.

    Args:
        *parts:  str
            The pieces of the name, joined without separators

    Returns:
        name:  str
            The deterministic, valid name
    """
    raw_name = "".join(parts)
    name = re.sub(r"[^a-z0-9-]", "-", raw_name.lower()).strip("-")
    if len(name) <= constants.MAX_NAME_LENGTH and name == raw_name:
        return name
    digest = hashlib.sha1(raw_name.encode("utf-8")).hexdigest()[:8]
    prefix = name[: constants.MAX_NAME_LENGTH - len(digest) - 1].rstrip("-")
    return f"{prefix}-{digest}"


## Finalizers ##################################################################


def add_finalizer(deploy_manager, cr_manifest: dict, finalizer: str) -> bool:
    """Add a finalizer to the given resource if it is not already present

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used to update the resource
        cr_manifest:  dict
            The current manifest of the resource
        finalizer:  str
            The finalizer to be added

    Returns:
        added:  bool
            True if the finalizer was not present and has been added
    """
    finalizers = cr_manifest.get("metadata", {}).get("finalizers") or []
    if finalizer in finalizers:
        return False

    log.debug("Adding finalizer: %s", finalizer)
    manifest = _finalizer_manifest(cr_manifest)
    manifest["metadata"]["finalizers"] = list(finalizers) + [finalizer]
    success, _ = deploy_manager.deploy([manifest], manage_owner_references=False)
    assert_cluster(success, f"Failed to add finalizer {finalizer}")
    return True


def remove_finalizer(deploy_manager, cr_manifest: dict, finalizer: str) -> bool:
    """Remove a finalizer from the given resource if it is present

    Args:
        deploy_manager:  DeployManagerBase
            The deploy manager used to update the resource
        cr_manifest:  dict
            The current manifest of the resource
        finalizer:  str
            The finalizer to remove

    Returns:
        removed:  bool
            True if the finalizer was present and has been removed
    """
    finalizers = cr_manifest.get("metadata", {}).get("finalizers") or []
    if finalizer not in finalizers:
        return False

    log.debug("Removing finalizer: %s", finalizer)
    manifest = _finalizer_manifest(cr_manifest)
    manifest["metadata"]["finalizers"] = [fin for fin in finalizers if fin != finalizer]
    success, _ = deploy_manager.deploy([manifest], manage_owner_references=False)
    assert_cluster(success, f"Failed to remove finalizer {finalizer}")
    return True


def _finalizer_manifest(cr_manifest: dict) -> dict:
    """Create a manifest with only the fields required to patch finalizers"""
    metadata = cr_manifest.get("metadata", {})
    manifest = {
        "kind": cr_manifest.get("kind"),
        "apiVersion": cr_manifest.get("apiVersion"),
        "metadata": {
            "name": metadata.get("name"),
            "namespace": metadata.get("namespace"),
        },
    }
    return copy.deepcopy(manifest)
