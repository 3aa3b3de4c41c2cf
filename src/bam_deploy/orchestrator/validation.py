"""Request checks that run before any remote mutation.

Each check returns ``None`` when the request is valid, or a message that the
caller reports as a warning.
"""

import re
from typing import Optional

from bam_deploy.orchestrator.methods import MethodSet
from bam_deploy.provisioners.existence import ExistenceOracle
from bam_deploy.state.manager import StateStore

ALLOWED_METHODS = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'HEAD', 'OPTIONS', 'ANY')

RESOURCE_NAME_PATTERN = re.compile(r'^[A-Za-z][A-Za-z0-9_-]{0,63}$')


def validate_resource_name(name: str) -> Optional[str]:
    if not name:
        return "Resource name must not be empty"
    if not RESOURCE_NAME_PATTERN.match(name):
        return (
            f"\"{name}\" is not a valid resource name: use up to 64 letters, digits, "
            "hyphens or underscores, starting with a letter"
        )
    return None


def validate_redeployment(
    name: str,
    store: StateStore,
    region: str,
    oracle: ExistenceOracle
) -> Optional[str]:
    """The target must be a valid name and a function bam knows about.

    A function counts as known if it is in the local library for the region
    or if it exists remotely (it is then adopted into the library).
    """
    invalid_name = validate_resource_name(name)
    if invalid_name:
        return invalid_name

    if store.get_function(region, name) is not None:
        return None
    if oracle.does_function_exist(name):
        return None
    return f"Lambda \"{name}\" does not exist"


def validate_method_set(method_set: MethodSet) -> Optional[str]:
    unknown = [
        m for m in method_set.add_methods + method_set.remove_methods
        if m not in ALLOWED_METHODS
    ]
    if unknown:
        return f"Invalid HTTP method(s): {', '.join(unknown)}"

    conflicting = [m for m in method_set.add_methods if m in method_set.remove_methods]
    if conflicting:
        return f"Cannot add and remove the same method: {', '.join(conflicting)}"

    missing = [m for m in method_set.remove_methods if m not in method_set.existing_methods]
    if missing:
        return f"Cannot remove method(s) that do not exist: {', '.join(missing)}"

    return None
