"""HTTP method diffing and reconciliation against a live REST API."""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Union

from bam_deploy.provisioners.api_gateway import ResourceTree, RestApiProvisioner
from bam_deploy.provisioners.base import ChangeType
from bam_deploy.state.models import MethodPermissionIds
from bam_deploy.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_METHOD = 'GET'


def normalize_methods(methods: Union[None, str, Iterable[str]]) -> List[str]:
    """Uppercase and de-duplicate method names, keeping first-seen order.

    >>> normalize_methods(['get', 'GET', 'post'])
    ['GET', 'POST']
    """
    if methods is None:
        return []
    if isinstance(methods, str):
        methods = [methods]

    normalized = []
    for method in methods:
        method = method.strip().upper()
        if method and method not in normalized:
            normalized.append(method)
    return normalized


@dataclass
class MethodChange:
    """One planned method change."""
    method: str
    change_type: ChangeType


@dataclass
class MethodSet:
    """Methods to add, remove, and already attached for one run."""
    add_methods: List[str] = field(default_factory=list)
    remove_methods: List[str] = field(default_factory=list)
    existing_methods: List[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.add_methods or self.remove_methods)

    @property
    def remaining_methods(self) -> List[str]:
        """Methods the root resource carries once the plan is applied."""
        kept = [m for m in self.existing_methods if m not in self.remove_methods]
        return kept + [m for m in self.add_methods if m not in kept]

    def plan(self) -> List[MethodChange]:
        """Additions first, then removals."""
        changes = [MethodChange(m, ChangeType.CREATE) for m in self.add_methods]
        changes.extend(MethodChange(m, ChangeType.DELETE) for m in self.remove_methods)
        return changes


def resolve_method_set(
    add_methods: Union[None, str, Iterable[str]],
    remove_methods: Union[None, str, Iterable[str]],
    existing_methods: Iterable[str]
) -> MethodSet:
    """Build the normalized method set for a run.

    Requested additions that are already attached are dropped. If nothing is
    attached and nothing was requested, ``GET`` is added so the API always
    ends up with at least one method.
    """
    existing = normalize_methods(list(existing_methods))
    add = [m for m in normalize_methods(add_methods) if m not in existing]
    remove = normalize_methods(remove_methods)

    if not existing and not add:
        add = [DEFAULT_METHOD]

    return MethodSet(add_methods=add, remove_methods=remove, existing_methods=existing)


@dataclass
class ReconcileResult:
    """Permission ids created and methods removed by one reconciliation."""
    added: Dict[str, MethodPermissionIds] = field(default_factory=dict)
    removed: List[str] = field(default_factory=list)


class MethodReconciler:
    """Applies a MethodSet to an existing REST API, one method at a time.

    A failure stops the loop and propagates. Methods applied before the
    failure stay applied remotely; the caller must not persist anything.

    Removing a method revokes its invoke grants. When the local map has no
    ids for it, the ids are read back from the function's resource policy.
    """

    def __init__(self, api_provisioner: RestApiProvisioner):
        self.api_provisioner = api_provisioner

    def reconcile(
        self,
        tree: ResourceTree,
        method_set: MethodSet,
        rest_api_id: str,
        function_name: str,
        existing_permission_ids: Optional[Mapping[str, MethodPermissionIds]] = None
    ) -> ReconcileResult:
        existing_permission_ids = existing_permission_ids or {}
        observed_permission_ids: Optional[Dict[str, MethodPermissionIds]] = None
        result = ReconcileResult()

        for change in method_set.plan():
            if change.change_type is ChangeType.CREATE:
                result.added[change.method] = self.api_provisioner.attach_method(
                    tree, change.method, rest_api_id, function_name
                )
                logger.info(f"Added {change.method} to API {rest_api_id}")
            elif change.change_type is ChangeType.DELETE:
                permission_ids = existing_permission_ids.get(change.method)
                if permission_ids is None:
                    if observed_permission_ids is None:
                        observed_permission_ids = self.api_provisioner.get_permission_ids(
                            function_name, rest_api_id
                        )
                    permission_ids = observed_permission_ids.get(change.method)
                    logger.debug(f"No recorded ids for {change.method}; using {permission_ids}")

                self.api_provisioner.detach_method(
                    tree,
                    change.method,
                    rest_api_id,
                    function_name,
                    permission_ids,
                )
                result.removed.append(change.method)
                logger.info(f"Removed {change.method} from API {rest_api_id}")

        return result
