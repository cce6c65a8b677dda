"""Reconciliation of relations and nested collections.

The functions and classes here compute the difference between desired and
observed state and apply it with the smallest number of calls, in the order
the directory API requires.
"""

import enum
import sys
import threading
from typing import Callable, Dict, List, Optional, Sequence

from pydantic import BaseModel
from rich.console import Console

from dirsync_cli.constants import RELATION_OWNERS
from dirsync_cli.exceptions import (
    DirectoryError,
    DuplicateNameError,
    NotFoundError,
    PartialReconciliationError,
    ReconciliationCancelled,
    RemoteFailure,
)
from dirsync_cli.models import ApplicationApi, GraphModel
from dirsync_cli.rest import EntityAccessor
from dirsync_cli.utils import difference, odata_quote

#: The rich console to use for output.
console_err = Console(file=sys.stderr)


@enum.unique
class RelationAction(enum.Enum):
    """Action of a relation step."""

    ADD = "add"
    REMOVE = "remove"


class RelationStep(BaseModel):
    """One call adding objects to or removing objects from a relation."""

    #: Whether to add or to remove.
    action: RelationAction
    #: The relation name, e.g., ``members``.
    relation: str
    #: The object IDs to add or remove.
    object_ids: List[str]

    def describe(self) -> str:
        return f"{self.action.value} {self.relation} {self.object_ids}"


class RelationPlan(BaseModel):
    """The steps to turn the existing into the desired set of a relation."""

    relation: str
    #: Object IDs to add.
    to_add: List[str]
    #: Object IDs to remove.
    to_remove: List[str]
    #: Whether additions go before removals.
    add_first: bool

    @property
    def steps(self) -> List[RelationStep]:
        add = RelationStep(action=RelationAction.ADD, relation=self.relation, object_ids=self.to_add)
        remove = RelationStep(
            action=RelationAction.REMOVE, relation=self.relation, object_ids=self.to_remove
        )
        ordered = [add, remove] if self.add_first else [remove, add]
        return [step for step in ordered if step.object_ids]


def plan_relation(
    relation: str,
    existing: Sequence[str],
    desired: Sequence[str],
    caller_id: Optional[str] = None,
) -> RelationPlan:
    """Compute the steps for reconciling a relation.

    Owners are added before removing any when the removal would leave the
    entity without owners or take away the caller's ownership; otherwise
    removals go first.
    """
    to_remove = difference(existing, desired)
    to_add = difference(desired, existing)
    add_first = False
    if relation == RELATION_OWNERS and to_remove:
        remaining = difference(existing, to_remove)
        caller_removed = caller_id is not None and caller_id.lower() in to_remove
        add_first = not remaining or caller_removed
    return RelationPlan(relation=relation, to_add=to_add, to_remove=to_remove, add_first=add_first)


class RelationReconciler:
    """Reconcile set-valued relations (owners, members) of entities."""

    def __init__(
        self,
        accessor: EntityAccessor,
        caller_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ):
        #: Accessor for the entity type owning the relations.
        self.accessor = accessor
        #: Object ID of the acting principal.
        self.caller_id = caller_id
        #: When set, no further step is started.
        self.cancel = cancel

    def reconcile(
        self,
        entity_id: str,
        relation: str,
        desired: Sequence[str],
        existing: Optional[Sequence[str]] = None,
    ) -> RelationPlan:
        """Make ``relation`` of the entity contain exactly ``desired``.

        :param existing: The current objects, fetched from the API if ``None``.
        :return: The plan that was applied.
        :raises PartialReconciliationError: If a step failed after others
            were applied.
        """
        if existing is None:
            existing = self.accessor.list_relation(entity_id, relation)
        plan = plan_relation(relation, existing, desired, self.caller_id)
        context = {
            "entity_type": self.accessor.entity_type,
            "entity_id": entity_id,
            "relation": relation,
        }
        completed: List[str] = []
        for step in plan.steps:
            if self.cancel is not None and self.cancel.is_set():
                raise ReconciliationCancelled(completed=completed, operation="reconcile", **context)
            console_err.log(f"+ {step.describe()} of {self.accessor.entity_type} {entity_id}")
            try:
                if step.action == RelationAction.ADD:
                    self.accessor.add_relation(entity_id, relation, step.object_ids)
                else:
                    self.accessor.remove_relation(entity_id, relation, step.object_ids)
            except DirectoryError as e:
                if completed:
                    raise PartialReconciliationError(
                        f"reconciling {relation} failed: {e.message}",
                        completed=completed,
                        failed=step.describe(),
                        operation=step.action.value,
                        **context,
                    ) from e
                e.relation = e.relation or relation
                raise
            completed.append(step.describe())
        return plan


class NestedCollection:
    """A collection field that can only be replaced as a whole.

    Items must be disabled before they can be changed or removed.
    """

    def __init__(
        self,
        name: str,
        getter: Callable[[GraphModel], Optional[List[GraphModel]]],
        wrap: Callable[[List[GraphModel]], Dict[str, object]],
    ):
        #: The field name for messages.
        self.name = name
        #: Get the items from an entity, ``None`` if unset.
        self.getter = getter
        #: Build the fields of an update setting the items.
        self.wrap = wrap


#: The app roles of an application.
APP_ROLES = NestedCollection(
    "app_roles",
    lambda app: app.app_roles,
    lambda items: {"app_roles": items},
)
#: The delegated permission scopes of an application.
PERMISSION_SCOPES = NestedCollection(
    "oauth2_permission_scopes",
    lambda app: app.api.oauth2_permission_scopes if app.api else None,
    lambda items: {"api": ApplicationApi(oauth2_permission_scopes=items)},
)


class CollectionReplacer:
    """Replace nested collections with a disable-then-replace sequence."""

    def __init__(self, accessor: EntityAccessor, cancel: Optional[threading.Event] = None):
        #: Accessor for the entity type owning the collections.
        self.accessor = accessor
        #: When set, no further step is started.
        self.cancel = cancel

    def replace(
        self, entity_id: str, collection: NestedCollection, desired: Sequence[GraphModel]
    ) -> int:
        """Set the collection of the entity to ``desired``.

        The entity is loaded fresh so that the enabled flags are current.
        If the collection differs, all current items are disabled in one
        update and the full desired collection is written in a second one.

        :return: The number of update calls issued.
        """
        context = {
            "entity_type": self.accessor.entity_type,
            "entity_id": entity_id,
            "relation": collection.name,
        }
        entity = self.accessor.get(entity_id)
        if entity is None:
            raise NotFoundError(
                f"{self.accessor.entity_type} with ID {entity_id!r} was not found",
                operation="get",
                **context,
            )
        current = collection.getter(entity) or []
        desired = list(desired)
        if [x.model_dump() for x in current] == [x.model_dump() for x in desired]:
            return 0

        completed: List[str] = []
        if current:
            self._check_cancel(completed, context)
            disabled = [item.model_copy(update={"is_enabled": False}) for item in current]
            console_err.log(f"+ disable {len(disabled)} {collection.name} of {entity_id}")
            try:
                self.accessor.update(entity_id, collection.wrap(disabled))
            except DirectoryError as e:
                e.relation = e.relation or collection.name
                raise
            completed.append(f"disable {collection.name}")

        self._check_cancel(completed, context)
        console_err.log(f"+ set {len(desired)} {collection.name} of {entity_id}")
        try:
            self.accessor.update(entity_id, collection.wrap(desired))
        except DirectoryError as e:
            if completed:
                raise PartialReconciliationError(
                    f"setting {collection.name} failed: {e.message}",
                    completed=completed,
                    failed=f"set {collection.name}",
                    operation="update",
                    **context,
                ) from e
            e.relation = e.relation or collection.name
            raise
        return len(completed) + 1

    def _check_cancel(self, completed: List[str], context: Dict[str, str]):
        if self.cancel is not None and self.cancel.is_set():
            raise ReconciliationCancelled(completed=completed, operation="replace", **context)


class DuplicateNameGuard:
    """Reject creating or renaming to a display name that is taken.

    The check runs at plan time and again at apply time as another run may
    have created an entity with the name in between.
    """

    def __init__(self, accessor: EntityAccessor):
        #: Accessor for the entity type to check.
        self.accessor = accessor

    def find_by_name(self, display_name: str) -> List[GraphModel]:
        """Find entities with exactly the given display name."""
        matches = self.accessor.list(filter=f"displayName eq {odata_quote(display_name)}")
        # the server side filter may match case-insensitively
        return [m for m in matches if getattr(m, "display_name", None) == display_name]

    def check_plan(self, entity_id: Optional[str], old_name: Optional[str], new_name: str):
        """Plan time check, only for new entities and renames."""
        if entity_id and old_name == new_name:
            return
        self._check(entity_id, new_name, "plan")

    def check_apply(self, entity_id: Optional[str], display_name: str):
        """Apply time check."""
        self._check(entity_id, display_name, "apply")

    def _check(self, entity_id: Optional[str], display_name: str, operation: str):
        for existing in self.find_by_name(display_name):
            if not existing.id:
                raise RemoteFailure(
                    "API returned an entity without ID during duplicate name check",
                    entity_type=self.accessor.entity_type,
                    operation=operation,
                )
            if entity_id is None or existing.id.lower() != entity_id.lower():
                raise DuplicateNameError(
                    display_name,
                    existing.id,
                    entity_type=self.accessor.entity_type,
                    entity_id=entity_id,
                    operation=operation,
                )
