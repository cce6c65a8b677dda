"""State gathering, comparison and update."""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from rich.console import Console

from dirsync_cli.models import (
    DesiredState,
    ObservedState,
    OperationsContainer,
    ResourceOp,
    StateOperation,
)
from dirsync_cli.resources import Resource

#: The rich console to use for output.
console_err = Console(file=sys.stderr)


def load_desired_state(path: str) -> DesiredState:
    """Load the desired state from a JSON file."""
    return DesiredState.model_validate_json(Path(path).read_text())


def gather_observed_state(resources: Dict[str, Resource], desired: DesiredState) -> ObservedState:
    """Read the resources of the desired state that exist already."""
    console_err.log("Loading observed state...")
    result: Dict[str, Optional[Dict[str, Any]]] = {}
    for block in desired.resources:
        entity_id = block.config.get("id")
        if not entity_id:
            continue
        observed = resources[block.type].read(entity_id)
        result[block.address] = observed.model_dump() if observed is not None else None
    console_err.log("  # of existing resources:", sum(1 for v in result.values() if v))
    console_err.log("... have observed state now.")
    return ObservedState(resources=result)


class TargetStateComparison:
    """Helper class that compares the desired with the observed state.

    Differences are handled as follows.

    - Resources without ID or whose entity is gone are created.
    - Resources with changes to immutable fields are replaced.
    - Otherwise, resources with differing fields are updated; only fields
      given in the desired state are compared.
      Relations are compared as sets. Updates carry the observed values of
      fields not given.

    Nothing is ever deleted by comparison.
    """

    def __init__(
        self, resources: Dict[str, Resource], desired: DesiredState, observed: ObservedState
    ):
        #: The resources by entity type.
        self.resources = resources
        #: Desired state
        self.desired = desired
        #: Observed state
        self.observed = observed

    def run(self) -> OperationsContainer:
        """Run the comparison."""
        console_err.log("Comparing desired and observed state...")
        result = OperationsContainer(resource_ops=[])
        for block in self.desired.resources:
            resource = self.resources[block.type]
            op = self._compare(block.address, resource, resource.parse(block.config))
            if op:
                result.resource_ops.append(op)
        console_err.log("... have operations now.")
        return result

    def _compare(self, address: str, resource: Resource, new: BaseModel) -> Optional[ResourceOp]:
        observed = self.observed.resources.get(address)
        old = resource.parse(observed) if observed else None
        if old is None and new.id:
            console_err.log(f"WARNING: {address} with ID {new.id} is gone, will create it again")
            new = new.model_copy(update={"id": None})
        replace_fields = resource.customize_diff(old, new)
        diff = self._diff(resource, old, new)
        if old is None:
            operation = StateOperation.CREATE
        elif replace_fields:
            operation = StateOperation.REPLACE
        elif diff:
            operation = StateOperation.UPDATE
        else:
            return None
        config = resource.merge(old, new) if operation == StateOperation.UPDATE else new
        return ResourceOp(
            operation=operation,
            address=address,
            entity_type=resource.entity_type,
            config=config.model_dump(),
            diff=diff,
        )

    def _diff(self, resource: Resource, old: Optional[BaseModel], new: BaseModel) -> Dict[str, Any]:
        new_dict = new.model_dump()
        old_dict = old.model_dump() if old is not None else {}
        diff = {}
        for key in sorted(new.model_fields_set - {"id"} - set(resource.write_only)):
            if resource.comparable(key, new_dict.get(key)) != resource.comparable(
                key, old_dict.get(key)
            ):
                diff[key] = new_dict.get(key)
        return diff


def apply_operations(
    resources: Dict[str, Resource],
    operations: OperationsContainer,
    allowed_ops: List[StateOperation],
    dry_run: bool = False,
) -> ObservedState:
    """Apply the operations, returns the resulting state of the changed resources."""
    result: Dict[str, Optional[Dict[str, Any]]] = {}
    for op in operations.resource_ops:
        if op.operation not in allowed_ops:
            console_err.log(f"skipping {op.operation.value} of {op.address} (not allowed)")
            continue
        console_err.log(f"+ {op.operation.value} {op.address}, diff: {op.diff}")
        if dry_run:
            continue
        resource = resources[op.entity_type]
        config = resource.parse(op.config)
        if op.operation == StateOperation.CREATE:
            applied = resource.create(config)
        elif op.operation == StateOperation.UPDATE:
            applied = resource.update(config)
        elif op.operation == StateOperation.REPLACE:
            resource.delete(config.id)
            applied = resource.create(config.model_copy(update={"id": None}))
        else:
            raise ValueError(f"I don't know how to apply operation {op.operation.value}")
        result[op.address] = applied.model_dump()
    return ObservedState(resources=result)
