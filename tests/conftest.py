import itertools
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest

from dirsync_cli.constants import ENTITY_APPLICATION, ENTITY_GROUP
from dirsync_cli.exceptions import NotFoundError
from dirsync_cli.models import Application, GraphModel, Group
from dirsync_cli.resources import ProviderContext

#: Object ID of the acting principal in tests.
CALLER_ID = "caller-0000"

#: UUIDs for app roles and permission scopes.
ROLE_1 = "00000000-0000-0000-0000-000000000001"
ROLE_2 = "00000000-0000-0000-0000-000000000002"
SCOPE_1 = "00000000-0000-0000-0000-00000000000a"
SCOPE_2 = "00000000-0000-0000-0000-00000000000b"


class FakeAccessor:
    """In-memory stand-in for ``EntityAccessor`` that records every call.

    The ``list()`` method ignores the filter, like a server whose filter
    matches too much, so that callers have to check the results.
    """

    _ids = itertools.count(1)

    def __init__(self, entity_type: str, model: type, entities: Optional[List[GraphModel]] = None):
        self.entity_type = entity_type
        self.model = model
        self.entities: Dict[str, GraphModel] = {e.id: e for e in entities or []}
        self.relations: Dict[Tuple[str, str], List[str]] = defaultdict(list)
        self.calls: List[Tuple[Any, ...]] = []
        #: Exceptions to raise on the next call of an operation, e.g., ``"add"``.
        self.failures: Dict[str, Exception] = {}
        #: Size of each relation after each add/remove call.
        self.relation_sizes: List[Tuple[str, int]] = []
        #: Callbacks run on each update, e.g., for checking locks.
        self.on_update: List[Any] = []

    def _maybe_fail(self, operation: str):
        if operation in self.failures:
            raise self.failures.pop(operation)

    def mutations(self, *operations: str) -> List[Tuple[Any, ...]]:
        """The recorded calls of the given operations, in order."""
        return [call for call in self.calls if call[0] in operations]

    def get(self, entity_id: str) -> Optional[GraphModel]:
        self.calls.append(("get", entity_id))
        self._maybe_fail("get")
        return self.entities.get(entity_id)

    def list(self, filter: Optional[str] = None) -> List[GraphModel]:
        self.calls.append(("list", filter))
        self._maybe_fail("list")
        return list(self.entities.values())

    def create(self, entity: GraphModel, bind: Optional[Dict[str, List[str]]] = None) -> GraphModel:
        self.calls.append(("create", entity, bind))
        self._maybe_fail("create")
        entity_id = entity.id or f"new-{next(self._ids)}"
        created = entity.model_copy(update={"id": entity_id})
        self.entities[entity_id] = created
        for relation, object_ids in (bind or {}).items():
            self.relations[(entity_id, relation)] = list(object_ids)
        return created

    def update(self, entity_id: str, fields: Dict[str, Any]):
        self.calls.append(("update", entity_id, fields))
        for callback in self.on_update:
            callback(entity_id, fields)
        self._maybe_fail("update")
        if entity_id not in self.entities:
            raise NotFoundError("not found", entity_type=self.entity_type, entity_id=entity_id)
        self.entities[entity_id] = self.entities[entity_id].model_copy(update=fields)

    def delete(self, entity_id: str) -> bool:
        self.calls.append(("delete", entity_id))
        self._maybe_fail("delete")
        return self.entities.pop(entity_id, None) is not None

    def list_relation(self, entity_id: str, relation: str) -> List[str]:
        self.calls.append(("list_relation", entity_id, relation))
        self._maybe_fail("list_relation")
        return list(self.relations[(entity_id, relation)])

    def add_relation(self, entity_id: str, relation: str, object_ids: List[str]):
        self.calls.append(("add", relation, list(object_ids)))
        self._maybe_fail("add")
        current = self.relations[(entity_id, relation)]
        current.extend(x for x in object_ids if x not in current)
        self.relation_sizes.append((relation, len(current)))

    def remove_relation(self, entity_id: str, relation: str, object_ids: List[str]):
        self.calls.append(("remove", relation, list(object_ids)))
        self._maybe_fail("remove")
        self.relations[(entity_id, relation)] = [
            x for x in self.relations[(entity_id, relation)] if x not in object_ids
        ]
        self.relation_sizes.append((relation, len(self.relations[(entity_id, relation)])))


@pytest.fixture
def ctx() -> ProviderContext:
    """Context without API client, resources get fake accessors."""
    return ProviderContext(None, CALLER_ID.upper())


@pytest.fixture
def groups() -> FakeAccessor:
    return FakeAccessor(ENTITY_GROUP, Group)


@pytest.fixture
def applications() -> FakeAccessor:
    return FakeAccessor(ENTITY_APPLICATION, Application)
