"""Code for interfacing with the directory REST API."""

import sys
from typing import Any, Dict, Generic, Iterator, List, Optional, Sequence, Type, TypeVar

import httpx
import humps
from pydantic import BaseModel
from rich.console import Console

from dirsync_cli.config import GraphSettings
from dirsync_cli.constants import (
    BATCH_BIND_RELATIONS,
    BIND_BATCH_SIZE,
    COLLECTION_PATHS,
    MSG_REFERENCE_EXISTS,
)
from dirsync_cli.exceptions import NotFoundError, RemoteFailure
from dirsync_cli.models import GraphModel

#: The rich console to use for output.
console_err = Console(file=sys.stderr)

EntityT = TypeVar("EntityT", bound=GraphModel)


def to_wire(value: Any) -> Any:
    """Convert models (and lists of them) into their JSON representation."""
    if isinstance(value, BaseModel):
        return value.model_dump(by_alias=True, mode="json", exclude_none=True)
    elif isinstance(value, (list, tuple)):
        return [to_wire(x) for x in value]
    else:
        return value


def error_message(response: httpx.Response) -> str:
    """Extract the error message from an API response."""
    try:
        return str(response.json()["error"]["message"])
    except (ValueError, KeyError, TypeError):
        return response.text or response.reason_phrase


def chunked(values: Sequence[str], size: int) -> Iterator[List[str]]:
    for i in range(0, len(values), size):
        yield list(values[i : i + size])


class GraphClient:
    """Client for accessing the directory REST API.

    One instance is shared by all accessors of a run and must be passed
    explicitly.
    """

    def __init__(self, settings: GraphSettings, transport: Optional[httpx.BaseTransport] = None):
        #: The settings to use.
        self.settings = settings
        self.base_url = str(settings.server_url).rstrip("/") + "/"
        self.client = httpx.Client(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {settings.api_token.get_secret_value()}"},
            timeout=settings.timeout,
            transport=transport,
        )

    def reference(self, object_id: str) -> str:
        """Return the ``@odata.id`` reference URL for a directory object."""
        return f"{self.base_url}directoryObjects/{object_id}"

    def close(self):
        self.client.close()

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, *args):
        self.close()


class EntityAccessor(Generic[EntityT]):
    """Create/read/update/delete access to the entities of one type.

    "Not found" is reported as ``None`` by ``get()`` and as ``False`` by
    ``delete()``; every other failure raises ``RemoteFailure``.
    """

    def __init__(self, client: GraphClient, entity_type: str, model: Type[EntityT]):
        #: The client to use.
        self.client = client
        #: The entity type, e.g., ``group``.
        self.entity_type = entity_type
        #: The model to parse entities with.
        self.model = model
        #: URL path of the entity collection.
        self.path = COLLECTION_PATHS[entity_type]

    def _request(
        self,
        method: str,
        url: str,
        operation: str,
        entity_id: Optional[str] = None,
        relation: Optional[str] = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            return self.client.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteFailure(
                f"{method} {url} failed: {e}",
                entity_type=self.entity_type,
                entity_id=entity_id,
                operation=operation,
                relation=relation,
            ) from e

    def _check(
        self,
        response: httpx.Response,
        operation: str,
        entity_id: Optional[str] = None,
        relation: Optional[str] = None,
    ):
        """Raise ``NotFoundError`` or ``RemoteFailure`` for error responses."""
        if response.is_success:
            return
        context = {
            "entity_type": self.entity_type,
            "entity_id": entity_id,
            "operation": operation,
            "relation": relation,
        }
        if response.status_code == 404:
            raise NotFoundError(f"{self.entity_type} was not found", **context)
        raise RemoteFailure(
            f"API returned {response.status_code}: {error_message(response)}",
            status_code=response.status_code,
            **context,
        )

    def _paged(
        self,
        url: str,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        entity_id: Optional[str] = None,
        relation: Optional[str] = None,
    ) -> Iterator[Dict[str, Any]]:
        while True:
            response = self._request("GET", url, operation, entity_id, relation, params=params)
            self._check(response, operation, entity_id, relation)
            response_data = response.json()
            yield from response_data.get("value", [])
            if response_data.get("@odata.nextLink"):
                # the next link carries the query parameters already
                url = str(response_data["@odata.nextLink"])
                params = None
            else:
                break

    def get(self, entity_id: str) -> Optional[EntityT]:
        """Load an entity, ``None`` if it does not exist."""
        response = self._request("GET", f"{self.path}/{entity_id}", "get", entity_id)
        if response.status_code == 404:
            return None
        self._check(response, "get", entity_id)
        return self.model.model_validate(response.json())

    def list(self, filter: Optional[str] = None) -> List[EntityT]:
        """List entities, optionally restricted by an OData filter."""
        params = {"$filter": filter} if filter else None
        return [
            self.model.model_validate(entry) for entry in self._paged(self.path, "list", params)
        ]

    def create(self, entity: EntityT, bind: Optional[Dict[str, List[str]]] = None) -> EntityT:
        """Create an entity and return it as created by the server.

        :param bind: Mapping from relation name to object IDs to reference
            in the creation request.
        """
        data = to_wire(entity)
        for relation, object_ids in (bind or {}).items():
            data[f"{relation}@odata.bind"] = [self.client.reference(x) for x in object_ids]
        response = self._request("POST", self.path, "create", json=data)
        self._check(response, "create")
        return self.model.model_validate(response.json())

    def update(self, entity_id: str, fields: Dict[str, Any]):
        """Update the given fields of an entity; ``None`` clears a field."""
        data = {humps.camelize(key): to_wire(value) for key, value in fields.items()}
        response = self._request("PATCH", f"{self.path}/{entity_id}", "update", entity_id, json=data)
        self._check(response, "update", entity_id)

    def delete(self, entity_id: str) -> bool:
        """Delete an entity, ``False`` if it was gone already."""
        response = self._request("DELETE", f"{self.path}/{entity_id}", "delete", entity_id)
        if response.status_code == 404:
            return False
        self._check(response, "delete", entity_id)
        return True

    def list_relation(self, entity_id: str, relation: str) -> List[str]:
        """List the IDs of the objects related to an entity."""
        url = f"{self.path}/{entity_id}/{relation}"
        return [
            str(entry["id"]).lower()
            for entry in self._paged(url, "list", {"$select": "id"}, entity_id, relation)
        ]

    def add_relation(self, entity_id: str, relation: str, object_ids: Sequence[str]):
        """Add objects to a relation; objects present already are accepted."""
        if (self.entity_type, relation) not in BATCH_BIND_RELATIONS:
            for object_id in object_ids:
                self._add_reference(entity_id, relation, object_id)
            return
        for chunk in chunked(object_ids, BIND_BATCH_SIZE):
            data = {f"{relation}@odata.bind": [self.client.reference(x) for x in chunk]}
            response = self._request(
                "PATCH", f"{self.path}/{entity_id}", "add", entity_id, relation, json=data
            )
            if response.status_code == 400 and MSG_REFERENCE_EXISTS in error_message(response):
                # the whole batch is rejected if one reference exists already
                for object_id in chunk:
                    self._add_reference(entity_id, relation, object_id)
            else:
                self._check(response, "add", entity_id, relation)

    def _add_reference(self, entity_id: str, relation: str, object_id: str):
        url = f"{self.path}/{entity_id}/{relation}/$ref"
        data = {"@odata.id": self.client.reference(object_id)}
        response = self._request("POST", url, "add", entity_id, relation, json=data)
        if response.status_code == 400 and MSG_REFERENCE_EXISTS in error_message(response):
            console_err.log(f"{object_id} is in {relation} of {entity_id} already")
            return
        self._check(response, "add", entity_id, relation)

    def remove_relation(self, entity_id: str, relation: str, object_ids: Sequence[str]):
        """Remove objects from a relation; absent objects are accepted."""
        for object_id in object_ids:
            url = f"{self.path}/{entity_id}/{relation}/{object_id}/$ref"
            response = self._request("DELETE", url, "remove", entity_id, relation)
            if response.status_code == 404:
                console_err.log(f"{object_id} is not in {relation} of {entity_id}")
                continue
            self._check(response, "remove", entity_id, relation)
