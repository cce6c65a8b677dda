"""Exceptions raised while talking to the directory API."""

from typing import List, Optional


class DirectoryError(Exception):
    """Base class for errors with the context needed for diagnostics."""

    def __init__(
        self,
        message: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        operation: Optional[str] = None,
        relation: Optional[str] = None,
    ):
        super().__init__(message)
        #: The message without context.
        self.message = message
        #: The entity type, e.g., ``group``.
        self.entity_type = entity_type
        #: The identifier of the entity, if known.
        self.entity_id = entity_id
        #: The attempted operation, e.g., ``update``.
        self.operation = operation
        #: The relation or field name, if any.
        self.relation = relation

    def __str__(self) -> str:
        context = []
        if self.operation:
            context.append(f"operation={self.operation}")
        if self.entity_type:
            context.append(f"type={self.entity_type}")
        if self.entity_id:
            context.append(f"id={self.entity_id}")
        if self.relation:
            context.append(f"field={self.relation}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class NotFoundError(DirectoryError):
    """The entity or relation target does not exist."""


class RemoteFailure(DirectoryError):
    """Any other error reported by the API."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        #: The HTTP status code, ``None`` for transport errors.
        self.status_code = status_code


class DuplicateNameError(DirectoryError):
    """Another entity with the same display name exists already."""

    def __init__(self, display_name: str, existing_id: str, **kwargs):
        super().__init__(
            f"an existing {kwargs.get('entity_type') or 'entity'} with display name "
            f"{display_name!r} was found with ID {existing_id!r}; import it or choose "
            "another name",
            **kwargs,
        )
        #: The conflicting display name.
        self.display_name = display_name
        #: The ID of the entity that has the name already.
        self.existing_id = existing_id


class PartialReconciliationError(DirectoryError):
    """A multi-step reconciliation failed after some steps were applied.

    Nothing is rolled back; running the same operation again converges as
    every step is idempotent.
    """

    def __init__(self, message: str, *, completed: List[str], failed: str, **kwargs):
        super().__init__(
            f"{message}; completed steps: {', '.join(completed) or 'none'}; failed step: {failed}",
            **kwargs,
        )
        #: Descriptions of the steps that were applied.
        self.completed = completed
        #: Description of the step that failed.
        self.failed = failed


class ReconciliationCancelled(DirectoryError):
    """Cancellation was requested before the next step started."""

    def __init__(self, *, completed: List[str], **kwargs):
        super().__init__(
            f"reconciliation cancelled; completed steps: {', '.join(completed) or 'none'}",
            **kwargs,
        )
        #: Descriptions of the steps that were applied.
        self.completed = completed
