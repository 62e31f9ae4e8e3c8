"""Exceptions raised by the cairn engine.

Every error the engine raises derives from CairnError. Errors tied to a
single resource carry the resource identity and the lifecycle event that
was being applied, so the caller sees which resource failed and how.
"""

from typing import Any


class CairnError(Exception):
    """Base exception for all cairn errors."""


class ValidationError(CairnError):
    """Input does not satisfy a resource kind's declared contract.

    Raised before any handler runs and before state is read.

    Attributes:
        kind: Resource kind whose contract rejected the input
        resource_id: Local id the resource was declared with
        errors: Structured error list from the validator
    """

    def __init__(
        self,
        message: str,
        kind: str = "",
        resource_id: str = "",
        errors: list[dict[str, Any]] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.resource_id = resource_id
        self.errors = errors or []

    def __str__(self) -> str:
        if self.kind:
            return f"{self.message} (kind: {self.kind}, id: {self.resource_id})"
        return self.message


class DuplicateResourceError(CairnError):
    """A second apply of an identity started while the first is in flight."""


class StateStoreError(CairnError):
    """The state persistence medium could not be read or written.

    Fatal for the run: the engine makes no lifecycle decision on state
    it cannot read.
    """

    def __init__(self, message: str, key: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.key = key

    def __str__(self) -> str:
        if self.key:
            return f"{self.message} (key: {self.key})"
        return self.message


class ResourceError(CairnError):
    """Error tied to one resource and one lifecycle event.

    Attributes:
        message: Human-readable error message
        identity: ResourceIdentity of the failing resource (set by the engine
            when a handler raises without one)
        event: Lifecycle event being applied ("create", "update", "delete")
    """

    def __init__(
        self,
        message: str,
        identity: Any = None,
        event: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.identity = identity
        self.event = event

    def __str__(self) -> str:
        if self.identity is not None and self.event:
            return f"{self.message} (resource: {self.identity}, event: {self.event})"
        if self.identity is not None:
            return f"{self.message} (resource: {self.identity})"
        return self.message


class ApplyError(ResourceError):
    """A handler failed during create or update."""


class ImmutableFieldChangedError(ApplyError):
    """An update tried to change a field the resource kind treats as identity.

    Raised by handlers. The engine leaves the stored record exactly as it
    was after the last successful apply.

    Example:
        if ctx.event == "update" and ctx.output["region"] != props.region:
            raise ImmutableFieldChangedError(
                "region", ctx.output["region"], props.region
            )
    """

    def __init__(self, field: str, old: Any = None, new: Any = None) -> None:
        super().__init__(f"Cannot update {field} from {old!r} to {new!r}")
        self.field = field
        self.old = old
        self.new = new


class DeleteError(ResourceError):
    """A handler failed during delete. The stored record is retained."""


class DestroyError(CairnError):
    """Several resources failed to delete during one destroy.

    Attributes:
        errors: The individual DeleteError instances, in walk order
    """

    def __init__(self, errors: list[ResourceError]) -> None:
        super().__init__(f"{len(errors)} resources failed to delete")
        self.errors = errors

    def __str__(self) -> str:
        lines = [f"{len(self.errors)} resources failed to delete:"]
        lines.extend(f"  {error}" for error in self.errors)
        return "\n".join(lines)


class ConfigError(CairnError):
    """Configuration file or environment holds an invalid value."""
