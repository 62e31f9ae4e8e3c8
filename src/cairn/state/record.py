"""Persisted resource records.

A ResourceRecord is the last-applied snapshot of one resource: what input
it was applied with, what output the handler produced, and whether that
apply succeeded.
"""

import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ResourceStatus(Enum):
    """Lifecycle status of a stored resource record.

    Attributes:
        PENDING: Apply started but has not settled
        APPLIED: Last create or update succeeded
        FAILED: Last apply or delete raised; prior snapshots retained
        DELETED: Delete succeeded (records are removed, so only transient)
    """

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    DELETED = "deleted"


@dataclass(frozen=True)
class ResourceIdentity:
    """Stable address of a resource across runs.

    Attributes:
        scope_chain: Scope names from the root scope down to the declaring scope
        local_id: Id the resource was declared with inside that scope
        kind: Resource kind name (e.g. "fs::File")

    Example:
        >>> ident = ResourceIdentity(("myapp", "dev"), "db-1", "Database")
        >>> ident.key
        'myapp/dev/db-1'
    """

    scope_chain: tuple[str, ...]
    local_id: str
    kind: str = ""

    @property
    def key(self) -> str:
        """Storage key: the scope chain and local id joined with '/'."""
        return "/".join((*self.scope_chain, self.local_id))

    def __str__(self) -> str:
        return f"{self.kind}({self.key})" if self.kind else self.key

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "scope_chain": list(self.scope_chain),
            "local_id": self.local_id,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceIdentity":
        """Create from dictionary."""
        return cls(
            scope_chain=tuple(data["scope_chain"]),
            local_id=data["local_id"],
            kind=data.get("kind", ""),
        )


_sequence_lock = threading.Lock()
_last_sequence = 0


def next_sequence() -> int:
    """Return a strictly increasing ordinal, comparable across runs."""
    global _last_sequence
    with _sequence_lock:
        _last_sequence = max(time.time_ns(), _last_sequence + 1)
        return _last_sequence


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ResourceRecord:
    """Last-applied state of one resource.

    Snapshots are stored already serialized (see cairn.serde), so a record
    is always JSON-compatible and carries no plaintext secrets.

    Attributes:
        identity: Resource identity
        status: Lifecycle status
        input_snapshot: Serialized input of the last apply
        output_snapshot: Serialized output of the last successful apply,
            or None if the resource was never created
        created_at: When the record was first written
        updated_at: When the record was last written
        error: Error message of the last failed apply
        dependencies: Keys of resources whose outputs fed this resource's input
        sequence: Creation ordinal, used for reverse-creation destroy order
    """

    identity: ResourceIdentity
    status: ResourceStatus
    input_snapshot: Any = None
    output_snapshot: Any = None
    created_at: str = ""
    updated_at: str = ""
    error: str = ""
    dependencies: list[str] = field(default_factory=list)
    sequence: int = 0

    @property
    def key(self) -> str:
        return self.identity.key

    @property
    def kind(self) -> str:
        return self.identity.kind

    @property
    def was_created(self) -> bool:
        """Whether any apply of this resource ever succeeded."""
        return self.output_snapshot is not None or self.status == ResourceStatus.APPLIED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "identity": self.identity.to_dict(),
            "kind": self.kind,
            "status": self.status.value,
            "input": self.input_snapshot,
            "output": self.output_snapshot,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "dependencies": list(self.dependencies),
            "sequence": self.sequence,
        }
        if self.error:
            result["error"] = self.error
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceRecord":
        """Create from dictionary."""
        return cls(
            identity=ResourceIdentity.from_dict(data["identity"]),
            status=ResourceStatus(data["status"]),
            input_snapshot=data.get("input"),
            output_snapshot=data.get("output"),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            error=data.get("error", ""),
            dependencies=list(data.get("dependencies", [])),
            sequence=data.get("sequence", 0),
        )
