"""cairn - embedded infrastructure-as-code engine.

Resources are declared by awaiting them inside a scope. Each run compares
what the program declares with the state recorded by the last run and
calls resource handlers to create, update or delete.

Quick Start:
    from cairn import app
    from cairn.resources.fs import File

    async with app("myapp") as scope:
        readme = await File("readme", path="out/README", content="hello")
"""

__version__ = "0.1.0"

from cairn.exceptions import (
    ApplyError,
    CairnError,
    ConfigError,
    DeleteError,
    DestroyError,
    DuplicateResourceError,
    ImmutableFieldChangedError,
    ResourceError,
    StateStoreError,
    ValidationError,
)
from cairn.secret import RedactedSecret, Secret, secret
from cairn.scope import Phase, Scope, ScopeOptions
from cairn.state import FileSystemStateStore, MemoryStateStore, StateStore
from cairn.resource import Context, Contract, Resource, ResourceHandle
from cairn.destroy import destroy
from cairn.app import app
from cairn.util import ignore

__all__ = [
    "__version__",
    "app",
    "destroy",
    "ignore",
    "Resource",
    "Contract",
    "Context",
    "ResourceHandle",
    "Scope",
    "ScopeOptions",
    "Phase",
    "Secret",
    "RedactedSecret",
    "secret",
    "StateStore",
    "MemoryStateStore",
    "FileSystemStateStore",
    "CairnError",
    "ValidationError",
    "DuplicateResourceError",
    "StateStoreError",
    "ResourceError",
    "ApplyError",
    "ImmutableFieldChangedError",
    "DeleteError",
    "DestroyError",
    "ConfigError",
]
