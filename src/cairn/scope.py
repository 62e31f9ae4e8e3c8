"""Scopes give resources their identity and group them for teardown.

A scope is a named node in a tree (app -> stage -> nested groups). Every
resource declared while a scope is current gets the scope's name chain as
the first part of its identity, and is registered with the scope so the
whole subtree can be destroyed together.

Example:
    async with Scope.open("myapp", ScopeOptions(prefix="ci-42")) as root:
        async with root.run("database") as db_scope:
            db = await Database("main")          # identity ci-42/myapp/database/main
        site = await Worker("site", db=db)       # identity ci-42/myapp/site

    await destroy(root)
"""

import contextvars
import dataclasses
import logging
import re
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator

from cairn.exceptions import CairnError, DuplicateResourceError
from cairn.secret import SecretCipher
from cairn.state import MemoryStateStore, ResourceIdentity, StateStore

logger = logging.getLogger(__name__)

_current_scope: contextvars.ContextVar["Scope | None"] = contextvars.ContextVar(
    "cairn_current_scope", default=None
)

_NAME_PATTERN = re.compile(r"^[^/]+$")


class Phase(str, Enum):
    """What a run does with the resources it declares.

    Attributes:
        UP: Create or update every declared resource
        DESTROY: Delete everything stored under the app scope
        READ: Return stored outputs without calling handlers
    """

    UP = "up"
    DESTROY = "destroy"
    READ = "read"


@dataclass
class ScopeOptions:
    """Options a scope passes down to its descendants.

    Attributes:
        quiet: Suppress console output from the engine and handlers
        prefix: Injected as the first identity element, isolating
            concurrent runs (e.g. one prefix per test or CI branch)
        is_test: Scope belongs to a test harness
        phase: Run phase
        password: Encrypts secrets written to state; without it they are redacted
        state_store: Where records are persisted (in-memory if None)
    """

    quiet: bool = False
    prefix: str | None = None
    is_test: bool = False
    phase: Phase = Phase.UP
    password: str | None = None
    state_store: StateStore | None = None

    def replace(self, **changes: Any) -> "ScopeOptions":
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)


@dataclass
class ApplyResult:
    """Outcome of one lifecycle event, kept on the root scope for reporting.

    Attributes:
        identity: Resource the event applied to
        event: "create", "update", "delete" or "read"
        success: Whether the handler completed
        duration: Seconds spent in the handler and state writes
        error: Error message if the event failed
    """

    identity: ResourceIdentity
    event: str
    success: bool
    duration: float = 0.0
    error: str = ""


class Scope:
    """Named, hierarchical context for resource identity and teardown.

    A child keeps only a weak reference to its parent; the parent owns its
    children and drops them in close().

    Attributes:
        name: Scope name (one element of the identity chain)
        options: Options in effect for this scope
        children: Child scopes by name, in creation order
        resources: Identities registered in this scope during this run,
            in registration order
        results: Lifecycle outcomes of this run (root scope only)
    """

    def __init__(
        self,
        name: str,
        options: ScopeOptions | None = None,
        parent: "Scope | None" = None,
    ) -> None:
        if not name or not _NAME_PATTERN.match(name):
            raise CairnError(f"Invalid scope name {name!r}: must be non-empty and contain no '/'")
        self.name = name
        self._parent = weakref.ref(parent) if parent is not None else None
        if options is None:
            options = parent.options if parent is not None else ScopeOptions()
        self.options = options
        self.children: dict[str, Scope] = {}
        self.resources: list[ResourceIdentity] = []
        self.results: list[ApplyResult] = []
        self._registered: set[str] = set()
        self._in_flight: set[str] = set()
        self._tokens: list[contextvars.Token] = []
        self._cipher: SecretCipher | None = None

        # Identity is fixed at construction; the parent may be collected later
        if parent is not None:
            self._chain = parent.chain + (name,)
            self._salt = parent._salt
        else:
            self._chain = (options.prefix, name) if options.prefix else (name,)
            self._salt = name

        if options.state_store is not None:
            self._store = options.state_store
        elif parent is not None:
            self._store = parent.store
        else:
            self._store = MemoryStateStore()
            self.options = options.replace(state_store=self._store)

    # ------------------------------------------------------------------
    # Construction and ambient lookup
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        name: str,
        options: ScopeOptions | None = None,
        *,
        parent: "Scope | None" = None,
    ) -> "Scope":
        """Create a scope, as a child of parent when one is given.

        The scope does not become current until it is entered with
        ``async with``.
        """
        if parent is not None:
            return parent.child(name, options)
        return cls(name, options)

    def child(self, name: str, options: ScopeOptions | None = None) -> "Scope":
        """Return the child scope called name, creating it on first use.

        Args:
            name: Child scope name
            options: Options for a new child (defaults to this scope's options)

        Returns:
            The child Scope
        """
        existing = self.children.get(name)
        if existing is not None:
            return existing
        if options is not None and options.state_store is None:
            options = options.replace(state_store=self.store)
        scope = Scope(name, options or self.options, parent=self)
        self.children[name] = scope
        return scope

    @asynccontextmanager
    async def run(self, name: str, **option_changes: Any) -> AsyncGenerator["Scope", None]:
        """Open a child scope, make it current, and finalize it on success.

        Resources stored under the child that were not declared during the
        block are destroyed when the block completes without error in the
        up phase.

        Example:
            async with app.run("backend") as backend:
                db = await Database("main")
        """
        options = self.options.replace(**option_changes) if option_changes else None
        scope = self.child(name, options)
        async with scope:
            yield scope
        if scope.options.phase == Phase.UP:
            await scope.finalize()

    @classmethod
    def current(cls) -> "Scope":
        """Return the innermost open scope.

        Raises:
            CairnError: If no scope is open in this context
        """
        scope = _current_scope.get()
        if scope is None:
            raise CairnError(
                "No scope is open. Declare resources inside 'async with app(...)' "
                "or pass scope= explicitly."
            )
        return scope

    @classmethod
    def maybe_current(cls) -> "Scope | None":
        """Return the innermost open scope, or None."""
        return _current_scope.get()

    async def __aenter__(self) -> "Scope":
        self._tokens.append(_current_scope.set(self))
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        _current_scope.reset(self._tokens.pop())

    # ------------------------------------------------------------------
    # Tree navigation
    # ------------------------------------------------------------------

    @property
    def parent(self) -> "Scope | None":
        """Enclosing scope, or None for a root (or if it was released)."""
        return self._parent() if self._parent is not None else None

    @property
    def root(self) -> "Scope":
        scope = self
        while scope.parent is not None:
            scope = scope.parent
        return scope

    @property
    def chain(self) -> tuple[str, ...]:
        """Scope names from the root down to this scope, prefix first."""
        return self._chain

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def quiet(self) -> bool:
        return self.options.quiet

    @property
    def phase(self) -> Phase:
        return self.options.phase

    @property
    def cipher(self) -> SecretCipher | None:
        """Secret cipher shared by the whole tree, or None without a password."""
        parent = self.parent
        if parent is not None:
            return parent.cipher
        if self._cipher is None and self.options.password:
            self._cipher = SecretCipher(self.options.password, salt=self._salt)
        return self._cipher

    def walk(self) -> list["Scope"]:
        """This scope and all descendants, parents before children."""
        scopes = [self]
        for child in self.children.values():
            scopes.extend(child.walk())
        return scopes

    # ------------------------------------------------------------------
    # Resource identity and registration
    # ------------------------------------------------------------------

    def identity_for(self, local_id: str, kind: str = "") -> ResourceIdentity:
        """Build the identity of a resource declared in this scope."""
        if not local_id or "/" in local_id:
            raise CairnError(f"Invalid resource id {local_id!r}: must be non-empty and contain no '/'")
        return ResourceIdentity(self.chain, local_id, kind)

    def physical_name(self, local_id: str, max_length: int = 63) -> str:
        """Derive an external-system name that is unique per prefix and scope.

        Handlers use this to name cloud objects so that concurrent runs with
        different prefixes never collide in one account.

        Example:
            >>> Scope("myapp", ScopeOptions(prefix="ci-42")).physical_name("db")
            'ci-42-myapp-db'
        """
        raw = "-".join((*self.chain, local_id)).lower()
        name = re.sub(r"[^a-z0-9-]+", "-", raw).strip("-")
        return name[:max_length]

    def register(self, identity: ResourceIdentity) -> None:
        """Record that identity was applied in this scope during this run.

        Registration is idempotent and preserves first-registration order.
        """
        if identity.key in self._registered:
            return
        self._registered.add(identity.key)
        self.resources.append(identity)
        logger.debug(f"Registered {identity.key} in scope {'/'.join(self.chain)}")

    def registered_keys(self) -> set[str]:
        """Keys registered in this scope and all descendants."""
        keys: set[str] = set()
        for scope in self.walk():
            keys.update(scope._registered)
        return keys

    def begin_apply(self, identity: ResourceIdentity) -> None:
        """Mark identity as in flight.

        Raises:
            DuplicateResourceError: If the identity is already being applied
        """
        if identity.key in self._in_flight:
            raise DuplicateResourceError(
                f"Resource {identity} is already being applied in this run"
            )
        self._in_flight.add(identity.key)

    def end_apply(self, identity: ResourceIdentity) -> None:
        self._in_flight.discard(identity.key)

    def record_result(self, result: ApplyResult) -> None:
        """Append a lifecycle outcome to the root scope's results."""
        self.root.results.append(result)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def finalize(self) -> None:
        """Destroy stored resources under this scope that were not declared.

        Called after a successful up run; a resource removed from the program
        is deleted on the next run.
        """
        from cairn.destroy import destroy_records

        declared = self.registered_keys()
        stored = await self.store.list(self.chain)
        orphans = [r for r in stored if r.key not in declared]
        if orphans:
            logger.info(f"Finalizing scope {'/'.join(self.chain)}: {len(orphans)} orphaned resources")
            await destroy_records(self, orphans)

    def forget(self, key: str) -> None:
        """Drop a registration after its resource was deleted."""
        for scope in self.walk():
            if key in scope._registered:
                scope._registered.discard(key)
                scope.resources = [i for i in scope.resources if i.key != key]

    def close(self) -> None:
        """Release children and registrations after the scope is destroyed."""
        for child in self.children.values():
            child.close()
        self.children.clear()
        self.resources.clear()
        self._registered.clear()

    def __repr__(self) -> str:
        return f"Scope({'/'.join(self.chain)!r}, resources={len(self.resources)}, children={list(self.children)})"
