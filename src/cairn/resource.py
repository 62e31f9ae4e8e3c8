"""Resource kinds and the lifecycle engine.

A resource kind pairs a name, a contract and a handler. Calling the kind
applies one resource: the engine resolves its identity from the current
scope, loads the previous record, picks the lifecycle event, runs the
handler once, persists the new record and returns the output.

    from pydantic import BaseModel
    from cairn import Contract, Resource

    class BucketProps(BaseModel):
        name: str
        region: str = "us-east-1"

    @Resource("storage::Bucket", Contract(input=BucketProps))
    async def Bucket(ctx, props):
        if ctx.event == "delete":
            await api.delete_bucket(ctx.output["name"])
            return None
        if ctx.event == "update" and ctx.output["region"] != props.region:
            raise ImmutableFieldChangedError("region", ctx.output["region"], props.region)
        return await api.ensure_bucket(props.name, props.region)

    async with app("myapp") as scope:
        logs = await Bucket("logs", name="myapp-logs")
        site = await Site("site", bucket=logs)   # site depends on logs

Dependencies are never declared. A resource depends on another when a
handle returned by the other appears in its input, which also means the
caller had to await the dependency first.
"""

import inspect
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Union

import pydantic
from pydantic import BaseModel

from cairn import console
from cairn.exceptions import (
    ApplyError,
    CairnError,
    DeleteError,
    ImmutableFieldChangedError,
    ResourceError,
    StateStoreError,
    ValidationError,
)
from cairn.logging import get_logger
from cairn.scope import ApplyResult, Phase, Scope
from cairn.secret import redact
from cairn.serde import deserialize, serialize
from cairn.state import (
    ResourceIdentity,
    ResourceRecord,
    ResourceStatus,
    next_sequence,
    utc_now,
)

logger = get_logger(__name__)

CREATE = "create"
UPDATE = "update"
DELETE = "delete"
READ = "read"

Handler = Callable[["Context", Any], Union[Awaitable[Any], Any]]

# Registry maps kind names to resource kinds, so destroy can find handlers
# for records loaded from state
RESOURCE_KINDS: dict[str, "ResourceKind"] = {}


@dataclass
class Contract:
    """Declared shape of a resource kind's input and output.

    Either side may be None, in which case any mapping is accepted.

    Attributes:
        input: Pydantic model the input must validate against
        output: Pydantic model the handler output must validate against
    """

    input: type[BaseModel] | None = None
    output: type[BaseModel] | None = None

    def validate_input(self, kind: str, resource_id: str, props: Any) -> Any:
        """Validate input, returning a model instance or a plain dict.

        Raises:
            ValidationError: If input does not match the input model
        """
        if self.input is None:
            if isinstance(props, BaseModel):
                return props
            return dict(props)
        try:
            if isinstance(props, self.input):
                return props
            if isinstance(props, BaseModel):
                props = props.model_dump()
            return self.input.model_validate(props)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid input for {kind}: {e.error_count()} validation error(s)\n{e}",
                kind=kind,
                resource_id=resource_id,
                errors=e.errors(include_input=False),
            ) from e

    def validate_output(self, output: Any) -> dict[str, Any]:
        """Normalize handler output to a dict, validating it if declared.

        Raises:
            pydantic.ValidationError: If output does not match the output model
            TypeError: If output is neither a mapping, a model nor None
        """
        if output is None:
            output = {}
        if self.output is not None and not isinstance(output, self.output):
            output = self.output.model_validate(
                output.model_dump() if isinstance(output, BaseModel) else output
            )
        if isinstance(output, BaseModel):
            return output.model_dump()
        if isinstance(output, Mapping):
            return dict(output)
        raise TypeError(
            f"Handler must return a mapping or pydantic model, got {type(output).__name__}"
        )


@dataclass
class Context:
    """What a handler knows about the apply it is asked to perform.

    Attributes:
        event: "create", "update" or "delete"
        identity: Identity of the resource
        scope: Scope the resource belongs to
        quiet: Handler should not print progress
        phase: Run phase
        prior_output: Output of the last successful apply (None on create)
        prior_input: Input of the last apply (None on create)
        adopt: Input asked to bind to an existing external object
    """

    event: str
    identity: ResourceIdentity
    scope: Scope
    quiet: bool = False
    phase: Phase = Phase.UP
    prior_output: dict[str, Any] | None = None
    prior_input: Any = None
    adopt: bool = False

    @property
    def output(self) -> dict[str, Any] | None:
        """Alias of prior_output."""
        return self.prior_output

    @property
    def id(self) -> str:
        return self.identity.local_id

    @property
    def kind(self) -> str:
        return self.identity.kind

    def physical_name(self, max_length: int = 63) -> str:
        """External name for this resource, unique per scope and prefix."""
        return self.scope.physical_name(self.identity.local_id, max_length)


class ResourceHandle(Mapping):
    """Resolved output of a resource, as seen by user code.

    Behaves as a read-only mapping of output fields with attribute access.
    Passing a handle (or anything containing one) as input to another
    resource records a dependency between the two.

    Attributes:
        identity: Identity of the resource that produced this output
        event: Lifecycle event that produced it
    """

    def __init__(self, output: Mapping[str, Any], identity: ResourceIdentity, event: str) -> None:
        self._output = dict(output)
        self.identity = identity
        self.event = event

    @property
    def kind(self) -> str:
        return self.identity.kind

    def __getitem__(self, key: str) -> Any:
        return self._output[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._output)

    def __len__(self) -> int:
        return len(self._output)

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._output[name]
        except KeyError:
            raise AttributeError(
                f"{self.identity.kind or 'Resource'} output has no field '{name}'"
            ) from None

    def to_dict(self) -> dict[str, Any]:
        return dict(self._output)

    def __repr__(self) -> str:
        return f"ResourceHandle({self.identity}, event={self.event}, {self._output!r})"


def find_dependencies(value: Any) -> list[ResourceHandle]:
    """Collect every ResourceHandle reachable from a resource input.

    Descends into mappings, sequences, sets, pydantic models and
    dataclasses, but not into handles themselves.
    """
    found: list[ResourceHandle] = []
    seen: set[int] = set()

    def visit(item: Any) -> None:
        if id(item) in seen:
            return
        seen.add(id(item))
        if isinstance(item, ResourceHandle):
            found.append(item)
        elif isinstance(item, BaseModel):
            for name in type(item).model_fields:
                visit(getattr(item, name))
        elif isinstance(item, Mapping):
            for v in item.values():
                visit(v)
        elif isinstance(item, (list, tuple, set, frozenset)):
            for v in item:
                visit(v)
        elif hasattr(item, "__dataclass_fields__") and not isinstance(item, type):
            for name in item.__dataclass_fields__:
                visit(getattr(item, name))

    visit(value)
    return found


class ResourceKind:
    """A named resource kind with its contract and handler.

    Instances are created by Resource() and are called to apply a resource:

        db = await Database("db-1", name="main")

    Attributes:
        kind: Kind name, unique within the process
        contract: Input/output contract
        handler: handler(ctx, props) implementing create, update and delete
    """

    def __init__(self, kind: str, contract: Contract, handler: Handler) -> None:
        self.kind = kind
        self.contract = contract
        self.handler = handler
        self.__doc__ = getattr(handler, "__doc__", None)
        self.__name__ = getattr(handler, "__name__", kind)

    def __repr__(self) -> str:
        return f"ResourceKind({self.kind!r})"

    async def __call__(
        self,
        id: str,
        props: Mapping[str, Any] | BaseModel | None = None,
        *,
        scope: Scope | None = None,
        **fields: Any,
    ) -> ResourceHandle:
        """Apply the resource called id with the given input.

        Input can be passed as a mapping or model, as keyword arguments, or
        both (keywords win).

        Args:
            id: Local id, unique within the scope
            props: Input mapping or pydantic model
            scope: Scope to declare the resource in (default: current scope)
            **fields: Input fields

        Returns:
            ResourceHandle with the resource's output

        Raises:
            ValidationError: Input does not match the contract
            DuplicateResourceError: The same id is already being applied
            ImmutableFieldChangedError: Handler refused an in-place update
            ApplyError: Handler failed during create or update
            StateStoreError: State could not be read or written
        """
        scope = scope or Scope.current()
        raw = self._merge_input(props, fields)
        identity = scope.identity_for(id, self.kind)
        validated = self.contract.validate_input(self.kind, id, raw)
        dependencies = sorted({h.identity.key for h in find_dependencies(raw)})

        if scope.phase in (Phase.READ, Phase.DESTROY):
            return await self._read(scope, identity)

        scope.begin_apply(identity)
        try:
            return await self._apply(scope, identity, raw, validated, dependencies)
        finally:
            scope.end_apply(identity)

    @staticmethod
    def _merge_input(props: Any, fields: dict[str, Any]) -> Any:
        if props is None:
            return dict(fields)
        if isinstance(props, BaseModel):
            if fields:
                return {**props.model_dump(), **fields}
            return props
        if not isinstance(props, Mapping):
            raise ValidationError(f"Resource input must be a mapping, got {type(props).__name__}")
        return {**props, **fields}

    async def _invoke(self, ctx: Context, props: Any) -> Any:
        result = self.handler(ctx, props)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _apply(
        self,
        scope: Scope,
        identity: ResourceIdentity,
        raw: Any,
        props: Any,
        dependencies: list[str],
    ) -> ResourceHandle:
        store = scope.store
        cipher = scope.cipher
        key = identity.key

        prior = await store.get(key)
        created = prior is not None and prior.was_created
        event = UPDATE if created else CREATE
        ctx = Context(
            event=event,
            identity=identity,
            scope=scope,
            quiet=scope.quiet,
            phase=scope.phase,
            prior_output=deserialize(prior.output_snapshot, cipher) if created else None,
            prior_input=deserialize(prior.input_snapshot, cipher) if created else None,
            adopt=_wants_adopt(raw),
        )
        input_snapshot = serialize(props, cipher)

        logger.info("Applying", resource=key, kind=self.kind, event=event)
        start = time.perf_counter()
        try:
            with logger.performance("Apply", resource=key, event=event):
                output = self.contract.validate_output(await self._invoke(ctx, props))
            output_snapshot = serialize(output, cipher)
        except ImmutableFieldChangedError as e:
            # Rejected update: the stored record stays as it was and is
            # still declared, so finalize keeps it
            self._annotate(e, identity, event)
            if created:
                scope.register(identity)
            self._report(scope, identity, event, start, e)
            raise
        except StateStoreError:
            raise
        except ResourceError as e:
            self._annotate(e, identity, event)
            await self._mark_failed(scope, identity, prior, input_snapshot, dependencies, e)
            self._report(scope, identity, event, start, e)
            raise
        except Exception as e:
            error = ApplyError(f"{event.capitalize()} failed: {e}", identity, event)
            await self._mark_failed(scope, identity, prior, input_snapshot, dependencies, error)
            self._report(scope, identity, event, start, error)
            raise error from e

        now = utc_now()
        record = ResourceRecord(
            identity=identity,
            status=ResourceStatus.APPLIED,
            input_snapshot=input_snapshot,
            output_snapshot=output_snapshot,
            created_at=prior.created_at if created and prior.created_at else now,
            updated_at=now,
            dependencies=dependencies,
            sequence=prior.sequence if created and prior.sequence else next_sequence(),
        )
        await store.set(key, record)
        scope.register(identity)
        self._report(scope, identity, event, start)
        return ResourceHandle(output, identity, event)

    async def _read(self, scope: Scope, identity: ResourceIdentity) -> ResourceHandle:
        """Return stored output without running the handler."""
        record = await scope.store.get(identity.key)
        if record is None or not record.was_created:
            if scope.phase == Phase.DESTROY:
                return ResourceHandle({}, identity, READ)
            raise CairnError(f"Resource {identity} has no stored state to read")
        scope.register(identity)
        output = deserialize(record.output_snapshot, scope.cipher) or {}
        logger.debug("Read from state", resource=identity.key)
        return ResourceHandle(output, identity, READ)

    async def delete(self, scope: Scope, record: ResourceRecord) -> None:
        """Run the handler's delete event for a stored record.

        The record is removed only after the handler succeeds. On failure
        it is kept with status FAILED.

        Args:
            scope: Scope matching the record's scope chain
            record: Record to delete

        Raises:
            DeleteError: If the handler raised
            StateStoreError: State could not be read or written
        """
        identity = record.identity
        cipher = scope.cipher
        start = time.perf_counter()

        try:
            props = self.contract.validate_input(
                self.kind, identity.local_id, deserialize(record.input_snapshot, cipher) or {}
            )
            ctx = Context(
                event=DELETE,
                identity=identity,
                scope=scope,
                quiet=scope.quiet,
                phase=scope.phase,
                prior_output=deserialize(record.output_snapshot, cipher),
                prior_input=props,
            )
            logger.info("Deleting", resource=identity.key, kind=self.kind)
            with logger.performance("Delete", resource=identity.key):
                await self._invoke(ctx, props)
        except StateStoreError:
            raise
        except Exception as e:
            if isinstance(e, DeleteError):
                error = e
                self._annotate(error, identity, DELETE)
            else:
                error = DeleteError(f"Delete failed: {e}", identity, DELETE)
            record.status = ResourceStatus.FAILED
            record.error = redact(str(e))
            await scope.store.set(identity.key, record)
            self._report(scope, identity, DELETE, start, error)
            if error is e:
                raise
            raise error from e

        await scope.store.delete(identity.key)
        scope.root.forget(identity.key)
        self._report(scope, identity, DELETE, start)

    async def _mark_failed(
        self,
        scope: Scope,
        identity: ResourceIdentity,
        prior: ResourceRecord | None,
        input_snapshot: Any,
        dependencies: list[str],
        error: Exception,
    ) -> None:
        """Persist FAILED status, keeping the last successful snapshots."""
        message = redact(str(error))
        if prior is not None and prior.was_created:
            record = prior
            record.status = ResourceStatus.FAILED
            record.error = message
        else:
            now = utc_now()
            record = ResourceRecord(
                identity=identity,
                status=ResourceStatus.FAILED,
                input_snapshot=input_snapshot,
                output_snapshot=None,
                created_at=now,
                updated_at=now,
                error=message,
                dependencies=dependencies,
                sequence=prior.sequence if prior is not None and prior.sequence else next_sequence(),
            )
        await scope.store.set(identity.key, record)
        # A failed resource may exist externally; destroy must find it
        scope.register(identity)

    @staticmethod
    def _annotate(error: ResourceError, identity: ResourceIdentity, event: str) -> None:
        if error.identity is None:
            error.identity = identity
        if error.event is None:
            error.event = event

    @staticmethod
    def _report(
        scope: Scope,
        identity: ResourceIdentity,
        event: str,
        start: float,
        error: Exception | None = None,
    ) -> None:
        duration = time.perf_counter() - start
        message = error.message if isinstance(error, ResourceError) else str(error or "")
        scope.record_result(
            ApplyResult(identity, event, error is None, duration, message)
        )
        if error is not None:
            logger.error(message, resource=identity.key, event=event)
        if not scope.quiet:
            console.report_event(identity, event, error is None, duration, message)


def _wants_adopt(raw: Any) -> bool:
    if isinstance(raw, Mapping):
        return bool(raw.get("adopt", False))
    return bool(getattr(raw, "adopt", False))


def Resource(
    kind: str,
    contract: Contract | None = None,
    handler: Handler | None = None,
) -> Any:
    """Define a resource kind.

    Use directly or as a decorator:

        File = Resource("fs::File", Contract(input=FileProps), file_handler)

        @Resource("fs::Folder", Contract(input=FolderProps))
        async def Folder(ctx, props): ...

    Args:
        kind: Kind name, unique within the process
        contract: Input/output contract (defaults to accepting any mapping)
        handler: handler(ctx, props); omit to use as a decorator

    Returns:
        ResourceKind, or a decorator producing one

    Raises:
        CairnError: If a different handler is already registered under kind
    """
    contract = contract or Contract()

    def register(func: Handler) -> ResourceKind:
        existing = RESOURCE_KINDS.get(kind)
        if existing is not None and not _same_handler(existing.handler, func):
            raise CairnError(f"Resource kind '{kind}' is already registered")
        resource_kind = ResourceKind(kind, contract, func)
        RESOURCE_KINDS[kind] = resource_kind
        return resource_kind

    if handler is None:
        return register
    return register(handler)


def _same_handler(a: Handler, b: Handler) -> bool:
    """Whether two handlers are the same function, e.g. after a module reload."""
    return a is b or (
        getattr(a, "__module__", None) == getattr(b, "__module__", None)
        and getattr(a, "__qualname__", None) == getattr(b, "__qualname__", None)
    )


def get_kind(kind: str) -> ResourceKind | None:
    """Look up a registered resource kind by name."""
    return RESOURCE_KINDS.get(kind)
