"""Tests for the resource lifecycle engine."""

import asyncio

import pytest
from pydantic import BaseModel

from cairn import (
    ApplyError,
    CairnError,
    Contract,
    DuplicateResourceError,
    ImmutableFieldChangedError,
    MemoryStateStore,
    Phase,
    Resource,
    ResourceHandle,
    Scope,
    ScopeOptions,
    ValidationError,
)
from cairn.resource import RESOURCE_KINDS, find_dependencies, get_kind
from cairn.state import ResourceIdentity, ResourceStatus

CALLS: list[tuple[str, str]] = []
FAILURES: dict[str, str] = {}


class DatabaseProps(BaseModel):
    name: str
    region: str = "us-east-1"
    adopt: bool = False


class DatabaseOutput(BaseModel):
    id: str
    name: str
    region: str
    adopted: bool = False


@Resource("test::Database", Contract(input=DatabaseProps, output=DatabaseOutput))
async def Database(ctx, props):
    CALLS.append((ctx.event, ctx.id))
    if ctx.event == "delete":
        return None
    if FAILURES.get(ctx.id) == ctx.event:
        raise RuntimeError(f"{ctx.event} exploded")
    if ctx.event == "update" and ctx.output["region"] != props.region:
        raise ImmutableFieldChangedError("region", ctx.output["region"], props.region)
    return DatabaseOutput(
        id=f"db-{props.name}",
        name=props.name,
        region=props.region,
        adopted=ctx.adopt,
    )


@Resource("test::Worker")
def Worker(ctx, props):
    CALLS.append((ctx.event, ctx.id))
    if ctx.event == "delete":
        return None
    return {"database": props["database"]["id"], "size": props.get("size", 1)}


@pytest.fixture(autouse=True)
def reset_calls():
    CALLS.clear()
    FAILURES.clear()
    yield
    CALLS.clear()
    FAILURES.clear()


def make_root(store=None, **options):
    return Scope("app", ScopeOptions(quiet=True, state_store=store if store is not None else MemoryStateStore(), **options))


class TestCreateAndUpdate:
    """Tests for event selection between create and update."""

    @pytest.mark.asyncio
    async def test_first_apply_creates(self):
        """Test that a resource with no record is created."""
        root = make_root()
        async with root:
            db = await Database("db-1", name="main")

        assert isinstance(db, ResourceHandle)
        assert db.event == "create"
        assert db.id == "db-main"
        assert db["region"] == "us-east-1"
        assert CALLS == [("create", "db-1")]

        record = await root.store.get("app/db-1")
        assert record.status == ResourceStatus.APPLIED
        assert record.kind == "test::Database"
        assert record.output_snapshot["id"] == "db-main"
        assert record.input_snapshot["name"] == "main"

    @pytest.mark.asyncio
    async def test_second_run_updates(self):
        """Test that a resource with a stored record is updated."""
        store = MemoryStateStore()
        first = make_root(store)
        async with first:
            await Database("db-1", name="main")

        second = make_root(store)
        async with second:
            db = await Database("db-1", name="main")

        assert db.event == "update"
        assert CALLS == [("create", "db-1"), ("update", "db-1")]

    @pytest.mark.asyncio
    async def test_update_keeps_created_at_and_sequence(self):
        """Test that updates keep creation metadata."""
        store = MemoryStateStore()
        first = make_root(store)
        async with first:
            await Database("db-1", name="main")
        created = await store.get("app/db-1")

        second = make_root(store)
        async with second:
            await Database("db-1", name="renamed")
        updated = await store.get("app/db-1")

        assert updated.created_at == created.created_at
        assert updated.sequence == created.sequence
        assert updated.input_snapshot["name"] == "renamed"

    @pytest.mark.asyncio
    async def test_sequential_redeclare_in_one_run(self):
        """Test that declaring the same id twice in sequence is an update."""
        root = make_root()
        async with root:
            await Database("db-1", name="main")
            again = await Database("db-1", name="main")

        assert again.event == "update"

    @pytest.mark.asyncio
    async def test_immutable_change_leaves_record_untouched(self):
        """Test that a rejected update does not modify stored state."""
        store = MemoryStateStore()
        first = make_root(store)
        async with first:
            await Database("db-1", name="main", region="us-east-1")
        before = (await store.get("app/db-1")).to_dict()

        second = make_root(store)
        async with second:
            with pytest.raises(ImmutableFieldChangedError) as exc_info:
                await Database("db-1", name="main", region="eu-west-1")

        error = exc_info.value
        assert error.field == "region"
        assert error.identity.key == "app/db-1"
        assert error.event == "update"
        assert "Cannot update region" in str(error)
        assert (await store.get("app/db-1")).to_dict() == before

    @pytest.mark.asyncio
    async def test_rejected_update_survives_finalize(self):
        """Test that a caught immutable-field rejection does not orphan the resource."""
        store = MemoryStateStore()
        first = make_root(store)
        async with first.run("s"):
            await Database("db-1", name="main", region="us-east-1")
        before = (await store.get("app/s/db-1")).to_dict()
        CALLS.clear()

        second = make_root(store)
        async with second.run("s") as scope:
            with pytest.raises(ImmutableFieldChangedError):
                await Database("db-1", name="main", region="eu-west-1")
            assert [i.key for i in scope.resources] == ["app/s/db-1"]

        assert ("delete", "db-1") not in CALLS
        assert (await store.get("app/s/db-1")).to_dict() == before

    @pytest.mark.asyncio
    async def test_sync_handler(self):
        """Test that plain functions work as handlers."""
        root = make_root()
        async with root:
            db = await Database("db-1", name="main")
            worker = await Worker("w", database=db)

        assert worker.database == "db-main"
        assert worker.size == 1

    @pytest.mark.asyncio
    async def test_props_as_mapping_and_keywords(self):
        """Test that keyword fields override the props mapping."""
        root = make_root()
        async with root:
            db = await Database("db-1", {"name": "a", "region": "x"}, region="y")

        assert db.name == "a"
        assert db.region == "y"

    @pytest.mark.asyncio
    async def test_explicit_scope(self):
        """Test declaring a resource without a current scope."""
        root = make_root()
        db = await Database("db-1", name="main", scope=root)
        assert db.identity.key == "app/db-1"


class TestFailures:
    """Tests for failure bookkeeping."""

    @pytest.mark.asyncio
    async def test_failed_create_is_recorded_and_retried_as_create(self):
        """Test that a failed create stores the attempted input and retries as create."""
        store = MemoryStateStore()
        FAILURES["db-1"] = "create"
        first = make_root(store)
        async with first:
            with pytest.raises(ApplyError) as exc_info:
                await Database("db-1", name="main")

        error = exc_info.value
        assert error.event == "create"
        assert error.identity.key == "app/db-1"
        assert isinstance(error.__cause__, RuntimeError)
        assert "create exploded" in str(error)

        record = await store.get("app/db-1")
        assert record.status == ResourceStatus.FAILED
        assert record.output_snapshot is None
        assert record.input_snapshot["name"] == "main"
        assert "create exploded" in record.error

        FAILURES.clear()
        second = make_root(store)
        async with second:
            db = await Database("db-1", name="main")
        assert db.event == "create"
        assert (await store.get("app/db-1")).status == ResourceStatus.APPLIED

    @pytest.mark.asyncio
    async def test_failed_update_keeps_prior_snapshots(self):
        """Test that a failed update keeps the last good input and output."""
        store = MemoryStateStore()
        first = make_root(store)
        async with first:
            await Database("db-1", name="main")

        FAILURES["db-1"] = "update"
        second = make_root(store)
        async with second:
            with pytest.raises(ApplyError):
                await Database("db-1", name="other")

        record = await store.get("app/db-1")
        assert record.status == ResourceStatus.FAILED
        assert record.input_snapshot["name"] == "main"
        assert record.output_snapshot["id"] == "db-main"

        FAILURES.clear()
        third = make_root(store)
        async with third:
            db = await Database("db-1", name="other")
        assert db.event == "update"

    @pytest.mark.asyncio
    async def test_invalid_output_is_an_apply_error(self):
        """Test that output not matching the output model fails the apply."""

        @Resource("test::BadOutput", Contract(output=DatabaseOutput))
        async def BadOutput(ctx, props):
            return {"id": "x"}

        root = make_root()
        async with root:
            with pytest.raises(ApplyError):
                await BadOutput("bad")

        record = await root.store.get("app/bad")
        assert record.status == ResourceStatus.FAILED

    @pytest.mark.asyncio
    async def test_failure_is_recorded_in_results(self):
        """Test that failures are collected on the root scope."""
        FAILURES["db-1"] = "create"
        root = make_root()
        async with root:
            with pytest.raises(ApplyError):
                await Database("db-1", name="main")

        assert len(root.results) == 1
        assert root.results[0].success is False
        assert root.results[0].event == "create"

    @pytest.mark.asyncio
    async def test_failure_logged_once(self, caplog):
        """Test that the error log line carries the event prefix only once."""
        FAILURES["db-1"] = "create"
        root = make_root()
        with caplog.at_level("ERROR", logger="cairn"):
            async with root:
                with pytest.raises(ApplyError):
                    await Database("db-1", name="main")

        messages = [r.getMessage() for r in caplog.records if r.levelname == "ERROR"]
        assert len(messages) == 1
        assert messages[0].startswith("Create failed: create exploded")
        assert "Create failed: Create failed" not in messages[0]


class TestValidation:
    """Tests for input validation."""

    @pytest.mark.asyncio
    async def test_invalid_input_touches_nothing(self):
        """Test that invalid input fails before state or handler are used."""
        root = make_root()
        async with root:
            with pytest.raises(ValidationError) as exc_info:
                await Database("db-1", region="us-east-1")

        assert exc_info.value.kind == "test::Database"
        assert exc_info.value.resource_id == "db-1"
        assert exc_info.value.errors
        assert CALLS == []
        assert len(root.store) == 0

    @pytest.mark.asyncio
    async def test_non_mapping_props(self):
        """Test that props must be a mapping or model."""
        root = make_root()
        async with root:
            with pytest.raises(ValidationError):
                await Database("db-1", ["name"])

    @pytest.mark.asyncio
    async def test_model_instance_props(self):
        """Test passing a pydantic model instance as props."""
        root = make_root()
        async with root:
            db = await Database("db-1", DatabaseProps(name="main"))
        assert db.name == "main"

    @pytest.mark.asyncio
    async def test_invalid_id(self):
        """Test that ids containing '/' are rejected."""
        root = make_root()
        async with root:
            with pytest.raises(CairnError):
                await Database("a/b", name="main")

    @pytest.mark.asyncio
    async def test_no_scope(self):
        """Test that declaring outside any scope fails."""
        with pytest.raises(CairnError, match="No scope is open"):
            await Database("db-1", name="main")


class TestConcurrency:
    """Tests for concurrent applies."""

    @pytest.mark.asyncio
    async def test_independent_resources_run_concurrently(self):
        """Test gathering independent resources."""
        root = make_root()
        async with root:
            a, b = await asyncio.gather(
                Database("a", name="a"),
                Database("b", name="b"),
            )

        assert a.id == "db-a"
        assert b.id == "db-b"
        assert len(root.store) == 2

    @pytest.mark.asyncio
    async def test_duplicate_in_flight_identity(self):
        """Test that a second apply of an in-flight identity is rejected."""
        gate = asyncio.Event()

        @Resource("test::Slow")
        async def Slow(ctx, props):
            await gate.wait()
            return {"ok": True}

        root = make_root()
        async with root:
            first = asyncio.create_task(Slow("s"))
            await asyncio.sleep(0)
            with pytest.raises(DuplicateResourceError):
                await Slow("s")
            gate.set()
            handle = await first

        assert handle.ok is True
        assert len(root.store) == 1


class TestDependencies:
    """Tests for observed data dependencies."""

    @pytest.mark.asyncio
    async def test_dependency_recorded(self):
        """Test that handles in input become dependencies."""
        root = make_root()
        async with root:
            db = await Database("db-1", name="main")
            await Worker("w", database=db)

        record = await root.store.get("app/w")
        assert record.dependencies == ["app/db-1"]
        assert record.input_snapshot["database"]["id"] == "db-main"

    def test_find_dependencies_nested(self):
        """Test finding handles nested in containers."""
        ident = ResourceIdentity(("app",), "x", "k")
        handle = ResourceHandle({"id": 1}, ident, "create")
        found = find_dependencies({"a": [1, {"b": (handle,)}], "c": "plain"})
        assert found == [handle]

    def test_find_dependencies_in_model(self):
        """Test finding handles inside pydantic models."""

        class Holder(BaseModel):
            model_config = {"arbitrary_types_allowed": True}
            ref: ResourceHandle

        handle = ResourceHandle({}, ResourceIdentity(("app",), "y"), "create")
        assert find_dependencies(Holder(ref=handle)) == [handle]


class TestAdoptAndPhases:
    """Tests for adopt passthrough and run phases."""

    @pytest.mark.asyncio
    async def test_adopt_passed_to_handler(self):
        """Test that adopt=True reaches the handler context."""
        root = make_root()
        async with root:
            db = await Database("db-1", name="main", adopt=True)
        assert db.adopted is True

    @pytest.mark.asyncio
    async def test_read_phase_returns_stored_output(self):
        """Test that read phase does not call handlers."""
        store = MemoryStateStore()
        up = make_root(store)
        async with up:
            await Database("db-1", name="main")
        CALLS.clear()

        read = make_root(store, phase=Phase.READ)
        async with read:
            db = await Database("db-1", name="main")

        assert db.event == "read"
        assert db.id == "db-main"
        assert CALLS == []

    @pytest.mark.asyncio
    async def test_read_phase_missing_record(self):
        """Test that reading a resource that was never applied fails."""
        root = make_root(phase=Phase.READ)
        async with root:
            with pytest.raises(CairnError, match="no stored state"):
                await Database("db-1", name="main")

    @pytest.mark.asyncio
    async def test_destroy_phase_missing_record(self):
        """Test that destroy phase yields an empty handle for unknown resources."""
        root = make_root(phase=Phase.DESTROY)
        async with root:
            db = await Database("db-1", name="main")
        assert len(db) == 0
        assert CALLS == []


class TestRegistry:
    """Tests for the resource kind registry."""

    def test_kind_registered(self):
        """Test that defined kinds can be looked up."""
        assert get_kind("test::Database") is Database
        assert "test::Worker" in RESOURCE_KINDS

    def test_conflicting_kind(self):
        """Test that a different handler cannot take an existing kind name."""

        def other(ctx, props):
            return {}

        with pytest.raises(CairnError, match="already registered"):
            Resource("test::Database", Contract(), other)

    def test_handle_attribute_error(self):
        """Test missing output fields raise AttributeError."""
        handle = ResourceHandle({"a": 1}, ResourceIdentity(("app",), "x", "K"), "create")
        assert handle.a == 1
        assert dict(handle) == {"a": 1}
        with pytest.raises(AttributeError, match="no field 'b'"):
            handle.b
