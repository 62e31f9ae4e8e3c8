"""Destroy orchestration.

Deletes every resource stored under a scope, dependents before the
resources they depend on. Dependencies come from the handles observed in
each resource's input when it was last applied; where none were observed,
deeper scopes go before their parents and later-created resources go
before earlier ones.

Example:
    async with app("myapp") as scope:
        ...
    await destroy(scope)          # dependents first, then their dependencies
    await destroy(scope)          # nothing left: no-op
"""

import heapq
import logging
from typing import Sequence

from cairn.exceptions import DeleteError, DestroyError, ResourceError
from cairn.scope import Scope
from cairn.state import ResourceRecord

logger = logging.getLogger(__name__)


def deletion_order(records: Sequence[ResourceRecord]) -> list[ResourceRecord]:
    """Order records so that every resource is deleted before its dependencies.

    Dependencies on records outside the given set are ignored. Among
    resources that are free to go next, the one in the deepest scope and
    then the most recently created one is chosen.

    Args:
        records: Records to delete

    Returns:
        Records in deletion order
    """
    by_key = {r.key: r for r in records}
    # Number of not-yet-deleted resources that depend on each key
    dependents: dict[str, int] = {key: 0 for key in by_key}
    for record in records:
        for dep in set(record.dependencies):
            if dep in by_key and dep != record.key:
                dependents[dep] += 1

    def priority(record: ResourceRecord) -> tuple[int, int, str]:
        return (-len(record.identity.scope_chain), -record.sequence, record.key)

    ready = [priority(by_key[k]) for k, count in dependents.items() if count == 0]
    heapq.heapify(ready)
    remaining = set(by_key)
    order: list[ResourceRecord] = []

    while remaining:
        if not ready:
            # Dependency cycle between records from different runs
            stuck = min((by_key[k] for k in remaining), key=priority)
            logger.warning(f"Dependency cycle detected at {stuck.key}; deleting by creation order")
            heapq.heappush(ready, priority(stuck))
        _, _, key = heapq.heappop(ready)
        if key not in remaining:
            continue
        remaining.discard(key)
        record = by_key[key]
        order.append(record)
        for dep in set(record.dependencies):
            if dep in remaining and dep != key:
                dependents[dep] -= 1
                if dependents[dep] == 0:
                    heapq.heappush(ready, priority(by_key[dep]))

    return order


def _dependency_closure(key: str, by_key: dict[str, ResourceRecord]) -> set[str]:
    """Keys the given record depends on, directly or transitively."""
    closure: set[str] = set()
    stack = list(by_key[key].dependencies)
    while stack:
        dep = stack.pop()
        if dep in closure or dep not in by_key:
            continue
        closure.add(dep)
        stack.extend(by_key[dep].dependencies)
    return closure


def scope_for_chain(scope: Scope, chain: Sequence[str]) -> Scope:
    """Return the descendant of scope whose chain is chain, creating it if needed."""
    base = scope.chain
    if tuple(chain[: len(base)]) != base:
        raise ValueError(f"{'/'.join(chain)} is not under scope {'/'.join(base)}")
    target = scope
    for name in chain[len(base):]:
        target = target.child(name)
    return target


async def destroy_records(scope: Scope, records: Sequence[ResourceRecord]) -> None:
    """Delete the given records in dependency order.

    When a delete fails, the resources the failed one depends on are
    skipped so nothing is removed from under a resource that still exists.
    Unrelated resources are still deleted.

    Args:
        scope: Scope the records were listed from
        records: Records to delete

    Raises:
        DeleteError: If exactly one delete failed
        DestroyError: If several deletes failed
        StateStoreError: State could not be read or written
    """
    from cairn.resource import DELETE, get_kind

    by_key = {r.key: r for r in records}
    blocked: set[str] = set()
    errors: list[ResourceError] = []

    for record in deletion_order(records):
        if record.key in blocked:
            logger.warning(f"Skipping delete of {record.key}: a dependent resource failed to delete")
            continue

        kind = get_kind(record.kind)
        try:
            if kind is None:
                raise DeleteError(
                    f"No handler registered for resource kind '{record.kind}'",
                    record.identity,
                    DELETE,
                )
            await kind.delete(scope_for_chain(scope, record.identity.scope_chain), record)
        except DeleteError as e:
            errors.append(e)
            blocked |= _dependency_closure(record.key, by_key)

    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise DestroyError(errors)


async def destroy(scope: Scope | None = None) -> None:
    """Destroy every resource stored under scope and its descendants.

    Safe to call again on a destroyed scope: with nothing stored it does
    nothing.

    Args:
        scope: Scope to destroy (default: current scope)

    Raises:
        DeleteError: If a resource failed to delete (its record is kept)
        DestroyError: If several resources failed to delete
        StateStoreError: State could not be read or written
    """
    scope = scope or Scope.current()
    chain = "/".join(scope.chain)
    records = await scope.store.list(scope.chain)
    if not records:
        logger.info(f"Nothing to destroy under {chain}")
        scope.close()
        return

    logger.info(f"Destroying {len(records)} resources under {chain}")
    await destroy_records(scope, records)
    scope.close()
