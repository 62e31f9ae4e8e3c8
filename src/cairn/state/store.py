"""State store contract and the in-memory implementation."""

import copy
import logging
from abc import ABC, abstractmethod
from typing import Sequence

from cairn.state.record import ResourceRecord

logger = logging.getLogger(__name__)


def is_under(record: ResourceRecord, chain: Sequence[str]) -> bool:
    """Whether a record was declared in the scope chain or below it."""
    chain = tuple(chain)
    return record.identity.scope_chain[: len(chain)] == chain


class StateStore(ABC):
    """Persists one ResourceRecord per resource identity key.

    Implementations must make each set() and delete() atomic for a single
    record. The engine never has two applies of the same key in flight, so
    stores need no locking beyond that.

    All methods raise StateStoreError when the medium is unavailable.
    """

    @abstractmethod
    async def get(self, key: str) -> ResourceRecord | None:
        """Return the record stored under key, or None."""

    @abstractmethod
    async def set(self, key: str, record: ResourceRecord) -> None:
        """Store record under key, replacing any previous record."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the record under key. Missing keys are ignored."""

    @abstractmethod
    async def list(self, chain: Sequence[str] = ()) -> list[ResourceRecord]:
        """Return records declared in chain or below, in creation order."""

    async def count(self, chain: Sequence[str] = ()) -> int:
        """Number of records under chain."""
        return len(await self.list(chain))


class MemoryStateStore(StateStore):
    """Dict-backed store for tests and throwaway runs.

    Records are copied on the way in and out, so callers never share
    mutable state with the store.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict] = {}

    async def get(self, key: str) -> ResourceRecord | None:
        data = self._records.get(key)
        if data is None:
            return None
        return ResourceRecord.from_dict(copy.deepcopy(data))

    async def set(self, key: str, record: ResourceRecord) -> None:
        self._records[key] = copy.deepcopy(record.to_dict())
        logger.debug(f"Stored {key} ({record.status.value})")

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def list(self, chain: Sequence[str] = ()) -> list[ResourceRecord]:
        records = [
            ResourceRecord.from_dict(copy.deepcopy(data)) for data in self._records.values()
        ]
        return sorted(
            (r for r in records if is_under(r, chain)),
            key=lambda r: r.sequence,
        )

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, key: str) -> bool:
        return key in self._records
