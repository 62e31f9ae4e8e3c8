"""File-system state store.

Keeps one JSON file per resource, laid out like the scope tree:

    .cairn/
      myapp/
        dev/
          db-1.json
          site/
            worker.json

The state directory is meant to be gitignored, or committed when a team
shares state and secrets are encrypted with a password.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Sequence
from urllib.parse import quote

from cairn.exceptions import StateStoreError
from cairn.state.record import ResourceRecord
from cairn.state.store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".cairn"


def _segment(name: str) -> str:
    """Encode a scope name or resource id as a single path segment."""
    encoded = quote(name, safe="")
    if encoded in (".", ".."):
        encoded = encoded.replace(".", "%2E")
    return encoded


class FileSystemStateStore(StateStore):
    """State store writing JSON records under a root directory.

    Writes go to a temporary file in the target directory and are moved into
    place with os.replace(), so a reader sees either the old record or the
    new one, never a partial file.

    Attributes:
        root: Directory holding the state tree
    """

    def __init__(self, root: str | Path = DEFAULT_STATE_DIR) -> None:
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        parts = key.split("/")
        return self.root.joinpath(*(_segment(p) for p in parts[:-1]), f"{_segment(parts[-1])}.json")

    def _read(self, path: Path) -> ResourceRecord:
        try:
            with path.open() as f:
                data = json.load(f)
            return ResourceRecord.from_dict(data)
        except OSError as e:
            raise StateStoreError(f"Cannot read state file {path}: {e}") from e
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            raise StateStoreError(f"Corrupt state file {path}: {e}") from e

    async def get(self, key: str) -> ResourceRecord | None:
        path = self._path_for(key)
        if not path.exists():
            logger.debug(f"No state for {key}")
            return None
        return self._read(path)

    async def set(self, key: str, record: ResourceRecord) -> None:
        path = self._path_for(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(record.to_dict(), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateStoreError(f"Cannot write state file {path}: {e}", key=key) from e
        except TypeError as e:
            raise StateStoreError(f"Record is not JSON serializable: {e}", key=key) from e

        logger.debug(f"State saved to {path}")

    async def delete(self, key: str) -> None:
        path = self._path_for(key)
        try:
            path.unlink(missing_ok=True)
            self._prune_empty_dirs(path.parent)
        except OSError as e:
            raise StateStoreError(f"Cannot delete state file {path}: {e}", key=key) from e

    def _prune_empty_dirs(self, directory: Path) -> None:
        """Remove now-empty scope directories up to (not including) root."""
        root = self.root.resolve()
        current = directory.resolve()
        while current != root and root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    async def list(self, chain: Sequence[str] = ()) -> list[ResourceRecord]:
        base = self.root.joinpath(*(_segment(name) for name in chain))
        if not base.is_dir():
            return []
        records = [self._read(path) for path in base.rglob("*.json")]
        records.sort(key=lambda r: r.sequence)
        logger.debug(
            f"Loaded {len(records)} records under {'/'.join(chain) or self.root}"
        )
        return records
