"""
Persistence port.

Replaces a shared JSON state file with an explicit, injectable port:
- save(key, value): store a JSON-serializable value
- load(key): return the stored value or None

Implementations:
- InMemoryStore: process-local, used in tests and when no file is set
- JsonFileStore: one JSON document on disk, written atomically
"""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from observability.logger import log_event


@runtime_checkable
class PersistencePort(Protocol):
    def save(self, key: str, value: Any) -> None: ...
    def load(self, key: str) -> Any | None: ...


class InMemoryStore:
    """Dict-backed store. Values are copied through JSON to mimic disk."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def save(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
            return
        self._data[key] = json.dumps(value)

    def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None


class JsonFileStore:
    """
    Single JSON document keyed by name.

    - Reads tolerate a missing or corrupt file (treated as empty)
    - Writes go to a temp file in the same directory, then os.replace()
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def _read_all(self) -> dict[str, Any]:
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as e:
            log_event({
                "event_type": "STATE_FILE_UNREADABLE",
                "path": str(self._path),
                "error": str(e),
            })
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, key: str, value: Any) -> None:
        data = self._read_all()
        if value is None:
            data.pop(key, None)
        else:
            data[key] = value

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self._path.name}.", dir=str(self._path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def load(self, key: str) -> Any | None:
        return self._read_all().get(key)
