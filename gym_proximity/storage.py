"""Device key-value storage.

``JsonFileStorage`` persists a JSON snapshot plus an append-only journal so every ``set_item``
is durable immediately, and ``flush`` compacts the journal into the snapshot.
``MemoryStorage`` is the in-process equivalent.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised by strict storages when the snapshot cannot be parsed."""


class KeyValueStorage(Protocol):
    def get_item(self, key: str) -> Any | None: ...

    def set_item(self, key: str, value: Any) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed storage."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get_item(self, key: str) -> Any | None:
        return self._data.get(key)

    def set_item(self, key: str, value: Any) -> None:
        # Round-trip through JSON so stored values behave like persisted ones.
        self._data[key] = json.loads(json.dumps(value))

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class JsonFileStorage:
    """JSON storage persisted on disk (key -> JSON value)."""

    def __init__(self, path: str | Path, *, strict: bool = False) -> None:
        self._path = Path(path).expanduser()
        # Example: storage.json -> storage.journal.jsonl
        self._journal_path = self._path.with_name(f"{self._path.stem}.journal.jsonl")
        self._strict = strict
        self._data: dict[str, Any] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> None:
        """Load snapshot and replay the journal (no-op if already loaded)."""

        if self._loaded:
            return
        self._data = {}
        if self._path.exists():
            text = self._path.read_text(encoding="utf-8").strip()
            if text:
                try:
                    data = json.loads(text)
                except json.JSONDecodeError as exc:
                    if self._strict:
                        raise StorageError(f"corrupted storage file: {self._path}") from exc
                    # Keep a backup and start fresh
                    backup = self._path.with_suffix(self._path.suffix + ".broken")
                    backup.write_text(text, encoding="utf-8")
                    logger.warning("Storage file %s is corrupted; backed up to %s", self._path, backup)
                    data = {}
                if isinstance(data, dict):
                    self._data = data

        self._replay_journal()
        self._loaded = True

    def get_item(self, key: str) -> Any | None:
        self.load()
        return self._data.get(key)

    def set_item(self, key: str, value: Any) -> None:
        self.load()
        self._data[key] = value
        self._append_journal({"k": key, "v": value})

    def remove_item(self, key: str) -> None:
        self.load()
        if key not in self._data:
            return
        del self._data[key]
        self._append_journal({"k": key, "d": True})

    def keys(self) -> list[str]:
        self.load()
        return list(self._data)

    def flush(self) -> None:
        """Persist a full snapshot (atomic-ish) and clear the journal."""

        self.load()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(self._path)
        self._clear_journal()

    def _append_journal(self, record: dict[str, Any]) -> None:
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)
        with self._journal_path.open("a", encoding="utf-8", newline="\n") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

    def _replay_journal(self) -> None:
        """Replay journal entries into memory (best-effort)."""

        if not self._journal_path.exists():
            return
        try:
            with self._journal_path.open("r", encoding="utf-8") as f:
                for line in f:
                    s = line.strip()
                    if not s:
                        continue
                    try:
                        rec = json.loads(s)
                    except json.JSONDecodeError:
                        # ignore broken tail lines
                        continue
                    if not isinstance(rec, dict):
                        continue
                    k = rec.get("k")
                    if not isinstance(k, str):
                        continue
                    if rec.get("d"):
                        self._data.pop(k, None)
                    elif "v" in rec:
                        self._data[k] = rec["v"]
        except OSError:
            logger.warning("Cannot read storage journal %s", self._journal_path, exc_info=True)

    def _clear_journal(self) -> None:
        try:
            if self._journal_path.exists():
                self._journal_path.unlink()
        except OSError:
            logger.warning("Cannot remove storage journal %s", self._journal_path, exc_info=True)
