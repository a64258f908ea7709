from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from taskorch.errors import TransientStorageError
from taskorch.models import utcnow_iso
from taskorch.store.memory import InMemoryTaskRepository, Tables, empty_tables


class JsonFileTaskRepository(InMemoryTaskRepository):
    """Single-file repository shared between the coordinator and the CLI.

    Writes hold an exclusive lock file and bump the envelope revision; reads
    load the latest committed envelope without locking.
    """

    SCHEMA_VERSION = 1

    def __init__(self, path: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        super().__init__()
        self.path = path.resolve()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.path.with_name(f"{self.path.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self._depth = 0

    @contextmanager
    def _state_lock(self) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise TransientStorageError(
                        f"Timed out waiting for state lock: {self.lock_file}"
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self) -> dict[str, Any]:
        if not self.path.exists():
            return {"schema_version": self.SCHEMA_VERSION, "revision": 0, "data": empty_tables()}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TransientStorageError(f"State file is being rewritten: {self.path}") from exc
        data = empty_tables()
        data.update(raw.get("data", {}))
        return {
            "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
            "revision": int(raw.get("revision") or 0),
            "data": data,
        }

    def _write_envelope(self, revision: int, data: Tables) -> None:
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": revision,
            "updated_at": utcnow_iso(),
            "data": data,
        }
        serialized = json.dumps(envelope, ensure_ascii=False, separators=(",", ":"))
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(serialized, encoding="utf-8")
        os.replace(tmp_path, self.path)

    @property
    def revision(self) -> int:
        return int(self._read_envelope()["revision"])

    @contextmanager
    def _transaction(self) -> Iterator[Tables]:
        if self._depth:
            yield self._tables
            return
        with self._state_lock():
            envelope = self._read_envelope()
            self._tables = envelope["data"]
            self._depth += 1
            try:
                yield self._tables
            finally:
                self._depth -= 1
            self._write_envelope(envelope["revision"] + 1, self._tables)

    @contextmanager
    def _snapshot(self) -> Iterator[Tables]:
        if self._depth:
            yield self._tables
            return
        yield self._read_envelope()["data"]
