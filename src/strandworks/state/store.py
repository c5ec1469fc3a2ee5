from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from strandworks.models import Document, utcnow_iso

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StoreError(RuntimeError):
    """Raised when the entity store cannot be read, locked or written."""


class EntityStore:
    """File-backed document store with a single-writer discipline.

    Every read-mutate-write goes through :meth:`transaction`, which holds an
    in-process re-entrant lock and an on-disk lock file for its whole
    duration. Nested transactions on the same thread share the outer
    document and the outer save.
    """

    SCHEMA_VERSION = 1
    FILE_NAME = "strandworks.json"

    def __init__(self, data_dir: Path, *, lock_timeout_seconds: float = 3.0) -> None:
        self.data_dir = data_dir.resolve()
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.data_file = self.data_dir / self.FILE_NAME
        self.lock_file = self.data_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds
        self._mutex = threading.RLock()
        self._depth = 0
        self._active: Document | None = None

    @staticmethod
    def new_id(prefix: str = "item") -> str:
        return f"{prefix}_{uuid4().hex[:12]}"

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
                    raise StoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)
            except OSError as exc:
                raise StoreError(f"Could not create state lock: {exc}") from exc

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self) -> Any:
        if not self.data_file.exists():
            return None
        try:
            content = self.data_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise StoreError(f"Could not read {self.data_file}: {exc}") from exc
        if not content.strip():
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            raise StoreError(f"Corrupt state file {self.data_file}: {exc}") from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or utcnow_iso(),
                "data": raw_payload.get("data") or {},
            }

        # Legacy files hold the bare document.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": utcnow_iso(),
            "data": raw_payload if isinstance(raw_payload, dict) else {},
        }

    def _write_raw_json(self, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        try:
            fd, tmp_name = tempfile.mkstemp(
                prefix=".strandworks-", suffix=".json", dir=self.data_dir
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(serialized)
                    handle.flush()
                    os.fsync(handle.fileno())
                os.replace(tmp_name, self.data_file)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as exc:
            raise StoreError(f"Could not write {self.data_file}: {exc}") from exc

    def get_envelope(self) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw_json())

    @property
    def revision(self) -> int:
        return int(self.get_envelope()["revision"])

    def _load_unlocked(self) -> Document:
        return Document.from_dict(self.get_envelope()["data"])

    def _save_unlocked(self, document: Document) -> None:
        current = self.get_envelope()
        envelope = {
            "schema_version": self.SCHEMA_VERSION,
            "revision": int(current["revision"]) + 1,
            "updated_at": utcnow_iso(),
            "data": document.to_dict(),
        }
        self._write_raw_json(envelope)

    def load(self) -> Document:
        """Return a fresh working copy of the persisted document."""
        with self._mutex:
            if self._active is not None:
                return Document.from_dict(self._active.to_dict())
            return self._load_unlocked()

    def save(self, document: Document) -> None:
        with self.transaction() as active:
            if active is document:
                return
            replacement = Document.from_dict(document.to_dict())
            active.strands = replacement.strands
            active.goals = replacement.goals
            active.session_index = replacement.session_index
            active.session_strand_index = replacement.session_strand_index

    @contextmanager
    def transaction(self) -> Iterator[Document]:
        with self._mutex:
            if self._active is not None:
                self._depth += 1
                try:
                    yield self._active
                finally:
                    self._depth -= 1
                return

            with self._state_lock():
                document = self._load_unlocked()
                self._active = document
                self._depth = 1
                try:
                    yield document
                    self._save_unlocked(document)
                finally:
                    self._active = None
                    self._depth = 0

    def update(self, updater: Callable[[Document], T]) -> T:
        with self.transaction() as document:
            return updater(document)
