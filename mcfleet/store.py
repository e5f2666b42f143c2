from __future__ import annotations

import json
import os
import tempfile
from contextlib import contextmanager
from threading import RLock
from typing import Iterator

from .errors import StoreIOError
from .models import Workload


def atomic_write_text(path: str, text: str) -> None:
    """Replace ``path`` with ``text`` so readers never see a half-written file."""
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


class WorkloadStore:
    """The servers-config.json document: every workload, read and written whole.

    Known limitation: mutations are read-modify-write of the full document.
    The lock serializes writers inside this process only; a second process
    writing the same file can lose an update.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = RLock()

    def read_all(self) -> list[Workload]:
        with self._lock:
            if not os.path.exists(self.path):
                self.write_all([])
                return []
            try:
                with open(self.path, encoding="utf-8") as fh:
                    raw = json.load(fh)
            except (OSError, ValueError) as e:
                raise StoreIOError(f"Cannot read {self.path}: {e}") from e
            if not isinstance(raw, list):
                raise StoreIOError(f"{self.path} does not contain a list of servers.")
            try:
                return [Workload.from_dict(item) for item in raw]
            except (TypeError, ValueError) as e:
                raise StoreIOError(f"Corrupt server record in {self.path}: {e}") from e

    def write_all(self, workloads: list[Workload]) -> None:
        payload = json.dumps([w.to_dict() for w in workloads], indent=2, ensure_ascii=False)
        with self._lock:
            try:
                atomic_write_text(self.path, payload + "\n")
            except OSError as e:
                raise StoreIOError(f"Cannot write {self.path}: {e}") from e

    def get(self, workload_id: str) -> Workload | None:
        for w in self.read_all():
            if w.id == workload_id:
                return w
        return None

    @contextmanager
    def mutate(self) -> Iterator[list[Workload]]:
        """Read the collection, let the caller edit the list in place, write it back.

        Nothing is written if the block raises.
        """
        with self._lock:
            items = self.read_all()
            yield items
            self.write_all(items)
