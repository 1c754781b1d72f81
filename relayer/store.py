"""Persistence for relay request records."""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional

from .errors import RelayConfigurationError
from .models import RequestRecord, RequestState

_DEFAULT_DIR = Path(os.environ.get("RELAYER_STATE_DIR", "storage/relayer/requests"))


class StatusStoreError(RuntimeError):
    """Raised when a persisted record cannot be read back."""


class StatusStore:
    """Abstract interface for request record persistence backends."""

    def put(self, record: RequestRecord) -> None:
        raise NotImplementedError

    def get(self, request_id: str) -> Optional[RequestRecord]:
        raise NotImplementedError

    def delete(self, request_id: str) -> None:
        raise NotImplementedError

    def list_all(self) -> List[RequestRecord]:
        raise NotImplementedError

    def list_by_state(self, state: RequestState) -> List[RequestRecord]:
        return [record for record in self.list_all() if record.state is state]

    def purge(self, older_than: float) -> int:
        """Delete terminal records last updated before ``older_than``."""

        removed = 0
        for record in self.list_all():
            if record.is_terminal and record.updated_at < older_than:
                self.delete(record.request_id)
                removed += 1
        return removed


class InMemoryStatusStore(StatusStore):
    """Keeps serialized snapshots so callers never share mutable records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, dict] = {}

    def put(self, record: RequestRecord) -> None:
        payload = record.to_dict()
        with self._lock:
            self._records[record.request_id] = payload

    def get(self, request_id: str) -> Optional[RequestRecord]:
        with self._lock:
            payload = self._records.get(request_id)
        return RequestRecord.from_dict(payload) if payload is not None else None

    def delete(self, request_id: str) -> None:
        with self._lock:
            self._records.pop(request_id, None)

    def list_all(self) -> List[RequestRecord]:
        with self._lock:
            payloads = list(self._records.values())
        return [RequestRecord.from_dict(payload) for payload in payloads]


class FileStatusStore(StatusStore):
    """Store each record as a JSON document named after its request id."""

    def __init__(self, root: Path | None = None) -> None:
        self._root = Path(root or _DEFAULT_DIR).resolve()
        self._lock = threading.Lock()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, request_id: str) -> Path:
        return self._root / f"{request_id}.json"

    def put(self, record: RequestRecord) -> None:
        payload = record.to_dict()
        with self._lock:
            tmp_path = self._path(record.request_id).with_suffix(".json.tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False, sort_keys=True)
            tmp_path.replace(self._path(record.request_id))

    def get(self, request_id: str) -> Optional[RequestRecord]:
        path = self._path(request_id)
        with self._lock:
            if not path.exists():
                return None
            try:
                with path.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except (OSError, json.JSONDecodeError) as exc:
                raise StatusStoreError(f"Failed to load persisted request {request_id}: {exc}") from exc
        return RequestRecord.from_dict(data)

    def delete(self, request_id: str) -> None:
        path = self._path(request_id)
        with self._lock:
            if path.exists():
                path.unlink()

    def list_all(self) -> List[RequestRecord]:
        records = []
        for path in sorted(self._root.glob("*.json")):
            record = self.get(path.stem)
            if record is not None:
                records.append(record)
        return records


def get_store(backend: str = "memory", path: Optional[str | Path] = None) -> StatusStore:
    """Return a status store for ``backend`` (``memory`` or ``file``)."""

    name = backend.lower()
    if name == "memory":
        return InMemoryStatusStore()
    if name == "file":
        return FileStatusStore(Path(path) if path else None)
    raise RelayConfigurationError(f"unknown status store backend: {backend}")
