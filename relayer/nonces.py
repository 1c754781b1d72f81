"""Per-principal sequence tracking."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

from .models import NonceRecord

logger = logging.getLogger(__name__)


class NonceStore:
    """Storage interface with compare-and-set semantics."""

    def get(self, principal: str) -> int:
        raise NotImplementedError

    def compare_and_set(self, principal: str, expected: int, new: int) -> bool:
        raise NotImplementedError

    def snapshot(self) -> Dict[str, int]:
        raise NotImplementedError


class InMemoryNonceStore(NonceStore):
    def __init__(self, initial: Optional[Dict[str, int]] = None) -> None:
        self._lock = threading.Lock()
        self._values: Dict[str, int] = dict(initial or {})

    def get(self, principal: str) -> int:
        with self._lock:
            return self._values.get(principal, 0)

    def compare_and_set(self, principal: str, expected: int, new: int) -> bool:
        with self._lock:
            if self._values.get(principal, 0) != expected:
                return False
            self._values[principal] = new
            return True

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._values)


class FileNonceStore(InMemoryNonceStore):
    """Nonce store persisted to a JSON document after every successful swap."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        initial: Dict[str, int] = {}
        if self._path.exists():
            with self._path.open("r", encoding="utf-8") as handle:
                initial = {str(key): int(value) for key, value in json.load(handle).items()}
        super().__init__(initial)

    def compare_and_set(self, principal: str, expected: int, new: int) -> bool:
        with self._lock:
            if self._values.get(principal, 0) != expected:
                return False
            self._values[principal] = new
            self._flush()
            return True

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._values, handle, sort_keys=True)
        tmp_path.replace(self._path)


class ReservationOutcome(str, Enum):
    ACCEPTED = "accepted"
    STALE = "stale"
    FUTURE_GAP = "future_gap"


@dataclass(frozen=True)
class NonceReservation:
    principal: str
    sequence: int
    outcome: ReservationOutcome
    expected: int

    @property
    def accepted(self) -> bool:
        return self.outcome is ReservationOutcome.ACCEPTED


class NonceTracker:
    """Optimistic per-principal nonce reservation.

    A successful :meth:`reserve` commits ``sequence + 1`` immediately so two
    concurrent requests can never observe the same expected value. Sequences
    that do not match are rejected outright rather than buffered.
    """

    def __init__(self, store: Optional[NonceStore] = None) -> None:
        self._store = store or InMemoryNonceStore()
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    @property
    def store(self) -> NonceStore:
        return self._store

    def _lock_for(self, principal: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(principal)
            if lock is None:
                lock = self._locks[principal] = threading.Lock()
            return lock

    def expected(self, principal: str) -> int:
        return self._store.get(principal)

    def record(self, principal: str) -> NonceRecord:
        return NonceRecord(principal=principal, next_expected=self._store.get(principal))

    def reserve(self, principal: str, sequence: int) -> NonceReservation:
        with self._lock_for(principal):
            while True:
                current = self._store.get(principal)
                if sequence < current:
                    outcome = ReservationOutcome.STALE
                elif sequence > current:
                    outcome = ReservationOutcome.FUTURE_GAP
                elif self._store.compare_and_set(principal, current, sequence + 1):
                    outcome = ReservationOutcome.ACCEPTED
                else:
                    # Another writer sharing the store moved the counter; classify again.
                    continue
                return NonceReservation(principal=principal, sequence=sequence, outcome=outcome, expected=current)

    def release(self, principal: str, sequence: int) -> bool:
        """Return ``sequence`` to the principal unless a later one was reserved."""

        with self._lock_for(principal):
            released = self._store.compare_and_set(principal, sequence + 1, sequence)
        if not released:
            logger.warning(
                "nonce release refused for %s sequence %s; a later sequence was reserved",
                principal,
                sequence,
            )
        return released
