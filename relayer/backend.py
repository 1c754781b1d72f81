"""Boundary with the execution backend."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from eth_utils import keccak

from .errors import BackendUnavailable
from .models import Authorization, Budget, Operation


@dataclass(frozen=True)
class SimulationResult:
    ok: bool
    cost: int = 0
    unit_price: Optional[int] = None
    revert_reason: Optional[str] = None


class FinalityStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


@dataclass(frozen=True)
class FinalityResult:
    status: FinalityStatus
    receipt: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None
    cost: Optional[int] = None


class ExecutionBackend(Protocol):
    """Operations the relay needs from the ledger that executes operations.

    Implementations raise :class:`relayer.errors.BackendUnavailable` for
    transient transport problems; every other outcome is reported through
    the return values.
    """

    async def simulate(self, operation: Operation) -> SimulationResult:  # pragma: no cover - protocol
        ...

    async def submit(self, authorization: Authorization, budget: Budget) -> str:  # pragma: no cover - protocol
        ...

    async def await_finality(self, reference: str, timeout: float) -> FinalityResult:  # pragma: no cover - protocol
        ...


class InMemoryExecutionBackend:
    """Deterministic in-process backend used for demos and testing.

    Outcomes can be scripted per target (reverts) or per call (outages and
    results that never finalize). It also tracks how many submissions are in
    flight at once so callers can assert concurrency bounds.
    """

    def __init__(
        self,
        *,
        gas_cost: int = 50_000,
        unit_price: int = 1_000_000_000,
        latency: float = 0.0,
    ) -> None:
        self.gas_cost = gas_cost
        self.unit_price = unit_price
        self.latency = latency
        self.simulate_reverts: Dict[str, str] = {}
        self.execution_reverts: Dict[str, str] = {}
        self.never_finalize: set[str] = set()
        self.unavailable_calls = 0
        self.submissions: List[Authorization] = []
        self.simulations = 0
        self.peak_inflight = 0
        self._inflight: set[str] = set()
        self._counter = itertools.count(1)
        self._results: Dict[str, FinalityResult] = {}

    def _maybe_fail(self) -> None:
        if self.unavailable_calls > 0:
            self.unavailable_calls -= 1
            raise BackendUnavailable("execution backend unreachable")

    async def simulate(self, operation: Operation) -> SimulationResult:
        self._maybe_fail()
        self.simulations += 1
        if operation.target in self.simulate_reverts:
            return SimulationResult(ok=False, revert_reason=self.simulate_reverts[operation.target])
        return SimulationResult(ok=True, cost=self.gas_cost, unit_price=self.unit_price)

    async def submit(self, authorization: Authorization, budget: Budget) -> str:
        self._maybe_fail()
        self.submissions.append(authorization)
        reference = "0x" + keccak(text=f"submission:{next(self._counter)}").hex()
        self._inflight.add(reference)
        self.peak_inflight = max(self.peak_inflight, len(self._inflight))
        operation = authorization.operation
        if operation.target in self.execution_reverts:
            self._results[reference] = FinalityResult(
                status=FinalityStatus.FAILED,
                reason=self.execution_reverts[operation.target],
                receipt={"transactionHash": reference, "status": 0},
                cost=self.gas_cost,
            )
        elif operation.target not in self.never_finalize:
            self._results[reference] = FinalityResult(
                status=FinalityStatus.CONFIRMED,
                receipt={"transactionHash": reference, "status": 1, "gasUsed": self.gas_cost},
                cost=self.gas_cost,
            )
        return reference

    async def await_finality(self, reference: str, timeout: float) -> FinalityResult:
        try:
            if self.latency:
                await asyncio.sleep(min(self.latency, timeout))
            result = self._results.get(reference)
            if result is None:
                return FinalityResult(status=FinalityStatus.PENDING)
            return result
        finally:
            self._inflight.discard(reference)
