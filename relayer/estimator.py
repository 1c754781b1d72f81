"""Budget proposals backed by the execution backend's simulation."""

from __future__ import annotations

import logging
import math

from .backend import ExecutionBackend
from .config import EstimatorConfig
from .errors import EstimationFailure
from .models import Budget, Operation

logger = logging.getLogger(__name__)


class CostEstimator:
    """Turns a simulated cost into a gas limit and unit price.

    :class:`relayer.errors.BackendUnavailable` raised by the backend is left to
    propagate so the executor can retry it; reverts become
    :class:`relayer.errors.EstimationFailure`.
    """

    def __init__(self, backend: ExecutionBackend, config: EstimatorConfig) -> None:
        self._backend = backend
        self._config = config

    async def estimate(self, operation: Operation) -> Budget:
        result = await self._backend.simulate(operation)
        if not result.ok:
            reason = result.revert_reason or "simulation reverted"
            raise EstimationFailure(f"simulation failed: {reason}", reason=reason)
        if result.cost <= 0:
            raise EstimationFailure("simulation returned no cost", reason="zero_cost")

        if operation.gas and result.cost > operation.gas:
            raise EstimationFailure(
                f"declared gas {operation.gas} below simulated cost {result.cost}",
                reason="declared_gas_too_low",
            )
        limit = math.ceil(result.cost * self._config.gas_multiplier) + self._config.gas_buffer
        if operation.gas:
            limit = min(limit, operation.gas)

        unit_price = result.unit_price or self._config.default_unit_price
        if self._config.max_unit_price is not None and unit_price > self._config.max_unit_price:
            logger.info(
                "capping unit price %s to configured maximum %s",
                unit_price,
                self._config.max_unit_price,
            )
            unit_price = self._config.max_unit_price
        return Budget(limit=limit, unit_price=unit_price)
