import asyncio

import pytest

from relayer.backend import InMemoryExecutionBackend
from relayer.config import EstimatorConfig
from relayer.errors import BackendUnavailable, EstimationFailure
from relayer.estimator import CostEstimator

from relay_support import TARGET


def test_budget_applies_multiplier_and_buffer(make_operation):
    backend = InMemoryExecutionBackend(gas_cost=50_000, unit_price=2_000_000_000)
    estimator = CostEstimator(backend, EstimatorConfig(gas_multiplier=1.5, gas_buffer=10_000))

    budget = asyncio.run(estimator.estimate(make_operation()))

    assert budget.limit == 85_000
    assert budget.unit_price == 2_000_000_000
    assert budget.max_cost == 85_000 * 2_000_000_000


def test_declared_gas_caps_the_limit(make_operation):
    estimator = CostEstimator(InMemoryExecutionBackend(gas_cost=50_000), EstimatorConfig())

    budget = asyncio.run(estimator.estimate(make_operation(gas=60_000)))

    assert budget.limit == 60_000


def test_declared_gas_below_simulated_cost_fails(make_operation):
    estimator = CostEstimator(InMemoryExecutionBackend(gas_cost=50_000), EstimatorConfig())

    with pytest.raises(EstimationFailure) as excinfo:
        asyncio.run(estimator.estimate(make_operation(gas=40_000)))

    assert excinfo.value.reason == "declared_gas_too_low"


def test_simulated_revert_fails(make_operation):
    backend = InMemoryExecutionBackend()
    backend.simulate_reverts[TARGET] = "ERC20: transfer amount exceeds balance"

    with pytest.raises(EstimationFailure) as excinfo:
        asyncio.run(CostEstimator(backend, EstimatorConfig()).estimate(make_operation()))

    assert "exceeds balance" in excinfo.value.reason


def test_zero_cost_simulation_fails(make_operation):
    estimator = CostEstimator(InMemoryExecutionBackend(gas_cost=0), EstimatorConfig())

    with pytest.raises(EstimationFailure):
        asyncio.run(estimator.estimate(make_operation()))


def test_unit_price_is_capped(make_operation):
    backend = InMemoryExecutionBackend(unit_price=500_000_000_000)
    estimator = CostEstimator(backend, EstimatorConfig(max_unit_price=100_000_000_000))

    budget = asyncio.run(estimator.estimate(make_operation()))

    assert budget.unit_price == 100_000_000_000


def test_backend_outage_propagates(make_operation):
    backend = InMemoryExecutionBackend()
    backend.unavailable_calls = 1

    with pytest.raises(BackendUnavailable):
        asyncio.run(CostEstimator(backend, EstimatorConfig()).estimate(make_operation()))
