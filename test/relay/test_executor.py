import asyncio
from dataclasses import replace

import pytest

from relayer.backend import InMemoryExecutionBackend
from relayer.errors import BackendUnavailable, ExecutionReverted, FailureKind, RelayError, SequenceGap
from relayer.models import Authorization, RelayStage, RequestRecord, RequestState
from relayer.service import RelayService

from relay_support import TARGET, FakeClock


class GatedBackend(InMemoryExecutionBackend):
    """Blocks simulation until the test opens the gate."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def simulate(self, operation):
        self.entered.set()
        await self.gate.wait()
        return await super().simulate(operation)


class RefusingBackend(InMemoryExecutionBackend):
    async def submit(self, authorization, budget):
        raise BackendUnavailable("node refused connection")


class CrashingBackend(InMemoryExecutionBackend):
    async def simulate(self, operation):
        raise RuntimeError("simulator exploded")


def _service(make_config, backend=None, **overrides):
    return RelayService(make_config(**overrides), backend=backend or InMemoryExecutionBackend())


def test_sequence_scenario(make_config, authorize):
    backend = InMemoryExecutionBackend()
    service = _service(make_config, backend)
    first = authorize(sequence=0)

    async def scenario():
        confirmed = await service.submit(first)
        again = await service.submit(first)
        gap = await service.submit(authorize(sequence=2))
        second = await service.submit(authorize(sequence=1))
        return confirmed, again, gap, second

    confirmed, again, gap, second = asyncio.run(scenario())

    assert confirmed.state is RequestState.CONFIRMED
    assert again.request_id == confirmed.request_id
    assert again.state is RequestState.CONFIRMED
    assert again.backend_reference == confirmed.backend_reference
    assert gap.state is RequestState.FAILED
    assert gap.error is FailureKind.SEQUENCE_GAP
    assert second.state is RequestState.CONFIRMED
    assert len(backend.submissions) == 2
    assert service.expected_nonce(first.operation.principal) == 2


def test_confirmed_record_tracks_every_stage(make_config, authorize):
    service = _service(make_config)

    record = asyncio.run(service.submit(authorize()))

    assert [item.stage for item in record.transitions] == [
        RelayStage.RECEIVED,
        RelayStage.VERIFYING,
        RelayStage.GUARDING,
        RelayStage.ESTIMATING,
        RelayStage.SUBMITTING,
        RelayStage.AWAITING_FINALITY,
        RelayStage.CONFIRMED,
    ]
    assert record.nonce_consumed
    assert record.budget is not None and record.budget.limit == 85_000
    assert record.cost_actual == 50_000
    assert service.status(record.request_id).state is RequestState.CONFIRMED


def test_concurrent_duplicates_execute_once(make_config, authorize):
    backend = InMemoryExecutionBackend(latency=0.02)
    service = _service(make_config, backend)
    authorization = authorize()

    async def scenario():
        return await asyncio.gather(*(service.submit(authorization) for _ in range(5)))

    records = asyncio.run(scenario())

    assert {record.request_id for record in records} == {records[0].request_id}
    assert all(record.state is RequestState.CONFIRMED for record in records)
    assert len(backend.submissions) == 1


def test_signature_for_another_domain_is_rejected(make_config, make_operation, sign, domain):
    backend = InMemoryExecutionBackend()
    service = _service(make_config, backend)
    authorization = sign(make_operation(), signing_domain=replace(domain, chain_id=1))

    record = asyncio.run(service.submit(authorization))

    assert record.error is FailureKind.BAD_SIGNATURE
    assert "domain" in record.error_detail
    assert backend.simulations == 0
    assert service.expected_nonce(authorization.operation.principal) == 0


def test_signature_from_wrong_key_is_rejected(make_config, make_operation, sign, keys):
    service = _service(make_config)
    authorization = sign(make_operation(keys[0]), keys[1])

    record = asyncio.run(service.submit(authorization))

    assert record.error is FailureKind.BAD_SIGNATURE
    assert record.retryable is False


def test_malformed_signature(make_config, authorize):
    service = _service(make_config)
    authorization = authorize()
    truncated = Authorization(
        operation=authorization.operation,
        domain=authorization.domain,
        signature=authorization.signature[:64],
    )

    record = asyncio.run(service.submit(truncated))

    assert record.error is FailureKind.MALFORMED_SIGNATURE
    with pytest.raises(RelayError) as excinfo:
        record.raise_for_error()
    assert excinfo.value.kind is FailureKind.MALFORMED_SIGNATURE


def test_expired_authorization_has_no_side_effects(make_config, authorize):
    backend = InMemoryExecutionBackend()
    service = _service(make_config, backend)
    authorization = authorize(valid_until=1)

    record = asyncio.run(service.submit(authorization))

    assert record.state is RequestState.EXPIRED
    assert record.error is FailureKind.EXPIRED
    assert backend.simulations == 0
    assert backend.submissions == []
    assert service.expected_nonce(authorization.operation.principal) == 0


def test_expiry_during_estimation_does_not_spend_sequence(make_config, authorize):
    clock = FakeClock()

    class SlowBackend(InMemoryExecutionBackend):
        async def simulate(self, operation):
            clock.advance(30)
            return await super().simulate(operation)

    backend = SlowBackend()
    service = RelayService(make_config(), backend=backend, clock=clock)
    authorization = authorize(valid_until=int(clock.now) + 10)

    record = asyncio.run(service.submit(authorization))

    assert record.state is RequestState.EXPIRED
    assert record.transitions[-2].stage is RelayStage.ESTIMATING
    assert backend.submissions == []
    assert service.expected_nonce(authorization.operation.principal) == 0


def test_policy_rejection_reports_reason(make_config, authorize):
    service = _service(make_config)

    record = asyncio.run(service.submit(authorize(target="0x00000000000000000000000000000000000000aa")))

    assert record.error is FailureKind.POLICY_REJECTED
    assert record.error_detail == "target_not_allowed"


def test_budget_above_cost_ceiling_is_rejected(make_config, authorize):
    service = _service(make_config, guard={"max_cost_wei": 10**12})

    record = asyncio.run(service.submit(authorize()))

    assert record.error is FailureKind.POLICY_REJECTED
    assert record.error_detail == "cost_ceiling"
    assert service.expected_nonce(record.principal) == 0


def test_estimation_failure_keeps_sequence(make_config, authorize):
    backend = InMemoryExecutionBackend()
    backend.simulate_reverts[TARGET] = "paused"
    service = _service(make_config, backend)

    record = asyncio.run(service.submit(authorize()))

    assert record.error is FailureKind.ESTIMATION_FAILURE
    assert record.error_detail == "paused"
    assert service.expected_nonce(record.principal) == 0


def test_transient_outage_is_retried(make_config, authorize):
    backend = InMemoryExecutionBackend()
    backend.unavailable_calls = 2
    service = _service(make_config, backend)

    record = asyncio.run(service.submit(authorize()))

    assert record.state is RequestState.CONFIRMED
    assert b"relay_backend_retries_total 2.0" in service.metrics()


def test_exhausted_retries_are_retryable_and_can_be_resubmitted(make_config, authorize):
    backend = InMemoryExecutionBackend()
    backend.unavailable_calls = 3
    service = _service(make_config, backend)
    authorization = authorize()

    async def scenario():
        failed = await service.submit(authorization)
        retried = await service.submit(authorization)
        return failed, retried

    failed, retried = asyncio.run(scenario())

    assert failed.error is FailureKind.BACKEND_UNAVAILABLE
    assert failed.retryable is True
    assert retried.state is RequestState.CONFIRMED
    assert retried.request_id == failed.request_id


def test_submission_outage_releases_sequence(make_config, authorize):
    service = _service(make_config, RefusingBackend())

    record = asyncio.run(service.submit(authorize()))

    assert record.error is FailureKind.BACKEND_UNAVAILABLE
    assert record.retryable is True
    assert record.nonce_consumed is False
    assert service.expected_nonce(record.principal) == 0


def test_sequence_gap_can_succeed_after_predecessor(make_config, authorize):
    service = _service(make_config)
    later = authorize(sequence=1)

    async def scenario():
        gap = await service.submit(later)
        await service.submit(authorize(sequence=0))
        return gap, await service.submit(later)

    gap, settled = asyncio.run(scenario())

    with pytest.raises(SequenceGap):
        gap.raise_for_error()
    assert settled.state is RequestState.CONFIRMED


def test_execution_revert_consumes_sequence(make_config, authorize):
    backend = InMemoryExecutionBackend()
    backend.execution_reverts[TARGET] = "reverted: insufficient balance"
    service = _service(make_config, backend)
    authorization = authorize()

    async def scenario():
        first = await service.submit(authorization)
        return first, await service.submit(authorization)

    first, again = asyncio.run(scenario())

    assert first.error is FailureKind.EXECUTION_REVERTED
    assert first.nonce_consumed is True
    assert again.error is FailureKind.EXECUTION_REVERTED
    assert len(backend.submissions) == 1
    assert service.expected_nonce(first.principal) == 1
    with pytest.raises(ExecutionReverted):
        again.raise_for_error()


def test_finality_timeout(make_config, authorize):
    backend = InMemoryExecutionBackend()
    backend.never_finalize.add(TARGET)
    service = _service(make_config, backend)

    record = asyncio.run(service.submit(authorize()))

    assert record.error is FailureKind.FINALITY_TIMEOUT
    assert record.backend_reference is not None
    assert service.expected_nonce(record.principal) == 1


def test_unexpected_exception_becomes_internal_error(make_config, authorize):
    service = _service(make_config, CrashingBackend())

    record = asyncio.run(service.submit(authorize()))

    assert record.error is FailureKind.INTERNAL_ERROR
    assert "exploded" in record.error_detail


def test_cancel_before_submission(make_config, authorize):
    authorization = authorize()

    async def scenario():
        backend = GatedBackend()
        service = _service(make_config, backend)
        request_id = service.executor.codec.request_id(authorization.operation)
        pending = asyncio.ensure_future(service.submit(authorization))
        await backend.entered.wait()
        stage = service.executor.stage_of(request_id)
        cancelled = service.cancel(request_id)
        record = await pending
        return service, backend, stage, cancelled, record

    service, backend, stage, cancelled, record = asyncio.run(scenario())

    assert stage is RelayStage.ESTIMATING
    assert cancelled is True
    assert record.error is FailureKind.CANCELLED
    assert backend.submissions == []
    assert service.expected_nonce(authorization.operation.principal) == 0
    assert service.status(record.request_id).error is FailureKind.CANCELLED


def test_cancel_is_refused_after_submission(make_config, authorize):
    authorization = authorize()

    async def scenario():
        service = _service(make_config, InMemoryExecutionBackend(latency=0.05))
        request_id = service.executor.codec.request_id(authorization.operation)
        pending = asyncio.ensure_future(service.submit(authorization))
        while service.executor.stage_of(request_id) is not RelayStage.AWAITING_FINALITY and not pending.done():
            await asyncio.sleep(0.005)
        refused = service.cancel(request_id)
        return refused, await pending

    refused, record = asyncio.run(scenario())

    assert refused is False
    assert record.state is RequestState.CONFIRMED


def test_cancel_unknown_request(make_config):
    assert _service(make_config).cancel("0x" + "00" * 32) is False


def test_abandoned_caller_does_not_abort_request(make_config, authorize):
    authorization = authorize()

    async def scenario():
        backend = GatedBackend()
        service = _service(make_config, backend)
        request_id = service.executor.codec.request_id(authorization.operation)
        caller = asyncio.ensure_future(service.submit(authorization))
        await backend.entered.wait()
        caller.cancel()
        backend.gate.set()
        while service.executor.inflight_count:
            await asyncio.sleep(0.005)
        return caller, service.status(request_id)

    caller, record = asyncio.run(scenario())

    assert caller.cancelled()
    assert record.state is RequestState.CONFIRMED


def test_interrupted_pending_record_is_resumed(make_config, authorize):
    service = _service(make_config)
    authorization = authorize()
    request_id = service.executor.codec.request_id(authorization.operation)
    stale = RequestRecord(request_id=request_id, authorization=authorization)
    stale.advance(RelayStage.VERIFYING)
    service.executor.store.put(stale)

    record = asyncio.run(service.submit(authorization))

    assert record.state is RequestState.CONFIRMED


def test_authorization_naming_another_forwarder_is_refused(make_config, authorize, domain):
    backend = InMemoryExecutionBackend()
    service = _service(make_config, backend)
    signed = authorize(value=10**18)
    redirected = Authorization(
        operation=signed.operation,
        domain=replace(domain, verifying_contract="0x00000000000000000000000000000000000bad00"),
        signature=signed.signature,
    )

    record = asyncio.run(service.submit(redirected))

    assert record.error is FailureKind.BAD_SIGNATURE
    assert backend.simulations == 0
    assert backend.submissions == []


def test_cancel_before_first_step_records_cancellation(make_config, authorize):
    authorization = authorize()

    async def scenario():
        backend = InMemoryExecutionBackend()
        service = _service(make_config, backend)
        request_id = service.executor.codec.request_id(authorization.operation)
        caller = asyncio.ensure_future(service.submit(authorization))
        await asyncio.sleep(0)
        cancelled = service.cancel(request_id)
        return service, backend, cancelled, await caller

    service, backend, cancelled, record = asyncio.run(scenario())

    assert cancelled is True
    assert record.error is FailureKind.CANCELLED
    assert service.status(record.request_id).error is FailureKind.CANCELLED
    assert backend.submissions == []
    assert service.expected_nonce(authorization.operation.principal) == 0


def test_cancel_before_first_step_does_not_abort_batch(make_config, authorize, keys):
    authorizations = [authorize(key) for key in keys[:3]]

    async def scenario():
        service = _service(make_config)
        request_id = service.executor.codec.request_id(authorizations[0].operation)
        batch = asyncio.ensure_future(service.submit_batch(authorizations, max_concurrency=3))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        service.cancel(request_id)
        return await batch

    records = asyncio.run(scenario())

    assert len(records) == 3
    assert records[0].error is FailureKind.CANCELLED
    assert all(record.state is RequestState.CONFIRMED for record in records[1:])


def test_resubmission_appends_to_earlier_transitions(make_config, authorize):
    service = _service(make_config)
    later = authorize(sequence=1)

    async def scenario():
        gap = await service.submit(later)
        first_log = list(gap.transitions)
        await service.submit(authorize(sequence=0))
        return first_log, await service.submit(later)

    first_log, settled = asyncio.run(scenario())

    assert first_log[-1].stage is RelayStage.FAILED
    assert settled.transitions[: len(first_log)] == first_log
    resumed = settled.transitions[len(first_log)]
    assert resumed.stage is RelayStage.RECEIVED
    assert resumed.detail == "resubmitted"
    assert settled.transitions[-1].stage is RelayStage.CONFIRMED
    assert service.status(settled.request_id).transitions == settled.transitions
