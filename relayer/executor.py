"""State machine driving one authorization from receipt to finality."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from .backend import ExecutionBackend, FinalityStatus
from .codec import AuthorizationCodec
from .errors import (
    BackendUnavailable,
    FailureKind,
    MalformedSignature,
    RelayError,
)
from .estimator import CostEstimator
from .guard import SecurityGuard
from .metrics import RelayMetrics
from .models import Authorization, DomainDescriptor, RelayStage, RequestRecord, RequestState
from .nonces import NonceReservation, NonceTracker, ReservationOutcome
from .store import StatusStore
from .verifier import SignatureVerifier

logger = logging.getLogger(__name__)


def _log_event(level: int, event: str, request_id: str, **kwargs: Any) -> None:
    extra = {"event": event, "rid": request_id}
    extra.update(kwargs or {})
    logger.log(
        level,
        f"relay.{event} | rid={request_id} | " + " ".join(f"{k}={v}" for k, v in kwargs.items()),
        extra=extra,
    )


@dataclass
class _Attempt:
    """Per-attempt scratch state that is not persisted on the record."""

    reservation: Optional[NonceReservation] = None
    cancel_requested: bool = False


def _is_settled(record: RequestRecord) -> bool:
    """True when resubmitting must return ``record`` instead of re-executing."""

    return record.nonce_consumed or record.state in (RequestState.SUBMITTED, RequestState.CONFIRMED)


class RelayExecutor:
    """Runs verify, guard, estimate, reserve, submit and await for one request.

    Every stage is a separate handler returning the next stage (or ``None``
    when it already moved the record into a terminal state); :meth:`_drive`
    composes them and persists the record after each transition. Stages up to
    ``estimating`` may be cancelled; from ``submitting`` on the attempt is
    shielded and always reaches a terminal state.
    """

    def __init__(
        self,
        *,
        backend: ExecutionBackend,
        guard: SecurityGuard,
        estimator: CostEstimator,
        nonces: NonceTracker,
        store: StatusStore,
        codec: Optional[AuthorizationCodec] = None,
        verifier: Optional[SignatureVerifier] = None,
        domain: Optional[DomainDescriptor] = None,
        finality_timeout: float = 120.0,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        metrics: Optional[RelayMetrics] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._backend = backend
        self._guard = guard
        self._estimator = estimator
        self._nonces = nonces
        self._store = store
        self._codec = codec or AuthorizationCodec()
        self._verifier = verifier or SignatureVerifier()
        self._domain = domain
        self._finality_timeout = finality_timeout
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff
        self._metrics = metrics
        self._clock = clock
        self._inflight: Dict[str, asyncio.Future[RequestRecord]] = {}
        self._live: Dict[str, tuple[RequestRecord, _Attempt]] = {}
        self._detached: Set[asyncio.Future[Any]] = set()
        self._handlers: Dict[RelayStage, Callable[[RequestRecord, _Attempt], Awaitable[Optional[RelayStage]]]] = {
            RelayStage.RECEIVED: self._on_received,
            RelayStage.VERIFYING: self._on_verifying,
            RelayStage.GUARDING: self._on_guarding,
            RelayStage.ESTIMATING: self._on_estimating,
            RelayStage.SUBMITTING: self._on_submitting,
            RelayStage.AWAITING_FINALITY: self._on_awaiting_finality,
        }

    @property
    def codec(self) -> AuthorizationCodec:
        return self._codec

    @property
    def store(self) -> StatusStore:
        return self._store

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def execute(self, authorization: Authorization) -> RequestRecord:
        """Relay ``authorization`` and return its (usually terminal) record."""

        request_id = self._codec.request_id(authorization.operation)
        task = self._inflight.get(request_id)
        if task is not None:
            _log_event(logging.INFO, "duplicate_inflight", request_id)
            if self._metrics:
                self._metrics.duplicates.inc()
            record, attempt = self._live[request_id]
            return await self._join(task, record, attempt)

        existing = self._store.get(request_id)
        if existing is not None and _is_settled(existing):
            _log_event(logging.INFO, "duplicate", request_id, state=existing.state.value)
            if self._metrics:
                self._metrics.duplicates.inc()
            return existing

        now = self._clock()
        record = RequestRecord(
            request_id=request_id,
            authorization=authorization,
            created_at=existing.created_at if existing else now,
            updated_at=now,
            transitions=list(existing.transitions) if existing else [],
        )
        attempt = _Attempt()
        # Stored before the task runs, so a cancel landing ahead of its first
        # step still leaves a record behind.
        self._transition(record, RelayStage.RECEIVED, "resubmitted" if existing else None)
        self._live[request_id] = (record, attempt)
        task = asyncio.ensure_future(self._run(record, attempt))
        self._inflight[request_id] = task
        task.add_done_callback(lambda _task, rid=request_id: self._forget(rid))
        return await self._join(task, record, attempt)

    async def _join(
        self, task: "asyncio.Future[RequestRecord]", record: RequestRecord, attempt: _Attempt
    ) -> RequestRecord:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not (task.cancelled() and attempt.cancel_requested):
                raise
        # cancel() reached the task before _run could handle it.
        self._abandon(record, attempt, FailureKind.CANCELLED, "cancelled before submission")
        return record

    def cancel(self, request_id: str) -> bool:
        """Cancel an in-flight request that has not reached ``submitting``."""

        live = self._live.get(request_id)
        task = self._inflight.get(request_id)
        if live is None or task is None or task.done():
            return False
        record, attempt = live
        if not record.stage.is_pre_submission:
            return False
        attempt.cancel_requested = True
        task.cancel()
        return True

    def stage_of(self, request_id: str) -> Optional[RelayStage]:
        live = self._live.get(request_id)
        return live[0].stage if live else None

    def _forget(self, request_id: str) -> None:
        self._inflight.pop(request_id, None)
        self._live.pop(request_id, None)

    async def _run(self, record: RequestRecord, attempt: _Attempt) -> RequestRecord:
        try:
            await self._drive(record, attempt, until=RelayStage.SUBMITTING)
        except asyncio.CancelledError:
            self._abandon(record, attempt, FailureKind.CANCELLED, "cancelled before submission")
            if not attempt.cancel_requested:
                raise
            return record
        except Exception as exc:
            logger.exception("relay pipeline crashed for %s", record.request_id)
            self._abandon(record, attempt, FailureKind.INTERNAL_ERROR, str(exc))
            return record

        if record.is_terminal:
            return record

        # Past this point the nonce is committed to a submission; the rest
        # runs to completion even if the caller goes away.
        finisher = asyncio.ensure_future(self._finish(record, attempt))
        self._detached.add(finisher)
        finisher.add_done_callback(self._detached.discard)
        await asyncio.shield(finisher)
        return record

    async def _finish(self, record: RequestRecord, attempt: _Attempt) -> None:
        try:
            await self._drive(record, attempt)
        except Exception as exc:
            logger.exception("relay submission crashed for %s", record.request_id)
            self._abandon(record, attempt, FailureKind.INTERNAL_ERROR, str(exc))

    async def _drive(self, record: RequestRecord, attempt: _Attempt, until: Optional[RelayStage] = None) -> None:
        while not record.is_terminal and record.stage is not until:
            handler = self._handlers[record.stage]
            next_stage = await handler(record, attempt)
            if next_stage is not None:
                self._transition(record, next_stage)
            else:
                self._settle(record)

    def _transition(self, record: RequestRecord, stage: RelayStage, detail: Optional[str] = None) -> None:
        record.advance(stage, detail, now=self._clock())
        self._store.put(record)
        _log_event(logging.INFO, "transition", record.request_id, stage=stage.value)

    def _settle(self, record: RequestRecord) -> None:
        """Persist a record a handler has just moved into a terminal state."""

        self._store.put(record)
        level = logging.INFO if record.state is RequestState.CONFIRMED else logging.WARNING
        _log_event(
            level,
            record.state.value,
            record.request_id,
            principal=record.principal,
            sequence=record.authorization.operation.sequence,
            error=record.error.value if record.error else None,
            detail=record.error_detail,
        )
        if self._metrics:
            self._metrics.observe_terminal(record)

    def _fail(self, record: RequestRecord, kind: FailureKind, detail: Optional[str] = None, *, retryable: bool = False) -> None:
        record.fail(kind, detail, retryable=retryable, now=self._clock())

    def _abandon(self, record: RequestRecord, attempt: _Attempt, kind: FailureKind, detail: str) -> None:
        self._release(record, attempt)
        if not record.is_terminal:
            self._fail(record, kind, detail)
            self._settle(record)

    def _release(self, record: RequestRecord, attempt: _Attempt) -> None:
        reservation = attempt.reservation
        if reservation is None or not reservation.accepted or record.nonce_consumed:
            return
        self._nonces.release(reservation.principal, reservation.sequence)
        attempt.reservation = None

    def _expired(self, record: RequestRecord) -> bool:
        if record.authorization.operation.is_expired(self._clock()):
            self._fail(record, FailureKind.EXPIRED, "validUntil elapsed before submission")
            return True
        return False

    async def _with_retry(self, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        def _before_sleep(state: RetryCallState) -> None:
            if self._metrics:
                self._metrics.backend_retries.inc()
            logger.warning(
                "backend unavailable; retrying %s (attempt %s): %s",
                getattr(func, "__name__", func),
                state.attempt_number,
                state.outcome.exception() if state.outcome else None,
            )

        async for retry_attempt in AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._retry_backoff, max=max(self._retry_backoff * 8, 0)),
            retry=retry_if_exception_type(BackendUnavailable),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with retry_attempt:
                return await func(*args)

    # -- stage handlers ---------------------------------------------------

    async def _on_received(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if self._expired(record):
            return None
        return RelayStage.VERIFYING

    async def _on_verifying(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if self._expired(record):
            return None
        authorization = record.authorization
        # Submissions always go to the relay's own forwarder, so an
        # authorization naming any other domain is refused before recovery.
        if self._domain is not None and authorization.domain != self._domain:
            self._fail(record, FailureKind.BAD_SIGNATURE, "authorization domain does not match this relay")
            return None
        digest = self._codec.digest(authorization.operation, self._domain or authorization.domain)
        try:
            signer = self._verifier.recover(digest, authorization.signature)
        except MalformedSignature as exc:
            self._fail(record, FailureKind.MALFORMED_SIGNATURE, str(exc))
            return None
        if signer != authorization.operation.principal:
            self._fail(record, FailureKind.BAD_SIGNATURE, f"signature recovered {signer}")
            return None
        return RelayStage.GUARDING

    async def _on_guarding(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if self._expired(record):
            return None
        decision = self._guard.check(record.authorization.operation, record.principal)
        if not decision.passed:
            self._fail(record, FailureKind.POLICY_REJECTED, decision.reason)
            return None
        return RelayStage.ESTIMATING

    async def _on_estimating(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if self._expired(record):
            return None
        operation = record.authorization.operation
        try:
            budget = await self._with_retry(self._estimator.estimate, operation)
        except BackendUnavailable as exc:
            self._fail(record, FailureKind.BACKEND_UNAVAILABLE, str(exc), retryable=True)
            return None
        except RelayError as exc:
            self._fail(record, exc.kind, exc.reason or str(exc))
            return None
        decision = self._guard.check_budget(budget)
        if not decision.passed:
            self._fail(record, FailureKind.POLICY_REJECTED, decision.reason)
            return None
        record.budget = budget

        # Estimation awaited the backend, so validity is checked once more
        # before a sequence number is spent.
        if self._expired(record):
            return None
        reservation = self._nonces.reserve(operation.principal, operation.sequence)
        if reservation.outcome is ReservationOutcome.STALE:
            self._fail(record, FailureKind.REPLAY_OR_DUPLICATE, f"expected sequence {reservation.expected}")
            return None
        if reservation.outcome is ReservationOutcome.FUTURE_GAP:
            self._fail(record, FailureKind.SEQUENCE_GAP, f"expected sequence {reservation.expected}")
            return None
        attempt.reservation = reservation
        return RelayStage.SUBMITTING

    async def _on_submitting(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if record.budget is None:
            raise RuntimeError(f"request {record.request_id} reached submission without a budget")
        try:
            reference = await self._with_retry(self._backend.submit, record.authorization, record.budget)
        except RelayError as exc:
            self._release(record, attempt)
            self._fail(record, exc.kind, exc.reason or str(exc), retryable=exc.retryable)
            return None
        record.backend_reference = reference
        record.submitted_at = self._clock()
        record.nonce_consumed = True
        if self._metrics:
            self._metrics.inflight.inc()
        return RelayStage.AWAITING_FINALITY

    async def _on_awaiting_finality(self, record: RequestRecord, attempt: _Attempt) -> Optional[RelayStage]:
        if record.backend_reference is None:
            raise RuntimeError(f"request {record.request_id} has no backend reference to await")
        try:
            result = await self._with_retry(
                self._backend.await_finality, record.backend_reference, self._finality_timeout
            )
        except RelayError as exc:
            self._fail(record, FailureKind.FINALITY_TIMEOUT, f"finality unknown: {exc}")
            return None
        finally:
            if self._metrics:
                self._metrics.inflight.dec()

        record.receipt = dict(result.receipt or {})
        record.cost_actual = result.cost
        if result.status is FinalityStatus.CONFIRMED:
            record.advance(RelayStage.CONFIRMED, now=self._clock())
            return None
        if result.status is FinalityStatus.FAILED:
            self._fail(record, FailureKind.EXECUTION_REVERTED, result.reason or "execution reverted")
            return None
        self._fail(
            record,
            FailureKind.FINALITY_TIMEOUT,
            f"no finality after {self._finality_timeout:g}s; outcome may still confirm",
        )
        return None
