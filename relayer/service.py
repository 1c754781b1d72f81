"""Service facade wiring the relay components together."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .backend import ExecutionBackend, InMemoryExecutionBackend
from .codec import AuthorizationCodec
from .config import RelayConfig
from .estimator import CostEstimator
from .executor import RelayExecutor
from .guard import SecurityGuard
from .metrics import RelayMetrics
from .models import Authorization, RequestRecord, RequestState
from .nonces import FileNonceStore, InMemoryNonceStore, NonceStore, NonceTracker
from .rpc import JsonRpcExecutionBackend
from .scheduler import BatchScheduler
from .store import StatusStore, get_store

logger = logging.getLogger(__name__)


def select_backend(config: RelayConfig) -> ExecutionBackend:
    """Return the execution backend implied by ``config``."""

    if config.rpc_url and config.relayer_private_key:
        logger.info("Using JSON-RPC execution backend", extra={"rpc_url": config.rpc_url})
        return JsonRpcExecutionBackend(
            config.rpc_url,
            relayer_key=config.relayer_private_key,
            chain_id=config.domain.chain_id,
            forwarder=config.domain.verifying_contract,
            confirmations=config.confirmations,
        )
    if config.rpc_url:
        logger.warning("RELAYER_PRIVATE_KEY missing; cannot sign submissions for %s", config.rpc_url)
    logger.warning("No RPC backend configured; falling back to InMemoryExecutionBackend")
    return InMemoryExecutionBackend()


def _nonce_store_for(config: RelayConfig) -> NonceStore:
    if config.store_backend == "file" and config.store_path:
        return FileNonceStore(Path(config.store_path) / "nonces.json")
    return InMemoryNonceStore()


class RelayService:
    """Entry point used by the HTTP layer and the CLI."""

    def __init__(
        self,
        config: RelayConfig,
        *,
        backend: Optional[ExecutionBackend] = None,
        store: Optional[StatusStore] = None,
        nonce_store: Optional[NonceStore] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._clock = clock
        self._backend = backend or select_backend(config)
        self._store = store or get_store(
            config.store_backend,
            Path(config.store_path) / "requests" if config.store_path else None,
        )
        self._nonces = NonceTracker(nonce_store or _nonce_store_for(config))
        self._guard = SecurityGuard(config.guard, clock=monotonic)
        self._metrics = RelayMetrics()
        self._codec = AuthorizationCodec()
        self._executor = RelayExecutor(
            backend=self._backend,
            guard=self._guard,
            estimator=CostEstimator(self._backend, config.estimator),
            nonces=self._nonces,
            store=self._store,
            codec=self._codec,
            domain=config.domain,
            finality_timeout=config.finality_timeout_seconds,
            retry_attempts=config.retry_attempts,
            retry_backoff=config.retry_backoff_seconds,
            metrics=self._metrics,
            clock=clock,
        )
        self._scheduler = BatchScheduler(
            self._executor,
            max_concurrency=config.max_concurrency,
            inter_batch_delay=config.inter_batch_delay_seconds,
        )
        self._sweep_task: Optional[asyncio.Task[None]] = None

    @property
    def config(self) -> RelayConfig:
        return self._config

    @property
    def backend(self) -> ExecutionBackend:
        return self._backend

    @property
    def guard(self) -> SecurityGuard:
        return self._guard

    @property
    def nonces(self) -> NonceTracker:
        return self._nonces

    @property
    def executor(self) -> RelayExecutor:
        return self._executor

    async def start(self) -> None:
        """Start the retention sweeper."""

        if self._sweep_task and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    async def submit(self, authorization: Authorization) -> RequestRecord:
        return await self._executor.execute(authorization)

    async def submit_batch(
        self,
        authorizations: Sequence[Authorization],
        *,
        max_concurrency: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
    ) -> List[RequestRecord]:
        return await self._scheduler.submit_batch(
            authorizations,
            max_concurrency=max_concurrency,
            inter_batch_delay=inter_batch_delay,
        )

    def status(self, request_id: str) -> Optional[RequestRecord]:
        return self._store.get(request_id)

    def cancel(self, request_id: str) -> bool:
        return self._executor.cancel(request_id)

    def expected_nonce(self, principal: str) -> int:
        return self._nonces.expected(principal)

    def digest(self, authorization: Authorization) -> bytes:
        return self._codec.digest(authorization.operation, self._config.domain)

    def stats(self) -> Dict[str, Any]:
        counts = {state: 0 for state in RequestState}
        for record in self._store.list_all():
            counts[record.state] += 1
        confirmed = counts[RequestState.CONFIRMED]
        finished = confirmed + counts[RequestState.FAILED] + counts[RequestState.EXPIRED]
        return {
            "pending": counts[RequestState.PENDING],
            "submitted": counts[RequestState.SUBMITTED],
            "confirmed": confirmed,
            "failed": counts[RequestState.FAILED],
            "expired": counts[RequestState.EXPIRED],
            "successRate": round(confirmed / finished, 4) if finished else 0.0,
        }

    async def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "chainId": self._config.domain.chain_id,
            "verifyingContract": self._config.domain.verifying_contract,
            "backend": type(self._backend).__name__,
            "inflight": self._executor.inflight_count,
        }

    def metrics(self) -> bytes:
        return self._metrics.render()

    @property
    def metrics_content_type(self) -> str:
        return self._metrics.content_type

    def purge_expired(self) -> int:
        cutoff = self._clock() - self._config.retention_seconds
        removed = self._store.purge(cutoff)
        if removed:
            logger.info("purged %s relay records older than retention window", removed)
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(max(1, self._config.sweep_interval_seconds))
            try:
                self.purge_expired()
            except Exception:
                logger.exception("retention sweep failed")
