"""Chunked fan-out of authorizations through the executor."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Sequence

from .errors import FailureKind
from .executor import RelayExecutor
from .models import Authorization, RequestRecord

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Runs authorizations in chunks of bounded size with a pause in between.

    Each chunk settles completely before the next starts, so at most
    ``max_concurrency`` requests are ever between submission and finality.
    Ordering across one principal's operations is not managed here: a later
    sequence that reaches the nonce tracker first fails with a sequence gap.
    """

    def __init__(
        self,
        executor: RelayExecutor,
        *,
        max_concurrency: int = 4,
        inter_batch_delay: float = 0.0,
    ) -> None:
        self._executor = executor
        self._max_concurrency = max_concurrency
        self._inter_batch_delay = inter_batch_delay

    async def submit_batch(
        self,
        authorizations: Sequence[Authorization],
        max_concurrency: Optional[int] = None,
        inter_batch_delay: Optional[float] = None,
    ) -> List[RequestRecord]:
        size = self._max_concurrency if max_concurrency is None else max_concurrency
        delay = self._inter_batch_delay if inter_batch_delay is None else inter_batch_delay
        if size < 1:
            raise ValueError("max_concurrency must be at least 1")
        if delay < 0:
            raise ValueError("inter_batch_delay must be non-negative")

        records: List[RequestRecord] = []
        chunks = [list(authorizations[i : i + size]) for i in range(0, len(authorizations), size)]
        for index, chunk in enumerate(chunks):
            if index and delay:
                await asyncio.sleep(delay)
            outcomes = await asyncio.gather(
                *(self._executor.execute(item) for item in chunk),
                return_exceptions=True,
            )
            for authorization, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    records.append(self._crashed(authorization, outcome))
                else:
                    records.append(outcome)
            logger.info(
                "batch chunk %s/%s settled (%s requests)",
                index + 1,
                len(chunks),
                len(chunk),
            )
        return records

    def _crashed(self, authorization: Authorization, exc: BaseException) -> RequestRecord:
        logger.error("batch item raised outside the executor: %s", exc)
        request_id = self._executor.codec.request_id(authorization.operation)
        record = RequestRecord(request_id=request_id, authorization=authorization)
        record.fail(FailureKind.INTERNAL_ERROR, str(exc))
        return record
