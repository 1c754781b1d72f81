"""FastAPI application exposing the relay service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field

from .backend import ExecutionBackend
from .config import RelayConfig, load_config
from .errors import FailureKind, InvalidAuthorization
from .models import Authorization, RequestRecord, normalize_address
from .service import RelayService

logger = logging.getLogger(__name__)

_REJECTION_STATUS = {
    FailureKind.BACKEND_UNAVAILABLE: 503,
    FailureKind.INTERNAL_ERROR: 500,
    FailureKind.EXECUTION_REVERTED: 200,
    FailureKind.FINALITY_TIMEOUT: 200,
    FailureKind.CANCELLED: 200,
}


class OperationIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    principal: str
    target: str
    payload: str = "0x"
    value: Union[int, str] = 0
    gas: Union[int, str] = 0
    sequence: Union[int, str]
    valid_until: Union[int, str] = Field(alias="validUntil")


class DomainIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    chain_id: Union[int, str] = Field(alias="chainId")
    verifying_contract: str = Field(alias="verifyingContract")


class AuthorizationIn(BaseModel):
    operation: OperationIn
    domain: DomainIn
    signature: str = Field(min_length=2)

    def to_authorization(self) -> Authorization:
        return Authorization.from_mapping(self.model_dump(by_alias=True))


class BatchIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    authorizations: List[AuthorizationIn] = Field(min_length=1, max_length=500)
    max_concurrency: Optional[int] = Field(default=None, ge=1, le=256, alias="maxConcurrency")
    inter_batch_delay: Optional[float] = Field(default=None, ge=0, alias="interBatchDelay")


def summarize(record: RequestRecord) -> Dict[str, Any]:
    return {
        "requestId": record.request_id,
        "state": record.state.value,
        "stage": record.stage.value,
        "error": record.error.value if record.error else None,
        "errorDetail": record.error_detail,
        "retryable": record.retryable,
        "backendReference": record.backend_reference,
    }


def status_code_for(record: RequestRecord) -> int:
    """HTTP status for a submission result.

    Policy refusals never look retryable: rate limiting answers 429 and other
    local rejections 422, while transient backend outages answer 503.
    """

    if record.error is None:
        return 200
    if record.error is FailureKind.POLICY_REJECTED and record.error_detail == "rate_limited":
        return 429
    return _REJECTION_STATUS.get(record.error, 422)


def _convert(payload: AuthorizationIn) -> Authorization:
    try:
        return payload.to_authorization()
    except InvalidAuthorization as exc:
        raise HTTPException(status_code=400, detail={"code": "INVALID_AUTHORIZATION", "message": str(exc)}) from exc


def create_app(
    *,
    config_path: str | Path = Path("config/relayer.yaml"),
    config: Optional[RelayConfig] = None,
    backend: Optional[ExecutionBackend] = None,
    service: Optional[RelayService] = None,
) -> FastAPI:
    """Instantiate the FastAPI application with a live relay service."""

    if service is None:
        service = RelayService(config or load_config(config_path), backend=backend)
    relay = service
    app = FastAPI(title="Relay Service", version="0.1.0")

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - exercised in integration tests
        await relay.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - exercised in integration tests
        await relay.close()

    async def get_service() -> RelayService:
        return relay

    @app.get("/healthz")
    async def health(service: RelayService = Depends(get_service)) -> Dict[str, Any]:
        return await service.health()

    @app.get("/metrics")
    async def metrics(service: RelayService = Depends(get_service)) -> Response:
        return Response(service.metrics(), media_type=service.metrics_content_type)

    @app.post("/v1/relay")
    async def submit(payload: AuthorizationIn, service: RelayService = Depends(get_service)) -> JSONResponse:
        record = await service.submit(_convert(payload))
        return JSONResponse(summarize(record), status_code=status_code_for(record))

    @app.post("/v1/relay/batch")
    async def submit_batch(payload: BatchIn, service: RelayService = Depends(get_service)) -> JSONResponse:
        authorizations = [_convert(item) for item in payload.authorizations]
        records = await service.submit_batch(
            authorizations,
            max_concurrency=payload.max_concurrency,
            inter_batch_delay=payload.inter_batch_delay,
        )
        return JSONResponse({"results": [summarize(record) for record in records]})

    @app.get("/v1/relay/{request_id}")
    async def status(request_id: str, service: RelayService = Depends(get_service)) -> Dict[str, Any]:
        record = service.status(request_id)
        if record is None:
            raise HTTPException(status_code=404, detail={"code": "REQUEST_NOT_FOUND"})
        return record.to_dict()

    @app.delete("/v1/relay/{request_id}")
    async def cancel(request_id: str, service: RelayService = Depends(get_service)) -> Dict[str, Any]:
        if not service.cancel(request_id):
            raise HTTPException(status_code=409, detail={"code": "NOT_CANCELLABLE"})
        logger.info("cancellation requested for %s", request_id)
        return {"requestId": request_id, "cancelled": True}

    @app.get("/v1/nonces/{principal}")
    async def nonce(principal: str, service: RelayService = Depends(get_service)) -> Dict[str, Any]:
        try:
            address = normalize_address(principal, field_name="principal")
        except InvalidAuthorization as exc:
            raise HTTPException(status_code=400, detail={"code": "INVALID_PRINCIPAL", "message": str(exc)}) from exc
        return {"principal": address, "nextExpected": service.expected_nonce(address)}

    @app.get("/v1/stats")
    async def stats(service: RelayService = Depends(get_service)) -> Dict[str, Any]:
        return service.stats()

    return app
