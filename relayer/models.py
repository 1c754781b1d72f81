"""Data model shared by every relay component."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from eth_utils import decode_hex, is_address, is_hex, to_checksum_address

from .errors import FailureKind, InvalidAuthorization, error_for

_UINT256_MAX = 2**256 - 1


def normalize_address(value: Any, *, field_name: str) -> str:
    """Return the checksummed form of ``value`` or raise ``InvalidAuthorization``."""

    if not isinstance(value, str) or not is_address(value):
        raise InvalidAuthorization(f"{field_name} must be a 0x-prefixed 20-byte address")
    return to_checksum_address(value)


def _coerce_uint(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise InvalidAuthorization(f"{field_name} must be an unsigned integer")
    if isinstance(value, str):
        text = value.strip()
        try:
            value = int(text, 16) if text.lower().startswith("0x") else int(text)
        except ValueError as exc:
            raise InvalidAuthorization(f"{field_name} must be an unsigned integer") from exc
    if not isinstance(value, int) or value < 0 or value > _UINT256_MAX:
        raise InvalidAuthorization(f"{field_name} must be an unsigned integer")
    return value


def _coerce_bytes(value: Any, *, field_name: str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str) and (value in ("", "0x") or is_hex(value)):
        try:
            return decode_hex(value) if value else b""
        except ValueError as exc:
            raise InvalidAuthorization(f"{field_name} must be hex encoded") from exc
    raise InvalidAuthorization(f"{field_name} must be hex encoded bytes")


def _resolve(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


@dataclass(frozen=True)
class Operation:
    """An operation a principal authorizes the relay to execute."""

    principal: str
    target: str
    payload: bytes
    value: int
    sequence: int
    valid_until: int
    gas: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "principal", normalize_address(self.principal, field_name="principal"))
        object.__setattr__(self, "target", normalize_address(self.target, field_name="target"))
        object.__setattr__(self, "payload", _coerce_bytes(self.payload, field_name="payload"))
        for name in ("value", "sequence", "valid_until", "gas"):
            object.__setattr__(self, name, _coerce_uint(getattr(self, name), field_name=name))

    @property
    def selector(self) -> Optional[str]:
        if len(self.payload) < 4:
            return None
        return "0x" + self.payload[:4].hex()

    def is_expired(self, now: Optional[float] = None) -> bool:
        current = time.time() if now is None else now
        return self.valid_until <= current

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Operation":
        if not isinstance(data, dict):
            raise InvalidAuthorization("operation must be an object")
        return cls(
            principal=_resolve(data, "principal", "from"),
            target=_resolve(data, "target", "to"),
            payload=_resolve(data, "payload", "data", default=b""),
            value=_resolve(data, "value", default=0),
            sequence=_resolve(data, "sequence", "nonce"),
            valid_until=_resolve(data, "valid_until", "validUntil", "deadline"),
            gas=_resolve(data, "gas", "gasLimit", default=0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": self.principal,
            "target": self.target,
            "payload": "0x" + self.payload.hex(),
            "value": self.value,
            "gas": self.gas,
            "sequence": self.sequence,
            "validUntil": self.valid_until,
        }


@dataclass(frozen=True)
class DomainDescriptor:
    """Scoping data binding a signature to one deployment and network."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise InvalidAuthorization("domain name must be a non-empty string")
        if not isinstance(self.version, str) or not self.version:
            raise InvalidAuthorization("domain version must be a non-empty string")
        chain_id = _coerce_uint(self.chain_id, field_name="chain_id")
        if chain_id == 0:
            raise InvalidAuthorization("chain_id must be positive")
        object.__setattr__(self, "chain_id", chain_id)
        object.__setattr__(
            self,
            "verifying_contract",
            normalize_address(self.verifying_contract, field_name="verifying_contract"),
        )

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "DomainDescriptor":
        if not isinstance(data, dict):
            raise InvalidAuthorization("domain must be an object")
        return cls(
            name=_resolve(data, "name"),
            version=_resolve(data, "version"),
            chain_id=_resolve(data, "chain_id", "chainId"),
            verifying_contract=_resolve(data, "verifying_contract", "verifyingContract"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class Authorization:
    """A signed operation as received from the principal."""

    operation: Operation
    domain: DomainDescriptor
    signature: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "signature", _coerce_bytes(self.signature, field_name="signature"))

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Authorization":
        if not isinstance(data, dict):
            raise InvalidAuthorization("authorization must be an object")
        return cls(
            operation=Operation.from_mapping(data.get("operation")),
            domain=DomainDescriptor.from_mapping(data.get("domain")),
            signature=_resolve(data, "signature", default=b""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.to_dict(),
            "domain": self.domain.to_dict(),
            "signature": "0x" + self.signature.hex(),
        }


@dataclass(frozen=True)
class Budget:
    """Resource budget proposed for one submission."""

    limit: int
    unit_price: int

    @property
    def max_cost(self) -> int:
        return self.limit * self.unit_price

    def to_dict(self) -> Dict[str, int]:
        return {"limit": self.limit, "unitPrice": self.unit_price}


class RequestState(str, Enum):
    """Persisted lifecycle state of a relay request."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = {RequestState.CONFIRMED, RequestState.FAILED, RequestState.EXPIRED}


class RelayStage(str, Enum):
    """Position of a request inside the executor state machine."""

    RECEIVED = "received"
    VERIFYING = "verifying"
    GUARDING = "guarding"
    ESTIMATING = "estimating"
    SUBMITTING = "submitting"
    AWAITING_FINALITY = "awaiting_finality"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def state(self) -> RequestState:
        return _STAGE_STATES[self]

    @property
    def is_pre_submission(self) -> bool:
        return self in _PRE_SUBMISSION


_STAGE_STATES = {
    RelayStage.RECEIVED: RequestState.PENDING,
    RelayStage.VERIFYING: RequestState.PENDING,
    RelayStage.GUARDING: RequestState.PENDING,
    RelayStage.ESTIMATING: RequestState.PENDING,
    RelayStage.SUBMITTING: RequestState.SUBMITTED,
    RelayStage.AWAITING_FINALITY: RequestState.SUBMITTED,
    RelayStage.CONFIRMED: RequestState.CONFIRMED,
    RelayStage.FAILED: RequestState.FAILED,
    RelayStage.EXPIRED: RequestState.EXPIRED,
}

_PRE_SUBMISSION = {
    RelayStage.RECEIVED,
    RelayStage.VERIFYING,
    RelayStage.GUARDING,
    RelayStage.ESTIMATING,
}


@dataclass(frozen=True)
class Transition:
    stage: RelayStage
    at: float
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.stage.value, "at": self.at, "detail": self.detail}


@dataclass
class RequestRecord:
    """Bookkeeping for one relay attempt, keyed by its deterministic id."""

    request_id: str
    authorization: Authorization
    state: RequestState = RequestState.PENDING
    stage: RelayStage = RelayStage.RECEIVED
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    submitted_at: Optional[float] = None
    backend_reference: Optional[str] = None
    budget: Optional[Budget] = None
    cost_actual: Optional[int] = None
    error: Optional[FailureKind] = None
    error_detail: Optional[str] = None
    retryable: bool = False
    nonce_consumed: bool = False
    receipt: Dict[str, Any] = field(default_factory=dict)
    transitions: List[Transition] = field(default_factory=list)

    @property
    def principal(self) -> str:
        return self.authorization.operation.principal

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def advance(self, stage: RelayStage, detail: Optional[str] = None, *, now: Optional[float] = None) -> None:
        if self.is_terminal:
            raise RuntimeError(f"request {self.request_id} is already {self.state.value}")
        at = time.time() if now is None else now
        self.stage = stage
        self.state = stage.state
        self.updated_at = at
        self.transitions.append(Transition(stage=stage, at=at, detail=detail))

    def fail(
        self,
        kind: FailureKind,
        detail: Optional[str] = None,
        *,
        retryable: bool = False,
        now: Optional[float] = None,
    ) -> None:
        stage = RelayStage.EXPIRED if kind is FailureKind.EXPIRED else RelayStage.FAILED
        self.error = kind
        self.error_detail = detail
        self.retryable = retryable
        self.advance(stage, detail, now=now)

    def raise_for_error(self) -> None:
        """Raise the :class:`relayer.errors.RelayError` matching a recorded failure."""

        if self.error is not None:
            raise error_for(self.error, self.error_detail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "state": self.state.value,
            "stage": self.stage.value,
            "authorization": self.authorization.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "submittedAt": self.submitted_at,
            "backendReference": self.backend_reference,
            "budget": self.budget.to_dict() if self.budget else None,
            "costActual": self.cost_actual,
            "error": self.error.value if self.error else None,
            "errorDetail": self.error_detail,
            "retryable": self.retryable,
            "nonceConsumed": self.nonce_consumed,
            "receipt": self.receipt,
            "transitions": [item.to_dict() for item in self.transitions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestRecord":
        budget = data.get("budget")
        error = data.get("error")
        return cls(
            request_id=str(data["requestId"]),
            authorization=Authorization.from_mapping(data["authorization"]),
            state=RequestState(data["state"]),
            stage=RelayStage(data["stage"]),
            created_at=float(data["createdAt"]),
            updated_at=float(data.get("updatedAt") or data["createdAt"]),
            submitted_at=data.get("submittedAt"),
            backend_reference=data.get("backendReference"),
            budget=Budget(limit=int(budget["limit"]), unit_price=int(budget["unitPrice"])) if budget else None,
            cost_actual=data.get("costActual"),
            error=FailureKind(error) if error else None,
            error_detail=data.get("errorDetail"),
            retryable=bool(data.get("retryable", False)),
            nonce_consumed=bool(data.get("nonceConsumed", False)),
            receipt=dict(data.get("receipt") or {}),
            transitions=[
                Transition(stage=RelayStage(item["stage"]), at=float(item["at"]), detail=item.get("detail"))
                for item in data.get("transitions") or []
            ],
        )


@dataclass(frozen=True)
class NonceRecord:
    principal: str
    next_expected: int
