"""Ethereum JSON-RPC implementation of the execution backend."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx
from eth_abi import encode
from eth_account import Account
from eth_utils import keccak

from .backend import FinalityResult, FinalityStatus, SimulationResult
from .codec import AuthorizationCodec
from .errors import BackendUnavailable, ExecutionReverted
from .models import Authorization, Budget, Operation, normalize_address

FORWARDER_SIGNATURE = "execute((address,address,bytes,uint256,uint256,uint256,uint256),bytes)"
FORWARDER_SELECTOR = keccak(text=FORWARDER_SIGNATURE)[:4]

_ALREADY_KNOWN = ("already known", "known transaction", "already imported")

# Geth and most clients answer a reverting eth_estimateGas with code 3; older
# nodes use the generic -32000 with a revert message.
_REVERT_CODE = 3
_SERVER_ERROR_CODE = -32000


class JsonRpcError(RuntimeError):
    """Raised when the node answers with a JSON-RPC error object."""

    def __init__(self, message: str, *, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data

    @property
    def is_revert(self) -> bool:
        if self.code == _REVERT_CODE:
            return True
        return self.code == _SERVER_ERROR_CODE and "revert" in str(self).lower()


def encode_forwarder_call(authorization: Authorization) -> bytes:
    """ABI-encode the forwarder ``execute`` call for ``authorization``."""

    operation = authorization.operation
    request = (
        operation.principal,
        operation.target,
        operation.payload,
        operation.value,
        operation.gas,
        operation.sequence,
        operation.valid_until,
    )
    return FORWARDER_SELECTOR + encode(
        ["(address,address,bytes,uint256,uint256,uint256,uint256)", "bytes"],
        [request, authorization.signature],
    )


def _quantity(value: Any) -> int:
    if value in (None, ""):
        return 0
    if isinstance(value, int):
        return value
    text = str(value).strip()
    return int(text, 16) if text.startswith("0x") else int(text)


class JsonRpcExecutionBackend:
    """Submits forwarder transactions signed by the relayer's own key.

    Relayer transaction nonces are tracked locally (seeded from the node's
    pending count) under a lock so concurrent submissions never collide.
    Transactions always go to the configured ``forwarder``; the domain carried
    by an authorization never chooses the destination.
    """

    def __init__(
        self,
        url: str,
        *,
        relayer_key: str,
        chain_id: int,
        forwarder: str,
        confirmations: int = 1,
        poll_interval: float = 2.0,
        priority_fee: int = 1_000_000_000,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._url = url
        self._account = Account.from_key(relayer_key)
        self._chain_id = chain_id
        self._forwarder = normalize_address(forwarder, field_name="forwarder")
        self._confirmations = confirmations
        self._poll_interval = poll_interval
        self._priority_fee = priority_fee
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport
        self._codec = AuthorizationCodec()
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None
        self._signed: Dict[str, Tuple[str, bytes]] = {}
        self._request_ids = 0

    @property
    def relayer_address(self) -> str:
        return self._account.address

    @property
    def forwarder(self) -> str:
        return self._forwarder

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        self._request_ids += 1
        payload = {"jsonrpc": "2.0", "id": self._request_ids, "method": method, "params": params}
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, headers=self._headers, transport=self._transport
            ) as client:
                response = await client.post(self._url, json=payload)
        except httpx.HTTPError as exc:
            raise BackendUnavailable(f"RPC transport error calling {method}: {exc}") from exc
        if response.status_code == 429 or response.status_code >= 500:
            raise BackendUnavailable(f"RPC responded with HTTP {response.status_code}")
        if response.status_code >= 400:
            raise JsonRpcError(f"RPC responded with HTTP {response.status_code}", code=response.status_code)
        data = response.json()
        if data.get("error"):
            error = data["error"] or {}
            raise JsonRpcError(
                str(error.get("message") or "RPC error"),
                code=error.get("code"),
                data=error.get("data"),
            )
        return data.get("result")

    async def simulate(self, operation: Operation) -> SimulationResult:
        call = {
            "from": operation.principal,
            "to": operation.target,
            "data": "0x" + operation.payload.hex(),
            "value": hex(operation.value),
        }
        try:
            gas = _quantity(await self._rpc("eth_estimateGas", [call, "latest"]))
        except JsonRpcError as exc:
            if exc.is_revert:
                return SimulationResult(ok=False, revert_reason=str(exc))
            raise BackendUnavailable(f"gas estimation failed: {exc}") from exc
        try:
            unit_price = _quantity(await self._rpc("eth_gasPrice", []))
        except JsonRpcError:
            unit_price = None
        return SimulationResult(ok=True, cost=gas, unit_price=unit_price or None)

    async def submit(self, authorization: Authorization, budget: Budget) -> str:
        key = self._codec.request_id(authorization.operation)
        cached = self._signed.get(key)
        if cached is None:
            async with self._nonce_lock:
                if self._next_nonce is None:
                    self._next_nonce = await self._pending_nonce()
                tx = {
                    "type": 2,
                    "chainId": self._chain_id,
                    "nonce": self._next_nonce,
                    "to": self._forwarder,
                    "value": authorization.operation.value,
                    "data": "0x" + encode_forwarder_call(authorization).hex(),
                    "gas": budget.limit,
                    "maxFeePerGas": budget.unit_price,
                    "maxPriorityFeePerGas": min(self._priority_fee, budget.unit_price),
                }
                signed = Account.sign_transaction(tx, self._account.key)
                cached = ("0x" + bytes(signed.hash).hex(), bytes(signed.raw_transaction))
                self._signed[key] = cached
                self._next_nonce += 1

        tx_hash, raw = cached
        try:
            await self._rpc("eth_sendRawTransaction", ["0x" + raw.hex()])
        except BackendUnavailable:
            # The send may or may not have reached the node; drop the signed
            # copy and let the next attempt resync from the pending count.
            await self._discard(key)
            raise
        except JsonRpcError as exc:
            if any(marker in str(exc).lower() for marker in _ALREADY_KNOWN):
                return tx_hash
            await self._discard(key)
            raise ExecutionReverted(f"submission rejected: {exc}", reason=str(exc)) from exc
        return tx_hash

    async def _discard(self, key: str) -> None:
        self._signed.pop(key, None)
        async with self._nonce_lock:
            self._next_nonce = None

    async def await_finality(self, reference: str, timeout: float) -> FinalityResult:
        deadline = time.monotonic() + timeout
        while True:
            try:
                receipt = await self._rpc("eth_getTransactionReceipt", [reference])
            except JsonRpcError as exc:
                raise BackendUnavailable(f"receipt lookup failed: {exc}") from exc
            if isinstance(receipt, dict) and receipt.get("blockNumber") is not None:
                if await self._is_final(receipt):
                    self._forget(reference)
                    return self._finality_from_receipt(receipt)
            if time.monotonic() >= deadline:
                self._forget(reference)
                return FinalityResult(status=FinalityStatus.PENDING)
            await asyncio.sleep(self._poll_interval)

    async def _pending_nonce(self) -> int:
        try:
            return _quantity(await self._rpc("eth_getTransactionCount", [self.relayer_address, "pending"]))
        except JsonRpcError as exc:
            raise BackendUnavailable(f"relayer nonce lookup failed: {exc}") from exc

    async def _is_final(self, receipt: Dict[str, Any]) -> bool:
        if self._confirmations <= 1:
            return True
        try:
            head = _quantity(await self._rpc("eth_blockNumber", []))
        except JsonRpcError as exc:
            raise BackendUnavailable(f"block number lookup failed: {exc}") from exc
        return head - _quantity(receipt.get("blockNumber")) + 1 >= self._confirmations

    def _forget(self, reference: str) -> None:
        for key, (tx_hash, _raw) in list(self._signed.items()):
            if tx_hash == reference:
                self._signed.pop(key, None)

    @staticmethod
    def _finality_from_receipt(receipt: Dict[str, Any]) -> FinalityResult:
        cost = _quantity(receipt.get("gasUsed"))
        if _quantity(receipt.get("status")) == 1:
            return FinalityResult(status=FinalityStatus.CONFIRMED, receipt=receipt, cost=cost)
        return FinalityResult(
            status=FinalityStatus.FAILED,
            receipt=receipt,
            reason="transaction reverted",
            cost=cost,
        )
