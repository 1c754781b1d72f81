"""Shared fixtures for the relay test suites."""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List

import pytest
from eth_account import Account

from relayer.codec import AuthorizationCodec
from relayer.config import EstimatorConfig, GuardConfig, RelayConfig, TargetPolicy
from relayer.models import Authorization, DomainDescriptor, Operation

from relay_support import OTHER_TARGET, PRINCIPAL_KEYS, TARGET, TRANSFER_PAYLOAD


@pytest.fixture
def domain() -> DomainDescriptor:
    return DomainDescriptor(
        name="Relay Forwarder",
        version="1",
        chain_id=11155111,
        verifying_contract="0x000000000000000000000000000000000000f0a0",
    )


@pytest.fixture
def keys() -> List[str]:
    return list(PRINCIPAL_KEYS)


@pytest.fixture
def make_operation() -> Callable[..., Operation]:
    def _make(
        key: str = PRINCIPAL_KEYS[0],
        sequence: int = 0,
        *,
        target: str = TARGET,
        payload: bytes = TRANSFER_PAYLOAD,
        value: int = 0,
        gas: int = 0,
        valid_until: int | None = None,
    ) -> Operation:
        return Operation(
            principal=Account.from_key(key).address,
            target=target,
            payload=payload,
            value=value,
            sequence=sequence,
            valid_until=valid_until if valid_until is not None else int(time.time()) + 3600,
            gas=gas,
        )

    return _make


@pytest.fixture
def sign(domain: DomainDescriptor) -> Callable[..., Authorization]:
    codec = AuthorizationCodec()

    def _sign(operation: Operation, key: str = PRINCIPAL_KEYS[0], *, signing_domain: DomainDescriptor | None = None) -> Authorization:
        scope = signing_domain or domain
        signed = Account.unsafe_sign_hash(codec.digest(operation, scope), key)
        return Authorization(operation=operation, domain=scope, signature=bytes(signed.signature))

    return _sign


@pytest.fixture
def authorize(make_operation, sign) -> Callable[..., Authorization]:
    def _authorize(key: str = PRINCIPAL_KEYS[0], sequence: int = 0, **kwargs: Any) -> Authorization:
        return sign(make_operation(key, sequence, **kwargs), key)

    return _authorize


@pytest.fixture
def make_config(domain: DomainDescriptor) -> Callable[..., RelayConfig]:
    def _make(guard: Dict[str, Any] | None = None, **overrides: Any) -> RelayConfig:
        guard_settings: Dict[str, Any] = {
            "allowed_targets": [TargetPolicy(target=TARGET), TargetPolicy(target=OTHER_TARGET)],
            "rate_limit": 100,
            "rate_window_seconds": 60.0,
            "max_gas": 1_000_000,
        }
        guard_settings.update(guard or {})
        settings: Dict[str, Any] = {
            "domain": domain,
            "guard": GuardConfig(**guard_settings),
            "estimator": EstimatorConfig(),
            "finality_timeout_seconds": 1.0,
            "retry_attempts": 3,
            "retry_backoff_seconds": 0.0,
        }
        settings.update(overrides)
        return RelayConfig(**settings)

    return _make
