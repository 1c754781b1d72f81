"""Configuration models for the relay service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import InvalidAuthorization, RelayConfigurationError
from .models import DomainDescriptor, normalize_address

logger = logging.getLogger(__name__)

_STORE_BACKENDS = {"memory", "file"}


def _resolve(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return default


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value, 0) if isinstance(value, str) else int(value)


def _is_selector(value: Any) -> bool:
    if not isinstance(value, str) or not value.startswith("0x") or len(value) != 10:
        return False
    try:
        int(value[2:], 16)
    except ValueError:
        return False
    return True


@dataclass
class TargetPolicy:
    """Allow-list entry: a target and, optionally, its permitted selectors."""

    target: str
    selectors: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        try:
            self.target = normalize_address(self.target, field_name="target")
        except InvalidAuthorization as exc:
            raise ValueError("target must be a 0x-prefixed 20-byte address") from exc
        normalized: List[str] = []
        for selector in self.selectors:
            if not _is_selector(selector):
                raise ValueError("selectors must be 4-byte 0x-prefixed values")
            normalized.append(selector.lower())
        self.selectors = normalized


@dataclass
class GuardConfig:
    """Policy knobs for :class:`relayer.guard.SecurityGuard`."""

    allowed_targets: List[TargetPolicy] = field(default_factory=list)
    rate_limit: int = 30
    rate_window_seconds: float = 60.0
    blocked_selectors: List[str] = field(default_factory=list)
    blocked_patterns: List[str] = field(default_factory=list)
    max_gas: int = 5_000_000
    max_cost_wei: Optional[int] = None
    max_value_wei: Optional[int] = 0

    def __post_init__(self) -> None:
        if not isinstance(self.rate_limit, int) or self.rate_limit < 0:
            raise ValueError("rate_limit must be a non-negative integer")
        if self.rate_window_seconds <= 0:
            raise ValueError("rate_window_seconds must be positive")
        if not isinstance(self.max_gas, int) or self.max_gas <= 0:
            raise ValueError("max_gas must be a positive integer")
        if self.max_cost_wei is not None and self.max_cost_wei <= 0:
            raise ValueError("max_cost_wei must be positive when provided")
        if self.max_value_wei is not None and self.max_value_wei < 0:
            raise ValueError("max_value_wei must be non-negative when provided")
        selectors: List[str] = []
        for selector in self.blocked_selectors:
            if not _is_selector(selector):
                raise ValueError("blocked_selectors must be 4-byte 0x-prefixed values")
            selectors.append(selector.lower())
        self.blocked_selectors = selectors
        patterns: List[str] = []
        for pattern in self.blocked_patterns:
            text = str(pattern).lower()
            if text.startswith("0x"):
                text = text[2:]
            if not text:
                raise ValueError("blocked_patterns must not be empty")
            try:
                int(text, 16)
            except ValueError as exc:
                raise ValueError("blocked_patterns must be hex strings") from exc
            patterns.append(text)
        self.blocked_patterns = patterns

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "GuardConfig":
        targets = _resolve(data, "allowed_targets", "allowedTargets", "whitelist", default=[]) or []
        allowed: List[TargetPolicy] = []
        for item in targets:
            if isinstance(item, str):
                allowed.append(TargetPolicy(target=item))
            else:
                allowed.append(TargetPolicy(target=item.get("target"), selectors=list(item.get("selectors") or [])))
        return cls(
            allowed_targets=allowed,
            rate_limit=int(_resolve(data, "rate_limit", "rateLimit", default=30)),
            rate_window_seconds=float(_resolve(data, "rate_window_seconds", "rateWindowSeconds", default=60)),
            blocked_selectors=list(_resolve(data, "blocked_selectors", "blockedSelectors", default=[]) or []),
            blocked_patterns=list(_resolve(data, "blocked_patterns", "blockedPatterns", default=[]) or []),
            max_gas=int(_resolve(data, "max_gas", "maxGas", default=5_000_000)),
            max_cost_wei=_optional_int(_resolve(data, "max_cost_wei", "maxCostWei")),
            max_value_wei=_optional_int(_resolve(data, "max_value_wei", "maxValueWei", default=0)),
        )


@dataclass
class EstimatorConfig:
    gas_multiplier: float = 1.2
    gas_buffer: int = 25_000
    default_unit_price: int = 1_000_000_000
    max_unit_price: Optional[int] = None

    def __post_init__(self) -> None:
        if self.gas_multiplier < 1:
            raise ValueError("gas_multiplier must be at least 1")
        if not isinstance(self.gas_buffer, int) or self.gas_buffer < 0:
            raise ValueError("gas_buffer must be a non-negative integer")
        if not isinstance(self.default_unit_price, int) or self.default_unit_price <= 0:
            raise ValueError("default_unit_price must be a positive integer")
        if self.max_unit_price is not None and self.max_unit_price <= 0:
            raise ValueError("max_unit_price must be positive when provided")

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "EstimatorConfig":
        return cls(
            gas_multiplier=float(_resolve(data, "gas_multiplier", "gasMultiplier", default=1.2)),
            gas_buffer=int(_resolve(data, "gas_buffer", "gasBuffer", default=25_000)),
            default_unit_price=int(_resolve(data, "default_unit_price", "defaultUnitPrice", default=1_000_000_000)),
            max_unit_price=_optional_int(_resolve(data, "max_unit_price", "maxUnitPrice", "maxFeePerGasWei")),
        )


@dataclass
class RelayConfig:
    """Loaded relay configuration."""

    domain: DomainDescriptor
    guard: GuardConfig = field(default_factory=GuardConfig)
    estimator: EstimatorConfig = field(default_factory=EstimatorConfig)
    finality_timeout_seconds: float = 120.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    max_concurrency: int = 4
    inter_batch_delay_seconds: float = 0.0
    retention_seconds: int = 7 * 24 * 3600
    sweep_interval_seconds: int = 300
    store_backend: str = "memory"
    store_path: Optional[str] = None
    rpc_url: Optional[str] = None
    relayer_private_key: Optional[str] = field(default=None, repr=False)
    confirmations: int = 1

    def __post_init__(self) -> None:
        if self.finality_timeout_seconds <= 0:
            raise ValueError("finality_timeout_seconds must be positive")
        if not isinstance(self.retry_attempts, int) or self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds must be non-negative")
        if not isinstance(self.max_concurrency, int) or not (1 <= self.max_concurrency <= 256):
            raise ValueError("max_concurrency must be between 1 and 256")
        if self.inter_batch_delay_seconds < 0:
            raise ValueError("inter_batch_delay_seconds must be non-negative")
        if not isinstance(self.retention_seconds, int) or self.retention_seconds <= 0:
            raise ValueError("retention_seconds must be a positive integer")
        if not isinstance(self.sweep_interval_seconds, int) or not (1 <= self.sweep_interval_seconds <= 86400):
            raise ValueError("sweep_interval_seconds must be between 1 and 86400 seconds")
        self.store_backend = str(self.store_backend).lower()
        if self.store_backend not in _STORE_BACKENDS:
            raise ValueError(f"store_backend must be one of {sorted(_STORE_BACKENDS)}")
        if self.store_backend == "file" and not self.store_path:
            raise ValueError("store_path is required for the file store backend")
        if not isinstance(self.confirmations, int) or self.confirmations < 1:
            raise ValueError("confirmations must be a positive integer")

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "RelayConfig":
        domain_data = _resolve(data, "domain")
        if not isinstance(domain_data, dict):
            raise RelayConfigurationError("relay configuration requires a domain mapping")
        try:
            domain = DomainDescriptor.from_mapping(domain_data)
        except InvalidAuthorization as exc:
            raise RelayConfigurationError(f"invalid domain: {exc}") from exc
        return cls(
            domain=domain,
            guard=GuardConfig.from_mapping(_resolve(data, "guard", "policy", default={}) or {}),
            estimator=EstimatorConfig.from_mapping(_resolve(data, "estimator", default={}) or {}),
            finality_timeout_seconds=float(
                _resolve(data, "finality_timeout_seconds", "finalityTimeoutSeconds", default=120)
            ),
            retry_attempts=int(_resolve(data, "retry_attempts", "retryAttempts", default=3)),
            retry_backoff_seconds=float(_resolve(data, "retry_backoff_seconds", "retryBackoffSeconds", default=0.5)),
            max_concurrency=int(_resolve(data, "max_concurrency", "maxConcurrency", default=4)),
            inter_batch_delay_seconds=float(
                _resolve(data, "inter_batch_delay_seconds", "interBatchDelaySeconds", default=0)
            ),
            retention_seconds=int(_resolve(data, "retention_seconds", "retentionSeconds", default=7 * 24 * 3600)),
            sweep_interval_seconds=int(_resolve(data, "sweep_interval_seconds", "sweepIntervalSeconds", default=300)),
            store_backend=str(_resolve(data, "store_backend", "storeBackend", default="memory")),
            store_path=_resolve(data, "store_path", "storePath"),
            rpc_url=_resolve(data, "rpc_url", "rpcUrl"),
            confirmations=int(_resolve(data, "confirmations", default=1)),
        )

    @classmethod
    def from_env(cls) -> "RelayConfig":
        """Build a configuration purely from ``RELAYER_*`` variables."""

        chain_id = _parse_int_env("RELAYER_CHAIN_ID")
        contract = os.getenv("RELAYER_VERIFYING_CONTRACT")
        if chain_id is None or not contract:
            raise RelayConfigurationError("RELAYER_CHAIN_ID and RELAYER_VERIFYING_CONTRACT are required")
        try:
            domain = DomainDescriptor(
                name=os.getenv("RELAYER_DOMAIN_NAME", "Relay Forwarder"),
                version=os.getenv("RELAYER_DOMAIN_VERSION", "1"),
                chain_id=chain_id,
                verifying_contract=contract,
            )
        except InvalidAuthorization as exc:
            raise RelayConfigurationError(f"invalid domain: {exc}") from exc
        return cls(domain=domain).with_env_overrides()

    def with_env_overrides(self) -> "RelayConfig":
        """Apply ``RELAYER_*`` environment overrides on top of the file values."""

        overrides: Dict[str, Any] = {}
        rpc_url = os.getenv("RELAYER_RPC_URL")
        if rpc_url:
            overrides["rpc_url"] = rpc_url
        private_key = os.getenv("RELAYER_PRIVATE_KEY")
        if private_key:
            overrides["relayer_private_key"] = private_key
        backend = os.getenv("RELAYER_STORE_BACKEND")
        if backend:
            overrides["store_backend"] = backend
        store_path = os.getenv("RELAYER_STORE_PATH")
        if store_path:
            overrides["store_path"] = store_path
        for name, attr in (
            ("RELAYER_MAX_CONCURRENCY", "max_concurrency"),
            ("RELAYER_RETRY_ATTEMPTS", "retry_attempts"),
            ("RELAYER_RETENTION_SECONDS", "retention_seconds"),
            ("RELAYER_CONFIRMATIONS", "confirmations"),
        ):
            value = _parse_int_env(name)
            if value is not None:
                overrides[attr] = value
        timeout = _parse_int_env("RELAYER_FINALITY_TIMEOUT_MS")
        if timeout:
            overrides["finality_timeout_seconds"] = max(1.0, timeout / 1000)
        if not overrides:
            return self
        return replace(self, **overrides)


def _parse_int_env(name: str, default: Optional[int] = None) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw, 0)
    except ValueError:
        logger.warning("Invalid integer for %s: %s", name, raw)
        return default


def load_config(path: str | Path, *, apply_env: bool = True) -> RelayConfig:
    """Load relay configuration from a YAML (or JSON) document on disk."""

    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise RelayConfigurationError(f"relay configuration not found: {config_path}") from exc
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise RelayConfigurationError("relay configuration must be a mapping")
    config = RelayConfig.from_mapping(data)
    return config.with_env_overrides() if apply_env else config
