"""Relay service for authorization-delegated operations."""

from .backend import ExecutionBackend, FinalityResult, FinalityStatus, InMemoryExecutionBackend, SimulationResult
from .codec import AuthorizationCodec
from .config import GuardConfig, RelayConfig, load_config
from .errors import FailureKind, RelayError
from .executor import RelayExecutor
from .models import Authorization, Budget, DomainDescriptor, Operation, RelayStage, RequestRecord, RequestState
from .nonces import NonceTracker
from .scheduler import BatchScheduler
from .service import RelayService
from .verifier import SignatureVerifier

__all__ = [
    "Authorization",
    "AuthorizationCodec",
    "BatchScheduler",
    "Budget",
    "DomainDescriptor",
    "ExecutionBackend",
    "FailureKind",
    "FinalityResult",
    "FinalityStatus",
    "GuardConfig",
    "InMemoryExecutionBackend",
    "NonceTracker",
    "Operation",
    "RelayConfig",
    "RelayError",
    "RelayExecutor",
    "RelayService",
    "RelayStage",
    "RequestRecord",
    "RequestState",
    "SignatureVerifier",
    "SimulationResult",
    "load_config",
]
