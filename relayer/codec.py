"""EIP-712 encoding of relay operations.

The digest is built struct-hash-of-struct-hash style: the domain descriptor and
the operation are hashed independently and the final digest is
``keccak256(0x1901 || domainSeparator || structHash)``. Clients that sign the
dictionary returned by :meth:`AuthorizationCodec.typed_data` with
``eth_account.Account.sign_typed_data`` produce a signature over exactly the
bytes :meth:`AuthorizationCodec.digest` returns.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import encode
from eth_utils import keccak

from .models import DomainDescriptor, Operation

EIP712_PREFIX = b"\x19\x01"

DOMAIN_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("name", "string"),
    ("version", "string"),
    ("chainId", "uint256"),
    ("verifyingContract", "address"),
)

OPERATION_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("principal", "address"),
    ("target", "address"),
    ("payload", "bytes"),
    ("value", "uint256"),
    ("gas", "uint256"),
    ("sequence", "uint256"),
    ("validUntil", "uint256"),
)


def encode_type(name: str, fields: Sequence[Tuple[str, str]]) -> str:
    members = ",".join(f"{kind} {field}" for field, kind in fields)
    return f"{name}({members})"


def type_hash(name: str, fields: Sequence[Tuple[str, str]]) -> bytes:
    return keccak(text=encode_type(name, fields))


def _hash_struct(name: str, fields: Sequence[Tuple[str, str]], values: Dict[str, Any]) -> bytes:
    types: List[str] = ["bytes32"]
    encoded: List[Any] = [type_hash(name, fields)]
    for field, kind in fields:
        value = values[field]
        if kind == "string":
            types.append("bytes32")
            encoded.append(keccak(text=value))
        elif kind == "bytes":
            types.append("bytes32")
            encoded.append(keccak(value))
        else:
            types.append(kind)
            encoded.append(value)
    return keccak(encode(types, encoded))


class AuthorizationCodec:
    """Canonical hashing for :class:`Operation` plus :class:`DomainDescriptor`."""

    primary_type = "Operation"

    def domain_separator(self, domain: DomainDescriptor) -> bytes:
        return _hash_struct(
            "EIP712Domain",
            DOMAIN_FIELDS,
            {
                "name": domain.name,
                "version": domain.version,
                "chainId": domain.chain_id,
                "verifyingContract": domain.verifying_contract,
            },
        )

    def struct_hash(self, operation: Operation) -> bytes:
        return _hash_struct(self.primary_type, OPERATION_FIELDS, _operation_values(operation))

    def digest(self, operation: Operation, domain: DomainDescriptor) -> bytes:
        """Return the 32-byte digest a principal signs for ``operation``."""

        return keccak(EIP712_PREFIX + self.domain_separator(domain) + self.struct_hash(operation))

    def request_id(self, operation: Operation) -> str:
        """Deterministic id shared by every resubmission of the same operation.

        Only ``(principal, target, payload, sequence)`` participate, so the id
        is stable across domains and signatures.
        """

        encoded = encode(
            ["address", "address", "bytes32", "uint256"],
            [operation.principal, operation.target, keccak(operation.payload), operation.sequence],
        )
        return "0x" + keccak(encoded).hex()

    def typed_data(self, operation: Operation, domain: DomainDescriptor) -> Dict[str, Any]:
        """Return the EIP-712 JSON structure a wallet signs."""

        message = _operation_values(operation)
        message["payload"] = "0x" + operation.payload.hex()
        return {
            "types": {
                "EIP712Domain": [{"name": field, "type": kind} for field, kind in DOMAIN_FIELDS],
                self.primary_type: [{"name": field, "type": kind} for field, kind in OPERATION_FIELDS],
            },
            "primaryType": self.primary_type,
            "domain": domain.to_dict(),
            "message": message,
        }


def _operation_values(operation: Operation) -> Dict[str, Any]:
    return {
        "principal": operation.principal,
        "target": operation.target,
        "payload": operation.payload,
        "value": operation.value,
        "gas": operation.gas,
        "sequence": operation.sequence,
        "validUntil": operation.valid_until,
    }
