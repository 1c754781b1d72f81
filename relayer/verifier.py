"""secp256k1 signer recovery for relay digests."""

from __future__ import annotations

from typing import Iterable, Optional

from eth_keys import keys
from eth_keys.exceptions import BadSignature as _KeysBadSignature
from eth_keys.exceptions import ValidationError as _KeysValidationError

from .errors import MalformedSignature, RecoveryFailure

SIGNATURE_LENGTH = 65


def split_signature(signature: bytes) -> tuple[int, int, int]:
    """Return ``(v, r, s)`` with ``v`` normalized to the 0/1 recovery id."""

    if not isinstance(signature, (bytes, bytearray)) or len(signature) != SIGNATURE_LENGTH:
        length = len(signature) if isinstance(signature, (bytes, bytearray)) else "n/a"
        raise MalformedSignature(f"signature must be {SIGNATURE_LENGTH} bytes (got {length})")
    r = int.from_bytes(signature[0:32], "big")
    s = int.from_bytes(signature[32:64], "big")
    v = signature[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise MalformedSignature(f"invalid recovery parameter {signature[64]}")
    return v, r, s


class SignatureVerifier:
    """Answers "who signed this digest" without judging authorization."""

    def recover(self, digest: bytes, signature: bytes) -> str:
        if len(digest) != 32:
            raise MalformedSignature("digest must be 32 bytes")
        v, r, s = split_signature(signature)
        try:
            parsed = keys.Signature(vrs=(v, r, s))
        except (_KeysValidationError, _KeysBadSignature) as exc:
            raise MalformedSignature(f"signature components out of range: {exc}") from exc
        try:
            public_key = parsed.recover_public_key_from_msg_hash(digest)
        except _KeysBadSignature as exc:
            raise RecoveryFailure(f"unable to recover public key: {exc}") from exc
        return public_key.to_checksum_address()

    def matches(self, digest: bytes, signature: bytes, candidates: Iterable[str]) -> Optional[str]:
        """Return the first candidate equal to the recovered signer, if any."""

        signer = self.recover(digest, signature)
        for candidate in candidates:
            if candidate == signer:
                return candidate
        return None
