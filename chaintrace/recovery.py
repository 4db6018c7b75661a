"""Block producer key recovery.

ECDSA recovery yields two candidate public keys per (message, signature),
one per parity of the ephemeral point R. A compact block signature carries
the parity in the top bit of ``s``; when that bit cannot be trusted the
resolver tries both parities and keeps the one matching a key known out of
band.
"""

from __future__ import annotations

import logging
from typing import Optional

from .crypto import SignatureError, recover_compact, recover_public_key, split_compact
from .models import CONSENSUS_GENESIS, CONSENSUS_POA, FullBlock, hex_to_bytes

logger = logging.getLogger(__name__)

RecoveryFlag = bool

GENESIS_PRODUCER = bytes(64)


class AmbiguousRecoveryFailure(ValueError):
    pass


class ReducedFormAssertionFailure(AssertionError):
    pass


def normalize_public_key(public_key: bytes | str) -> bytes:
    raw = hex_to_bytes(public_key) if isinstance(public_key, str) else bytes(public_key)
    if len(raw) == 65 and raw[0] == 0x04:
        raw = raw[1:]
    if len(raw) != 64:
        raise ValueError("Public key must be 64 bytes (uncompressed x || y)")
    return raw


def _split_signature(signature: bytes | str) -> tuple[int, int]:
    raw = hex_to_bytes(signature) if isinstance(signature, str) else bytes(signature)
    if len(raw) == 64:
        r, s, _ = split_compact(raw)
        return r, s
    if len(raw) == 65:
        v = raw[64]
        if v >= 27:
            v -= 27
        if v & 2:
            raise ReducedFormAssertionFailure("Signature uses reduced-x form, which this signer never produces")
        return int.from_bytes(raw[:32], "big"), int.from_bytes(raw[32:64], "big")
    raise SignatureError("Signature must be 64 or 65 bytes")


def recovery_candidates(message: bytes, signature: bytes | str) -> dict[RecoveryFlag, Optional[bytes]]:
    """Public keys recovered under each flag; None where recovery fails."""
    r, s = _split_signature(signature)
    candidates: dict[RecoveryFlag, Optional[bytes]] = {}
    for flag in (False, True):
        try:
            candidates[flag] = recover_public_key(message, r, s, int(flag))
        except SignatureError as exc:
            logger.debug("recovery with flag=%s failed: %s", flag, exc)
            candidates[flag] = None
    return candidates


def resolve(message: bytes, signature: bytes | str, expected_public_key: bytes | str) -> RecoveryFlag:
    expected = normalize_public_key(expected_public_key)
    candidates = recovery_candidates(message, signature)
    for flag, candidate in candidates.items():
        if candidate == expected:
            return flag
    raise AmbiguousRecoveryFailure(
        f"Neither recovery candidate matches expected key 0x{expected.hex()}"
    )


def block_producer(block: FullBlock) -> Optional[bytes]:
    """Producer key using the flag embedded in the block signature."""
    if block.consensus.kind == CONSENSUS_GENESIS:
        return GENESIS_PRODUCER
    if block.consensus.kind == CONSENSUS_POA:
        try:
            return recover_compact(block.signing_message(), hex_to_bytes(block.consensus.signature))
        except SignatureError as exc:
            logger.warning("block %s: producer recovery failed: %s", block.header.height, exc)
            return None
    return None


def resolve_block_producer(block: FullBlock, expected_public_key: bytes | str) -> RecoveryFlag:
    if block.consensus.kind != CONSENSUS_POA:
        raise ValueError(
            f"Block {block.header.height} has {block.consensus.kind} consensus, no producer signature"
        )
    return resolve(block.signing_message(), block.consensus.signature, expected_public_key)
