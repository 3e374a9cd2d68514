"""
Veri-Charm Hashing

All hashes use SHA-256 with lowercase hexadecimal output and a
"sha256:" prefix.

The supply-chain hash is a chained commitment over a claim's ordered
event history:

    H_0 = SHA-256(claim_id)
    H_i = SHA-256(H_{i-1} || CJE(event_i))

Reordering, dropping or editing any event changes the final value, so
tamper detection is a recompute-and-compare.
"""

import hashlib
import hmac
from typing import Any, Dict, Iterable, Union

from .canonicalization import canonicalize

HASH_PREFIX = "sha256:"


def sha256_hash(data: Union[bytes, str]) -> str:
    """
    Compute SHA-256 hash in ledger format.

    Returns:
        Hash string in format "sha256:abcdef..."
    """
    if isinstance(data, str):
        data = data.encode('utf-8')

    digest = hashlib.sha256(data).hexdigest().lower()
    return f"{HASH_PREFIX}{digest}"


def payload_hash(payload: Dict[str, Any]) -> str:
    """payload_hash = SHA-256(CJE(payload))"""
    return sha256_hash(canonicalize(payload or {}))


def genesis_hash(claim_id: str) -> str:
    """H_0 of a claim's supply-chain hash."""
    return sha256_hash(claim_id)


def chain_hash(previous: str, event_bytes: bytes) -> str:
    """H_i = SHA-256(H_{i-1} || event bytes)."""
    return sha256_hash(previous.encode('utf-8') + event_bytes)


def supply_chain_hash(claim_id: str, serialized_events: Iterable[bytes]) -> str:
    """Recompute the full chained hash from serialized events, in order."""
    current = genesis_hash(claim_id)
    for event_bytes in serialized_events:
        current = chain_hash(current, event_bytes)
    return current


def directory_hash(snapshot: Dict[str, Any]) -> str:
    """Hash of a trust directory snapshot."""
    return sha256_hash(canonicalize(snapshot))


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two hash strings without leaking the mismatch position."""
    return hmac.compare_digest(a.encode('utf-8'), b.encode('utf-8'))


def verify_hash(declared_hash: str, data: Union[bytes, str]) -> bool:
    """
    Verify that data matches a declared hash.

    Verifiers MUST recompute hashes from source data.
    """
    if not declared_hash.startswith(HASH_PREFIX):
        return False
    return constant_time_equals(sha256_hash(data), declared_hash)
