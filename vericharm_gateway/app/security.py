"""
Request-level security helpers for the Veri-Charm gateway.
"""

import hmac
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException

from vericharm import canonicalize
from vericharm.signing import address_from_public_key, verify_signature
from vericharm.util import b64d, mask_sensitive


def extract_client_id(headers: Mapping[str, str], client_host: Optional[str] = None) -> str:
    """
    Client identifier for rate limiting.
    Prefers an API key, then a wallet address, then the forwarded IP.
    """
    api_key = headers.get("x-api-key", "")
    if api_key:
        return f"api:{api_key[:8]}"

    wallet = headers.get("x-wallet-address", "")
    if wallet:
        return f"wallet:{wallet}"

    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"

    if client_host:
        return f"ip:{client_host}"
    return "anonymous"


def require_admin(token: Optional[str], expected: str) -> None:
    """
    Check the X-Admin-Token header against the configured ADMIN_TOKEN.
    Admin routes are closed when no token is configured.
    """
    if not expected:
        raise HTTPException(403, "ADMIN_DISABLED")
    if not token or not hmac.compare_digest(token.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(403, "INVALID_ADMIN_TOKEN")


def describe_token(token: Optional[str]) -> str:
    """Loggable form of a token."""
    return mask_sensitive(token) if token else "<none>"


def request_statement(action: str, target: str, body: Dict[str, Any]) -> bytes:
    """
    Bytes a wallet signs to authorize a mutation: the action, the claim or
    handoff it targets and the request body without its signature.
    """
    return canonicalize({"action": action, "target": target, "body": body})


def require_wallet_signature(action: str, target: str, body: Dict[str, Any],
                             signature: Optional[Mapping[str, str]], expected_address: str) -> None:
    """
    Check that the acting wallet signed this request.

    The public key must derive expected_address and the Ed25519 signature
    must cover request_statement(action, target, body).
    """
    if not signature:
        raise HTTPException(403, "MISSING_SIGNATURE")
    public_key_b64 = signature.get("public_key_b64") or ""
    sig_b64 = signature.get("sig_b64") or ""
    try:
        address = address_from_public_key(b64d(public_key_b64))
    except ValueError:
        raise HTTPException(403, "INVALID_PUBLIC_KEY")
    if address != expected_address:
        raise HTTPException(403, "SIGNER_MISMATCH")
    if not verify_signature(request_statement(action, target, body), sig_b64, public_key_b64):
        raise HTTPException(403, "INVALID_SIGNATURE")
