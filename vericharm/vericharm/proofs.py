"""
Veri-Charm Proof Capability

A proof binds a disclosed (redacted) view to the full history it was
derived from without revealing the withheld fields.

SignedCommitmentProver is a signed-commitment stand-in, not a
zero-knowledge system: it checks that the disclosed view is a redaction
of the full data, commits to the full data with a random salt, and signs
{disclosed_hash, history_commitment, claim_id, history_hash} with an
Ed25519 wallet key. claim_id and history_hash tie the proof to one claim
at one point in its supply chain, so a proof cannot be replayed on
another claim or after the history moves on. verify_proof recomputes
nothing it cannot see; it checks the signature over the public signals.

HttpProofService delegates both operations to a remote prover.
"""

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional

import requests

from .canonicalization import canonicalize
from .config import Settings
from .errors import ExternalServiceTimeout, ServiceUnavailable
from .hashing import sha256_hash
from .models import REDACTED
from .signing import ALGORITHM, EphemeralSigner, Signer, verify_signature

logger = logging.getLogger(__name__)

COMMITMENT_SCHEME = "sha256-salted-commitment/ed25519"


@dataclass
class ProofBundle:
    proof: Dict[str, Any]
    public_signals: Dict[str, Any]
    verification_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof": dict(self.proof),
            "public_signals": dict(self.public_signals),
            "verification_key": self.verification_key,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProofBundle":
        return cls(
            proof=dict(data.get("proof") or {}),
            public_signals=dict(data.get("public_signals") or {}),
            verification_key=data.get("verification_key", ""),
        )


class ProofCapability(ABC):

    @abstractmethod
    def prove_consistency(self, full_data: Any, disclosed: Any,
                          claim_id: Optional[str] = None, history_hash: Optional[str] = None) -> ProofBundle:
        pass

    @abstractmethod
    def verify_proof(self, bundle: ProofBundle) -> bool:
        pass


def disclosed_hash(disclosed: Any) -> str:
    return sha256_hash(canonicalize(disclosed))


def is_redaction_of(full: Any, disclosed: Any) -> bool:
    """
    True if `disclosed` equals `full` except that some values were
    replaced by the redaction marker.
    """
    if disclosed == REDACTED:
        return True
    if isinstance(full, dict):
        if not isinstance(disclosed, dict) or set(full) != set(disclosed):
            return False
        return all(is_redaction_of(full[k], disclosed[k]) for k in full)
    if isinstance(full, (list, tuple)):
        if not isinstance(disclosed, (list, tuple)) or len(full) != len(disclosed):
            return False
        return all(is_redaction_of(f, d) for f, d in zip(full, disclosed))
    return full == disclosed


def _statement(public_signals: Dict[str, Any]) -> bytes:
    return canonicalize({
        "scheme": COMMITMENT_SCHEME,
        "disclosed_hash": public_signals.get("disclosed_hash"),
        "history_commitment": public_signals.get("history_commitment"),
        "claim_id": public_signals.get("claim_id"),
        "history_hash": public_signals.get("history_hash"),
    })


class SignedCommitmentProver(ProofCapability):
    """
    Local prover backed by a wallet signer.

    Args:
        signer: key used to sign public signals (ephemeral if omitted)
        trusted_keys: if given, verify_proof only accepts these public keys
    """

    def __init__(self, signer: Optional[Signer] = None, trusted_keys: Optional[Iterable[str]] = None):
        self._signer = signer or EphemeralSigner()
        self._trusted = set(trusted_keys) if trusted_keys is not None else {self._signer.public_key_b64()}

    @property
    def verification_key(self) -> str:
        return self._signer.public_key_b64()

    def prove_consistency(self, full_data: Any, disclosed: Any,
                          claim_id: Optional[str] = None, history_hash: Optional[str] = None) -> ProofBundle:
        if not is_redaction_of(full_data, disclosed):
            raise ValueError("disclosed view is not a redaction of the full data")

        salt = secrets.token_bytes(16)
        public_signals = {
            "disclosed_hash": disclosed_hash(disclosed),
            "history_commitment": sha256_hash(salt + canonicalize(full_data)),
            "claim_id": claim_id,
            "history_hash": history_hash,
        }
        proof = {
            "scheme": COMMITMENT_SCHEME,
            "alg": ALGORITHM,
            "signer": self._signer.get_address(),
            "sig_b64": self._signer.sign(_statement(public_signals)),
        }
        return ProofBundle(proof=proof, public_signals=public_signals,
                           verification_key=self._signer.public_key_b64())

    def verify_proof(self, bundle: ProofBundle) -> bool:
        if not isinstance(bundle, ProofBundle):
            return False
        if bundle.proof.get("scheme") != COMMITMENT_SCHEME:
            return False
        if bundle.verification_key not in self._trusted:
            logger.warning("Proof signed by untrusted key")
            return False
        sig = bundle.proof.get("sig_b64")
        if not isinstance(sig, str):
            return False
        return verify_signature(_statement(bundle.public_signals), sig, bundle.verification_key)


class HttpProofService(ProofCapability):
    """
    Remote prover client.

    POST {base_url}/prove   {"full_data", "disclosed", "claim_id", "history_hash"}
                            -> ProofBundle JSON
    POST {base_url}/verify  ProofBundle JSON -> {"valid": bool}
    """

    def __init__(self, base_url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        if not base_url:
            raise ValueError("PROVER_URL required for http prover")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session = session or requests.Session()

    def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            resp = self._session.post(url, json=body, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        except requests.Timeout as e:
            raise ExternalServiceTimeout(f"Prover timed out: {url}", {"service": "prover"}) from e
        except (requests.RequestException, ValueError) as e:
            raise ServiceUnavailable(f"Prover request failed: {e}", {"service": "prover"}) from e

    def prove_consistency(self, full_data: Any, disclosed: Any,
                          claim_id: Optional[str] = None, history_hash: Optional[str] = None) -> ProofBundle:
        return ProofBundle.from_dict(self._post("/prove", {
            "full_data": full_data,
            "disclosed": disclosed,
            "claim_id": claim_id,
            "history_hash": history_hash,
        }))

    def verify_proof(self, bundle: ProofBundle) -> bool:
        return bool(self._post("/verify", bundle.to_dict()).get("valid", False))


def create_prover(settings: Optional[Settings] = None, signer: Optional[Signer] = None) -> Optional[ProofCapability]:
    """Factory for the proof backend named by PROVER_BACKEND (None for "none")."""
    settings = settings or Settings()
    backend = settings.prover_backend
    if backend == "none":
        return None
    if backend == "http":
        return HttpProofService(settings.prover_url, timeout=settings.external_call_timeout_seconds)
    if backend == "local":
        return SignedCommitmentProver(signer)
    raise ValueError(f"Unknown PROVER_BACKEND: {backend}")
