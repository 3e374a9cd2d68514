"""
Veri-Charm Privacy Redactor

Produces disclosure-safe views of claim histories. Field names are split
into camelCase / snake_case tokens and compared case-insensitively with
the sensitive vocabulary, so "currentHolder" and "recipient_email" are
withheld while "shipping_region" is not. Everything else passes through
unchanged.

With a proof requested, the view is bound to the full history through
the configured ProofCapability. If no proof can be produced the redactor
falls back to the plain data, flags the view privacy_applied=False and
writes a PRIVACY_FALLBACK audit event.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .errors import ExternalServiceError, VeriCharmError
from .external import BoundedExecutor
from .logging_config import AuditLogger, audit_log
from .models import REDACTED, AttestationEvent
from .proofs import ProofBundle, ProofCapability, disclosed_hash

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVE_TERMS: FrozenSet[str] = frozenset({
    "actor", "counterparty", "holder", "issuer", "owner", "sender", "recipient",
    "address", "email", "phone", "contact", "identity", "customer", "consumer",
    "private key", "secret", "password", "pin", "ssn", "dob",
})

_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])')
_SEPARATORS = re.compile(r'[^A-Za-z0-9]+')


def tokenize_field(name: str) -> List[str]:
    """Split a field name into lowercase camelCase / snake_case tokens."""
    tokens = []
    for part in _SEPARATORS.split(name):
        tokens.extend(t.lower() for t in _CAMEL_BOUNDARY.split(part) if t)
    return tokens


def _term_key(term: str) -> str:
    return "".join(tokenize_field(term))


@dataclass(frozen=True)
class RedactionPolicy:
    """
    Which fields to withhold.

    sensitive_terms are matched against contiguous token runs of a field
    name, so "private key" matches privateKey, private_key and privatekey.
    """
    sensitive_terms: FrozenSet[str] = DEFAULT_SENSITIVE_TERMS
    allow_plain_fallback: bool = True

    def with_terms(self, extra: Iterable[str]) -> "RedactionPolicy":
        return RedactionPolicy(
            sensitive_terms=self.sensitive_terms | frozenset(extra),
            allow_plain_fallback=self.allow_plain_fallback,
        )

    def is_sensitive(self, field_name: str) -> bool:
        tokens = tokenize_field(field_name)
        keys = {_term_key(t) for t in self.sensitive_terms}
        for i in range(len(tokens)):
            run = ""
            for token in tokens[i:]:
                run += token
                if run in keys:
                    return True
        return False


DEFAULT_POLICY = RedactionPolicy()


@dataclass
class DisclosureView:
    public_data: Any
    privacy_applied: bool
    redacted_fields: List[str] = field(default_factory=list)
    history_hash: Optional[str] = None
    proof: Optional[ProofBundle] = None
    fallback_reason: Optional[str] = None

    def to_dict(self):
        return {
            "public_data": self.public_data,
            "privacy_applied": self.privacy_applied,
            "redacted_fields": list(self.redacted_fields),
            "history_hash": self.history_hash,
            "proof": self.proof.to_dict() if self.proof else None,
            "fallback_reason": self.fallback_reason,
        }


def _normalize(data: Any) -> Any:
    if isinstance(data, AttestationEvent):
        return data.to_dict()
    if isinstance(data, (list, tuple)):
        return [_normalize(item) for item in data]
    if hasattr(data, "to_dict"):
        return data.to_dict()
    return data


def apply_policy(data: Any, policy: RedactionPolicy, path: str = "") -> Tuple[Any, List[str]]:
    """Return (redacted copy, list of redacted field paths)."""
    redacted: List[str] = []
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            child = f"{path}.{key}" if path else str(key)
            if isinstance(key, str) and policy.is_sensitive(key):
                out[key] = REDACTED
                redacted.append(child)
            else:
                out[key], sub = apply_policy(value, policy, child)
                redacted.extend(sub)
        return out, redacted
    if isinstance(data, list):
        out_list = []
        for i, item in enumerate(data):
            value, sub = apply_policy(item, policy, f"{path}[{i}]")
            out_list.append(value)
            redacted.extend(sub)
        return out_list, redacted
    return data, redacted


class PrivacyRedactor:

    def __init__(
        self,
        prover: Optional[ProofCapability] = None,
        executor: Optional[BoundedExecutor] = None,
        audit: Optional[AuditLogger] = None,
        policy: RedactionPolicy = DEFAULT_POLICY
    ):
        self._prover = prover
        self._executor = executor
        self._audit = audit or audit_log
        self._policy = policy

    @property
    def prover(self) -> Optional[ProofCapability]:
        return self._prover

    def redact(
        self,
        events: Sequence[Any],
        policy: Optional[RedactionPolicy] = None,
        with_proof: bool = False,
        history_hash: Optional[str] = None,
        claim_id: Optional[str] = None
    ) -> DisclosureView:
        """
        Build a disclosure view of `events`.

        Raises:
            ExternalServiceError: a proof was requested, none could be
                produced and the policy forbids the plain fallback
        """
        policy = policy or self._policy
        full_data = _normalize(events)
        public_data, redacted = apply_policy(full_data, policy)

        if not with_proof:
            return DisclosureView(public_data, True, redacted, history_hash)

        if self._prover is None:
            return self._fallback(full_data, policy, history_hash, "no proof capability configured")

        try:
            if self._executor is not None:
                bundle = self._executor.call(self._prover.prove_consistency, full_data, public_data,
                                             claim_id=claim_id, history_hash=history_hash,
                                             service="prover")
            else:
                bundle = self._prover.prove_consistency(full_data, public_data,
                                                        claim_id=claim_id, history_hash=history_hash)
        except (VeriCharmError, ValueError, RuntimeError) as e:
            return self._fallback(full_data, policy, history_hash, str(e), error=e)

        return DisclosureView(public_data, True, redacted, history_hash, proof=bundle)

    def _fallback(self, full_data: Any, policy: RedactionPolicy, history_hash: Optional[str],
                  reason: str, error: Optional[Exception] = None) -> DisclosureView:
        count = len(full_data) if isinstance(full_data, list) else 1
        if not policy.allow_plain_fallback:
            if isinstance(error, ExternalServiceError):
                raise error
            raise ExternalServiceError(f"Proof unavailable: {reason}", {"service": "prover"})
        self._audit.privacy_fallback(reason, count)
        return DisclosureView(full_data, False, [], history_hash, fallback_reason=reason)


def verify_disclosure(view: DisclosureView, prover: ProofCapability) -> bool:
    """
    Check that a disclosure view is bound by a valid proof.

    The disclosed hash is recomputed from view.public_data; a view
    edited after proving fails here, as does one whose history_hash no
    longer matches the hash the proof was made for.
    """
    if not view.privacy_applied or view.proof is None:
        return False
    if view.proof.public_signals.get("history_hash") != view.history_hash:
        return False
    declared = view.proof.public_signals.get("disclosed_hash")
    if declared != disclosed_hash(view.public_data):
        return False
    return prover.verify_proof(view.proof)
