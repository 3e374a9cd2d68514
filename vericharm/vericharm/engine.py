"""
Veri-Charm Verification Engine

Lifecycle state machine for product claims:

    MINTED -> TRANSFERRED -> (TRANSFERRED)* -> BURNED

Every mutation runs under the claim's lock, checks its preconditions
against the current snapshot, and hands one new claim snapshot plus one
event to the ledger. A rejected mutation raises before anything is
appended. Verification evaluates a consistent snapshot and appends a
Verify event afterwards, so readers never wait on each other.
"""

import hashlib
import logging
import secrets
import threading
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from .canonicalization import canonicalize
from .config import Settings
from .errors import (
    DuplicateSerial,
    IdempotencyConflict,
    IntegrityError,
    InvalidProof,
    NotHolder,
    TerminalState,
    UnknownClaim,
    UntrustedIssuer,
    UntrustedRecipient,
    ValidationError,
    VeriCharmError,
    WithinLockPeriod,
)
from .external import BoundedExecutor
from .hashing import chain_hash, constant_time_equals, genesis_hash, sha256_hash, supply_chain_hash
from .indexer import ClaimFilter, ClaimIndex, LedgerClaimIndex
from .ledger import AttestationLedger
from .locks import ClaimLockManager
from .logging_config import AuditLogger, audit_log
from .models import (
    AttestationEvent,
    BurnReason,
    BurnReceipt,
    ClaimState,
    EventType,
    ProductClaim,
    ProductData,
    RaffleEntry,
    Role,
    VerificationVerdict,
    validate_address,
)
from .proofs import ProofBundle, ProofCapability
from .redactor import DisclosureView, PrivacyRedactor, RedactionPolicy
from .signing import Signer
from .trust import TrustDirectory
from .util import now_epoch

logger = logging.getLogger(__name__)

CLAIM_ID_PREFIX = "charm:"
ANONYMOUS_VERIFIER = "anonymous"


def custody_issues(claim: ProductClaim, events: List[AttestationEvent]) -> List[str]:
    """
    Check custody continuity: ids run 1..n, the first event is the
    issuer's Mint, each Transfer is sent by the holder at that point, and
    the final holder is the stored one.
    """
    issues = []
    if not events:
        return ["history is empty"]
    first = events[0]
    if first.event_type != EventType.MINT or first.actor != claim.issuer:
        issues.append("first event is not a mint by the issuer")

    holder = claim.issuer
    for expected_id, event in enumerate(events, start=1):
        if event.event_id != expected_id:
            issues.append(f"event {expected_id} missing or out of order")
            break
        if event.event_type == EventType.MINT and expected_id != 1:
            issues.append(f"event {expected_id} is a second mint")
        if event.event_type == EventType.TRANSFER:
            if event.actor != holder:
                issues.append(f"event {expected_id} transfer sent by non-holder")
            holder = event.counterparty
        if event.event_type == EventType.BURN and expected_id != len(events):
            issues.append(f"event {expected_id} burn is not the last event")
    if holder != claim.current_holder:
        issues.append("recorded holder does not match custody chain")
    return issues


def integrity_issues(claim: ProductClaim, events: List[AttestationEvent]) -> List[str]:
    """Hash-level tamper checks: chained hash, event count and payload hashes."""
    issues = []
    recomputed = supply_chain_hash(claim.claim_id, (e.serialize() for e in events))
    if not constant_time_equals(recomputed, claim.supply_chain_hash):
        issues.append("supply chain hash mismatch")
    if len(events) != claim.event_count:
        issues.append(f"event count mismatch: stored {claim.event_count}, found {len(events)}")
    for event in events:
        if not event.payload_matches():
            issues.append(f"payload hash mismatch on event {event.event_id}")
    return issues


class VerificationEngine:
    """
    Args:
        ledger: event/claim storage
        trust: manufacturer and retailer authorizations
        prover: proof capability for transfer proofs and disclosures
        signer: wallet used to sign verdicts and to act as verifier
        settings: lifecycle windows and timeouts
        clock: epoch-seconds source (injectable for tests)
        locks: per-claim lock manager
        executor: bounded executor for external calls
        index: claim index used by query_claims
    """

    def __init__(
        self,
        ledger: AttestationLedger,
        trust: TrustDirectory,
        prover: Optional[ProofCapability] = None,
        signer: Optional[Signer] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], int]] = None,
        locks: Optional[ClaimLockManager] = None,
        executor: Optional[BoundedExecutor] = None,
        index: Optional[ClaimIndex] = None,
        redactor: Optional[PrivacyRedactor] = None,
        audit: Optional[AuditLogger] = None
    ):
        self._settings = settings or Settings()
        self._ledger = ledger
        self._trust = trust
        self._prover = prover
        self._signer = signer
        self._clock = clock or now_epoch
        self._locks = locks or ClaimLockManager(self._settings.lock_timeout_seconds)
        self._executor = executor or BoundedExecutor(self._settings.external_call_timeout_seconds)
        self._index = index or LedgerClaimIndex(ledger)
        self._audit = audit or audit_log
        self._redactor = redactor or PrivacyRedactor(prover, self._executor, self._audit)
        # key -> (fingerprint, result, stored_at), oldest first
        self._idempotency: "OrderedDict[str, Tuple[str, Any, int]]" = OrderedDict()
        self._idempotency_lock = threading.Lock()

    @property
    def ledger(self) -> AttestationLedger:
        return self._ledger

    @property
    def trust(self) -> TrustDirectory:
        return self._trust

    @property
    def settings(self) -> Settings:
        return self._settings

    def now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _audited(self, operation: str, claim_id: Optional[str] = None) -> Iterator[None]:
        try:
            yield
        except VeriCharmError as e:
            self._audit.operation_rejected(operation, e.code, claim_id, e.message)
            raise

    def _idempotent(self, key: Optional[str], operation: str, arguments: Dict[str, Any],
                    fn: Callable[[], Any], cancel: Optional[threading.Event] = None) -> Any:
        """
        Run fn once per idempotency key. A retry with identical arguments
        returns the stored result; different arguments are a conflict.
        """
        if key is None:
            return fn()
        if not isinstance(key, str) or not key.strip():
            raise ValidationError("idempotency_key", "must be a non-empty string")
        fingerprint = sha256_hash(canonicalize({"operation": operation, "arguments": arguments}))
        with self._locks.acquire(f"idem:{key}", cancel=cancel):
            with self._idempotency_lock:
                self._prune_idempotency_locked()
                stored = self._idempotency.get(key)
            if stored is not None:
                if stored[0] != fingerprint:
                    raise IdempotencyConflict(
                        f"Idempotency key {key} was used with different arguments",
                        {"idempotency_key": key},
                    )
                logger.info("Replaying %s for idempotency key %s", operation, key)
                return stored[1]
            result = fn()
            with self._idempotency_lock:
                self._idempotency[key] = (fingerprint, result, self.now())
                self._prune_idempotency_locked()
            return result

    def prune_idempotency(self) -> int:
        """
        Forget idempotency keys older than the TTL, then the oldest keys
        beyond the size cap.

        Returns:
            Number of keys removed
        """
        with self._idempotency_lock:
            return self._prune_idempotency_locked()

    def _prune_idempotency_locked(self) -> int:
        cutoff = self.now() - self._settings.idempotency_ttl_seconds
        removed = 0
        while self._idempotency:
            key, (_, _, stored_at) = next(iter(self._idempotency.items()))
            if stored_at > cutoff and len(self._idempotency) <= self._settings.idempotency_max_keys:
                break
            del self._idempotency[key]
            removed += 1
        return removed

    def _is_trusted(self, address: str, role: Role, category: str, at: Optional[int] = None) -> bool:
        return bool(self._executor.call(self._trust.is_trusted, address, role, category, at,
                                        service="trust_directory"))

    def _has_role(self, address: str, role: Role) -> bool:
        return bool(self._executor.call(self._trust.has_role, address, role, service="trust_directory"))

    def _check_proof(self, proof: Any) -> bool:
        if self._prover is None:
            return False
        if isinstance(proof, dict):
            proof = ProofBundle.from_dict(proof)
        return bool(self._executor.call(self._prover.verify_proof, proof, service="prover"))

    @staticmethod
    def _proof_bound_to(proof: ProofBundle, claim: ProductClaim) -> bool:
        signals = proof.public_signals
        return (signals.get("claim_id") == claim.claim_id
                and signals.get("history_hash") == claim.supply_chain_hash)

    def _require_claim(self, claim_id: str) -> ProductClaim:
        if not isinstance(claim_id, str) or not claim_id:
            raise ValidationError("claim_id", "must be a non-empty string")
        claim = self._ledger.get_claim(claim_id)
        if claim is None:
            raise UnknownClaim(claim_id)
        return claim

    def _append(self, claim: ProductClaim, event: AttestationEvent, **changes: Any) -> ProductClaim:
        updated = replace(
            claim,
            supply_chain_hash=chain_hash(claim.supply_chain_hash, event.serialize()),
            event_count=event.event_id,
            **changes
        )
        self._ledger.record(updated, event)
        return updated

    # ------------------------------------------------------------------
    # mint
    # ------------------------------------------------------------------

    def mint(
        self,
        product: Union[ProductData, Dict[str, Any]],
        issuer: str,
        warranty_period_days: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        cancel: Optional[threading.Event] = None
    ) -> ProductClaim:
        """
        Mint a claim for a physical product.

        Raises:
            ValidationError: malformed product, issuer or warranty
            UntrustedIssuer: issuer is not a trusted manufacturer for the category
            DuplicateSerial: a live claim from this issuer already covers the serial
        """
        with self._audited("mint"):
            if isinstance(product, dict):
                product = ProductData.from_dict(product)
            if not isinstance(product, ProductData):
                raise ValidationError("product", "must be product data")
            product = product.validate()
            issuer = validate_address(issuer, "issuer")
            if warranty_period_days is None:
                warranty_period_days = self._settings.default_warranty_days
            if (isinstance(warranty_period_days, bool) or not isinstance(warranty_period_days, int)
                    or warranty_period_days < 0):
                raise ValidationError("warranty_period_days", "must be a non-negative integer")

            arguments = {"product": product.to_dict(), "issuer": issuer,
                         "warranty_period_days": warranty_period_days}
            return self._idempotent(
                idempotency_key, "mint", arguments,
                lambda: self._mint(product, issuer, warranty_period_days, cancel),
                cancel,
            )

    def _mint(self, product: ProductData, issuer: str, warranty_days: int,
              cancel: Optional[threading.Event]) -> ProductClaim:
        with self._locks.acquire(f"serial:{issuer}:{product.serial_number}", cancel=cancel):
            if not self._is_trusted(issuer, Role.MANUFACTURER, product.category):
                raise UntrustedIssuer(
                    f"{issuer} is not a trusted manufacturer for {product.category}",
                    {"issuer": issuer, "category": product.category},
                )
            existing = self._ledger.find_active_by_serial(issuer, product.serial_number)
            if existing is not None:
                raise DuplicateSerial(
                    f"Serial {product.serial_number} already has live claim {existing.claim_id}",
                    {"claim_id": existing.claim_id, "serial_number": product.serial_number},
                )

            now = self.now()
            seed = f"{issuer}|{product.serial_number}|{now}|{secrets.token_hex(16)}"
            claim_id = CLAIM_ID_PREFIX + hashlib.sha256(seed.encode("utf-8")).hexdigest()

            event = AttestationEvent.create(
                event_id=1,
                claim_id=claim_id,
                event_type=EventType.MINT,
                actor=issuer,
                timestamp=now,
                payload={"product": product.to_dict(), "warranty_period_days": warranty_days},
            )
            claim = ProductClaim(
                claim_id=claim_id,
                product=product,
                issuer=issuer,
                current_holder=issuer,
                mint_timestamp=now,
                warranty_period_days=warranty_days,
                state=ClaimState.MINTED,
                supply_chain_hash=genesis_hash(claim_id),
                event_count=0,
            )
            claim = self._append(claim, event)

        self._audit.claim_minted(claim_id, issuer, product.category, product.serial_number)
        return claim

    # ------------------------------------------------------------------
    # transfer
    # ------------------------------------------------------------------

    def transfer(
        self,
        claim_id: str,
        sender: str,
        recipient: str,
        proof: Optional[Union[ProofBundle, Dict[str, Any]]] = None,
        recipient_role: Optional[Union[Role, str]] = None,
        idempotency_key: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        cancel: Optional[threading.Event] = None
    ) -> AttestationEvent:
        """
        Move a claim from its holder to a recipient.

        A leg to a retailer (declared via recipient_role, or known to the
        trust directory as one) requires the recipient to be a trusted
        retailer for the product category. Consumer legs are exempt.
        """
        with self._audited("transfer", claim_id):
            sender = validate_address(sender, "sender")
            recipient = validate_address(recipient, "recipient")
            if sender == recipient:
                raise ValidationError("recipient", "must differ from sender")
            if recipient_role is not None:
                try:
                    recipient_role = Role(recipient_role)
                except ValueError:
                    raise ValidationError("recipient_role", f"unknown role {recipient_role!r}")
            if payload is not None and not isinstance(payload, dict):
                raise ValidationError("payload", "must be an object")
            if isinstance(proof, dict):
                proof = ProofBundle.from_dict(proof)

            arguments = {
                "claim_id": claim_id, "sender": sender, "recipient": recipient,
                "recipient_role": recipient_role, "payload": payload or {},
                "proof": proof.to_dict() if proof is not None else None,
            }
            return self._idempotent(
                idempotency_key, "transfer", arguments,
                lambda: self._transfer(claim_id, sender, recipient, proof, recipient_role, payload, cancel),
                cancel,
            )

    def _transfer(self, claim_id: str, sender: str, recipient: str, proof: Optional[ProofBundle],
                  recipient_role: Optional[Role], payload: Optional[Dict[str, Any]],
                  cancel: Optional[threading.Event]) -> AttestationEvent:
        self._require_claim(claim_id)
        with self._locks.acquire(claim_id, cancel=cancel):
            claim = self._require_claim(claim_id)
            if claim.current_holder != sender:
                raise NotHolder(f"{sender} does not hold {claim_id}", {"claim_id": claim_id})
            if claim.is_burned:
                raise TerminalState(f"Claim {claim_id} is burned", {"claim_id": claim_id})

            category = claim.product.category
            retailer_leg = recipient_role == Role.RETAILER or self._has_role(recipient, Role.RETAILER)
            if retailer_leg and not self._is_trusted(recipient, Role.RETAILER, category):
                raise UntrustedRecipient(
                    f"{recipient} is not a trusted retailer for {category}",
                    {"recipient": recipient, "category": category},
                )
            if proof is not None:
                if not self._proof_bound_to(proof, claim):
                    raise InvalidProof(
                        "Transfer proof was not made for this claim at its current history",
                        {"claim_id": claim_id, "proof_claim_id": proof.public_signals.get("claim_id")},
                    )
                if not self._check_proof(proof):
                    raise InvalidProof("Transfer proof failed verification", {"claim_id": claim_id})

            event_payload = dict(payload or {})
            if recipient_role is not None:
                event_payload["recipient_role"] = recipient_role.value
            if proof is not None:
                event_payload["proof_disclosed_hash"] = proof.public_signals.get("disclosed_hash")

            event = AttestationEvent.create(
                event_id=claim.event_count + 1,
                claim_id=claim_id,
                event_type=EventType.TRANSFER,
                actor=sender,
                counterparty=recipient,
                timestamp=self.now(),
                payload=event_payload,
            )
            self._append(claim, event, current_holder=recipient, state=ClaimState.TRANSFERRED)

        self._audit.claim_transferred(claim_id, sender, recipient, event.event_id)
        return event

    # ------------------------------------------------------------------
    # verify
    # ------------------------------------------------------------------

    def verify(
        self,
        claim_id: str,
        method: str = "serial_lookup",
        proof: Optional[Union[ProofBundle, Dict[str, Any]]] = None,
        cancel: Optional[threading.Event] = None
    ) -> VerificationVerdict:
        """
        Verify a claim.

        supply_chain_valid requires the recomputed chained hash to match
        and custody to be continuous. is_authentic additionally requires
        the issuer to have been a trusted manufacturer at mint time.

        A Verify event is appended unless the claim is burned or its
        history fails integrity checks; both cases go to the audit log.
        """
        with self._audited("verify", claim_id):
            if not isinstance(method, str) or not method.strip():
                raise ValidationError("method", "must be a non-empty string")
            if not isinstance(claim_id, str) or not claim_id:
                raise ValidationError("claim_id", "must be a non-empty string")
            claim, events = self._ledger.snapshot(claim_id)
            if claim is None:
                raise UnknownClaim(claim_id)

            now = self.now()
            tamper = integrity_issues(claim, events)
            custody = custody_issues(claim, events)
            issues = tamper + custody
            supply_chain_valid = not issues

            issuer_trusted = self._is_trusted(claim.issuer, Role.MANUFACTURER,
                                              claim.product.category, at=claim.mint_timestamp)
            if not issuer_trusted:
                issues.append("issuer was not a trusted manufacturer at mint time")
            proof_ok = True
            if proof is not None:
                if isinstance(proof, dict):
                    proof = ProofBundle.from_dict(proof)
                proof_ok = self._proof_bound_to(proof, claim) and self._check_proof(proof)
                if not proof_ok:
                    issues.append("proof failed verification")

            verdict = VerificationVerdict(
                claim_id=claim_id,
                is_authentic=issuer_trusted and supply_chain_valid and proof_ok,
                within_warranty=claim.within_warranty(now),
                manufacturer=claim.issuer,
                supply_chain_valid=supply_chain_valid,
                current_holder=claim.current_holder,
                state=claim.state,
                checked_at=now,
                method=method,
                issues=issues,
            )

            if tamper:
                self._audit.security_event("supply_chain_mismatch", "high",
                                           claim_id=claim_id, issues=tamper)
            elif not claim.is_burned:
                verdict.recorded = self._record_verification(claim_id, verdict, cancel)

            if self._signer is not None:
                verdict.signature = self._signer.sign_envelope(canonicalize(verdict.body()))

        self._audit.claim_verified(claim_id, verdict.is_authentic, verdict.supply_chain_valid,
                                   method, verdict.recorded)
        return verdict

    def _record_verification(self, claim_id: str, verdict: VerificationVerdict,
                             cancel: Optional[threading.Event]) -> bool:
        actor = self._signer.get_address() if self._signer is not None else ANONYMOUS_VERIFIER
        with self._locks.acquire(claim_id, cancel=cancel):
            claim = self._require_claim(claim_id)
            # burned while this verdict was being evaluated
            if claim.is_burned:
                return False
            event = AttestationEvent.create(
                event_id=claim.event_count + 1,
                claim_id=claim_id,
                event_type=EventType.VERIFY,
                actor=actor,
                timestamp=verdict.checked_at,
                payload={
                    "method": verdict.method,
                    "is_authentic": verdict.is_authentic,
                    "within_warranty": verdict.within_warranty,
                },
            )
            self._append(claim, event,
                         verification_count=claim.verification_count + 1,
                         last_verified_at=verdict.checked_at)
        return True

    # ------------------------------------------------------------------
    # burn
    # ------------------------------------------------------------------

    def burn(
        self,
        claim_id: str,
        holder: str,
        reason: Union[BurnReason, str] = BurnReason.VOLUNTARY,
        idempotency_key: Optional[str] = None,
        cancel: Optional[threading.Event] = None
    ) -> BurnReceipt:
        """
        Retire a claim. Allowed for the holder once the burn lock
        (mint + burn_lock_days) has elapsed.
        """
        with self._audited("burn", claim_id):
            holder = validate_address(holder, "holder")
            try:
                reason = BurnReason(reason)
            except ValueError:
                raise ValidationError("reason", f"unknown burn reason {reason!r}")
            arguments = {"claim_id": claim_id, "holder": holder, "reason": reason}
            return self._idempotent(
                idempotency_key, "burn", arguments,
                lambda: self._burn(claim_id, holder, reason, cancel),
                cancel,
            )

    def _burn(self, claim_id: str, holder: str, reason: BurnReason,
              cancel: Optional[threading.Event]) -> BurnReceipt:
        self._require_claim(claim_id)
        with self._locks.acquire(claim_id, cancel=cancel):
            claim = self._require_claim(claim_id)
            if claim.current_holder != holder:
                raise NotHolder(f"{holder} does not hold {claim_id}", {"claim_id": claim_id})
            if claim.is_burned:
                raise TerminalState(f"Claim {claim_id} is already burned", {"claim_id": claim_id})
            now = self.now()
            unlock_at = claim.mint_timestamp + self._settings.burn_lock_seconds
            if now < unlock_at:
                raise WithinLockPeriod(
                    f"Claim {claim_id} cannot be burned before {unlock_at}",
                    {"claim_id": claim_id, "unlock_at": unlock_at},
                )

            event = AttestationEvent.create(
                event_id=claim.event_count + 1,
                claim_id=claim_id,
                event_type=EventType.BURN,
                actor=holder,
                timestamp=now,
                payload={"reason": reason.value},
            )
            self._append(claim, event, state=ClaimState.BURNED)

        raffle = RaffleEntry.issue(holder, claim_id, now) if reason == BurnReason.RAFFLE_ENTRY else None
        self._audit.claim_burned(claim_id, holder, reason.value)
        return BurnReceipt(claim_id=claim_id, burner=holder, burn_time=now, reason=reason,
                           event_id=event.event_id, raffle_entry=raffle)

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def get_claim(self, claim_id: str) -> ProductClaim:
        return self._require_claim(claim_id)

    def history(
        self,
        claim_id: str,
        policy: Optional[RedactionPolicy] = None,
        with_proof: bool = False,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> DisclosureView:
        """Supply-chain history of a claim, always routed through the redactor."""
        if limit is not None and (isinstance(limit, bool) or not isinstance(limit, int) or limit < 1):
            raise ValidationError("limit", "must be a positive integer")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset", "must be a non-negative integer")
        claim, events = self._ledger.snapshot(claim_id)
        if claim is None:
            raise UnknownClaim(claim_id)
        page = events[offset:offset + limit] if limit is not None else events[offset:]
        return self._redactor.redact(page, policy=policy, with_proof=with_proof,
                                     history_hash=claim.supply_chain_hash, claim_id=claim_id)

    def audit_chain(self, claim_id: str) -> str:
        """
        Recompute a claim's supply-chain hash and custody chain.

        Returns the recomputed hash. Raises IntegrityError on any mismatch.
        """
        claim, events = self._ledger.snapshot(claim_id)
        if claim is None:
            raise UnknownClaim(claim_id)
        issues = integrity_issues(claim, events) + custody_issues(claim, events)
        if issues:
            self._audit.security_event("supply_chain_mismatch", "high", claim_id=claim_id, issues=issues)
            raise IntegrityError(f"Claim {claim_id} failed audit", {"claim_id": claim_id, "issues": issues})
        return supply_chain_hash(claim_id, (e.serialize() for e in events))

    def query_claims(self, claim_filter: Optional[ClaimFilter] = None) -> List[ProductClaim]:
        claim_filter = (claim_filter or ClaimFilter()).validate()
        return self._executor.call(self._index.query, claim_filter, service="indexer")

    def raffle_entries(self) -> List[RaffleEntry]:
        """Raffle entries issued by burns, oldest first."""
        return [
            RaffleEntry.issue(e.actor, e.claim_id, e.timestamp)
            for e in self._ledger.all_events()
            if e.event_type == EventType.BURN and e.payload.get("reason") == BurnReason.RAFFLE_ENTRY.value
        ]
