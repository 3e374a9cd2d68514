"""
Veri-Charm Handoffs

Persisted two-step transfers. A handoff is requested by the holder and
completed when the counterparty confirms (retailer confirmation) or when
a cross-chain settlement reports COMPLETE. State lives in the ledger's
handoff table, so pending handoffs survive a restart and can be resumed.

    REQUESTED -> COMPLETED | REJECTED | FAILED

Only completion records a Transfer. The transfer uses the handoff id as
its idempotency key and carries it in the event payload, so a confirm
repeated after a crash never transfers twice.
"""

import logging
import secrets
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .engine import VerificationEngine
from .errors import NotHolder, TerminalState, UnknownHandoff, ValidationError, VeriCharmError
from .models import EventType, Role, validate_address

logger = logging.getLogger(__name__)


class HandoffState(str, Enum):
    REQUESTED = "REQUESTED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class HandoffKind(str, Enum):
    RETAILER_CONFIRMATION = "retailer_confirmation"
    CROSS_CHAIN = "cross_chain"


class SettlementStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


@dataclass
class Handoff:
    handoff_id: str
    claim_id: str
    sender: str
    recipient: str
    kind: HandoffKind
    state: HandoffState
    created_at: int
    updated_at: int
    recipient_role: Optional[Role] = None
    event_id: Optional[int] = None
    tx_ref: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.state == HandoffState.REQUESTED

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        d["state"] = self.state.value
        d["recipient_role"] = self.recipient_role.value if self.recipient_role else None
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Handoff":
        role = data.get("recipient_role")
        return cls(
            handoff_id=data["handoff_id"],
            claim_id=data["claim_id"],
            sender=data["sender"],
            recipient=data["recipient"],
            kind=HandoffKind(data["kind"]),
            state=HandoffState(data["state"]),
            created_at=int(data["created_at"]),
            updated_at=int(data["updated_at"]),
            recipient_role=Role(role) if role else None,
            event_id=data.get("event_id"),
            tx_ref=data.get("tx_ref"),
            reason=data.get("reason"),
        )


class HandoffCoordinator:

    def __init__(self, engine: VerificationEngine, clock: Optional[Callable[[], int]] = None):
        self._engine = engine
        self._ledger = engine.ledger
        self._clock = clock or engine.now

    def _save(self, handoff: Handoff) -> Handoff:
        handoff.updated_at = int(self._clock())
        self._ledger.save_handoff(handoff.to_dict())
        return handoff

    def get(self, handoff_id: str) -> Handoff:
        data = self._ledger.get_handoff(handoff_id)
        if data is None:
            raise UnknownHandoff(handoff_id)
        return Handoff.from_dict(data)

    def request(
        self,
        claim_id: str,
        sender: str,
        recipient: str,
        role: Optional[Role] = None,
        kind: HandoffKind = HandoffKind.RETAILER_CONFIRMATION
    ) -> Handoff:
        """Open a handoff. Fails fast if the sender does not hold the claim."""
        sender = validate_address(sender, "sender")
        recipient = validate_address(recipient, "recipient")
        try:
            kind = HandoffKind(kind)
            role = Role(role) if role is not None else None
        except ValueError as e:
            raise ValidationError("kind", str(e))
        if sender == recipient:
            raise ValidationError("recipient", "must differ from sender")

        claim = self._engine.get_claim(claim_id)
        if claim.current_holder != sender:
            raise NotHolder(f"{sender} does not hold {claim_id}", {"claim_id": claim_id})
        if claim.is_burned:
            raise TerminalState(f"Claim {claim_id} is burned", {"claim_id": claim_id})

        now = int(self._clock())
        handoff = Handoff(
            handoff_id="handoff:" + secrets.token_hex(16),
            claim_id=claim_id,
            sender=sender,
            recipient=recipient,
            kind=kind,
            state=HandoffState.REQUESTED,
            created_at=now,
            updated_at=now,
            recipient_role=role,
        )
        logger.info("Handoff %s requested for %s -> %s", handoff.handoff_id, claim_id, recipient)
        return self._save(handoff)

    def _applied_event_id(self, handoff: Handoff) -> Optional[int]:
        for event in self._ledger.events(handoff.claim_id):
            if event.event_type == EventType.TRANSFER and event.payload.get("handoff_id") == handoff.handoff_id:
                return event.event_id
        return None

    def confirm(self, handoff_id: str, tx_ref: Optional[str] = None) -> Handoff:
        """
        Complete a handoff by performing its transfer.

        Retryable failures (busy claim, unavailable collaborator) leave the
        handoff REQUESTED; any other rejection marks it FAILED.
        """
        handoff = self.get(handoff_id)
        if handoff.state == HandoffState.COMPLETED:
            return handoff
        if not handoff.is_open:
            raise TerminalState(f"Handoff {handoff_id} is {handoff.state.value}", {"handoff_id": handoff_id})

        if tx_ref:
            handoff.tx_ref = tx_ref
        event_id = self._applied_event_id(handoff)
        if event_id is None:
            payload = {"handoff_id": handoff.handoff_id, "handoff_kind": handoff.kind.value}
            if handoff.tx_ref:
                payload["tx_ref"] = handoff.tx_ref
            try:
                event = self._engine.transfer(
                    handoff.claim_id,
                    handoff.sender,
                    handoff.recipient,
                    recipient_role=handoff.recipient_role,
                    idempotency_key=handoff.handoff_id,
                    payload=payload,
                )
            except VeriCharmError as e:
                if not e.retryable:
                    handoff.state = HandoffState.FAILED
                    handoff.reason = e.code
                    self._save(handoff)
                    logger.warning("Handoff %s failed: %s", handoff_id, e.code)
                raise
            event_id = event.event_id
        else:
            logger.info("Handoff %s already applied as event %d", handoff_id, event_id)

        handoff.state = HandoffState.COMPLETED
        handoff.event_id = event_id
        return self._save(handoff)

    def reject(self, handoff_id: str, reason: str = "rejected by recipient") -> Handoff:
        return self._close(handoff_id, HandoffState.REJECTED, reason)

    def fail(self, handoff_id: str, reason: str = "failed") -> Handoff:
        return self._close(handoff_id, HandoffState.FAILED, reason)

    def _close(self, handoff_id: str, state: HandoffState, reason: str) -> Handoff:
        handoff = self.get(handoff_id)
        if not handoff.is_open:
            raise TerminalState(f"Handoff {handoff_id} is {handoff.state.value}", {"handoff_id": handoff_id})
        handoff.state = state
        handoff.reason = reason
        logger.info("Handoff %s %s: %s", handoff_id, state.value.lower(), reason)
        return self._save(handoff)

    def report_settlement(self, handoff_id: str, status: SettlementStatus, tx_ref: Optional[str] = None) -> Handoff:
        """
        Apply a cross-chain settlement report. Only COMPLETE records a
        Transfer; FAILED closes the handoff; PENDING just notes tx_ref.
        """
        try:
            status = SettlementStatus(status)
        except ValueError:
            raise ValidationError("status", f"unknown settlement status {status!r}")
        if status == SettlementStatus.COMPLETE:
            return self.confirm(handoff_id, tx_ref=tx_ref)
        if status == SettlementStatus.FAILED:
            return self.fail(handoff_id, f"settlement failed ({tx_ref})" if tx_ref else "settlement failed")

        handoff = self.get(handoff_id)
        if not handoff.is_open:
            raise TerminalState(f"Handoff {handoff_id} is {handoff.state.value}", {"handoff_id": handoff_id})
        if tx_ref:
            handoff.tx_ref = tx_ref
        return self._save(handoff)

    def pending(self) -> List[Handoff]:
        """Open handoffs, oldest first. These are the ones to resume after a restart."""
        return [Handoff.from_dict(d) for d in self._ledger.list_handoffs([HandoffState.REQUESTED.value])]
