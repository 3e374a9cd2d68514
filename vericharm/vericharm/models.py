"""
Veri-Charm Data Model

ProductClaim     digital twin of one physical product instance
AttestationEvent one immutable ledger entry (Mint, Transfer, Verify, Burn)
BurnReceipt      proof of retirement, with an optional raffle entry

Claims are looked up by key, never linked by object reference. Events are
owned by the ledger and only ever appended.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .canonicalization import canonicalize
from .errors import ValidationError
from .hashing import payload_hash, sha256_hash

SECONDS_PER_DAY = 86400

# Replacement value for fields withheld from a disclosure.
REDACTED = "[REDACTED]"

# Addresses are opaque wallet strings; keep them printable and bounded.
ADDRESS_PATTERN = re.compile(r'^[A-Za-z0-9:._\-]{1,128}$')


class ClaimState(str, Enum):
    """
    Lifecycle states.

    MINTED -> TRANSFERRED -> (TRANSFERRED)* -> BURNED

    VERIFIED is an overlay reported by ProductClaim.statuses(); the stored
    state is never VERIFIED. BURNED is terminal.
    """
    MINTED = "MINTED"
    TRANSFERRED = "TRANSFERRED"
    VERIFIED = "VERIFIED"
    BURNED = "BURNED"


class EventType(str, Enum):
    MINT = "MINT"
    TRANSFER = "TRANSFER"
    VERIFY = "VERIFY"
    BURN = "BURN"


class Role(str, Enum):
    MANUFACTURER = "MANUFACTURER"
    RETAILER = "RETAILER"
    CONSUMER = "CONSUMER"


class BurnReason(str, Enum):
    RAFFLE_ENTRY = "RAFFLE_ENTRY"
    PRODUCT_RETURN = "PRODUCT_RETURN"
    WARRANTY_CLAIM = "WARRANTY_CLAIM"
    VOLUNTARY = "VOLUNTARY"


def validate_address(value: Any, field_name: str) -> str:
    """Validate a wallet address string."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "must be a non-empty string")
    value = value.strip()
    if not ADDRESS_PATTERN.match(value):
        raise ValidationError(field_name, "contains unsupported characters")
    return value


def _require_text(value: Any, field_name: str, max_length: int = 256) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field_name, "must be a non-empty string")
    if len(value) > max_length:
        raise ValidationError(field_name, f"must be at most {max_length} characters")
    return value.strip()


@dataclass(frozen=True)
class ProductData:
    """Immutable description of the physical product behind a claim."""
    name: str
    category: str
    serial_number: str
    batch_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "ProductData":
        """Return a normalized copy, or raise ValidationError."""
        if not isinstance(self.attributes, dict):
            raise ValidationError("product.attributes", "must be an object")
        try:
            canonicalize(self.attributes)
        except ValueError as e:
            raise ValidationError("product.attributes", str(e))
        return replace(
            self,
            name=_require_text(self.name, "product.name"),
            category=_require_text(self.category, "product.category", 64),
            serial_number=_require_text(self.serial_number, "product.serial_number", 128),
            batch_id=_require_text(self.batch_id, "product.batch_id", 128),
        )

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "name": self.name,
            "category": self.category,
            "serial_number": self.serial_number,
            "batch_id": self.batch_id,
        }
        if self.attributes:
            d["attributes"] = dict(self.attributes)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductData":
        if not isinstance(data, dict):
            raise ValidationError("product", "must be an object")
        return cls(
            name=data.get("name"),
            category=data.get("category"),
            serial_number=data.get("serial_number", data.get("serialNumber")),
            batch_id=data.get("batch_id", data.get("batchId")),
            attributes=data.get("attributes") or {},
        )


@dataclass(frozen=True)
class AttestationEvent:
    """One immutable ledger entry."""
    event_id: int
    claim_id: str
    event_type: EventType
    actor: str
    timestamp: int
    payload_hash: str
    counterparty: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_id: int,
        claim_id: str,
        event_type: EventType,
        actor: str,
        timestamp: int,
        counterparty: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> "AttestationEvent":
        payload = dict(payload or {})
        return cls(
            event_id=event_id,
            claim_id=claim_id,
            event_type=event_type,
            actor=actor,
            timestamp=timestamp,
            payload_hash=payload_hash(payload),
            counterparty=counterparty,
            payload=payload,
        )

    def header(self) -> Dict[str, Any]:
        """The fields bound into the supply-chain hash."""
        return {
            "event_id": self.event_id,
            "claim_id": self.claim_id,
            "event_type": self.event_type.value,
            "actor": self.actor,
            "counterparty": self.counterparty,
            "timestamp": self.timestamp,
            "payload_hash": self.payload_hash,
        }

    def serialize(self) -> bytes:
        return canonicalize(self.header())

    def payload_matches(self) -> bool:
        return payload_hash(self.payload) == self.payload_hash

    def to_dict(self) -> Dict[str, Any]:
        d = self.header()
        d["payload"] = dict(self.payload)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttestationEvent":
        return cls(
            event_id=int(data["event_id"]),
            claim_id=data["claim_id"],
            event_type=EventType(data["event_type"]),
            actor=data["actor"],
            timestamp=int(data["timestamp"]),
            payload_hash=data["payload_hash"],
            counterparty=data.get("counterparty"),
            payload=data.get("payload") or {},
        )


@dataclass(frozen=True)
class ProductClaim:
    """
    Digital twin of one physical product.

    Instances are immutable snapshots; the engine produces a new snapshot
    for every transition and hands it to the ledger together with the
    event that caused it.
    """
    claim_id: str
    product: ProductData
    issuer: str
    current_holder: str
    mint_timestamp: int
    warranty_period_days: int
    state: ClaimState
    supply_chain_hash: str
    event_count: int = 0
    verification_count: int = 0
    last_verified_at: Optional[int] = None

    @property
    def warranty_expiry(self) -> int:
        return self.mint_timestamp + self.warranty_period_days * SECONDS_PER_DAY

    @property
    def is_burned(self) -> bool:
        return self.state == ClaimState.BURNED

    @property
    def is_verified(self) -> bool:
        return self.verification_count > 0

    def statuses(self) -> Set[ClaimState]:
        """Stored state plus the VERIFIED overlay."""
        result = {self.state}
        if self.is_verified:
            result.add(ClaimState.VERIFIED)
        return result

    def within_warranty(self, now: int) -> bool:
        return now <= self.warranty_expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "product": self.product.to_dict(),
            "issuer": self.issuer,
            "current_holder": self.current_holder,
            "mint_timestamp": self.mint_timestamp,
            "warranty_period_days": self.warranty_period_days,
            "warranty_expiry": self.warranty_expiry,
            "state": self.state.value,
            "statuses": sorted(s.value for s in self.statuses()),
            "supply_chain_hash": self.supply_chain_hash,
            "event_count": self.event_count,
            "verification_count": self.verification_count,
            "last_verified_at": self.last_verified_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProductClaim":
        return cls(
            claim_id=data["claim_id"],
            product=ProductData.from_dict(data["product"]),
            issuer=data["issuer"],
            current_holder=data["current_holder"],
            mint_timestamp=int(data["mint_timestamp"]),
            warranty_period_days=int(data["warranty_period_days"]),
            state=ClaimState(data["state"]),
            supply_chain_hash=data["supply_chain_hash"],
            event_count=int(data.get("event_count", 0)),
            verification_count=int(data.get("verification_count", 0)),
            last_verified_at=data.get("last_verified_at"),
        )


@dataclass(frozen=True)
class RaffleEntry:
    """Raffle ticket issued when a claim is burned for a raffle."""
    participant: str
    claim_id: str
    burn_time: int
    entry_id: str

    @classmethod
    def issue(cls, participant: str, claim_id: str, burn_time: int) -> "RaffleEntry":
        entry_id = sha256_hash(f"{participant}|{claim_id}|{burn_time}")
        return cls(participant=participant, claim_id=claim_id, burn_time=burn_time, entry_id=entry_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participant": self.participant,
            "claim_id": self.claim_id,
            "burn_time": self.burn_time,
            "entry_id": self.entry_id,
        }


@dataclass(frozen=True)
class BurnReceipt:
    claim_id: str
    burner: str
    burn_time: int
    reason: BurnReason
    event_id: int
    raffle_entry: Optional[RaffleEntry] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "burner": self.burner,
            "burn_time": self.burn_time,
            "reason": self.reason.value,
            "event_id": self.event_id,
            "raffle_entry": self.raffle_entry.to_dict() if self.raffle_entry else None,
        }


@dataclass
class VerificationVerdict:
    """Outcome of a verification attempt."""
    claim_id: str
    is_authentic: bool
    within_warranty: bool
    manufacturer: str
    supply_chain_valid: bool
    current_holder: str
    state: ClaimState
    checked_at: int
    method: str
    recorded: bool = False
    issues: List[str] = field(default_factory=list)
    signature: Optional[Dict[str, Any]] = None

    def body(self) -> Dict[str, Any]:
        """Signed portion of the verdict."""
        return {
            "claim_id": self.claim_id,
            "is_authentic": self.is_authentic,
            "within_warranty": self.within_warranty,
            "manufacturer": self.manufacturer,
            "supply_chain_valid": self.supply_chain_valid,
            "current_holder": self.current_holder,
            "state": self.state.value,
            "checked_at": self.checked_at,
            "method": self.method,
            "issues": list(self.issues),
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.body()
        d["recorded"] = self.recorded
        if self.signature:
            d["signature"] = self.signature
        return d
