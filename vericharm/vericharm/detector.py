"""
Veri-Charm Counterfeit Detector

Read-only anomaly scan over ledger snapshots. Never mutates state.

    duplicate_serial         two or more live claims share (serial, category)   HIGH
    invalid_manufacturer     issuer untrusted at mint time                      MEDIUM
                             issuer trusted at mint, revoked since              LOW
    expired_warranty_claim   warranty-claim burn after warranty expiry          MEDIUM
    tampered_history         stored supply-chain hash does not recompute        HIGH
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Tuple

from .engine import integrity_issues
from .errors import ValidationError
from .external import BoundedExecutor
from .ledger import AttestationLedger
from .logging_config import AuditLogger, audit_log
from .models import BurnReason, ClaimState, EventType, ProductClaim, Role
from .trust import TrustDirectory
from .util import now_epoch

logger = logging.getLogger(__name__)


class DetectionPattern(str, Enum):
    DUPLICATE_SERIAL = "duplicate_serial"
    INVALID_MANUFACTURER = "invalid_manufacturer"
    EXPIRED_WARRANTY_CLAIM = "expired_warranty_claim"
    TAMPERED_HISTORY = "tampered_history"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


ALL_PATTERNS: FrozenSet[DetectionPattern] = frozenset(DetectionPattern)


@dataclass(frozen=True)
class ScanCriteria:
    """Patterns to run and an optional [start, end] window on event time."""
    patterns: FrozenSet[DetectionPattern] = ALL_PATTERNS
    start: Optional[int] = None
    end: Optional[int] = None

    @classmethod
    def build(cls, patterns=None, start: Optional[int] = None, end: Optional[int] = None) -> "ScanCriteria":
        try:
            selected = frozenset(DetectionPattern(p) for p in patterns) if patterns else ALL_PATTERNS
        except ValueError as e:
            raise ValidationError("patterns", str(e))
        if start is not None and end is not None and start > end:
            raise ValidationError("start", "must not be after end")
        return cls(patterns=selected, start=start, end=end)

    def in_window(self, ts: int) -> bool:
        if self.start is not None and ts < self.start:
            return False
        if self.end is not None and ts > self.end:
            return False
        return True


@dataclass
class SuspiciousActivityReport:
    pattern: DetectionPattern
    severity: Severity
    claim_id: str
    description: str
    detected_at: int
    related_claim_ids: List[str] = field(default_factory=list)
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pattern": self.pattern.value,
            "severity": self.severity.value,
            "claim_id": self.claim_id,
            "description": self.description,
            "detected_at": self.detected_at,
            "related_claim_ids": list(self.related_claim_ids),
            "evidence": dict(self.evidence),
        }


class CounterfeitDetector:

    def __init__(
        self,
        ledger: AttestationLedger,
        trust: TrustDirectory,
        clock: Optional[Callable[[], int]] = None,
        audit: Optional[AuditLogger] = None,
        executor: Optional[BoundedExecutor] = None
    ):
        self._ledger = ledger
        self._trust = trust
        self._executor = executor or BoundedExecutor()
        self._clock = clock or now_epoch
        self._audit = audit or audit_log

    def _is_trusted(self, address: str, category: str, at: Optional[int] = None) -> bool:
        return bool(self._executor.call(self._trust.is_trusted, address, Role.MANUFACTURER, category, at,
                                        service="trust_directory"))

    def scan(self, criteria: Optional[ScanCriteria] = None) -> List[SuspiciousActivityReport]:
        return list(self.iter_scan(criteria))

    def iter_scan(self, criteria: Optional[ScanCriteria] = None) -> Iterator[SuspiciousActivityReport]:
        """Yield reports as they are found. Each is also written to the audit log."""
        criteria = criteria or ScanCriteria()
        claims = self._ledger.claims()
        now = int(self._clock())

        checks = [
            (DetectionPattern.DUPLICATE_SERIAL, self._duplicate_serials),
            (DetectionPattern.INVALID_MANUFACTURER, self._invalid_manufacturers),
            (DetectionPattern.EXPIRED_WARRANTY_CLAIM, self._expired_warranty_claims),
            (DetectionPattern.TAMPERED_HISTORY, self._tampered_histories),
        ]
        for pattern, check in checks:
            if pattern not in criteria.patterns:
                continue
            for report in check(claims, criteria, now):
                self._audit.suspicious_activity(report.pattern.value, report.severity.value,
                                                [report.claim_id] + report.related_claim_ids)
                yield report

    def _duplicate_serials(self, claims: List[ProductClaim], criteria: ScanCriteria,
                           now: int) -> Iterator[SuspiciousActivityReport]:
        groups: Dict[Tuple[str, str], List[ProductClaim]] = defaultdict(list)
        for claim in claims:
            if claim.state == ClaimState.BURNED or not criteria.in_window(claim.mint_timestamp):
                continue
            groups[(claim.product.serial_number, claim.product.category)].append(claim)

        for (serial, category), group in sorted(groups.items()):
            ids = sorted({c.claim_id for c in group})
            if len(ids) < 2:
                continue
            for claim in sorted(group, key=lambda c: c.claim_id):
                yield SuspiciousActivityReport(
                    pattern=DetectionPattern.DUPLICATE_SERIAL,
                    severity=Severity.HIGH,
                    claim_id=claim.claim_id,
                    description=f"Serial {serial} ({category}) is claimed by {len(ids)} live claims",
                    detected_at=now,
                    related_claim_ids=[i for i in ids if i != claim.claim_id],
                    evidence={"serial_number": serial, "category": category, "issuer": claim.issuer},
                )

    def _invalid_manufacturers(self, claims: List[ProductClaim], criteria: ScanCriteria,
                               now: int) -> Iterator[SuspiciousActivityReport]:
        for claim in claims:
            if not criteria.in_window(claim.mint_timestamp):
                continue
            category = claim.product.category
            evidence = {"issuer": claim.issuer, "category": category, "mint_timestamp": claim.mint_timestamp}
            if not self._is_trusted(claim.issuer, category, at=claim.mint_timestamp):
                yield SuspiciousActivityReport(
                    pattern=DetectionPattern.INVALID_MANUFACTURER,
                    severity=Severity.MEDIUM,
                    claim_id=claim.claim_id,
                    description=f"{claim.issuer} was not a trusted manufacturer for {category} at mint time",
                    detected_at=now,
                    evidence=evidence,
                )
            elif not self._is_trusted(claim.issuer, category):
                yield SuspiciousActivityReport(
                    pattern=DetectionPattern.INVALID_MANUFACTURER,
                    severity=Severity.LOW,
                    claim_id=claim.claim_id,
                    description=f"{claim.issuer} has been revoked for {category} since minting",
                    detected_at=now,
                    evidence=evidence,
                )

    def _expired_warranty_claims(self, claims: List[ProductClaim], criteria: ScanCriteria,
                                 now: int) -> Iterator[SuspiciousActivityReport]:
        for claim in claims:
            if claim.state != ClaimState.BURNED:
                continue
            for event in self._ledger.events(claim.claim_id):
                if event.event_type != EventType.BURN:
                    continue
                if event.payload.get("reason") != BurnReason.WARRANTY_CLAIM.value:
                    continue
                if not criteria.in_window(event.timestamp) or event.timestamp <= claim.warranty_expiry:
                    continue
                yield SuspiciousActivityReport(
                    pattern=DetectionPattern.EXPIRED_WARRANTY_CLAIM,
                    severity=Severity.MEDIUM,
                    claim_id=claim.claim_id,
                    description="Warranty claim filed after the warranty expired",
                    detected_at=now,
                    evidence={"burn_time": event.timestamp, "warranty_expiry": claim.warranty_expiry,
                              "burner": event.actor},
                )

    def _tampered_histories(self, claims: List[ProductClaim], criteria: ScanCriteria,
                            now: int) -> Iterator[SuspiciousActivityReport]:
        for listed in claims:
            if not criteria.in_window(listed.mint_timestamp):
                continue
            claim, events = self._ledger.snapshot(listed.claim_id)
            if claim is None:
                continue
            issues = integrity_issues(claim, events)
            if issues:
                yield SuspiciousActivityReport(
                    pattern=DetectionPattern.TAMPERED_HISTORY,
                    severity=Severity.HIGH,
                    claim_id=claim.claim_id,
                    description="Stored supply-chain hash does not match the recorded history",
                    detected_at=now,
                    evidence={"issues": issues},
                )
