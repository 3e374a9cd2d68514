"""
Counterfeit Detector Tests

Each detection pattern fires with its severity, windows narrow the scan,
and scanning never changes the ledger.
"""

import unittest
from dataclasses import replace

from vericharm import (
    BurnReason,
    CounterfeitDetector,
    DetectionPattern,
    InMemoryLedger,
    ProductData,
    Role,
    ScanCriteria,
    Settings,
    Severity,
    TrustDirectory,
    ValidationError,
    VerificationEngine,
)

T0 = 1_700_000_000
DAY = 86400
MAKER = "wallet:maker"
MAKER2 = "wallet:maker2"
LATECOMER = "wallet:latecomer"
ALICE = "wallet:alice"


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def product(serial, category="jewelry"):
    return ProductData("Charm", category, serial, "B-1")


class DetectorTestBase(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock(T0)
        self.trust = TrustDirectory(clock=self.clock)
        self.trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        self.trust.register_address(MAKER2, Role.MANUFACTURER, "jewelry")
        self.ledger = InMemoryLedger()
        self.engine = VerificationEngine(
            self.ledger, self.trust, clock=self.clock,
            settings=Settings(burn_lock_days=14, default_warranty_days=14),
        )
        self.detector = CounterfeitDetector(self.ledger, self.trust, clock=self.clock)

    def scan(self, *patterns, start=None, end=None):
        return self.detector.scan(ScanCriteria.build(patterns or None, start, end))


class TestDuplicateSerial(DetectorTestBase):

    def test_same_serial_from_two_issuers(self):
        a = self.engine.mint(product("SN-1"), MAKER)
        b = self.engine.mint(product("SN-1"), MAKER2)
        self.engine.mint(product("SN-2"), MAKER)

        reports = self.scan(DetectionPattern.DUPLICATE_SERIAL)

        self.assertEqual(len(reports), 2)
        self.assertEqual({r.claim_id for r in reports}, {a.claim_id, b.claim_id})
        for r in reports:
            self.assertEqual(r.severity, Severity.HIGH)
            self.assertEqual(len(r.related_claim_ids), 1)
            self.assertEqual(r.evidence["serial_number"], "SN-1")

    def test_same_serial_different_category_is_fine(self):
        self.trust.register_address(MAKER2, Role.MANUFACTURER, "watches")
        self.engine.mint(product("SN-1"), MAKER)
        self.engine.mint(product("SN-1", "watches"), MAKER2)
        self.assertEqual(self.scan(DetectionPattern.DUPLICATE_SERIAL), [])

    def test_burned_claims_are_not_duplicates(self):
        a = self.engine.mint(product("SN-1"), MAKER)
        self.clock.now = T0 + 15 * DAY
        self.engine.burn(a.claim_id, MAKER)
        self.engine.mint(product("SN-1"), MAKER2)
        self.assertEqual(self.scan(DetectionPattern.DUPLICATE_SERIAL), [])


class TestInvalidManufacturer(DetectorTestBase):

    def test_untrusted_at_mint_time(self):
        self.trust.register_address(LATECOMER, Role.MANUFACTURER, "jewelry", at=T0 + 100)
        claim = self.engine.mint(product("SN-9"), LATECOMER)

        reports = self.scan(DetectionPattern.INVALID_MANUFACTURER)

        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].claim_id, claim.claim_id)
        self.assertEqual(reports[0].severity, Severity.MEDIUM)

    def test_revoked_after_mint(self):
        claim = self.engine.mint(product("SN-1"), MAKER)
        self.clock.now = T0 + DAY
        self.trust.revoke(MAKER)

        reports = self.scan(DetectionPattern.INVALID_MANUFACTURER)

        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].claim_id, claim.claim_id)
        self.assertEqual(reports[0].severity, Severity.LOW)

    def test_trusted_issuer_not_reported(self):
        self.engine.mint(product("SN-1"), MAKER)
        self.assertEqual(self.scan(DetectionPattern.INVALID_MANUFACTURER), [])


class TestExpiredWarrantyClaim(DetectorTestBase):

    def test_warranty_burn_after_expiry(self):
        claim = self.engine.mint(product("SN-1"), MAKER)
        self.engine.transfer(claim.claim_id, MAKER, ALICE)
        self.clock.now = T0 + 20 * DAY
        self.engine.burn(claim.claim_id, ALICE, BurnReason.WARRANTY_CLAIM)

        reports = self.scan(DetectionPattern.EXPIRED_WARRANTY_CLAIM)

        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].severity, Severity.MEDIUM)
        self.assertEqual(reports[0].evidence["burner"], ALICE)
        self.assertEqual(reports[0].evidence["warranty_expiry"], T0 + 14 * DAY)

    def test_warranty_burn_at_expiry_is_valid(self):
        claim = self.engine.mint(product("SN-1"), MAKER)
        self.clock.now = T0 + 14 * DAY
        self.engine.burn(claim.claim_id, MAKER, BurnReason.WARRANTY_CLAIM)
        self.assertEqual(self.scan(DetectionPattern.EXPIRED_WARRANTY_CLAIM), [])

    def test_other_burn_reasons_ignored(self):
        claim = self.engine.mint(product("SN-1"), MAKER)
        self.clock.now = T0 + 30 * DAY
        self.engine.burn(claim.claim_id, MAKER, BurnReason.RAFFLE_ENTRY)
        self.assertEqual(self.scan(DetectionPattern.EXPIRED_WARRANTY_CLAIM), [])


class TestTamperedHistory(DetectorTestBase):

    def test_tampered_claim_reported(self):
        claim = self.engine.mint(product("SN-1"), MAKER)
        self.engine.transfer(claim.claim_id, MAKER, ALICE)
        self.engine.mint(product("SN-2"), MAKER)
        events = self.ledger._events[claim.claim_id]
        events[1] = replace(events[1], counterparty="wallet:mallory")

        with self.assertLogs("vericharm.audit", level="ERROR"):
            reports = self.scan(DetectionPattern.TAMPERED_HISTORY)

        self.assertEqual(len(reports), 1)
        self.assertEqual(reports[0].claim_id, claim.claim_id)
        self.assertEqual(reports[0].severity, Severity.HIGH)
        self.assertIn("supply chain hash mismatch", reports[0].evidence["issues"])


class TestScanBehaviour(DetectorTestBase):

    def test_scan_does_not_mutate(self):
        a = self.engine.mint(product("SN-1"), MAKER)
        self.engine.mint(product("SN-1"), MAKER2)
        before = [(c.to_dict(), len(self.ledger.events(c.claim_id))) for c in self.ledger.claims()]

        self.assertTrue(self.scan())

        after = [(c.to_dict(), len(self.ledger.events(c.claim_id))) for c in self.ledger.claims()]
        self.assertEqual(before, after)
        self.assertEqual(self.engine.get_claim(a.claim_id).verification_count, 0)

    def test_window_excludes_old_mints(self):
        self.engine.mint(product("SN-1"), MAKER)
        self.engine.mint(product("SN-1"), MAKER2)
        self.assertEqual(self.scan(DetectionPattern.DUPLICATE_SERIAL, start=T0 + 1), [])
        self.assertEqual(len(self.scan(DetectionPattern.DUPLICATE_SERIAL, start=T0, end=T0)), 2)

    def test_clean_ledger_has_no_reports(self):
        self.engine.mint(product("SN-1"), MAKER)
        self.assertEqual(self.scan(), [])

    def test_reports_serialize(self):
        self.engine.mint(product("SN-1"), MAKER)
        self.engine.mint(product("SN-1"), MAKER2)
        data = self.scan()[0].to_dict()
        self.assertEqual(data["pattern"], "duplicate_serial")
        self.assertEqual(data["severity"], "high")
        self.assertEqual(data["detected_at"], T0)

    def test_invalid_criteria(self):
        with self.assertRaises(ValidationError):
            ScanCriteria.build(["cloned_tag"])
        with self.assertRaises(ValidationError):
            ScanCriteria.build(None, start=10, end=5)


if __name__ == "__main__":
    unittest.main()
