#!/usr/bin/env python3
"""
Veri-Charm Example - Complete Product Lifecycle

Mints a claim for a jewelry charm, moves it through a retailer to a
consumer, verifies it, shows the privacy-safe history, burns it for a
raffle entry and finally runs the counterfeit detector over the ledger.

A simulated clock is used so the 14-day burn lock can be crossed.

Run with: python vericharm/examples/product_lifecycle_example.py
"""

from vericharm import (
    BurnReason,
    CounterfeitDetector,
    EphemeralSigner,
    HandoffCoordinator,
    InMemoryLedger,
    ProductData,
    Role,
    SignedCommitmentProver,
    TrustDirectory,
    VerificationEngine,
    WithinLockPeriod,
)

DAY = 86400

MANUFACTURER = "wallet:lumen-atelier"
RETAILER = "wallet:harbor-jewels"
CONSUMER = "wallet:consumer-7f3a"
COUNTERFEITER = "wallet:knockoff-co"


class SimulatedClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: int = 1_767_225_600):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, days: int) -> None:
        self.now += days * DAY


def main():
    print("=" * 70)
    print("Veri-Charm Product Lifecycle - Example")
    print("=" * 70)

    # =========================================================================
    # SETUP
    # =========================================================================

    print("\n[SETUP] Registering trusted parties...")

    clock = SimulatedClock()
    trust = TrustDirectory(clock=clock)
    trust.register_address(MANUFACTURER, Role.MANUFACTURER, "jewelry")
    trust.register_address(RETAILER, Role.RETAILER, "jewelry")

    signer = EphemeralSigner()
    prover = SignedCommitmentProver(signer)
    ledger = InMemoryLedger()
    engine = VerificationEngine(ledger, trust, prover=prover, signer=signer, clock=clock)
    handoffs = HandoffCoordinator(engine)

    print(f"  Manufacturer: {MANUFACTURER}")
    print(f"  Retailer:     {RETAILER}")
    print(f"  Verifier:     {signer.get_address()}")
    print(f"  Directory:    {trust.directory_hash()[:30]}...")

    # =========================================================================
    # SCENARIO 1: Mint, ship to retailer, sell to consumer
    # =========================================================================

    print("\n" + "-" * 70)
    print("SCENARIO 1: Mint and Supply Chain")
    print("-" * 70)

    product = ProductData(
        name="Anchor Charm",
        category="jewelry",
        serial_number="LA-2026-000417",
        batch_id="LA-B-17",
        attributes={"metal": "sterling silver", "weight_g": 4},
    )
    claim = engine.mint(product, MANUFACTURER, warranty_period_days=365)
    print(f"\n[STEP 1] Minted {claim.claim_id[:30]}...")
    print(f"  State: {claim.state.value}")
    print(f"  Warranty until: {claim.warranty_expiry}")

    handoff = handoffs.request(claim.claim_id, MANUFACTURER, RETAILER, role=Role.RETAILER)
    print(f"\n[STEP 2] Handoff requested: {handoff.handoff_id[:24]}...")
    handoff = handoffs.confirm(handoff.handoff_id)
    print(f"  Retailer confirmed, transfer event #{handoff.event_id}")

    clock.advance(3)
    event = engine.transfer(claim.claim_id, RETAILER, CONSUMER, payload={"shipping_region": "EU"})
    print(f"\n[STEP 3] Sold to consumer (event #{event.event_id})")

    # =========================================================================
    # SCENARIO 2: Verification and privacy-safe history
    # =========================================================================

    print("\n" + "-" * 70)
    print("SCENARIO 2: Verification")
    print("-" * 70)

    verdict = engine.verify(claim.claim_id, method="nfc_tap")
    print(f"\n  Authentic:          {verdict.is_authentic}")
    print(f"  Supply chain valid: {verdict.supply_chain_valid}")
    print(f"  Within warranty:    {verdict.within_warranty}")
    print(f"  Signed by:          {verdict.signature['signer']}")

    view = engine.history(claim.claim_id, with_proof=True)
    print(f"\n  History events:   {len(view.public_data)}")
    print(f"  Privacy applied:  {view.privacy_applied}")
    print(f"  Redacted fields:  {len(view.redacted_fields)}")
    if view.proof:
        print(f"  Proof commitment: {view.proof.public_signals['history_commitment'][:30]}...")

    # =========================================================================
    # SCENARIO 3: Burn for raffle
    # =========================================================================

    print("\n" + "-" * 70)
    print("SCENARIO 3: Burn for Raffle Entry")
    print("-" * 70)

    try:
        engine.burn(claim.claim_id, CONSUMER, BurnReason.RAFFLE_ENTRY)
    except WithinLockPeriod as e:
        print(f"\n  ✗ Too early: {e.message}")

    clock.advance(14)
    receipt = engine.burn(claim.claim_id, CONSUMER, BurnReason.RAFFLE_ENTRY)
    print(f"\n  ✓ Burned at {receipt.burn_time}")
    print(f"    Raffle entry: {receipt.raffle_entry.entry_id[:30]}...")

    after = engine.verify(claim.claim_id)
    print(f"    Verify after burn: state={after.state.value} recorded={after.recorded}")

    # =========================================================================
    # SCENARIO 4: Counterfeit detection
    # =========================================================================

    print("\n" + "-" * 70)
    print("SCENARIO 4: Counterfeit Detection")
    print("-" * 70)

    trust.register_address(COUNTERFEITER, Role.MANUFACTURER, "jewelry")
    engine.mint(ProductData("Anchor Charm", "jewelry", "LA-2026-000502", "X-1"), MANUFACTURER)
    engine.mint(ProductData("Anchor Charm", "jewelry", "LA-2026-000502", "X-1"), COUNTERFEITER)
    trust.revoke(COUNTERFEITER)

    detector = CounterfeitDetector(ledger, trust, clock=clock)
    for report in detector.scan():
        print(f"\n  [{report.severity.value.upper()}] {report.pattern.value}")
        print(f"    {report.description}")

    print("\n" + "=" * 70)
    print("Example Complete")
    print("=" * 70)


if __name__ == "__main__":
    main()
