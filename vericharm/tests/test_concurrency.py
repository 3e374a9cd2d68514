"""
Concurrency Tests

Mutations of one claim are serialized: of two racing transfers from the
same holder exactly one wins. Lock waits and external calls are bounded,
and a cancelled operation leaves no trace.
"""

import threading
import time
import unittest

from vericharm import (
    BoundedExecutor,
    ClaimBusy,
    ClaimLockManager,
    CounterfeitDetector,
    DetectionPattern,
    DuplicateSerial,
    ExternalServiceTimeout,
    InMemoryLedger,
    NotHolder,
    OperationCancelled,
    ProductData,
    Role,
    ScanCriteria,
    ServiceUnavailable,
    TrustDirectory,
    UnknownClaim,
    VerificationEngine,
)

T0 = 1_700_000_000
MAKER = "wallet:maker"


class SlowTrustDirectory(TrustDirectory):
    def __init__(self, delay, **kwargs):
        super().__init__(**kwargs)
        self.delay = delay

    def is_trusted(self, address, role, category, at=None):
        time.sleep(self.delay)
        return super().is_trusted(address, role, category, at)


def run_threads(count, target):
    """Start `count` threads behind a barrier and collect (result, error) pairs."""
    barrier = threading.Barrier(count)
    results = [None] * count

    def worker(i):
        barrier.wait()
        try:
            results[i] = (target(i), None)
        except Exception as e:
            results[i] = (None, e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    return results


class TestClaimSerialization(unittest.TestCase):

    def setUp(self):
        clock = lambda: T0
        self.trust = TrustDirectory(clock=clock)
        self.trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        self.ledger = InMemoryLedger()
        self.engine = VerificationEngine(self.ledger, self.trust, clock=clock)
        self.claim = self.engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)

    def test_racing_transfers_one_wins(self):
        results = run_threads(2, lambda i: self.engine.transfer(
            self.claim.claim_id, MAKER, f"wallet:buyer{i}"))

        wins = [r for r, e in results if e is None]
        losses = [e for r, e in results if e is not None]
        self.assertEqual(len(wins), 1)
        self.assertEqual(len(losses), 1)
        self.assertIsInstance(losses[0], NotHolder)

        claim = self.engine.get_claim(self.claim.claim_id)
        self.assertEqual(claim.current_holder, wins[0].counterparty)
        self.assertEqual(claim.event_count, 2)
        self.engine.audit_chain(self.claim.claim_id)

    def test_racing_mints_of_one_serial(self):
        product = ProductData("Charm", "jewelry", "SN-RACE", "B-1")
        results = run_threads(5, lambda i: self.engine.mint(product, MAKER))

        minted = [r for r, e in results if e is None]
        errors = [e for r, e in results if e is not None]
        self.assertEqual(len(minted), 1)
        self.assertEqual(len(errors), 4)
        self.assertTrue(all(isinstance(e, DuplicateSerial) for e in errors))

    def test_parallel_verifications_all_recorded(self):
        results = run_threads(8, lambda i: self.engine.verify(self.claim.claim_id))

        self.assertTrue(all(e is None for _, e in results))
        self.assertTrue(all(r.is_authentic and r.recorded for r, _ in results))
        claim = self.engine.get_claim(self.claim.claim_id)
        self.assertEqual(claim.verification_count, 8)
        self.assertEqual([e.event_id for e in self.ledger.events(claim.claim_id)], list(range(1, 10)))
        self.engine.audit_chain(claim.claim_id)


class TestBoundedWaits(unittest.TestCase):

    def setUp(self):
        clock = lambda: T0
        trust = TrustDirectory(clock=clock)
        trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        self.locks = ClaimLockManager(timeout_seconds=0.1)
        self.ledger = InMemoryLedger()
        self.engine = VerificationEngine(self.ledger, trust, clock=clock, locks=self.locks)
        self.claim = self.engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)

    def test_busy_claim_times_out(self):
        holding = threading.Event()
        release = threading.Event()

        def hold():
            with self.locks.acquire(self.claim.claim_id):
                holding.set()
                release.wait(5)

        holder = threading.Thread(target=hold)
        holder.start()
        try:
            self.assertTrue(holding.wait(5))
            self.assertTrue(self.locks.is_locked(self.claim.claim_id))
            with self.assertRaises(ClaimBusy) as ctx:
                self.engine.transfer(self.claim.claim_id, MAKER, "wallet:alice")
            self.assertTrue(ctx.exception.retryable)
        finally:
            release.set()
            holder.join(5)

        self.assertEqual(self.engine.get_claim(self.claim.claim_id).current_holder, MAKER)
        self.assertEqual(len(self.ledger.events(self.claim.claim_id)), 1)
        self.assertFalse(self.locks.is_locked(self.claim.claim_id))

    def test_cancelled_operation_has_no_effect(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(OperationCancelled):
            self.engine.transfer(self.claim.claim_id, MAKER, "wallet:alice", cancel=cancel)
        with self.assertRaises(OperationCancelled):
            self.engine.verify(self.claim.claim_id, cancel=cancel)

        claim = self.engine.get_claim(self.claim.claim_id)
        self.assertEqual(claim.current_holder, MAKER)
        self.assertEqual(claim.event_count, 1)

    def test_cancel_while_waiting(self):
        cancel = threading.Event()
        with self.locks.acquire("charm:other"):
            timer = threading.Timer(0.02, cancel.set)
            timer.start()
            with self.assertRaises(OperationCancelled):
                with self.locks.acquire("charm:other", timeout=5, cancel=cancel):
                    pass
            timer.join()

    def test_unknown_claim_does_not_lock(self):
        with self.assertRaises(UnknownClaim):
            self.engine.transfer("charm:missing", MAKER, "wallet:alice")
        self.assertFalse(self.locks.is_locked("charm:missing"))


class TestExternalCalls(unittest.TestCase):

    def setUp(self):
        self.executor = BoundedExecutor(timeout_seconds=0.1)

    def tearDown(self):
        self.executor.shutdown()

    def test_slow_call_times_out(self):
        with self.assertRaises(ExternalServiceTimeout) as ctx:
            self.executor.call(time.sleep, 0.5, service="indexer")
        self.assertEqual(ctx.exception.details["service"], "indexer")

    def test_failing_call_is_unavailable(self):
        def boom():
            raise ConnectionError("refused")
        with self.assertRaises(ServiceUnavailable):
            self.executor.call(boom)

    def test_core_errors_pass_through(self):
        def missing():
            raise UnknownClaim("charm:x")
        with self.assertRaises(UnknownClaim):
            self.executor.call(missing)

    def test_slow_trust_lookup_aborts_mint(self):
        clock = lambda: T0
        trust = SlowTrustDirectory(0.5, clock=clock)
        trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        ledger = InMemoryLedger()
        engine = VerificationEngine(ledger, trust, clock=clock, executor=self.executor)

        with self.assertRaises(ExternalServiceTimeout):
            engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)
        self.assertEqual(ledger.claims(), [])

    def test_slow_trust_lookup_aborts_scan(self):
        clock = lambda: T0
        trust = SlowTrustDirectory(0.0, clock=clock)
        trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        ledger = InMemoryLedger()
        VerificationEngine(ledger, trust, clock=clock).mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)

        trust.delay = 0.5
        detector = CounterfeitDetector(ledger, trust, clock=clock, executor=self.executor)
        with self.assertRaises(ExternalServiceTimeout) as ctx:
            detector.scan(ScanCriteria.build([DetectionPattern.INVALID_MANUFACTURER]))
        self.assertEqual(ctx.exception.details["service"], "trust_directory")


if __name__ == "__main__":
    unittest.main()
