"""
Claim Index Tests

Local filtering semantics and the remote indexing client's auth header,
caching, retries and error mapping (against a mocked requests session).
"""

import unittest
from unittest import mock

import requests

from vericharm import (
    ClaimFilter,
    ClaimState,
    ExternalServiceTimeout,
    InMemoryLedger,
    IndexingServiceClient,
    LedgerClaimIndex,
    ProductData,
    Role,
    ServiceUnavailable,
    Settings,
    TrustDirectory,
    ValidationError,
    VerificationEngine,
    create_index,
)

T0 = 1_700_000_000
MAKER = "wallet:maker"
ALICE = "wallet:alice"


def response(status, body=None):
    resp = mock.Mock()
    resp.status_code = status
    resp.json.return_value = body
    return resp


def make_session(*responses):
    session = mock.Mock()
    session.headers = {}
    session.request.side_effect = list(responses)
    return session


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestLedgerClaimIndex(unittest.TestCase):

    def setUp(self):
        self.clock = lambda: T0
        trust = TrustDirectory(clock=self.clock)
        trust.register_address(MAKER, Role.MANUFACTURER, "*")
        self.engine = VerificationEngine(InMemoryLedger(), trust, clock=self.clock)
        self.a = self.engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)
        self.b = self.engine.mint(ProductData("Watch", "watches", "SN-2", "B-1"), MAKER)
        self.engine.transfer(self.b.claim_id, MAKER, ALICE)
        self.engine.verify(self.a.claim_id)

    def ids(self, **kwargs):
        return {c.claim_id for c in self.engine.query_claims(ClaimFilter(**kwargs))}

    def test_filters(self):
        self.assertEqual(self.ids(), {self.a.claim_id, self.b.claim_id})
        self.assertEqual(self.ids(category="watches"), {self.b.claim_id})
        self.assertEqual(self.ids(holder=ALICE), {self.b.claim_id})
        self.assertEqual(self.ids(state=ClaimState.TRANSFERRED), {self.b.claim_id})
        self.assertEqual(self.ids(state=ClaimState.VERIFIED), {self.a.claim_id})
        self.assertEqual(self.ids(state="MINTED"), {self.a.claim_id})
        self.assertEqual(self.ids(issuer="wallet:other"), set())
        self.assertEqual(self.ids(start=T0 + 1), set())

    def test_pagination(self):
        first = self.engine.query_claims(ClaimFilter(limit=1))
        second = self.engine.query_claims(ClaimFilter(limit=1, offset=1))
        self.assertEqual(len(first), 1)
        self.assertEqual(len(second), 1)
        self.assertNotEqual(first[0].claim_id, second[0].claim_id)

    def test_invalid_filters(self):
        for kwargs in [{"limit": 0}, {"limit": 501}, {"offset": -1}, {"start": 5, "end": 1},
                       {"state": "LOST"}]:
            with self.assertRaises(ValidationError):
                self.engine.query_claims(ClaimFilter(**kwargs))


class TestIndexingServiceClient(unittest.TestCase):

    def setUp(self):
        clock = lambda: T0
        trust = TrustDirectory(clock=clock)
        trust.register_address(MAKER, Role.MANUFACTURER, "jewelry")
        engine = VerificationEngine(InMemoryLedger(), trust, clock=clock)
        self.claim = engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-1"), MAKER)
        self.clock = FakeClock()

    def client(self, session, **kwargs):
        kwargs.setdefault("backoff_seconds", 0)
        return IndexingServiceClient("https://indexer.example/", api_key="k-123", session=session,
                                     clock=self.clock, **kwargs)

    def test_query_sends_bearer_and_filter(self):
        session = make_session(response(200, {"claims": [self.claim.to_dict()]}))
        client = self.client(session)

        result = client.query(ClaimFilter(category="jewelry", limit=10))

        self.assertEqual(result, [self.claim])
        self.assertEqual(session.headers["Authorization"], "Bearer k-123")
        args, kwargs = session.request.call_args
        self.assertEqual(args, ("POST", "https://indexer.example/v1/charms/query"))
        self.assertEqual(kwargs["json"], {"category": "jewelry", "limit": 10, "offset": 0})

    def test_answers_cached_until_ttl(self):
        body = {"claims": [self.claim.to_dict()]}
        session = make_session(response(200, body), response(200, body))
        client = self.client(session, cache_ttl=60)

        client.query(ClaimFilter())
        client.query(ClaimFilter())
        self.assertEqual(session.request.call_count, 1)

        self.clock.now = 61
        client.query(ClaimFilter())
        self.assertEqual(session.request.call_count, 2)

    def test_retries_transient_failures(self):
        session = make_session(
            requests.ConnectionError("reset"),
            response(503),
            response(200, {"claims": []}),
        )
        self.assertEqual(self.client(session, max_retries=2).query(ClaimFilter()), [])
        self.assertEqual(session.request.call_count, 3)

    def test_gives_up_after_retries(self):
        session = make_session(response(500), response(502))
        with self.assertRaises(ServiceUnavailable):
            self.client(session, max_retries=1).query(ClaimFilter())

    def test_timeout_maps_to_timeout_error(self):
        session = make_session(requests.Timeout("slow"), requests.Timeout("slow"))
        with self.assertRaises(ExternalServiceTimeout):
            self.client(session, max_retries=1).query(ClaimFilter())

    def test_client_error_not_retried(self):
        session = make_session(response(401))
        with self.assertRaises(ServiceUnavailable) as ctx:
            self.client(session).query(ClaimFilter())
        self.assertEqual(ctx.exception.details["status"], 401)
        self.assertEqual(session.request.call_count, 1)

    def test_malformed_claims_rejected(self):
        session = make_session(response(200, {"claims": [{"claim_id": "charm:x"}]}))
        with self.assertRaises(ServiceUnavailable):
            self.client(session).query(ClaimFilter())

    def test_get_claim(self):
        session = make_session(response(200, self.claim.to_dict()), response(404))
        client = self.client(session)
        self.assertEqual(client.get_claim(self.claim.claim_id), self.claim)
        self.assertIsNone(client.get_claim("charm:missing"))

    def test_create_index(self):
        ledger = InMemoryLedger()
        self.assertIsInstance(create_index(ledger, Settings(indexer_url="")), LedgerClaimIndex)
        self.assertIsInstance(create_index(ledger, Settings(indexer_url="https://indexer.example")),
                              IndexingServiceClient)


if __name__ == "__main__":
    unittest.main()
