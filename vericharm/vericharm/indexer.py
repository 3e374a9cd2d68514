"""
Veri-Charm Claim Index

Query surface over claims. LedgerClaimIndex answers from the local
ledger; IndexingServiceClient asks a remote indexing service and caches
answers for a short TTL. Both apply the same ClaimFilter semantics.

Remote endpoints:
    POST /v1/charms/query      ClaimFilter JSON -> {"claims": [...]}
    GET  /v1/charms/{claim_id} -> claim JSON (404 if unknown)
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .canonicalization import canonicalize_str
from .config import Settings
from .errors import ExternalServiceTimeout, ServiceUnavailable, ValidationError
from .ledger import AttestationLedger
from .models import ClaimState, ProductClaim

logger = logging.getLogger(__name__)

MAX_LIMIT = 500
DEFAULT_LIMIT = 50


@dataclass(frozen=True)
class ClaimFilter:
    """
    Claim query. All set fields must match. `start`/`end` bound the mint
    timestamp (inclusive). state VERIFIED matches the overlay.
    """
    issuer: Optional[str] = None
    category: Optional[str] = None
    state: Optional[ClaimState] = None
    holder: Optional[str] = None
    start: Optional[int] = None
    end: Optional[int] = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    def validate(self) -> "ClaimFilter":
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationError("limit", f"must be an integer between 1 and {MAX_LIMIT}")
        if isinstance(self.offset, bool) or not isinstance(self.offset, int) or self.offset < 0:
            raise ValidationError("offset", "must be a non-negative integer")
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValidationError("start", "must not be after end")
        if self.state is not None and not isinstance(self.state, ClaimState):
            try:
                ClaimState(self.state)
            except ValueError:
                raise ValidationError("state", f"unknown state {self.state!r}")
        return self

    def matches(self, claim: ProductClaim) -> bool:
        if self.issuer is not None and claim.issuer != self.issuer:
            return False
        if self.category is not None and claim.product.category != self.category:
            return False
        if self.holder is not None and claim.current_holder != self.holder:
            return False
        if self.state is not None and ClaimState(self.state) not in claim.statuses():
            return False
        if self.start is not None and claim.mint_timestamp < self.start:
            return False
        if self.end is not None and claim.mint_timestamp > self.end:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "issuer": self.issuer,
            "category": self.category,
            "state": ClaimState(self.state).value if self.state is not None else None,
            "holder": self.holder,
            "start": self.start,
            "end": self.end,
            "limit": self.limit,
            "offset": self.offset,
        }
        return {k: v for k, v in d.items() if v is not None}


class ClaimIndex(ABC):

    @abstractmethod
    def query(self, claim_filter: ClaimFilter) -> List[ProductClaim]:
        pass


class LedgerClaimIndex(ClaimIndex):
    """Filter over the local ledger's claim table."""

    def __init__(self, ledger: AttestationLedger):
        self._ledger = ledger

    def query(self, claim_filter: ClaimFilter) -> List[ProductClaim]:
        claim_filter.validate()
        matched = [c for c in self._ledger.claims() if claim_filter.matches(c)]
        return matched[claim_filter.offset:claim_filter.offset + claim_filter.limit]


class IndexingServiceClient(ClaimIndex):
    """
    HTTP client for a remote indexing service.

    Queries are read-only, so transient failures (timeouts, connection
    errors, 5xx) are retried up to max_retries times. Answers are cached
    for cache_ttl seconds per filter.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        cache_ttl: int = 60,
        max_retries: int = 2,
        timeout: float = 5.0,
        backoff_seconds: float = 0.2,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        if not base_url:
            raise ValueError("INDEXER_URL required for indexing service client")
        self._base_url = base_url.rstrip("/")
        self._cache_ttl = cache_ttl
        self._max_retries = max_retries
        self._timeout = timeout
        self._backoff = backoff_seconds
        self._clock = clock
        self._session = session or requests.Session()
        self._session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self._session.headers.update({"Authorization": f"Bearer {api_key}"})
        self._cache: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def _cached(self, key: str) -> Optional[Any]:
        with self._lock:
            hit = self._cache.get(key)
            if hit and self._clock() - hit[0] < self._cache_ttl:
                return hit[1]
        return None

    def _store(self, key: str, value: Any) -> None:
        with self._lock:
            self._cache[key] = (self._clock(), value)

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def _request(self, method: str, path: str, **kwargs: Any) -> Optional[requests.Response]:
        """Send with retries. Returns None on 404."""
        url = f"{self._base_url}{path}"
        last_error: Optional[Exception] = None
        for attempt in range(self._max_retries + 1):
            if attempt:
                time.sleep(self._backoff * attempt)
            try:
                resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
            except (requests.Timeout, requests.ConnectionError) as e:
                last_error = e
                logger.warning("Indexer %s %s failed (attempt %d): %s", method, path, attempt + 1, e)
                continue
            if resp.status_code == 404:
                return None
            if resp.status_code >= 500:
                last_error = requests.HTTPError(f"{resp.status_code} from indexer", response=resp)
                logger.warning("Indexer %s %s returned %d (attempt %d)",
                               method, path, resp.status_code, attempt + 1)
                continue
            if resp.status_code >= 400:
                raise ServiceUnavailable(
                    f"Indexer rejected request: {resp.status_code}",
                    {"service": "indexer", "status": resp.status_code},
                )
            return resp

        if isinstance(last_error, requests.Timeout):
            raise ExternalServiceTimeout(f"Indexer timed out: {url}", {"service": "indexer"}) from last_error
        raise ServiceUnavailable(f"Indexer unavailable: {last_error}", {"service": "indexer"}) from last_error

    @staticmethod
    def _decode(resp: requests.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise ServiceUnavailable("Indexer returned invalid JSON", {"service": "indexer"}) from e

    def query(self, claim_filter: ClaimFilter) -> List[ProductClaim]:
        claim_filter.validate()
        body = claim_filter.to_dict()
        key = "query:" + canonicalize_str(body)
        cached = self._cached(key)
        if cached is None:
            resp = self._request("POST", "/v1/charms/query", json=body)
            data = self._decode(resp) if resp is not None else {"claims": []}
            cached = data.get("claims", []) if isinstance(data, dict) else data
            self._store(key, cached)
        try:
            return [ProductClaim.from_dict(item) for item in cached]
        except (KeyError, TypeError, ValueError, ValidationError) as e:
            raise ServiceUnavailable(f"Indexer returned malformed claims: {e}", {"service": "indexer"}) from e

    def get_claim(self, claim_id: str) -> Optional[ProductClaim]:
        key = "claim:" + claim_id
        cached = self._cached(key)
        if cached is None:
            resp = self._request("GET", f"/v1/charms/{claim_id}")
            if resp is None:
                return None
            cached = self._decode(resp)
            self._store(key, cached)
        return ProductClaim.from_dict(cached)


def create_index(ledger: AttestationLedger, settings: Optional[Settings] = None) -> ClaimIndex:
    """Remote client when INDEXER_URL is set, otherwise the local ledger index."""
    settings = settings or Settings()
    if settings.indexer_url:
        return IndexingServiceClient(
            settings.indexer_url,
            api_key=settings.indexer_api_key,
            cache_ttl=settings.indexer_cache_ttl,
            max_retries=settings.indexer_max_retries,
            timeout=settings.external_call_timeout_seconds,
        )
    return LedgerClaimIndex(ledger)
