"""
Veri-Charm Attestation Ledger

Append-only event log plus the claim table it drives. A single call,
record(claim, event), appends the event and stores the claim snapshot in
one atomic step, so a reader never observes one without the other.

Backends:
    InMemoryLedger   dict-backed, for tests and embedded use
    SqliteLedger     SQLite (WAL) with claims / events / handoffs tables
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .canonicalization import canonicalize_str
from .config import Settings
from .errors import StaleState, TerminalState, ValidationError
from .models import AttestationEvent, ClaimState, ProductClaim

logger = logging.getLogger(__name__)


def _check_sequence(current: Optional[ProductClaim], claim: ProductClaim, event: AttestationEvent) -> None:
    if event.claim_id != claim.claim_id:
        raise ValidationError("event.claim_id", "does not match claim")
    last = current.event_count if current is not None else 0
    if current is not None and current.state == ClaimState.BURNED:
        raise TerminalState(f"Claim {claim.claim_id} is burned", {"claim_id": claim.claim_id})
    if event.event_id != last + 1 or claim.event_count != event.event_id:
        raise StaleState(
            f"Event {event.event_id} does not follow {last} for {claim.claim_id}",
            {"claim_id": claim.claim_id, "expected_event_id": last + 1},
        )


class AttestationLedger(ABC):
    """Storage interface used by the engine, detector and handoff coordinator."""

    @abstractmethod
    def record(self, claim: ProductClaim, event: AttestationEvent) -> None:
        """
        Append `event` and store `claim` atomically.

        Raises StaleState unless event.event_id == last + 1, and
        TerminalState if the stored claim is already burned.
        """
        pass

    @abstractmethod
    def get_claim(self, claim_id: str) -> Optional[ProductClaim]:
        pass

    @abstractmethod
    def events(self, claim_id: str) -> List[AttestationEvent]:
        """Copy of the claim's events in event_id order."""
        pass

    @abstractmethod
    def claims(self) -> List[ProductClaim]:
        pass

    @abstractmethod
    def find_active_by_serial(self, issuer: str, serial_number: str) -> Optional[ProductClaim]:
        """Non-burned claim minted by `issuer` for `serial_number`, if any."""
        pass

    @abstractmethod
    def all_events(self, start: Optional[int] = None, end: Optional[int] = None) -> List[AttestationEvent]:
        """Events across all claims within [start, end], ordered by time."""
        pass

    @abstractmethod
    def save_handoff(self, handoff: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def get_handoff(self, handoff_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def list_handoffs(self, states: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        pass

    def snapshot(self, claim_id: str) -> Tuple[Optional[ProductClaim], List[AttestationEvent]]:
        """Claim and its events read together, consistent with each other."""
        return self.get_claim(claim_id), self.events(claim_id)

    def close(self) -> None:
        pass


def _in_window(ts: int, start: Optional[int], end: Optional[int]) -> bool:
    if start is not None and ts < start:
        return False
    if end is not None and ts > end:
        return False
    return True


class InMemoryLedger(AttestationLedger):

    def __init__(self):
        self._claims: Dict[str, ProductClaim] = {}
        self._events: Dict[str, List[AttestationEvent]] = {}
        self._handoffs: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def record(self, claim: ProductClaim, event: AttestationEvent) -> None:
        with self._lock:
            _check_sequence(self._claims.get(claim.claim_id), claim, event)
            self._events.setdefault(claim.claim_id, []).append(event)
            self._claims[claim.claim_id] = claim

    def get_claim(self, claim_id: str) -> Optional[ProductClaim]:
        with self._lock:
            return self._claims.get(claim_id)

    def snapshot(self, claim_id: str) -> Tuple[Optional[ProductClaim], List[AttestationEvent]]:
        with self._lock:
            return self._claims.get(claim_id), list(self._events.get(claim_id, []))

    def events(self, claim_id: str) -> List[AttestationEvent]:
        with self._lock:
            return list(self._events.get(claim_id, []))

    def claims(self) -> List[ProductClaim]:
        with self._lock:
            return sorted(self._claims.values(), key=lambda c: (c.mint_timestamp, c.claim_id))

    def find_active_by_serial(self, issuer: str, serial_number: str) -> Optional[ProductClaim]:
        with self._lock:
            for claim in self._claims.values():
                if (claim.issuer == issuer
                        and claim.product.serial_number == serial_number
                        and claim.state != ClaimState.BURNED):
                    return claim
        return None

    def all_events(self, start: Optional[int] = None, end: Optional[int] = None) -> List[AttestationEvent]:
        with self._lock:
            items = [e for evs in self._events.values() for e in evs if _in_window(e.timestamp, start, end)]
        return sorted(items, key=lambda e: (e.timestamp, e.claim_id, e.event_id))

    def save_handoff(self, handoff: Dict[str, Any]) -> None:
        with self._lock:
            self._handoffs[handoff["handoff_id"]] = dict(handoff)

    def get_handoff(self, handoff_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            found = self._handoffs.get(handoff_id)
            return dict(found) if found else None

    def list_handoffs(self, states: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = [dict(h) for h in self._handoffs.values()
                     if states is None or h["state"] in states]
        return sorted(items, key=lambda h: (h.get("created_at", 0), h["handoff_id"]))


class SqliteLedger(AttestationLedger):
    """
    SQLite-backed ledger.

    Connections are thread-local and reused within a thread. Writes go
    through BEGIN IMMEDIATE so the sequence check and both inserts share
    one transaction.
    """

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._local = threading.local()
        self._shared: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._conn_lock = threading.Lock()
        self.init_db()

    def _connect(self) -> sqlite3.Connection:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self._db_path, check_same_thread=False, timeout=30, isolation_level=None)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA temp_store=MEMORY;")
        conn.row_factory = sqlite3.Row
        with self._conn_lock:
            self._connections.append(conn)
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        # An in-memory database only exists on the connection that created it.
        if self._db_path == ":memory:":
            if self._shared is None:
                self._shared = self._connect()
            return self._shared
        if getattr(self._local, "conn", None) is None:
            self._local.conn = self._connect()
        return self._local.conn

    @contextmanager
    def _transaction(self):
        """
        Serialized write transaction.
        Commits on success, rolls back on failure.
        """
        with self._write_lock:
            conn = self._get_connection()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def init_db(self) -> None:
        """Create tables and indexes. Safe to call multiple times."""
        with self._transaction() as conn:
            conn.execute("""
            CREATE TABLE IF NOT EXISTS claims (
                claim_id TEXT PRIMARY KEY,
                issuer TEXT NOT NULL,
                serial_number TEXT NOT NULL,
                category TEXT NOT NULL,
                state TEXT NOT NULL,
                current_holder TEXT NOT NULL,
                mint_timestamp INTEGER NOT NULL,
                event_count INTEGER NOT NULL,
                supply_chain_hash TEXT NOT NULL,
                claim_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_claims_serial
            ON claims(issuer, serial_number);""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_claims_category
            ON claims(category, mint_timestamp);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS events (
                claim_id TEXT NOT NULL,
                event_id INTEGER NOT NULL,
                event_type TEXT NOT NULL,
                actor TEXT NOT NULL,
                counterparty TEXT,
                timestamp INTEGER NOT NULL,
                payload_hash TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                PRIMARY KEY (claim_id, event_id)
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_events_timestamp
            ON events(timestamp);""")

            conn.execute("""
            CREATE TABLE IF NOT EXISTS handoffs (
                handoff_id TEXT PRIMARY KEY,
                claim_id TEXT NOT NULL,
                state TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                handoff_json TEXT NOT NULL
            );""")
            conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_handoffs_state
            ON handoffs(state);""")

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AttestationEvent:
        data = dict(row)
        data["payload"] = json.loads(data.pop("payload_json"))
        return AttestationEvent.from_dict(data)

    def record(self, claim: ProductClaim, event: AttestationEvent) -> None:
        with self._transaction() as conn:
            row = conn.execute("SELECT claim_json FROM claims WHERE claim_id=?", (claim.claim_id,)).fetchone()
            current = ProductClaim.from_dict(json.loads(row["claim_json"])) if row else None
            _check_sequence(current, claim, event)
            conn.execute(
                "INSERT INTO events(claim_id, event_id, event_type, actor, counterparty, "
                "timestamp, payload_hash, payload_json) VALUES(?,?,?,?,?,?,?,?)",
                (event.claim_id, event.event_id, event.event_type.value, event.actor,
                 event.counterparty, event.timestamp, event.payload_hash,
                 canonicalize_str(event.payload))
            )
            conn.execute(
                "INSERT OR REPLACE INTO claims(claim_id, issuer, serial_number, category, state, "
                "current_holder, mint_timestamp, event_count, supply_chain_hash, claim_json) "
                "VALUES(?,?,?,?,?,?,?,?,?,?)",
                (claim.claim_id, claim.issuer, claim.product.serial_number, claim.product.category,
                 claim.state.value, claim.current_holder, claim.mint_timestamp, claim.event_count,
                 claim.supply_chain_hash, canonicalize_str(claim.to_dict()))
            )

    def get_claim(self, claim_id: str) -> Optional[ProductClaim]:
        conn = self._get_connection()
        row = conn.execute("SELECT claim_json FROM claims WHERE claim_id=?", (claim_id,)).fetchone()
        return ProductClaim.from_dict(json.loads(row["claim_json"])) if row else None

    def events(self, claim_id: str) -> List[AttestationEvent]:
        conn = self._get_connection()
        cur = conn.execute(
            "SELECT claim_id, event_id, event_type, actor, counterparty, timestamp, "
            "payload_hash, payload_json FROM events WHERE claim_id=? ORDER BY event_id ASC",
            (claim_id,)
        )
        return [self._row_to_event(row) for row in cur.fetchall()]

    def snapshot(self, claim_id: str) -> Tuple[Optional[ProductClaim], List[AttestationEvent]]:
        with self._write_lock:
            conn = self._get_connection()
            conn.execute("BEGIN")
            try:
                claim = self.get_claim(claim_id)
                events = self.events(claim_id)
            finally:
                conn.execute("COMMIT")
        return claim, events

    def claims(self) -> List[ProductClaim]:
        conn = self._get_connection()
        cur = conn.execute("SELECT claim_json FROM claims ORDER BY mint_timestamp ASC, claim_id ASC")
        return [ProductClaim.from_dict(json.loads(row["claim_json"])) for row in cur.fetchall()]

    def find_active_by_serial(self, issuer: str, serial_number: str) -> Optional[ProductClaim]:
        conn = self._get_connection()
        row = conn.execute(
            "SELECT claim_json FROM claims WHERE issuer=? AND serial_number=? AND state!=? LIMIT 1",
            (issuer, serial_number, ClaimState.BURNED.value)
        ).fetchone()
        return ProductClaim.from_dict(json.loads(row["claim_json"])) if row else None

    def all_events(self, start: Optional[int] = None, end: Optional[int] = None) -> List[AttestationEvent]:
        sql = ("SELECT claim_id, event_id, event_type, actor, counterparty, timestamp, "
               "payload_hash, payload_json FROM events WHERE 1=1")
        params: List[Any] = []
        if start is not None:
            sql += " AND timestamp >= ?"
            params.append(start)
        if end is not None:
            sql += " AND timestamp <= ?"
            params.append(end)
        sql += " ORDER BY timestamp ASC, claim_id ASC, event_id ASC"
        conn = self._get_connection()
        return [self._row_to_event(row) for row in conn.execute(sql, params).fetchall()]

    def save_handoff(self, handoff: Dict[str, Any]) -> None:
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO handoffs(handoff_id, claim_id, state, created_at, handoff_json) "
                "VALUES(?,?,?,?,?)",
                (handoff["handoff_id"], handoff["claim_id"], handoff["state"],
                 handoff.get("created_at", 0), canonicalize_str(handoff))
            )

    def get_handoff(self, handoff_id: str) -> Optional[Dict[str, Any]]:
        conn = self._get_connection()
        row = conn.execute("SELECT handoff_json FROM handoffs WHERE handoff_id=?", (handoff_id,)).fetchone()
        return json.loads(row["handoff_json"]) if row else None

    def list_handoffs(self, states: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        conn = self._get_connection()
        if states:
            marks = ",".join("?" for _ in states)
            cur = conn.execute(
                f"SELECT handoff_json FROM handoffs WHERE state IN ({marks}) "
                "ORDER BY created_at ASC, handoff_id ASC",
                list(states)
            )
        else:
            cur = conn.execute("SELECT handoff_json FROM handoffs ORDER BY created_at ASC, handoff_id ASC")
        return [json.loads(row["handoff_json"]) for row in cur.fetchall()]

    def get_stats(self) -> Dict[str, int]:
        """Row counts for monitoring."""
        conn = self._get_connection()
        stats = {}
        for table in ["claims", "events", "handoffs"]:
            cur = conn.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            stats[f"{table}_count"] = cur.fetchone()["cnt"]
        return stats

    def close(self) -> None:
        """Close every connection opened by this ledger."""
        with self._conn_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._shared = None
        self._local = threading.local()


def create_ledger(settings: Optional[Settings] = None) -> AttestationLedger:
    """Build the ledger backend named by LEDGER_BACKEND."""
    settings = settings or Settings()
    if settings.ledger_backend == "sqlite":
        logger.info("Using SQLite ledger at %s", settings.ledger_db_path)
        return SqliteLedger(settings.ledger_db_path)
    if settings.ledger_backend != "memory":
        raise ValueError(f"Unknown LEDGER_BACKEND: {settings.ledger_backend}")
    return InMemoryLedger()
