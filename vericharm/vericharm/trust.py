"""
Veri-Charm Trust Directory

Authorization source for manufacturers and retailers. Entries are keyed by
(address, role, category); category "*" covers every category. Each entry
keeps its change history so trust can be evaluated as of a past instant,
which is what mint-time issuer checks and the detector need.

Unknown addresses are untrusted. Lookups never raise.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .config import invalidate_config_cache, load_json_cached
from .errors import ValidationError
from .hashing import directory_hash
from .models import Role, validate_address
from .util import now_epoch

logger = logging.getLogger(__name__)

ANY_CATEGORY = "*"


@dataclass
class TrustEntry:
    address: str
    role: Role
    category: str
    trusted: bool = True
    registered_at: int = 0
    history: List[Tuple[int, bool]] = field(default_factory=list)

    @property
    def key(self) -> Tuple[str, Role, str]:
        return (self.address, self.role, self.category)

    def trusted_at(self, at: int) -> bool:
        """Trust flag in force at epoch second `at`."""
        state = False
        for ts, trusted in self.history:
            if ts > at:
                break
            state = trusted
        return state

    def covers(self, category: str) -> bool:
        return self.category == ANY_CATEGORY or self.category == category

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role.value,
            "category": self.category,
            "trusted": self.trusted,
            "registered_at": self.registered_at,
            "history": [[ts, trusted] for ts, trusted in self.history],
        }

    @classmethod
    def from_dict(cls, address: str, data: Dict[str, Any]) -> "TrustEntry":
        try:
            role = Role(data["role"])
        except (KeyError, ValueError):
            raise ValidationError("role", f"unknown role {data.get('role')!r}")
        trusted = bool(data.get("trusted", True))
        registered_at = int(data.get("registered_at", 0))
        history = [(int(ts), bool(t)) for ts, t in data.get("history") or []]
        if not history:
            history = [(registered_at, trusted)]
        return cls(
            address=address,
            role=role,
            category=data.get("category", ANY_CATEGORY),
            trusted=trusted,
            registered_at=registered_at,
            history=sorted(history, key=lambda h: h[0]),
        )


class TrustDirectory:
    """
    Thread-safe trust directory.

    register() is idempotent per (address, role, category) with last write
    winning on the trusted flag; every flip is appended to the history.
    """

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._entries: Dict[Tuple[str, Role, str], TrustEntry] = {}
        self._lock = threading.RLock()
        self._clock = clock or now_epoch

    def register(self, entry: TrustEntry) -> TrustEntry:
        address = validate_address(entry.address, "address")
        if not isinstance(entry.category, str) or not entry.category.strip():
            raise ValidationError("category", "must be a non-empty string")
        try:
            role = Role(entry.role)
        except ValueError:
            raise ValidationError("role", f"unknown role {entry.role!r}")
        ts = entry.registered_at or self._clock()

        with self._lock:
            key = (address, role, entry.category)
            existing = self._entries.get(key)
            if existing is None:
                stored = TrustEntry(
                    address=address,
                    role=role,
                    category=entry.category,
                    trusted=entry.trusted,
                    registered_at=ts,
                    history=list(entry.history) or [(ts, entry.trusted)],
                )
                self._entries[key] = stored
                logger.info("Registered %s as %s for %s", address, role.value, entry.category)
                return stored

            if existing.trusted != entry.trusted:
                existing.trusted = entry.trusted
                existing.history.append((max(ts, existing.history[-1][0]), entry.trusted))
                logger.info("Trust for %s/%s/%s set to %s",
                            address, role.value, entry.category, entry.trusted)
            return existing

    def register_address(
        self,
        address: str,
        role: Role,
        category: str = ANY_CATEGORY,
        trusted: bool = True,
        at: Optional[int] = None
    ) -> TrustEntry:
        """Convenience wrapper around register()."""
        return self.register(TrustEntry(
            address=address, role=role, category=category,
            trusted=trusted, registered_at=at or 0,
        ))

    def revoke(
        self,
        address: str,
        role: Optional[Role] = None,
        category: Optional[str] = None,
        at: Optional[int] = None
    ) -> int:
        """
        Mark matching entries untrusted from `at` (default: now) onwards.

        Returns the number of entries changed. Unknown addresses are a no-op.
        """
        ts = at if at is not None else self._clock()
        changed = 0
        with self._lock:
            for entry in self._entries.values():
                if entry.address != address or not entry.trusted:
                    continue
                if role is not None and entry.role != role:
                    continue
                if category is not None and entry.category != category:
                    continue
                entry.trusted = False
                entry.history.append((max(ts, entry.history[-1][0]), False))
                changed += 1
        if changed:
            logger.warning("Revoked %d trust entries for %s", changed, address)
        return changed

    def is_trusted(
        self,
        address: str,
        role: Role,
        category: str,
        at: Optional[int] = None
    ) -> bool:
        if not isinstance(address, str) or not address:
            return False
        with self._lock:
            for entry in self._entries.values():
                if entry.address != address or entry.role != role or not entry.covers(category):
                    continue
                if at is None:
                    if entry.trusted:
                        return True
                elif entry.trusted_at(at):
                    return True
        return False

    def has_role(self, address: str, role: Role) -> bool:
        """True if the address is known in `role` for any category."""
        with self._lock:
            return any(
                e.address == address and e.role == role
                for e in self._entries.values()
            )

    def entries(self, address: Optional[str] = None) -> List[TrustEntry]:
        with self._lock:
            return [
                TrustEntry(e.address, e.role, e.category, e.trusted, e.registered_at, list(e.history))
                for e in self._entries.values()
                if address is None or e.address == address
            ]

    def snapshot(self) -> Dict[str, Any]:
        """Directory contents keyed by address, in the persisted JSON shape."""
        with self._lock:
            out: Dict[str, List[Dict[str, Any]]] = {}
            for entry in sorted(self._entries.values(),
                                key=lambda e: (e.address, e.role.value, e.category)):
                out.setdefault(entry.address, []).append(entry.to_dict())
            return {"addresses": out}

    def directory_hash(self) -> str:
        return directory_hash(self.snapshot())

    def to_dict(self) -> Dict[str, Any]:
        d = self.snapshot()
        d["directory_hash"] = directory_hash(d)
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Optional[Callable[[], int]] = None) -> "TrustDirectory":
        directory = cls(clock=clock)
        addresses = data.get("addresses", {})
        if not isinstance(addresses, dict):
            raise ValidationError("addresses", "must be an object keyed by address")
        with directory._lock:
            for address, items in addresses.items():
                for item in items:
                    entry = TrustEntry.from_dict(address, item)
                    directory._entries[entry.key] = entry
        return directory

    @classmethod
    def load(cls, path: str, clock: Optional[Callable[[], int]] = None) -> "TrustDirectory":
        """Load a directory from a JSON file (cached by the config loader)."""
        return cls.from_dict(load_json_cached(path), clock=clock)

    def save(self, path: str) -> None:
        target = Path(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, sort_keys=True)
        invalidate_config_cache(str(target))
