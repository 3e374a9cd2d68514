"""
Configuration module for Veri-Charm.

Centralizes all configuration with environment variable support,
validation, and caching for file-backed settings.
"""

import json
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

# ============================================================
# Environment Configuration
# ============================================================

ENV = os.getenv("VERICHARM_ENV", "dev")  # dev|stage|prod

# Lifecycle windows (days)
BURN_LOCK_DAYS = int(os.getenv("BURN_LOCK_DAYS", "14"))
DEFAULT_WARRANTY_DAYS = int(os.getenv("DEFAULT_WARRANTY_DAYS", "14"))

# Bounds on waiting (seconds)
EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_CALL_TIMEOUT_SECONDS", "5"))
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "10"))

# Idempotency keys are remembered for a day, at most this many at once
IDEMPOTENCY_TTL_SECONDS = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", "86400"))
IDEMPOTENCY_MAX_KEYS = int(os.getenv("IDEMPOTENCY_MAX_KEYS", "10000"))

# Storage
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "memory")  # memory|sqlite
LEDGER_DB_PATH = os.getenv("LEDGER_DB_PATH", "data/vericharm.db")
TRUST_DIRECTORY_PATH = os.getenv("TRUST_DIRECTORY_PATH", "trust/trust_directory.json")

# Signing configuration
SIGNER_BACKEND = os.getenv("VERICHARM_SIGNER", "ephemeral")  # ephemeral|file|aws_kms
SIGNING_KEY_PATH = os.getenv("SIGNING_KEY_PATH", "secrets/wallet_signing_key.json")
AWS_KMS_KEY_ID = os.getenv("AWS_KMS_KEY_ID", "")
AWS_REGION = os.getenv("AWS_REGION", "")
AWS_KMS_PUBLIC_KEY_B64 = os.getenv("AWS_KMS_PUBLIC_KEY_B64", "")

# Proof capability
PROVER_BACKEND = os.getenv("PROVER_BACKEND", "local")  # local|http|none
PROVER_URL = os.getenv("PROVER_URL", "")

# Indexing service
INDEXER_URL = os.getenv("INDEXER_URL", "")
INDEXER_API_KEY = os.getenv("INDEXER_API_KEY", "")
INDEXER_CACHE_TTL = int(os.getenv("INDEXER_CACHE_TTL", "60"))
INDEXER_MAX_RETRIES = int(os.getenv("INDEXER_MAX_RETRIES", "2"))

# Gateway
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")
MUTATION_RPM = int(os.getenv("MUTATION_RPM", "120"))
QUERY_RPM = int(os.getenv("QUERY_RPM", "600"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "")  # empty leaves logging unconfigured
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")

# Cache TTL (seconds)
CONFIG_CACHE_TTL = int(os.getenv("CONFIG_CACHE_TTL", "60"))


@dataclass(frozen=True)
class Settings:
    """Immutable view of the settings used by a running engine."""
    env: str = ENV
    burn_lock_days: int = BURN_LOCK_DAYS
    default_warranty_days: int = DEFAULT_WARRANTY_DAYS
    external_call_timeout_seconds: float = EXTERNAL_CALL_TIMEOUT_SECONDS
    lock_timeout_seconds: float = LOCK_TIMEOUT_SECONDS
    idempotency_ttl_seconds: int = IDEMPOTENCY_TTL_SECONDS
    idempotency_max_keys: int = IDEMPOTENCY_MAX_KEYS
    ledger_backend: str = LEDGER_BACKEND
    ledger_db_path: str = LEDGER_DB_PATH
    trust_directory_path: str = TRUST_DIRECTORY_PATH
    signer_backend: str = SIGNER_BACKEND
    signing_key_path: str = SIGNING_KEY_PATH
    aws_kms_key_id: str = AWS_KMS_KEY_ID
    aws_region: str = AWS_REGION
    aws_kms_public_key_b64: str = AWS_KMS_PUBLIC_KEY_B64
    prover_backend: str = PROVER_BACKEND
    prover_url: str = PROVER_URL
    indexer_url: str = INDEXER_URL
    indexer_api_key: str = INDEXER_API_KEY
    indexer_cache_ttl: int = INDEXER_CACHE_TTL
    indexer_max_retries: int = INDEXER_MAX_RETRIES
    admin_token: str = ADMIN_TOKEN
    mutation_rpm: int = MUTATION_RPM
    query_rpm: int = QUERY_RPM
    log_level: str = LOG_LEVEL
    log_json: bool = LOG_JSON

    @property
    def burn_lock_seconds(self) -> int:
        return self.burn_lock_days * 86400


def load_settings(**overrides: Any) -> Settings:
    """Build Settings from the environment, with keyword overrides."""
    return Settings(**overrides)


# ============================================================
# Cached Configuration Loaders
# ============================================================

class CachedConfig:
    """
    Thread-safe JSON file cache.

    An entry is reloaded once it is older than the TTL, or earlier when the
    file's modification time changes.
    """

    def __init__(self, ttl_seconds: int = 60):
        self._entries: Dict[str, Tuple[float, float, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._ttl = ttl_seconds

    def get_json(self, path: str, force_reload: bool = False) -> Dict[str, Any]:
        mtime = os.path.getmtime(path)
        with self._lock:
            entry = self._entries.get(path)
            if entry is not None and not force_reload:
                loaded_at, loaded_mtime, data = entry
                if loaded_mtime == mtime and time.time() - loaded_at <= self._ttl:
                    return data

            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            self._entries[path] = (time.time(), mtime, data)
            return data

    def invalidate(self, path: Optional[str] = None) -> None:
        with self._lock:
            if path:
                self._entries.pop(path, None)
            else:
                self._entries.clear()


_config_cache = CachedConfig(ttl_seconds=CONFIG_CACHE_TTL)


def load_json_cached(path: str) -> Dict[str, Any]:
    return _config_cache.get_json(path)


def invalidate_config_cache(path: Optional[str] = None) -> None:
    """Drop one cached file, or all of them."""
    _config_cache.invalidate(path)


# ============================================================
# Validation
# ============================================================

def validate_config(settings: Optional[Settings] = None) -> Dict[str, bool]:
    """
    Validate that the files the configured backends need exist.
    Returns dict of name -> exists.
    """
    settings = settings or load_settings()
    paths = {"trust_directory": settings.trust_directory_path}

    if settings.signer_backend == "file":
        paths["signing_key"] = settings.signing_key_path

    return {name: Path(path).exists() for name, path in paths.items()}


def is_production(settings: Optional[Settings] = None) -> bool:
    """Check if running in production mode."""
    env = settings.env if settings is not None else ENV
    return env == "prod"
