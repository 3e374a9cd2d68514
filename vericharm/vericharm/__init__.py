"""
Veri-Charm Attestation Core

Version: 1.0.0

Product-authenticity verification and supply-chain attestation for
physical-product claims ("Charms").

A claim is minted once by a trusted manufacturer, moves through retailers
and consumers by transfer, can be verified by anyone at any time, and is
burned (retired) once its cooling-off window has passed:

    MINTED -> TRANSFERRED -> (TRANSFERRED)* -> BURNED

Every lifecycle step appends an immutable event to the claim's history,
and the claim carries a chained SHA-256 hash over that history:

    H_0 = SHA-256(claim_id)
    H_i = SHA-256(H_{i-1} || CJE(event_i))

Any edit, reorder or omission changes the hash, so verification is a
recompute-and-compare.

Usage:
    from vericharm import (
        InMemoryLedger,
        ProductData,
        Role,
        TrustDirectory,
        VerificationEngine,
    )

    trust = TrustDirectory()
    trust.register_address("wallet:acme", Role.MANUFACTURER, "jewelry")
    trust.register_address("wallet:shop", Role.RETAILER, "jewelry")

    engine = VerificationEngine(InMemoryLedger(), trust)
    claim = engine.mint(ProductData("Charm", "jewelry", "SN-1", "B-7"), "wallet:acme")
    engine.transfer(claim.claim_id, "wallet:acme", "wallet:shop")

    verdict = engine.verify(claim.claim_id)
    if verdict.is_authentic:
        ...

    # Disclosure-safe history
    view = engine.history(claim.claim_id, with_proof=True)
"""

__version__ = "1.0.0"

# Canonicalization & hashing
from .canonicalization import canonicalize, canonicalize_str
from .hashing import (
    HASH_PREFIX,
    chain_hash,
    constant_time_equals,
    directory_hash,
    genesis_hash,
    payload_hash,
    sha256_hash,
    supply_chain_hash,
    verify_hash,
)

# Errors
from .errors import (
    AuthorizationError,
    ClaimBusy,
    DuplicateSerial,
    ExternalServiceError,
    ExternalServiceTimeout,
    IdempotencyConflict,
    IntegrityError,
    InvalidProof,
    NotFoundError,
    NotHolder,
    OperationCancelled,
    ServiceUnavailable,
    StaleState,
    StateConflictError,
    TerminalState,
    UnknownClaim,
    UnknownHandoff,
    UntrustedIssuer,
    UntrustedRecipient,
    ValidationError,
    VeriCharmError,
    WithinLockPeriod,
)

# Configuration & logging
from .config import Settings, load_settings
from .logging_config import AuditLogger, audit_log, configure_logging, set_request_id

# Data model
from .models import (
    REDACTED,
    AttestationEvent,
    BurnReason,
    BurnReceipt,
    ClaimState,
    EventType,
    ProductClaim,
    ProductData,
    RaffleEntry,
    Role,
    VerificationVerdict,
)

# Trust, storage and concurrency
from .trust import ANY_CATEGORY, TrustDirectory, TrustEntry
from .ledger import AttestationLedger, InMemoryLedger, SqliteLedger, create_ledger
from .locks import ClaimLockManager
from .external import BoundedExecutor

# Capabilities
from .signing import (
    EphemeralSigner,
    FileWalletSigner,
    KmsWalletSigner,
    Signer,
    create_signer,
    generate_wallet_key,
    verify_signature,
)
from .proofs import (
    HttpProofService,
    ProofBundle,
    ProofCapability,
    SignedCommitmentProver,
    create_prover,
)
from .indexer import (
    ClaimFilter,
    ClaimIndex,
    IndexingServiceClient,
    LedgerClaimIndex,
    create_index,
)

# Core components
from .redactor import (
    DEFAULT_POLICY,
    DisclosureView,
    PrivacyRedactor,
    RedactionPolicy,
    verify_disclosure,
)
from .engine import VerificationEngine
from .detector import (
    CounterfeitDetector,
    DetectionPattern,
    ScanCriteria,
    Severity,
    SuspiciousActivityReport,
)
from .handoff import (
    Handoff,
    HandoffCoordinator,
    HandoffKind,
    HandoffState,
    SettlementStatus,
)

__all__ = [
    # Version
    "__version__",

    # Canonicalization & hashing
    "canonicalize",
    "canonicalize_str",
    "HASH_PREFIX",
    "chain_hash",
    "constant_time_equals",
    "directory_hash",
    "genesis_hash",
    "payload_hash",
    "sha256_hash",
    "supply_chain_hash",
    "verify_hash",

    # Errors
    "VeriCharmError",
    "ValidationError",
    "NotFoundError",
    "UnknownClaim",
    "UnknownHandoff",
    "AuthorizationError",
    "UntrustedIssuer",
    "UntrustedRecipient",
    "NotHolder",
    "InvalidProof",
    "StateConflictError",
    "TerminalState",
    "WithinLockPeriod",
    "DuplicateSerial",
    "StaleState",
    "ClaimBusy",
    "IdempotencyConflict",
    "OperationCancelled",
    "IntegrityError",
    "ExternalServiceError",
    "ExternalServiceTimeout",
    "ServiceUnavailable",

    # Configuration & logging
    "Settings",
    "load_settings",
    "AuditLogger",
    "audit_log",
    "configure_logging",
    "set_request_id",

    # Data model
    "REDACTED",
    "AttestationEvent",
    "BurnReason",
    "BurnReceipt",
    "ClaimState",
    "EventType",
    "ProductClaim",
    "ProductData",
    "RaffleEntry",
    "Role",
    "VerificationVerdict",

    # Trust, storage and concurrency
    "ANY_CATEGORY",
    "TrustDirectory",
    "TrustEntry",
    "AttestationLedger",
    "InMemoryLedger",
    "SqliteLedger",
    "create_ledger",
    "ClaimLockManager",
    "BoundedExecutor",

    # Capabilities
    "Signer",
    "EphemeralSigner",
    "FileWalletSigner",
    "KmsWalletSigner",
    "create_signer",
    "generate_wallet_key",
    "verify_signature",
    "ProofBundle",
    "ProofCapability",
    "SignedCommitmentProver",
    "HttpProofService",
    "create_prover",
    "ClaimFilter",
    "ClaimIndex",
    "LedgerClaimIndex",
    "IndexingServiceClient",
    "create_index",

    # Core components
    "DEFAULT_POLICY",
    "DisclosureView",
    "PrivacyRedactor",
    "RedactionPolicy",
    "verify_disclosure",
    "VerificationEngine",
    "CounterfeitDetector",
    "DetectionPattern",
    "ScanCriteria",
    "Severity",
    "SuspiciousActivityReport",
    "Handoff",
    "HandoffCoordinator",
    "HandoffKind",
    "HandoffState",
    "SettlementStatus",
]
