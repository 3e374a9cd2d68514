"""
Veri-Charm Error Taxonomy

Every failure leaving the core is a VeriCharmError carrying a stable
kind, a specific code and a human message. Mutating operations raise
before anything is appended, so a rejected operation never leaves a
trace in the ledger.

    ValidationError       malformed input
    NotFoundError         unknown claim / handoff
    AuthorizationError    UntrustedIssuer, UntrustedRecipient, NotHolder, InvalidProof
    StateConflictError    TerminalState, WithinLockPeriod, DuplicateSerial, ...
    IntegrityError        supply-chain hash mismatch
    ExternalServiceError  timeout / unavailable collaborator (retryable)
"""

from typing import Any, Dict, Optional


class VeriCharmError(Exception):
    """Base class for all structured core errors."""

    kind = "error"
    code = "ERROR"
    retryable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None):
        self.message = message or self.code
        self.details = details or {}
        super().__init__(f"{self.code}: {self.message}")

    def to_dict(self) -> Dict[str, Any]:
        d = {"kind": self.kind, "code": self.code, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class ValidationError(VeriCharmError):
    kind = "validation"
    code = "INVALID_INPUT"

    def __init__(self, field: str, message: str):
        self.field = field
        super().__init__(f"{field}: {message}", {"field": field})


class NotFoundError(VeriCharmError):
    kind = "not_found"
    code = "NOT_FOUND"


class UnknownClaim(NotFoundError):
    code = "UNKNOWN_CLAIM"

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim {claim_id} does not exist", {"claim_id": claim_id})


class UnknownHandoff(NotFoundError):
    code = "UNKNOWN_HANDOFF"

    def __init__(self, handoff_id: str):
        super().__init__(f"Handoff {handoff_id} does not exist", {"handoff_id": handoff_id})


class AuthorizationError(VeriCharmError):
    kind = "authorization"
    code = "UNAUTHORIZED"


class UntrustedIssuer(AuthorizationError):
    code = "UNTRUSTED_ISSUER"


class UntrustedRecipient(AuthorizationError):
    code = "UNTRUSTED_RECIPIENT"


class NotHolder(AuthorizationError):
    code = "NOT_HOLDER"


class InvalidProof(AuthorizationError):
    code = "INVALID_PROOF"


class StateConflictError(VeriCharmError):
    kind = "state_conflict"
    code = "STATE_CONFLICT"


class TerminalState(StateConflictError):
    code = "TERMINAL_STATE"


class WithinLockPeriod(StateConflictError):
    code = "WITHIN_LOCK_PERIOD"


class DuplicateSerial(StateConflictError):
    code = "DUPLICATE_SERIAL"


class StaleState(StateConflictError):
    code = "STALE_STATE"


class ClaimBusy(StateConflictError):
    code = "CLAIM_BUSY"
    retryable = True


class IdempotencyConflict(StateConflictError):
    code = "IDEMPOTENCY_CONFLICT"


class OperationCancelled(StateConflictError):
    code = "OPERATION_CANCELLED"


class IntegrityError(VeriCharmError):
    kind = "integrity"
    code = "SUPPLY_CHAIN_MISMATCH"


class ExternalServiceError(VeriCharmError):
    kind = "external_service"
    code = "EXTERNAL_SERVICE_ERROR"
    retryable = True


class ExternalServiceTimeout(ExternalServiceError):
    code = "EXTERNAL_SERVICE_TIMEOUT"


class ServiceUnavailable(ExternalServiceError):
    code = "SERVICE_UNAVAILABLE"
