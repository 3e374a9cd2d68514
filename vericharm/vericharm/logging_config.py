"""
Structured logging for Veri-Charm.

Every record is a single JSON object. Audit events (lifecycle transitions,
rejections, privacy fallbacks, detector findings) go to the
"vericharm.audit" logger with their fields attached as `extra_fields`.
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import IO, List, Optional

request_id_var: ContextVar[str] = ContextVar('request_id', default='')

SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with request id and audit fields merged in."""

    def __init__(self, service: str = "vericharm"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        created = time.gmtime(record.created)
        log_data = {
            "ts": time.strftime('%Y-%m-%dT%H:%M:%S', created) + f".{int(record.msecs):03d}Z",
            "service": self.service,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        fields = getattr(record, 'extra_fields', None)
        if fields:
            log_data.update(fields)

        if record.exc_info:
            log_data["exc"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str, sort_keys=True)


class AuditLogger:
    """
    Specialized logger for attestation audit events.

    Every lifecycle transition, rejected operation and security-relevant
    finding goes through here so the audit trail has a single shape.
    """

    def __init__(self, name: str = "vericharm.audit"):
        self._logger = logging.getLogger(name)

    def _log(self, level: int, event_type: str, **kwargs) -> None:
        if not self._logger.isEnabledFor(level):
            return
        message = kwargs.pop("message", "")
        record = self._logger.makeRecord(
            self._logger.name, level, "", 0, f"{event_type}: {message}", (), None
        )
        record.extra_fields = {"event_type": event_type, **kwargs}
        self._logger.handle(record)

    def claim_minted(self, claim_id: str, issuer: str, category: str, serial_number: str) -> None:
        self._log(
            logging.INFO,
            "CLAIM_MINTED",
            claim_id=claim_id,
            issuer=issuer,
            category=category,
            serial_number=serial_number,
            message=f"Claim {claim_id} minted"
        )

    def claim_transferred(self, claim_id: str, sender: str, recipient: str, event_id: int) -> None:
        self._log(
            logging.INFO,
            "CLAIM_TRANSFERRED",
            claim_id=claim_id,
            sender=sender,
            recipient=recipient,
            event_id=event_id,
            message=f"Claim {claim_id} transferred"
        )

    def claim_verified(
        self,
        claim_id: str,
        is_authentic: bool,
        supply_chain_valid: bool,
        method: str,
        recorded: bool
    ) -> None:
        """Log a verification attempt (authentic or not)."""
        level = logging.INFO if is_authentic else logging.WARNING
        self._log(
            level,
            "CLAIM_VERIFIED",
            claim_id=claim_id,
            is_authentic=is_authentic,
            supply_chain_valid=supply_chain_valid,
            method=method,
            recorded=recorded,
            message=f"Verification of {claim_id}: authentic={is_authentic}"
        )

    def claim_burned(self, claim_id: str, burner: str, reason: str) -> None:
        self._log(
            logging.INFO,
            "CLAIM_BURNED",
            claim_id=claim_id,
            burner=burner,
            reason=reason,
            message=f"Claim {claim_id} burned ({reason})"
        )

    def operation_rejected(self, operation: str, code: str, claim_id: Optional[str] = None, reason: str = "") -> None:
        self._log(
            logging.WARNING,
            "OPERATION_REJECTED",
            operation=operation,
            code=code,
            claim_id=claim_id,
            reason=reason,
            message=f"{operation} rejected: {code}"
        )

    def privacy_fallback(self, reason: str, event_count: int) -> None:
        """The redactor returned plain data because no proof could be produced."""
        self._log(
            logging.WARNING,
            "PRIVACY_FALLBACK",
            reason=reason,
            event_count=event_count,
            message=f"Privacy shield unavailable, returned plain data: {reason}"
        )

    def suspicious_activity(self, pattern: str, severity: str, claim_ids: List[str]) -> None:
        self._log(
            SEVERITY_LEVELS.get(severity, logging.WARNING),
            "SUSPICIOUS_ACTIVITY",
            pattern=pattern,
            severity=severity,
            claim_ids=claim_ids,
            message=f"Suspicious activity: {pattern}"
        )

    def security_event(self, event: str, severity: str = "medium", **details) -> None:
        """Tampering, rejected admin access and other security-relevant findings."""
        self._log(
            SEVERITY_LEVELS.get(severity, logging.WARNING),
            "SECURITY_EVENT",
            security_event=event,
            severity=severity,
            **details,
            message=f"Security event: {event}"
        )

    def rate_limit_exceeded(self, client_id: str, endpoint: str) -> None:
        self._log(
            logging.WARNING,
            "RATE_LIMIT_EXCEEDED",
            client_id=client_id,
            endpoint=endpoint,
            message=f"Rate limit exceeded for {client_id} on {endpoint}"
        )


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    log_file: Optional[str] = None,
    stream: Optional[IO[str]] = None
) -> None:
    """
    Install handlers on the root logger, replacing any existing ones.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: StructuredFormatter when True, plain text otherwise
        log_file: Also append records to this file
        stream: Console stream (stdout by default)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter('%(asctime)s %(levelname)-7s %(name)s: %(message)s')

    handlers: List[logging.Handler] = [logging.StreamHandler(stream or sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)


def set_request_id(request_id: Optional[str] = None) -> str:
    """Bind a request id (generated when None) to the current context and return it."""
    request_id = request_id or uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def get_request_id() -> str:
    return request_id_var.get()


audit_log = AuditLogger()
