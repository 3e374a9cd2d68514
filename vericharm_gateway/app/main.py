from typing import Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from vericharm import (
    ClaimFilter,
    RedactionPolicy,
    Role,
    ScanCriteria,
    ValidationError,
    VeriCharmError,
    __version__,
    audit_log,
    configure_logging,
    set_request_id,
)
from vericharm.config import validate_config

from .models import (
    BurnRequest,
    HandoffConfirmRequest,
    HandoffRejectRequest,
    HandoffRequest,
    MintRequest,
    ScanRequest,
    SettlementReport,
    SignedRequest,
    TransferRequest,
    TrustEntryRequest,
    VerifyRequest,
)
from .rate_limit import RateLimiter
from .security import describe_token, extract_client_id, require_admin, require_wallet_signature
from .services import Services, build_services

app = FastAPI(title="Veri-Charm Gateway", version=__version__)

STATUS_BY_KIND = {
    "validation": 400,
    "authorization": 403,
    "not_found": 404,
    "state_conflict": 409,
    "integrity": 500,
    "external_service": 503,
}

SERVICES: Optional[Services] = None
mutation_limiter: Optional[RateLimiter] = None
query_limiter: Optional[RateLimiter] = None


@app.on_event("startup")
def _startup(settings=None):
    global SERVICES, mutation_limiter, query_limiter
    if SERVICES is not None:
        SERVICES.close()
    SERVICES = build_services(settings)
    if SERVICES.settings.log_level:
        configure_logging(SERVICES.settings.log_level, json_format=SERVICES.settings.log_json)
    mutation_limiter = RateLimiter(SERVICES.settings.mutation_rpm)
    query_limiter = RateLimiter(SERVICES.settings.query_rpm)


@app.on_event("shutdown")
def _shutdown():
    if SERVICES is not None:
        SERVICES.close()


def services() -> Services:
    if SERVICES is None:
        raise HTTPException(503, "NOT_READY")
    return SERVICES


@app.middleware("http")
async def request_context(request: Request, call_next):
    request_id = set_request_id(request.headers.get("x-request-id"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(VeriCharmError)
async def vericharm_error_handler(request: Request, exc: VeriCharmError):
    status = STATUS_BY_KIND.get(exc.kind, 500)
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status, content={"error": exc.to_dict()}, headers=headers)


def rate_limit(limiter: RateLimiter, request: Request, endpoint: str) -> None:
    client_id = extract_client_id(request.headers, request.client.host if request.client else None)
    result = limiter.check(f"{endpoint}:{client_id}")
    if not result.allowed:
        audit_log.rate_limit_exceeded(client_id, endpoint)
        raise HTTPException(429, "RATE_LIMIT", headers={"Retry-After": str(int(result.retry_after or 0) + 1)})


def require_signed(req: SignedRequest, request: Request, action: str, target: str, wallet: str) -> None:
    try:
        require_wallet_signature(action, target, req.signed_body(), req.signature, wallet)
    except HTTPException as e:
        audit_log.security_event("wallet_signature_rejected", "medium", path=request.url.path,
                                 wallet=wallet, reason=e.detail)
        raise


# ----------------------------------------------------------------------
# health
# ----------------------------------------------------------------------

@app.get("/health")
def health():
    svc = services()
    return {
        "status": "ok",
        "version": __version__,
        "env": svc.settings.env,
        "ledger_backend": svc.settings.ledger_backend,
        "signer": svc.signer.get_address(),
        "trust_directory_hash": svc.trust.directory_hash(),
        "config": validate_config(svc.settings),
    }


# ----------------------------------------------------------------------
# claims
# ----------------------------------------------------------------------

@app.post("/claims")
def mint_claim(req: MintRequest, request: Request, idempotency_key: Optional[str] = Header(None)):
    rate_limit(mutation_limiter, request, "mint")
    claim = services().engine.mint(
        req.product.model_dump(),
        req.issuer,
        warranty_period_days=req.warranty_period_days,
        idempotency_key=idempotency_key,
    )
    return claim.to_dict()


@app.get("/claims")
def query_claims(
    request: Request,
    issuer: Optional[str] = None,
    category: Optional[str] = None,
    state: Optional[str] = None,
    holder: Optional[str] = None,
    start: Optional[int] = None,
    end: Optional[int] = None,
    limit: int = 50,
    offset: int = 0
):
    rate_limit(query_limiter, request, "query")
    claim_filter = ClaimFilter(issuer=issuer, category=category, state=state, holder=holder,
                               start=start, end=end, limit=limit, offset=offset)
    claims = services().engine.query_claims(claim_filter)
    return {"claims": [c.to_dict() for c in claims], "count": len(claims)}


@app.get("/claims/{claim_id}")
def get_claim(claim_id: str, request: Request):
    rate_limit(query_limiter, request, "query")
    return services().engine.get_claim(claim_id).to_dict()


@app.post("/claims/{claim_id}/transfer")
def transfer_claim(claim_id: str, req: TransferRequest, request: Request,
                   idempotency_key: Optional[str] = Header(None)):
    rate_limit(mutation_limiter, request, "transfer")
    require_signed(req, request, "transfer", claim_id, req.sender)
    event = services().engine.transfer(
        claim_id,
        req.sender,
        req.recipient,
        proof=req.proof,
        recipient_role=req.recipient_role,
        idempotency_key=idempotency_key,
        payload=req.payload,
    )
    return event.to_dict()


@app.post("/claims/{claim_id}/verify")
def verify_claim(claim_id: str, request: Request, req: Optional[VerifyRequest] = None):
    rate_limit(query_limiter, request, "verify")
    req = req or VerifyRequest()
    return services().engine.verify(claim_id, method=req.method, proof=req.proof).to_dict()


@app.post("/claims/{claim_id}/burn")
def burn_claim(claim_id: str, req: BurnRequest, request: Request,
               idempotency_key: Optional[str] = Header(None)):
    rate_limit(mutation_limiter, request, "burn")
    require_signed(req, request, "burn", claim_id, req.holder)
    receipt = services().engine.burn(claim_id, req.holder, req.reason, idempotency_key=idempotency_key)
    return receipt.to_dict()


@app.get("/claims/{claim_id}/history")
def claim_history(
    claim_id: str,
    request: Request,
    with_proof: bool = False,
    redact: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0
):
    """Disclosure-safe history. `redact` adds comma-separated sensitive terms."""
    rate_limit(query_limiter, request, "query")
    policy: Optional[RedactionPolicy] = None
    if redact:
        policy = RedactionPolicy().with_terms(t.strip() for t in redact.split(",") if t.strip())
    view = services().engine.history(claim_id, policy=policy, with_proof=with_proof, limit=limit, offset=offset)
    return view.to_dict()


@app.get("/claims/{claim_id}/audit")
def audit_claim(claim_id: str, request: Request):
    rate_limit(query_limiter, request, "query")
    recomputed = services().engine.audit_chain(claim_id)
    return {"claim_id": claim_id, "supply_chain_hash": recomputed, "valid": True}


@app.get("/raffle/entries")
def raffle_entries(request: Request):
    rate_limit(query_limiter, request, "query")
    return {"entries": [e.to_dict() for e in services().engine.raffle_entries()]}


# ----------------------------------------------------------------------
# handoffs and settlement
# ----------------------------------------------------------------------

@app.post("/handoffs")
def request_handoff(req: HandoffRequest, request: Request):
    rate_limit(mutation_limiter, request, "handoff")
    require_signed(req, request, "handoff", req.claim_id, req.sender)
    handoff = services().handoffs.request(req.claim_id, req.sender, req.recipient,
                                          role=req.recipient_role, kind=req.kind)
    return handoff.to_dict()


@app.get("/handoffs")
def pending_handoffs(request: Request):
    rate_limit(query_limiter, request, "query")
    return {"handoffs": [h.to_dict() for h in services().handoffs.pending()]}


@app.get("/handoffs/{handoff_id}")
def get_handoff(handoff_id: str, request: Request):
    rate_limit(query_limiter, request, "query")
    return services().handoffs.get(handoff_id).to_dict()


@app.post("/handoffs/{handoff_id}/confirm")
def confirm_handoff(handoff_id: str, req: HandoffConfirmRequest, request: Request):
    rate_limit(mutation_limiter, request, "handoff")
    handoffs = services().handoffs
    require_signed(req, request, "confirm", handoff_id, handoffs.get(handoff_id).recipient)
    return handoffs.confirm(handoff_id, tx_ref=req.tx_ref).to_dict()


@app.post("/handoffs/{handoff_id}/reject")
def reject_handoff(handoff_id: str, req: HandoffRejectRequest, request: Request):
    rate_limit(mutation_limiter, request, "handoff")
    handoffs = services().handoffs
    require_signed(req, request, "reject", handoff_id, handoffs.get(handoff_id).recipient)
    return handoffs.reject(handoff_id, req.reason).to_dict()


@app.post("/settlements")
def report_settlement(req: SettlementReport, request: Request):
    rate_limit(mutation_limiter, request, "settlement")
    return services().handoffs.report_settlement(req.handoff_id, req.status, req.tx_ref).to_dict()


# ----------------------------------------------------------------------
# detection
# ----------------------------------------------------------------------

@app.post("/scan")
def scan(request: Request, req: Optional[ScanRequest] = None):
    rate_limit(query_limiter, request, "scan")
    req = req or ScanRequest()
    criteria = ScanCriteria.build(req.patterns, req.start, req.end)
    reports = services().detector.scan(criteria)
    return {"reports": [r.to_dict() for r in reports], "count": len(reports)}


# ----------------------------------------------------------------------
# admin
# ----------------------------------------------------------------------

def _admin(request: Request, token: Optional[str]) -> Services:
    svc = services()
    try:
        require_admin(token, svc.settings.admin_token)
    except HTTPException:
        audit_log.security_event("admin_rejected", "medium", path=request.url.path,
                                 token=describe_token(token))
        raise
    return svc


def _role(value: Optional[str]) -> Optional[Role]:
    if value is None:
        return None
    try:
        return Role(value)
    except ValueError:
        raise ValidationError("role", f"unknown role {value!r}")


@app.get("/admin/trust")
def admin_trust_snapshot(request: Request, x_admin_token: Optional[str] = Header(None)):
    return _admin(request, x_admin_token).trust.to_dict()


@app.put("/admin/trust")
def admin_register_trust(req: TrustEntryRequest, request: Request,
                         x_admin_token: Optional[str] = Header(None)):
    svc = _admin(request, x_admin_token)
    entry = svc.trust.register_address(req.address, _role(req.role), req.category, trusted=req.trusted)
    svc.save_trust()
    data = entry.to_dict()
    data["address"] = entry.address
    data["directory_hash"] = svc.trust.directory_hash()
    return data


@app.delete("/admin/trust/{address}")
def admin_revoke_trust(address: str, request: Request, role: Optional[str] = None,
                       category: Optional[str] = None, x_admin_token: Optional[str] = Header(None)):
    svc = _admin(request, x_admin_token)
    changed = svc.trust.revoke(address, role=_role(role), category=category)
    if changed:
        svc.save_trust()
    return {"address": address, "revoked": changed, "directory_hash": svc.trust.directory_hash()}
