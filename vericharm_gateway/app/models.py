from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class ProductIn(BaseModel):
    name: str
    category: str
    serial_number: str
    batch_id: str
    attributes: Dict[str, Any] = Field(default_factory=dict)


class MintRequest(BaseModel):
    product: ProductIn
    issuer: str
    warranty_period_days: Optional[int] = None


class SignedRequest(BaseModel):
    """
    A mutation made on behalf of a wallet. `signature` is
    {"public_key_b64", "sig_b64"} over the request body as sent, minus
    the signature itself.
    """
    signature: Optional[Dict[str, str]] = None

    def signed_body(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"signature"}, exclude_unset=True)


class TransferRequest(SignedRequest):
    sender: str
    recipient: str
    recipient_role: Optional[str] = None
    proof: Optional[Dict[str, Any]] = None
    payload: Optional[Dict[str, Any]] = None


class VerifyRequest(BaseModel):
    method: str = "serial_lookup"
    proof: Optional[Dict[str, Any]] = None


class BurnRequest(SignedRequest):
    holder: str
    reason: str = "VOLUNTARY"


class HandoffRequest(SignedRequest):
    claim_id: str
    sender: str
    recipient: str
    recipient_role: Optional[str] = None
    kind: str = "retailer_confirmation"


class HandoffConfirmRequest(SignedRequest):
    tx_ref: Optional[str] = None


class HandoffRejectRequest(SignedRequest):
    reason: str = "rejected by recipient"


class SettlementReport(BaseModel):
    handoff_id: str
    status: str
    tx_ref: Optional[str] = None


class ScanRequest(BaseModel):
    patterns: List[str] = Field(default_factory=list)
    start: Optional[int] = None
    end: Optional[int] = None


class TrustEntryRequest(BaseModel):
    address: str
    role: str
    category: str = "*"
    trusted: bool = True
