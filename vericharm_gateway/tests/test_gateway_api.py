from fastapi.testclient import TestClient

from vericharm import EphemeralSigner

from app import main
from app.main import app
from app.security import request_statement

client = TestClient(app)

ADMIN = {"X-Admin-Token": "test-admin"}
MAKER_WALLET = EphemeralSigner()
RETAILER_WALLET = EphemeralSigner()
CONSUMER_WALLET = EphemeralSigner()
THIEF_WALLET = EphemeralSigner()
MAKER = MAKER_WALLET.get_address()
RETAILER = RETAILER_WALLET.get_address()
CONSUMER = CONSUMER_WALLET.get_address()


def product(serial="SN-0001", **attributes):
    return {
        "name": "Trail Runner 2",
        "category": "footwear",
        "serial_number": serial,
        "batch_id": "B-7",
        "attributes": attributes,
    }


def signed(wallet, action, target, body):
    sig = wallet.sign(request_statement(action, target, body))
    return dict(body, signature={"public_key_b64": wallet.public_key_b64(), "sig_b64": sig})


def trust(address, role, category="*", trusted=True):
    r = client.put("/admin/trust", headers=ADMIN,
                   json={"address": address, "role": role, "category": category, "trusted": trusted})
    assert r.status_code == 200, r.text
    return r.json()


def mint(serial="SN-0001", issuer=MAKER, **kwargs):
    return client.post("/claims", json={"product": product(serial), "issuer": issuer}, **kwargs)


def transfer(claim_id, wallet, recipient, **fields):
    body = dict(sender=wallet.get_address(), recipient=recipient, **fields)
    return client.post(f"/claims/{claim_id}/transfer", json=signed(wallet, "transfer", claim_id, body))


def burn(claim_id, wallet, **fields):
    body = dict(holder=wallet.get_address(), **fields)
    return client.post(f"/claims/{claim_id}/burn", json=signed(wallet, "burn", claim_id, body))


def request_handoff(claim_id, wallet, recipient, **fields):
    body = dict(claim_id=claim_id, sender=wallet.get_address(), recipient=recipient, **fields)
    return client.post("/handoffs", json=signed(wallet, "handoff", claim_id, body))


def seeded_claim(serial="SN-0001"):
    trust(MAKER, "MANUFACTURER")
    trust(RETAILER, "RETAILER")
    r = mint(serial)
    assert r.status_code == 200, r.text
    return r.json()["claim_id"]


# Health
def test_health_reports_backends():
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["ledger_backend"] == "memory"
    assert body["trust_directory_hash"].startswith("sha256:")


def test_request_id_is_echoed():
    r = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


# Mint
def test_mint_by_trusted_manufacturer():
    trust(MAKER, "MANUFACTURER", "footwear")
    r = mint()
    assert r.status_code == 200
    claim = r.json()
    assert claim["state"] == "MINTED"
    assert claim["current_holder"] == MAKER
    assert claim["event_count"] == 1
    assert claim["supply_chain_hash"].startswith("sha256:")


def test_mint_by_unknown_issuer_is_forbidden():
    r = mint(issuer="nobody")
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "UNTRUSTED_ISSUER"


def test_mint_wrong_category_is_forbidden():
    trust(MAKER, "MANUFACTURER", "watches")
    assert mint().status_code == 403


def test_duplicate_serial_conflicts():
    seeded_claim()
    r = mint()
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "DUPLICATE_SERIAL"


def test_mint_missing_fields_rejected():
    r = client.post("/claims", json={"issuer": MAKER})
    assert r.status_code == 422


def test_mint_blank_serial_is_validation_error():
    trust(MAKER, "MANUFACTURER")
    body = {"product": product(serial="   "), "issuer": MAKER}
    r = client.post("/claims", json=body)
    assert r.status_code == 400
    assert r.json()["error"]["kind"] == "validation"


def test_mint_idempotency_key_replays_same_claim():
    trust(MAKER, "MANUFACTURER")
    r1 = mint(headers={"Idempotency-Key": "mint-1"})
    r2 = mint(headers={"Idempotency-Key": "mint-1"})
    assert r1.status_code == 200
    assert r2.status_code == 200
    assert r1.json()["claim_id"] == r2.json()["claim_id"]


def test_idempotency_key_reuse_with_other_arguments_conflicts():
    trust(MAKER, "MANUFACTURER")
    assert mint("SN-A", headers={"Idempotency-Key": "k"}).status_code == 200
    r = mint("SN-B", headers={"Idempotency-Key": "k"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "IDEMPOTENCY_CONFLICT"


# Claims
def test_get_unknown_claim_is_404():
    r = client.get("/claims/charm:missing")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "UNKNOWN_CLAIM"


def test_query_claims_by_issuer_and_state():
    trust(MAKER, "MANUFACTURER")
    trust("maker-02", "MANUFACTURER")
    mint("SN-1")
    mint("SN-2")
    mint("SN-3", issuer="maker-02")

    r = client.get("/claims", params={"issuer": MAKER})
    assert r.status_code == 200
    assert r.json()["count"] == 2

    r = client.get("/claims", params={"state": "BURNED"})
    assert r.json()["count"] == 0

    r = client.get("/claims", params={"limit": 1})
    assert r.json()["count"] == 1


def test_query_claims_rejects_bad_state():
    r = client.get("/claims", params={"state": "LOST"})
    assert r.status_code == 400


# Transfer
def test_transfer_to_trusted_retailer_then_consumer():
    claim_id = seeded_claim()
    r = transfer(claim_id, MAKER_WALLET, RETAILER, recipient_role="RETAILER")
    assert r.status_code == 200, r.text
    assert r.json()["event_type"] == "TRANSFER"

    r = transfer(claim_id, RETAILER_WALLET, CONSUMER)
    assert r.status_code == 200

    claim = client.get(f"/claims/{claim_id}").json()
    assert claim["state"] == "TRANSFERRED"
    assert claim["current_holder"] == CONSUMER
    assert claim["event_count"] == 3


def test_transfer_by_non_holder_is_forbidden():
    claim_id = seeded_claim()
    r = transfer(claim_id, CONSUMER_WALLET, "someone")
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "NOT_HOLDER"


def test_transfer_to_untrusted_retailer_is_forbidden():
    claim_id = seeded_claim()
    r = transfer(claim_id, MAKER_WALLET, "shady-shop", recipient_role="RETAILER")
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "UNTRUSTED_RECIPIENT"


# Wallet signatures
def test_unsigned_transfer_and_burn_are_rejected():
    claim_id = seeded_claim()
    r = client.post(f"/claims/{claim_id}/transfer", json={"sender": MAKER, "recipient": "thief-01"})
    assert r.status_code == 403
    assert r.json()["detail"] == "MISSING_SIGNATURE"

    r = client.post(f"/claims/{claim_id}/burn", json={"holder": MAKER})
    assert r.status_code == 403

    claim = client.get(f"/claims/{claim_id}").json()
    assert claim["current_holder"] == MAKER
    assert claim["state"] == "MINTED"
    assert claim["event_count"] == 1


def test_transfer_signed_by_another_wallet_is_rejected():
    claim_id = seeded_claim()
    body = signed(THIEF_WALLET, "transfer", claim_id, {"sender": MAKER, "recipient": "thief-01"})
    r = client.post(f"/claims/{claim_id}/transfer", json=body)
    assert r.status_code == 403
    assert r.json()["detail"] == "SIGNER_MISMATCH"
    assert client.get(f"/claims/{claim_id}").json()["current_holder"] == MAKER


def test_altered_body_fails_signature():
    claim_id = seeded_claim()
    body = signed(MAKER_WALLET, "transfer", claim_id, {"sender": MAKER, "recipient": CONSUMER})
    body["recipient"] = "thief-01"
    r = client.post(f"/claims/{claim_id}/transfer", json=body)
    assert r.status_code == 403
    assert r.json()["detail"] == "INVALID_SIGNATURE"


def test_signature_is_bound_to_claim():
    first = seeded_claim("SN-1")
    second = seeded_claim("SN-2")
    body = signed(MAKER_WALLET, "burn", first, {"holder": MAKER})
    r = client.post(f"/claims/{second}/burn", json=body)
    assert r.status_code == 403
    assert r.json()["detail"] == "INVALID_SIGNATURE"
    assert client.get(f"/claims/{second}").json()["state"] == "MINTED"


def test_garbage_public_key_is_rejected():
    claim_id = seeded_claim()
    body = {"holder": MAKER, "signature": {"public_key_b64": "not base64!", "sig_b64": ""}}
    r = client.post(f"/claims/{claim_id}/burn", json=body)
    assert r.status_code == 403
    assert r.json()["detail"] == "INVALID_PUBLIC_KEY"


# Verify
def test_verify_authentic_claim_records_event():
    claim_id = seeded_claim()
    r = client.post(f"/claims/{claim_id}/verify", json={"method": "nfc_tap"})
    assert r.status_code == 200
    verdict = r.json()
    assert verdict["is_authentic"] is True
    assert verdict["supply_chain_valid"] is True
    assert verdict["within_warranty"] is True
    assert verdict["manufacturer"] == MAKER
    assert verdict["recorded"] is True

    claim = client.get(f"/claims/{claim_id}").json()
    assert claim["verification_count"] == 1
    assert "VERIFIED" in claim["statuses"]


def test_verify_without_body_uses_default_method():
    claim_id = seeded_claim()
    r = client.post(f"/claims/{claim_id}/verify")
    assert r.status_code == 200
    assert r.json()["method"] == "serial_lookup"


# Burn
def test_burn_for_raffle_issues_entry():
    claim_id = seeded_claim()
    r = burn(claim_id, MAKER_WALLET, reason="RAFFLE_ENTRY")
    assert r.status_code == 200, r.text
    receipt = r.json()
    assert receipt["reason"] == "RAFFLE_ENTRY"
    assert receipt["raffle_entry"]["participant"] == MAKER

    entries = client.get("/raffle/entries").json()["entries"]
    assert [e["claim_id"] for e in entries] == [claim_id]


def test_burned_claim_is_terminal():
    claim_id = seeded_claim()
    assert burn(claim_id, MAKER_WALLET).status_code == 200

    r = transfer(claim_id, MAKER_WALLET, CONSUMER)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "TERMINAL_STATE"

    r = burn(claim_id, MAKER_WALLET)
    assert r.status_code == 409


def test_burn_within_lock_period_conflicts(restart):
    restart(burn_lock_days=14)
    claim_id = seeded_claim()
    r = burn(claim_id, MAKER_WALLET)
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "WITHIN_LOCK_PERIOD"


def test_burn_unknown_reason_rejected():
    claim_id = seeded_claim()
    r = burn(claim_id, MAKER_WALLET, reason="BORED")
    assert r.status_code == 400


# History and audit
def test_history_redacts_customer_fields_with_proof():
    claim_id = seeded_claim()
    transfer(claim_id, MAKER_WALLET, CONSUMER, payload={"customerEmail": "ann@example.com", "receipt": "R-1"})
    r = client.get(f"/claims/{claim_id}/history", params={"with_proof": "true"})
    assert r.status_code == 200
    view = r.json()
    assert view["privacy_applied"] is True
    assert view["proof"]["public_signals"]["claim_id"] == claim_id
    assert view["proof"]["public_signals"]["history_hash"] == view["history_hash"]
    assert any("customerEmail" in f for f in view["redacted_fields"])
    assert "ann@example.com" not in r.text
    assert len(view["public_data"]) == 2


def test_history_proof_cannot_move_another_claim():
    first = seeded_claim("SN-1")
    second = seeded_claim("SN-2")
    proof = client.get(f"/claims/{first}/history", params={"with_proof": "true"}).json()["proof"]
    r = transfer(second, MAKER_WALLET, CONSUMER, proof=proof)
    assert r.status_code == 403
    assert r.json()["error"]["code"] == "INVALID_PROOF"
    assert client.get(f"/claims/{second}").json()["current_holder"] == MAKER


def test_history_extra_redaction_terms():
    claim_id = seeded_claim()
    transfer(claim_id, MAKER_WALLET, CONSUMER, payload={"receipt": "R-1"})
    r = client.get(f"/claims/{claim_id}/history", params={"redact": "receipt"})
    assert "R-1" not in r.text
    assert any("receipt" in f for f in r.json()["redacted_fields"])


def test_history_pagination():
    claim_id = seeded_claim()
    client.post(f"/claims/{claim_id}/verify")
    view = client.get(f"/claims/{claim_id}/history", params={"offset": 1, "limit": 1}).json()
    assert len(view["public_data"]) == 1
    assert view["public_data"][0]["event_type"] == "VERIFY"


def test_audit_recomputes_chain():
    claim_id = seeded_claim()
    client.post(f"/claims/{claim_id}/verify")
    claim = client.get(f"/claims/{claim_id}").json()
    r = client.get(f"/claims/{claim_id}/audit")
    assert r.status_code == 200
    assert r.json()["valid"] is True
    assert r.json()["supply_chain_hash"] == claim["supply_chain_hash"]


# Handoffs
def test_retailer_handoff_confirmation():
    claim_id = seeded_claim()
    r = request_handoff(claim_id, MAKER_WALLET, RETAILER, recipient_role="RETAILER")
    assert r.status_code == 200, r.text
    handoff = r.json()
    assert handoff["state"] == "REQUESTED"
    assert [h["handoff_id"] for h in client.get("/handoffs").json()["handoffs"]] == [handoff["handoff_id"]]

    hid = handoff["handoff_id"]
    r = client.post(f"/handoffs/{hid}/confirm", json=signed(RETAILER_WALLET, "confirm", hid, {}))
    assert r.status_code == 200
    assert r.json()["state"] == "COMPLETED"
    assert client.get(f"/claims/{claim_id}").json()["current_holder"] == RETAILER
    assert client.get("/handoffs").json()["handoffs"] == []


def test_handoff_confirm_requires_recipient_signature():
    claim_id = seeded_claim()
    hid = request_handoff(claim_id, MAKER_WALLET, RETAILER).json()["handoff_id"]

    r = client.post(f"/handoffs/{hid}/confirm", json=signed(MAKER_WALLET, "confirm", hid, {}))
    assert r.status_code == 403
    assert r.json()["detail"] == "SIGNER_MISMATCH"
    assert client.get(f"/handoffs/{hid}").json()["state"] == "REQUESTED"


def test_unsigned_handoff_request_is_rejected():
    claim_id = seeded_claim()
    r = client.post("/handoffs", json={"claim_id": claim_id, "sender": MAKER, "recipient": "thief-01"})
    assert r.status_code == 403
    assert client.get("/handoffs").json()["handoffs"] == []


def test_handoff_reject_leaves_holder():
    claim_id = seeded_claim()
    hid = request_handoff(claim_id, MAKER_WALLET, RETAILER).json()["handoff_id"]
    r = client.post(f"/handoffs/{hid}/reject", json=signed(RETAILER_WALLET, "reject", hid, {"reason": "damaged"}))
    assert r.json()["state"] == "REJECTED"
    assert client.get(f"/claims/{claim_id}").json()["current_holder"] == MAKER


def test_cross_chain_settlement_complete():
    claim_id = seeded_claim()
    handoff = request_handoff(claim_id, MAKER_WALLET, CONSUMER, kind="cross_chain").json()
    hid = handoff["handoff_id"]

    r = client.post("/settlements", json={"handoff_id": hid, "status": "PENDING", "tx_ref": "0xabc"})
    assert r.json()["state"] == "REQUESTED"
    assert r.json()["tx_ref"] == "0xabc"

    r = client.post("/settlements", json={"handoff_id": hid, "status": "COMPLETE", "tx_ref": "0xabc"})
    assert r.json()["state"] == "COMPLETED"
    assert client.get(f"/claims/{claim_id}").json()["current_holder"] == CONSUMER


def test_unknown_handoff_is_404():
    r = client.get("/handoffs/handoff:missing")
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "UNKNOWN_HANDOFF"


# Detection
def test_scan_flags_duplicate_serial_across_issuers():
    trust(MAKER, "MANUFACTURER")
    trust("maker-02", "MANUFACTURER")
    mint("SN-DUP")
    mint("SN-DUP", issuer="maker-02")
    r = client.post("/scan", json={"patterns": ["duplicate_serial"]})
    assert r.status_code == 200
    reports = r.json()["reports"]
    assert len(reports) == 2
    assert {r["pattern"] for r in reports} == {"duplicate_serial"}
    assert {r["severity"] for r in reports} == {"high"}


def test_scan_rejects_unknown_pattern():
    r = client.post("/scan", json={"patterns": ["teleportation"]})
    assert r.status_code == 400


# Admin
def test_admin_requires_token():
    assert client.get("/admin/trust").status_code == 403
    assert client.get("/admin/trust", headers={"X-Admin-Token": "wrong"}).status_code == 403
    assert client.get("/admin/trust", headers=ADMIN).status_code == 200


def test_admin_disabled_without_configured_token(restart):
    restart(admin_token="")
    r = client.get("/admin/trust", headers=ADMIN)
    assert r.status_code == 403
    assert r.json()["detail"] == "ADMIN_DISABLED"


def test_admin_trust_changes_are_persisted():
    entry = trust(MAKER, "MANUFACTURER", "footwear")
    assert entry["role"] == "MANUFACTURER"
    path = main.SERVICES.settings.trust_directory_path
    with open(path, "r", encoding="utf-8") as f:
        assert MAKER in f.read()

    snapshot = client.get("/admin/trust", headers=ADMIN).json()
    assert snapshot["directory_hash"] == entry["directory_hash"]


def test_admin_trust_bad_role_rejected():
    r = client.put("/admin/trust", headers=ADMIN, json={"address": MAKER, "role": "WIZARD"})
    assert r.status_code == 400


def test_trust_survives_restart(restart):
    trust(MAKER, "MANUFACTURER")
    restart()
    assert mint().status_code == 200


# Rate limiting
def test_mutation_rate_limit(restart):
    restart(mutation_rpm=2)
    trust(MAKER, "MANUFACTURER")
    headers = {"X-API-Key": "alpha-key"}
    assert mint("SN-1", headers=headers).status_code == 200
    assert mint("SN-2", headers=headers).status_code == 200
    r = mint("SN-3", headers=headers)
    assert r.status_code == 429
    assert r.json()["detail"] == "RATE_LIMIT"
    assert int(r.headers["Retry-After"]) >= 1
    # Other clients are unaffected
    assert mint("SN-4", headers={"X-API-Key": "bravo-key"}).status_code == 200
