import json, requests, sys, time

from vericharm import FileWalletSigner, canonicalize

# Expects a running gateway seeded by tools/gen_keys.py
BASE = sys.argv[1] if len(sys.argv) > 1 else "http://127.0.0.1:8000"
serial = f"SN-DEMO-{int(time.time())}"

maker = FileWalletSigner("secrets/demo_maker_wallet.json")
retailer = FileWalletSigner("secrets/demo_retailer_wallet.json")
consumer = FileWalletSigner("secrets/demo_consumer_wallet.json")


def signed(wallet, action, target, body):
    statement = canonicalize({"action": action, "target": target, "body": body})
    return dict(body, signature={"public_key_b64": wallet.public_key_b64(), "sig_b64": wallet.sign(statement)})


product = {
    "name": "Trail Runner 2",
    "category": "footwear",
    "serial_number": serial,
    "batch_id": "BATCH-DEMO",
    "attributes": {"size": "42", "customerEmail": "buyer@example.com"},
}

resp = requests.post(BASE + "/claims", json={"product": product, "issuer": maker.get_address()},
                     headers={"Idempotency-Key": "demo-mint-" + serial})
claim = resp.json()
print("Mint:", resp.status_code, json.dumps(claim, indent=2))
claim_id = claim["claim_id"]

handoff = requests.post(BASE + "/handoffs", json=signed(maker, "handoff", claim_id, {
    "claim_id": claim_id, "sender": maker.get_address(),
    "recipient": retailer.get_address(), "recipient_role": "RETAILER",
})).json()
hid = handoff["handoff_id"]
print("Handoff requested:", hid)

confirmed = requests.post(BASE + f"/handoffs/{hid}/confirm", json=signed(retailer, "confirm", hid, {})).json()
print("Handoff:", confirmed["state"])

sale = requests.post(BASE + f"/claims/{claim_id}/transfer", json=signed(retailer, "transfer", claim_id, {
    "sender": retailer.get_address(), "recipient": consumer.get_address(),
    "payload": {"customerEmail": "buyer@example.com", "receipt": "R-1001"},
}))
print("Sale:", sale.status_code)

verdict = requests.post(BASE + f"/claims/{claim_id}/verify", json={"method": "nfc_tap"}).json()
print("Verdict:", json.dumps(verdict, indent=2))

history = requests.get(BASE + f"/claims/{claim_id}/history", params={"with_proof": "true"}).json()
print("Redacted fields:", history["redacted_fields"], "privacy_applied:", history["privacy_applied"])

burn = requests.post(BASE + f"/claims/{claim_id}/burn", json=signed(consumer, "burn", claim_id, {
    "holder": consumer.get_address(), "reason": "RAFFLE_ENTRY",
}))
print("Burn:", burn.status_code, burn.text)

print("Scan:", requests.post(BASE + "/scan", json={}).json()["count"], "reports")
