import os, json, sys, time

from vericharm import Role, TrustDirectory, generate_wallet_key

os.makedirs("secrets", exist_ok=True)
os.makedirs("trust", exist_ok=True)

wallet = generate_wallet_key("vericharm-gateway-01")

with open("secrets/wallet_signing_key.json", "w", encoding="utf-8") as f:
    json.dump(wallet, f, indent=2)

# Demo participants sign their own transfers, burns and handoffs.
participants = {}
for name in ("maker", "retailer", "consumer"):
    participants[name] = generate_wallet_key(f"demo-{name}")
    with open(f"secrets/demo_{name}_wallet.json", "w", encoding="utf-8") as f:
        json.dump(participants[name], f, indent=2)

# Seed the trust directory with the demo manufacturer and retailer.
# Extra "address=ROLE[:category]" arguments are registered too.
now = int(time.time())
trust = TrustDirectory()
trust.register_address(participants["maker"]["address"], Role.MANUFACTURER, "*", at=now)
trust.register_address(participants["retailer"]["address"], Role.RETAILER, "*", at=now)
for arg in sys.argv[1:]:
    address, _, rest = arg.partition("=")
    role, _, category = rest.partition(":")
    trust.register_address(address, Role(role.upper()), category or "*", at=now)

trust.save("trust/trust_directory.json")

print(f"Generated wallet {wallet['address']} + trust directory {trust.directory_hash()}.")
