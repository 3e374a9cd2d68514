#!/usr/bin/env python3
"""
Veri-Charm Command Line Interface

Usage:
    vericharm keygen [--output <file>] [--key-id <kid>]
    vericharm verify-ledger --db <sqlite file> [--trust <file>]
    vericharm redact --file <events.json> [--extra-field <name> ...]
    vericharm scan --db <sqlite file> --trust <file> [--pattern <p> ...]
    vericharm hash --file <file>
"""

import argparse
import json
import sys
from typing import List, Optional


def load_json(path: str):
    """Load JSON from file."""
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def save_json(data, path: str):
    """Save JSON to file."""
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2)


def cmd_keygen(args):
    """Generate an Ed25519 wallet key."""
    from vericharm.signing import generate_wallet_key

    key = generate_wallet_key(args.key_id)
    if args.output:
        save_json(key, args.output)
        print(f"Wallet key saved to: {args.output}")
    else:
        print(json.dumps(key, indent=2))

    print(f"\nAddress: {key['address']}", file=sys.stderr)
    return 0


def cmd_verify_ledger(args):
    """Recompute every claim's supply-chain hash in a SQLite ledger."""
    from vericharm import IntegrityError, SqliteLedger, TrustDirectory, VerificationEngine

    ledger = SqliteLedger(args.db)
    trust = TrustDirectory.load(args.trust) if args.trust else TrustDirectory()
    engine = VerificationEngine(ledger, trust)

    failures = 0
    claims = ledger.claims()
    for claim in claims:
        try:
            engine.audit_chain(claim.claim_id)
            print(f"✓ {claim.claim_id} {claim.state.value} events={claim.event_count}")
        except IntegrityError as e:
            failures += 1
            print(f"✗ {claim.claim_id}", file=sys.stderr)
            for issue in e.details.get("issues", []):
                print(f"  - {issue}", file=sys.stderr)
    ledger.close()

    print(f"\n{len(claims) - failures}/{len(claims)} claims verified", file=sys.stderr)
    return 1 if failures else 0


def cmd_redact(args):
    """Print a disclosure-safe view of a JSON document."""
    from vericharm import DEFAULT_POLICY, PrivacyRedactor

    policy = DEFAULT_POLICY.with_terms(args.extra_field or [])
    data = load_json(args.file)
    view = PrivacyRedactor(policy=policy).redact(data if isinstance(data, list) else [data])
    print(json.dumps(view.to_dict(), indent=2))
    print(f"\nRedacted {len(view.redacted_fields)} fields", file=sys.stderr)
    return 0


def cmd_scan(args):
    """Run the counterfeit detector over a SQLite ledger."""
    from vericharm import CounterfeitDetector, ScanCriteria, SqliteLedger, TrustDirectory

    ledger = SqliteLedger(args.db)
    detector = CounterfeitDetector(ledger, TrustDirectory.load(args.trust))
    criteria = ScanCriteria.build(args.pattern, args.start, args.end)

    count = 0
    for report in detector.iter_scan(criteria):
        count += 1
        print(json.dumps(report.to_dict()))
    ledger.close()

    print(f"\n{count} suspicious findings", file=sys.stderr)
    return 1 if count else 0


def cmd_hash(args):
    """Compute the canonical SHA-256 hash of a JSON file."""
    from vericharm import canonicalize, sha256_hash

    print(sha256_hash(canonicalize(load_json(args.file))))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vericharm",
        description="Veri-Charm attestation CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vericharm keygen -o secrets/wallet_signing_key.json
  vericharm verify-ledger --db data/vericharm.db
  vericharm redact -f history.json
  vericharm scan --db data/vericharm.db --trust trust/trust_directory.json
  vericharm hash -f event.json
        """
    )

    parser.add_argument("--log-level", help="Enable logging to stderr at this level")
    parser.add_argument("--log-json", action="store_true", help="Structured JSON log records")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate wallet signing key")
    keygen_parser.add_argument("-o", "--output", help="Output file for the key JSON")
    keygen_parser.add_argument("-k", "--key-id", help="Key identifier")

    verify_parser = subparsers.add_parser("verify-ledger", help="Audit every claim's hash chain")
    verify_parser.add_argument("-d", "--db", required=True, help="SQLite ledger file")
    verify_parser.add_argument("-t", "--trust", help="Trust directory JSON file")

    redact_parser = subparsers.add_parser("redact", help="Redact sensitive fields from JSON")
    redact_parser.add_argument("-f", "--file", required=True, help="JSON file (object or list)")
    redact_parser.add_argument("-x", "--extra-field", action="append", help="Additional sensitive term")

    scan_parser = subparsers.add_parser("scan", help="Scan ledger for counterfeit patterns")
    scan_parser.add_argument("-d", "--db", required=True, help="SQLite ledger file")
    scan_parser.add_argument("-t", "--trust", required=True, help="Trust directory JSON file")
    scan_parser.add_argument("-p", "--pattern", action="append", help="Pattern to run (default: all)")
    scan_parser.add_argument("--start", type=int, help="Window start (epoch seconds)")
    scan_parser.add_argument("--end", type=int, help="Window end (epoch seconds)")

    hash_parser = subparsers.add_parser("hash", help="Compute canonical hash")
    hash_parser.add_argument("-f", "--file", required=True, help="JSON file to hash")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.log_level:
        from vericharm.logging_config import configure_logging
        configure_logging(args.log_level, json_format=args.log_json, stream=sys.stderr)

    commands = {
        "keygen": cmd_keygen,
        "verify-ledger": cmd_verify_ledger,
        "redact": cmd_redact,
        "scan": cmd_scan,
        "hash": cmd_hash,
    }
    command = commands.get(args.command)
    if command is None:
        parser.print_help()
        return 2
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
