import argparse
import sys
import json
from agritrace.canonical_json import canonicalize
from agritrace.fingerprint import VerificationOutcome, fingerprint, verify


def main(argv=None):
    parser = argparse.ArgumentParser(description="Fingerprint a batch record and optionally verify it.")
    parser.add_argument("--record", required=True, help="Path to the batch record JSON file.")
    parser.add_argument("--expected", help="Anchored fingerprint (0x + 64 hex) to verify against.")
    parser.add_argument("--canonical", action="store_true", help="Print the canonical form as well.")

    args = parser.parse_args(argv)

    # Load record
    try:
        with open(args.record, 'r', encoding='utf-8') as f:
            record = json.load(f)
    except (OSError, ValueError) as e:
        print(f"Error loading record: {e}")
        return 1

    if not isinstance(record, dict):
        print("Error: record must be a JSON object.")
        return 1

    print(f"Batch: {record.get('batch_id', 'unknown')}")
    if args.canonical:
        print(f"Canonical: {canonicalize(record).decode('utf-8')}")
    print(f"Fingerprint: {fingerprint(record)}")

    if not args.expected:
        return 0

    result = verify(record, args.expected)

    if result.outcome is VerificationOutcome.VERIFIED:
        print("\n✅ VERIFIED")
        print("The record matches the anchored fingerprint.")
        return 0

    if result.outcome is VerificationOutcome.TAMPERED:
        print("\n❌ TAMPERED")
        print(f"Expected {result.anchored_hash}, computed {result.computed_hash}.")
    elif result.outcome is VerificationOutcome.NOT_REGISTERED:
        print("\n⚠️  NOT REGISTERED")
        print("The expected fingerprint is the all-zero sentinel.")
    else:
        print("\n❌ VERIFICATION FAILED")
        print(f"Reason: {result.reason}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
