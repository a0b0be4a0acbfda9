from __future__ import annotations

import argparse
import json

from fieldvault.services.crypto.keys import generate_key_material


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Generate a new AES-256 field encryption key")
    parser.add_argument("--version", type=int, default=1, help="Key version to assign (positive integer)")
    parser.add_argument(
        "--not-current",
        action="store_true",
        help="Emit the entry without the current flag (stage a key before rotating)",
    )
    return parser


def main() -> int:
    args = _build_parser().parse_args()
    if args.version < 1:
        print("--version must be a positive integer")
        return 1
    entry = {"version": args.version, "key": generate_key_material(), "current": not args.not_current}
    print("Add this entry to FIELDVAULT_KEYS (keep earlier versions so old payloads stay readable):")
    print(f"  {json.dumps(entry)}")
    print("Store the key in your secret manager; it cannot be recovered if lost.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
