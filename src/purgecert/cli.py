"""Offline verifier for ledger exports.

Usage:
    purgecert-verify export.json
    curl .../api/ledger/certificates/export | purgecert-verify -
    purgecert-verify export.json --public-keys keys.json --json

Exit codes:
    0  chain verified
    1  verification failed
    2  unreadable input or unsupported export format
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import TYPE_CHECKING, Any

from purgecert.verification import verify_export

if TYPE_CHECKING:
    from collections.abc import Sequence

EXIT_VALID = 0
EXIT_INVALID = 1
EXIT_BAD_INPUT = 2


def _load_json(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path, encoding="utf-8") as f:
        return json.load(f)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="purgecert-verify",
        description="Verify a purgecert ledger export without database access",
    )
    parser.add_argument("export", help="Path to the export JSON, or - for stdin")
    parser.add_argument(
        "--public-keys",
        metavar="PATH",
        help=(
            "JSON object of key_id -> PEM public key obtained out of band; "
            "replaces the keys embedded in the export"
        ),
    )
    parser.add_argument(
        "--json",
        action="store_true",
        dest="as_json",
        help="Print the verification result as JSON",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        export = _load_json(args.export)
        if args.public_keys:
            keys = _load_json(args.public_keys)
            if not isinstance(keys, dict):
                print("ERROR: public keys file must contain a JSON object", file=sys.stderr)
                return EXIT_BAD_INPUT
            export = {**export, "public_keys": keys}
    except (OSError, ValueError) as e:
        print(f"ERROR: cannot read input: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT

    if not isinstance(export, dict):
        print("ERROR: export must be a JSON object", file=sys.stderr)
        return EXIT_BAD_INPUT

    try:
        result = verify_export(export)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT
    except (KeyError, TypeError) as e:
        print(f"ERROR: malformed export entry: {e}", file=sys.stderr)
        return EXIT_BAD_INPUT

    if args.as_json:
        print(json.dumps({"stream": export.get("stream"), **result.to_dict()}, indent=2))
    else:
        print(f"Stream: {export.get('stream')}")
        print(f"Checked entries: {result.checked_entries}")
        if result.checked_entries:
            print(f"Range: seq_no {result.first_seq_no}..{result.last_seq_no}")
        if result.errors:
            print("Violations:")
            for error in result.errors:
                print(f"  - {error}")
        print()
        print("PASSED: chain verified" if result.valid else "FAILED: chain verification failed")

    return EXIT_VALID if result.valid else EXIT_INVALID


if __name__ == "__main__":
    sys.exit(main())
