"""Offline verification of hash-chained, signed ledger entries.

This module has no database dependency: an external auditor holding a
ledger export and the published public keys can verify the chain with it
alone. The service-side ledger uses the same primitives when appending, so
both sides agree on every hash byte for byte.

Chain construction:
    content_hash = SHA-256(canonical JSON content)
    entry_hash   = SHA-256(content_hash || prev_hash)
    signature    = ECDSA-P384-SHA384(entry_hash)

The first entry of a stream links to GENESIS_HASH.
"""

from __future__ import annotations

import base64
import binascii
import enum
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import load_pem_public_key

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

EXPORT_FORMAT = "purgecert-ledger-export/1"

# Slack between a rotation and appends that read the previous active key
KEY_WINDOW_TOLERANCE = timedelta(seconds=60)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, enum.Enum):
        return value.value
    msg = f"Object of type {type(value).__name__} is not JSON serializable"
    raise TypeError(msg)


def canonicalize(value: Any) -> str:
    """Deterministic JSON serialization (sorted keys, no whitespace).

    datetimes, UUIDs and enums are serialized as ISO strings, strings and
    values respectively.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_json_default,
    )


def compute_content_hash(content: str) -> str:
    """SHA-256 hex digest of canonical content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def compute_entry_hash(content_hash: str, prev_hash: str) -> str:
    """SHA-256 hex digest linking an entry to its predecessor."""
    return hashlib.sha256((content_hash + prev_hash).encode("ascii")).hexdigest()


def verify_signature(public_key_pem: str, entry_hash: str, signature_b64: str) -> bool:
    """Check an ECDSA P-384 signature over an entry hash.

    Returns:
        True if the signature is valid, False otherwise (including
        malformed keys or signatures).
    """
    try:
        public_key = load_pem_public_key(public_key_pem.encode("utf-8"))
        signature = base64.b64decode(signature_b64, validate=True)
    except (ValueError, binascii.Error) as e:
        logger.debug("Unusable key or signature: %s", e)
        return False

    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        return False

    try:
        public_key.verify(signature, entry_hash.encode("ascii"), ec.ECDSA(hashes.SHA384()))
    except InvalidSignature:
        return False
    return True


def _parse_instant(value: Any) -> datetime | None:
    if value is None:
        return None
    parsed = value if isinstance(value, datetime) else datetime.fromisoformat(str(value))
    return parsed.replace(tzinfo=UTC) if parsed.tzinfo is None else parsed


def check_key_window(
    key_id: str,
    recorded_at: Any,
    window: Mapping[str, Any],
    *,
    tolerance: timedelta = KEY_WINDOW_TOLERANCE,
) -> str | None:
    """Check that an entry was recorded while its signing key was active.

    Args:
        key_id: Key that signed the entry.
        recorded_at: Entry timestamp (datetime or ISO string).
        window: Mapping with created_at and retired_at (None while active).
        tolerance: Allowed overlap at both ends of the window.

    Returns:
        A description of the violation, or None if the entry is in window.
    """
    try:
        recorded = _parse_instant(recorded_at)
        created = _parse_instant(window.get("created_at"))
        retired = _parse_instant(window.get("retired_at"))
    except (TypeError, ValueError):
        return f"Unreadable timestamps for key {key_id}"

    if recorded is None:
        return "Entry has no recorded_at"
    if created is not None and recorded < created - tolerance:
        return f"Entry recorded at {recorded.isoformat()} before key {key_id} was created"
    if retired is not None and recorded > retired + tolerance:
        return f"Entry recorded at {recorded.isoformat()} after key {key_id} was retired"
    return None


@dataclass(frozen=True, slots=True)
class ChainVerificationResult:
    """Result of verifying a ledger stream (or a range of it).

    Attributes:
        valid: True if every hash, link and signature checked out.
        checked_entries: Number of entries verified.
        first_seq_no: First sequence number in the verified range.
        last_seq_no: Last sequence number in the verified range.
        first_invalid_seq_no: Sequence number of the first failing entry.
        errors: Human-readable description of each violation.
    """

    valid: bool
    checked_entries: int
    first_seq_no: int | None
    last_seq_no: int | None
    first_invalid_seq_no: int | None
    errors: list[str]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "valid": self.valid,
            "checked_entries": self.checked_entries,
            "first_seq_no": self.first_seq_no,
            "last_seq_no": self.last_seq_no,
            "first_invalid_seq_no": self.first_invalid_seq_no,
            "errors": list(self.errors),
        }


@dataclass
class ChainVerifier:
    """Incremental verifier fed one entry at a time, in sequence order.

    Entries are mappings with the keys stream, seq_no, content,
    content_hash, prev_hash, entry_hash, signature and key_id.

    Args:
        public_keys: key_id -> PEM public key.
        expected_prev_hash: Hash the first fed entry must link to. GENESIS_HASH
            for a full stream; None to accept whatever the first entry claims
            (range verification without a trusted checkpoint).
        stream: Expected stream name, checked against each entry.
        key_validity: key_id -> {created_at, retired_at}. When given, an
            entry must be recorded inside its key's active window and keys
            without a window are rejected.
    """

    public_keys: Mapping[str, str]
    expected_prev_hash: str | None = GENESIS_HASH
    stream: str | None = None
    key_validity: Mapping[str, Mapping[str, Any]] | None = None
    errors: list[str] = field(default_factory=list)
    checked: int = 0
    first_seq_no: int | None = None
    last_seq_no: int | None = None
    first_invalid_seq_no: int | None = None
    _expected_seq: int | None = None

    def feed(self, entry: Mapping[str, Any]) -> None:
        """Verify the next entry."""
        seq_no = int(entry["seq_no"])
        failures: list[str] = []

        if self.first_seq_no is None:
            self.first_seq_no = seq_no
            if self.expected_prev_hash == GENESIS_HASH and seq_no != 1:
                failures.append(f"Stream must start at seq_no=1, found {seq_no}")
        elif seq_no != self._expected_seq:
            failures.append(f"Sequence gap detected: expected {self._expected_seq}, found {seq_no}")

        if self.stream is not None and entry.get("stream") != self.stream:
            failures.append(f"Entry belongs to stream {entry.get('stream')!r}")

        content = entry["content"]
        try:
            parsed = json.loads(content)
        except (TypeError, ValueError):
            parsed = None
            failures.append("Content is not valid JSON")
        if isinstance(parsed, dict):
            if parsed.get("seq_no") != seq_no:
                failures.append(f"Content seq_no {parsed.get('seq_no')} does not match")
            if entry.get("stream") is not None and parsed.get("stream") != entry.get("stream"):
                failures.append("Content stream does not match entry stream")

        computed_content_hash = compute_content_hash(content)
        if computed_content_hash != entry["content_hash"]:
            failures.append(
                f"Content hash mismatch: stored={entry['content_hash']}, "
                f"computed={computed_content_hash}"
            )

        computed_entry_hash = compute_entry_hash(computed_content_hash, entry["prev_hash"])
        if computed_entry_hash != entry["entry_hash"]:
            failures.append(
                f"Entry hash mismatch: stored={entry['entry_hash']}, computed={computed_entry_hash}"
            )

        if self.expected_prev_hash is not None and entry["prev_hash"] != self.expected_prev_hash:
            failures.append(
                f"Chain break: prev_hash={entry['prev_hash']}, expected {self.expected_prev_hash}"
            )

        public_key_pem = self.public_keys.get(entry["key_id"])
        if public_key_pem is None:
            failures.append(f"Unknown signing key: {entry['key_id']}")
        elif not verify_signature(public_key_pem, entry["entry_hash"], entry["signature"]):
            failures.append(f"Invalid signature (key_id={entry['key_id']})")

        if self.key_validity is not None:
            window = self.key_validity.get(entry["key_id"])
            if window is None:
                failures.append(f"No validity window for key {entry['key_id']}")
            else:
                violation = check_key_window(entry["key_id"], entry.get("recorded_at"), window)
                if violation is not None:
                    failures.append(violation)

        if failures:
            if self.first_invalid_seq_no is None:
                self.first_invalid_seq_no = seq_no
            self.errors.extend(f"seq_no={seq_no}: {failure}" for failure in failures)

        self.checked += 1
        self.last_seq_no = seq_no
        self._expected_seq = seq_no + 1
        # Continue from the stored hash so one bad entry does not cascade
        self.expected_prev_hash = entry["entry_hash"]

    def check_head(self, head_seq_no: int, head_tail_hash: str) -> None:
        """Compare the last verified entry with the stream's tail pointer.

        Detects truncation: entries removed from the end of the stream leave
        a head that points past the last stored entry.
        """
        last_seq = self.last_seq_no or 0
        last_hash = self.expected_prev_hash if self.checked else GENESIS_HASH
        if head_seq_no != last_seq or head_tail_hash != last_hash:
            if self.first_invalid_seq_no is None:
                self.first_invalid_seq_no = last_seq + 1
            self.errors.append(
                f"Head mismatch: head at seq_no={head_seq_no} ({head_tail_hash}), "
                f"last entry seq_no={last_seq} ({last_hash})"
            )

    def result(self) -> ChainVerificationResult:
        """Snapshot of the verification so far."""
        return ChainVerificationResult(
            valid=not self.errors,
            checked_entries=self.checked,
            first_seq_no=self.first_seq_no,
            last_seq_no=self.last_seq_no,
            first_invalid_seq_no=self.first_invalid_seq_no,
            errors=list(self.errors),
        )


def verify_entries(
    entries: Iterable[Mapping[str, Any]],
    public_keys: Mapping[str, str],
    *,
    expected_prev_hash: str | None = GENESIS_HASH,
    stream: str | None = None,
    key_validity: Mapping[str, Mapping[str, Any]] | None = None,
) -> ChainVerificationResult:
    """Verify a sequence of ledger entries.

    Args:
        entries: Entries in ascending seq_no order.
        public_keys: key_id -> PEM public key, including retired keys.
        expected_prev_hash: Trusted predecessor hash (GENESIS_HASH for a full
            stream, None to skip the first link check).
        stream: Expected stream name.
        key_validity: Optional key_id -> {created_at, retired_at} windows.

    Returns:
        ChainVerificationResult for the given entries.
    """
    verifier = ChainVerifier(
        public_keys=public_keys,
        expected_prev_hash=expected_prev_hash,
        stream=stream,
        key_validity=key_validity,
    )
    for entry in entries:
        verifier.feed(entry)
    return verifier.result()


def verify_export(export: Mapping[str, Any]) -> ChainVerificationResult:
    """Verify a ledger export produced by the ledger export endpoint.

    The export carries its own public keys and their validity windows;
    callers who obtained keys through a separate channel should compare
    them before trusting the result.
    """
    if export.get("format") != EXPORT_FORMAT:
        msg = f"Unsupported export format: {export.get('format')!r}"
        raise ValueError(msg)

    verifier = ChainVerifier(
        public_keys=export.get("public_keys", {}),
        expected_prev_hash=export.get("expected_prev_hash", GENESIS_HASH),
        stream=export.get("stream"),
        key_validity=export.get("key_validity"),
    )
    for entry in export.get("entries", []):
        verifier.feed(entry)

    head = export.get("head")
    if head is not None:
        verifier.check_head(int(head["seq_no"]), head["tail_hash"])

    return verifier.result()
