"""Tests for offline verification and the purgecert-verify command.

Exports are produced by the real ledger, then checked without a database
the way an external auditor would.
"""

import json
from datetime import datetime, timedelta

import pytest
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

from purgecert.cli import EXIT_BAD_INPUT, EXIT_INVALID, EXIT_VALID, main
from purgecert.db.models.base import LedgerStream
from purgecert.services.ledger import HashChainLedger
from purgecert.verification import (
    GENESIS_HASH,
    check_key_window,
    verify_entries,
    verify_export,
    verify_signature,
)


@pytest.fixture
async def export(session, keyring) -> dict:
    ledger = HashChainLedger(session, keyring)
    for i in range(1, 4):
        await ledger.append(LedgerStream.CERTIFICATES, "deletion_certificate", {"record": i})
    await session.commit()
    return await ledger.export(LedgerStream.CERTIFICATES)


@pytest.fixture
def export_file(tmp_path, export) -> str:
    path = tmp_path / "export.json"
    path.write_text(json.dumps(export), encoding="utf-8")
    return str(path)


def _other_public_key_pem() -> str:
    key = ec.generate_private_key(ec.SECP384R1())
    return key.public_key().public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo).decode()


class TestVerifyExport:
    """Tests for verify_export and verify_entries."""

    @pytest.mark.asyncio
    async def test_valid_export(self, export):
        result = verify_export(export)
        assert result.valid
        assert result.checked_entries == 3

    @pytest.mark.asyncio
    async def test_unsupported_format(self, export):
        with pytest.raises(ValueError, match="Unsupported export format"):
            verify_export({**export, "format": "something-else/2"})

    @pytest.mark.asyncio
    async def test_reordered_entries(self, export):
        entries = export["entries"]
        reordered = {**export, "entries": [entries[0], entries[2], entries[1]]}
        result = verify_export(reordered)
        assert not result.valid
        assert result.first_invalid_seq_no == 3

    @pytest.mark.asyncio
    async def test_unknown_key(self, export):
        """Test entries signed by a key missing from the key set are rejected."""
        result = verify_export({**export, "public_keys": {}})
        assert not result.valid
        assert any("Unknown signing key" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_wrong_key_material(self, export):
        """Test substituting a different public key under the same key_id fails."""
        key_id = export["entries"][0]["key_id"]
        result = verify_export({**export, "public_keys": {key_id: _other_public_key_pem()}})
        assert not result.valid
        assert any("Invalid signature" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_stream_mismatch(self, export):
        entries = [dict(entry, stream="audit") for entry in export["entries"]]
        result = verify_entries(entries, export["public_keys"], stream="certificates")
        assert not result.valid

    @pytest.mark.asyncio
    async def test_range_without_trusted_checkpoint(self, export):
        """Test a suffix verifies when the first link is not pinned."""
        result = verify_entries(
            export["entries"][1:], export["public_keys"], expected_prev_hash=None
        )
        assert result.valid
        strict = verify_entries(export["entries"][1:], export["public_keys"])
        assert not strict.valid

    @pytest.mark.asyncio
    async def test_export_carries_key_windows(self, export):
        key_id = export["entries"][0]["key_id"]
        assert export["key_validity"][key_id]["retired_at"] is None
        created_at = datetime.fromisoformat(export["key_validity"][key_id]["created_at"])
        assert created_at <= datetime.fromisoformat(export["entries"][0]["recorded_at"])

    @pytest.mark.asyncio
    async def test_entry_outside_key_window(self, export):
        """Test entries recorded after their key was retired are rejected offline."""
        key_id = export["entries"][0]["key_id"]
        first_recorded = datetime.fromisoformat(export["entries"][0]["recorded_at"])
        windows = {
            key_id: {
                "created_at": export["key_validity"][key_id]["created_at"],
                "retired_at": (first_recorded - timedelta(days=1)).isoformat(),
            }
        }

        result = verify_export({**export, "key_validity": windows})

        assert not result.valid
        assert result.first_invalid_seq_no == 1
        assert any("was retired" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_key_without_window(self, export):
        result = verify_export({**export, "key_validity": {}})
        assert not result.valid
        assert any("No validity window" in error for error in result.errors)

    def test_window_tolerance(self):
        window = {"created_at": "2026-01-01T00:00:00+00:00", "retired_at": "2026-02-01T00:00:00"}

        assert check_key_window("k", "2026-02-01T00:00:30+00:00", window) is None
        assert check_key_window("k", "2026-02-01T00:05:00+00:00", window) is not None
        assert check_key_window("k", "2025-12-31T23:59:45+00:00", window) is None
        assert check_key_window("k", None, window) == "Entry has no recorded_at"
        assert "Unreadable" in check_key_window("k", "yesterday", window)

    @pytest.mark.asyncio
    async def test_malformed_signature(self, export):
        entry = export["entries"][0]
        pem = export["public_keys"][entry["key_id"]]
        assert not verify_signature(pem, entry["entry_hash"], "not base64!")
        assert verify_signature(pem, entry["entry_hash"], entry["signature"])
        assert entry["prev_hash"] == GENESIS_HASH


class TestVerifyCommand:
    """Tests for the purgecert-verify entry point."""

    @pytest.mark.asyncio
    async def test_valid_export_exits_zero(self, export_file, capsys):
        assert main([export_file]) == EXIT_VALID
        out = capsys.readouterr().out
        assert "Checked entries: 3" in out
        assert "PASSED" in out

    @pytest.mark.asyncio
    async def test_tampered_export_exits_one(self, tmp_path, export, capsys):
        export["entries"][1]["content"] = export["entries"][1]["content"].replace(
            '"record":2', '"record":5'
        )
        path = tmp_path / "tampered.json"
        path.write_text(json.dumps(export), encoding="utf-8")

        assert main([str(path)]) == EXIT_INVALID
        out = capsys.readouterr().out
        assert "FAILED" in out
        assert "seq_no=2" in out

    @pytest.mark.asyncio
    async def test_json_output(self, export_file, capsys):
        assert main([export_file, "--json"]) == EXIT_VALID
        report = json.loads(capsys.readouterr().out)
        assert report["stream"] == "certificates"
        assert report["valid"] is True
        assert report["last_seq_no"] == 3

    @pytest.mark.asyncio
    async def test_external_public_keys(self, tmp_path, export_file, export, capsys):
        """Test keys supplied out of band replace the embedded ones."""
        key_id = export["entries"][0]["key_id"]
        keys_path = tmp_path / "keys.json"
        keys_path.write_text(json.dumps({key_id: _other_public_key_pem()}), encoding="utf-8")

        assert main([export_file, "--public-keys", str(keys_path)]) == EXIT_INVALID

    def test_missing_file(self, tmp_path, capsys):
        assert main([str(tmp_path / "missing.json")]) == EXIT_BAD_INPUT
        assert "cannot read input" in capsys.readouterr().err

    def test_not_json(self, tmp_path, capsys):
        path = tmp_path / "export.json"
        path.write_text("{not json", encoding="utf-8")
        assert main([str(path)]) == EXIT_BAD_INPUT

    @pytest.mark.asyncio
    async def test_wrong_format(self, tmp_path, export, capsys):
        path = tmp_path / "export.json"
        path.write_text(json.dumps({**export, "format": "v0"}), encoding="utf-8")
        assert main([str(path)]) == EXIT_BAD_INPUT
        assert "Unsupported export format" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_malformed_entry(self, tmp_path, export, capsys):
        del export["entries"][0]["content"]
        path = tmp_path / "export.json"
        path.write_text(json.dumps(export), encoding="utf-8")
        assert main([str(path)]) == EXIT_BAD_INPUT
