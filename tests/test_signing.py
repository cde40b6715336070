"""Tests for the signing key ring.

Tests cover:
- First key generation (and its audit entry)
- Rotation: old key retired, new key active, old entries still verify
- Encrypted private keys
- Key validity windows: entries outside their key's active period fail
- Public key publication
"""

from datetime import timedelta

import pytest
from sqlalchemy import update

from purgecert.db.models.base import KeyStatus, LedgerStream
from purgecert.db.models.keys import SigningKey
from purgecert.services.audit_log import AuditEventType, AuditLogService
from purgecert.services.ledger import HashChainLedger
from purgecert.services.signing import KeyNotFoundError, KeyRing, SigningError
from purgecert.verification import verify_signature


class TestKeyGeneration:
    """Tests for ensure_active_key."""

    @pytest.mark.asyncio
    async def test_generates_once(self, session, keyring):
        first = await keyring.ensure_active_key(session, created_by="bootstrap")
        second = await keyring.ensure_active_key(session)
        await session.commit()

        assert first.key_id == second.key_id
        assert first.status == KeyStatus.ACTIVE
        assert first.algorithm == "ECDSA-P384"
        assert first.key_id.startswith("ledger-")
        assert first.key_id.endswith(first.fingerprint[:12])
        assert len(await keyring.list_keys(session)) == 1

    @pytest.mark.asyncio
    async def test_generation_is_audited(self, session, keyring):
        key = await keyring.ensure_active_key(session, created_by="bootstrap")
        await session.commit()

        entries = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.SIGNING_KEY_GENERATED
        )
        assert len(entries) == 1
        assert entries[0].actor == "bootstrap"
        assert entries[0].resource_id == key.key_id

    @pytest.mark.asyncio
    async def test_signature_verifies_with_published_key(self, session, keyring):
        signature = await keyring.sign(session, b"a" * 64)
        await session.commit()

        public_keys = await keyring.get_public_keys(session)
        assert verify_signature(public_keys[signature.key_id], "a" * 64, signature.value)
        assert not verify_signature(public_keys[signature.key_id], "b" * 64, signature.value)

    @pytest.mark.asyncio
    async def test_unknown_key(self, session, keyring):
        with pytest.raises(KeyNotFoundError):
            await keyring.get_key(session, "ledger-missing")


class TestRotation:
    """Tests for rotate_key."""

    @pytest.mark.asyncio
    async def test_rotation_retires_old_key(self, session, keyring):
        old = await keyring.ensure_active_key(session)
        await session.commit()

        new = await keyring.rotate_key(session, rotated_by="security")
        await session.commit()

        assert new.key_id != old.key_id
        assert new.status == KeyStatus.ACTIVE
        retired = await keyring.get_key(session, old.key_id)
        assert retired.status == KeyStatus.RETIRED
        assert retired.retired_at is not None
        active = await keyring.get_active_key(session)
        assert active.key_id == new.key_id

        public_keys = await keyring.get_public_keys(session)
        assert set(public_keys) == {old.key_id, new.key_id}

    @pytest.mark.asyncio
    async def test_entries_from_both_keys_verify(self, session, keyring):
        """Test the chain stays verifiable across a rotation."""
        ledger = HashChainLedger(session, keyring)
        before = await ledger.append(LedgerStream.CERTIFICATES, "event", {"n": 1})
        await session.commit()
        await keyring.rotate_key(session, rotated_by="security")
        await session.commit()
        after = await ledger.append(LedgerStream.CERTIFICATES, "event", {"n": 2})
        await session.commit()

        assert before.key_id != after.key_id
        assert (await ledger.verify(LedgerStream.CERTIFICATES)).valid
        assert (await ledger.verify(LedgerStream.AUDIT)).valid

        rotations = await AuditLogService(session, keyring).list_entries(
            event_type=AuditEventType.SIGNING_KEY_ROTATED
        )
        assert rotations[0].details["old_key_id"] == before.key_id
        # The rotation entry is signed by the new key
        audit_entry = await ledger.get_entry(LedgerStream.AUDIT, rotations[0].seq_no)
        assert audit_entry.key_id == after.key_id

    @pytest.mark.asyncio
    async def test_retired_private_key_is_erased(self, session, keyring):
        old = await keyring.ensure_active_key(session)
        await session.commit()
        new = await keyring.rotate_key(session, rotated_by="security")
        await session.commit()

        retired = await session.get(SigningKey, old.key_id)
        await session.refresh(retired)
        assert retired.private_key_pem is None
        assert (await session.get(SigningKey, new.key_id)).private_key_pem is not None

        # A process that restarts after the rotation signs with the new key only
        signature = await KeyRing().sign(session, b"payload")
        assert signature.key_id == new.key_id

    @pytest.mark.asyncio
    async def test_key_validity_windows(self, session, keyring):
        old = await keyring.ensure_active_key(session)
        await session.commit()
        new = await keyring.rotate_key(session, rotated_by="security")
        await session.commit()

        windows = await keyring.get_key_validity(session)

        retired = await keyring.get_key(session, old.key_id)
        assert windows[old.key_id] == {
            "created_at": old.created_at.isoformat(),
            "retired_at": retired.retired_at.isoformat(),
        }
        assert windows[new.key_id]["retired_at"] is None


class TestKeyValidityVerification:
    """Tests for entries checked against their signing key's active window."""

    @pytest.mark.asyncio
    async def test_entry_recorded_after_retirement_fails(self, session, keyring):
        """Test an entry whose key was already retired when it was recorded is rejected.

        The retirement is moved before the entry, which is what an entry
        signed with a leaked retired key after the rotation looks like.
        """
        ledger = HashChainLedger(session, keyring)
        entry = await ledger.append(LedgerStream.CERTIFICATES, "event", {"n": 1})
        await session.commit()
        await keyring.rotate_key(session, rotated_by="security")
        await session.commit()
        assert (await ledger.verify(LedgerStream.CERTIFICATES)).valid

        await session.execute(
            update(SigningKey)
            .where(SigningKey.key_id == entry.key_id)
            .values(retired_at=entry.recorded_at - timedelta(hours=1))
        )
        await session.commit()

        result = await ledger.verify(LedgerStream.CERTIFICATES)
        assert not result.valid
        assert result.first_invalid_seq_no == 1
        assert any("was retired" in error for error in result.errors)

    @pytest.mark.asyncio
    async def test_entry_recorded_before_key_creation_fails(self, session, keyring):
        ledger = HashChainLedger(session, keyring)
        entry = await ledger.append(LedgerStream.CERTIFICATES, "event", {"n": 1})
        await session.commit()

        await session.execute(
            update(SigningKey)
            .where(SigningKey.key_id == entry.key_id)
            .values(created_at=entry.recorded_at + timedelta(hours=1))
        )
        await session.commit()

        result = await ledger.verify(LedgerStream.CERTIFICATES)
        assert not result.valid
        assert any("before key" in error for error in result.errors)


class TestEncryptedKeys:
    """Tests for password-protected private keys."""

    @pytest.mark.asyncio
    async def test_encrypted_key_usable_by_new_keyring(self, session):
        """Test a fresh key ring with the password can sign with a stored key."""
        key = await KeyRing(key_password=b"s3cret").ensure_active_key(session)
        await session.commit()

        restarted = KeyRing(key_password=b"s3cret")
        signature = await restarted.sign(session, b"payload")

        assert signature.key_id == key.key_id
        stored = await restarted.get_active_key(session)
        assert stored.is_encrypted
        assert "ENCRYPTED" in stored.private_key_pem

    @pytest.mark.asyncio
    async def test_encrypted_key_without_password(self, session):
        await KeyRing(key_password=b"s3cret").ensure_active_key(session)
        await session.commit()

        with pytest.raises(SigningError, match="no key password"):
            await KeyRing().sign(session, b"payload")
