"""
Tests for Key Manager and the Error Taxonomy
"""

from unittest.mock import Mock

import pytest

from crypto.keys import DEFAULT_ACCOUNT_PATH, parse_extended_public_key
from keystore.exceptions import RandomnessUnavailableError, StorageUnavailableError
from keystore.schema import KeyRecord
from keystore.storage import MemoryKeyStore
from signer.config import SignerSettings
from signer.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ErrorKind,
    InternalError,
    MalformedInputError,
    NotFoundError,
    PolicyViolationError,
    UnsupportedScriptError,
)
from signer.key_manager import KeyManager, storage_errors

from helpers import FixedRandomnessSource


class TestErrorTaxonomy:
    """Test error kinds, status codes and retry hints."""

    @pytest.mark.parametrize("error,status,retryable", [
        (MalformedInputError("bad"), 400, False),
        (PolicyViolationError(["limit"]), 403, False),
        (NotFoundError("missing"), 404, False),
        (AlreadyExistsError("taken"), 409, False),
        (ConflictError("raced"), 412, True),
        (UnsupportedScriptError("p2tr script path", [1]), 422, False),
        (InternalError("down"), 503, True),
    ])
    def test_status_and_retry(self, error, status, retryable):
        assert error.http_status == status
        assert error.retryable is retryable

    def test_to_dict(self):
        error = ConflictError("Key 'alpha' was modified")
        assert error.to_dict() == {
            "error": "Conflict",
            "message": "Key 'alpha' was modified",
            "retryable": True,
        }

    def test_policy_violation_message(self):
        error = PolicyViolationError(["first", "second"])
        assert error.message == "first; second"
        assert error.kind == ErrorKind.POLICY_VIOLATION


class TestStorageErrors:

    def test_unavailable_maps_to_internal(self):
        with pytest.raises(InternalError, match="unavailable"):
            with storage_errors("alpha"):
                raise StorageUnavailableError("timeout")


class TestCreateKey:
    """Test key creation."""

    def test_create_key(self, key_manager, store, alpha_master, randomness):
        summary = key_manager.create_key("alpha")

        assert summary.name == "alpha"
        assert summary.fingerprint == alpha_master.fingerprint.hex()
        assert summary.derivation == DEFAULT_ACCOUNT_PATH
        assert summary.xpub == alpha_master.derive_path(DEFAULT_ACCOUNT_PATH).to_xpub()
        assert randomness.calls == [32]

        record = KeyRecord.from_bytes(store.read("alpha").data)
        assert record.seed == "11" * 32
        assert record.wallet is None

    def test_summary_has_no_secret(self, key_manager):
        dumped = key_manager.create_key("alpha").model_dump_json()
        assert "11" * 32 not in dumped
        assert "seed" not in dumped

    def test_duplicate_name(self, key_manager):
        key_manager.create_key("alpha")
        with pytest.raises(AlreadyExistsError):
            key_manager.create_key("alpha")

    @pytest.mark.parametrize("name", ["", "a/b", "x" * 129])
    def test_invalid_name(self, key_manager, name):
        with pytest.raises(MalformedInputError):
            key_manager.create_key(name)

    def test_randomness_failure(self, store):
        randomness = Mock()
        randomness.get_random_bytes.side_effect = RandomnessUnavailableError("no device")
        manager = KeyManager(store, randomness)

        with pytest.raises(InternalError, match="Randomness"):
            manager.create_key("alpha")
        with pytest.raises(NotFoundError):
            manager.load_record("alpha")

    def test_short_randomness(self, store):
        randomness = Mock()
        randomness.get_random_bytes.return_value = b'\x01' * 8
        with pytest.raises(InternalError, match="wrong number of bytes"):
            KeyManager(store, randomness).create_key("alpha")

    def test_testnet_and_entropy_settings(self, store):
        settings = SignerSettings.model_validate({
            'network': 'testnet',
            'key_derivation': {'entropy_bytes': 16, 'account_path': "m/84'/1'/0'"},
        })
        randomness = FixedRandomnessSource(fill=0x22)
        summary = KeyManager(store, randomness, settings).create_key("tester")

        assert randomness.calls == [16]
        assert summary.xpub.startswith("tpub")
        assert summary.derivation == "m/84'/1'/0'"
        assert parse_extended_public_key(summary.xpub).key.depth == 3

    def test_distinct_keys_per_name(self, store):
        manager = KeyManager(store, FixedRandomnessSource(fill=0x01))
        first = manager.create_key("one")
        manager.randomness = FixedRandomnessSource(fill=0x02)
        second = manager.create_key("two")
        assert first.fingerprint != second.fingerprint


class TestGetXpub:
    """Test extended public key export."""

    def test_default_path(self, key_manager, alpha_master):
        summary = key_manager.create_key("alpha")
        result = key_manager.get_xpub("alpha")

        assert result.path == DEFAULT_ACCOUNT_PATH
        assert result.xpub == summary.xpub
        assert result.fingerprint == alpha_master.fingerprint.hex()

    def test_explicit_path_normalized(self, key_manager, alpha_master):
        key_manager.create_key("alpha")
        result = key_manager.get_xpub("alpha", "m/84h/0h/0h")

        assert result.path == "m/84'/0'/0'"
        assert result.xpub == alpha_master.derive_path("m/84'/0'/0'").to_xpub()

    def test_master_path(self, key_manager, alpha_master):
        key_manager.create_key("alpha")
        assert key_manager.get_xpub("alpha", "m").xpub == alpha_master.to_xpub()

    def test_invalid_path(self, key_manager):
        key_manager.create_key("alpha")
        with pytest.raises(MalformedInputError, match="derivation path"):
            key_manager.get_xpub("alpha", "m/x")

    def test_invalid_path_checked_before_lookup(self, key_manager):
        with pytest.raises(MalformedInputError):
            key_manager.get_xpub("missing", "not-a-path")

    def test_unknown_key(self, key_manager):
        with pytest.raises(NotFoundError):
            key_manager.get_xpub("missing")


class TestLoadRecord:

    def test_corrupt_record(self, key_manager, store):
        store.create_if_absent("alpha", b'{"garbage": true}')
        with pytest.raises(InternalError, match="corrupt"):
            key_manager.load_record("alpha")

    def test_name_mismatch(self, key_manager, store):
        record = KeyRecord(name="other", seed="11" * 32, fingerprint="00000000")
        store.create_if_absent("alpha", record.to_bytes())
        with pytest.raises(InternalError, match="carries name"):
            key_manager.load_record("alpha")

    def test_fingerprint_mismatch(self, key_manager):
        record = KeyRecord(name="alpha", seed="11" * 32, fingerprint="00000000")
        with pytest.raises(InternalError, match="does not match"):
            key_manager.master_key(record)

    def test_storage_unavailable(self, randomness):
        store = Mock(spec=MemoryKeyStore)
        store.read.side_effect = StorageUnavailableError("connection reset")
        with pytest.raises(InternalError) as exc_info:
            KeyManager(store, randomness).load_record("alpha")
        assert exc_info.value.retryable


class TestDeriveSigningKey:

    def test_private_child(self, key_manager, alpha_master):
        key_manager.create_key("alpha")
        record, _ = key_manager.load_record("alpha")

        child = key_manager.derive_signing_key(record, "m/48'/0'/0'/2'/0/1")
        assert child.is_private
        assert child.public_key == alpha_master.derive_path("m/48'/0'/0'/2'/0/1").public_key

    def test_reuses_master(self, key_manager, alpha_master):
        key_manager.create_key("alpha")
        record, _ = key_manager.load_record("alpha")
        child = key_manager.derive_signing_key(record, [0, 0], master=alpha_master)
        assert child.public_key == alpha_master.derive_path("m/0/0").public_key

    def test_invalid_path(self, key_manager):
        key_manager.create_key("alpha")
        record, _ = key_manager.load_record("alpha")
        with pytest.raises(InternalError, match="derivation failed"):
            key_manager.derive_signing_key(record, "m/oops")
