"""
Tests for Key Store Schema Models
"""

import pytest
from pydantic import ValidationError

from keystore.schema import (
    CosignerKey,
    KeyRecord,
    Network,
    RecordSchemaError,
    WalletDescriptor,
    is_valid_key_name,
)
from psbt.scripts import ScriptType

XPUB_A = (
    "xpub6E2HG1bNB69EfRnM8vX2vCktifqLHnQH9Har7ZwWegwkss43rEa5EkJnCjiUKMnV5DRKQJUMCaiysNTq12RZ6cffhJbJtXp4atScMDF83SC"
)
XPUB_B = (
    "xpub6EzLSnj1J7ZVK2o4HuU9pwyDfY6uF1wTpSH2g2dZy13oxqyXEJRb44PbeRrcXDaVLFhHq3MVxuzEfiRZBuCcETuNY7z2rNrNudBY7gZrWYu"
)


def cosigner(fingerprint="eab239aa", xpub=XPUB_A, derivation="m/48'/0'/0'/2'"):
    return CosignerKey(fingerprint=fingerprint, derivation=derivation, xpub=xpub)


def descriptor(**overrides):
    fields = {
        'name': 'treasury',
        'script_type': ScriptType.P2WSH,
        'threshold': 2,
        'cosigners': [cosigner(), cosigner("f843467d", XPUB_B)],
        'receive_descriptor': 'wsh(sortedmulti(...))',
        'change_descriptor': 'wsh(sortedmulti(...))',
    }
    fields.update(overrides)
    return WalletDescriptor(**fields)


class TestKeyName:

    @pytest.mark.parametrize("name", ["alpha", "A-1", "key_2.backup", "x" * 128])
    def test_valid(self, name):
        assert is_valid_key_name(name)

    @pytest.mark.parametrize("name", ["", "a/b", "../x", "with space", "x" * 129, None])
    def test_invalid(self, name):
        assert not is_valid_key_name(name)


class TestCosignerKey:

    def test_fingerprint_lowercased(self):
        assert cosigner(fingerprint="EAB239AA").fingerprint == "eab239aa"

    def test_bad_fingerprint(self):
        with pytest.raises(ValidationError, match="Fingerprint"):
            cosigner(fingerprint="eab239")

    def test_bad_derivation(self):
        with pytest.raises(ValidationError):
            cosigner(derivation="48'/0'")


class TestWalletDescriptor:
    """Test wallet policy validation."""

    def test_valid_multisig(self):
        wallet = descriptor()
        assert wallet.threshold == 2
        assert wallet.cosigner_for("EAB239AA") == [wallet.cosigners[0]]

    def test_threshold_exceeds_cosigners(self):
        with pytest.raises(ValidationError, match="exceeds"):
            descriptor(threshold=3)

    def test_single_key_wallet_takes_one_key(self):
        with pytest.raises(ValidationError, match="exactly one key"):
            descriptor(script_type=ScriptType.P2WPKH, threshold=1)
        wallet = descriptor(script_type=ScriptType.P2WPKH, threshold=1, cosigners=[cosigner()])
        assert wallet.script_type == ScriptType.P2WPKH

    def test_duplicate_xpub(self):
        with pytest.raises(ValidationError, match="Duplicate cosigner xpub"):
            descriptor(cosigners=[cosigner(), cosigner("f843467d")])

    def test_unknown_script_type(self):
        with pytest.raises(ValidationError):
            descriptor(script_type=ScriptType.UNKNOWN)


class TestKeyRecord:
    """Test the persisted record."""

    def setup_method(self):
        self.record = KeyRecord(name="alpha", seed="11" * 32, fingerprint="0a1b2c3d")

    def test_defaults(self):
        assert self.record.version == 1
        assert self.record.network == Network.MAINNET
        assert self.record.account_path == "m/48'/0'/0'/2'"
        assert self.record.wallet is None
        assert self.record.entropy == b'\x11' * 32

    def test_seed_hidden_from_repr(self):
        assert self.record.seed not in repr(self.record)

    def test_round_trip(self):
        restored = KeyRecord.from_bytes(self.record.to_bytes())
        assert restored == self.record

    def test_with_wallet_bumps_version(self):
        wallet = descriptor()
        updated = self.record.with_wallet(wallet)

        assert updated.wallet == wallet
        assert updated.version == 2
        assert self.record.wallet is None
        assert KeyRecord.from_bytes(updated.to_bytes()).wallet == wallet

    @pytest.mark.parametrize("data", [
        b'not json',
        b'{"name": "alpha"}',
        b'{"name": "alpha", "seed": "zz", "fingerprint": "0a1b2c3d"}',
    ])
    def test_corrupt_record(self, data):
        with pytest.raises(RecordSchemaError):
            KeyRecord.from_bytes(data)

    @pytest.mark.parametrize("seed", ["11" * 15, "11" * 65, "AB" * 32, "1" * 63])
    def test_invalid_seed(self, seed):
        with pytest.raises(ValidationError):
            KeyRecord(name="alpha", seed=seed, fingerprint="0a1b2c3d")

    def test_invalid_name(self):
        with pytest.raises(ValidationError, match="Key name"):
            KeyRecord(name="a/b", seed="11" * 32, fingerprint="0a1b2c3d")
