"""
Tests for BlueWallet / Coldcard Setup File Parsing
"""

import pytest

from crypto.keys import DEFAULT_ACCOUNT_PATH
from psbt.scripts import ScriptType
from wallet.bluewallet import WalletExportError, parse_wallet_export

from helpers import BLUEWALLET_EXPORT, account_line, build_export, cosigner_master


class TestParseWalletExport:
    """Test the setup file grammar."""

    def test_bluewallet_export(self):
        export = parse_wallet_export(BLUEWALLET_EXPORT)

        assert export.name == "test5678"
        assert export.threshold == 2
        assert export.total == 3
        assert export.script_type == ScriptType.P2WSH
        assert export.network == "mainnet"
        assert [k.fingerprint for k in export.keys] == ["eab239aa", "f843467d", "16efec75"]
        assert all(k.derivation == "m/48'/0'/0'/2'" for k in export.keys)
        assert all(k.key.depth == 4 for k in export.keys)
        assert export.keys[0].xpub.startswith("xpub6E2HG1bNB69E")

    def test_format_defaults_to_p2wsh(self):
        text = BLUEWALLET_EXPORT.replace("Format: P2WSH\n", "")
        assert parse_wallet_export(text).script_type == ScriptType.P2WSH

    @pytest.mark.parametrize("fmt,expected", [
        ("p2sh-p2wsh", ScriptType.P2SH_P2WSH),
        ("P2WSH-P2SH", ScriptType.P2SH_P2WSH),
        ("P2SH", ScriptType.P2SH),
    ])
    def test_format_aliases(self, fmt, expected):
        text = BLUEWALLET_EXPORT.replace("Format: P2WSH", f"Format: {fmt}")
        assert parse_wallet_export(text).script_type == expected

    def test_name_optional(self):
        text = BLUEWALLET_EXPORT.replace("Name: test5678\n", "")
        assert parse_wallet_export(text).name is None

    def test_per_key_derivation(self):
        """A Derivation line applies to the keys that follow it."""
        first, second = cosigner_master(0x01), cosigner_master(0x02)
        text = "\n".join([
            "Policy: 1 of 2",
            f"Derivation: {DEFAULT_ACCOUNT_PATH}",
            "%s: %s" % account_line(first),
            "Derivation: m/48'/0'/1'/2'",
            "%s: %s" % account_line(second, "m/48'/0'/1'/2'"),
        ])

        export = parse_wallet_export(text)
        assert [k.derivation for k in export.keys] == [DEFAULT_ACCOUNT_PATH, "m/48'/0'/1'/2'"]

    def test_single_key_wallet(self):
        text = build_export([account_line(cosigner_master(0x03), "m/84'/0'/0'")], threshold=1,
                            derivation="m/84'/0'/0'", fmt="P2WPKH")
        export = parse_wallet_export(text)
        assert export.script_type == ScriptType.P2WPKH
        assert export.total == 1

    def test_testnet_keys(self):
        keys = [account_line(cosigner_master(tag), network="testnet") for tag in (0x04, 0x05)]
        export = parse_wallet_export(build_export(keys, threshold=2))
        assert export.network == "testnet"
        assert all(k.xpub.startswith("tpub") for k in export.keys)


class TestParseWalletExportErrors:
    """Test rejection of malformed setup files."""

    @pytest.mark.parametrize("old,new,message", [
        ("Policy: 2 of 3", "Policy: 2 of 4", "Policy lists 4 keys"),
        ("Policy: 2 of 3", "Policy: 4 of 3", "Invalid policy"),
        ("Policy: 2 of 3", "Policy: 0 of 3", "Invalid policy"),
        ("Policy: 2 of 3", "Policy: two of three", "M of N"),
        ("Policy: 2 of 3\n", "", "Missing Policy"),
        ("Format: P2WSH", "Format: P2XYZ", "unsupported Format"),
        ("Format: P2WSH", "Format: P2WSH\nFormat: P2SH", "duplicate Format"),
        ("Name: test5678", "Name: test5678\nName: again", "duplicate Name"),
        ("Name: test5678", "Name:", "empty Name"),
        ("Name: test5678", "Label: test5678", "unrecognized header"),
        ("Derivation: m/48'/0'/0'/2'", "Derivation: 48/0/x", "invalid Derivation"),
        ("Derivation: m/48'/0'/0'/2'", "Derivation: m/48'/0'/0'", "depth"),
        ("Derivation: m/48'/0'/0'/2'", "Derivation: m/48'/0'/0'/1'", "child number"),
        ("# this file may contain private information", "this is not a header", "unrecognized line"),
        ("EAB239AA: xpub6E2HG1bNB69E", "EAB239AA: xpub6E2HG1bNB69F", "Line"),
    ])
    def test_rejections(self, old, new, message):
        text = BLUEWALLET_EXPORT.replace(old, new, 1)
        assert text != BLUEWALLET_EXPORT
        with pytest.raises(WalletExportError, match=message):
            parse_wallet_export(text)

    def test_key_before_derivation(self):
        lines = BLUEWALLET_EXPORT.splitlines()
        key_line = next(line for line in lines if line.startswith("EAB239AA"))
        text = key_line + "\n" + BLUEWALLET_EXPORT
        with pytest.raises(WalletExportError, match="before any Derivation"):
            parse_wallet_export(text)

    def test_duplicate_xpub(self):
        keys = [account_line(cosigner_master(0x06))] * 2
        with pytest.raises(WalletExportError, match="Duplicate xpub"):
            parse_wallet_export(build_export(keys, threshold=1))

    def test_mixed_networks(self):
        keys = [account_line(cosigner_master(0x07)),
                account_line(cosigner_master(0x08), network="testnet")]
        with pytest.raises(WalletExportError, match="different networks"):
            parse_wallet_export(build_export(keys, threshold=1))

    def test_single_key_format_with_many_keys(self):
        keys = [account_line(cosigner_master(tag)) for tag in (0x09, 0x0a)]
        with pytest.raises(WalletExportError, match="exactly one key"):
            parse_wallet_export(build_export(keys, threshold=1, fmt="P2WPKH"))
