"""
Tests for Output Descriptors and Wallet Output Recognition
"""

import pytest

from crypto.keys import DEFAULT_ACCOUNT_PATH, hash160, parse_derivation_path
from keystore.schema import CosignerKey, WalletDescriptor
from psbt.scripts import (
    ScriptType,
    multisig_script,
    p2sh_script,
    p2tr_script,
    p2wpkh_script,
    p2wsh_script,
)
from wallet.bluewallet import parse_wallet_export
from wallet.descriptor import (
    CHANGE_CHAIN,
    RECEIVE_CHAIN,
    derive_script_pubkey,
    is_wallet_output,
    append_checksum,
    descriptor_checksum,
    key_expression,
    render_descriptor,
    render_descriptors,
)

from helpers import BLUEWALLET_EXPORT, cosigner_master


def make_wallet(masters, threshold, script_type=ScriptType.P2WSH, derivation=DEFAULT_ACCOUNT_PATH):
    cosigners = [
        CosignerKey(
            fingerprint=m.fingerprint.hex(),
            derivation=derivation,
            xpub=m.derive_path(derivation).to_xpub(),
        )
        for m in masters
    ]
    receive, change = render_descriptors(script_type, threshold, cosigners)
    return WalletDescriptor(
        name="test", script_type=script_type, threshold=threshold, cosigners=cosigners,
        receive_descriptor=receive, change_descriptor=change,
    )


class TestRenderDescriptor:
    """Test descriptor rendering."""

    def test_key_expression_normalizes_origin(self):
        assert key_expression("eab239aa", "m/48h/0h/0h/2h", "xpubX", 1) == \
            "[eab239aa/48'/0'/0'/2']xpubX/1/*"

    def test_bluewallet_export(self):
        export = parse_wallet_export(BLUEWALLET_EXPORT)
        receive, change = render_descriptors(export.script_type, export.threshold, export.keys)

        body = (
            "wsh(sortedmulti(2,"
            "[eab239aa/48'/0'/0'/2']xpub6E2HG1bNB69EfRnM8vX2vCktifqLHnQH9Har7ZwWegwkss43rEa5EkJnCjiUKM"
            "nV5DRKQJUMCaiysNTq12RZ6cffhJbJtXp4atScMDF83SC/0/*,"
            "[f843467d/48'/0'/0'/2']xpub6EzLSnj1J7ZVK2o4HuU9pwyDfY6uF1wTpSH2g2dZy13oxqyXEJRb44PbeRrcXD"
            "aVLFhHq3MVxuzEfiRZBuCcETuNY7z2rNrNudBY7gZrWYu/0/*,"
            "[16efec75/48'/0'/0'/2']xpub6EFHgaRm1rd3AE8DmxXVncR4RcBsirn4ncDc2mW1oCThkQosh7Rdu6Sdyugw"
            "WBZV97usQf5WwUn89UaH7bVRoZ5NY8sdwpt8H7Zi9ayhLk5/0/*))"
        )
        assert receive == append_checksum(body)
        assert change == append_checksum(body.replace("/0/*", "/1/*"))

    @pytest.mark.parametrize("script_type,prefix,suffix", [
        (ScriptType.P2SH_P2WSH, "sh(wsh(sortedmulti(1,", ")))"),
        (ScriptType.P2SH, "sh(sortedmulti(1,", "))"),
    ])
    def test_multisig_wrappers(self, script_type, prefix, suffix):
        wallet = make_wallet([cosigner_master(0x21), cosigner_master(0x22)], 1, script_type)
        descriptor = render_descriptor(script_type, 1, wallet.cosigners, RECEIVE_CHAIN)
        assert descriptor.startswith(prefix)
        assert descriptor.split("#")[0].endswith(suffix)

    @pytest.mark.parametrize("script_type,template", [
        (ScriptType.P2WPKH, "wpkh({})"),
        (ScriptType.P2SH_P2WPKH, "sh(wpkh({}))"),
        (ScriptType.P2PKH, "pkh({})"),
        (ScriptType.P2TR, "tr({})"),
    ])
    def test_single_key(self, script_type, template):
        wallet = make_wallet([cosigner_master(0x23)], 1, script_type, "m/84'/0'/0'")
        cosigner = wallet.cosigners[0]
        expected = append_checksum(template.format(
            key_expression(cosigner.fingerprint, cosigner.derivation, cosigner.xpub, CHANGE_CHAIN)
        ))
        assert render_descriptor(script_type, 1, wallet.cosigners, CHANGE_CHAIN) == expected

    def test_single_key_with_many_keys(self):
        wallet = make_wallet([cosigner_master(0x24), cosigner_master(0x25)], 1)
        with pytest.raises(ValueError, match="exactly one key"):
            render_descriptor(ScriptType.P2WPKH, 1, wallet.cosigners, RECEIVE_CHAIN)

    def test_checksum_vector(self):
        assert descriptor_checksum("raw(deadbeef)") == "89f8spxm"
        assert append_checksum("raw(deadbeef)") == "raw(deadbeef)#89f8spxm"

    def test_checksum_changes_with_body(self):
        assert descriptor_checksum("raw(deadbeef)") != descriptor_checksum("raw(deadbeee)")

    def test_checksum_rejects_unknown_characters(self):
        with pytest.raises(ValueError, match="Invalid descriptor character"):
            descriptor_checksum("raw(deadb\u00e9ef)")


class TestDeriveScriptPubkey:
    """Test address derivation from a wallet."""

    def setup_method(self):
        self.masters = [cosigner_master(tag) for tag in (0x31, 0x32, 0x33)]

    def child_pubkeys(self, chain, index, derivation=DEFAULT_ACCOUNT_PATH):
        return [
            m.derive_path(derivation).derive_child(chain).derive_child(index).public_key.bytes
            for m in self.masters
        ]

    def test_p2wsh(self):
        wallet = make_wallet(self.masters, 2)
        expected = p2wsh_script(multisig_script(2, self.child_pubkeys(CHANGE_CHAIN, 5)))
        assert derive_script_pubkey(wallet, CHANGE_CHAIN, 5) == expected

    def test_p2sh_p2wsh(self):
        wallet = make_wallet(self.masters, 2, ScriptType.P2SH_P2WSH)
        witness_script = multisig_script(2, self.child_pubkeys(RECEIVE_CHAIN, 0))
        expected = p2sh_script(hash160(p2wsh_script(witness_script)))
        assert derive_script_pubkey(wallet, RECEIVE_CHAIN, 0) == expected

    def test_p2wpkh(self):
        self.masters = self.masters[:1]
        wallet = make_wallet(self.masters, 1, ScriptType.P2WPKH, "m/84'/0'/0'")
        pubkey = self.child_pubkeys(RECEIVE_CHAIN, 3, "m/84'/0'/0'")[0]
        assert derive_script_pubkey(wallet, RECEIVE_CHAIN, 3) == p2wpkh_script(hash160(pubkey))


class TestIsWalletOutput:
    """Test change detection."""

    def setup_method(self):
        self.masters = [cosigner_master(tag) for tag in (0x41, 0x42, 0x43)]
        self.wallet = make_wallet(self.masters, 2)
        self.account_path = parse_derivation_path(DEFAULT_ACCOUNT_PATH)

    def origins(self, chain, index, master=None):
        master = master or self.masters[0]
        path = self.account_path + [chain, index]
        child = master.derive_path(path)
        return {child.public_key.bytes: (master.fingerprint, path)}

    def test_change_output_recognized(self):
        script = derive_script_pubkey(self.wallet, CHANGE_CHAIN, 7)
        assert is_wallet_output(self.wallet, script, self.origins(CHANGE_CHAIN, 7))

    def test_script_must_match_origin(self):
        script = derive_script_pubkey(self.wallet, CHANGE_CHAIN, 7)
        assert not is_wallet_output(self.wallet, script, self.origins(CHANGE_CHAIN, 8))

    def test_foreign_output(self):
        script = p2wpkh_script(b'\x01' * 20)
        assert not is_wallet_output(self.wallet, script, self.origins(RECEIVE_CHAIN, 0))

    def test_no_origins(self):
        script = derive_script_pubkey(self.wallet, RECEIVE_CHAIN, 0)
        assert not is_wallet_output(self.wallet, script, {})

    def test_unknown_fingerprint(self):
        script = derive_script_pubkey(self.wallet, RECEIVE_CHAIN, 0)
        stranger = cosigner_master(0x44)
        assert not is_wallet_output(self.wallet, script, self.origins(RECEIVE_CHAIN, 0, stranger))

    def test_hardened_and_odd_chains_ignored(self):
        script = derive_script_pubkey(self.wallet, RECEIVE_CHAIN, 0)
        fingerprint = self.masters[0].fingerprint
        origins = {
            b'\x02' * 33: (fingerprint, self.account_path + [2, 0]),
            b'\x03' * 33: (fingerprint, self.account_path + [0, 0x80000000]),
        }
        assert not is_wallet_output(self.wallet, script, origins)

    def test_taproot_origins(self):
        wallet = make_wallet(self.masters[:1], 1, ScriptType.P2TR, "m/86'/0'/0'")
        path = parse_derivation_path("m/86'/0'/0'/1/2")
        child = self.masters[0].derive_path(path)
        script = p2tr_script(child.public_key.taproot_tweak_public_key())
        tap_origins = {child.public_key.x_only: ([], self.masters[0].fingerprint, path)}

        assert derive_script_pubkey(wallet, CHANGE_CHAIN, 2) == script
        assert is_wallet_output(wallet, script, {}, tap_origins)
