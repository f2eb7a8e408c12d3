"""
Tests for Spending Policies
"""

import pytest

from crypto.keys import DEFAULT_ACCOUNT_PATH, parse_derivation_path
from psbt.parser import parse_psbt
from signer.config import PolicySettings
from signer.exceptions import PolicyViolationError
from signer.policy import AndonPolicy, PolicySet, ValuePolicy
from wallet.descriptor import CHANGE_CHAIN, derive_script_pubkey

from helpers import p2wpkh_spend_psbt


def spend_psbt(master, send, change=None, wallet=None):
    """PSBT sending ``send`` sats away and optionally ``change`` back to ``wallet``."""
    path = parse_derivation_path(DEFAULT_ACCOUNT_PATH) + [0, 0]
    child = master.derive_path(path)
    builder = p2wpkh_spend_psbt(child, master.fingerprint, path, value=1_000_000, send=send)
    if change is not None:
        change_path = parse_derivation_path(DEFAULT_ACCOUNT_PATH) + [CHANGE_CHAIN, 3]
        change_key = master.derive_path(change_path).public_key.bytes
        builder.add_output(
            derive_script_pubkey(wallet, CHANGE_CHAIN, 3), change,
            bip32_derivations={change_key: (master.fingerprint, change_path)},
        )
    return parse_psbt(builder.serialize())


class TestValuePolicy:
    """Test the per-transaction spend limit."""

    def test_within_limit(self, alpha_master):
        policy = ValuePolicy(max_spend_per_tx=50_000)
        assert policy.check(spend_psbt(alpha_master, 20_000), None) == []

    def test_limit_is_inclusive(self, alpha_master):
        policy = ValuePolicy(max_spend_per_tx=20_000)
        assert policy.check(spend_psbt(alpha_master, 20_000), None) == []

    def test_over_limit(self, alpha_master):
        policy = ValuePolicy(max_spend_per_tx=10_000)
        assert policy.check(spend_psbt(alpha_master, 20_000), None) == [
            "Transaction spend total of 20000 exceeds policy limit."
        ]

    def test_disabled_without_limit(self):
        assert not ValuePolicy(max_spend_per_tx=None).enabled

    def test_change_not_counted(self, alpha_with_wallet, alpha_master):
        _, wallet = alpha_with_wallet
        psbt = spend_psbt(alpha_master, 20_000, change=900_000, wallet=wallet)
        policy = ValuePolicy(max_spend_per_tx=50_000)

        assert policy.spend_total(psbt, wallet) == 20_000
        assert policy.check(psbt, wallet) == []

    def test_change_counted_without_wallet(self, alpha_with_wallet, alpha_master):
        _, wallet = alpha_with_wallet
        psbt = spend_psbt(alpha_master, 20_000, change=900_000, wallet=wallet)
        assert ValuePolicy().spend_total(psbt, None) == 920_000


class TestAndonPolicy:
    """Test the halt switch."""

    def test_toggle(self, alpha_master):
        psbt = spend_psbt(alpha_master, 1_000)
        policy = AndonPolicy()
        assert policy.check(psbt, None) == []

        policy.halt_all()
        assert policy.check(psbt, None) == ["All transactions have been halted"]

        policy.reset()
        assert policy.check(psbt, None) == []


class TestPolicySet:
    """Test policy aggregation."""

    def test_from_settings(self):
        policies = PolicySet.from_settings(PolicySettings(max_spend_per_tx=1_000, all_tx_halted=True))
        assert [p.name for p in policies.policies] == ["andon", "value"]

    def test_collects_every_violation(self, alpha_master):
        policies = PolicySet.from_settings(PolicySettings(max_spend_per_tx=1_000, all_tx_halted=True))

        with pytest.raises(PolicyViolationError) as exc_info:
            policies.check_policies(spend_psbt(alpha_master, 20_000), None)
        assert exc_info.value.violations == [
            "All transactions have been halted",
            "Transaction spend total of 20000 exceeds policy limit.",
        ]
        assert exc_info.value.http_status == 403

    def test_disabled_policies_skipped(self, alpha_master):
        halted = AndonPolicy(all_tx_halted=True)
        halted.enabled = False
        PolicySet([halted]).check_policies(spend_psbt(alpha_master, 20_000), None)

    def test_empty_set_allows_everything(self, alpha_master):
        PolicySet().check_policies(spend_psbt(alpha_master, 10 ** 8), None)
