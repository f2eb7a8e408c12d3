"""
Spending Policies

Rules checked against a parsed PSBT before any signature is produced. Each
policy reports a list of violations; the PolicySet collects them from every
enabled policy and refuses the request if any were found.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional

from psbt.parser import PSBT
from wallet.descriptor import is_wallet_output

from .exceptions import PolicyViolationError

DEFAULT_MAX_SPEND_PER_TX = 500_000


class Policy(ABC):
    """
    Abstract base class for spending policies.

    Args:
        name: Short policy identifier used in logs
        description: Human readable summary
    """

    def __init__(self, name: str, description: str, enabled: bool = True):
        self.name = name
        self.description = description
        self.enabled = enabled
        self.logger = logging.getLogger(f"signer.policy.{name}")

    @abstractmethod
    def check(self, psbt: PSBT, wallet) -> List[str]:
        """
        Check a transaction.

        Args:
            psbt: Parsed PSBT
            wallet: WalletDescriptor of the signing key

        Returns:
            Violation messages (empty if the transaction is acceptable)
        """
        pass


class ValuePolicy(Policy):
    """Caps the value a single transaction may send outside the wallet."""

    def __init__(self, max_spend_per_tx: Optional[int] = DEFAULT_MAX_SPEND_PER_TX):
        super().__init__(
            name="value",
            description="Limits the total spent to outputs outside the wallet",
            enabled=max_spend_per_tx is not None,
        )
        self.max_spend_per_tx = max_spend_per_tx

    def spend_total(self, psbt: PSBT, wallet) -> int:
        """Sum of output values that do not pay back into ``wallet``."""
        total = 0
        for txout, psbt_output in zip(psbt.tx.outputs, psbt.outputs):
            if wallet is not None and is_wallet_output(
                wallet, txout.script_pubkey,
                psbt_output.bip32_derivations, psbt_output.tap_bip32_derivations,
            ):
                continue
            total += txout.value
        return total

    def check(self, psbt: PSBT, wallet) -> List[str]:
        total = self.spend_total(psbt, wallet)
        if total > self.max_spend_per_tx:
            self.logger.warning(
                f"Spend of {total} sat exceeds limit of {self.max_spend_per_tx} sat"
            )
            return [f"Transaction spend total of {total} exceeds policy limit."]
        return []


class AndonPolicy(Policy):
    """Stops all signing while the halt switch is pulled."""

    def __init__(self, all_tx_halted: bool = False):
        super().__init__(
            name="andon",
            description="Refuses every transaction while halted",
        )
        self.all_tx_halted = all_tx_halted

    def halt_all(self) -> None:
        self.logger.warning("All transactions halted")
        self.all_tx_halted = True

    def reset(self) -> None:
        self.logger.info("Transaction halt cleared")
        self.all_tx_halted = False

    def check(self, psbt: PSBT, wallet) -> List[str]:
        if self.all_tx_halted:
            return ["All transactions have been halted"]
        return []


class PolicySet:
    """Ordered collection of policies checked together."""

    def __init__(self, policies: Optional[List[Policy]] = None):
        self.policies = list(policies or [])

    @classmethod
    def from_settings(cls, policy_settings) -> 'PolicySet':
        """
        Build the default policies from ``PolicySettings``.
        """
        return cls([
            AndonPolicy(policy_settings.all_tx_halted),
            ValuePolicy(policy_settings.max_spend_per_tx),
        ])

    def violations(self, psbt: PSBT, wallet) -> List[str]:
        found = []
        for policy in self.policies:
            if policy.enabled:
                found.extend(policy.check(psbt, wallet))
        return found

    def check_policies(self, psbt: PSBT, wallet) -> None:
        """
        Run every enabled policy.

        Raises:
            PolicyViolationError: Listing all violations found
        """
        found = self.violations(psbt, wallet)
        if found:
            raise PolicyViolationError(found)
