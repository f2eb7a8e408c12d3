"""
Wallet Exports and Descriptors

Parsing of BlueWallet/Coldcard setup files and the output descriptors and
scripts derived from an imported wallet.
"""

from .bluewallet import ExportedKey, WalletExport, WalletExportError, parse_wallet_export
from .descriptor import (
    CHANGE_CHAIN,
    RECEIVE_CHAIN,
    append_checksum,
    derive_script_pubkey,
    descriptor_checksum,
    is_wallet_output,
    render_descriptor,
    render_descriptors,
)

__all__ = [
    "ExportedKey",
    "WalletExport",
    "WalletExportError",
    "parse_wallet_export",
    "CHANGE_CHAIN",
    "RECEIVE_CHAIN",
    "append_checksum",
    "derive_script_pubkey",
    "descriptor_checksum",
    "is_wallet_output",
    "render_descriptor",
    "render_descriptors",
]
