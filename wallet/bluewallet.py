"""
BlueWallet / Coldcard Multisig Setup Files

Parses the plain-text wallet export BlueWallet and Coldcard exchange between
cosigners:

    # BlueWallet Multisig setup file
    Name: treasury
    Policy: 2 of 3
    Derivation: m/48'/0'/0'/2'
    Format: P2WSH

    EAB239AA: xpub6E2HG1bNB69E...
    F843467D: xpub6EzLSnj1J7ZV...
    16EFEC75: xpub6EFHgaRm1rd3...

A ``Derivation:`` line applies to the key lines that follow it, so files
mixing derivations per cosigner are accepted. Single-key files use the same
grammar with ``Policy: 1 of 1``.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from crypto.exceptions import DerivationError, ExtendedKeyFormatError
from crypto.keys import ExtendedKey, parse_derivation_path, parse_extended_public_key
from psbt.scripts import ScriptType

FORMATS = {
    "P2WSH": ScriptType.P2WSH,
    "P2SH-P2WSH": ScriptType.P2SH_P2WSH,
    "P2WSH-P2SH": ScriptType.P2SH_P2WSH,
    "P2SH": ScriptType.P2SH,
    "P2WPKH": ScriptType.P2WPKH,
    "P2SH-P2WPKH": ScriptType.P2SH_P2WPKH,
    "P2WPKH-P2SH": ScriptType.P2SH_P2WPKH,
    "P2PKH": ScriptType.P2PKH,
    "P2TR": ScriptType.P2TR,
}
SINGLE_KEY_FORMATS = (ScriptType.P2WPKH, ScriptType.P2SH_P2WPKH, ScriptType.P2PKH, ScriptType.P2TR)

HEADER_PATTERN = re.compile(r'^([A-Za-z][A-Za-z ]*?)\s*:\s*(.*)$')
KEY_LINE_PATTERN = re.compile(r'^([0-9A-Fa-f]{8})\s*:\s*(\S+)$')
POLICY_PATTERN = re.compile(r'^(\d+)\s+of\s+(\d+)$', re.IGNORECASE)


class WalletExportError(ValueError):
    """The wallet export does not follow the setup file grammar."""
    pass


@dataclass
class ExportedKey:
    """One cosigner line with the derivation in force where it appeared."""
    fingerprint: str
    derivation: str
    xpub: str
    key: ExtendedKey
    network: str


@dataclass
class WalletExport:
    """Parsed setup file."""
    name: Optional[str]
    threshold: int
    total: int
    script_type: ScriptType
    keys: List[ExportedKey] = field(default_factory=list)

    @property
    def network(self) -> str:
        return self.keys[0].network


def parse_wallet_export(text: str) -> WalletExport:
    """
    Parse a BlueWallet/Coldcard setup file.

    Args:
        text: File contents

    Returns:
        WalletExport with normalized xpubs

    Raises:
        WalletExportError: On any grammar or consistency violation
    """
    name = None
    policy = None
    script_type = None
    derivation = None
    keys: List[ExportedKey] = []

    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith('#'):
            continue

        key_match = KEY_LINE_PATTERN.match(line)
        if key_match:
            if derivation is None:
                raise WalletExportError(f"Line {line_no}: key listed before any Derivation line")
            keys.append(_parse_key_line(key_match.group(1), key_match.group(2), derivation, line_no))
            continue

        header_match = HEADER_PATTERN.match(line)
        if not header_match:
            raise WalletExportError(f"Line {line_no}: unrecognized line")

        header = header_match.group(1).lower()
        value = header_match.group(2).strip()

        if header == 'name':
            if name is not None:
                raise WalletExportError(f"Line {line_no}: duplicate Name")
            if not value:
                raise WalletExportError(f"Line {line_no}: empty Name")
            name = value
        elif header == 'policy':
            if policy is not None:
                raise WalletExportError(f"Line {line_no}: duplicate Policy")
            policy_match = POLICY_PATTERN.match(value)
            if not policy_match:
                raise WalletExportError(f"Line {line_no}: Policy must read 'M of N'")
            policy = (int(policy_match.group(1)), int(policy_match.group(2)))
        elif header == 'derivation':
            try:
                parse_derivation_path(value)
            except DerivationError as e:
                raise WalletExportError(f"Line {line_no}: invalid Derivation: {e}") from e
            derivation = value
        elif header == 'format':
            if script_type is not None:
                raise WalletExportError(f"Line {line_no}: duplicate Format")
            script_type = FORMATS.get(value.upper())
            if script_type is None:
                raise WalletExportError(f"Line {line_no}: unsupported Format '{value}'")
        else:
            raise WalletExportError(f"Line {line_no}: unrecognized header '{header_match.group(1)}'")

    if policy is None:
        raise WalletExportError("Missing Policy line")
    if script_type is None:
        script_type = ScriptType.P2WSH

    threshold, total = policy
    if total != len(keys):
        raise WalletExportError(f"Policy lists {total} keys but the file contains {len(keys)}")
    if not 1 <= threshold <= total:
        raise WalletExportError(f"Invalid policy {threshold} of {total}")
    if script_type in SINGLE_KEY_FORMATS and total != 1:
        raise WalletExportError(f"Format {script_type.value} takes exactly one key")

    networks = {k.network for k in keys}
    if len(networks) != 1:
        raise WalletExportError("Keys from different networks")
    if len({k.xpub for k in keys}) != len(keys):
        raise WalletExportError("Duplicate xpub")

    return WalletExport(name=name, threshold=threshold, total=total,
                        script_type=script_type, keys=keys)


def _parse_key_line(fingerprint: str, encoded: str, derivation: str, line_no: int) -> ExportedKey:
    try:
        parsed = parse_extended_public_key(encoded)
    except ExtendedKeyFormatError as e:
        raise WalletExportError(f"Line {line_no}: {e}") from e

    path = parse_derivation_path(derivation)
    if parsed.key.depth != len(path):
        raise WalletExportError(
            f"Line {line_no}: xpub depth {parsed.key.depth} does not match "
            f"derivation {derivation}"
        )
    if path and parsed.key.child_number != path[-1]:
        raise WalletExportError(
            f"Line {line_no}: xpub child number does not match derivation {derivation}"
        )

    return ExportedKey(
        fingerprint=fingerprint.lower(),
        derivation=derivation,
        xpub=parsed.canonical,
        key=parsed.key,
        network=parsed.network,
    )
