"""
Script Classification and Construction

Recognizes the standard output templates a signer needs to tell apart and
builds the scripts a wallet derives for its addresses.
"""

from enum import Enum
from typing import List, Optional, Tuple

from .exceptions import InvalidScriptError
from .utils import sha256

OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKMULTISIG = 0xae


class ScriptType(str, Enum):
    """Spend types recognized by the signer and the wallet importer."""
    P2PKH = "p2pkh"
    P2SH = "p2sh"
    P2WPKH = "p2wpkh"
    P2WSH = "p2wsh"
    P2TR = "p2tr"
    P2SH_P2WPKH = "p2sh-p2wpkh"
    P2SH_P2WSH = "p2sh-p2wsh"
    UNKNOWN = "unknown"

    @property
    def is_multisig(self) -> bool:
        return self in (ScriptType.P2SH, ScriptType.P2WSH, ScriptType.P2SH_P2WSH)

    @property
    def is_segwit(self) -> bool:
        return self in (
            ScriptType.P2WPKH, ScriptType.P2WSH, ScriptType.P2TR,
            ScriptType.P2SH_P2WPKH, ScriptType.P2SH_P2WSH,
        )


def classify_script(script: bytes) -> ScriptType:
    """
    Classify an output script by its template.

    Nested segwit cannot be told apart from plain P2SH by the output script
    alone; see ``classify_spend``.
    """
    if len(script) == 25 and script[:3] == bytes([OP_DUP, OP_HASH160, 20]) \
            and script[23:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG]):
        return ScriptType.P2PKH
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 20]) and script[22] == OP_EQUAL:
        return ScriptType.P2SH
    if len(script) == 22 and script[:2] == bytes([OP_0, 20]):
        return ScriptType.P2WPKH
    if len(script) == 34 and script[:2] == bytes([OP_0, 32]):
        return ScriptType.P2WSH
    if len(script) == 34 and script[:2] == bytes([OP_1, 32]):
        return ScriptType.P2TR
    return ScriptType.UNKNOWN


def classify_spend(script_pubkey: bytes, redeem_script: Optional[bytes] = None) -> ScriptType:
    """
    Classify how an output is spent, resolving P2SH through its redeem script.

    Args:
        script_pubkey: The spent output's script
        redeem_script: Redeem script from the PSBT input, if any

    Returns:
        The spend type
    """
    script_type = classify_script(script_pubkey)
    if script_type != ScriptType.P2SH or redeem_script is None:
        return script_type

    inner = classify_script(redeem_script)
    if inner == ScriptType.P2WPKH:
        return ScriptType.P2SH_P2WPKH
    if inner == ScriptType.P2WSH:
        return ScriptType.P2SH_P2WSH
    return ScriptType.P2SH


def push_data(data: bytes) -> bytes:
    """Minimal push of ``data`` onto the script stack."""
    length = len(data)
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xff:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xffff:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, 'little') + data
    raise InvalidScriptError("Push data too large")


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    if len(pubkey_hash) != 20:
        raise InvalidScriptError("Public key hash must be 20 bytes")
    return bytes([OP_DUP, OP_HASH160, 20]) + pubkey_hash + bytes([OP_EQUALVERIFY, OP_CHECKSIG])


def p2sh_script(script_hash: bytes) -> bytes:
    if len(script_hash) != 20:
        raise InvalidScriptError("Script hash must be 20 bytes")
    return bytes([OP_HASH160, 20]) + script_hash + bytes([OP_EQUAL])


def p2wpkh_script(pubkey_hash: bytes) -> bytes:
    if len(pubkey_hash) != 20:
        raise InvalidScriptError("Public key hash must be 20 bytes")
    return bytes([OP_0, 20]) + pubkey_hash


def p2wsh_script(witness_script: bytes) -> bytes:
    """
    Create P2WSH output script from witness script.

    Args:
        witness_script: The witness script

    Returns:
        P2WSH output script (OP_0 + 32-byte script hash)
    """
    return bytes([OP_0, 32]) + sha256(witness_script)


def p2tr_script(output_key: bytes) -> bytes:
    if len(output_key) != 32:
        raise InvalidScriptError(f"Invalid tweaked pubkey length: {len(output_key)}")
    return bytes([OP_1, 32]) + output_key


def multisig_script(threshold: int, pubkeys: List[bytes], sort: bool = True) -> bytes:
    """
    Build an OP_CHECKMULTISIG script.

    Args:
        threshold: Required signature count
        pubkeys: Compressed public keys
        sort: Order keys lexicographically (BIP67 ``sortedmulti``)

    Returns:
        Multisig script
    """
    if not 1 <= threshold <= len(pubkeys) <= 16:
        raise InvalidScriptError(
            f"Invalid multisig parameters: {threshold} of {len(pubkeys)}"
        )
    keys = sorted(pubkeys) if sort else list(pubkeys)
    script = bytes([OP_1 + threshold - 1])
    for key in keys:
        if len(key) != 33:
            raise InvalidScriptError("Multisig keys must be compressed")
        script += push_data(key)
    return script + bytes([OP_1 + len(keys) - 1, OP_CHECKMULTISIG])


def parse_multisig_script(script: bytes) -> Optional[Tuple[int, List[bytes]]]:
    """
    Decode a bare OP_CHECKMULTISIG script.

    Returns:
        Tuple of (threshold, pubkeys) or None if the script is not multisig
    """
    if len(script) < 37 or script[-1] != OP_CHECKMULTISIG:
        return None
    if not OP_1 <= script[0] <= OP_16 or not OP_1 <= script[-2] <= OP_16:
        return None

    threshold = script[0] - OP_1 + 1
    pubkeys = []
    offset = 1
    while offset < len(script) - 2:
        length = script[offset]
        if length not in (33, 65) or offset + 1 + length > len(script) - 2:
            return None
        pubkeys.append(script[offset + 1:offset + 1 + length])
        offset += 1 + length

    if offset != len(script) - 2 or len(pubkeys) != script[-2] - OP_1 + 1:
        return None
    if threshold > len(pubkeys):
        return None
    return threshold, pubkeys


def p2wpkh_script_code(pubkey_hash: bytes) -> bytes:
    """BIP143 scriptCode for a P2WPKH spend (the equivalent P2PKH script)."""
    return p2pkh_script(pubkey_hash)
