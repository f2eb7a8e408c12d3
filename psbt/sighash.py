"""
Signature Hash Algorithms

This module computes the digest a signature commits to for the three spend
families a PSBT signer meets: legacy (pre-segwit), segwit v0 and Taproot key
path.

References:
- Legacy: https://en.bitcoin.it/wiki/OP_CHECKSIG
- BIP143: https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
- BIP341: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
"""

import struct
from typing import List

from crypto.keys import tagged_hash

from .exceptions import SighashError
from .transaction import Transaction, TxOut
from .utils import double_sha256, serialize_compact_size, serialize_varstr, sha256

SIGHASH_DEFAULT = 0x00
SIGHASH_ALL = 0x01
SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

TAPROOT_SIGHASH_TYPES = (0x00, 0x01, 0x02, 0x03, 0x81, 0x82, 0x83)

OP_CODESEPARATOR = 0xab
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e

ZERO32 = b'\x00' * 32


def is_valid_ecdsa_sighash(sighash_type: int) -> bool:
    """True for ALL, NONE or SINGLE, optionally with ANYONECANPAY."""
    return sighash_type & ~SIGHASH_ANYONECANPAY in (SIGHASH_ALL, SIGHASH_NONE, SIGHASH_SINGLE)


def remove_codeseparators(script: bytes) -> bytes:
    """
    Strip OP_CODESEPARATOR opcodes, leaving push data untouched.

    Args:
        script: Script bytes

    Returns:
        Script without OP_CODESEPARATOR
    """
    result = bytearray()
    offset = 0
    while offset < len(script):
        opcode = script[offset]
        start = offset
        offset += 1
        if 0 < opcode < OP_PUSHDATA1:
            offset += opcode
        elif opcode == OP_PUSHDATA1:
            if offset + 1 > len(script):
                raise SighashError("Truncated OP_PUSHDATA1")
            offset += 1 + script[offset]
        elif opcode == OP_PUSHDATA2:
            if offset + 2 > len(script):
                raise SighashError("Truncated OP_PUSHDATA2")
            offset += 2 + int.from_bytes(script[offset:offset + 2], 'little')
        elif opcode == OP_PUSHDATA4:
            if offset + 4 > len(script):
                raise SighashError("Truncated OP_PUSHDATA4")
            offset += 4 + int.from_bytes(script[offset:offset + 4], 'little')
        elif opcode == OP_CODESEPARATOR:
            continue
        if offset > len(script):
            raise SighashError("Push past end of script")
        result += script[start:offset]
    return bytes(result)


def legacy_sighash(tx: Transaction, index: int, script_code: bytes, sighash_type: int) -> bytes:
    """
    Compute the pre-segwit signature hash.

    SIGHASH_SINGLE with no matching output hashes to the constant 1, as the
    consensus rules require.

    Args:
        tx: Unsigned transaction
        index: Input being signed
        script_code: Previous output script (or redeem script for P2SH)
        sighash_type: Sighash flags

    Returns:
        32-byte digest
    """
    if index >= len(tx.inputs):
        raise SighashError(f"Input index {index} out of range")

    base_type = sighash_type & 0x1f
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    if base_type == SIGHASH_SINGLE and index >= len(tx.outputs):
        return (1).to_bytes(32, 'little')

    script_code = remove_codeseparators(script_code)

    if anyone_can_pay:
        signed_inputs = [index]
    else:
        signed_inputs = range(len(tx.inputs))

    parts = [struct.pack('<i', tx.version), serialize_compact_size(len(signed_inputs))]

    for i in signed_inputs:
        txin = tx.inputs[i]
        script = script_code if i == index else b''
        sequence = txin.sequence
        if i != index and base_type in (SIGHASH_NONE, SIGHASH_SINGLE):
            sequence = 0
        parts.append(txin.outpoint + serialize_varstr(script) + struct.pack('<I', sequence))

    if base_type == SIGHASH_NONE:
        outputs: List[TxOut] = []
    elif base_type == SIGHASH_SINGLE:
        outputs = [TxOut(value=-1, script_pubkey=b'') for _ in range(index)]
        outputs.append(tx.outputs[index])
    else:
        outputs = tx.outputs

    parts.append(serialize_compact_size(len(outputs)))
    parts.extend(txout.serialize() for txout in outputs)
    parts.append(struct.pack('<I', tx.locktime))
    parts.append(struct.pack('<I', sighash_type))

    return double_sha256(b''.join(parts))


def segwit_v0_sighash(tx: Transaction, index: int, script_code: bytes,
                      amount: int, sighash_type: int) -> bytes:
    """
    Compute the BIP143 signature hash.

    Args:
        tx: Unsigned transaction
        index: Input being signed
        script_code: BIP143 scriptCode
        amount: Value of the spent output in satoshis
        sighash_type: Sighash flags

    Returns:
        32-byte digest
    """
    if index >= len(tx.inputs):
        raise SighashError(f"Input index {index} out of range")

    base_type = sighash_type & 0x1f
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    hash_prevouts = ZERO32
    hash_sequence = ZERO32
    hash_outputs = ZERO32

    if not anyone_can_pay:
        hash_prevouts = double_sha256(b''.join(txin.outpoint for txin in tx.inputs))
        if base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
            hash_sequence = double_sha256(
                b''.join(struct.pack('<I', txin.sequence) for txin in tx.inputs)
            )

    if base_type not in (SIGHASH_SINGLE, SIGHASH_NONE):
        hash_outputs = double_sha256(b''.join(txout.serialize() for txout in tx.outputs))
    elif base_type == SIGHASH_SINGLE and index < len(tx.outputs):
        hash_outputs = double_sha256(tx.outputs[index].serialize())

    txin = tx.inputs[index]
    preimage = (
        struct.pack('<i', tx.version)
        + hash_prevouts
        + hash_sequence
        + txin.outpoint
        + serialize_varstr(script_code)
        + struct.pack('<q', amount)
        + struct.pack('<I', txin.sequence)
        + hash_outputs
        + struct.pack('<I', tx.locktime)
        + struct.pack('<I', sighash_type)
    )
    return double_sha256(preimage)


def taproot_key_path_sighash(tx: Transaction, index: int, spent_outputs: List[TxOut],
                             sighash_type: int) -> bytes:
    """
    Compute the BIP341 signature hash for a key-path spend without annex.

    Args:
        tx: Unsigned transaction
        index: Input being signed
        spent_outputs: Outputs spent by every input, in input order
        sighash_type: Sighash flags (SIGHASH_DEFAULT allowed)

    Returns:
        32-byte digest
    """
    if sighash_type not in TAPROOT_SIGHASH_TYPES:
        raise SighashError(f"Invalid taproot sighash type: {sighash_type:#x}")
    if index >= len(tx.inputs):
        raise SighashError(f"Input index {index} out of range")
    if len(spent_outputs) != len(tx.inputs):
        raise SighashError("Taproot signing needs the spent output of every input")

    base_type = sighash_type & 0x03
    anyone_can_pay = bool(sighash_type & SIGHASH_ANYONECANPAY)

    if base_type == SIGHASH_SINGLE and index >= len(tx.outputs):
        raise SighashError("SIGHASH_SINGLE without a matching output")

    msg = bytes([sighash_type]) + struct.pack('<i', tx.version) + struct.pack('<I', tx.locktime)

    if not anyone_can_pay:
        msg += sha256(b''.join(txin.outpoint for txin in tx.inputs))
        msg += sha256(b''.join(struct.pack('<q', txout.value) for txout in spent_outputs))
        msg += sha256(b''.join(serialize_varstr(txout.script_pubkey) for txout in spent_outputs))
        msg += sha256(b''.join(struct.pack('<I', txin.sequence) for txin in tx.inputs))

    if base_type not in (SIGHASH_NONE, SIGHASH_SINGLE):
        msg += sha256(b''.join(txout.serialize() for txout in tx.outputs))

    # spend_type: key path, no annex
    msg += b'\x00'

    txin = tx.inputs[index]
    if anyone_can_pay:
        spent = spent_outputs[index]
        msg += (
            txin.outpoint
            + struct.pack('<q', spent.value)
            + serialize_varstr(spent.script_pubkey)
            + struct.pack('<I', txin.sequence)
        )
    else:
        msg += struct.pack('<I', index)

    if base_type == SIGHASH_SINGLE:
        msg += sha256(tx.outputs[index].serialize())

    return tagged_hash("TapSighash", b'\x00' + msg)
