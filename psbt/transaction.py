"""
Bitcoin Transaction Codec

Minimal transaction model used by the PSBT layer: the unsigned transaction
of a PSBT, full previous transactions (non_witness_utxo) and spent outputs
(witness_utxo). Serialization is byte-exact for canonical encodings.

References:
- BIP144: https://github.com/bitcoin/bips/blob/master/bip-0144.mediawiki
"""

import struct
from dataclasses import dataclass, field
from typing import List, Tuple

from bitcoinlib.transactions import Transaction as LibTransaction

from .exceptions import TransactionParsingError
from .utils import (
    double_sha256,
    serialize_compact_size,
    serialize_varstr,
    varstr_parse,
)

MAX_OUTPUT_VALUE = (1 << 63) - 1


@dataclass
class TxOut:
    """Transaction output."""
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack('<q', self.value) + serialize_varstr(self.script_pubkey)

    @classmethod
    def parse(cls, data: bytes, offset: int = 0) -> Tuple['TxOut', int]:
        if offset + 8 > len(data):
            raise ValueError("Insufficient data for output value")
        value = struct.unpack('<q', data[offset:offset + 8])[0]
        if value < 0:
            raise ValueError("Negative output value")
        script_pubkey, offset = varstr_parse(data, offset + 8)
        return cls(value=value, script_pubkey=script_pubkey), offset

    @classmethod
    def from_bytes(cls, data: bytes) -> 'TxOut':
        """Decode a standalone serialized output (PSBT_IN_WITNESS_UTXO)."""
        try:
            txout, offset = cls.parse(data, 0)
        except ValueError as e:
            raise TransactionParsingError(f"Invalid transaction output: {e}") from e
        if offset != len(data):
            raise TransactionParsingError("Trailing bytes after transaction output")
        return txout


@dataclass
class TxIn:
    """Transaction input. ``prev_txid`` is kept in serialization byte order."""
    prev_txid: bytes
    prev_vout: int
    script_sig: bytes = b''
    sequence: int = 0xffffffff
    witness: List[bytes] = field(default_factory=list)

    @property
    def outpoint(self) -> bytes:
        return self.prev_txid + struct.pack('<I', self.prev_vout)

    def serialize(self) -> bytes:
        return self.outpoint + serialize_varstr(self.script_sig) + struct.pack('<I', self.sequence)


@dataclass
class Transaction:
    """
    Bitcoin transaction.

    Attributes:
        version: Transaction version
        inputs: Transaction inputs
        outputs: Transaction outputs
        locktime: Lock time
    """
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """
        Serialize the transaction.

        Args:
            include_witness: Use the BIP144 format when any input has a witness

        Returns:
            Serialized transaction
        """
        segwit = include_witness and self.has_witness
        parts = [struct.pack('<i', self.version)]
        if segwit:
            parts.append(b'\x00\x01')
        parts.append(serialize_compact_size(len(self.inputs)))
        parts.extend(txin.serialize() for txin in self.inputs)
        parts.append(serialize_compact_size(len(self.outputs)))
        parts.extend(txout.serialize() for txout in self.outputs)
        if segwit:
            for txin in self.inputs:
                parts.append(serialize_compact_size(len(txin.witness)))
                parts.extend(serialize_varstr(item) for item in txin.witness)
        parts.append(struct.pack('<I', self.locktime))
        return b''.join(parts)

    def txid_bytes(self) -> bytes:
        """Transaction id in serialization byte order."""
        return double_sha256(self.serialize(include_witness=False))

    def txid(self) -> str:
        """Transaction id in display order."""
        return self.txid_bytes()[::-1].hex()

    @classmethod
    def parse(cls, data: bytes, allow_witness: bool = True) -> 'Transaction':
        """
        Decode a serialized transaction.

        bitcoinlib does the decoding. Its inputs rebuild scriptSigs and
        witnesses from the signatures they recognize, so the result is
        re-encoded and must reproduce ``data`` exactly.

        Args:
            data: Serialized transaction bytes
            allow_witness: Accept the BIP144 extended format

        Returns:
            Transaction

        Raises:
            TransactionParsingError: If the bytes are not exactly one transaction
        """
        if len(data) < 10:
            raise TransactionParsingError("Invalid transaction: too short")
        if not allow_witness and data[4] == 0x00:
            raise TransactionParsingError("Witness serialization not allowed")

        try:
            lib_tx = LibTransaction.parse_hex(data.hex(), strict=False)
        except Exception as e:
            raise TransactionParsingError(f"Invalid transaction: {e}") from e

        tx = cls._from_library(lib_tx)
        encoded = tx.serialize()
        if len(encoded) < len(data) and data.startswith(encoded):
            raise TransactionParsingError(
                f"Trailing bytes after transaction: {len(data) - len(encoded)}"
            )
        if encoded != data:
            raise TransactionParsingError("Invalid transaction: not a canonical encoding")
        return tx

    @classmethod
    def _from_library(cls, lib_tx: LibTransaction) -> 'Transaction':
        inputs = [
            TxIn(
                prev_txid=bytes(inp.prev_txid)[::-1],
                prev_vout=inp.output_n_int,
                script_sig=bytes(inp.unlocking_script or b''),
                sequence=int(inp.sequence),
                witness=[bytes(item) for item in inp.witnesses or []],
            )
            for inp in lib_tx.inputs
        ]

        outputs = []
        for out in lib_tx.outputs:
            value = int(out.value)
            if value > MAX_OUTPUT_VALUE:
                raise TransactionParsingError("Negative output value")
            outputs.append(TxOut(value=value, script_pubkey=bytes(out.lock_script or b'')))

        # nVersion is signed on the wire, bitcoinlib reads it unsigned
        version = lib_tx.version_int
        if version >= 1 << 31:
            version -= 1 << 32

        return cls(version, inputs, outputs, int(lib_tx.locktime))
