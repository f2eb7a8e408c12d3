"""
PSBT Utilities

This module provides the low-level encoding helpers shared by the PSBT
parser, the transaction codec and the PSBT builder.
"""

import hashlib
import struct
from typing import List, Tuple

from bitcoinlib.encoding import varstr

# prefix byte -> (struct format, payload width, smallest canonical value)
_COMPACT_SIZE_WIDTHS = {
    0xfd: ('<H', 2, 0xfd),
    0xfe: ('<I', 4, 0x10000),
    0xff: ('<Q', 8, 0x100000000),
}


def serialize_compact_size(n: int) -> bytes:
    """
    Serialize integer as Bitcoin compact size.

    Args:
        n: Integer to serialize

    Returns:
        Compact size encoded bytes
    """
    if n < 0:
        raise ValueError("Compact size cannot be negative")
    if n < 0xfd:
        return struct.pack('<B', n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack('<H', n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack('<I', n)
    else:
        return b'\xff' + struct.pack('<Q', n)


def parse_compact_size(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Parse Bitcoin compact size from bytes.

    Non-canonical encodings are rejected.

    Args:
        data: Bytes to parse
        offset: Starting offset in bytes

    Returns:
        Tuple of (value, new_offset)
    """
    if offset >= len(data):
        raise ValueError("Truncated compact size")

    prefix = data[offset]
    if prefix not in _COMPACT_SIZE_WIDTHS:
        return prefix, offset + 1

    fmt, width, minimum = _COMPACT_SIZE_WIDTHS[prefix]
    end = offset + 1 + width
    if end > len(data):
        raise ValueError(f"Truncated {width}-byte compact size")
    value = struct.unpack(fmt, data[offset + 1:end])[0]
    if value < minimum:
        raise ValueError("Non-canonical compact size")
    return value, end


def varstr_parse(data: bytes, offset: int = 0) -> Tuple[bytes, int]:
    """
    Parse length-prefixed bytes.

    Args:
        data: Bytes to parse
        offset: Starting offset

    Returns:
        Tuple of (parsed_data, new_offset)
    """
    length, new_offset = parse_compact_size(data, offset)
    if new_offset + length > len(data):
        raise ValueError(f"Truncated field: need {length} bytes")

    return data[new_offset:new_offset + length], new_offset + length


def serialize_varstr(data: bytes) -> bytes:
    """Length-prefix ``data`` with a compact size."""
    # varstr passes a lone null byte through without a length prefix
    if data == b'\x00':
        return b'\x01\x00'
    return bytes(varstr(data))


def serialize_key_value(key: bytes, value: bytes) -> bytes:
    """
    Serialize key-value pair in PSBT format.

    Args:
        key: Key bytes
        value: Value bytes

    Returns:
        Serialized key-value pair
    """
    return serialize_varstr(key) + serialize_varstr(value)


def parse_key_value(data: bytes, offset: int = 0) -> Tuple[bytes, bytes, int]:
    """
    Parse key-value pair from PSBT format.

    Args:
        data: Bytes to parse
        offset: Starting offset

    Returns:
        Tuple of (key, value, new_offset). An empty key marks the end of a map.
    """
    key, offset = varstr_parse(data, offset)
    if not key:
        return b'', b'', offset

    value, offset = varstr_parse(data, offset)
    return key, value, offset


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def double_sha256(data: bytes) -> bytes:
    """
    Calculate double SHA256 hash (used for transaction IDs).

    Args:
        data: Data to hash

    Returns:
        Double SHA256 hash
    """
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def encode_bip32_path(path: List[int]) -> bytes:
    """
    Encode BIP32 derivation path.

    Args:
        path: List of path components

    Returns:
        Encoded path bytes
    """
    return b''.join(struct.pack('<I', p) for p in path)


def decode_bip32_path(data: bytes) -> List[int]:
    """
    Decode BIP32 derivation path.

    Args:
        data: Encoded path bytes

    Returns:
        List of path components
    """
    if len(data) % 4 != 0:
        raise ValueError("Invalid BIP32 path length")

    return [struct.unpack('<I', data[i:i + 4])[0] for i in range(0, len(data), 4)]


def encode_key_origin(fingerprint: bytes, path: List[int]) -> bytes:
    """Master fingerprint followed by the little-endian path indices."""
    if len(fingerprint) != 4:
        raise ValueError("Fingerprint must be 4 bytes")
    return fingerprint + encode_bip32_path(path)


def decode_key_origin(data: bytes) -> Tuple[bytes, List[int]]:
    """
    Decode a key origin value (fingerprint + path).

    Args:
        data: Value of a BIP32 derivation field

    Returns:
        Tuple of (fingerprint, path)
    """
    if len(data) < 4:
        raise ValueError("Key origin too short")
    return data[:4], decode_bip32_path(data[4:])


def decode_tap_bip32_derivation(data: bytes) -> Tuple[List[bytes], bytes, List[int]]:
    """
    Decode a PSBT_IN_TAP_BIP32_DERIVATION / PSBT_OUT_TAP_BIP32_DERIVATION value.

    Returns:
        Tuple of (leaf_hashes, fingerprint, path)
    """
    count, offset = parse_compact_size(data, 0)
    end = offset + 32 * count
    if end > len(data):
        raise ValueError("Insufficient data for leaf hashes")
    leaf_hashes = [data[i:i + 32] for i in range(offset, end, 32)]
    fingerprint, path = decode_key_origin(data[end:])
    return leaf_hashes, fingerprint, path


def encode_tap_bip32_derivation(leaf_hashes: List[bytes], fingerprint: bytes,
                                path: List[int]) -> bytes:
    return (
        serialize_compact_size(len(leaf_hashes))
        + b''.join(leaf_hashes)
        + encode_key_origin(fingerprint, path)
    )
