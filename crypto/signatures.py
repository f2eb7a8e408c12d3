"""
ECDSA and Schnorr Signature Operations

This module provides ECDSA signatures in the form Bitcoin transaction inputs
carry them (strict DER, low-S, trailing sighash byte) and BIP340 Schnorr
signatures for Taproot key-path spends.

References:
- BIP66: https://github.com/bitcoin/bips/blob/master/bip-0066.mediawiki
- BIP146: https://github.com/bitcoin/bips/blob/master/bip-0146.mediawiki
- BIP340: https://github.com/bitcoin/bips/blob/master/bip-0340.mediawiki
"""

from dataclasses import dataclass
from typing import Optional

from coincurve.keys import PublicKeyXOnly

from .exceptions import InvalidSignatureError
from .keys import BIP32_CURVE_ORDER, PrivateKey, PublicKey

HALF_CURVE_ORDER = BIP32_CURVE_ORDER // 2


@dataclass
class ECDSASignature:
    """
    ECDSA signature representation.
    """
    r: int
    s: int

    def __post_init__(self):
        """Validate signature components."""
        if not (1 <= self.r < BIP32_CURVE_ORDER):
            raise InvalidSignatureError("Invalid r value")
        if not (1 <= self.s < BIP32_CURVE_ORDER):
            raise InvalidSignatureError("Invalid s value")

    @classmethod
    def from_der(cls, der_bytes: bytes) -> 'ECDSASignature':
        """
        Parse a strictly DER-encoded signature.

        Args:
            der_bytes: DER-encoded signature (no sighash byte)

        Returns:
            ECDSASignature object
        """
        if len(der_bytes) < 8 or len(der_bytes) > 72:
            raise InvalidSignatureError("DER signature has invalid length")
        if der_bytes[0] != 0x30:
            raise InvalidSignatureError("Invalid DER signature header")
        if der_bytes[1] != len(der_bytes) - 2:
            raise InvalidSignatureError("Invalid DER length")

        offset = 2
        values = []
        for name in ("r", "s"):
            if offset + 2 > len(der_bytes) or der_bytes[offset] != 0x02:
                raise InvalidSignatureError(f"Invalid {name} component")
            length = der_bytes[offset + 1]
            start = offset + 2
            end = start + length
            if length == 0 or end > len(der_bytes):
                raise InvalidSignatureError(f"Invalid {name} length")
            value = der_bytes[start:end]
            if value[0] & 0x80:
                raise InvalidSignatureError(f"Negative {name} value")
            if length > 1 and value[0] == 0 and not value[1] & 0x80:
                raise InvalidSignatureError(f"Non-minimal {name} encoding")
            values.append(int.from_bytes(value, 'big'))
            offset = end

        if offset != len(der_bytes):
            raise InvalidSignatureError("Trailing bytes in DER signature")

        return cls(r=values[0], s=values[1])

    def to_der(self) -> bytes:
        """
        Encode signature in DER format.

        Returns:
            DER-encoded signature
        """
        def encode_int(value: int) -> bytes:
            raw = value.to_bytes((value.bit_length() + 7) // 8, 'big')
            if raw[0] >= 0x80:
                raw = b'\x00' + raw
            return b'\x02' + bytes([len(raw)]) + raw

        sequence = encode_int(self.r) + encode_int(self.s)
        return b'\x30' + bytes([len(sequence)]) + sequence

    @property
    def is_low_s(self) -> bool:
        """Check if the signature has a low s value (BIP62)."""
        return self.s <= HALF_CURVE_ORDER


def sign_ecdsa(private_key: PrivateKey, message_hash: bytes) -> ECDSASignature:
    """
    Sign a sighash digest with ECDSA.

    Args:
        private_key: Private key for signing
        message_hash: 32-byte message hash

    Returns:
        ECDSA signature (always low-S)
    """
    if len(message_hash) != 32:
        raise InvalidSignatureError("Message hash must be 32 bytes")

    signature = ECDSASignature.from_der(private_key.sign(message_hash))
    if not signature.is_low_s:
        # libsecp256k1 normalizes, so this indicates a broken backend
        raise InvalidSignatureError("Signer produced a high-S signature")
    return signature


def verify_ecdsa(public_key: PublicKey, signature: ECDSASignature,
                 message_hash: bytes) -> bool:
    """
    Verify ECDSA signature.

    Args:
        public_key: Public key for verification
        signature: ECDSA signature to verify
        message_hash: 32-byte message hash

    Returns:
        True if signature is valid
    """
    return public_key.verify(signature.to_der(), message_hash)


def encode_transaction_signature(signature: ECDSASignature, sighash_type: int) -> bytes:
    """DER signature followed by the one-byte sighash type."""
    if not 0 <= sighash_type <= 0xFF:
        raise InvalidSignatureError(f"Sighash type does not fit in one byte: {sighash_type}")
    return signature.to_der() + bytes([sighash_type])


def sign_schnorr(private_key: PrivateKey, message: bytes,
                 aux_rand: bytes) -> bytes:
    """
    Sign a 32-byte message with BIP340 Schnorr.

    Args:
        private_key: Private key for signing
        message: 32-byte message
        aux_rand: 32-byte auxiliary randomness

    Returns:
        64-byte signature
    """
    try:
        signature = private_key.sign_schnorr(message, aux_rand)
    except ValueError as e:
        raise InvalidSignatureError(f"Schnorr signing failed: {e}") from e
    if len(signature) != 64:
        raise InvalidSignatureError("Schnorr signature must be 64 bytes")
    return signature


def verify_schnorr(x_only_pubkey: bytes, signature: bytes,
                   message: bytes) -> bool:
    """
    Verify a BIP340 Schnorr signature.

    Args:
        x_only_pubkey: 32-byte x-only public key
        signature: 64-byte signature
        message: 32-byte message

    Returns:
        True if signature is valid
    """
    if len(x_only_pubkey) != 32 or len(signature) != 64 or len(message) != 32:
        return False
    try:
        return PublicKeyXOnly(x_only_pubkey).verify(signature, message)
    except ValueError:
        return False


def parse_transaction_signature(data: bytes) -> Optional[ECDSASignature]:
    """Parse a DER signature with trailing sighash byte, or None if invalid."""
    try:
        return ECDSASignature.from_der(data[:-1])
    except InvalidSignatureError:
        return None
