"""
Cryptographic Operations for the Signing Backend

This package provides:
- BIP32 extended keys, derivation paths and xpub serialization
- BIP39 seed derivation from stored entropy
- ECDSA and BIP340 Schnorr signatures
- Taproot key tweaking

Dependencies:
- coincurve: Fast secp256k1 operations
- mnemonic: BIP39 wordlists and seed stretching
- pycryptodome: RIPEMD160 for HASH160
- base58: Base58check encoding of extended keys
"""

from .exceptions import (
    CryptoError,
    InvalidKeyError,
    InvalidSignatureError,
    DerivationError,
    ExtendedKeyFormatError,
)
from .keys import (
    DEFAULT_ACCOUNT_PATH,
    ExtendedKey,
    PrivateKey,
    PublicKey,
    format_derivation_path,
    hash160,
    parse_derivation_path,
    parse_extended_public_key,
    seed_from_entropy,
    seed_to_master_key,
    tagged_hash,
)
from .signatures import (
    ECDSASignature,
    sign_ecdsa,
    sign_schnorr,
    verify_ecdsa,
    verify_schnorr,
)

__all__ = [
    "CryptoError",
    "InvalidKeyError",
    "InvalidSignatureError",
    "DerivationError",
    "ExtendedKeyFormatError",
    "DEFAULT_ACCOUNT_PATH",
    "ExtendedKey",
    "PrivateKey",
    "PublicKey",
    "format_derivation_path",
    "hash160",
    "parse_derivation_path",
    "parse_extended_public_key",
    "seed_from_entropy",
    "seed_to_master_key",
    "tagged_hash",
    "ECDSASignature",
    "sign_ecdsa",
    "sign_schnorr",
    "verify_ecdsa",
    "verify_schnorr",
]
