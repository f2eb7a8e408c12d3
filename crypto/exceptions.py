"""
Cryptographic Exceptions for the Signing Backend

This module defines custom exceptions for key handling, derivation and
signing.
"""


class CryptoError(Exception):
    """Base exception for all cryptographic errors."""
    pass


class InvalidKeyError(CryptoError):
    """Raised when a key is invalid or malformed."""
    pass


class InvalidSignatureError(CryptoError):
    """Raised when a signature is invalid or verification fails."""
    pass


class DerivationError(CryptoError):
    """Raised when key derivation fails."""
    pass


class ExtendedKeyFormatError(CryptoError):
    """Raised when a serialized extended key cannot be decoded."""
    pass
