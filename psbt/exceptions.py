"""
PSBT Exceptions

This module defines custom exceptions for PSBT parsing, validation,
construction and sighash computation.
"""


class PSBTError(Exception):
    """Base exception for PSBT-related errors."""
    pass


class PSBTParsingError(PSBTError):
    """Exception raised when PSBT bytes are structurally malformed."""
    pass


class PSBTValidationError(PSBTError):
    """Exception raised when a well-formed PSBT violates BIP174 rules."""
    pass


class PSBTConstructionError(PSBTError):
    """Exception raised during PSBT construction."""
    pass


class TransactionParsingError(PSBTError):
    """Exception raised when a serialized transaction cannot be decoded."""
    pass


class InvalidScriptError(PSBTError):
    """Exception raised for invalid script operations."""
    pass


class UnsupportedScriptTypeError(PSBTError):
    """Exception raised for script types that cannot be signed."""
    pass


class SighashError(PSBTError):
    """Exception raised when a signature hash cannot be computed."""
    pass
