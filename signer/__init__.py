"""
Signing Backend

Key management, wallet import, spending policies and PSBT signing behind a
request/response dispatcher (``signer.dispatcher``).
"""

from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    ErrorKind,
    InternalError,
    MalformedInputError,
    NotFoundError,
    NothingToSignError,
    NoWalletAttachedError,
    PolicyViolationError,
    SigningServiceError,
    UnsupportedScriptError,
)

__all__ = [
    "AlreadyExistsError",
    "ConflictError",
    "ErrorKind",
    "InternalError",
    "MalformedInputError",
    "NotFoundError",
    "NothingToSignError",
    "NoWalletAttachedError",
    "PolicyViolationError",
    "SigningServiceError",
    "UnsupportedScriptError",
]
