"""
Signing Service Exceptions

Error taxonomy reported by the signing backend. Every failure that leaves the
component layer is a ``SigningServiceError`` carrying an ``ErrorKind``, which
the Request Dispatcher maps to an HTTP status code.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Kinds of failure reported to callers."""
    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    MALFORMED_INPUT = "MalformedInput"
    CONFLICT = "Conflict"
    NO_WALLET_ATTACHED = "NoWalletAttached"
    NOTHING_TO_SIGN = "NothingToSign"
    UNSUPPORTED_SCRIPT = "UnsupportedScript"
    POLICY_VIOLATION = "PolicyViolation"
    INTERNAL = "Internal"


HTTP_STATUS = {
    ErrorKind.MALFORMED_INPUT: 400,
    ErrorKind.POLICY_VIOLATION: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_EXISTS: 409,
    ErrorKind.CONFLICT: 412,
    ErrorKind.NO_WALLET_ATTACHED: 422,
    ErrorKind.NOTHING_TO_SIGN: 422,
    ErrorKind.UNSUPPORTED_SCRIPT: 422,
    ErrorKind.INTERNAL: 503,
}

RETRYABLE_KINDS = (ErrorKind.CONFLICT, ErrorKind.INTERNAL)


class SigningServiceError(Exception):
    """Base exception for signing backend errors."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def http_status(self) -> int:
        return HTTP_STATUS[self.kind]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
        }


class NotFoundError(SigningServiceError):
    """No key is stored under the requested name."""
    kind = ErrorKind.NOT_FOUND


class AlreadyExistsError(SigningServiceError):
    """A key with the requested name already exists."""
    kind = ErrorKind.ALREADY_EXISTS


class MalformedInputError(SigningServiceError):
    """Request input could not be parsed or is inconsistent."""
    kind = ErrorKind.MALFORMED_INPUT


class ConflictError(SigningServiceError):
    """The key record changed while the request was processed."""
    kind = ErrorKind.CONFLICT


class NoWalletAttachedError(SigningServiceError):
    """Signing requires an imported wallet."""
    kind = ErrorKind.NO_WALLET_ATTACHED


class NothingToSignError(SigningServiceError):
    """No PSBT input belongs to the key."""
    kind = ErrorKind.NOTHING_TO_SIGN


class UnsupportedScriptError(SigningServiceError):
    """Owned inputs use scripts the signer cannot handle."""
    kind = ErrorKind.UNSUPPORTED_SCRIPT

    def __init__(self, message: str, input_indexes: Optional[List[int]] = None):
        super().__init__(message)
        self.input_indexes = input_indexes or []


class PolicyViolationError(SigningServiceError):
    """One or more spending policies refused the transaction."""
    kind = ErrorKind.POLICY_VIOLATION

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("; ".join(self.violations))


class InternalError(SigningServiceError):
    """Backend failure: storage, randomness or an unexpected error."""
    kind = ErrorKind.INTERNAL
