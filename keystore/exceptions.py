"""
Key Store Exceptions

Errors raised by Key Store backends and Randomness Sources.
"""


class StorageError(Exception):
    """Base storage exception."""
    pass


class KeyNotFoundError(StorageError):
    """No object is stored under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Key '{name}' not found")


class KeyExistsError(StorageError):
    """An object already exists under the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Key '{name}' already exists")


class VersionConflictError(StorageError):
    """The stored object changed since the caller read it."""

    def __init__(self, name: str, expected: str, actual: str = None):
        self.name = name
        self.expected = expected
        self.actual = actual
        super().__init__(f"Key '{name}' was modified concurrently (expected version {expected})")


class StorageUnavailableError(StorageError):
    """The backend could not be reached or returned an unexpected response."""
    pass


class LockTimeoutError(StorageUnavailableError):
    """Lock acquisition timeout exception."""
    pass


class RandomnessUnavailableError(Exception):
    """The randomness source failed to deliver the requested bytes."""
    pass
