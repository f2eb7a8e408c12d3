"""
Key Store

Persistence of Key Records behind a create-if-absent / conditional-write
contract, plus the Randomness Sources used at key creation.
"""

from .exceptions import (
    KeyExistsError,
    KeyNotFoundError,
    RandomnessUnavailableError,
    StorageError,
    StorageUnavailableError,
    VersionConflictError,
)
from .randomness import (
    DeviceRandomnessSource,
    RandomnessSource,
    SystemRandomnessSource,
    create_randomness_source,
)
from .schema import (
    CosignerKey,
    ExtendedPublicKey,
    KeyRecord,
    PublicSummary,
    WalletDescriptor,
)
from .storage import (
    FileKeyStore,
    HTTPKeyStore,
    KeyStore,
    MemoryKeyStore,
    StoredObject,
    create_key_store,
)

__all__ = [
    "KeyExistsError",
    "KeyNotFoundError",
    "RandomnessUnavailableError",
    "StorageError",
    "StorageUnavailableError",
    "VersionConflictError",
    "DeviceRandomnessSource",
    "RandomnessSource",
    "SystemRandomnessSource",
    "create_randomness_source",
    "CosignerKey",
    "ExtendedPublicKey",
    "KeyRecord",
    "PublicSummary",
    "WalletDescriptor",
    "FileKeyStore",
    "HTTPKeyStore",
    "KeyStore",
    "MemoryKeyStore",
    "StoredObject",
    "create_key_store",
]
