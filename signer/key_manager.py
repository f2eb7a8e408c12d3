"""
Key Manager

Creates signing keys, loads Key Records and derives public and private
children from the stored seed. Private material lives only in the locals of
a single request.
"""

import logging
from contextlib import contextmanager
from typing import Optional, Tuple

from crypto.exceptions import CryptoError, DerivationError
from crypto.keys import (
    ExtendedKey,
    format_derivation_path,
    parse_derivation_path,
    seed_from_entropy,
    seed_to_master_key,
)
from keystore.exceptions import (
    KeyExistsError,
    KeyNotFoundError,
    RandomnessUnavailableError,
    StorageError,
    VersionConflictError,
)
from keystore.randomness import RandomnessSource
from keystore.schema import (
    ExtendedPublicKey,
    KeyRecord,
    PublicSummary,
    RecordSchemaError,
    is_valid_key_name,
)
from keystore.storage import KeyStore

from .config import SignerSettings
from .exceptions import (
    AlreadyExistsError,
    ConflictError,
    InternalError,
    MalformedInputError,
    NotFoundError,
)

logger = logging.getLogger(__name__)


@contextmanager
def storage_errors(name: str):
    """Translate Key Store exceptions into signing service errors."""
    try:
        yield
    except KeyNotFoundError as e:
        raise NotFoundError(f"Key '{name}' not found") from e
    except KeyExistsError as e:
        raise AlreadyExistsError(f"Key '{name}' already exists") from e
    except VersionConflictError as e:
        raise ConflictError(f"Key '{name}' was modified concurrently; retry the request") from e
    except StorageError as e:
        raise InternalError(f"Key store unavailable: {e}") from e


def validate_key_name(name: str) -> None:
    if not is_valid_key_name(name):
        raise MalformedInputError(
            'Key name must be 1-128 characters of letters, digits, ".", "_" or "-"'
        )


class KeyManager:
    """
    Key lifecycle operations over a Key Store.

    Args:
        store: Key Store backend
        randomness: Source of entropy for new keys
        settings: Backend settings (network, account path, entropy size)
    """

    def __init__(self, store: KeyStore, randomness: RandomnessSource,
                 settings: Optional[SignerSettings] = None):
        self.store = store
        self.randomness = randomness
        self.settings = settings or SignerSettings()

    def create_key(self, name: str) -> PublicSummary:
        """
        Create and persist a new signing key.

        Args:
            name: Caller chosen key name

        Returns:
            PublicSummary with the master fingerprint and the account xpub

        Raises:
            MalformedInputError: Invalid name
            AlreadyExistsError: Name already taken
            InternalError: Randomness or storage failure
        """
        validate_key_name(name)
        derivation = self.settings.key_derivation
        network = self.settings.network

        try:
            entropy = self.randomness.get_random_bytes(derivation.entropy_bytes)
        except RandomnessUnavailableError as e:
            raise InternalError(f"Randomness source unavailable: {e}") from e
        if len(entropy) != derivation.entropy_bytes:
            raise InternalError("Randomness source returned the wrong number of bytes")

        master = seed_to_master_key(seed_from_entropy(entropy))
        record = KeyRecord(
            name=name,
            seed=entropy.hex(),
            fingerprint=master.fingerprint.hex(),
            account_path=derivation.account_path,
            network=network,
        )

        with storage_errors(name):
            self.store.create_if_absent(name, record.to_bytes())

        account_xpub = master.derive_path(record.account_path).to_xpub(network)
        logger.info(f"Created key '{name}' with fingerprint {record.fingerprint}")
        return PublicSummary(
            name=name,
            fingerprint=record.fingerprint,
            derivation=record.account_path,
            xpub=account_xpub,
        )

    def load_record(self, name: str) -> Tuple[KeyRecord, str]:
        """
        Read a Key Record with the version token it was read at.

        Raises:
            NotFoundError: No record under ``name``
            InternalError: Storage failure or unreadable record
        """
        validate_key_name(name)
        with storage_errors(name):
            stored = self.store.read(name)

        try:
            record = KeyRecord.from_bytes(stored.data)
        except RecordSchemaError as e:
            raise InternalError(f"Stored record for '{name}' is corrupt") from e
        if record.name != name:
            raise InternalError(f"Stored record for '{name}' carries name '{record.name}'")
        return record, stored.version

    def master_key(self, record: KeyRecord) -> ExtendedKey:
        """Master private key of a record, checked against its fingerprint."""
        master = seed_to_master_key(seed_from_entropy(record.entropy))
        if master.fingerprint.hex() != record.fingerprint:
            raise InternalError(f"Seed of '{record.name}' does not match its fingerprint")
        return master

    def get_xpub(self, name: str, path: Optional[str] = None) -> ExtendedPublicKey:
        """
        Extended public key of a stored key at ``path``.

        Args:
            name: Key name
            path: Absolute derivation path; defaults to the record's account path

        Raises:
            MalformedInputError: Invalid name or path
            NotFoundError: Unknown key
        """
        validate_key_name(name)
        if path is not None:
            try:
                indices = parse_derivation_path(path)
            except DerivationError as e:
                raise MalformedInputError(f"Invalid derivation path: {e}") from e

        record, _ = self.load_record(name)
        if path is None:
            indices = parse_derivation_path(record.account_path)

        child = self.master_key(record).derive_path(indices)
        return ExtendedPublicKey(
            name=name,
            fingerprint=record.fingerprint,
            path=format_derivation_path(indices),
            xpub=child.to_xpub(record.network.value),
        )

    def derive_signing_key(self, record: KeyRecord, path,
                           master: Optional[ExtendedKey] = None) -> ExtendedKey:
        """
        Private child key for one signing operation.

        Args:
            record: Key Record holding the seed
            path: Derivation path string or index list
            master: Master key already derived for this request
        """
        if master is None:
            master = self.master_key(record)
        try:
            return master.derive_path(path)
        except CryptoError as e:
            raise InternalError(f"Key derivation failed: {e}") from e
