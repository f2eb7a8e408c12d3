"""
Key Store Backends

A Key Store persists one opaque byte object per key name and offers exactly
three operations: create-if-absent, read (with a version token) and
write-if-version. All coordination between concurrent requests goes through
these, so the signer itself keeps no state across requests.

Backends:
- MemoryKeyStore: process-local, for tests and single-process tools
- FileKeyStore: one JSON file per key in a directory
- HTTPKeyStore: S3-compatible object endpoint using ETag preconditions
"""

import fcntl
import hashlib
import logging
import os
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .exceptions import (
    KeyExistsError,
    KeyNotFoundError,
    LockTimeoutError,
    StorageError,
    StorageUnavailableError,
    VersionConflictError,
)
from .schema import is_valid_key_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    """Bytes of a stored key together with the version token they were read at."""
    data: bytes
    version: str


class KeyStore(ABC):
    """Byte-granular store with create-if-absent and conditional writes."""

    @abstractmethod
    def create_if_absent(self, name: str, data: bytes) -> str:
        """
        Store ``data`` under ``name`` unless something is already there.

        Returns:
            Version token of the new object

        Raises:
            KeyExistsError: If ``name`` is taken
        """

    @abstractmethod
    def read(self, name: str) -> StoredObject:
        """
        Read the object stored under ``name``.

        Raises:
            KeyNotFoundError: If nothing is stored under ``name``
        """

    @abstractmethod
    def write_if_version(self, name: str, data: bytes, expected_version: str) -> str:
        """
        Replace the object only if its version still equals ``expected_version``.

        Returns:
            New version token

        Raises:
            VersionConflictError: If the object changed since it was read
            KeyNotFoundError: If the object no longer exists
        """

    @staticmethod
    def _check_name(name: str) -> None:
        if not is_valid_key_name(name):
            raise StorageError(f"Invalid key name: {name!r}")


class MemoryKeyStore(KeyStore):
    """Thread-safe in-memory Key Store."""

    def __init__(self):
        self._objects: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()
        self._counter = 0

    def _next_version(self) -> str:
        self._counter += 1
        return str(self._counter)

    def create_if_absent(self, name: str, data: bytes) -> str:
        self._check_name(name)
        with self._lock:
            if name in self._objects:
                raise KeyExistsError(name)
            version = self._next_version()
            self._objects[name] = (bytes(data), version)
            return version

    def read(self, name: str) -> StoredObject:
        self._check_name(name)
        with self._lock:
            if name not in self._objects:
                raise KeyNotFoundError(name)
            data, version = self._objects[name]
            return StoredObject(data, version)

    def write_if_version(self, name: str, data: bytes, expected_version: str) -> str:
        self._check_name(name)
        with self._lock:
            if name not in self._objects:
                raise KeyNotFoundError(name)
            current = self._objects[name][1]
            if current != expected_version:
                raise VersionConflictError(name, expected_version, current)
            version = self._next_version()
            self._objects[name] = (bytes(data), version)
            return version


class FileLock:
    """Exclusive advisory lock on a companion ``.lock`` file."""

    def __init__(self, file_path: Union[str, Path], timeout: float = 10.0):
        self.file_path = Path(file_path)
        self.lock_file_path = self.file_path.with_suffix(self.file_path.suffix + '.lock')
        self.timeout = timeout
        self.lock_fd: Optional[int] = None

    def acquire(self) -> None:
        """Acquire file lock with timeout."""
        try:
            fd = os.open(str(self.lock_file_path), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to open lock file: {e}") from e

        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self.lock_fd = fd
                return
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Failed to acquire lock on {self.file_path.name} within {self.timeout} seconds"
                    )
                time.sleep(0.05)

    def release(self) -> None:
        """Release file lock."""
        if self.lock_fd is None:
            return
        try:
            fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self.lock_fd)
            self.lock_fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


class FileKeyStore(KeyStore):
    """
    Directory-backed Key Store.

    Creation links a fully written temporary file into place, which fails if
    the name is taken. Conditional writes hold a per-key lock while comparing
    the content hash (the version token) and atomically renaming the new file
    over the old one.
    """

    SUFFIX = '.json'

    def __init__(self, directory: Union[str, Path], lock_timeout: float = 10.0):
        self.directory = Path(directory)
        self.lock_timeout = lock_timeout
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot create key directory {self.directory}: {e}") from e

    @staticmethod
    def _calculate_checksum(data: bytes) -> str:
        """Calculate SHA-256 checksum of data."""
        return hashlib.sha256(data).hexdigest()

    def _path(self, name: str) -> Path:
        self._check_name(name)
        return self.directory / f"{name}{self.SUFFIX}"

    def _write_temp(self, data: bytes) -> str:
        fd, temp_path = tempfile.mkstemp(dir=str(self.directory), prefix='.tmp-', suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError:
            os.unlink(temp_path)
            raise
        return temp_path

    def create_if_absent(self, name: str, data: bytes) -> str:
        path = self._path(name)
        try:
            temp_path = self._write_temp(data)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to write key '{name}': {e}") from e

        try:
            os.link(temp_path, path)
        except FileExistsError:
            raise KeyExistsError(name)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to create key '{name}': {e}") from e
        finally:
            os.unlink(temp_path)

        logger.debug(f"Created key file {path.name}")
        return self._calculate_checksum(data)

    def read(self, name: str) -> StoredObject:
        path = self._path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            raise KeyNotFoundError(name)
        except OSError as e:
            raise StorageUnavailableError(f"Failed to read key '{name}': {e}") from e
        return StoredObject(data, self._calculate_checksum(data))

    def write_if_version(self, name: str, data: bytes, expected_version: str) -> str:
        path = self._path(name)
        with FileLock(path, timeout=self.lock_timeout):
            current = self.read(name)
            if current.version != expected_version:
                raise VersionConflictError(name, expected_version, current.version)
            try:
                temp_path = self._write_temp(data)
            except OSError as e:
                raise StorageUnavailableError(f"Failed to write key '{name}': {e}") from e

            try:
                os.replace(temp_path, path)
            except OSError as e:
                os.unlink(temp_path)
                raise StorageUnavailableError(f"Failed to write key '{name}': {e}") from e

        logger.debug(f"Updated key file {path.name}")
        return self._calculate_checksum(data)


class HTTPKeyStore(KeyStore):
    """
    Key Store over an S3-compatible HTTP object endpoint.

    Objects live at ``<base_url>/<name>.json``. The ETag is the version
    token; ``If-None-Match: *`` and ``If-Match`` make creation and updates
    conditional, and a 412 response reports a lost race.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, max_retries: int = 3,
                 backoff_factor: float = 0.3, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout

        if session is None:
            session = requests.Session()
            # Conditional PUTs are never retried
            retry_strategy = Retry(
                total=max_retries,
                backoff_factor=backoff_factor,
                status_forcelist=[429, 500, 502, 503, 504],
                allowed_methods=["GET"]
            )
            adapter = HTTPAdapter(max_retries=retry_strategy)
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def _url(self, name: str) -> str:
        self._check_name(name)
        return f"{self.base_url}/{quote(name)}.json"

    def _request(self, method: str, name: str, **kwargs) -> requests.Response:
        try:
            return self.session.request(method, self._url(name), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise StorageUnavailableError(f"{method} {name} failed: {e}") from e

    @staticmethod
    def _etag(response: requests.Response, name: str) -> str:
        etag = response.headers.get('ETag')
        if not etag:
            raise StorageUnavailableError(f"Object store returned no ETag for '{name}'")
        return etag

    def _unexpected(self, response: requests.Response, name: str) -> StorageUnavailableError:
        return StorageUnavailableError(
            f"Unexpected object store response for '{name}': HTTP {response.status_code}"
        )

    def create_if_absent(self, name: str, data: bytes) -> str:
        response = self._request(
            "PUT", name, data=data,
            headers={"If-None-Match": "*", "Content-Type": "application/json"},
        )
        if response.status_code in (409, 412):
            raise KeyExistsError(name)
        if response.status_code not in (200, 201):
            raise self._unexpected(response, name)
        return self._etag(response, name)

    def read(self, name: str) -> StoredObject:
        response = self._request("GET", name)
        if response.status_code == 404:
            raise KeyNotFoundError(name)
        if response.status_code != 200:
            raise self._unexpected(response, name)
        return StoredObject(response.content, self._etag(response, name))

    def write_if_version(self, name: str, data: bytes, expected_version: str) -> str:
        response = self._request(
            "PUT", name, data=data,
            headers={"If-Match": expected_version, "Content-Type": "application/json"},
        )
        if response.status_code == 412:
            raise VersionConflictError(name, expected_version)
        if response.status_code == 404:
            raise KeyNotFoundError(name)
        if response.status_code not in (200, 201):
            raise self._unexpected(response, name)
        return self._etag(response, name)


def create_key_store(storage_settings) -> KeyStore:
    """
    Build the Key Store selected by configuration.

    Args:
        storage_settings: ``StorageSettings`` with ``backend``, ``path``,
            ``url``, ``timeout``, ``lock_timeout`` and ``max_retries``

    Returns:
        KeyStore instance
    """
    backend = storage_settings.backend
    if backend == "memory":
        return MemoryKeyStore()
    if backend == "file":
        return FileKeyStore(storage_settings.path, lock_timeout=storage_settings.lock_timeout)
    if backend == "http":
        if not storage_settings.url:
            raise StorageError("HTTP key store requires storage.url")
        return HTTPKeyStore(
            storage_settings.url,
            timeout=storage_settings.timeout,
            max_retries=storage_settings.max_retries,
        )
    raise StorageError(f"Unknown storage backend: {backend}")
