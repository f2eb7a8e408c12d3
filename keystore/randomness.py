"""
Randomness Sources

Entropy for new keys comes from a Randomness Source: the operating system
CSPRNG by default, or a hardware RNG device node.
"""

import logging
import secrets
from abc import ABC, abstractmethod

from .exceptions import RandomnessUnavailableError

logger = logging.getLogger(__name__)


class RandomnessSource(ABC):
    """Provider of cryptographically secure random bytes."""

    @abstractmethod
    def get_random_bytes(self, n: int) -> bytes:
        """
        Return exactly ``n`` random bytes.

        Raises:
            RandomnessUnavailableError: If the source cannot deliver
        """


class SystemRandomnessSource(RandomnessSource):
    """Operating system CSPRNG."""

    def get_random_bytes(self, n: int) -> bytes:
        if n <= 0:
            raise ValueError("Requested byte count must be positive")
        return secrets.token_bytes(n)


class DeviceRandomnessSource(RandomnessSource):
    """Reads from a hardware RNG device such as ``/dev/hwrng``."""

    def __init__(self, device_path: str = "/dev/hwrng"):
        self.device_path = device_path

    def get_random_bytes(self, n: int) -> bytes:
        if n <= 0:
            raise ValueError("Requested byte count must be positive")
        try:
            with open(self.device_path, 'rb', buffering=0) as device:
                data = device.read(n)
        except OSError as e:
            raise RandomnessUnavailableError(f"Cannot read {self.device_path}: {e}") from e

        if data is None or len(data) != n:
            got = 0 if data is None else len(data)
            raise RandomnessUnavailableError(
                f"Short read from {self.device_path}: wanted {n} bytes, got {got}"
            )
        return data


def create_randomness_source(randomness_settings) -> RandomnessSource:
    """
    Build the Randomness Source selected by configuration.

    Args:
        randomness_settings: ``RandomnessSettings`` with ``source`` and ``device_path``
    """
    if randomness_settings.source == "system":
        return SystemRandomnessSource()
    if randomness_settings.source == "device":
        logger.info(f"Using hardware randomness from {randomness_settings.device_path}")
        return DeviceRandomnessSource(randomness_settings.device_path)
    raise ValueError(f"Unknown randomness source: {randomness_settings.source}")
