"""
Key Management and Derivation for the Signing Backend

This module handles private/public key operations, BIP32 extended keys and
their base58 serialization, BIP39 seed derivation from stored entropy, and
Taproot key tweaking for key-path spends.

References:
- BIP32: https://github.com/bitcoin/bips/blob/master/bip-0032.mediawiki
- BIP39: https://github.com/bitcoin/bips/blob/master/bip-0039.mediawiki
- BIP341: https://github.com/bitcoin/bips/blob/master/bip-0341.mediawiki
- SLIP-132: https://github.com/satoshilabs/slips/blob/master/slip-0132.md
"""

import hashlib
import hmac
from typing import Dict, List, Optional, Tuple, Union

import base58
from coincurve import PrivateKey as CoinCurvePrivateKey, PublicKey as CoinCurvePublicKey
from Crypto.Hash import RIPEMD160
from mnemonic import Mnemonic

from .exceptions import (
    DerivationError,
    ExtendedKeyFormatError,
    InvalidKeyError,
)


# Constants for BIP32
BIP32_CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
BIP32_HARDENED_OFFSET = 0x80000000
BIP32_MAX_DEPTH = 255
BIP32_SERIALIZED_LENGTH = 78

# P2WSH multisig account (BIP48 script type 2)
DEFAULT_ACCOUNT_PATH = "m/48'/0'/0'/2'"

NETWORKS = ("mainnet", "testnet")

# Version bytes for serialized extended public keys. Imported keys are
# normalized to the plain xpub/tpub version of their network.
PUBLIC_KEY_VERSIONS: Dict[bytes, Tuple[str, str]] = {
    bytes.fromhex("0488b21e"): ("mainnet", "xpub"),
    bytes.fromhex("049d7cb2"): ("mainnet", "ypub"),
    bytes.fromhex("04b24746"): ("mainnet", "zpub"),
    bytes.fromhex("0295b43f"): ("mainnet", "Ypub"),
    bytes.fromhex("02aa7ed3"): ("mainnet", "Zpub"),
    bytes.fromhex("043587cf"): ("testnet", "tpub"),
    bytes.fromhex("044a5262"): ("testnet", "upub"),
    bytes.fromhex("045f1cf6"): ("testnet", "vpub"),
    bytes.fromhex("024289ef"): ("testnet", "Upub"),
    bytes.fromhex("02575483"): ("testnet", "Vpub"),
}

CANONICAL_PUBLIC_VERSION = {
    "mainnet": bytes.fromhex("0488b21e"),
    "testnet": bytes.fromhex("043587cf"),
}


def hash160(data: bytes) -> bytes:
    """
    Compute HASH160 (RIPEMD160(SHA256(data))).

    Args:
        data: Input data to hash

    Returns:
        20-byte HASH160 digest
    """
    return RIPEMD160.new(hashlib.sha256(data).digest()).digest()


def tagged_hash(tag: str, data: bytes) -> bytes:
    """
    Compute BIP340/341 tagged hash: SHA256(SHA256(tag) + SHA256(tag) + data).

    Args:
        tag: Tag string for the hash
        data: Data to hash

    Returns:
        32-byte tagged hash
    """
    tag_hash = hashlib.sha256(tag.encode('utf-8')).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def has_even_y(pubkey: bytes) -> bool:
    """Check if a compressed public key has an even y-coordinate."""
    if len(pubkey) != 33 or pubkey[0] not in (2, 3):
        raise InvalidKeyError("Expected a 33-byte compressed public key")
    return pubkey[0] == 2


class PrivateKey:
    """
    Wrapper for secp256k1 private key operations.
    """

    def __init__(self, key_bytes: bytes):
        """
        Initialize private key.

        Args:
            key_bytes: 32-byte private key
        """
        if not isinstance(key_bytes, bytes) or len(key_bytes) != 32:
            raise InvalidKeyError("Private key must be 32 bytes")

        key_int = int.from_bytes(key_bytes, 'big')
        if key_int == 0 or key_int >= BIP32_CURVE_ORDER:
            raise InvalidKeyError("Private key out of valid range")

        try:
            self._key = CoinCurvePrivateKey(key_bytes)
        except ValueError as e:
            raise InvalidKeyError(f"Failed to create private key: {e}") from e

    def __repr__(self) -> str:
        return "PrivateKey(<redacted>)"

    @property
    def bytes(self) -> bytes:
        """Get private key as bytes."""
        return self._key.secret

    def public_key(self) -> 'PublicKey':
        """Get corresponding public key."""
        return PublicKey(self._key.public_key)

    def sign(self, message_hash: bytes) -> bytes:
        """
        Sign a 32-byte digest with ECDSA.

        libsecp256k1 produces RFC6979 nonces and low-S signatures.

        Args:
            message_hash: 32-byte message hash to sign

        Returns:
            DER-encoded signature
        """
        if len(message_hash) != 32:
            raise InvalidKeyError("Message hash must be 32 bytes")
        return self._key.sign(message_hash, hasher=None)

    def sign_schnorr(self, message: bytes, aux_randomness: bytes) -> bytes:
        """
        Produce a BIP340 Schnorr signature.

        Args:
            message: 32-byte message
            aux_randomness: 32 bytes of auxiliary randomness

        Returns:
            64-byte signature
        """
        if len(message) != 32:
            raise InvalidKeyError("Message must be 32 bytes")
        if len(aux_randomness) != 32:
            raise InvalidKeyError("Auxiliary randomness must be 32 bytes")
        return self._key.sign_schnorr(message, aux_randomness)

    def tweak_add(self, tweak: bytes) -> 'PrivateKey':
        """
        Add tweak to private key.

        Args:
            tweak: 32-byte tweak value

        Returns:
            Tweaked private key
        """
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")

        tweak_int = int.from_bytes(tweak, 'big')
        if tweak_int >= BIP32_CURVE_ORDER:
            raise InvalidKeyError("Tweak out of valid range")

        tweaked_int = (int.from_bytes(self.bytes, 'big') + tweak_int) % BIP32_CURVE_ORDER
        if tweaked_int == 0:
            raise InvalidKeyError("Tweaked key is zero")

        return PrivateKey(tweaked_int.to_bytes(32, 'big'))

    def taproot_tweak_private_key(self, merkle_root: Optional[bytes] = None) -> Tuple['PrivateKey', bool]:
        """
        Tweak private key for Taproot according to BIP341.

        Args:
            merkle_root: 32-byte Merkle root of script tree (None for key-path only)

        Returns:
            Tuple of (tweaked_private_key, negated_flag)
        """
        internal_pubkey = self.public_key()
        internal_has_even_y = has_even_y(internal_pubkey.bytes)

        # BIP340 keys are implicitly even-y
        if internal_has_even_y:
            base_key = self
        else:
            negated_int = BIP32_CURVE_ORDER - int.from_bytes(self.bytes, 'big')
            base_key = PrivateKey(negated_int.to_bytes(32, 'big'))

        tweak = compute_taproot_tweak(internal_pubkey.x_only, merkle_root)
        return base_key.tweak_add(tweak), not internal_has_even_y


class PublicKey:
    """
    Wrapper for public key operations.
    """

    def __init__(self, key_data: Union[bytes, CoinCurvePublicKey]):
        """
        Initialize public key.

        Args:
            key_data: Public key bytes (33 or 65 bytes) or CoinCurvePublicKey
        """
        if isinstance(key_data, CoinCurvePublicKey):
            self._key = key_data
            return

        if not isinstance(key_data, bytes):
            raise InvalidKeyError("Public key data must be bytes")
        if len(key_data) not in (33, 65):
            raise InvalidKeyError("Public key must be 33 or 65 bytes")
        try:
            self._key = CoinCurvePublicKey(key_data)
        except ValueError as e:
            raise InvalidKeyError(f"Failed to create public key: {e}") from e

    def __eq__(self, other) -> bool:
        return isinstance(other, PublicKey) and self.bytes == other.bytes

    def __hash__(self) -> int:
        return hash(self.bytes)

    def __repr__(self) -> str:
        return f"PublicKey({self.hex})"

    @property
    def bytes(self) -> bytes:
        """Get compressed public key as bytes."""
        return self._key.format(compressed=True)

    @property
    def hex(self) -> str:
        """Get compressed public key as hex string."""
        return self.bytes.hex()

    @property
    def x_only(self) -> bytes:
        """Get x-only public key for Taproot (32 bytes)."""
        return self.bytes[1:]

    def verify(self, signature: bytes, message_hash: bytes) -> bool:
        """
        Verify a DER-encoded ECDSA signature against a 32-byte digest.

        Args:
            signature: DER-encoded signature
            message_hash: 32-byte message hash

        Returns:
            True if signature is valid
        """
        if len(message_hash) != 32:
            return False
        try:
            return self._key.verify(signature, message_hash, hasher=None)
        except ValueError:
            return False

    def tweak_add(self, tweak: bytes) -> 'PublicKey':
        """
        Add tweak * G to this public key.

        Args:
            tweak: 32-byte tweak value

        Returns:
            Tweaked public key
        """
        if len(tweak) != 32:
            raise InvalidKeyError("Tweak must be 32 bytes")

        try:
            tweak_public = CoinCurvePrivateKey(tweak).public_key
            tweaked_point = CoinCurvePublicKey.combine_keys([self._key, tweak_public])
        except ValueError as e:
            raise InvalidKeyError(f"Failed to tweak public key: {e}") from e
        return PublicKey(tweaked_point)

    def taproot_tweak_public_key(self, merkle_root: Optional[bytes] = None) -> bytes:
        """
        Tweak public key for Taproot according to BIP341.

        Args:
            merkle_root: 32-byte Merkle root of script tree (None for key-path only)

        Returns:
            32-byte x-only tweaked public key
        """
        even_key = PublicKey(b'\x02' + self.x_only)
        tweak = compute_taproot_tweak(self.x_only, merkle_root)
        return even_key.tweak_add(tweak).x_only


class ExtendedKey:
    """
    BIP32 Extended Key for hierarchical deterministic key derivation.
    """

    def __init__(self, key: Union[PrivateKey, PublicKey], chain_code: bytes,
                 depth: int = 0, parent_fingerprint: bytes = b'\x00\x00\x00\x00',
                 child_number: int = 0):
        """
        Initialize extended key.

        Args:
            key: Private or public key
            chain_code: 32-byte chain code for derivation
            depth: Depth in derivation tree
            parent_fingerprint: Fingerprint of the parent key
            child_number: Child number
        """
        if not isinstance(chain_code, bytes) or len(chain_code) != 32:
            raise DerivationError("Chain code must be 32 bytes")
        if not isinstance(parent_fingerprint, bytes) or len(parent_fingerprint) != 4:
            raise DerivationError("Fingerprint must be 4 bytes")
        if depth < 0 or depth > BIP32_MAX_DEPTH:
            raise DerivationError(f"Depth must be 0-{BIP32_MAX_DEPTH}")

        self.key = key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    def __repr__(self) -> str:
        kind = "private" if self.is_private else "public"
        return f"ExtendedKey({kind}, depth={self.depth}, fingerprint={self.fingerprint.hex()})"

    @property
    def is_private(self) -> bool:
        """Check if this is a private extended key."""
        return isinstance(self.key, PrivateKey)

    @property
    def public_key(self) -> PublicKey:
        if self.is_private:
            return self.key.public_key()
        return self.key

    @property
    def identifier(self) -> bytes:
        """HASH160 of the compressed public key."""
        return hash160(self.public_key.bytes)

    @property
    def fingerprint(self) -> bytes:
        """First 4 bytes of the key identifier."""
        return self.identifier[:4]

    def neuter(self) -> 'ExtendedKey':
        """Return the public-only counterpart of this key."""
        return ExtendedKey(
            key=self.public_key,
            chain_code=self.chain_code,
            depth=self.depth,
            parent_fingerprint=self.parent_fingerprint,
            child_number=self.child_number,
        )

    def derive_child(self, index: int) -> 'ExtendedKey':
        """
        Derive child key at given index.

        Args:
            index: Child index (use index >= 2^31 for hardened derivation)

        Returns:
            Extended child key

        Raises:
            DerivationError: On hardened derivation from a public key or an
                out-of-range index
        """
        if index < 0 or index > 0xFFFFFFFF:
            raise DerivationError(f"Child index out of range: {index}")

        hardened = index >= BIP32_HARDENED_OFFSET
        if hardened and not self.is_private:
            raise DerivationError("Cannot derive hardened child from public key")

        parent_public = self.public_key
        if hardened:
            # 0x00 || private_key || index
            data = b'\x00' + self.key.bytes + index.to_bytes(4, 'big')
        else:
            data = parent_public.bytes + index.to_bytes(4, 'big')

        I = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        I_L, I_R = I[:32], I[32:]
        I_L_int = int.from_bytes(I_L, 'big')

        if I_L_int >= BIP32_CURVE_ORDER:
            # Invalid key, proceed with the next index
            return self.derive_child(index + 1)

        if self.is_private:
            child_int = (int.from_bytes(self.key.bytes, 'big') + I_L_int) % BIP32_CURVE_ORDER
            if child_int == 0:
                return self.derive_child(index + 1)
            child_key = PrivateKey(child_int.to_bytes(32, 'big'))
        else:
            try:
                child_key = parent_public.tweak_add(I_L)
            except InvalidKeyError:
                return self.derive_child(index + 1)

        return ExtendedKey(
            key=child_key,
            chain_code=I_R,
            depth=self.depth + 1,
            parent_fingerprint=hash160(parent_public.bytes)[:4],
            child_number=index,
        )

    def derive_path(self, path: Union[str, List[int]]) -> 'ExtendedKey':
        """
        Derive key from derivation path.

        Args:
            path: Derivation path like "m/48'/0'/0'/2'" or a list of indices

        Returns:
            Extended key at path
        """
        indices = parse_derivation_path(path) if isinstance(path, str) else path

        current_key = self
        for index in indices:
            current_key = current_key.derive_child(index)
        return current_key

    def serialize(self, version: bytes) -> bytes:
        """
        Serialize to the 78-byte BIP32 format.

        Args:
            version: 4-byte version prefix

        Returns:
            78-byte serialization (without checksum)
        """
        if len(version) != 4:
            raise ExtendedKeyFormatError("Version must be 4 bytes")
        if self.is_private:
            key_data = b'\x00' + self.key.bytes
        else:
            key_data = self.key.bytes
        return (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, 'big')
            + self.chain_code
            + key_data
        )

    def to_xpub(self, network: str = "mainnet") -> str:
        """
        Encode the public part of this key as a base58check xpub/tpub.

        Private keys are never serialized.
        """
        if network not in CANONICAL_PUBLIC_VERSION:
            raise ExtendedKeyFormatError(f"Unknown network: {network}")
        payload = self.neuter().serialize(CANONICAL_PUBLIC_VERSION[network])
        return base58.b58encode_check(payload).decode('ascii')


class ParsedExtendedKey:
    """Result of decoding a serialized extended public key."""

    def __init__(self, key: ExtendedKey, network: str, prefix: str):
        self.key = key
        self.network = network
        self.prefix = prefix

    @property
    def canonical(self) -> str:
        """The key re-encoded with its network's xpub/tpub version."""
        return self.key.to_xpub(self.network)


def parse_extended_public_key(encoded: str) -> ParsedExtendedKey:
    """
    Decode a base58check extended public key.

    Accepts xpub/tpub and the SLIP-132 variants (ypub, zpub, Ypub, Zpub,
    upub, vpub, Upub, Vpub).

    Args:
        encoded: Base58check string

    Returns:
        ParsedExtendedKey with the decoded key, its network and original prefix

    Raises:
        ExtendedKeyFormatError: If the checksum, length, version or key
            material is invalid
    """
    try:
        payload = base58.b58decode_check(encoded.strip())
    except ValueError as e:
        raise ExtendedKeyFormatError(f"Invalid extended key encoding: {e}") from e

    if len(payload) != BIP32_SERIALIZED_LENGTH:
        raise ExtendedKeyFormatError(
            f"Extended key must be {BIP32_SERIALIZED_LENGTH} bytes, got {len(payload)}"
        )

    version = payload[0:4]
    if version not in PUBLIC_KEY_VERSIONS:
        raise ExtendedKeyFormatError(f"Unsupported extended key version: {version.hex()}")
    network, prefix = PUBLIC_KEY_VERSIONS[version]

    depth = payload[4]
    parent_fingerprint = payload[5:9]
    child_number = int.from_bytes(payload[9:13], 'big')
    chain_code = payload[13:45]
    key_data = payload[45:78]

    if depth == 0 and (parent_fingerprint != b'\x00' * 4 or child_number != 0):
        raise ExtendedKeyFormatError("Master key with non-zero parent fingerprint or index")

    try:
        public_key = PublicKey(key_data)
    except InvalidKeyError as e:
        raise ExtendedKeyFormatError(f"Invalid public key in extended key: {e}") from e

    key = ExtendedKey(
        key=public_key,
        chain_code=chain_code,
        depth=depth,
        parent_fingerprint=parent_fingerprint,
        child_number=child_number,
    )
    return ParsedExtendedKey(key, network, prefix)


def entropy_to_mnemonic(entropy: bytes) -> str:
    """
    Encode entropy as a BIP39 english mnemonic.

    Args:
        entropy: 16, 20, 24, 28 or 32 bytes of entropy

    Returns:
        Mnemonic phrase
    """
    if len(entropy) not in (16, 20, 24, 28, 32):
        raise DerivationError("Entropy must be 16, 20, 24, 28 or 32 bytes")
    return Mnemonic("english").to_mnemonic(entropy)


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """
    Convert mnemonic to seed using BIP39.

    Args:
        mnemonic: BIP39 mnemonic phrase
        passphrase: Optional passphrase

    Returns:
        64-byte seed
    """
    mnemo = Mnemonic("english")

    if not mnemo.check(mnemonic):
        raise DerivationError("Invalid mnemonic phrase")

    return Mnemonic.to_seed(mnemonic, passphrase)


def seed_from_entropy(entropy: bytes, passphrase: str = "") -> bytes:
    """BIP39 seed of the mnemonic that encodes ``entropy``."""
    return mnemonic_to_seed(entropy_to_mnemonic(entropy), passphrase)


def seed_to_master_key(seed: bytes) -> ExtendedKey:
    """
    Generate master extended key from seed.

    Args:
        seed: BIP39 seed (typically 64 bytes)

    Returns:
        Master extended private key
    """
    if len(seed) < 16 or len(seed) > 64:
        raise DerivationError("Seed must be 16-64 bytes")

    I = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
    I_L, I_R = I[:32], I[32:]

    I_L_int = int.from_bytes(I_L, 'big')
    if I_L_int == 0 or I_L_int >= BIP32_CURVE_ORDER:
        raise DerivationError("Invalid master key generated")

    return ExtendedKey(key=PrivateKey(I_L), chain_code=I_R)


def parse_derivation_path(path: str) -> List[int]:
    """
    Parse derivation path into list of integers.

    Both ``'`` and ``h``/``H`` mark hardened steps. ``m`` alone is the
    master key.

    Args:
        path: Derivation path like "m/48'/0'/0'/2'"

    Returns:
        List of derivation indices

    Raises:
        DerivationError: If the path is not an absolute BIP32 path
    """
    if not isinstance(path, str):
        raise DerivationError("Derivation path must be a string")

    path = path.strip()
    if path in ("m", "m/"):
        return []
    if not path.startswith("m/"):
        raise DerivationError(f"Path must start with 'm/': {path!r}")

    parts = path[2:].split('/')
    if len(parts) > BIP32_MAX_DEPTH:
        raise DerivationError(f"Path deeper than {BIP32_MAX_DEPTH} levels")

    indices = []
    for part in parts:
        hardened = part[-1:] in ("'", "h", "H")
        digits = part[:-1] if hardened else part
        if not (digits.isascii() and digits.isdigit()):
            raise DerivationError(f"Invalid path segment {part!r} in {path!r}")

        index = int(digits)
        if index >= BIP32_HARDENED_OFFSET:
            raise DerivationError(f"Path index too large: {part!r}")
        indices.append(index + BIP32_HARDENED_OFFSET if hardened else index)

    return indices


def format_derivation_path(indices: List[int]) -> str:
    """Render indices as an absolute path using ``'`` for hardened steps."""
    parts = ["m"]
    for index in indices:
        if index >= BIP32_HARDENED_OFFSET:
            parts.append(f"{index - BIP32_HARDENED_OFFSET}'")
        else:
            parts.append(str(index))
    return "/".join(parts)


def compute_taproot_tweak(internal_pubkey_x: bytes, merkle_root: Optional[bytes] = None) -> bytes:
    """
    Compute Taproot tweak according to BIP341.

    Args:
        internal_pubkey_x: 32-byte x-only internal public key
        merkle_root: Optional 32-byte Merkle root of script tree

    Returns:
        32-byte tweak value
    """
    if len(internal_pubkey_x) != 32:
        raise InvalidKeyError("Internal pubkey x-coordinate must be 32 bytes")

    tweak_data = internal_pubkey_x
    if merkle_root is not None:
        if len(merkle_root) != 32:
            raise InvalidKeyError("Merkle root must be 32 bytes")
        tweak_data += merkle_root

    return tagged_hash("TapTweak", tweak_data)
