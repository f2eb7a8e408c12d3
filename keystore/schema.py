"""
Key Store Schema Models

Pydantic models for the persisted Key Record, the attached Wallet Descriptor
and the public views returned to callers.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from crypto.keys import DEFAULT_ACCOUNT_PATH, parse_derivation_path
from crypto.exceptions import DerivationError
from psbt.scripts import ScriptType

KEY_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_.-]{1,128}$')
FINGERPRINT_PATTERN = re.compile(r'^[0-9a-f]{8}$')

SINGLE_KEY_SCRIPT_TYPES = (
    ScriptType.P2PKH,
    ScriptType.P2WPKH,
    ScriptType.P2SH_P2WPKH,
    ScriptType.P2TR,
)
MAX_MULTISIG_KEYS = 15


class RecordSchemaError(ValueError):
    """Stored bytes do not describe a valid Key Record."""
    pass


def is_valid_key_name(name: str) -> bool:
    return isinstance(name, str) and KEY_NAME_PATTERN.match(name) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _validate_path(v: str) -> str:
    try:
        parse_derivation_path(v)
    except DerivationError as e:
        raise ValueError(str(e)) from e
    return v


class Network(str, Enum):
    """Bitcoin network the keys are serialized for."""
    MAINNET = "mainnet"
    TESTNET = "testnet"


class CosignerKey(BaseModel):
    """One key of a wallet export."""

    fingerprint: str = Field(..., description="Master key fingerprint (hex)")
    derivation: str = Field(..., description="Derivation path of the xpub")
    xpub: str = Field(..., description="Extended public key, normalized to xpub/tpub")

    @field_validator('fingerprint')
    @classmethod
    def validate_fingerprint(cls, v):
        v = v.lower()
        if not FINGERPRINT_PATTERN.match(v):
            raise ValueError('Fingerprint must be 8 hex characters')
        return v

    @field_validator('derivation')
    @classmethod
    def validate_derivation(cls, v):
        return _validate_path(v)


class WalletDescriptor(BaseModel):
    """Externally defined wallet a key participates in."""

    name: str = Field(..., min_length=1)
    script_type: ScriptType
    threshold: int = Field(..., ge=1)
    cosigners: List[CosignerKey] = Field(..., min_length=1)
    receive_descriptor: str
    change_descriptor: str

    @field_validator('script_type')
    @classmethod
    def validate_script_type(cls, v):
        if v == ScriptType.UNKNOWN:
            raise ValueError('Wallet script type must be known')
        return v

    @model_validator(mode='after')
    def validate_policy(self):
        count = len(self.cosigners)
        if self.script_type in SINGLE_KEY_SCRIPT_TYPES:
            if count != 1 or self.threshold != 1:
                raise ValueError(f'{self.script_type.value} wallets take exactly one key')
        else:
            if self.threshold > count:
                raise ValueError(f'Threshold {self.threshold} exceeds {count} cosigners')
            if count > MAX_MULTISIG_KEYS:
                raise ValueError(f'At most {MAX_MULTISIG_KEYS} cosigners are supported')
        fingerprints = [(c.fingerprint, c.derivation) for c in self.cosigners]
        if len(set(c.xpub for c in self.cosigners)) != count:
            raise ValueError('Duplicate cosigner xpub')
        if len(set(fingerprints)) != count:
            raise ValueError('Duplicate cosigner fingerprint and derivation')
        return self

    def cosigner_for(self, fingerprint: str) -> List[CosignerKey]:
        """Cosigners whose master fingerprint is ``fingerprint``."""
        return [c for c in self.cosigners if c.fingerprint == fingerprint.lower()]


class KeyRecord(BaseModel):
    """
    Persisted signing key.

    ``seed`` holds the hex of the entropy drawn at creation; the BIP39
    mnemonic of that entropy yields the BIP32 seed. It never leaves the
    backend and is excluded from ``repr``.
    """

    name: str
    seed: str = Field(..., repr=False)
    fingerprint: str
    account_path: str = Field(default=DEFAULT_ACCOUNT_PATH)
    network: Network = Field(default=Network.MAINNET)
    wallet: Optional[WalletDescriptor] = None
    version: int = Field(default=1, ge=1)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not is_valid_key_name(v):
            raise ValueError('Key name must be 1-128 characters of letters, digits, ".", "_" or "-"')
        return v

    @field_validator('seed')
    @classmethod
    def validate_seed(cls, v):
        if not re.match(r'^(?:[0-9a-f]{2}){16,64}$', v):
            raise ValueError('Seed must be 16-64 bytes of lowercase hex')
        return v

    @field_validator('fingerprint')
    @classmethod
    def validate_fingerprint(cls, v):
        if not FINGERPRINT_PATTERN.match(v):
            raise ValueError('Fingerprint must be 8 lowercase hex characters')
        return v

    @field_validator('account_path')
    @classmethod
    def validate_account_path(cls, v):
        return _validate_path(v)

    @property
    def entropy(self) -> bytes:
        return bytes.fromhex(self.seed)

    def with_wallet(self, wallet: WalletDescriptor) -> 'KeyRecord':
        """Copy of this record with ``wallet`` attached and the version bumped."""
        return self.model_copy(update={
            'wallet': wallet,
            'version': self.version + 1,
            'updated_at': _utcnow(),
        })

    def to_bytes(self) -> bytes:
        return self.model_dump_json(indent=2).encode('utf-8')

    @classmethod
    def from_bytes(cls, data: bytes) -> 'KeyRecord':
        try:
            return cls.model_validate_json(data)
        except ValidationError as e:
            raise RecordSchemaError(f"Invalid key record: {e}") from e


class PublicSummary(BaseModel):
    """Public identity of a key, returned by key creation."""

    name: str
    fingerprint: str
    derivation: str
    xpub: str


class ExtendedPublicKey(BaseModel):
    """Extended public key at a requested path."""

    name: str
    fingerprint: str
    path: str
    xpub: str
