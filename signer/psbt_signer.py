"""
PSBT Signer

Signs the inputs of a PSBT that belong to a stored key. Ownership, script
type and sighash algorithm are decided per input; inputs that do not belong
to the key are left exactly as they were.

Supported spends:
- P2PKH and bare P2SH (legacy sighash, full previous transaction required)
- P2WPKH, P2WSH, P2SH-P2WPKH and P2SH-P2WSH (BIP143)
- P2TR key path (BIP341 sighash, BIP340 Schnorr)
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from crypto.exceptions import CryptoError
from crypto.keys import ExtendedKey, hash160
from crypto.signatures import encode_transaction_signature, sign_ecdsa, sign_schnorr
from keystore.exceptions import RandomnessUnavailableError
from keystore.randomness import RandomnessSource, SystemRandomnessSource
from psbt.exceptions import PSBTError, SighashError, UnsupportedScriptTypeError
from psbt.parser import PSBT, PSBTInput, parse_psbt
from psbt.scripts import ScriptType, classify_spend, p2wpkh_script_code
from psbt.sighash import (
    SIGHASH_ALL,
    SIGHASH_DEFAULT,
    TAPROOT_SIGHASH_TYPES,
    is_valid_ecdsa_sighash,
    legacy_sighash,
    segwit_v0_sighash,
    taproot_key_path_sighash,
)
from psbt.utils import sha256

from .exceptions import (
    InternalError,
    MalformedInputError,
    NothingToSignError,
    NoWalletAttachedError,
    UnsupportedScriptError,
)
from .key_manager import KeyManager
from .policy import PolicySet

logger = logging.getLogger(__name__)


class InputStatus(str, Enum):
    """What happened to one PSBT input."""
    SIGNED = "signed"
    ALREADY_SIGNED = "already_signed"
    SKIPPED = "skipped"
    FINALIZED = "finalized"
    FAILED = "failed"


@dataclass
class InputOutcome:
    index: int
    status: InputStatus
    script_type: Optional[ScriptType] = None
    reason: Optional[str] = None

    @property
    def owned(self) -> bool:
        return self.status in (InputStatus.SIGNED, InputStatus.ALREADY_SIGNED, InputStatus.FAILED)


@dataclass
class SigningResult:
    """Signed PSBT bytes with the outcome of every input."""
    psbt: bytes
    outcomes: List[InputOutcome] = field(default_factory=list)

    @property
    def signatures_added(self) -> int:
        return sum(1 for o in self.outcomes if o.status == InputStatus.SIGNED)

    @property
    def failed_inputs(self) -> List[int]:
        return [o.index for o in self.outcomes if o.status == InputStatus.FAILED]


class _DerivationCache:
    """Child keys derived from one master key during one request."""

    def __init__(self, master: ExtendedKey):
        self.master = master
        self._children: Dict[Tuple[int, ...], Optional[ExtendedKey]] = {}

    def child(self, path: List[int]) -> Optional[ExtendedKey]:
        key = tuple(path)
        if key not in self._children:
            try:
                self._children[key] = self.master.derive_path(list(path))
            except CryptoError:
                self._children[key] = None
        return self._children[key]


class PSBTSigner:
    """
    Signs PSBTs on behalf of stored keys.

    Args:
        key_manager: Key Manager for record access and derivation
        policies: Spending policies checked before signing
        randomness: Source of BIP340 auxiliary randomness
        strict: Default for strict mode
    """

    def __init__(self, key_manager: KeyManager, policies: Optional[PolicySet] = None,
                 randomness: Optional[RandomnessSource] = None, strict: bool = False):
        self.key_manager = key_manager
        self.policies = policies or PolicySet()
        self.randomness = randomness or SystemRandomnessSource()
        self.strict = strict

    def sign(self, name: str, psbt_data: Union[bytes, str],
             strict: Optional[bool] = None) -> SigningResult:
        """
        Sign every input of ``psbt_data`` that belongs to key ``name``.

        Args:
            name: Key name
            psbt_data: Raw or base64 PSBT
            strict: Fail the whole request on any unsupported owned input;
                ``None`` uses the configured default

        Returns:
            SigningResult with the re-serialized PSBT

        Raises:
            NotFoundError, NoWalletAttachedError, MalformedInputError,
            PolicyViolationError, NothingToSignError, UnsupportedScriptError
        """
        strict = self.strict if strict is None else strict

        record, _ = self.key_manager.load_record(name)
        if record.wallet is None:
            raise NoWalletAttachedError(f"Key '{name}' has no wallet attached")

        try:
            psbt = parse_psbt(psbt_data)
        except PSBTError as e:
            raise MalformedInputError(f"Invalid PSBT: {e}") from e

        self.policies.check_policies(psbt, record.wallet)

        keys = _DerivationCache(self.key_manager.master_key(record))
        outcomes = [self._sign_input(psbt, index, keys) for index in range(len(psbt.inputs))]

        owned = [o for o in outcomes if o.owned]
        failed = [o for o in owned if o.status == InputStatus.FAILED]
        if not owned:
            raise NothingToSignError(f"No input of the PSBT belongs to key '{name}'")
        if failed and (strict or len(failed) == len(owned)):
            details = "; ".join(f"input {o.index}: {o.reason}" for o in failed)
            raise UnsupportedScriptError(
                f"Cannot sign owned inputs: {details}",
                input_indexes=[o.index for o in failed],
            )

        result = SigningResult(psbt=psbt.serialize(), outcomes=outcomes)
        logger.info(
            f"Key '{name}' signed {result.signatures_added} of {len(outcomes)} inputs"
            + (f", {len(failed)} unsupported" if failed else "")
        )
        return result

    def _sign_input(self, psbt: PSBT, index: int, keys: _DerivationCache) -> InputOutcome:
        psbt_input = psbt.inputs[index]
        if psbt_input.is_finalized:
            logger.debug(f"Input {index} already finalized")
            return InputOutcome(index, InputStatus.FINALIZED)

        fingerprint = keys.master.fingerprint
        ecdsa_keys = []
        for pubkey, (fp, path) in psbt_input.bip32_derivations.items():
            if fp != fingerprint:
                continue
            child = keys.child(path)
            if child is not None and child.public_key.bytes == pubkey:
                ecdsa_keys.append((pubkey, child))

        key_path = None
        script_path_only = False
        for xonly, (leaf_hashes, fp, path) in psbt_input.tap_bip32_derivations.items():
            if fp != fingerprint:
                continue
            child = keys.child(path)
            if child is None or child.public_key.x_only != xonly:
                continue
            if leaf_hashes:
                script_path_only = True
            else:
                key_path = child

        if key_path is None and not ecdsa_keys:
            if script_path_only:
                return InputOutcome(index, InputStatus.FAILED, ScriptType.P2TR,
                                    "taproot script path spends are not supported")
            return InputOutcome(index, InputStatus.SKIPPED)

        try:
            if key_path is not None:
                return self._sign_taproot(psbt, index, key_path)
            return self._sign_ecdsa(psbt, index, ecdsa_keys)
        except (UnsupportedScriptTypeError, SighashError) as e:
            logger.warning(f"Input {index} not signed: {e}")
            return InputOutcome(index, InputStatus.FAILED, reason=str(e))

    def _sign_ecdsa(self, psbt: PSBT, index: int,
                    owned_keys: List[Tuple[bytes, ExtendedKey]]) -> InputOutcome:
        psbt_input = psbt.inputs[index]
        pending = [(pk, child) for pk, child in owned_keys if pk not in psbt_input.partial_sigs]
        if not pending:
            return InputOutcome(index, InputStatus.ALREADY_SIGNED)

        spent = psbt.spent_output(index)
        if spent is None:
            raise UnsupportedScriptTypeError("no UTXO information for input")

        sighash_type = SIGHASH_ALL if psbt_input.sighash_type is None else psbt_input.sighash_type
        if not is_valid_ecdsa_sighash(sighash_type):
            raise UnsupportedScriptTypeError(f"unsupported sighash type {sighash_type:#x}")

        spend_type = classify_spend(spent.script_pubkey, psbt_input.redeem_script)
        if spend_type == ScriptType.P2SH and psbt_input.redeem_script is None:
            raise UnsupportedScriptTypeError("P2SH input without redeem script")
        if psbt_input.redeem_script is not None and spend_type in (
                ScriptType.P2SH, ScriptType.P2SH_P2WPKH, ScriptType.P2SH_P2WSH):
            if hash160(psbt_input.redeem_script) != spent.script_pubkey[2:22]:
                raise UnsupportedScriptTypeError("redeem script does not match the spent output")

        matching = []
        mismatches = []
        for pubkey, child in pending:
            try:
                digest = self._ecdsa_digest(psbt, index, spend_type, spent, pubkey, sighash_type)
            except UnsupportedScriptTypeError as e:
                mismatches.append(e)
                continue
            matching.append((pubkey, child, digest))

        if not matching:
            if len(pending) < len(owned_keys):
                return InputOutcome(index, InputStatus.ALREADY_SIGNED)
            raise mismatches[0]
        for e in mismatches:
            logger.debug(f"Input {index}: skipping derivation: {e}")

        for pubkey, child, digest in matching:
            signature = sign_ecdsa(child.key, digest)
            psbt_input.add_partial_sig(pubkey, encode_transaction_signature(signature, sighash_type))

        logger.debug(f"Input {index}: {spend_type.value} signature added")
        return InputOutcome(index, InputStatus.SIGNED, spend_type)

    def _ecdsa_digest(self, psbt: PSBT, index: int, spend_type: ScriptType, spent,
                      pubkey: bytes, sighash_type: int) -> bytes:
        psbt_input: PSBTInput = psbt.inputs[index]
        tx = psbt.tx

        if spend_type in (ScriptType.P2PKH, ScriptType.P2SH):
            if psbt_input.non_witness_utxo is None:
                raise UnsupportedScriptTypeError("legacy input requires the full previous transaction")
            if spend_type == ScriptType.P2PKH:
                if spent.script_pubkey[3:23] != hash160(pubkey):
                    raise UnsupportedScriptTypeError("public key does not match the P2PKH output")
                script_code = spent.script_pubkey
            else:
                if pubkey not in psbt_input.redeem_script:
                    raise UnsupportedScriptTypeError("public key does not appear in the redeem script")
                script_code = psbt_input.redeem_script
            return legacy_sighash(tx, index, script_code, sighash_type)

        if spend_type in (ScriptType.P2WPKH, ScriptType.P2SH_P2WPKH):
            program = (spent.script_pubkey if spend_type == ScriptType.P2WPKH
                       else psbt_input.redeem_script)[2:22]
            if program != hash160(pubkey):
                raise UnsupportedScriptTypeError("public key does not match the witness program")
            script_code = p2wpkh_script_code(program)
        elif spend_type in (ScriptType.P2WSH, ScriptType.P2SH_P2WSH):
            witness_script = psbt_input.witness_script
            if witness_script is None:
                raise UnsupportedScriptTypeError("P2WSH input without witness script")
            program = (spent.script_pubkey if spend_type == ScriptType.P2WSH
                       else psbt_input.redeem_script)[2:34]
            if sha256(witness_script) != program:
                raise UnsupportedScriptTypeError("witness script does not match the witness program")
            if pubkey not in witness_script:
                raise UnsupportedScriptTypeError("public key does not appear in the witness script")
            script_code = witness_script
        else:
            raise UnsupportedScriptTypeError(f"cannot sign {spend_type.value} outputs with ECDSA")

        return segwit_v0_sighash(tx, index, script_code, spent.value, sighash_type)

    def _sign_taproot(self, psbt: PSBT, index: int, child: ExtendedKey) -> InputOutcome:
        psbt_input = psbt.inputs[index]
        if psbt_input.tap_key_sig is not None:
            return InputOutcome(index, InputStatus.ALREADY_SIGNED, ScriptType.P2TR)

        spent_outputs = [psbt.spent_output(i) for i in range(len(psbt.inputs))]
        spent = spent_outputs[index]
        if spent is None or classify_spend(spent.script_pubkey) != ScriptType.P2TR:
            raise UnsupportedScriptTypeError("taproot derivation on a non-taproot input")
        if any(output is None for output in spent_outputs):
            raise UnsupportedScriptTypeError("taproot signing needs the UTXO of every input")

        sighash_type = SIGHASH_DEFAULT if psbt_input.sighash_type is None else psbt_input.sighash_type
        if sighash_type not in TAPROOT_SIGHASH_TYPES:
            raise UnsupportedScriptTypeError(f"unsupported taproot sighash type {sighash_type:#x}")

        internal_key = child.public_key.x_only
        if psbt_input.tap_internal_key is not None and psbt_input.tap_internal_key != internal_key:
            raise UnsupportedScriptTypeError("key is not the taproot internal key")

        tweaked, _ = child.key.taproot_tweak_private_key(psbt_input.tap_merkle_root)
        if tweaked.public_key().x_only != spent.script_pubkey[2:34]:
            raise UnsupportedScriptTypeError("tweaked key does not match the taproot output")

        digest = taproot_key_path_sighash(psbt.tx, index, spent_outputs, sighash_type)
        try:
            aux_rand = self.randomness.get_random_bytes(32)
        except RandomnessUnavailableError as e:
            raise InternalError(f"Randomness source unavailable: {e}") from e

        signature = sign_schnorr(tweaked, digest, aux_rand)
        if sighash_type != SIGHASH_DEFAULT:
            signature += bytes([sighash_type])
        psbt_input.set_tap_key_sig(signature)

        logger.debug(f"Input {index}: taproot key path signature added")
        return InputOutcome(index, InputStatus.SIGNED, ScriptType.P2TR)
