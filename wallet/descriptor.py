"""
Output Descriptors

Renders receive/change output descriptors for an imported wallet and derives
the scriptPubKeys those descriptors describe. The signer uses the latter to
recognise outputs that pay back into the wallet.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from crypto.keys import (
    BIP32_HARDENED_OFFSET,
    PublicKey,
    format_derivation_path,
    hash160,
    parse_derivation_path,
    parse_extended_public_key,
)
from psbt.scripts import (
    ScriptType,
    multisig_script,
    p2pkh_script,
    p2sh_script,
    p2tr_script,
    p2wpkh_script,
    p2wsh_script,
)

RECEIVE_CHAIN = 0
CHANGE_CHAIN = 1

# BIP380 descriptor checksum
_DESCRIPTOR_INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    "ijklmnopqrstuvwxyzABCDEFGH`#\"\\ "
)
_DESCRIPTOR_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_DESCRIPTOR_GENERATOR = [0xf5dee51989, 0xa9fdca3312, 0x1bab10e32d, 0x3706b1677a, 0x644d626ffd]


def _descriptor_polymod(symbols: Iterable[int]) -> int:
    chk = 1
    for value in symbols:
        top = chk >> 35
        chk = ((chk & 0x7ffffffff) << 5) ^ value
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _DESCRIPTOR_GENERATOR[i]
    return chk


def descriptor_checksum(descriptor: str) -> str:
    """
    Eight-character BIP380 checksum of a descriptor without its ``#`` suffix.

    Raises:
        ValueError: If the descriptor holds a character outside the charset
    """
    symbols = []
    groups = []
    for c in descriptor:
        position = _DESCRIPTOR_INPUT_CHARSET.find(c)
        if position < 0:
            raise ValueError(f"Invalid descriptor character {c!r}")
        symbols.append(position & 31)
        groups.append(position >> 5)
        if len(groups) == 3:
            symbols.append(groups[0] * 9 + groups[1] * 3 + groups[2])
            groups = []
    if len(groups) == 1:
        symbols.append(groups[0])
    elif len(groups) == 2:
        symbols.append(groups[0] * 3 + groups[1])

    checksum = _descriptor_polymod(symbols + [0] * 8) ^ 1
    return ''.join(_DESCRIPTOR_CHECKSUM_CHARSET[(checksum >> (5 * (7 - i))) & 31] for i in range(8))


def append_checksum(descriptor: str) -> str:
    return f"{descriptor}#{descriptor_checksum(descriptor)}"


def key_expression(fingerprint: str, derivation: str, xpub: str, chain: int) -> str:
    """
    Render one ranged key expression, e.g. ``[eab239aa/48'/0'/0'/2']xpub.../0/*``.
    """
    origin = format_derivation_path(parse_derivation_path(derivation))[1:]
    return f"[{fingerprint}{origin}]{xpub}/{chain}/*"


def render_descriptor(script_type: ScriptType, threshold: int,
                      cosigners: Sequence, chain: int) -> str:
    """
    Render the output descriptor for one chain of a wallet.

    Args:
        script_type: Wallet script type
        threshold: Signatures required (multisig types only)
        cosigners: Objects with ``fingerprint``, ``derivation`` and ``xpub``
        chain: 0 for receive, 1 for change

    Returns:
        Descriptor string with its BIP380 checksum
    """
    return append_checksum(_render_body(script_type, threshold, cosigners, chain))


def _render_body(script_type: ScriptType, threshold: int, cosigners: Sequence, chain: int) -> str:
    keys = [key_expression(c.fingerprint, c.derivation, c.xpub, chain) for c in cosigners]

    if script_type.is_multisig:
        inner = f"sortedmulti({threshold},{','.join(keys)})"
        if script_type == ScriptType.P2WSH:
            return f"wsh({inner})"
        if script_type == ScriptType.P2SH_P2WSH:
            return f"sh(wsh({inner}))"
        return f"sh({inner})"

    if len(keys) != 1:
        raise ValueError(f"{script_type.value} descriptors take exactly one key")
    key = keys[0]
    if script_type == ScriptType.P2WPKH:
        return f"wpkh({key})"
    if script_type == ScriptType.P2SH_P2WPKH:
        return f"sh(wpkh({key}))"
    if script_type == ScriptType.P2PKH:
        return f"pkh({key})"
    if script_type == ScriptType.P2TR:
        return f"tr({key})"
    raise ValueError(f"Cannot render descriptor for {script_type.value}")


def render_descriptors(script_type: ScriptType, threshold: int,
                       cosigners: Sequence) -> Tuple[str, str]:
    """Receive and change descriptors."""
    return (
        render_descriptor(script_type, threshold, cosigners, RECEIVE_CHAIN),
        render_descriptor(script_type, threshold, cosigners, CHANGE_CHAIN),
    )


def derive_cosigner_pubkeys(wallet, chain: int, index: int) -> List[bytes]:
    """Compressed public keys of every cosigner at ``/chain/index``."""
    pubkeys = []
    for cosigner in wallet.cosigners:
        account = parse_extended_public_key(cosigner.xpub).key
        child = account.derive_child(chain).derive_child(index)
        pubkeys.append(child.public_key.bytes)
    return pubkeys


def derive_script_pubkey(wallet, chain: int, index: int) -> bytes:
    """
    scriptPubKey of the wallet address at ``/chain/index``.

    Args:
        wallet: WalletDescriptor
        chain: 0 for receive, 1 for change
        index: Non-hardened address index
    """
    pubkeys = derive_cosigner_pubkeys(wallet, chain, index)
    script_type = wallet.script_type

    if script_type.is_multisig:
        witness_script = multisig_script(wallet.threshold, pubkeys)
        if script_type == ScriptType.P2WSH:
            return p2wsh_script(witness_script)
        if script_type == ScriptType.P2SH_P2WSH:
            return p2sh_script(hash160(p2wsh_script(witness_script)))
        return p2sh_script(hash160(witness_script))

    pubkey = pubkeys[0]
    if script_type == ScriptType.P2WPKH:
        return p2wpkh_script(hash160(pubkey))
    if script_type == ScriptType.P2SH_P2WPKH:
        return p2sh_script(hash160(p2wpkh_script(hash160(pubkey))))
    if script_type == ScriptType.P2PKH:
        return p2pkh_script(hash160(pubkey))
    if script_type == ScriptType.P2TR:
        return p2tr_script(PublicKey(pubkey).taproot_tweak_public_key())
    raise ValueError(f"Cannot derive scripts for {script_type.value}")


def _candidate_positions(wallet, origins: Iterable[Tuple[bytes, List[int]]]):
    """Yield ``(chain, index)`` pairs whose origin sits under a wallet cosigner."""
    accounts = {
        (c.fingerprint, tuple(parse_derivation_path(c.derivation)))
        for c in wallet.cosigners
    }
    seen = set()
    for fingerprint, path in origins:
        if len(path) < 2:
            continue
        chain, index = path[-2], path[-1]
        if chain not in (RECEIVE_CHAIN, CHANGE_CHAIN) or index >= BIP32_HARDENED_OFFSET:
            continue
        if (fingerprint.hex(), tuple(path[:-2])) not in accounts:
            continue
        if (chain, index) not in seen:
            seen.add((chain, index))
            yield chain, index


def is_wallet_output(wallet, script_pubkey: bytes,
                     bip32_derivations: Dict[bytes, Tuple[bytes, List[int]]],
                     tap_bip32_derivations: Optional[Dict[bytes, tuple]] = None) -> bool:
    """
    Check whether an output pays to the wallet itself.

    The output's key origins name candidate address positions; the output
    belongs to the wallet only if re-deriving the wallet script at one of
    them reproduces ``script_pubkey`` exactly.

    Args:
        wallet: WalletDescriptor
        script_pubkey: Output script
        bip32_derivations: PSBT output ``{pubkey: (fingerprint, path)}``
        tap_bip32_derivations: PSBT output ``{xonly: (leaf_hashes, fingerprint, path)}``
    """
    origins = list(bip32_derivations.values())
    if tap_bip32_derivations:
        origins.extend((fp, path) for _, fp, path in tap_bip32_derivations.values())

    for chain, index in _candidate_positions(wallet, origins):
        if derive_script_pubkey(wallet, chain, index) == script_pubkey:
            return True
    return False
