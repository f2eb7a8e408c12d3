"""
Wallet Importer

Attaches an externally generated wallet export to a stored key after checking
that the export really lists that key.
"""

import logging

from pydantic import ValidationError

from crypto.exceptions import CryptoError
from keystore.schema import CosignerKey, WalletDescriptor
from keystore.storage import KeyStore
from signer.exceptions import MalformedInputError
from signer.key_manager import KeyManager, storage_errors, validate_key_name

from .bluewallet import WalletExport, WalletExportError, parse_wallet_export
from .descriptor import render_descriptors

logger = logging.getLogger(__name__)


class WalletImporter:
    """
    Validates wallet exports and stores them on Key Records.

    Args:
        store: Key Store holding the records
        key_manager: Key Manager used to re-derive the listed xpub
    """

    def __init__(self, store: KeyStore, key_manager: KeyManager):
        self.store = store
        self.key_manager = key_manager

    def import_wallet(self, name: str, export_text: str) -> WalletDescriptor:
        """
        Parse, check and attach a wallet export.

        Args:
            name: Key name
            export_text: BlueWallet/Coldcard setup file contents

        Returns:
            The attached WalletDescriptor

        Raises:
            MalformedInputError: Unparseable export or one that does not list this key
            NotFoundError: Unknown key
            ConflictError: The record changed during the import
        """
        validate_key_name(name)
        try:
            export = parse_wallet_export(export_text)
        except WalletExportError as e:
            raise MalformedInputError(f"Invalid wallet export: {e}") from e

        record, version = self.key_manager.load_record(name)

        if export.network != record.network.value:
            raise MalformedInputError(
                f"Wallet export is for {export.network} but key '{name}' is {record.network.value}"
            )
        self._check_consistency(record, export)

        cosigners = [
            CosignerKey(fingerprint=k.fingerprint, derivation=k.derivation, xpub=k.xpub)
            for k in export.keys
        ]
        receive, change = render_descriptors(export.script_type, export.threshold, cosigners)
        try:
            wallet = WalletDescriptor(
                name=export.name or name,
                script_type=export.script_type,
                threshold=export.threshold,
                cosigners=cosigners,
                receive_descriptor=receive,
                change_descriptor=change,
            )
        except ValidationError as e:
            raise MalformedInputError(f"Invalid wallet: {e}") from e

        if record.wallet is not None:
            logger.info(f"Replacing wallet '{record.wallet.name}' on key '{name}'")

        updated = record.with_wallet(wallet)
        with storage_errors(name):
            self.store.write_if_version(name, updated.to_bytes(), version)

        logger.info(
            f"Attached {wallet.threshold}-of-{len(wallet.cosigners)} "
            f"{wallet.script_type.value} wallet '{wallet.name}' to key '{name}'"
        )
        return wallet

    def _check_consistency(self, record, export: WalletExport) -> None:
        own_keys = [k for k in export.keys if k.fingerprint == record.fingerprint]
        if not own_keys:
            raise MalformedInputError(
                f"Wallet export does not include key fingerprint {record.fingerprint}"
            )

        master = self.key_manager.master_key(record)
        for listed in own_keys:
            try:
                derived = master.derive_path(listed.derivation)
            except CryptoError as e:
                raise MalformedInputError(f"Cannot derive {listed.derivation}: {e}") from e
            if (derived.public_key != listed.key.public_key
                    or derived.chain_code != listed.key.chain_code):
                raise MalformedInputError(
                    f"xpub listed for fingerprint {listed.fingerprint} at "
                    f"{listed.derivation} does not belong to key '{record.name}'"
                )
