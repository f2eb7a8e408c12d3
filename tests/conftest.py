"""
Pytest configuration and fixtures for signing backend tests.
"""

import pytest

from crypto.keys import seed_from_entropy, seed_to_master_key
from keystore.storage import MemoryKeyStore
from signer.config import SignerSettings
from signer.dispatcher import RequestDispatcher
from signer.key_manager import KeyManager
from signer.policy import PolicySet
from signer.psbt_signer import PSBTSigner
from wallet.importer import WalletImporter

from helpers import FixedRandomnessSource, account_line, build_export, cosigner_master


@pytest.fixture
def settings():
    """Settings with an in-memory store and no spending limit."""
    return SignerSettings.model_validate({
        'storage': {'backend': 'memory'},
        'policy': {'max_spend_per_tx': None},
    })


@pytest.fixture
def randomness():
    return FixedRandomnessSource()


@pytest.fixture
def store():
    return MemoryKeyStore()


@pytest.fixture
def key_manager(store, randomness, settings):
    return KeyManager(store, randomness, settings)


@pytest.fixture
def importer(store, key_manager):
    return WalletImporter(store, key_manager)


@pytest.fixture
def psbt_signer(key_manager, randomness):
    return PSBTSigner(key_manager, policies=PolicySet(), randomness=randomness)


@pytest.fixture
def dispatcher(key_manager, importer, psbt_signer):
    return RequestDispatcher(key_manager, importer, psbt_signer)


@pytest.fixture
def alpha_master():
    """Master key that ``create_key`` derives under the fixed randomness."""
    return seed_to_master_key(seed_from_entropy(FixedRandomnessSource().get_random_bytes(32)))


@pytest.fixture
def cosigners():
    """Two external cosigner master keys."""
    return [cosigner_master(0xa1), cosigner_master(0xb2)]


@pytest.fixture
def alpha_with_wallet(key_manager, importer, cosigners):
    """Key ``alpha`` with a 2-of-3 P2WSH wallet attached."""
    summary = key_manager.create_key("alpha")
    keys = [(summary.fingerprint.upper(), summary.xpub)]
    keys.extend(account_line(m) for m in cosigners)
    wallet = importer.import_wallet("alpha", build_export(keys, threshold=2))
    return summary, wallet


# Test markers for different test categories
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "concurrency: mark test as a concurrency test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
