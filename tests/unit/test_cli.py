"""
Tests for the command line interface
"""

import json
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from cli.main import CLIContext, cli
from crypto.keys import parse_derivation_path
from psbt.parser import parse_psbt

from helpers import account_line, build_export, p2wpkh_spend_psbt


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch('cli.main.setup_logging') as mock_setup:
        yield mock_setup


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def context(dispatcher):
    """CLI context wired to the in-memory test dispatcher."""
    ctx = CLIContext()
    ctx._dispatcher = dispatcher
    return ctx


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "signer.yml"
    path.write_text(yaml.safe_dump({
        'storage': {'backend': 'file', 'path': str(tmp_path / "keys")},
        'logging': {'level': 'WARNING'},
    }))
    return str(path)


class TestCommands:
    """Test each command against an injected dispatcher."""

    def test_create_key(self, runner, context, alpha_master):
        result = runner.invoke(cli, ['create-key', 'alpha'], obj=context)

        assert result.exit_code == 0
        summary = json.loads(result.output)
        assert summary["fingerprint"] == alpha_master.fingerprint.hex()

    def test_duplicate_key_exits_nonzero(self, runner, context):
        runner.invoke(cli, ['create-key', 'alpha'], obj=context)
        result = runner.invoke(cli, ['create-key', 'alpha'], obj=context)

        assert result.exit_code == 1
        assert "Error (AlreadyExists)" in result.output

    def test_get_xpub_with_path(self, runner, context, alpha_master):
        runner.invoke(cli, ['create-key', 'alpha'], obj=context)
        result = runner.invoke(cli, ['get-xpub', 'alpha', '--path', "m/84'/0'/0'"], obj=context)

        assert result.exit_code == 0
        assert json.loads(result.output)["xpub"] == alpha_master.derive_path("m/84'/0'/0'").to_xpub()

    def test_import_and_sign(self, runner, context, tmp_path, cosigners, alpha_master):
        created = json.loads(runner.invoke(cli, ['create-key', 'alpha'], obj=context).output)
        keys = [(created["fingerprint"].upper(), created["xpub"])]
        keys.extend(account_line(m) for m in cosigners)
        export_file = tmp_path / "wallet.txt"
        export_file.write_text(build_export(keys, threshold=2))

        result = runner.invoke(cli, ['import-wallet', 'alpha', str(export_file)], obj=context)
        assert result.exit_code == 0
        assert json.loads(result.output)["threshold"] == 2

        path = parse_derivation_path("m/48'/0'/0'/2'/0/4")
        child = alpha_master.derive_path(path)
        psbt_file = tmp_path / "tx.psbt"
        psbt_file.write_bytes(p2wpkh_spend_psbt(child, alpha_master.fingerprint, path).serialize())
        output = tmp_path / "signed.psbt"

        result = runner.invoke(cli, ['sign', 'alpha', str(psbt_file), '-o', str(output)], obj=context)

        assert result.exit_code == 0
        signed = parse_psbt(output.read_text().strip())
        assert child.public_key.bytes in signed.inputs[0].partial_sigs

    def test_sign_missing_file(self, runner, context, tmp_path):
        result = runner.invoke(cli, ['sign', 'alpha', str(tmp_path / "absent.psbt")], obj=context)
        assert result.exit_code == 2

    def test_verbosity(self, runner, context, quiet_logging):
        runner.invoke(cli, ['-vv', 'create-key', 'alpha'], obj=context)
        quiet_logging.assert_called_once_with(10)


class TestConfiguredCLI:
    """Test commands wired from a configuration file."""

    def test_file_store_persists_between_runs(self, runner, config_file):
        created = runner.invoke(cli, ['-c', config_file, 'create-key', 'alpha'])
        assert created.exit_code == 0

        result = runner.invoke(cli, ['-c', config_file, 'get-xpub', 'alpha'])
        assert result.exit_code == 0
        assert json.loads(result.output)["xpub"] == json.loads(created.output)["xpub"]

    def test_invalid_configuration(self, runner, tmp_path):
        path = tmp_path / "signer.yml"
        path.write_text("network: regtest\n")

        result = runner.invoke(cli, ['-c', str(path), 'create-key', 'alpha'])
        assert result.exit_code == 2
        assert "Invalid configuration" in result.output
