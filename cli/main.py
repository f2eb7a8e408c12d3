#!/usr/bin/env python3
"""
Signing Backend - Command Line Interface

Runs the backend operations locally through the same Request Dispatcher the
service uses, against the Key Store selected by configuration.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from signer.config import ConfigurationError, ConfigurationManager
from signer.dispatcher import Request, RequestDispatcher, Response
from signer.logging_config import setup_logging


class CLIContext:
    """Global CLI context for sharing state across commands."""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.verbose: int = 0
        self._dispatcher: Optional[RequestDispatcher] = None

    def setup_logging(self):
        """Configure logging based on verbosity level."""
        log_levels = {
            0: logging.WARNING,
            1: logging.INFO,
            2: logging.DEBUG
        }
        setup_logging(log_levels.get(min(self.verbose, 2), logging.DEBUG))

    @property
    def dispatcher(self) -> RequestDispatcher:
        if self._dispatcher is None:
            try:
                settings = ConfigurationManager(self.config_file).settings()
            except ConfigurationError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(2)
            self._dispatcher = RequestDispatcher.from_settings(settings)
        return self._dispatcher

    def run(self, request: Request) -> Response:
        """Dispatch ``request``; print errors and exit non-zero on failure."""
        response = self.dispatcher.handle(request)
        if not response.ok:
            error = json.loads(response.body)
            click.echo(f"Error ({error['error']}): {error['message']}", err=True)
            sys.exit(1)
        return response


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--config-file', '-c',
              type=click.Path(dir_okay=False),
              help='Path to configuration file')
@click.option('--verbose', '-v',
              count=True,
              help='Increase verbosity (-v for INFO, -vv for DEBUG)')
@click.version_option(package_name='signing-backend', prog_name='signing-backend')
@pass_context
def cli(ctx: CLIContext, config_file: Optional[str], verbose: int):
    """
    Custodial HD signing backend.

    Examples:
        signing-backend create-key alpha
        signing-backend get-xpub alpha --path m/0/0
        signing-backend import-wallet alpha wallet.txt
        signing-backend sign alpha tx.psbt -o signed.psbt
    """
    ctx.config_file = config_file
    ctx.verbose = verbose
    ctx.setup_logging()


@cli.command('create-key')
@click.argument('name')
@pass_context
def create_key(ctx: CLIContext, name: str):
    """Create a signing key and print its public summary."""
    response = ctx.run(Request("POST", "/keys", body=json.dumps({"key_name": name}).encode('utf-8')))
    click.echo(json.dumps(json.loads(response.body), indent=2))


@cli.command('get-xpub')
@click.argument('name')
@click.option('--path', '-p', default=None, help="Derivation path, e.g. m/48'/0'/0'/2'")
@pass_context
def get_xpub(ctx: CLIContext, name: str, path: Optional[str]):
    """Print the extended public key of NAME at a derivation path."""
    query = {"path": path} if path else {}
    response = ctx.run(Request("GET", f"/keys/{name}", query=query))
    click.echo(json.dumps(json.loads(response.body), indent=2))


@cli.command('import-wallet')
@click.argument('name')
@click.argument('export_file', type=click.Path(exists=True, dir_okay=False))
@pass_context
def import_wallet(ctx: CLIContext, name: str, export_file: str):
    """Attach a BlueWallet/Coldcard setup file to NAME."""
    body = Path(export_file).read_bytes()
    response = ctx.run(Request("POST", f"/keys/{name}", body=body))
    click.echo(json.dumps(json.loads(response.body), indent=2))


@cli.command('sign')
@click.argument('name')
@click.argument('psbt_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--strict', is_flag=True, help='Fail if any owned input cannot be signed')
@click.option('--output', '-o', type=click.Path(dir_okay=False), default=None,
              help='Write the signed base64 PSBT to a file instead of stdout')
@pass_context
def sign(ctx: CLIContext, name: str, psbt_file: str, strict: bool, output: Optional[str]):
    """Sign the inputs of a PSBT file (raw or base64) that belong to NAME."""
    body = Path(psbt_file).read_bytes().strip()
    query = {"strict": "true"} if strict else {}
    response = ctx.run(Request("POST", f"/keys/{name}/wallet", query=query, body=body))

    if output:
        Path(output).write_text(response.body + "\n")
        click.echo(f"Signed PSBT written to {output}", err=True)
    else:
        click.echo(response.body)


if __name__ == '__main__':
    cli()
