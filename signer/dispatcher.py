"""
Request Dispatcher

Maps HTTP-like requests onto the four backend operations and turns every
outcome, including failures, into a status code and body:

    POST /keys                  create key        {"key_name": ...}
    GET  /keys/{key}?path=...   extended public key
    POST /keys/{key}            import wallet     setup file text or base64
    POST /keys/{key}/wallet     sign PSBT         base64 PSBT (?strict=true)

``handler`` adapts API-Gateway style proxy events.
"""

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from keystore.randomness import create_randomness_source
from keystore.storage import create_key_store
from psbt.parser import PSBT_MAGIC, PSBT_SEPARATOR
from wallet.importer import WalletImporter

from .config import ConfigurationManager, SignerSettings
from .exceptions import (
    InternalError,
    MalformedInputError,
    NotFoundError,
    SigningServiceError,
)
from .key_manager import KeyManager
from .logging_config import setup_logging
from .policy import PolicySet
from .psbt_signer import PSBTSigner

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}
TEXT_HEADERS = {"Content-Type": "text/plain"}

KEY_SEGMENT = r'(?P<key>[^/]+)'


@dataclass
class Request:
    """Transport-neutral request."""
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    body: bytes = b''

    @classmethod
    def from_event(cls, event: Dict[str, Any]) -> 'Request':
        """
        Build a request from an API-Gateway proxy event.

        Raises:
            MalformedInputError: If a base64 encoded body cannot be decoded
        """
        body = event.get('body') or ''
        if event.get('isBase64Encoded'):
            try:
                body = base64.b64decode(body, validate=True)
            except (binascii.Error, ValueError) as e:
                raise MalformedInputError(f"Invalid base64 request body: {e}") from e
        elif isinstance(body, str):
            body = body.encode('utf-8')

        return cls(
            method=(event.get('httpMethod') or 'GET').upper(),
            path=event.get('path') or '/',
            query=dict(event.get('queryStringParameters') or {}),
            body=body,
        )


@dataclass
class Response:
    """Status code, headers and text body."""
    status: int
    body: str
    headers: Dict[str, str] = field(default_factory=lambda: dict(JSON_HEADERS))

    @classmethod
    def json(cls, status: int, payload: Any) -> 'Response':
        return cls(status, json.dumps(payload), dict(JSON_HEADERS))

    @classmethod
    def error(cls, exc: SigningServiceError) -> 'Response':
        return cls.json(exc.http_status, exc.to_dict())

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def to_event(self) -> Dict[str, Any]:
        return {
            "statusCode": self.status,
            "headers": self.headers,
            "body": self.body,
            "isBase64Encoded": False,
        }


def decode_export_body(body: bytes) -> str:
    """
    Setup file text from a request body holding the text or its base64.

    Raises:
        MalformedInputError: If the body is not UTF-8 text
    """
    compact = b''.join(body.split())
    if compact:
        try:
            decoded = base64.b64decode(compact, validate=True)
            return decoded.decode('utf-8')
        except (binascii.Error, ValueError):
            pass
    try:
        return body.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedInputError("Wallet export must be UTF-8 text") from e


def decode_psbt_body(body: bytes) -> Union[bytes, str]:
    """Raw PSBT bytes as sent, or the base64 text for the parser to decode."""
    if body.startswith(PSBT_MAGIC + PSBT_SEPARATOR):
        return body
    try:
        return body.decode('ascii')
    except UnicodeDecodeError as e:
        raise MalformedInputError("PSBT must be base64 text or raw PSBT bytes") from e


def parse_bool(value: Optional[str], name: str) -> Optional[bool]:
    if value is None:
        return None
    lowered = value.strip().lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no'):
        return False
    raise MalformedInputError(f"Query parameter '{name}' must be true or false")


class RequestDispatcher:
    """
    Routes requests to the Key Manager, Wallet Importer and PSBT Signer.

    Args:
        key_manager: Key creation and xpub export
        importer: Wallet import
        signer: PSBT signing
    """

    def __init__(self, key_manager: KeyManager, importer: WalletImporter, signer: PSBTSigner):
        self.key_manager = key_manager
        self.importer = importer
        self.signer = signer
        self.routes: List[Tuple[str, re.Pattern, Callable[[Request, Dict[str, str]], Response]]] = [
            ("POST", re.compile(r'^/keys/?$'), self._create_key),
            ("GET", re.compile(rf'^/keys/{KEY_SEGMENT}/?$'), self._get_xpub),
            ("POST", re.compile(rf'^/keys/{KEY_SEGMENT}/?$'), self._import_wallet),
            ("POST", re.compile(rf'^/keys/{KEY_SEGMENT}/wallet/?$'), self._sign),
        ]

    @classmethod
    def from_settings(cls, settings: SignerSettings) -> 'RequestDispatcher':
        """Wire the components selected by ``settings``."""
        store = create_key_store(settings.storage)
        randomness = create_randomness_source(settings.randomness)
        key_manager = KeyManager(store, randomness, settings)
        importer = WalletImporter(store, key_manager)
        signer = PSBTSigner(
            key_manager,
            policies=PolicySet.from_settings(settings.policy),
            randomness=randomness,
            strict=settings.signing.strict,
        )
        return cls(key_manager, importer, signer)

    def handle(self, request: Request) -> Response:
        """
        Dispatch one request.

        Never raises: failures become error responses.
        """
        try:
            route, params = self._match(request)
            return route(request, params)
        except SigningServiceError as e:
            log = logger.error if e.kind == InternalError.kind else logger.info
            log(f"{request.method} {request.path} -> {e.kind.value}: {e.message}")
            return Response.error(e)
        except Exception as e:
            logger.exception(f"Unhandled error for {request.method} {request.path}")
            return Response.error(InternalError(f"Internal error: {type(e).__name__}"))

    def _match(self, request: Request):
        for method, pattern, route in self.routes:
            match = pattern.match(request.path)
            if match and method == request.method:
                return route, match.groupdict()
        raise NotFoundError(f"No route for {request.method} {request.path}")

    def _create_key(self, request: Request, params: Dict[str, str]) -> Response:
        try:
            payload = json.loads(request.body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedInputError(f"Request body must be JSON: {e}") from e
        if not isinstance(payload, dict) or not isinstance(payload.get('key_name'), str):
            raise MalformedInputError("Request body must contain a string 'key_name'")

        summary = self.key_manager.create_key(payload['key_name'])
        return Response.json(201, summary.model_dump(mode='json'))

    def _get_xpub(self, request: Request, params: Dict[str, str]) -> Response:
        result = self.key_manager.get_xpub(params['key'], request.query.get('path'))
        return Response.json(200, result.model_dump(mode='json'))

    def _import_wallet(self, request: Request, params: Dict[str, str]) -> Response:
        wallet = self.importer.import_wallet(params['key'], decode_export_body(request.body))
        return Response.json(200, wallet.model_dump(mode='json'))

    def _sign(self, request: Request, params: Dict[str, str]) -> Response:
        strict = parse_bool(request.query.get('strict'), 'strict')
        result = self.signer.sign(params['key'], decode_psbt_body(request.body), strict=strict)
        body = base64.b64encode(result.psbt).decode('ascii')
        return Response(200, body, dict(TEXT_HEADERS))


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """
    API-Gateway proxy entry point.

    Builds a fresh dispatcher per invocation so nothing is shared between
    requests.
    """
    try:
        settings = ConfigurationManager().settings()
        setup_logging(settings.logging.level)
        request = Request.from_event(event)
        dispatcher = RequestDispatcher.from_settings(settings)
    except SigningServiceError as e:
        return Response.error(e).to_event()
    except Exception as e:
        logger.exception("Failed to initialise request handling")
        return Response.error(InternalError(f"Backend misconfigured: {type(e).__name__}")).to_event()

    return dispatcher.handle(request).to_event()
