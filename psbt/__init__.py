"""
PSBT Module

BIP174 Partially Signed Bitcoin Transaction handling: parsing with byte-exact
re-serialization, transaction codec, script classification, sighash
algorithms and a builder for tooling.
"""

from .builder import PSBTBuilder
from .exceptions import (
    PSBTError,
    PSBTParsingError,
    PSBTValidationError,
    SighashError,
    UnsupportedScriptTypeError,
)
from .parser import PSBT, PSBTInput, PSBTOutput, PSBTParser, parse_psbt
from .scripts import ScriptType, classify_script, classify_spend
from .transaction import Transaction, TxIn, TxOut

__all__ = [
    'PSBTBuilder',
    'PSBTError',
    'PSBTParsingError',
    'PSBTValidationError',
    'SighashError',
    'UnsupportedScriptTypeError',
    'PSBT',
    'PSBTInput',
    'PSBTOutput',
    'PSBTParser',
    'parse_psbt',
    'ScriptType',
    'classify_script',
    'classify_spend',
    'Transaction',
    'TxIn',
    'TxOut',
]
