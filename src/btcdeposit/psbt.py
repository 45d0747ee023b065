"""
PSBT helpers on top of python-bitcointx.

Plans cross the wallet boundary as BIP174 PSBTs. The library owns the PSBT
format; these helpers convert between its objects and the package's own
transaction model, which coin selection and signature checks work on.
"""

from __future__ import annotations

import base64
import binascii

from bitcointx.core import CTransaction, CTxOut
from bitcointx.core.psbt import PartiallySignedTransaction as PSBT
from bitcointx.core.script import SIGHASH_ALL, CScript
from bitcointx.core.serialize import SerializationError

from btcdeposit.transaction import Transaction, TransactionParseError, TxOutput

PSBT_MAGIC = b"psbt\xff"


class PsbtError(ValueError):
    pass


def new_psbt(tx: Transaction, spent_outputs: list[TxOutput]) -> PSBT:
    """
    Wrap an unsigned transaction in a PSBT.

    Every input carries its spent output as witness UTXO and requests
    SIGHASH_ALL.
    """
    if len(spent_outputs) != len(tx.inputs):
        raise ValueError(f"Expected {len(tx.inputs)} spent outputs, got {len(spent_outputs)}")

    psbt = PSBT(unsigned_tx=CTransaction.deserialize(tx.serialize(include_witness=False)))
    for index, spent in enumerate(spent_outputs):
        psbt.set_utxo(
            index=index,
            utxo=CTxOut(nValue=spent.value, scriptPubKey=CScript(spent.script_pubkey)),
            force_witness_utxo=True,
        )
        psbt.inputs[index].sighash_type = SIGHASH_ALL
    return psbt


def parse_psbt(data: bytes) -> PSBT:
    if not data.startswith(PSBT_MAGIC):
        raise PsbtError("Missing PSBT magic bytes")
    try:
        return PSBT.deserialize(data)
    except (SerializationError, ValueError, IndexError) as e:
        raise PsbtError(f"Malformed PSBT: {e}") from e


def decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise PsbtError(f"PSBT is not valid base64: {e}") from e


def psbt_from_base64(value: str) -> PSBT:
    return parse_psbt(decode_base64(value))


def unsigned_transaction(psbt: PSBT) -> Transaction:
    """The PSBT's unsigned transaction as a package ``Transaction``."""
    try:
        return Transaction.parse(psbt.unsigned_tx.serialize())
    except TransactionParseError as e:
        raise PsbtError(f"Unsigned transaction is malformed: {e}") from e


def spent_output(psbt: PSBT, index: int) -> TxOutput | None:
    """Output spent by input ``index``, from its witness or non-witness UTXO."""
    utxo = psbt.inputs[index].utxo
    if utxo is None:
        return None
    if isinstance(utxo, CTransaction):
        prevout = psbt.unsigned_tx.vin[index].prevout
        if prevout.n >= len(utxo.vout):
            return None
        utxo = utxo.vout[prevout.n]
    return TxOutput(utxo.nValue, bytes(utxo.scriptPubKey))


def is_finalized(psbt: PSBT, index: int) -> bool:
    psbt_input = psbt.inputs[index]
    witness = psbt_input.final_script_witness
    return bool(psbt_input.final_script_sig) or bool(witness is not None and witness.stack)
