"""
PSBT finalization for P2WPKH inputs.

Each partial signature is checked against the BIP143 sighash before it is
handed to python-bitcointx, which builds the witnesses and extracts the
network transaction. Nothing is broadcast unless every input verifies.
"""

from __future__ import annotations

from bitcointx.core.psbt import PartiallySignedTransaction as PSBT
from bitcointx.core.key import KeyStore
from coincurve import PublicKey
from loguru import logger

from btcdeposit.address import hash160, is_p2wpkh_script, p2wpkh_script_code
from btcdeposit.constants import SIGHASH_ALL
from btcdeposit.errors import IncompleteSignatureError
from btcdeposit.psbt import (
    PsbtError,
    is_finalized,
    parse_psbt,
    spent_output,
    unsigned_transaction,
)
from btcdeposit.transaction import Transaction, compute_sighash_segwit


def verify_p2wpkh_signature(
    tx: Transaction, input_index: int, script_pubkey: bytes, value: int, pubkey: bytes, sig: bytes
) -> bool:
    """Verify a DER signature (with trailing sighash byte) for a P2WPKH input."""
    if len(sig) < 2 or sig[-1] != SIGHASH_ALL:
        return False
    sighash = compute_sighash_segwit(
        tx, input_index, p2wpkh_script_code(script_pubkey), value, SIGHASH_ALL
    )
    try:
        return PublicKey(pubkey).verify(sig[:-1], sighash, hasher=None)
    except (ValueError, TypeError):
        return False


def _check_input(psbt: PSBT, tx: Transaction, index: int) -> None:
    psbt_input = psbt.inputs[index]
    utxo = spent_output(psbt, index)
    if utxo is None:
        raise IncompleteSignatureError(index, "missing witness UTXO")
    if not is_p2wpkh_script(utxo.script_pubkey):
        raise IncompleteSignatureError(index, "witness UTXO is not P2WPKH")

    if is_finalized(psbt, index):
        stack = list(psbt_input.final_script_witness.stack)
        if len(stack) != 2:
            raise IncompleteSignatureError(index, "final witness is not a P2WPKH witness")
        sig, pubkey = bytes(stack[0]), bytes(stack[1])
        if hash160(pubkey) != utxo.script_pubkey[2:]:
            raise IncompleteSignatureError(index, "final witness is for another public key")
        if not verify_p2wpkh_signature(tx, index, utxo.script_pubkey, utxo.value, pubkey, sig):
            raise IncompleteSignatureError(index, "invalid signature")
        logger.debug(f"Input {index} already finalized")
        return

    if psbt_input.sighash_type not in (None, SIGHASH_ALL):
        raise IncompleteSignatureError(
            index, f"unsupported sighash type {psbt_input.sighash_type}"
        )

    program = utxo.script_pubkey[2:]
    matching = [
        (bytes(pk), bytes(sig))
        for pk, sig in psbt_input.partial_sigs.items()
        if hash160(bytes(pk)) == program
    ]
    if not matching:
        raise IncompleteSignatureError(index, "no signature for the input's public key")
    if len(matching) > 1:
        raise IncompleteSignatureError(index, "multiple signatures for one public key")

    pubkey, sig = matching[0]
    if not verify_p2wpkh_signature(tx, index, utxo.script_pubkey, utxo.value, pubkey, sig):
        raise IncompleteSignatureError(index, "invalid signature")


def finalize(signed_psbt: bytes) -> bytes:
    """
    Finalize every input of a signed PSBT and extract the network transaction.

    Args:
        signed_psbt: Serialized PSBT returned by the wallet

    Returns:
        Fully signed segwit transaction bytes

    Raises:
        IncompleteSignatureError: An input lacks a valid signature
    """
    try:
        psbt = parse_psbt(signed_psbt)
        unsigned = unsigned_transaction(psbt)
    except PsbtError as e:
        raise IncompleteSignatureError(0, f"unparseable PSBT: {e}") from e

    for index in range(len(psbt.inputs)):
        _check_input(psbt, unsigned, index)

    # Empty key store: only moves the verified partial signatures into witnesses
    result = psbt.sign(KeyStore(), finalize=True)
    if not result.is_final:
        pending = [i for i in range(len(psbt.inputs)) if not is_finalized(psbt, i)]
        index = pending[0] if pending else 0
        raise IncompleteSignatureError(index, "input could not be finalized")

    raw = psbt.extract_transaction().serialize()
    tx = Transaction.parse(raw)
    logger.info(f"Finalized transaction {tx.txid} ({tx.vsize} vB)")
    return raw


def finalize_hex(signed_psbt: bytes) -> str:
    return finalize(signed_psbt).hex()
