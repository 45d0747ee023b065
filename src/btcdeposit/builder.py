"""
Coin selection and deposit transaction builder.

Builds the unsigned deposit transaction from:
- the user's spendable P2WPKH UTXOs and change address
- the bridge custody address and deposit amount
- the L2 receiver address, embedded in an OP_RETURN output

The transaction structure (BIP69 ordered):
- Inputs: selected user UTXOs
- Outputs: custody output, metadata output, optional change output
"""

from __future__ import annotations

import base64
from dataclasses import dataclass

from loguru import logger

from btcdeposit.address import (
    address_to_scriptpubkey,
    build_metadata_script,
    pubkey_to_p2wpkh_script,
)
from btcdeposit.constants import P2WPKH_WITNESS_SIZE, STANDARD_DUST_LIMIT
from btcdeposit.errors import NoUtxoSelectionFoundError, TransactionBuildError
from btcdeposit.models import UTXO, DepositIntent, UserAddress
from btcdeposit.psbt import new_psbt
from btcdeposit.transaction import Transaction, TxInput, TxOutput, estimate_vsize


@dataclass(frozen=True)
class CoinSelection:
    """Result of coin selection"""

    utxos: list[UTXO]
    total_value: int
    change_value: int
    fee: int
    vsize: int


@dataclass(frozen=True)
class UnsignedTransactionPlan:
    """Unsigned deposit transaction, built fresh for every attempt."""

    selected_inputs: list[UTXO]
    outputs: list[TxOutput]
    estimated_fee_sats: int
    change_sats: int
    vsize: int
    fee_rate: int
    psbt: bytes

    @property
    def psbt_base64(self) -> str:
        return base64.b64encode(self.psbt).decode("ascii")

    @property
    def input_indexes(self) -> list[int]:
        return list(range(len(self.selected_inputs)))

    @property
    def total_input_value(self) -> int:
        return sum(u.value for u in self.selected_inputs)


def calculate_fee(input_count: int, outputs: list[TxOutput], fee_rate: int) -> tuple[int, int]:
    """
    Fee for a P2WPKH-funded transaction, rounded up to whole sats.

    Returns:
        (fee, vsize)
    """
    vsize = estimate_vsize(input_count, outputs, P2WPKH_WITNESS_SIZE)
    return vsize * fee_rate, vsize


def select_utxos(
    utxos: list[UTXO],
    outputs: list[TxOutput],
    change_script: bytes,
    amount: int,
    fee_rate: int,
    dust_threshold: int = STANDARD_DUST_LIMIT,
) -> CoinSelection:
    """
    Select UTXOs covering ``amount`` plus the fee of the resulting transaction.

    Adding an input changes both the available value and the size, so the fee
    is recomputed after every addition until the selection covers it.
    Candidates are taken largest first, ties broken by outpoint.
    Change below ``dust_threshold`` is not created; it goes to the fee.

    Raises:
        NoUtxoSelectionFoundError: If all UTXOs together cannot cover amount + fee
    """
    candidates = sorted(utxos, key=lambda u: (-u.value, u.txid, u.vout))
    with_change = outputs + [TxOutput(0, change_script)]

    selected: list[UTXO] = []
    total = 0

    for utxo in candidates:
        selected.append(utxo)
        total += utxo.value

        fee, vsize = calculate_fee(len(selected), with_change, fee_rate)
        if total >= amount + fee:
            change = total - amount - fee
            if change >= dust_threshold:
                return CoinSelection(list(selected), total, change, fee, vsize)
            # Dust change: drop it and pay the remainder as fee
            _, vsize = calculate_fee(len(selected), outputs, fee_rate)
            return CoinSelection(list(selected), total, 0, total - amount, vsize)

        fee, vsize = calculate_fee(len(selected), outputs, fee_rate)
        if total >= amount + fee:
            # Affordable only without change; the remainder is less than the
            # cost of a change output
            return CoinSelection(list(selected), total, 0, total - amount, vsize)

    min_fee, _ = calculate_fee(max(len(candidates), 1), outputs, fee_rate)
    raise NoUtxoSelectionFoundError(amount + min_fee, total)


def bip69_sort_inputs(inputs: list[TxInput]) -> list[TxInput]:
    return sorted(inputs, key=lambda i: (i.txid.lower(), i.vout))


def bip69_sort_outputs(outputs: list[TxOutput]) -> list[TxOutput]:
    return sorted(outputs, key=lambda o: (o.value, o.script_pubkey))


def build_deposit_transaction(
    utxos: list[UTXO],
    user_address: UserAddress,
    intent: DepositIntent,
    fee_rate: int,
    dust_threshold: int = STANDARD_DUST_LIMIT,
) -> UnsignedTransactionPlan:
    """
    Select inputs and build the unsigned deposit PSBT.

    Args:
        utxos: Spendable UTXOs of ``user_address``
        user_address: P2WPKH address and public key paying for the deposit
        intent: Custody address, L2 receiver and amount
        fee_rate: Fee rate in sat/vB
        dust_threshold: Minimum value of a change output

    Raises:
        NoUtxoSelectionFoundError: Insufficient balance for amount + fee
        TransactionBuildError: Invalid addresses, keys or amounts
    """
    if fee_rate < 1:
        raise TransactionBuildError(f"Fee rate must be at least 1 sat/vB, got {fee_rate}")
    if intent.amount_sats < dust_threshold:
        raise TransactionBuildError(
            f"Deposit amount {intent.amount_sats} sats is below dust threshold {dust_threshold}"
        )

    try:
        spend_script = pubkey_to_p2wpkh_script(user_address.public_key)
        change_script = address_to_scriptpubkey(user_address.address, intent.network)
        custody_script = address_to_scriptpubkey(intent.bridge_address, intent.network)
        metadata_script = build_metadata_script(intent.l2_receiver_bytes)
    except ValueError as e:
        raise TransactionBuildError(f"Invalid deposit parameters: {e}") from e

    if change_script != spend_script:
        raise TransactionBuildError(
            f"Public key does not match P2WPKH address {user_address.address}"
        )

    outputs = [
        TxOutput(intent.amount_sats, custody_script),
        TxOutput(0, metadata_script),
    ]

    selection = select_utxos(
        utxos, outputs, change_script, intent.amount_sats, fee_rate, dust_threshold
    )
    if selection.change_value:
        outputs.append(TxOutput(selection.change_value, change_script))

    by_outpoint = {(u.txid.lower(), u.vout): u for u in selection.utxos}
    inputs = bip69_sort_inputs([TxInput(txid=u.txid.lower(), vout=u.vout) for u in selection.utxos])
    outputs = bip69_sort_outputs(outputs)
    ordered_utxos = [by_outpoint[(i.txid, i.vout)] for i in inputs]

    try:
        psbt = new_psbt(
            Transaction(inputs=inputs, outputs=outputs),
            [TxOutput(utxo.value, spend_script) for utxo in ordered_utxos],
        )
        psbt_bytes = psbt.serialize()
    except ValueError as e:
        raise TransactionBuildError(f"Failed to serialize PSBT: {e}") from e

    logger.info(
        f"Built deposit tx: {len(inputs)} inputs, {len(outputs)} outputs, "
        f"amount={intent.amount_sats:,} fee={selection.fee:,} change={selection.change_value:,} "
        f"sats ({selection.vsize} vB @ {fee_rate} sat/vB)"
    )

    return UnsignedTransactionPlan(
        selected_inputs=ordered_utxos,
        outputs=outputs,
        estimated_fee_sats=selection.fee,
        change_sats=selection.change_value,
        vsize=selection.vsize,
        fee_rate=fee_rate,
        psbt=psbt_bytes,
    )
