"""
Deposit orchestration.

One call to ``execute_deposit`` runs a whole attempt:
1. Resolve network, custody address and amount
2. Fetch spendable UTXOs and a fee rate (concurrently)
3. Build the unsigned PSBT
4. Ask the wallet to sign it
5. Finalize and broadcast

Attempts are never retried as a whole; a failed attempt must be started
again by the user, which rebuilds the transaction against fresh chain data.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
from loguru import logger

from btcdeposit.broadcast import Broadcaster
from btcdeposit.builder import UnsignedTransactionPlan, build_deposit_transaction
from btcdeposit.config import Settings
from btcdeposit.errors import DepositAmountError
from btcdeposit.fees import FeeEstimator
from btcdeposit.finalizer import finalize
from btcdeposit.models import BroadcastResult, DepositIntent, DepositParams, NetworkType
from btcdeposit.providers import new_http_client
from btcdeposit.signing import CancellationToken, SigningCoordinator, WalletSigner
from btcdeposit.utxo import UtxoSource, check_sufficient_balance


class DepositEngine:
    """Runs deposit attempts against the configured providers and wallet."""

    def __init__(
        self,
        settings: Settings,
        signer: WalletSigner,
        client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings
        self._owns_client = client is None
        self.client = client or new_http_client(settings)

        self.utxo_source = UtxoSource(settings, self.client)
        self.fee_estimator = FeeEstimator(settings, self.client)
        self.signing = SigningCoordinator(signer, settings.signing_message)
        self.broadcaster = Broadcaster(settings, self.client)

    async def __aenter__(self) -> DepositEngine:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def resolve_intent(self, params: DepositParams) -> DepositIntent:
        """
        Validate a deposit request against the bridge configuration.

        Raises:
            ConfigurationError: No custody address for the network
            DepositAmountError: Amount below the bridge minimum
        """
        network = params.network or self.settings.network
        bridge_address = self.settings.bridge_address(network)

        amount = params.amount_sats
        if amount is None:
            raise DepositAmountError("Deposit amount is missing")
        if amount < self.settings.min_deposit_sats:
            raise DepositAmountError(
                f"Deposit amount {amount} sats is below minimum "
                f"{self.settings.min_deposit_sats} sats",
                f"The minimum deposit is {self.settings.min_deposit_sats:,} sats.",
            )

        return DepositIntent(
            bridge_address=bridge_address,
            l2_receiver_address=params.recipient_l2_address,
            amount_sats=amount,
            network=network,
        )

    async def prepare(self, params: DepositParams) -> UnsignedTransactionPlan:
        """Fetch chain data and build the unsigned deposit transaction."""
        intent = self.resolve_intent(params)
        network = intent.network

        logger.info(
            f"Preparing deposit of {intent.amount_sats:,} sats on {network.value} "
            f"from {params.bitcoin_address}"
        )
        utxos, quote = await asyncio.gather(
            self.utxo_source.get_spendable_outputs(params.bitcoin_address, network),
            self.fee_estimator.estimate_fee_rate(network, params.target_confirmation_blocks),
        )
        check_sufficient_balance(utxos, intent.amount_sats, self.settings.min_confirmations)

        return build_deposit_transaction(
            utxos,
            params.user_address,
            intent,
            quote.sats_per_vbyte,
            self.settings.dust_threshold,
        )

    async def execute_deposit(
        self, params: DepositParams, cancellation: CancellationToken | None = None
    ) -> BroadcastResult:
        """
        Run a full deposit attempt.

        Raises:
            DepositError: Any stage failure, see btcdeposit.errors
        """
        network: NetworkType = params.network or self.settings.network
        plan = await self.prepare(params)

        logger.info("Requesting signature from wallet...")
        signed = await self.signing.request_signature(
            plan.psbt,
            params.user_address,
            plan.input_indexes,
            network,
            cancellation,
        )

        raw_tx = finalize(signed.psbt)

        logger.info("Broadcasting deposit transaction...")
        result = await self.broadcaster.broadcast(raw_tx, network)

        logger.info(f"Deposit broadcast: {result.transaction_id} ({result.explorer_url})")
        return result
