"""
Spendable UTXO lookup with confirmation filtering.

Nothing is cached: confirmation depth changes with every block, so each call
re-fetches from the providers.
"""

from __future__ import annotations

import httpx
from loguru import logger

from btcdeposit.config import Settings
from btcdeposit.errors import InsufficientConfirmationsError, NoUtxoSelectionFoundError
from btcdeposit.models import UTXO, NetworkType
from btcdeposit.providers import EsploraProvider, providers_for, with_fallback


def filter_confirmed(utxos: list[UTXO], tip_height: int, min_confirmations: int) -> list[UTXO]:
    """
    Keep UTXOs with at least ``min_confirmations`` confirmations at ``tip_height``.

    Raises:
        InsufficientConfirmationsError: If UTXOs exist but none is mature enough
    """
    confirmed = [u for u in utxos if u.confirmations(tip_height) >= min_confirmations]

    if utxos and not confirmed:
        raise InsufficientConfirmationsError(min_confirmations, immature_count=len(utxos))

    return confirmed


def check_sufficient_balance(
    utxos: list[UTXO], required_sats: int, min_confirmations: int = 0
) -> None:
    """Raise NoUtxoSelectionFoundError if the UTXOs cannot cover ``required_sats``."""
    available = sum(u.value for u in utxos)
    if available < required_sats:
        raise NoUtxoSelectionFoundError(required_sats, available, min_confirmations)


class UtxoSource:
    """Fetches spendable outputs for an address from the configured providers."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.settings = settings
        self.client = client

    async def get_spendable_outputs(
        self,
        address: str,
        network: NetworkType | None = None,
        min_confirmations: int | None = None,
    ) -> list[UTXO]:
        """
        Get UTXOs of ``address`` that have at least ``min_confirmations`` confirmations.

        Tip height and UTXO list always come from the same provider; if either
        call fails the whole sequence is retried against the next provider.

        Returns:
            Mature UTXOs, or an empty list if the address holds nothing

        Raises:
            ProviderUnavailableError: If every provider failed
            InsufficientConfirmationsError: If funds exist but are not yet mature
        """
        network = network or self.settings.network
        if min_confirmations is None:
            min_confirmations = self.settings.min_confirmations
        if min_confirmations < 1:
            raise ValueError(f"min_confirmations must be >= 1, got {min_confirmations}")

        async def fetch(provider: EsploraProvider) -> tuple[int, list[UTXO]]:
            tip_height = await provider.get_tip_height()
            return tip_height, await provider.get_address_utxos(address)

        tip_height, utxos = await with_fallback(
            providers_for(network, self.settings, self.client), fetch, "fetch UTXOs"
        )
        logger.debug(f"Found {len(utxos)} UTXOs for {address} at height {tip_height}")

        spendable = filter_confirmed(utxos, tip_height, min_confirmations)
        logger.info(
            f"{len(spendable)}/{len(utxos)} UTXOs have >= {min_confirmations} confirmations "
            f"({sum(u.value for u in spendable):,} sats)"
        )
        return spendable

    async def get_balance(self, address: str, network: NetworkType | None = None) -> int:
        """Total value of all unspent outputs of ``address``, confirmed or not."""
        network = network or self.settings.network

        async def fetch(provider: EsploraProvider) -> list[UTXO]:
            return await provider.get_address_utxos(address)

        utxos = await with_fallback(
            providers_for(network, self.settings, self.client), fetch, "fetch balance"
        )
        balance = sum(u.value for u in utxos)
        logger.debug(f"Balance for {address}: {balance} sats")
        return balance
