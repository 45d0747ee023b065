"""
Tests for spendable UTXO lookup.
"""

from __future__ import annotations

import httpx
import pytest
from conftest import FALLBACK, PRIMARY, TIP_HEIGHT, FakeEsplora, esplora_utxo, make_utxo

from btcdeposit.errors import (
    InsufficientConfirmationsError,
    NoUtxoSelectionFoundError,
    ProviderUnavailableError,
)
from btcdeposit.models import UTXO, ConfirmationState
from btcdeposit.utxo import UtxoSource, check_sufficient_balance, filter_confirmed

ADDRESS = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"


class TestUtxoModel:
    def test_from_esplora(self):
        utxo = UTXO.from_esplora(esplora_utxo("ab" * 32, 1, 5_000, 99_998))
        assert utxo.txid == "ab" * 32
        assert utxo.vout == 1
        assert utxo.value == 5_000
        assert utxo.status == ConfirmationState(confirmed=True, block_height=99_998)
        assert utxo.outpoint == f"{'ab' * 32}:1"

    def test_confirmations(self):
        utxo = make_utxo(1_000, block_height=TIP_HEIGHT - 2)
        assert utxo.confirmations(TIP_HEIGHT) == 3

    def test_unconfirmed_has_zero_confirmations(self):
        utxo = UTXO.from_esplora(esplora_utxo("ab" * 32, 0, 5_000, None))
        assert utxo.confirmations(TIP_HEIGHT) == 0


class TestFilterConfirmed:
    def test_boundary(self):
        """Exactly min_confirmations is included, one short is excluded."""
        exact = make_utxo(1_000, txid_byte=1, block_height=TIP_HEIGHT - 2)
        short = make_utxo(2_000, txid_byte=2, block_height=TIP_HEIGHT - 1)
        assert filter_confirmed([exact, short], TIP_HEIGHT, 3) == [exact]

    def test_immature_funds(self):
        short = make_utxo(2_000, block_height=TIP_HEIGHT)
        with pytest.raises(InsufficientConfirmationsError) as exc_info:
            filter_confirmed([short], TIP_HEIGHT, 3)
        assert exc_info.value.immature_count == 1
        assert "wait" in exc_info.value.user_message

    def test_no_funds(self):
        assert filter_confirmed([], TIP_HEIGHT, 3) == []


class TestCheckSufficientBalance:
    def test_enough(self):
        check_sufficient_balance([make_utxo(10_000)], 10_000)

    def test_not_enough(self):
        with pytest.raises(NoUtxoSelectionFoundError) as exc_info:
            check_sufficient_balance([make_utxo(9_999)], 10_000, min_confirmations=3)
        assert "3 confirmations" in exc_info.value.user_message


class TestUtxoSource:
    @pytest.mark.asyncio
    async def test_spendable_outputs(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add_chain(
            PRIMARY,
            TIP_HEIGHT,
            [
                esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT - 2),
                esplora_utxo("02" * 32, 0, 50_000, TIP_HEIGHT),
                esplora_utxo("03" * 32, 1, 25_000, None),
            ],
            ADDRESS,
        )
        utxos = await UtxoSource(settings, client).get_spendable_outputs(ADDRESS)
        assert [u.txid for u in utxos] == ["01" * 32]

    @pytest.mark.asyncio
    async def test_empty_address(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add_chain(PRIMARY, TIP_HEIGHT, [], ADDRESS)
        assert await UtxoSource(settings, client).get_spendable_outputs(ADDRESS) == []

    @pytest.mark.asyncio
    async def test_fallback_retries_whole_sequence(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        """Tip height succeeds on the primary but the UTXO call fails."""
        fake_esplora.add("GET", f"{PRIMARY}/blocks/tip/height", text=str(TIP_HEIGHT))
        fake_esplora.add("GET", f"{PRIMARY}/address/{ADDRESS}/utxo", status=500)
        fake_esplora.add_chain(
            FALLBACK, TIP_HEIGHT + 1, [esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT - 1)], ADDRESS
        )

        utxos = await UtxoSource(settings, client).get_spendable_outputs(ADDRESS)

        assert len(utxos) == 1
        assert fake_esplora.calls("GET", f"{FALLBACK}/blocks/tip/height") == 1

    @pytest.mark.asyncio
    async def test_both_providers_down(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add("GET", f"{PRIMARY}/blocks/tip/height", status=500)
        fake_esplora.add("GET", f"{FALLBACK}/blocks/tip/height", status=502)

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await UtxoSource(settings, client).get_spendable_outputs(ADDRESS)
        assert len(exc_info.value.failures) == 2
        assert fake_esplora.calls("GET", f"{PRIMARY}/address/{ADDRESS}/utxo") == 0

    @pytest.mark.asyncio
    async def test_immature_funds(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add_chain(
            PRIMARY, TIP_HEIGHT, [esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT)], ADDRESS
        )
        with pytest.raises(InsufficientConfirmationsError):
            await UtxoSource(settings, client).get_spendable_outputs(ADDRESS)

    @pytest.mark.asyncio
    async def test_custom_min_confirmations(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add_chain(
            PRIMARY, TIP_HEIGHT, [esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT)], ADDRESS
        )
        utxos = await UtxoSource(settings, client).get_spendable_outputs(
            ADDRESS, min_confirmations=1
        )
        assert len(utxos) == 1

    @pytest.mark.asyncio
    async def test_min_confirmations_must_be_positive(self, settings, client):
        with pytest.raises(ValueError):
            await UtxoSource(settings, client).get_spendable_outputs(ADDRESS, min_confirmations=0)

    @pytest.mark.asyncio
    async def test_not_cached(self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient):
        fake_esplora.add_chain(
            PRIMARY, TIP_HEIGHT, [esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT - 5)], ADDRESS
        )
        source = UtxoSource(settings, client)
        await source.get_spendable_outputs(ADDRESS)
        await source.get_spendable_outputs(ADDRESS)
        assert fake_esplora.calls("GET", f"{PRIMARY}/address/{ADDRESS}/utxo") == 2

    @pytest.mark.asyncio
    async def test_balance(self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient):
        fake_esplora.add(
            "GET",
            f"{PRIMARY}/address/{ADDRESS}/utxo",
            json=[
                esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT),
                esplora_utxo("02" * 32, 0, 2_500, None),
            ],
        )
        assert await UtxoSource(settings, client).get_balance(ADDRESS) == 102_500

    @pytest.mark.asyncio
    async def test_malformed_primary_falls_back(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add_chain(PRIMARY, TIP_HEIGHT, [{"txid": "aa" * 32, "vout": 0}], ADDRESS)
        fake_esplora.add_chain(
            FALLBACK, TIP_HEIGHT, [esplora_utxo("bb" * 32, 1, 50_000, TIP_HEIGHT - 5)], ADDRESS
        )

        utxos = await UtxoSource(settings, client).get_spendable_outputs(ADDRESS)

        assert [(u.txid, u.vout, u.value) for u in utxos] == [("bb" * 32, 1, 50_000)]

    @pytest.mark.asyncio
    async def test_balance_malformed_primary_falls_back(
        self, settings, fake_esplora: FakeEsplora, client: httpx.AsyncClient
    ):
        fake_esplora.add("GET", f"{PRIMARY}/address/{ADDRESS}/utxo", json=[{"vout": 0}])
        fake_esplora.add(
            "GET",
            f"{FALLBACK}/address/{ADDRESS}/utxo",
            json=[esplora_utxo("bb" * 32, 1, 50_000, None)],
        )
        assert await UtxoSource(settings, client).get_balance(ADDRESS) == 50_000
