"""
Tests for the btc-deposit command line.
"""

from __future__ import annotations

import asyncio
import io
import threading

import httpx
import pytest
from conftest import EXPLORER, PRIMARY, TIP_HEIGHT, FakeEsplora, esplora_utxo, make_utxo, sign_psbt
from loguru import logger
from typer.testing import CliRunner

from btcdeposit import cli
from btcdeposit.builder import build_deposit_transaction
from btcdeposit.finalizer import finalize_hex
from btcdeposit.models import DepositIntent, NetworkType
from btcdeposit.signing import SigningCallbacks, SigningRequest

runner = CliRunner()


@pytest.fixture(autouse=True)
def patched(monkeypatch, settings, fake_esplora: FakeEsplora):
    """Route every command to the test settings and the fake providers."""

    def fake_client(_settings) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(fake_esplora.handler))

    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "new_http_client", fake_client)
    monkeypatch.setattr("btcdeposit.deposit.new_http_client", fake_client)
    yield
    # CliRunner closes the stream the commands logged to
    logger.remove()


@pytest.fixture
def funded(fake_esplora: FakeEsplora, user_address) -> FakeEsplora:
    fake_esplora.add_chain(
        PRIMARY,
        TIP_HEIGHT,
        [
            esplora_utxo("01" * 32, 0, 100_000, TIP_HEIGHT - 10),
            esplora_utxo("02" * 32, 1, 5_000, None),
        ],
        user_address.address,
    )
    fake_esplora.add("GET", f"{PRIMARY}/v1/fees/recommended", json={"halfHourFee": 4})
    return fake_esplora


def _deposit_args(user_address, command: str = "deposit") -> list[str]:
    return [
        command,
        "--address",
        user_address.address,
        "--pubkey",
        user_address.public_key,
        "--recipient",
        "0x" + "ab" * 20,
        "--amount-sats",
        "50000",
    ]


class TestExplorerUrl:
    def test_prints_link(self):
        result = runner.invoke(cli.app, ["explorer-url", "abc123"])
        assert result.exit_code == 0
        assert f"{EXPLORER}abc123" in result.stdout

    def test_invalid_network(self):
        result = runner.invoke(cli.app, ["explorer-url", "abc123", "--network", "litecoin"])
        assert result.exit_code == 1

    def test_unconfigured_network(self):
        result = runner.invoke(cli.app, ["explorer-url", "abc123", "--network", "regtest"])
        assert result.exit_code == 1


class TestChainCommands:
    def test_fee_rate(self, funded):
        result = runner.invoke(cli.app, ["fee-rate"])
        assert result.exit_code == 0
        assert "4 sat/vB (halfHourFee" in result.stdout

    def test_utxos(self, funded, user_address):
        result = runner.invoke(cli.app, ["utxos", user_address.address])
        assert result.exit_code == 0
        assert f"{'01' * 32}:0\t100000" in result.stdout
        assert "02" * 32 not in result.stdout

    def test_balance_includes_unconfirmed(self, funded, user_address):
        result = runner.invoke(cli.app, ["balance", user_address.address])
        assert result.exit_code == 0
        assert "105000 sats" in result.stdout

    def test_providers_down(self):
        result = runner.invoke(cli.app, ["balance", "tb1qnothing"])
        assert result.exit_code == 1

    def test_broadcast(self, fake_esplora: FakeEsplora):
        fake_esplora.add("POST", f"{PRIMARY}/tx", text="abc123")
        result = runner.invoke(cli.app, ["broadcast", "0200000000010000000000"])
        assert result.exit_code == 0
        assert f"abc123\n{EXPLORER}abc123" in result.stdout


class TestFinalize:
    def test_signed_psbt(self, user_address, custody_address, private_key):
        intent = DepositIntent(
            bridge_address=custody_address,
            l2_receiver_address="ab" * 20,
            amount_sats=50_000,
            network=NetworkType.TESTNET,
        )
        plan = build_deposit_transaction([make_utxo(80_000)], user_address, intent, fee_rate=2)
        signed = sign_psbt(plan.psbt, private_key)

        result = runner.invoke(cli.app, ["finalize", signed.to_base64()])

        assert result.exit_code == 0
        assert finalize_hex(signed.serialize()) in result.stdout

    def test_not_base64(self):
        result = runner.invoke(cli.app, ["finalize", "not base64!"])
        assert result.exit_code == 1

    def test_unsigned_psbt(self, user_address, custody_address):
        intent = DepositIntent(
            bridge_address=custody_address,
            l2_receiver_address="ab" * 20,
            amount_sats=50_000,
            network=NetworkType.TESTNET,
        )
        plan = build_deposit_transaction([make_utxo(80_000)], user_address, intent, fee_rate=2)
        result = runner.invoke(cli.app, ["finalize", plan.psbt_base64])
        assert result.exit_code == 1


class TestDepositCommands:
    def test_build_prints_psbt(self, funded, user_address):
        result = runner.invoke(cli.app, _deposit_args(user_address, "build"))
        assert result.exit_code == 0
        assert "cHNidP8" in result.stdout

    def test_build_below_minimum(self, funded, user_address):
        args = _deposit_args(user_address, "build")
        args[-1] = "1000"
        result = runner.invoke(cli.app, args)
        assert result.exit_code == 1

    def test_both_amounts_rejected(self, user_address):
        args = _deposit_args(user_address, "build") + ["--amount-btc", "0.0005"]
        result = runner.invoke(cli.app, args)
        assert result.exit_code == 1

    def test_cancel_at_console(self, funded, user_address):
        result = runner.invoke(cli.app, _deposit_args(user_address), input="\n")
        assert result.exit_code == 0
        assert "cHNidP8" in result.stdout
        assert not [r for r in funded.requests if r.method == "POST"]

    def test_reject_at_console(self, funded, user_address):
        result = runner.invoke(cli.app, _deposit_args(user_address), input="reject\n")
        assert result.exit_code == 1
        assert not [r for r in funded.requests if r.method == "POST"]


class BlockingStream:
    """stdin stand-in whose readline blocks until released."""

    def __init__(self) -> None:
        self.reading = threading.Event()
        self.release = threading.Event()

    def readline(self) -> str:
        self.reading.set()
        self.release.wait(5)
        return "\n"


def _request() -> SigningRequest:
    return SigningRequest(
        network=NetworkType.TESTNET,
        message="Sign it",
        psbt_base64="cHNidP8=",
        inputs_to_sign=[],
    )


class TestConsoleSigner:
    @pytest.mark.asyncio
    async def test_reads_signed_psbt(self):
        finished: list[dict] = []
        callbacks = SigningCallbacks(
            on_finish=finished.append, on_cancel=lambda: None, on_error=lambda e: None
        )
        signer = cli.ConsoleSigner(io.StringIO("cHNidP8=\n"))

        await signer.sign_transaction(_request(), callbacks)

        assert finished == [{"psbtBase64": "cHNidP8="}]

    @pytest.mark.asyncio
    async def test_pending_prompt_cancellable(self):
        stream = BlockingStream()
        calls: list[str] = []
        callbacks = SigningCallbacks(
            on_finish=lambda r: calls.append("finish"),
            on_cancel=lambda: calls.append("cancel"),
            on_error=lambda e: calls.append("error"),
        )
        signer = cli.ConsoleSigner(stream)
        task = asyncio.create_task(signer.sign_transaction(_request(), callbacks))
        while not stream.reading.is_set():
            await asyncio.sleep(0.01)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=1)

        readers = [t for t in threading.enumerate() if t.name == "console-signer"]
        assert readers and all(t.daemon for t in readers)
        assert calls == []
        stream.release.set()
