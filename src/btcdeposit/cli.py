"""
Command-line interface for the Bitcoin deposit engine.
"""

from __future__ import annotations

import asyncio
import sys
import threading
from collections.abc import Coroutine
from decimal import Decimal
from typing import Annotated, Any, TypeVar

import typer
from loguru import logger
from pydantic import ValidationError

from btcdeposit.broadcast import Broadcaster
from btcdeposit.config import Settings, get_settings
from btcdeposit.deposit import DepositEngine
from btcdeposit.errors import DepositError, SigningCancelledError
from btcdeposit.explorer import explorer_url
from btcdeposit.fees import FeeEstimator
from btcdeposit.finalizer import finalize_hex
from btcdeposit.models import DepositParams, NetworkType
from btcdeposit.providers import new_http_client
from btcdeposit.psbt import PsbtError, decode_base64
from btcdeposit.signing import SigningCallbacks, SigningRequest
from btcdeposit.utxo import UtxoSource

T = TypeVar("T")

app = typer.Typer(
    name="btc-deposit",
    help="Bitcoin deposit engine - build, sign and broadcast bridge deposits",
    add_completion=False,
)


def setup_logging(level: str) -> None:
    """Configure loguru logging."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
    )


def load_settings(network: str | None, log_level: str | None) -> Settings:
    """Load settings from env/.env and apply command-line overrides."""
    try:
        settings = get_settings()
    except ValidationError as e:
        setup_logging(log_level or "INFO")
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(1)

    setup_logging(log_level or settings.log_level)

    if network:
        try:
            settings = settings.model_copy(update={"network": NetworkType(network)})
        except ValueError:
            logger.error(f"Invalid network: {network}")
            raise typer.Exit(1)
    return settings


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, mapping deposit errors to exit codes."""
    try:
        return asyncio.run(coro)
    except SigningCancelledError as e:
        logger.info(f"{e.user_message} ({e.message})")
        raise typer.Exit(0)
    except DepositError as e:
        logger.error(f"{e.user_message} ({e.message})")
        raise typer.Exit(1)


class ConsoleSigner:
    """
    Signs through an offline wallet via the terminal.

    The PSBT is printed to stdout and the signed PSBT is read back from stdin.
    An empty line cancels, ``reject`` rejects the request.
    """

    def __init__(self, stream: Any = None):
        self.stream = stream

    def _readline(self) -> str:
        return (self.stream or sys.stdin).readline()

    async def _read_response(self) -> str:
        """
        Read one line on a daemon thread.

        Cancelling the awaiting task abandons the read, so a pending prompt
        never holds up event loop shutdown.
        """
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def settle(line: str | None, error: BaseException | None) -> None:
            if future.done():
                return
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(line or "")

        def read() -> None:
            line: str | None = None
            error: BaseException | None = None
            try:
                line = self._readline()
            except Exception as e:
                error = e
            try:
                loop.call_soon_threadsafe(settle, line, error)
            except RuntimeError:
                logger.debug("Console response arrived after the event loop closed")

        threading.Thread(target=read, name="console-signer", daemon=True).start()
        return await future

    async def sign_transaction(self, request: SigningRequest, callbacks: SigningCallbacks) -> None:
        indexes = ", ".join(str(i) for item in request.inputs_to_sign for i in item.signing_indexes)
        typer.echo(f"{request.message} ({request.network.value}, inputs {indexes})")
        typer.echo("Unsigned PSBT:")
        typer.echo(request.psbt_base64)
        typer.echo("Paste the signed PSBT (empty line to cancel, 'reject' to reject):")

        line = (await self._read_response()).strip()
        if not line:
            callbacks.on_cancel()
        elif line.lower() == "reject":
            callbacks.on_error({"code": 4001, "message": "Rejected at console"})
        else:
            callbacks.on_finish({"psbtBase64": line})


NetworkOption = Annotated[
    str | None,
    typer.Option("--network", "-n", help="Bitcoin network: mainnet | testnet4 | regtest"),
]
LogLevelOption = Annotated[
    str | None, typer.Option("--log-level", "-l", help="Log level (defaults to settings)")
]


def _deposit_params(
    address: str,
    pubkey: str,
    recipient: str,
    amount_sats: int | None,
    amount_btc: str | None,
    network: NetworkType,
    target_blocks: int,
) -> DepositParams:
    try:
        return DepositParams(
            bitcoin_address=address,
            bitcoin_public_key=pubkey,
            recipient_l2_address=recipient,
            amount_sats=amount_sats,
            amount_btc=Decimal(amount_btc) if amount_btc is not None else None,
            network=network,
            target_confirmation_blocks=target_blocks,
        )
    except (ValidationError, ArithmeticError) as e:
        logger.error(f"Invalid deposit parameters: {e}")
        raise typer.Exit(1)


@app.command()
def utxos(
    address: Annotated[str, typer.Argument(help="Bitcoin address")],
    min_confirmations: Annotated[
        int | None, typer.Option("--min-confirmations", "-c", help="Required confirmations")
    ] = None,
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """List spendable UTXOs of an address."""
    settings = load_settings(network, log_level)

    async def _run() -> None:
        async with new_http_client(settings) as client:
            found = await UtxoSource(settings, client).get_spendable_outputs(
                address, settings.network, min_confirmations
            )
        for utxo in found:
            typer.echo(f"{utxo.outpoint}\t{utxo.value}")
        typer.echo(f"Total: {sum(u.value for u in found):,} sats in {len(found)} UTXOs")

    run(_run())


@app.command()
def balance(
    address: Annotated[str, typer.Argument(help="Bitcoin address")],
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show the total unspent balance of an address."""
    settings = load_settings(network, log_level)

    async def _run() -> int:
        async with new_http_client(settings) as client:
            return await UtxoSource(settings, client).get_balance(address, settings.network)

    typer.echo(f"{run(_run())} sats")


@app.command("fee-rate")
def fee_rate(
    target_blocks: Annotated[
        int | None, typer.Option("--target-blocks", "-t", help="Confirmation target")
    ] = None,
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Show the fee rate used for a confirmation target."""
    settings = load_settings(network, log_level)

    async def _run() -> None:
        async with new_http_client(settings) as client:
            quote = await FeeEstimator(settings, client).estimate_fee_rate(
                settings.network, target_blocks
            )
        typer.echo(f"{quote.sats_per_vbyte} sat/vB ({quote.bucket}, source: {quote.source})")

    run(_run())


AddressOption = Annotated[str, typer.Option("--address", "-a", help="P2WPKH funding address")]
PubkeyOption = Annotated[
    str, typer.Option("--pubkey", "-k", help="Compressed public key of the address (hex)")
]
RecipientOption = Annotated[str, typer.Option("--recipient", "-r", help="L2 receiver address")]
AmountSatsOption = Annotated[
    int | None, typer.Option("--amount-sats", help="Deposit amount in sats")
]
AmountBtcOption = Annotated[str | None, typer.Option("--amount-btc", help="Deposit amount in BTC")]
TargetBlocksOption = Annotated[
    int, typer.Option("--target-blocks", "-t", help="Fee confirmation target")
]


@app.command()
def build(
    address: AddressOption,
    pubkey: PubkeyOption,
    recipient: RecipientOption,
    amount_sats: AmountSatsOption = None,
    amount_btc: AmountBtcOption = None,
    target_blocks: TargetBlocksOption = 3,
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Build an unsigned deposit PSBT."""
    settings = load_settings(network, log_level)
    params = _deposit_params(
        address, pubkey, recipient, amount_sats, amount_btc, settings.network, target_blocks
    )

    async def _run() -> None:
        async with DepositEngine(settings, ConsoleSigner()) as engine:
            plan = await engine.prepare(params)
        typer.echo(plan.psbt_base64)
        typer.echo(
            f"Inputs: {len(plan.selected_inputs)}  Fee: {plan.estimated_fee_sats:,} sats "
            f"({plan.fee_rate} sat/vB, {plan.vsize} vB)  Change: {plan.change_sats:,} sats",
            err=True,
        )

    run(_run())


@app.command("finalize")
def finalize_command(
    psbt: Annotated[str, typer.Argument(help="Signed PSBT (base64)")],
    log_level: LogLevelOption = None,
) -> None:
    """Finalize a signed PSBT and print the raw transaction hex."""
    load_settings(None, log_level)
    try:
        raw = decode_base64(psbt)
    except PsbtError as e:
        logger.error(str(e))
        raise typer.Exit(1)

    try:
        typer.echo(finalize_hex(raw))
    except DepositError as e:
        logger.error(f"{e.user_message} ({e.message})")
        raise typer.Exit(1)


@app.command("broadcast")
def broadcast_command(
    tx_hex: Annotated[str, typer.Argument(help="Signed raw transaction (hex)")],
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Broadcast a signed transaction."""
    settings = load_settings(network, log_level)

    async def _run() -> None:
        async with new_http_client(settings) as client:
            result = await Broadcaster(settings, client).broadcast(tx_hex, settings.network)
        typer.echo(result.transaction_id)
        typer.echo(result.explorer_url)

    run(_run())


@app.command("explorer-url")
def explorer_url_command(
    txid: Annotated[str, typer.Argument(help="Transaction id")],
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Print the block explorer link of a transaction."""
    settings = load_settings(network, log_level)
    try:
        typer.echo(explorer_url(txid, settings.network, settings))
    except DepositError as e:
        logger.error(e.message)
        raise typer.Exit(1)


@app.command()
def deposit(
    address: AddressOption,
    pubkey: PubkeyOption,
    recipient: RecipientOption,
    amount_sats: AmountSatsOption = None,
    amount_btc: AmountBtcOption = None,
    target_blocks: TargetBlocksOption = 3,
    network: NetworkOption = None,
    log_level: LogLevelOption = None,
) -> None:
    """Run a full deposit, signing through the console."""
    settings = load_settings(network, log_level)
    params = _deposit_params(
        address, pubkey, recipient, amount_sats, amount_btc, settings.network, target_blocks
    )

    async def _run() -> None:
        async with DepositEngine(settings, ConsoleSigner()) as engine:
            result = await engine.execute_deposit(params)
        typer.echo(result.transaction_id)
        typer.echo(result.explorer_url)

    run(_run())


def main() -> None:
    """Entry point."""
    app()


if __name__ == "__main__":
    main()
