"""
Signing coordination with an external wallet.

Wallets expose a callback API: a signing request is submitted together with
an ``on_finish`` and an ``on_cancel`` callback (plus ``on_error`` for wallet
failures), and exactly one of them eventually fires. The coordinator turns
that into a single awaitable that can also be aborted through the caller's
``CancellationToken``. Whichever side wins, the underlying completion is
settled exactly once.
"""

from __future__ import annotations

import asyncio
import base64
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from bitcointx.core.psbt import PartiallySignedTransaction as PSBT
from loguru import logger

from btcdeposit.errors import (
    SigningCancelledError,
    SigningError,
    SigningRejectedError,
)
from btcdeposit.models import NetworkType, UserAddress
from btcdeposit.psbt import PsbtError, parse_psbt, psbt_from_base64

# Wallet error codes meaning the user declined the request
USER_REJECTION_CODES = {4001, "4001", "USER_REJECTION", "USER_REJECTED"}

WALLET_NETWORK_TYPES = {
    NetworkType.MAINNET: "Mainnet",
    NetworkType.TESTNET: "Testnet",
    NetworkType.REGTEST: "Regtest",
}


class CancellationToken:
    """One per deposit attempt; fires at most once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled by user") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass(frozen=True)
class InputToSign:
    address: str
    signing_indexes: list[int]


@dataclass(frozen=True)
class SigningRequest:
    network: NetworkType
    message: str
    psbt_base64: str
    inputs_to_sign: list[InputToSign]
    broadcast: bool = False

    def to_payload(self) -> dict[str, Any]:
        """Wallet-facing request payload."""
        return {
            "network": {"type": WALLET_NETWORK_TYPES[self.network]},
            "message": self.message,
            "psbtBase64": self.psbt_base64,
            "inputsToSign": [
                {"address": i.address, "signingIndexes": list(i.signing_indexes)}
                for i in self.inputs_to_sign
            ],
            "broadcast": self.broadcast,
        }


@dataclass(frozen=True)
class SignedTransaction:
    psbt: bytes
    signed_indexes: list[int] = field(default_factory=list)

    @property
    def psbt_base64(self) -> str:
        return base64.b64encode(self.psbt).decode("ascii")


@dataclass(frozen=True)
class SigningCallbacks:
    on_finish: Callable[[dict[str, Any]], None]
    on_cancel: Callable[[], None]
    on_error: Callable[[Any], None]


class WalletSigner(Protocol):
    """External wallet signing capability."""

    def sign_transaction(
        self, request: SigningRequest, callbacks: SigningCallbacks
    ) -> Awaitable[None] | None: ...


def classify_wallet_error(error: Any) -> SigningError:
    """Map a wallet error (exception or error payload) to a signing error."""
    if isinstance(error, SigningError):
        return error

    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message") or "Unknown wallet error")
    else:
        code = getattr(error, "code", None)
        message = str(error) or type(error).__name__

    if code in USER_REJECTION_CODES:
        return SigningRejectedError(f"User rejected the signature request: {message}")
    return SigningError(f"Wallet signing failed: {message}")


class _SigningCompletion:
    """Single-resolution future fed by the wallet's completion channels."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self._loop = loop
        self.future: asyncio.Future[dict[str, Any]] = loop.create_future()

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        # Wallet callbacks may fire from another thread
        if not self._loop.is_closed():
            self._loop.call_soon_threadsafe(fn, *args)

    def _set_result(self, response: dict[str, Any]) -> None:
        if not self.future.done():
            self.future.set_result(response)

    def _set_exception(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)

    def finish(self, response: dict[str, Any]) -> None:
        self._dispatch(self._set_result, response)

    def cancel(self) -> None:
        self._dispatch(self._set_exception, SigningCancelledError("Wallet cancelled signing"))

    def fail(self, error: Any) -> None:
        self._dispatch(self._set_exception, classify_wallet_error(error))

    def fail_from_task(self, task: asyncio.Future[Any]) -> None:
        if not task.cancelled() and task.exception() is not None:
            self.fail(task.exception())

    def callbacks(self) -> SigningCallbacks:
        return SigningCallbacks(on_finish=self.finish, on_cancel=self.cancel, on_error=self.fail)


class SigningCoordinator:
    """
    Hands PSBTs to the wallet and waits for the user's decision.

    At most one signing request may be outstanding per coordinator.
    """

    def __init__(self, signer: WalletSigner, message: str = "Sign VIA deposit transaction"):
        self.signer = signer
        self.message = message
        self._pending = False

    @property
    def pending(self) -> bool:
        return self._pending

    async def request_signature(
        self,
        psbt: bytes,
        user_address: UserAddress,
        input_indexes: list[int],
        network: NetworkType,
        cancellation: CancellationToken | None = None,
    ) -> SignedTransaction:
        """
        Ask the wallet to sign every input of ``psbt``.

        Raises:
            SigningCancelledError: The user cancelled (via wallet or token)
            SigningRejectedError: The wallet reported an explicit rejection
            SigningError: Any other wallet failure or a malformed response
        """
        if self._pending:
            raise RuntimeError("A signing request is already outstanding")

        unsigned = parse_psbt(psbt)
        expected = list(range(len(unsigned.unsigned_tx.vin)))
        if sorted(set(input_indexes)) != expected or len(input_indexes) != len(expected):
            raise ValueError(
                f"All inputs must be signed together: expected {expected}, got {input_indexes}"
            )

        if cancellation is not None and cancellation.cancelled:
            raise SigningCancelledError(cancellation.reason or "Transaction signing cancelled")

        request = SigningRequest(
            network=network,
            message=self.message,
            psbt_base64=base64.b64encode(psbt).decode("ascii"),
            inputs_to_sign=[InputToSign(user_address.address, list(input_indexes))],
        )

        self._pending = True
        try:
            response = await self._wait_for_wallet(request, cancellation)
        finally:
            self._pending = False

        signed = self._validate_response(response, unsigned)
        logger.info(f"Wallet signed {len(input_indexes)} inputs")
        return SignedTransaction(psbt=signed, signed_indexes=list(input_indexes))

    async def _wait_for_wallet(
        self, request: SigningRequest, cancellation: CancellationToken | None
    ) -> dict[str, Any]:
        completion = _SigningCompletion(asyncio.get_running_loop())
        wallet_task: asyncio.Future[Any] | None = None

        logger.info(f"Requesting wallet signature for inputs {request.inputs_to_sign}")
        try:
            result = self.signer.sign_transaction(request, completion.callbacks())
        except Exception as e:
            completion.fail(e)
        else:
            if inspect.isawaitable(result):
                wallet_task = asyncio.ensure_future(result)
                wallet_task.add_done_callback(completion.fail_from_task)

        waiters: set[asyncio.Future[Any]] = {completion.future}
        cancel_wait: asyncio.Future[None] | None = None
        if cancellation is not None:
            cancel_wait = asyncio.ensure_future(cancellation.wait())
            waiters.add(cancel_wait)

        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            completion._set_exception(SigningCancelledError("Signing task cancelled"))
            completion.future.exception()
            if wallet_task is not None:
                wallet_task.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if not completion.future.done():
            reason = cancellation.reason if cancellation and cancellation.reason else None
            reason = reason or "Transaction signing cancelled"
            logger.info(f"Signing cancelled before wallet response: {reason}")
            error = SigningCancelledError(reason)
            completion._set_exception(error)
            # Mark retrieved, the caller gets the error below
            completion.future.exception()
            if wallet_task is not None:
                wallet_task.cancel()
            raise error

        return completion.future.result()

    def _validate_response(self, response: dict[str, Any], unsigned: PSBT) -> bytes:
        psbt_b64 = response.get("psbtBase64") if isinstance(response, dict) else None
        if not psbt_b64:
            raise SigningError("Wallet response does not contain a PSBT")
        try:
            signed = psbt_from_base64(psbt_b64)
        except PsbtError as e:
            raise SigningError(f"Wallet returned an invalid PSBT: {e}") from e

        if signed.unsigned_tx.serialize() != unsigned.unsigned_tx.serialize():
            raise SigningError("Wallet returned a PSBT for a different transaction")
        return signed.serialize()
