"""
Shared fixtures: deterministic keys, settings pointing at fake providers,
and an in-process Esplora fake served through httpx.MockTransport.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from bitcointx.core.key import CPubKey
from bitcointx.core.psbt import PartiallySignedTransaction as PSBT
from coincurve import PrivateKey

from btcdeposit.address import p2wpkh_script_code, pubkey_to_p2wpkh_address
from btcdeposit.config import ProviderEndpoints, Settings
from btcdeposit.constants import SIGHASH_ALL
from btcdeposit.models import UTXO, ConfirmationState, NetworkType, UserAddress
from btcdeposit.psbt import parse_psbt, spent_output, unsigned_transaction
from btcdeposit.signing import SigningCallbacks, SigningRequest
from btcdeposit.transaction import compute_sighash_segwit

PRIMARY = "https://primary.test/api"
FALLBACK = "https://fallback.test/api"
EXPLORER = "https://explorer.test/tx/"

L2_RECEIVER = "0x" + "ab" * 20
TIP_HEIGHT = 100_000


class FakeEsplora:
    """Routes (method, url) to canned responses; unknown routes return 404."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        json: Any = None,
        text: str | None = None,
        exc: Exception | None = None,
    ) -> None:
        def respond(request: httpx.Request) -> httpx.Response:
            if exc is not None:
                raise exc
            if json is not None:
                return httpx.Response(status, json=json)
            return httpx.Response(status, text=text or "")

        self.routes[(method, url)] = respond

    def add_chain(self, base: str, tip: int, utxos: list[dict[str, Any]], address: str) -> None:
        self.add("GET", f"{base}/blocks/tip/height", text=str(tip))
        self.add("GET", f"{base}/address/{address}/utxo", json=utxos)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, text="Not Found")
        return route(request)

    def calls(self, method: str, url: str) -> int:
        return sum(1 for r in self.requests if r.method == method and str(r.url) == url)


def esplora_utxo(txid: str, vout: int, value: int, block_height: int | None) -> dict[str, Any]:
    status: dict[str, Any] = {"confirmed": block_height is not None}
    if block_height is not None:
        status["block_height"] = block_height
    return {"txid": txid, "vout": vout, "value": value, "status": status}


def make_utxo(value: int, txid_byte: int = 1, vout: int = 0, block_height: int = 90_000) -> UTXO:
    return UTXO(
        txid=f"{txid_byte:02x}" * 32,
        vout=vout,
        value=value,
        status=ConfirmationState(confirmed=True, block_height=block_height),
    )


def sign_psbt(psbt_bytes: bytes, private_key: PrivateKey) -> PSBT:
    """Add a P2WPKH partial signature for every input, like a wallet would."""
    psbt = parse_psbt(psbt_bytes)
    tx = unsigned_transaction(psbt)
    pubkey = CPubKey(private_key.public_key.format(compressed=True))
    for index, psbt_input in enumerate(psbt.inputs):
        spent = spent_output(psbt, index)
        assert spent is not None
        sighash = compute_sighash_segwit(
            tx, index, p2wpkh_script_code(spent.script_pubkey), spent.value, SIGHASH_ALL
        )
        psbt_input.partial_sigs[pubkey] = private_key.sign(sighash, hasher=None) + bytes(
            [SIGHASH_ALL]
        )
    return psbt


class KeySigner:
    """Wallet stand-in that signs immediately with a local key."""

    def __init__(self, private_key: PrivateKey):
        self.private_key = private_key
        self.requests: list[SigningRequest] = []

    def sign_transaction(self, request: SigningRequest, callbacks: SigningCallbacks) -> None:
        self.requests.append(request)
        signed = sign_psbt(base64.b64decode(request.psbt_base64), self.private_key)
        callbacks.on_finish({"psbtBase64": signed.to_base64()})


@pytest.fixture
def private_key() -> PrivateKey:
    """User key (not for production use!)."""
    return PrivateKey(bytes.fromhex("11" * 32))


@pytest.fixture
def public_key_hex(private_key: PrivateKey) -> str:
    return private_key.public_key.format(compressed=True).hex()


@pytest.fixture
def user_address(public_key_hex: str) -> UserAddress:
    return UserAddress(
        address=pubkey_to_p2wpkh_address(public_key_hex, NetworkType.TESTNET),
        public_key=public_key_hex,
    )


@pytest.fixture
def custody_address() -> str:
    key = PrivateKey(bytes.fromhex("22" * 32))
    return pubkey_to_p2wpkh_address(key.public_key.format(compressed=True), NetworkType.TESTNET)


@pytest.fixture
def settings(custody_address: str) -> Settings:
    return Settings(
        network=NetworkType.TESTNET,
        providers={
            NetworkType.TESTNET: ProviderEndpoints(
                primary=PRIMARY, fallback=FALLBACK, explorer=EXPLORER
            )
        },
        bridge_addresses={NetworkType.TESTNET: custody_address},
    )


@pytest.fixture
def fake_esplora() -> FakeEsplora:
    return FakeEsplora()


@pytest.fixture
def client(fake_esplora: FakeEsplora) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_esplora.handler))
