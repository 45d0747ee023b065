"""
Esplora-compatible block data providers (Blockstream / Mempool.space API).

Primary and fallback providers implement the same contract; ``with_fallback``
is the single retry policy used by the UTXO source, fee estimator and
broadcaster.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import httpx
from loguru import logger

from btcdeposit.config import Settings
from btcdeposit.errors import ProviderError, ProviderUnavailableError
from btcdeposit.models import UTXO, NetworkType

T = TypeVar("T")


class EsploraProvider:
    """HTTP client for one Esplora-compatible endpoint."""

    def __init__(self, base_url: str, client: httpx.AsyncClient, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"EsploraProvider({self.base_url})"

    async def _request(
        self,
        method: str,
        endpoint: str,
        content: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            if method == "GET":
                response = await self.client.get(url, timeout=self.timeout)
            elif method == "POST":
                response = await self.client.post(
                    url, content=content, headers=headers, timeout=self.timeout
                )
            else:
                raise ValueError(f"Unsupported HTTP method: {method}")

            response.raise_for_status()
            return response

        except httpx.TimeoutException as e:
            logger.warning(f"Provider request timed out: {method} {url} - {e!r}")
            raise ProviderError(self.base_url, f"{endpoint} timed out") from e
        except httpx.HTTPStatusError as e:
            body = e.response.text[:200]
            logger.warning(
                f"Provider request failed: {method} {url} - {e.response.status_code} {body}"
            )
            raise ProviderError(
                self.base_url, f"{endpoint} returned HTTP {e.response.status_code}: {body}"
            ) from e
        except httpx.HTTPError as e:
            logger.warning(f"Provider request failed: {method} {url} - {e!r}")
            raise ProviderError(self.base_url, f"{endpoint} failed: {e!r}") from e

    async def _get_json(self, endpoint: str) -> Any:
        response = await self._request("GET", endpoint)
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(self.base_url, f"{endpoint} returned invalid JSON") from e

    async def get_tip_height(self) -> int:
        response = await self._request("GET", "blocks/tip/height")
        try:
            height = int(response.text.strip())
        except ValueError as e:
            raise ProviderError(
                self.base_url, f"Invalid tip height: {response.text[:50]!r}"
            ) from e
        logger.debug(f"Tip height from {self.base_url}: {height}")
        return height

    async def get_address_utxos(self, address: str) -> list[UTXO]:
        data = await self._get_json(f"address/{address}/utxo")
        if not isinstance(data, list):
            raise ProviderError(self.base_url, "UTXO response is not a list")
        try:
            return [UTXO.from_esplora(item) for item in data]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ProviderError(self.base_url, f"Malformed UTXO entry: {e!r}") from e

    async def get_recommended_fees(self) -> dict[str, Any]:
        data = await self._get_json("v1/fees/recommended")
        if not isinstance(data, dict):
            raise ProviderError(self.base_url, "Fee response is not an object")
        return data

    async def post_transaction(self, tx_hex: str) -> str:
        response = await self._request(
            "POST", "tx", content=tx_hex, headers={"Content-Type": "text/plain"}
        )
        return response.text.strip()


def providers_for(
    network: NetworkType, settings: Settings, client: httpx.AsyncClient
) -> list[EsploraProvider]:
    """Ordered [primary, fallback] providers for a network."""
    return [
        EsploraProvider(url, client, timeout=settings.request_timeout)
        for url in settings.endpoints(network).api_urls()
    ]


async def with_fallback(
    providers: Sequence[EsploraProvider],
    operation: Callable[[EsploraProvider], Awaitable[T]],
    action: str,
) -> T:
    """
    Run ``operation`` against each provider in order until one succeeds.

    Only ``ProviderError`` moves on to the next provider; any other exception
    propagates unchanged.

    Raises:
        ProviderUnavailableError: If every provider failed
    """
    failures: list[ProviderError] = []
    for index, provider in enumerate(providers):
        try:
            result = await operation(provider)
            if index > 0:
                logger.info(f"Fallback provider {provider.base_url} succeeded to {action}")
            return result
        except ProviderError as e:
            failures.append(e)
            if index + 1 < len(providers):
                logger.warning(f"Failed to {action} via {provider.base_url}, trying fallback: {e}")
            else:
                logger.error(f"Failed to {action} via {provider.base_url}: {e}")

    raise ProviderUnavailableError(action, failures)


def new_http_client(settings: Settings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.request_timeout)
