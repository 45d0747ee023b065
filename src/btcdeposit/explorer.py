"""
Block explorer links for broadcast transactions.
"""

from __future__ import annotations

from btcdeposit.config import Settings, default_providers
from btcdeposit.models import NetworkType


def explorer_url(txid: str, network: NetworkType, settings: Settings | None = None) -> str:
    """Explorer page for ``txid``; uses the default endpoint table without settings."""
    if settings is not None:
        base = settings.endpoints(network).explorer
    else:
        base = default_providers()[network].explorer
    return f"{base}{txid}"
