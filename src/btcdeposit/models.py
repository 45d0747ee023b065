"""
Deposit data models.

Chain snapshots (UTXOs, fee quotes, results) are plain frozen dataclasses.
Caller-supplied inputs that need validation use Pydantic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from btcdeposit.constants import L2_ADDRESS_LENGTH, SATS_PER_BTC


class NetworkType(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet4"
    REGTEST = "regtest"


@dataclass(frozen=True)
class ConfirmationState:
    confirmed: bool
    block_height: int | None = None


@dataclass(frozen=True)
class UTXO:
    """Unspent output as reported by an Esplora-compatible provider."""

    txid: str
    vout: int
    value: int
    status: ConfirmationState = ConfirmationState(confirmed=False)

    @classmethod
    def from_esplora(cls, data: dict[str, Any]) -> UTXO:
        status = data.get("status") or {}
        return cls(
            txid=str(data["txid"]),
            vout=int(data["vout"]),
            value=int(data["value"]),
            status=ConfirmationState(
                confirmed=bool(status.get("confirmed", False)),
                block_height=status.get("block_height"),
            ),
        )

    def confirmations(self, tip_height: int) -> int:
        """Confirmation count at the given chain tip (0 when unconfirmed)."""
        if not self.status.confirmed or not self.status.block_height:
            return 0
        return max(0, tip_height - self.status.block_height + 1)

    @property
    def outpoint(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass(frozen=True)
class UserAddress:
    address: str
    public_key: str
    purpose: str = "payment"


@dataclass(frozen=True)
class FeeQuote:
    sats_per_vbyte: int
    source: str
    bucket: str


@dataclass(frozen=True)
class BroadcastResult:
    transaction_id: str
    explorer_url: str
    provider: str = ""


def normalize_l2_address(value: str) -> str:
    """Strip an optional 0x prefix and validate a 20-byte hex L2 address."""
    stripped = value[2:] if value.lower().startswith("0x") else value
    try:
        raw = bytes.fromhex(stripped)
    except ValueError as e:
        raise ValueError(f"L2 receiver address is not hex: {value}") from e
    if len(raw) != L2_ADDRESS_LENGTH:
        raise ValueError(
            f"L2 receiver address must be {L2_ADDRESS_LENGTH} bytes, got {len(raw)}"
        )
    return stripped.lower()


class DepositIntent(BaseModel):
    """What the user wants to deposit, immutable for one attempt."""

    model_config = {"frozen": True}

    bridge_address: str = Field(..., min_length=1)
    l2_receiver_address: str
    amount_sats: int = Field(..., gt=0)
    network: NetworkType = NetworkType.TESTNET

    @field_validator("l2_receiver_address")
    @classmethod
    def validate_l2_address(cls, v: str) -> str:
        return normalize_l2_address(v)

    @property
    def l2_receiver_bytes(self) -> bytes:
        return bytes.fromhex(self.l2_receiver_address)


class DepositParams(BaseModel):
    """Parameters of a single deposit request from the UI or CLI."""

    bitcoin_address: str = Field(..., min_length=1)
    bitcoin_public_key: str = Field(..., min_length=66, max_length=66)
    recipient_l2_address: str
    amount_sats: int | None = Field(default=None, gt=0)
    amount_btc: Decimal | None = Field(default=None, gt=0)
    network: NetworkType | None = None
    target_confirmation_blocks: int = Field(default=3, ge=1)

    @field_validator("recipient_l2_address")
    @classmethod
    def validate_recipient(cls, v: str) -> str:
        return normalize_l2_address(v)

    @model_validator(mode="after")
    def resolve_amount(self) -> DepositParams:
        if (self.amount_sats is None) == (self.amount_btc is None):
            raise ValueError("Exactly one of amount_sats or amount_btc must be set")
        if self.amount_btc is not None:
            sats = self.amount_btc * SATS_PER_BTC
            if sats != sats.to_integral_value():
                raise ValueError(f"Amount {self.amount_btc} BTC has sub-satoshi precision")
            object.__setattr__(self, "amount_sats", int(sats))
        return self

    @property
    def user_address(self) -> UserAddress:
        return UserAddress(address=self.bitcoin_address, public_key=self.bitcoin_public_key)
