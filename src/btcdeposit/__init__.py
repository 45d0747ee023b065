"""
btcdeposit - Bitcoin deposit transaction engine for a cross-chain bridge

Builds, signs (through an external wallet), finalizes and broadcasts P2WPKH
deposit transactions carrying the L2 receiver in an OP_RETURN output.
"""

__version__ = "0.1.0"

from btcdeposit.broadcast import Broadcaster
from btcdeposit.builder import (
    CoinSelection,
    UnsignedTransactionPlan,
    build_deposit_transaction,
    select_utxos,
)
from btcdeposit.config import ProviderEndpoints, Settings, get_settings
from btcdeposit.deposit import DepositEngine
from btcdeposit.errors import (
    BroadcastFailedError,
    ConfigurationError,
    DepositAmountError,
    DepositError,
    IncompleteSignatureError,
    InsufficientConfirmationsError,
    NoUtxoSelectionFoundError,
    ProviderError,
    ProviderUnavailableError,
    SigningCancelledError,
    SigningError,
    SigningRejectedError,
    TransactionBuildError,
)
from btcdeposit.explorer import explorer_url
from btcdeposit.fees import FeeEstimator
from btcdeposit.finalizer import finalize, finalize_hex
from btcdeposit.models import (
    UTXO,
    BroadcastResult,
    DepositIntent,
    DepositParams,
    FeeQuote,
    NetworkType,
    UserAddress,
)
from btcdeposit.signing import (
    CancellationToken,
    SignedTransaction,
    SigningCallbacks,
    SigningCoordinator,
    SigningRequest,
    WalletSigner,
)
from btcdeposit.utxo import UtxoSource

__all__ = [
    "BroadcastFailedError",
    "BroadcastResult",
    "Broadcaster",
    "CancellationToken",
    "CoinSelection",
    "ConfigurationError",
    "DepositAmountError",
    "DepositEngine",
    "DepositError",
    "DepositIntent",
    "DepositParams",
    "FeeEstimator",
    "FeeQuote",
    "IncompleteSignatureError",
    "InsufficientConfirmationsError",
    "NetworkType",
    "NoUtxoSelectionFoundError",
    "ProviderEndpoints",
    "ProviderError",
    "ProviderUnavailableError",
    "Settings",
    "SignedTransaction",
    "SigningCallbacks",
    "SigningCancelledError",
    "SigningCoordinator",
    "SigningError",
    "SigningRejectedError",
    "SigningRequest",
    "TransactionBuildError",
    "UTXO",
    "UnsignedTransactionPlan",
    "UserAddress",
    "UtxoSource",
    "WalletSigner",
    "build_deposit_transaction",
    "explorer_url",
    "finalize",
    "finalize_hex",
    "get_settings",
    "select_utxos",
]
