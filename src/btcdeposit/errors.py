"""
Deposit engine exceptions.

Every error carries a ``user_message`` that is safe to show to the end user.
The wording differs per error class because each one implies a different
action (wait, top up, retry later, sign again).
"""

from __future__ import annotations


class DepositError(Exception):
    """Base class for all deposit engine failures."""

    user_message = "The deposit failed. Please try again."

    def __init__(self, message: str, user_message: str | None = None):
        super().__init__(message)
        self.message = message
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(DepositError):
    user_message = "The bridge is not configured for this network."


class DepositAmountError(DepositError):
    user_message = "The deposit amount is below the bridge minimum."


class ProviderError(DepositError):
    """A single data provider failed (timeout, HTTP error, bad payload)."""

    user_message = "The Bitcoin data provider could not be reached."

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderUnavailableError(DepositError):
    """Every configured provider failed for the same operation."""

    user_message = "Bitcoin data providers are unreachable. Please try again later."

    def __init__(self, action: str, failures: list[ProviderError] | None = None):
        self.action = action
        self.failures = failures or []
        details = "; ".join(str(f) for f in self.failures) or "no providers configured"
        super().__init__(f"All providers failed to {action}: {details}")


class InsufficientConfirmationsError(DepositError):
    def __init__(self, min_confirmations: int, immature_count: int):
        self.min_confirmations = min_confirmations
        self.immature_count = immature_count
        super().__init__(
            f"No UTXOs found with at least {min_confirmations} confirmations "
            f"({immature_count} not yet mature)",
            f"No UTXOs found with at least {min_confirmations} confirmations. "
            "Please wait for your transactions to be confirmed.",
        )


class NoUtxoSelectionFoundError(DepositError):
    def __init__(self, required_sats: int, available_sats: int, min_confirmations: int = 0):
        self.required_sats = required_sats
        self.available_sats = available_sats
        self.min_confirmations = min_confirmations
        user_message = "Insufficient balance to deposit."
        if min_confirmations:
            user_message += (
                f" UTXOs must have at least {min_confirmations} confirmations "
                "to be eligible for deposit."
            )
        super().__init__(
            f"Insufficient funds: need {required_sats} sats, have {available_sats} sats",
            user_message,
        )


class TransactionBuildError(DepositError):
    user_message = "The deposit transaction could not be built."


class SigningError(DepositError):
    user_message = "The wallet failed to sign the transaction."


class SigningCancelledError(SigningError):
    user_message = "Transfer cancelled."

    def __init__(self, message: str = "Transaction signing cancelled"):
        super().__init__(message)


class SigningRejectedError(SigningError):
    user_message = "The signature request was rejected in your wallet."

    def __init__(self, message: str = "User rejected the signature request"):
        super().__init__(message)


class IncompleteSignatureError(DepositError):
    user_message = "The wallet returned an incomplete signature. The transaction was not sent."

    def __init__(self, input_index: int, reason: str):
        self.input_index = input_index
        super().__init__(f"Input {input_index}: {reason}")


class BroadcastFailedError(DepositError):
    user_message = "Failed to broadcast transaction. Please try again later."

    def __init__(self, message: str, failures: list[ProviderError] | None = None):
        super().__init__(message)
        self.failures = failures or []
