"""
Bitcoin and bridge deposit constants.

Dust handling follows Bitcoin Core relay policy for the change output:
- STANDARD_DUST_LIMIT: the P2PKH dust limit (546 sats), used as the default
  threshold below which change is folded into the fee
"""

from __future__ import annotations

# Unit conversion
L1_BTC_DECIMALS = 8
SATS_PER_BTC = 10**L1_BTC_DECIMALS  # 100_000_000

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

# Deposit minimum accepted by the bridge
MIN_DEPOSIT_SATS = 20_000  # 0.0002 BTC

# Fee policy (sat/vB)
MAX_FEE_RATE = 10
DEFAULT_FEE_RATE = 10
DEFAULT_TARGET_BLOCKS = 3

# Confirmation depth a UTXO needs before it may fund a deposit
MIN_BLOCK_CONFIRMATIONS = 3

# Provider HTTP timeout (seconds)
DEFAULT_REQUEST_TIMEOUT = 5.0

# Fee recommendation buckets of the /v1/fees/recommended endpoint
FEE_BUCKET_FASTEST = "fastestFee"  # ~1 block
FEE_BUCKET_HALF_HOUR = "halfHourFee"  # ~3 blocks
FEE_BUCKET_HOUR = "hourFee"  # ~6 blocks
FEE_BUCKET_ECONOMY = "economyFee"  # ~144 blocks

# Transaction serialization
TX_VERSION = 2
TX_LOCKTIME = 0
# Signals opt-in RBF, matches what wallets produce for PSBTs they are asked to sign
INPUT_SEQUENCE = 0xFFFFFFFD
SIGHASH_ALL = 0x01

# Worst-case P2WPKH witness: count(1) + sig len(1) + 72-byte DER sig w/ sighash
# + pubkey len(1) + 33-byte compressed pubkey
P2WPKH_WITNESS_SIZE = 1 + 1 + 72 + 1 + 33  # 108 bytes
WITNESS_SCALE_FACTOR = 4

# Metadata output: OP_RETURN <push 20> <l2 receiver>
OP_RETURN = 0x6A
L2_ADDRESS_LENGTH = 20

DEFAULT_SIGNING_MESSAGE = "Sign VIA deposit transaction"
