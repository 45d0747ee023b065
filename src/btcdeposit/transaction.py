"""
Bitcoin transaction serialization for segwit deposit transactions.

Covers what the deposit flow needs:
- unsigned (legacy-format) serialization, as embedded in a PSBT
- segwit serialization with witness stacks, as broadcast
- txid, virtual size and BIP143 sighash computation
"""

from __future__ import annotations

import hashlib
import math
import struct
from dataclasses import dataclass, field

from btcdeposit.constants import (
    INPUT_SEQUENCE,
    TX_LOCKTIME,
    TX_VERSION,
    WITNESS_SCALE_FACTOR,
)


class TransactionParseError(ValueError):
    pass


@dataclass
class TxInput:
    """Transaction input. txid is in display (big-endian) hex."""

    txid: str
    vout: int
    script_sig: bytes = b""
    sequence: int = INPUT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)


@dataclass
class TxOutput:
    value: int
    script_pubkey: bytes


@dataclass
class Transaction:
    inputs: list[TxInput]
    outputs: list[TxOutput]
    version: int = TX_VERSION
    locktime: int = TX_LOCKTIME

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        return serialize_transaction(self, include_witness)

    @classmethod
    def parse(cls, data: bytes) -> Transaction:
        return parse_transaction(data)

    @property
    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * (WITNESS_SCALE_FACTOR - 1) + total

    @property
    def vsize(self) -> int:
        return math.ceil(self.weight / WITNESS_SCALE_FACTOR)


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def varint(n: int) -> bytes:
    """Encode integer as Bitcoin varint."""
    if n < 0xFD:
        return bytes([n])
    elif n <= 0xFFFF:
        return bytes([0xFD]) + struct.pack("<H", n)
    elif n <= 0xFFFFFFFF:
        return bytes([0xFE]) + struct.pack("<I", n)
    else:
        return bytes([0xFF]) + struct.pack("<Q", n)


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    """Read varint and return (value, new offset)."""
    if offset >= len(data):
        raise TransactionParseError("Unexpected end of data reading varint")
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    size = {0xFD: 2, 0xFE: 4, 0xFF: 8}[first]
    if offset + 1 + size > len(data):
        raise TransactionParseError("Unexpected end of data reading varint")
    return int.from_bytes(data[offset + 1 : offset + 1 + size], "little"), offset + 1 + size


def serialize_outpoint(txid: str, vout: int) -> bytes:
    """Serialize outpoint (txid:vout)."""
    # txid is in display format (big-endian), raw tx uses little-endian
    return bytes.fromhex(txid)[::-1] + struct.pack("<I", vout)


def serialize_output(out: TxOutput) -> bytes:
    if out.value < 0:
        raise ValueError(f"Negative output value: {out.value}")
    return struct.pack("<Q", out.value) + varint(len(out.script_pubkey)) + out.script_pubkey


def serialize_transaction(tx: Transaction, include_witness: bool = True) -> bytes:
    """Serialize transaction to bytes (BIP144 format when witnesses are present)."""
    with_witness = include_witness and tx.has_witness

    result = struct.pack("<I", tx.version)
    if with_witness:
        result += bytes([0x00, 0x01])

    result += varint(len(tx.inputs))
    for inp in tx.inputs:
        result += serialize_outpoint(inp.txid, inp.vout)
        result += varint(len(inp.script_sig)) + inp.script_sig
        result += struct.pack("<I", inp.sequence)

    result += varint(len(tx.outputs))
    for out in tx.outputs:
        result += serialize_output(out)

    if with_witness:
        for inp in tx.inputs:
            result += varint(len(inp.witness))
            for item in inp.witness:
                result += varint(len(item)) + item

    result += struct.pack("<I", tx.locktime)
    return result


def _take(data: bytes, offset: int, size: int) -> tuple[bytes, int]:
    if offset + size > len(data):
        raise TransactionParseError("Unexpected end of transaction data")
    return data[offset : offset + size], offset + size


def parse_transaction(data: bytes) -> Transaction:
    """Parse a transaction from bytes (with or without witness data)."""
    raw, offset = _take(data, 0, 4)
    version = struct.unpack("<I", raw)[0]

    has_witness = False
    if len(data) > offset + 1 and data[offset] == 0x00 and data[offset + 1] == 0x01:
        has_witness = True
        offset += 2

    input_count, offset = read_varint(data, offset)
    inputs: list[TxInput] = []
    for _ in range(input_count):
        txid_le, offset = _take(data, offset, 32)
        raw, offset = _take(data, offset, 4)
        vout = struct.unpack("<I", raw)[0]
        script_len, offset = read_varint(data, offset)
        script_sig, offset = _take(data, offset, script_len)
        raw, offset = _take(data, offset, 4)
        sequence = struct.unpack("<I", raw)[0]
        inputs.append(TxInput(txid_le[::-1].hex(), vout, script_sig, sequence))

    output_count, offset = read_varint(data, offset)
    outputs: list[TxOutput] = []
    for _ in range(output_count):
        raw, offset = _take(data, offset, 8)
        value = struct.unpack("<Q", raw)[0]
        script_len, offset = read_varint(data, offset)
        script, offset = _take(data, offset, script_len)
        outputs.append(TxOutput(value, script))

    if has_witness:
        for inp in inputs:
            stack_count, offset = read_varint(data, offset)
            for _ in range(stack_count):
                item_len, offset = read_varint(data, offset)
                item, offset = _take(data, offset, item_len)
                inp.witness.append(item)

    raw, offset = _take(data, offset, 4)
    locktime = struct.unpack("<I", raw)[0]
    if offset != len(data):
        raise TransactionParseError(f"{len(data) - offset} trailing bytes after transaction")

    return Transaction(inputs, outputs, version, locktime)


def estimate_vsize(
    input_count: int, outputs: list[TxOutput], witness_size_per_input: int
) -> int:
    """
    Virtual size of a segwit transaction with the given outputs and
    ``input_count`` inputs carrying empty scriptSigs and witnesses of
    ``witness_size_per_input`` bytes each.
    """
    base = (
        4  # version
        + len(varint(input_count))
        + input_count * (36 + 1 + 4)  # outpoint + empty scriptSig + sequence
        + len(varint(len(outputs)))
        + sum(len(serialize_output(out)) for out in outputs)
        + 4  # locktime
    )
    witness = 2 + input_count * witness_size_per_input if input_count else 0  # marker+flag
    weight = base * WITNESS_SCALE_FACTOR + witness
    return math.ceil(weight / WITNESS_SCALE_FACTOR)


def compute_sighash_segwit(
    tx: Transaction,
    input_index: int,
    script_code: bytes,
    value: int,
    sighash_type: int,
) -> bytes:
    """BIP143 signature hash for a segwit v0 input."""
    if input_index >= len(tx.inputs):
        raise ValueError("Input index out of range")

    hash_prevouts = hash256(b"".join(serialize_outpoint(i.txid, i.vout) for i in tx.inputs))
    hash_sequence = hash256(b"".join(struct.pack("<I", i.sequence) for i in tx.inputs))
    hash_outputs = hash256(b"".join(serialize_output(o) for o in tx.outputs))

    target = tx.inputs[input_index]
    preimage = (
        struct.pack("<I", tx.version)
        + hash_prevouts
        + hash_sequence
        + serialize_outpoint(target.txid, target.vout)
        + varint(len(script_code))
        + script_code
        + struct.pack("<Q", value)
        + struct.pack("<I", target.sequence)
        + hash_outputs
        + struct.pack("<I", tx.locktime)
        + struct.pack("<I", sighash_type)
    )
    return hash256(preimage)
