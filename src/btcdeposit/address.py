"""
Bitcoin address and script utilities.

Segwit addresses use BIP173 bech32 (v0) and BIP350 bech32m (v1+).
"""

from __future__ import annotations

import hashlib

from btcdeposit.constants import L2_ADDRESS_LENGTH, OP_RETURN
from btcdeposit.models import NetworkType

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

HRP_BY_NETWORK = {
    NetworkType.MAINNET: "bc",
    NetworkType.TESTNET: "tb",
    NetworkType.REGTEST: "bcrt",
}


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32"""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int = BECH32_CONST) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join([BECH32_CHARSET[d] for d in combined])


def bech32_decode(address: str) -> tuple[str, list[int], int]:
    """
    Decode a bech32/bech32m string.

    Returns:
        (hrp, data without checksum, checksum constant)
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError(f"Mixed case bech32 string: {address}")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError(f"Invalid bech32 address: {address}")
    hrp = address[:pos]
    try:
        data = [BECH32_CHARSET.index(c) for c in address[pos + 1 :]]
    except ValueError:
        raise ValueError(f"Invalid bech32 address: {address}") from None
    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError(f"Invalid bech32 checksum: {address}")
    return hrp, data[:-6], const


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            raise ValueError("Invalid bits")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid bits")

    return ret


def decode_segwit_address(address: str) -> tuple[str, int, bytes]:
    """
    Decode a segwit address into (hrp, witness version, witness program).

    Enforces BIP350: v0 programs use bech32, v1+ use bech32m.
    """
    hrp, data, const = bech32_decode(address)
    if not data:
        raise ValueError(f"Empty witness data: {address}")
    witver = data[0]
    if witver > 16:
        raise ValueError(f"Invalid witness version: {witver}")
    witprog = bytes(convertbits(data[1:], 5, 8, pad=False))
    if len(witprog) < 2 or len(witprog) > 40:
        raise ValueError(f"Invalid witness program length: {len(witprog)}")
    if witver == 0 and len(witprog) not in (20, 32):
        raise ValueError(f"Invalid v0 witness program length: {len(witprog)}")
    expected_const = BECH32_CONST if witver == 0 else BECH32M_CONST
    if const != expected_const:
        raise ValueError(f"Wrong checksum variant for witness v{witver}: {address}")
    return hrp, witver, witprog


def encode_segwit_address(hrp: str, witver: int, witprog: bytes) -> str:
    const = BECH32_CONST if witver == 0 else BECH32M_CONST
    return bech32_encode(hrp, [witver] + convertbits(witprog, 8, 5), const)


def address_to_scriptpubkey(address: str, network: NetworkType | None = None) -> bytes:
    """
    Convert a Bitcoin address to scriptPubKey.

    Supports:
    - P2WPKH / P2WSH (bech32)
    - P2TR and future witness versions (bech32m)
    - P2PKH / P2SH (base58check)

    When ``network`` is given, the address prefix must belong to it.
    """
    if address.lower().startswith(("bc1", "tb1", "bcrt1")):
        hrp, witver, witprog = decode_segwit_address(address)
        if network is not None and hrp != HRP_BY_NETWORK[network]:
            raise ValueError(f"Address {address} is not a {network.value} address")
        # OP_0 or OP_1..OP_16, then the program push
        version_op = 0x00 if witver == 0 else 0x50 + witver
        return bytes([version_op, len(witprog)]) + witprog

    # Base58 addresses (legacy)
    import base58

    decoded = base58.b58decode_check(address)
    version = decoded[0]
    payload = decoded[1:]

    if network is not None:
        mainnet = version in (0x00, 0x05)
        if mainnet != (network == NetworkType.MAINNET):
            raise ValueError(f"Address {address} is not a {network.value} address")

    if version in (0x00, 0x6F):  # Mainnet/Testnet P2PKH
        # P2PKH: OP_DUP OP_HASH160 <20-byte-pubkeyhash> OP_EQUALVERIFY OP_CHECKSIG
        return bytes([0x76, 0xA9, 0x14]) + payload + bytes([0x88, 0xAC])
    elif version in (0x05, 0xC4):  # Mainnet/Testnet P2SH
        # P2SH: OP_HASH160 <20-byte-scripthash> OP_EQUAL
        return bytes([0xA9, 0x14]) + payload + bytes([0x87])

    raise ValueError(f"Unknown address version: {version}")


def pubkey_to_p2wpkh_script(pubkey: bytes | str) -> bytes:
    """Create P2WPKH scriptPubKey (OP_0 <20-byte-hash>)"""
    pubkey_bytes = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey
    if len(pubkey_bytes) != 33 or pubkey_bytes[0] not in (0x02, 0x03):
        raise ValueError(f"Invalid compressed pubkey: {pubkey_bytes.hex()}")
    return bytes([0x00, 0x14]) + hash160(pubkey_bytes)


def pubkey_to_p2wpkh_address(
    pubkey: bytes | str, network: NetworkType = NetworkType.MAINNET
) -> str:
    script = pubkey_to_p2wpkh_script(pubkey)
    return encode_segwit_address(HRP_BY_NETWORK[network], 0, script[2:])


def is_p2wpkh_script(script: bytes) -> bool:
    return len(script) == 22 and script[0] == 0x00 and script[1] == 0x14


def p2wpkh_script_code(script_pubkey: bytes) -> bytes:
    """BIP143 scriptCode for a P2WPKH output: the equivalent P2PKH script."""
    if not is_p2wpkh_script(script_pubkey):
        raise ValueError(f"Not a P2WPKH script: {script_pubkey.hex()}")
    return b"\x76\xa9\x14" + script_pubkey[2:] + b"\x88\xac"


def build_metadata_script(l2_receiver: bytes) -> bytes:
    """OP_RETURN output script carrying the raw 20-byte L2 receiver address."""
    if len(l2_receiver) != L2_ADDRESS_LENGTH:
        raise ValueError(f"L2 receiver must be {L2_ADDRESS_LENGTH} bytes, got {len(l2_receiver)}")
    return bytes([OP_RETURN, len(l2_receiver)]) + l2_receiver
