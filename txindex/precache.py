"""Warming the stats cache for a list of scripts."""

from __future__ import annotations

import hashlib
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable

from .errors import IndexerError
from .rows import compute_script_hash

log = logging.getLogger(__name__)

PRECACHE_THREADS = 16

_HEX = re.compile(r"(?:[0-9a-fA-F]{2})*")

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_P2PKH_VERSIONS = {0x00, 0x6F}
_P2SH_VERSIONS = {0x05, 0xC4}

_BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_BECH32_HRPS = ("bc", "tb", "bcrt")
_BECH32_CONST = 1
_BECH32M_CONST = 0x2BC830A3
_BECH32_GEN = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)


def _from_hex(text: str) -> bytes:
    if not _HEX.fullmatch(text):
        raise IndexerError("invalid hex")
    return bytes.fromhex(text)


def _sha256d(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def _base58check_decode(text: str) -> bytes:
    num = 0
    for char in text:
        digit = _B58_ALPHABET.find(char)
        if digit < 0:
            raise IndexerError("invalid address")
        num = num * 58 + digit
    body = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    leading = len(text) - len(text.lstrip("1"))
    raw = b"\x00" * leading + body
    if len(raw) < 4:
        raise IndexerError("invalid address")
    payload, checksum = raw[:-4], raw[-4:]
    if _sha256d(payload)[:4] != checksum:
        raise IndexerError("invalid address")
    return payload


def _base58_script(addr: str) -> bytes:
    payload = _base58check_decode(addr)
    if len(payload) != 21:
        raise IndexerError("invalid address")
    version, hash160 = payload[0], payload[1:]
    if version in _P2PKH_VERSIONS:
        return b"\x76\xa9\x14" + hash160 + b"\x88\xac"
    if version in _P2SH_VERSIONS:
        return b"\xa9\x14" + hash160 + b"\x87"
    raise IndexerError("invalid address")


def _bech32_polymod(values: Iterable[int]) -> int:
    chk = 1
    for value in values:
        top = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i, gen in enumerate(_BECH32_GEN):
            if (top >> i) & 1:
                chk ^= gen
    return chk


def _hrp_expand(hrp: str) -> list[int]:
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def _convert_bits(data: Iterable[int], frombits: int, tobits: int) -> bytes:
    acc = 0
    bits = 0
    out = bytearray()
    maxv = (1 << tobits) - 1
    for value in data:
        acc = (acc << frombits) | value
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            out.append((acc >> bits) & maxv)
    if bits >= frombits or (acc << (tobits - bits)) & maxv:
        raise IndexerError("invalid address")
    return bytes(out)


def _segwit_script(addr: str) -> bytes:
    if any(not 33 <= ord(c) <= 126 for c in addr):
        raise IndexerError("invalid address")
    if addr.lower() != addr and addr.upper() != addr:
        raise IndexerError("invalid address")
    addr = addr.lower()
    sep = addr.rfind("1")
    if sep < 1 or sep + 7 > len(addr) or len(addr) > 90:
        raise IndexerError("invalid address")
    hrp = addr[:sep]
    if hrp not in _BECH32_HRPS:
        raise IndexerError("invalid address")
    data = [_BECH32_CHARSET.find(c) for c in addr[sep + 1:]]
    if -1 in data:
        raise IndexerError("invalid address")
    const = _bech32_polymod(_hrp_expand(hrp) + data)
    if const not in (_BECH32_CONST, _BECH32M_CONST):
        raise IndexerError("invalid address")
    values = data[:-6]
    if not values:
        raise IndexerError("invalid address")
    version = values[0]
    if version > 16:
        raise IndexerError("invalid address")
    program = _convert_bits(values[1:], 5, 8)
    if not 2 <= len(program) <= 40:
        raise IndexerError("invalid address")
    if version == 0:
        if len(program) not in (20, 32) or const != _BECH32_CONST:
            raise IndexerError("invalid address")
    elif const != _BECH32M_CONST:
        raise IndexerError("invalid address")
    opcode = 0 if version == 0 else 0x50 + version
    return bytes([opcode, len(program)]) + program


def address_to_scripthash(addr: str) -> bytes:
    """Script hash of the output script an address pays to."""
    lowered = addr.lower()
    if any(lowered.startswith(hrp + "1") for hrp in _BECH32_HRPS):
        script = _segwit_script(addr)
    else:
        script = _base58_script(addr)
    return compute_script_hash(script)


def to_scripthash(script_type: str, script_str: str) -> bytes:
    """Script hash from an address, a hex script hash or a hex output script."""
    if script_type == "address":
        return address_to_scripthash(script_str)
    if script_type == "scripthash":
        value = _from_hex(script_str)
        if len(value) != 32:
            raise IndexerError("invalid hex")
        return value
    if script_type == "scriptpubkey":
        return compute_script_hash(_from_hex(script_str))
    raise IndexerError("Invalid script type")


def scripthashes_from_file(path) -> list[bytes]:
    """Read ``type,value`` lines into script hashes."""
    try:
        handle = open(path, encoding="utf-8", newline="")
    except OSError as exc:
        raise IndexerError("cannot open precache scripthash file") from exc
    result: list[bytes] = []
    with handle:
        try:
            for line in handle:
                if line.endswith("\n"):
                    line = line[:-1]
                    if line.endswith("\r"):
                        line = line[:-1]
                cols = line.split(",")
                if len(cols) < 2:
                    raise IndexerError(f"malformed scripthash line: {line!r}")
                result.append(to_scripthash(cols[0], cols[1]))
        except (OSError, UnicodeDecodeError) as exc:
            raise IndexerError("cannot read scripthash line") from exc
    return result


def precache(query, scripthashes: Iterable[bytes]) -> None:
    """Compute (and so cache) the stats of every script hash, in parallel."""
    scripthashes = list(scripthashes)
    total = len(scripthashes)
    log.info("Pre-caching stats and utxo set for %d scripthashes", total)

    def run(item: tuple[int, bytes]) -> None:
        index, scripthash = item
        if index % 5 == 0:
            log.info("running pre-cache for scripthash %d/%d", index + 1, total)
        query.stats(scripthash)

    with ThreadPoolExecutor(
        max_workers=PRECACHE_THREADS, thread_name_prefix="precache"
    ) as pool:
        for _ in pool.map(run, enumerate(scripthashes)):
            pass