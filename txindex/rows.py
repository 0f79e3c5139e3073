"""Key/value row layouts of the transaction store and the history index."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Iterable, Union

from .db import DBRow

HASH_LEN = 32

CODE_HISTORY = ord("H")
CODE_ASSET_HISTORY = ord("I")

_FUNDING_TAG = 0
_SPENDING_TAG = 1

_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFFFFFF
_U64_MAX = 0xFFFFFFFFFFFFFFFF


def _full_hash(value) -> bytes:
    value = bytes(value)
    if len(value) != HASH_LEN:
        raise ValueError(f"expected a {HASH_LEN}-byte hash, got {len(value)} bytes")
    return value


def _check_range(name: str, value: int, maximum: int) -> None:
    if not 0 <= value <= maximum:
        raise ValueError(f"{name} out of range: {value}")


def compute_script_hash(script) -> bytes:
    """SHA256 of a serialized script, as used to key script history."""
    return hashlib.sha256(bytes(script)).digest()


@dataclass(frozen=True, order=True)
class OutPoint:
    """A reference to one output of a transaction."""

    txid: bytes
    vout: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        _check_range("vout", self.vout, _U32_MAX)


@dataclass(frozen=True)
class FundingInfo:
    """An output paying to a script."""

    txid: bytes
    vout: int
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        _check_range("vout", self.vout, _U16_MAX)
        _check_range("value", self.value, _U64_MAX)

    def get_funded_outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)

    def _pack(self) -> bytes:
        return self.txid + struct.pack(">HQ", self.vout, self.value)


@dataclass(frozen=True)
class SpendingInfo:
    """An input spending an output that paid to a script."""

    txid: bytes
    vin: int
    prev_txid: bytes
    prev_vout: int
    value: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        object.__setattr__(self, "prev_txid", _full_hash(self.prev_txid))
        _check_range("vin", self.vin, _U16_MAX)
        _check_range("prev_vout", self.prev_vout, _U16_MAX)
        _check_range("value", self.value, _U64_MAX)

    def get_funded_outpoint(self) -> OutPoint:
        return OutPoint(self.prev_txid, self.prev_vout)

    def _pack(self) -> bytes:
        return (
            self.txid
            + struct.pack(">H", self.vin)
            + self.prev_txid
            + struct.pack(">HQ", self.prev_vout, self.value)
        )


TxHistoryInfo = Union[FundingInfo, SpendingInfo]

_FUNDING_LEN = HASH_LEN + 2 + 8
_SPENDING_LEN = HASH_LEN + 2 + HASH_LEN + 2 + 8
_HISTORY_HEAD = struct.Struct(">B32sII")


@dataclass(frozen=True)
class TxHistoryRow:
    """A history entry: ``{code}{hash}{height}{info}`` with big-endian integers."""

    code: int
    hash: bytes
    confirmed_height: int
    txinfo: TxHistoryInfo

    def __post_init__(self) -> None:
        _check_range("code", self.code, 0xFF)
        object.__setattr__(self, "hash", _full_hash(self.hash))
        _check_range("confirmed_height", self.confirmed_height, _U32_MAX)

    @classmethod
    def new(cls, script, confirmed_height: int, txinfo: TxHistoryInfo) -> "TxHistoryRow":
        return cls(CODE_HISTORY, compute_script_hash(script), confirmed_height, txinfo)

    @staticmethod
    def filter(code: int, hash_prefix) -> bytes:
        return bytes([code]) + bytes(hash_prefix)

    @staticmethod
    def prefix_end(code: int, hash) -> bytes:
        return struct.pack(">B32sI", code, _full_hash(hash), _U32_MAX)

    @staticmethod
    def prefix_height(code: int, hash, height: int) -> bytes:
        _check_range("height", height, _U32_MAX)
        return struct.pack(">B32sI", code, _full_hash(hash), height)

    def into_row(self) -> DBRow:
        tag = _FUNDING_TAG if isinstance(self.txinfo, FundingInfo) else _SPENDING_TAG
        key = _HISTORY_HEAD.pack(self.code, self.hash, self.confirmed_height, tag)
        return DBRow(key + self.txinfo._pack(), b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxHistoryRow":
        key = bytes(row.key)
        if len(key) < _HISTORY_HEAD.size:
            raise ValueError("history key too short")
        code, hash_, height, tag = _HISTORY_HEAD.unpack_from(key)
        body = key[_HISTORY_HEAD.size:]
        info: TxHistoryInfo
        if tag == _FUNDING_TAG:
            if len(body) != _FUNDING_LEN:
                raise ValueError("malformed funding history entry")
            vout, value = struct.unpack_from(">HQ", body, HASH_LEN)
            info = FundingInfo(body[:HASH_LEN], vout, value)
        elif tag == _SPENDING_TAG:
            if len(body) != _SPENDING_LEN:
                raise ValueError("malformed spending history entry")
            (vin,) = struct.unpack_from(">H", body, HASH_LEN)
            prev_start = HASH_LEN + 2
            prev_txid = body[prev_start:prev_start + HASH_LEN]
            prev_vout, value = struct.unpack_from(">HQ", body, prev_start + HASH_LEN)
            info = SpendingInfo(body[:HASH_LEN], vin, prev_txid, prev_vout, value)
        else:
            raise ValueError(f"unknown history entry variant {tag}")
        return cls(code, hash_, height, info)

    def get_txid(self) -> bytes:
        return self.txinfo.txid

    def get_funded_outpoint(self) -> OutPoint:
        return self.txinfo.get_funded_outpoint()


_EDGE = struct.Struct("<B32sH32sH")


@dataclass(frozen=True)
class TxEdgeRow:
    """A spend edge: ``S{funding txid}{vout}{spending txid}{vin}``."""

    funding_txid: bytes
    funding_vout: int
    spending_txid: bytes
    spending_vin: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "funding_txid", _full_hash(self.funding_txid))
        object.__setattr__(self, "spending_txid", _full_hash(self.spending_txid))
        _check_range("funding_vout", self.funding_vout, _U16_MAX)
        _check_range("spending_vin", self.spending_vin, _U16_MAX)

    @staticmethod
    def filter(outpoint: OutPoint) -> bytes:
        return struct.pack("<B32sH", ord("S"), outpoint.txid, outpoint.vout & _U16_MAX)

    def into_row(self) -> DBRow:
        key = _EDGE.pack(
            ord("S"),
            self.funding_txid,
            self.funding_vout,
            self.spending_txid,
            self.spending_vin,
        )
        return DBRow(key, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxEdgeRow":
        key = bytes(row.key)
        if len(key) != _EDGE.size or key[0] != ord("S"):
            raise ValueError("malformed spend edge key")
        _, funding_txid, funding_vout, spending_txid, spending_vin = _EDGE.unpack(key)
        return cls(funding_txid, funding_vout, spending_txid, spending_vin)


@dataclass(frozen=True)
class TxConfRow:
    """A confirmation marker: ``C{txid}{blockhash}``."""

    txid: bytes
    blockhash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        object.__setattr__(self, "blockhash", _full_hash(self.blockhash))

    @staticmethod
    def filter(prefix) -> bytes:
        return b"C" + bytes(prefix)

    def into_row(self) -> DBRow:
        return DBRow(b"C" + self.txid + self.blockhash, b"")

    @classmethod
    def from_row(cls, row: DBRow) -> "TxConfRow":
        key = bytes(row.key)
        if len(key) != 1 + 2 * HASH_LEN or key[:1] != b"C":
            raise ValueError("malformed confirmation key")
        return cls(key[1:1 + HASH_LEN], key[1 + HASH_LEN:])


@dataclass(frozen=True)
class TxRow:
    """A raw transaction: ``T{txid}`` to the serialized transaction."""

    txid: bytes
    raw: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        object.__setattr__(self, "raw", bytes(self.raw))

    @staticmethod
    def key(prefix) -> bytes:
        return b"T" + bytes(prefix)

    def into_row(self) -> DBRow:
        return DBRow(self.key(self.txid), self.raw)


@dataclass(frozen=True)
class TxOutRow:
    """A serialized output: ``O{txid}{vout}``."""

    txid: bytes
    vout: int
    txout: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", _full_hash(self.txid))
        object.__setattr__(self, "txout", bytes(self.txout))
        object.__setattr__(self, "vout", self.vout & _U16_MAX)

    @staticmethod
    def key(outpoint: OutPoint) -> bytes:
        return struct.pack("<B32sH", ord("O"), outpoint.txid, outpoint.vout & _U16_MAX)

    def into_row(self) -> DBRow:
        key = struct.pack("<B32sH", ord("O"), self.txid, self.vout)
        return DBRow(key, self.txout)


@dataclass(frozen=True)
class BlockRow:
    """Per-block rows: header ``B``, txids ``X``, metadata ``M`` and done ``D``."""

    code: int
    hash: bytes
    value: bytes = b""

    def __post_init__(self) -> None:
        _check_range("code", self.code, 0xFF)
        object.__setattr__(self, "hash", _full_hash(self.hash))
        object.__setattr__(self, "value", bytes(self.value))

    @classmethod
    def new_header(cls, blockhash, header: bytes) -> "BlockRow":
        return cls(ord("B"), blockhash, header)

    @classmethod
    def new_txids(cls, blockhash, txids: Iterable[bytes]) -> "BlockRow":
        txids = [_full_hash(txid) for txid in txids]
        return cls(ord("X"), blockhash, struct.pack("<Q", len(txids)) + b"".join(txids))

    @classmethod
    def new_meta(cls, blockhash, meta: bytes) -> "BlockRow":
        return cls(ord("M"), blockhash, meta)

    @classmethod
    def new_done(cls, blockhash) -> "BlockRow":
        return cls(ord("D"), blockhash, b"")

    @staticmethod
    def header_filter() -> bytes:
        return b"B"

    @staticmethod
    def txids_key(blockhash) -> bytes:
        return b"X" + _full_hash(blockhash)

    @staticmethod
    def meta_key(blockhash) -> bytes:
        return b"M" + _full_hash(blockhash)

    @staticmethod
    def done_filter() -> bytes:
        return b"D"

    @staticmethod
    def decode_txids(value: bytes) -> list[bytes]:
        """Decode the value of a txids (``X``) row."""
        value = bytes(value)
        if len(value) < 8:
            raise ValueError("txids value too short")
        (count,) = struct.unpack_from("<Q", value)
        body = value[8:]
        if len(body) != count * HASH_LEN:
            raise ValueError("txids value length does not match its count")
        return [body[i:i + HASH_LEN] for i in range(0, len(body), HASH_LEN)]

    def into_row(self) -> DBRow:
        return DBRow(bytes([self.code]) + self.hash, self.value)

    @classmethod
    def from_row(cls, row: DBRow) -> "BlockRow":
        key = bytes(row.key)
        if len(key) != 1 + HASH_LEN:
            raise ValueError("malformed block key")
        return cls(key[0], key[1:], row.value)


def addr_search_row(address: str) -> DBRow:
    """The row that makes ``address`` findable by prefix search."""
    return DBRow(b"a" + address.encode(), b"")


def addr_search_filter(prefix: str) -> bytes:
    return b"a" + prefix.encode()