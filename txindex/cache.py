"""Best-chain lookups and the per-script stats and UTXO cache rows."""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass
from typing import Mapping, Protocol

from .db import DBRow
from .errors import IndexerError
from .rows import HASH_LEN, OutPoint

_U32_MAX = 0xFFFFFFFF
_U64_MAX = 0xFFFFFFFFFFFFFFFF

_STATS = struct.Struct("<5Q")
_COUNT = struct.Struct("<Q")
_UTXO_ENTRY = struct.Struct("<32sIIQ")


def _hash32(value) -> bytes:
    value = bytes(value)
    if len(value) != HASH_LEN:
        raise ValueError(f"expected a {HASH_LEN}-byte hash, got {len(value)} bytes")
    return value


@dataclass(frozen=True)
class BlockId:
    """A block's position in the best chain."""

    height: int
    hash: bytes
    time: int = 0

    def __post_init__(self) -> None:
        if self.height < 0:
            raise ValueError(f"negative height: {self.height}")
        object.__setattr__(self, "hash", _hash32(self.hash))


class _ChainLookup(Protocol):
    def blockid_by_height(self, height: int) -> BlockId | None: ...


class BestChain:
    """The blocks of the current best chain, by height and by hash."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_height: list[BlockId] = []
        self._by_hash: dict[bytes, BlockId] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_height)

    def add(self, blockid: BlockId) -> None:
        """Append a block; a block at an existing height replaces it and everything above."""
        with self._lock:
            if blockid.height > len(self._by_height):
                raise ValueError(
                    f"cannot add block at height {blockid.height}: "
                    f"chain only has {len(self._by_height)} blocks"
                )
            for stale in self._by_height[blockid.height:]:
                self._by_hash.pop(stale.hash, None)
            del self._by_height[blockid.height:]
            self._by_height.append(blockid)
            self._by_hash[blockid.hash] = blockid

    def blockid_by_hash(self, blockhash) -> BlockId | None:
        """The block with this hash, or None if it is not on the best chain."""
        with self._lock:
            return self._by_hash.get(bytes(blockhash))

    def blockid_by_height(self, height: int) -> BlockId | None:
        with self._lock:
            if 0 <= height < len(self._by_height):
                return self._by_height[height]
            return None


@dataclass
class ScriptStats:
    """Transaction and output counts and sums for one script."""

    tx_count: int = 0
    funded_txo_count: int = 0
    spent_txo_count: int = 0
    funded_txo_sum: int = 0
    spent_txo_sum: int = 0

    def to_bytes(self) -> bytes:
        values = (
            self.tx_count,
            self.funded_txo_count,
            self.spent_txo_count,
            self.funded_txo_sum,
            self.spent_txo_sum,
        )
        for value in values:
            if not 0 <= value <= _U64_MAX:
                raise ValueError(f"stats value out of range: {value}")
        return _STATS.pack(*values)

    @classmethod
    def from_bytes(cls, data) -> "ScriptStats":
        data = bytes(data)
        if len(data) != _STATS.size:
            raise ValueError("malformed script stats")
        return cls(*_STATS.unpack(data))


@dataclass(frozen=True)
class StatsCacheRow:
    """Cached stats of a script and the block they are up to date with."""

    scripthash: bytes
    stats: ScriptStats
    blockhash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "scripthash", _hash32(self.scripthash))
        object.__setattr__(self, "blockhash", _hash32(self.blockhash))

    @staticmethod
    def key(scripthash) -> bytes:
        return b"A" + bytes(scripthash)

    def into_row(self) -> DBRow:
        return DBRow(self.key(self.scripthash), self.stats.to_bytes() + self.blockhash)

    @staticmethod
    def decode(value) -> tuple[ScriptStats, bytes]:
        """Split a cached value into the stats and the block hash."""
        value = bytes(value)
        if len(value) != _STATS.size + HASH_LEN:
            raise ValueError("malformed stats cache value")
        return ScriptStats.from_bytes(value[:_STATS.size]), value[_STATS.size:]


UtxoMap = dict  # OutPoint -> (BlockId, value)
CachedUtxoMap = dict  # (txid, vout) -> (height, value)


def make_utxo_cache(utxos: Mapping[OutPoint, tuple[BlockId, int]]) -> CachedUtxoMap:
    """Keep only the block height of each UTXO; the rest comes from the headers."""
    return {
        (outpoint.txid, outpoint.vout): (blockid.height, value)
        for outpoint, (blockid, value) in utxos.items()
    }


def from_utxo_cache(utxos_cache: Mapping, chain: _ChainLookup) -> UtxoMap:
    """Rebuild full block ids for cached UTXOs from the best chain."""
    result: UtxoMap = {}
    for (txid, vout), (height, value) in utxos_cache.items():
        blockid = chain.blockid_by_height(height)
        if blockid is None:
            raise IndexerError("missing blockheader for valid utxo cache entry")
        result[OutPoint(txid, vout)] = (blockid, value)
    return result


@dataclass(frozen=True)
class UtxoCacheRow:
    """Cached UTXO set of a script and the block it is up to date with."""

    scripthash: bytes
    utxos: Mapping[OutPoint, tuple[BlockId, int]]
    blockhash: bytes

    def __post_init__(self) -> None:
        object.__setattr__(self, "scripthash", _hash32(self.scripthash))
        object.__setattr__(self, "blockhash", _hash32(self.blockhash))

    @staticmethod
    def key(scripthash) -> bytes:
        return b"U" + bytes(scripthash)

    def into_row(self) -> DBRow:
        cache = make_utxo_cache(self.utxos)
        parts = [_COUNT.pack(len(cache))]
        for (txid, vout), (height, value) in sorted(cache.items()):
            if not 0 <= height <= _U32_MAX:
                raise ValueError(f"height out of range: {height}")
            if not 0 <= value <= _U64_MAX:
                raise ValueError(f"value out of range: {value}")
            parts.append(_UTXO_ENTRY.pack(txid, vout, height, value))
        parts.append(self.blockhash)
        return DBRow(self.key(self.scripthash), b"".join(parts))

    @staticmethod
    def decode(value) -> tuple[CachedUtxoMap, bytes]:
        """Split a cached value into the cached UTXO map and the block hash."""
        value = bytes(value)
        if len(value) < _COUNT.size + HASH_LEN:
            raise ValueError("utxo cache value too short")
        (count,) = _COUNT.unpack_from(value)
        body = value[_COUNT.size:-HASH_LEN]
        if len(body) != count * _UTXO_ENTRY.size:
            raise ValueError("utxo cache value length does not match its count")
        cache: CachedUtxoMap = {
            (txid, vout): (height, amount)
            for txid, vout, height, amount in _UTXO_ENTRY.iter_unpack(body)
        }
        return cache, value[-HASH_LEN:]