"""Confirmed history, stats, UTXO and spend queries over the index."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, replace
from typing import Iterable, Iterator

from .cache import (
    BestChain,
    BlockId,
    ScriptStats,
    StatsCacheRow,
    UtxoCacheRow,
    from_utxo_cache,
)
from .db import DB, DBFlush
from .errors import TooPopular
from .rows import (
    CODE_HISTORY,
    FundingInfo,
    OutPoint,
    TxConfRow,
    TxEdgeRow,
    TxHistoryRow,
    addr_search_filter,
)

# Below this many history entries it is cheaper to rescan than to cache.
MIN_HISTORY_ITEMS_TO_CACHE = 100


@dataclass(frozen=True)
class Utxo:
    """An unspent output paying to a script."""

    txid: bytes
    vout: int
    value: int
    confirmed: BlockId | None = None

    @property
    def outpoint(self) -> OutPoint:
        return OutPoint(self.txid, self.vout)


@dataclass(frozen=True)
class SpendingInput:
    """The input that spends an output."""

    txid: bytes
    vin: int
    confirmed: BlockId | None = None


def _unique(items: Iterable[bytes]) -> Iterator[bytes]:
    seen: set[bytes] = set()
    for item in items:
        if item not in seen:
            seen.add(item)
            yield item


class HistoryQuery:
    """Read-side queries over the transaction store and the history index."""

    def __init__(
        self,
        txstore_db: DB,
        history_db: DB,
        cache_db: DB,
        chain: BestChain,
        metrics=None,
    ) -> None:
        self.txstore_db = txstore_db
        self.history_db = history_db
        self.cache_db = cache_db
        self.chain = chain
        self._duration = (
            metrics.histogram_vec(
                "query_duration", "Index query duration (in seconds)", ["name"]
            )
            if metrics is not None
            else None
        )

    def _timer(self, name: str):
        if self._duration is None:
            return contextlib.nullcontext()
        return self._duration.with_label_values(name).timer()

    def _history_scan(self, scripthash: bytes, start_height: int) -> Iterator[TxHistoryRow]:
        rows = self.history_db.iter_scan_from(
            TxHistoryRow.filter(CODE_HISTORY, scripthash),
            TxHistoryRow.prefix_height(CODE_HISTORY, scripthash, start_height),
        )
        return (TxHistoryRow.from_row(row) for row in rows)

    def tx_confirming_block(self, txid: bytes) -> BlockId | None:
        """The best-chain block confirming ``txid``, or None if unconfirmed or orphaned."""
        with self._timer("tx_confirming_block"):
            for row in self.txstore_db.iter_scan(TxConfRow.filter(txid)):
                conf = TxConfRow.from_row(row)
                blockid = self.chain.blockid_by_hash(conf.blockhash)
                if blockid is not None:
                    return blockid
            return None

    def history_txids(self, scripthash: bytes, limit: int) -> list[tuple[bytes, BlockId]]:
        """Confirmed txids touching a script, oldest first, at most ``limit``."""
        with self._timer("history_txids"):
            result: list[tuple[bytes, BlockId]] = []
            if limit <= 0:
                return result
            txids = _unique(row.get_txid() for row in self._history_scan(scripthash, 0))
            for txid in txids:
                blockid = self.tx_confirming_block(txid)
                if blockid is None:
                    continue
                result.append((txid, blockid))
                if len(result) >= limit:
                    break
            return result

    def stats(self, scripthash: bytes) -> ScriptStats:
        """Counts and sums of a script's confirmed history, cached when large."""
        with self._timer("stats"):
            cached = None
            raw = self.cache_db.get(StatsCacheRow.key(scripthash))
            if raw is not None:
                old_stats, blockhash = StatsCacheRow.decode(raw)
                blockid = self.chain.blockid_by_hash(blockhash)
                if blockid is not None:
                    cached = (old_stats, blockid.height)

            if cached is None:
                newstats, lastblock = self._stats_delta(scripthash, ScriptStats(), 0)
            else:
                old_stats, height = cached
                newstats, lastblock = self._stats_delta(scripthash, old_stats, height + 1)

            if lastblock is not None and (
                newstats.funded_txo_count + newstats.spent_txo_count
                > MIN_HISTORY_ITEMS_TO_CACHE
            ):
                self.cache_db.write(
                    [StatsCacheRow(scripthash, newstats, lastblock).into_row()],
                    DBFlush.ENABLE,
                )
            return newstats

    def _stats_delta(
        self, scripthash: bytes, init_stats: ScriptStats, start_height: int
    ) -> tuple[ScriptStats, bytes | None]:
        with self._timer("stats_delta"):
            stats = replace(init_stats)
            seen_txids: set[bytes] = set()
            lastblock: bytes | None = None
            for history in self._history_scan(scripthash, start_height):
                txid = history.get_txid()
                blockid = self.tx_confirming_block(txid)
                # Entries from a re-orged block later confirmed at another height are dropped.
                if blockid is None or blockid.height != history.confirmed_height:
                    continue
                if lastblock != blockid.hash:
                    seen_txids.clear()
                if txid not in seen_txids:
                    seen_txids.add(txid)
                    stats.tx_count += 1
                info = history.txinfo
                if isinstance(info, FundingInfo):
                    stats.funded_txo_count += 1
                    stats.funded_txo_sum += info.value
                else:
                    stats.spent_txo_count += 1
                    stats.spent_txo_sum += info.value
                lastblock = blockid.hash
            return stats, lastblock

    def utxo(self, scripthash: bytes, limit: int) -> list[Utxo]:
        """Confirmed unspent outputs of a script; raises TooPopular above ``limit``."""
        with self._timer("utxo"):
            cached = None
            raw = self.cache_db.get(UtxoCacheRow.key(scripthash))
            if raw is not None:
                utxos_cache, blockhash = UtxoCacheRow.decode(raw)
                blockid = self.chain.blockid_by_hash(blockhash)
                if blockid is not None:
                    cached = (from_utxo_cache(utxos_cache, self.chain), blockid.height)
            had_cache = cached is not None

            if cached is None:
                newutxos, lastblock, processed = self._utxo_delta(scripthash, {}, 0, limit)
            else:
                oldutxos, height = cached
                newutxos, lastblock, processed = self._utxo_delta(
                    scripthash, oldutxos, height + 1, limit
                )

            if lastblock is not None and (had_cache or processed > MIN_HISTORY_ITEMS_TO_CACHE):
                self.cache_db.write(
                    [UtxoCacheRow(scripthash, newutxos, lastblock).into_row()],
                    DBFlush.ENABLE,
                )

            return [
                Utxo(outpoint.txid, outpoint.vout, value, blockid)
                for outpoint, (blockid, value) in newutxos.items()
            ]

    def _utxo_delta(self, scripthash: bytes, init_utxos: dict, start_height: int, limit: int):
        with self._timer("utxo_delta"):
            utxos = dict(init_utxos)
            processed = 0
            lastblock: bytes | None = None
            for history in self._history_scan(scripthash, start_height):
                blockid = self.tx_confirming_block(history.get_txid())
                if blockid is None:
                    continue
                processed += 1
                lastblock = blockid.hash
                info = history.txinfo
                if isinstance(info, FundingInfo):
                    utxos[history.get_funded_outpoint()] = (blockid, info.value)
                else:
                    utxos.pop(history.get_funded_outpoint(), None)
                if len(utxos) > limit:
                    raise TooPopular()
            return utxos, lastblock, processed

    def lookup_spend(self, outpoint: OutPoint) -> SpendingInput | None:
        """The confirmed input spending ``outpoint``, if any."""
        with self._timer("lookup_spend"):
            for row in self.history_db.iter_scan(TxEdgeRow.filter(outpoint)):
                edge = TxEdgeRow.from_row(row)
                blockid = self.tx_confirming_block(edge.spending_txid)
                if blockid is not None:
                    return SpendingInput(edge.spending_txid, edge.spending_vin, blockid)
            return None

    def address_search(self, prefix: str, limit: int) -> list[str]:
        """Indexed addresses starting with ``prefix``, in order, at most ``limit``."""
        with self._timer("address_search"):
            result: list[str] = []
            if limit <= 0:
                return result
            for row in self.history_db.iter_scan(addr_search_filter(prefix)):
                result.append(row.key[1:].decode())
                if len(result) >= limit:
                    break
            return result