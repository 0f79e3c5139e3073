import pytest

from txindex.cache import (
    BestChain,
    BlockId,
    ScriptStats,
    StatsCacheRow,
    UtxoCacheRow,
    from_utxo_cache,
    make_utxo_cache,
)
from txindex.errors import IndexerError
from txindex.rows import OutPoint


def h(n: int) -> bytes:
    return bytes([n]) * 32


def chain_of(count: int) -> BestChain:
    chain = BestChain()
    for height in range(count):
        chain.add(BlockId(height, h(height + 1), 1000 + height))
    return chain


def test_blockid_rejects_short_hash():
    with pytest.raises(ValueError):
        BlockId(0, b"\x00" * 31)


def test_best_chain_lookups():
    chain = chain_of(3)
    assert len(chain) == 3
    assert chain.blockid_by_height(1) == BlockId(1, h(2), 1001)
    assert chain.blockid_by_hash(h(3)).height == 2
    assert chain.blockid_by_height(3) is None
    assert chain.blockid_by_hash(h(9)) is None


def test_best_chain_reorg_drops_stale_blocks():
    chain = chain_of(3)
    chain.add(BlockId(1, h(7)))
    assert len(chain) == 2
    assert chain.blockid_by_hash(h(2)) is None
    assert chain.blockid_by_hash(h(3)) is None
    assert chain.blockid_by_height(1).hash == h(7)
    assert chain.blockid_by_height(0).hash == h(1)


def test_best_chain_rejects_gap():
    chain = chain_of(2)
    with pytest.raises(ValueError):
        chain.add(BlockId(5, h(5)))


def test_script_stats_round_trip():
    stats = ScriptStats(3, 4, 2, 1500, 700)
    data = stats.to_bytes()
    assert len(data) == 40
    assert ScriptStats.from_bytes(data) == stats


def test_script_stats_default_is_zero():
    assert ScriptStats().to_bytes() == bytes(40)


def test_script_stats_rejects_bad_length():
    with pytest.raises(ValueError):
        ScriptStats.from_bytes(b"\x00" * 39)


def test_stats_cache_row_key_and_round_trip():
    scripthash = h(0xAB)
    stats = ScriptStats(1, 2, 1, 50, 20)
    row = StatsCacheRow(scripthash, stats, h(4)).into_row()
    assert row.key == b"A" + scripthash
    assert row.key == StatsCacheRow.key(scripthash)
    decoded_stats, blockhash = StatsCacheRow.decode(row.value)
    assert decoded_stats == stats
    assert blockhash == h(4)


def test_stats_cache_decode_rejects_truncated():
    row = StatsCacheRow(h(1), ScriptStats(), h(2)).into_row()
    with pytest.raises(ValueError):
        StatsCacheRow.decode(row.value[:-1])


def test_make_utxo_cache_keeps_height_only():
    utxos = {
        OutPoint(h(10), 0): (BlockId(4, h(5), 99), 1000),
        OutPoint(h(11), 3): (BlockId(2, h(3), 98), 250),
    }
    cache = make_utxo_cache(utxos)
    assert cache == {(h(10), 0): (4, 1000), (h(11), 3): (2, 250)}


def test_from_utxo_cache_restores_blockids():
    chain = chain_of(5)
    utxos = {
        OutPoint(h(10), 0): (chain.blockid_by_height(4), 1000),
        OutPoint(h(11), 3): (chain.blockid_by_height(2), 250),
    }
    assert from_utxo_cache(make_utxo_cache(utxos), chain) == utxos


def test_from_utxo_cache_missing_header():
    chain = chain_of(2)
    with pytest.raises(IndexerError):
        from_utxo_cache({(h(10), 0): (7, 1)}, chain)


def test_utxo_cache_row_round_trip():
    chain = chain_of(5)
    scripthash = h(0xCD)
    utxos = {
        OutPoint(h(10), 0): (chain.blockid_by_height(4), 1000),
        OutPoint(h(11), 3): (chain.blockid_by_height(2), 250),
    }
    row = UtxoCacheRow(scripthash, utxos, h(5)).into_row()
    assert row.key == b"U" + scripthash
    assert row.key == UtxoCacheRow.key(scripthash)
    cache, blockhash = UtxoCacheRow.decode(row.value)
    assert blockhash == h(5)
    assert cache == make_utxo_cache(utxos)
    assert from_utxo_cache(cache, chain) == utxos


def test_utxo_cache_row_empty():
    row = UtxoCacheRow(h(1), {}, h(2)).into_row()
    assert row.value == bytes(8) + h(2)
    cache, blockhash = UtxoCacheRow.decode(row.value)
    assert cache == {}
    assert blockhash == h(2)


def test_utxo_cache_decode_rejects_count_mismatch():
    utxos = {OutPoint(h(10), 0): (BlockId(1, h(2)), 5)}
    row = UtxoCacheRow(h(1), utxos, h(2)).into_row()
    with pytest.raises(ValueError):
        UtxoCacheRow.decode(row.value[:-33] + h(2))


def test_utxo_cache_row_is_deterministic():
    first = {
        OutPoint(h(11), 1): (BlockId(1, h(2)), 5),
        OutPoint(h(10), 0): (BlockId(0, h(1)), 6),
    }
    second = dict(reversed(list(first.items())))
    assert (
        UtxoCacheRow(h(1), first, h(2)).into_row()
        == UtxoCacheRow(h(1), second, h(2)).into_row()
    )