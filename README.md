# txindex

`txindex` is a library for storing and querying a transaction index over a
blockchain. Rows live in an ordered key-value store (SQLite underneath), laid
out so that a script's history, the spend edges of outputs and cached
per-script statistics can be read back with prefix scans. The library also
splits raw `blk*.dat` files into blocks and keeps an asset-metadata registry
in sync with a directory of JSON files.

It uses only the standard library.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `txindex.db`: `DB`, an ordered key-value store kept in a directory. It has
  prefix scans (`iter_scan`, `iter_scan_from`, `iter_scan_reverse`), batched
  writes sorted by key (`write`, with `DBFlush.ENABLE` or `DBFlush.DISABLE`),
  point lookups (`get`, `multi_get`), `put`, `put_sync`, `flush`,
  `full_compaction` and `enable_auto_compaction`. `DB.open` records a schema
  version under the key `V`. When the stored version does not match, it raises
  `IndexerError("Incompatible database found. Please reindex.")`. `DB` can be
  used as a context manager.
- `txindex.rows`: the row layouts. `TxHistoryRow` holds a `FundingInfo` or a
  `SpendingInfo` under `H{scripthash}{height}` with big-endian integers.
  `TxEdgeRow` is keyed `S...`, `TxConfRow` `C...`, `TxRow` `T...` and
  `TxOutRow` `O...`. `BlockRow` covers header `B`, txids `X`, metadata `M`
  and done `D`. The module also has `OutPoint`, `compute_script_hash` (SHA256
  of the script), `addr_search_row` and `addr_search_filter`.
- `txindex.cache`: `BlockId` and `BestChain` (blocks by height and by hash).
  Adding a block at an existing height replaces that block and every block
  above it. The module also has `ScriptStats`, the cache rows `StatsCacheRow`
  (`A...`) and `UtxoCacheRow` (`U...`), and `make_utxo_cache` /
  `from_utxo_cache`.
- `txindex.history`: `HistoryQuery` answers these queries from three `DB`
  stores (txstore, history and cache) and a `BestChain`:
  - `tx_confirming_block`
  - `history_txids`
  - `stats`
  - `utxo`
  - `lookup_spend`
  - `address_search`

  `stats` and `utxo` write their results to the cache store once a script has
  more than 100 history entries. After that, only newer blocks are scanned.
  `utxo` raises `TooPopular` when the set of unspent outputs grows past
  `limit`. If a `Metrics` object is passed, query durations are recorded in
  the `query_duration` histogram.
- `txindex.fetch`:
  - `parse_blocks(blob, magic)` splits a `blk*.dat` file into
    `(raw_block_bytes, size)` pairs. It skips bytes until it finds the magic
    number, and it skips entries that have a size but no body.
  - `blkfiles_reader(paths)` and `blkfiles_parser(blobs, magic)` run those
    steps on background threads.
  - The `Fetcher` class runs one step of the pipeline. It hands over one item
    at a time, and it raises a producer's exception to the consumer.
  - `FetchFrom` names the block sources.
- `txindex.precache`: `scripthashes_from_file` reads `type,value` lines.
  - The type is `address`, `scripthash` (hex) or `scriptpubkey` (hex).
  - Addresses can be base58 P2PKH or P2SH (mainnet and testnet versions), or
    bech32/bech32m segwit with the `bc`, `tb` or `bcrt` prefixes.
  - `precache(query, scripthashes)` calls `query.stats` for each hash on 16
    threads, which fills the stats cache.
- `txindex.registry`: `AssetRegistry` loads `<dir>/<xx>/<asset id>.json` files.
  - `fs_sync` re-reads only the files whose modification time has changed.
  - `spawn_sync(interval)` runs `fs_sync` on a background thread until `stop`
    is called.
  - `list(start_index, limit, sorting)` returns the total number of assets and
    one page of them, sorted by an `AssetSorting`. The sorting can be built
    with `AssetSorting.from_query_params` from `sort_field`
    (`name`/`domain`/`ticker`) and `sort_dir` (`asc`/`desc`).
- `txindex.metrics`: `Metrics` registers `Counter`, `Gauge` and `Histogram`
  metrics and their labelled `MetricVec` families. `gather()` renders them in
  Prometheus text format. `start()` serves them over HTTP at the given
  `(host, port)` and exports the process's CPU time, resident memory and open
  file descriptors every 5 seconds; it returns the running server.
- `txindex.errors`: `IndexerError` and its subclasses `ConnectionFailure`,
  `Interrupted` and `TooPopular`.

## Example

```python
from txindex.cache import BestChain, BlockId
from txindex.db import DB, DBFlush
from txindex.history import HistoryQuery
from txindex.rows import FundingInfo, TxConfRow, TxHistoryRow, compute_script_hash

txstore = DB.open("/tmp/idx/txstore")
history = DB.open("/tmp/idx/history")
cache = DB.open("/tmp/idx/cache")

blockhash = bytes(32)
txid = bytes([1]) * 32
script = bytes.fromhex("0014" + "00" * 20)

chain = BestChain()
chain.add(BlockId(0, blockhash))

txstore.write([TxConfRow(txid, blockhash).into_row()], DBFlush.ENABLE)
history.write(
    [TxHistoryRow.new(script, 0, FundingInfo(txid, 0, 5000)).into_row()],
    DBFlush.ENABLE,
)

query = HistoryQuery(txstore, history, cache, chain)
scripthash = compute_script_hash(script)
print(query.stats(scripthash))           # tx_count=1, funded_txo_sum=5000, ...
print(query.utxo(scripthash, limit=100))  # one Utxo, confirmed at height 0

for db in (txstore, history, cache):
    db.close()
```

## What it does not do

The package has no command-line program and no server beyond the metrics
endpoint. It does not talk to a node, and it does not decode blocks or
transactions. The caller produces the rows: confirmation markers, history
entries, spend edges and serialized outputs. `parse_blocks` returns raw block
bytes, not parsed blocks. The package does not track unconfirmed (mempool)
transactions, estimate fees, or serve a REST or Electrum API.