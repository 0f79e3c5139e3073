import json
import os

import pytest

from txindex.errors import IndexerError
from txindex.registry import (
    AssetMeta,
    AssetRegistry,
    AssetSortDir,
    AssetSortField,
    AssetSorting,
)

ID_A = "aa" * 32
ID_B = "bb" * 32
ID_C = "cc" * 32


def write_asset(root, asset_id, data):
    sub = root / asset_id[:2]
    sub.mkdir(exist_ok=True)
    path = sub / f"{asset_id}.json"
    path.write_text(json.dumps(data))
    return path


def test_meta_from_json_and_back():
    data = {"name": "Coin", "precision": 8, "ticker": "CN", "entity": {"domain": "example.com"}}
    meta = AssetMeta.from_json(data)
    assert meta.domain() == "example.com"
    assert meta.to_json() == data


def test_meta_to_json_omits_missing():
    assert AssetMeta(name="X", precision=0).to_json() == {"precision": 0, "name": "X"}


@pytest.mark.parametrize(
    "data",
    [{"precision": 1}, {"name": "x"}, {"name": "x", "precision": 256}, {"name": 3, "precision": 1}],
)
def test_meta_from_json_rejects(data):
    with pytest.raises(ValueError):
        AssetMeta.from_json(data)


def test_domain_missing():
    assert AssetMeta(name="x", precision=0, entity={"other": 1}).domain() is None


def test_sorting_defaults():
    sorting = AssetSorting.from_query_params({})
    assert (sorting.field, sorting.direction) == (AssetSortField.TICKER, AssetSortDir.ASCENDING)


def test_sorting_from_params():
    sorting = AssetSorting.from_query_params({"sort_field": "name", "sort_dir": "desc"})
    assert (sorting.field, sorting.direction) == (AssetSortField.NAME, AssetSortDir.DESCENDING)


@pytest.mark.parametrize(
    "query, message",
    [({"sort_field": "size"}, "invalid sort field"), ({"sort_dir": "up"}, "invalid sort direction")],
)
def test_sorting_invalid(query, message):
    with pytest.raises(IndexerError, match=message):
        AssetSorting.from_query_params(query)


def test_sort_by_name_case_insensitive_with_id_tiebreak():
    first_id = "01" * 31 + "02"
    second_id = "02" + "01" * 31
    entries = [
        (ID_A, AssetMeta(name="beta", precision=0)),
        (first_id, AssetMeta(name="Alpha", precision=0)),
        (second_id, AssetMeta(name="alpha", precision=0)),
    ]
    ordered = AssetSorting(AssetSortField.NAME, AssetSortDir.ASCENDING).sort(entries)
    assert [asset_id for asset_id, _ in ordered] == [second_id, first_id, ID_A]


def test_sort_by_ticker_missing_first_and_descending_reverses():
    entries = [
        (ID_A, AssetMeta(name="a", precision=0, ticker="zz")),
        (ID_B, AssetMeta(name="b", precision=0)),
        (ID_C, AssetMeta(name="c", precision=0, ticker="AA")),
    ]
    asc = AssetSorting(AssetSortField.TICKER, AssetSortDir.ASCENDING).sort(entries)
    desc = AssetSorting(AssetSortField.TICKER, AssetSortDir.DESCENDING).sort(entries)
    assert [i for i, _ in asc] == [ID_B, ID_C, ID_A]
    assert [i for i, _ in desc] == [ID_A, ID_C, ID_B]


def test_sort_by_domain():
    entries = [
        (ID_A, AssetMeta(name="a", precision=0, entity={"domain": "b.example.com"})),
        (ID_B, AssetMeta(name="b", precision=0, entity={"domain": "a.example.com"})),
        (ID_C, AssetMeta(name="c", precision=0)),
    ]
    ordered = AssetSorting(AssetSortField.DOMAIN, AssetSortDir.ASCENDING).sort(entries)
    assert [i for i, _ in ordered] == [ID_C, ID_B, ID_A]


def test_fs_sync_loads_and_lists(tmp_path):
    write_asset(tmp_path, ID_A, {"name": "A", "precision": 2, "ticker": "AAA"})
    write_asset(tmp_path, ID_B, {"name": "B", "precision": 0, "ticker": "BBB"})
    (tmp_path / ID_A[:2] / "notes.txt").write_text("ignored")
    (tmp_path / "long").mkdir()
    (tmp_path / "long" / f"{ID_C}.json").write_text(json.dumps({"name": "C", "precision": 0}))
    registry = AssetRegistry(tmp_path)
    registry.fs_sync()
    assert registry.get(ID_A).name == "A"
    assert registry.get(ID_C) is None
    total, page = registry.list(1, 5, AssetSorting())
    assert total == 2
    assert [i for i, _ in page] == [ID_B]


def test_fs_sync_invalid_filename(tmp_path):
    sub = tmp_path / "zz"
    sub.mkdir()
    (sub / "nothex.json").write_text("{}")
    with pytest.raises(IndexerError, match="invalid filename"):
        AssetRegistry(tmp_path).fs_sync()


def test_fs_sync_invalid_json(tmp_path):
    sub = tmp_path / ID_A[:2]
    sub.mkdir()
    (sub / f"{ID_A}.json").write_text("{not json")
    with pytest.raises(IndexerError, match="failed parsing file"):
        AssetRegistry(tmp_path).fs_sync()


def test_fs_sync_missing_dir(tmp_path):
    with pytest.raises(IndexerError, match="failed reading asset dir"):
        AssetRegistry(tmp_path / "absent").fs_sync()


def test_fs_sync_reloads_only_on_mtime_change(tmp_path):
    path = write_asset(tmp_path, ID_A, {"name": "old", "precision": 0})
    registry = AssetRegistry(tmp_path)
    registry.fs_sync()
    stamp = path.stat().st_mtime_ns
    path.write_text(json.dumps({"name": "new", "precision": 0}))
    os.utime(path, ns=(stamp, stamp))
    registry.fs_sync()
    assert registry.get(ID_A).name == "old"
    os.utime(path, ns=(stamp + 1_000_000_000, stamp + 1_000_000_000))
    registry.fs_sync()
    assert registry.get(ID_A).name == "new"


def test_spawn_sync_loads_in_background(tmp_path):
    write_asset(tmp_path, ID_A, {"name": "A", "precision": 0})
    registry = AssetRegistry(tmp_path)
    thread = registry.spawn_sync(interval=0.01)
    try:
        for _ in range(500):
            if registry.get(ID_A) is not None:
                break
            thread.join(0.01)
        assert registry.get(ID_A).name == "A"
    finally:
        registry.stop()
        thread.join(5)
    assert not thread.is_alive()