import pytest

from txindex.errors import IndexerError
from txindex.fetch import Fetcher, blkfiles_parser, blkfiles_reader, parse_blocks

MAGIC = 0xD9B4BEF9
MAGIC_BYTES = MAGIC.to_bytes(4, "little")


def frame(body: bytes) -> bytes:
    return MAGIC_BYTES + len(body).to_bytes(4, "little") + body


BODY1 = b"\x01\x00\x00\x00" + b"first block"
BODY2 = b"\x02\x00\x00\x00" + b"second"


def _failing_producer():
    yield 1
    yield 2
    raise ValueError("boom")


def test_magic_bytes_are_little_endian():
    assert MAGIC_BYTES == b"\xf9\xbe\xb4\xd9"
    assert parse_blocks(b"\xf9\xbe\xb4\xd9" + (len(BODY1)).to_bytes(4, "little") + BODY1, MAGIC) == [
        (BODY1, len(BODY1))
    ]


def test_single_block():
    assert parse_blocks(frame(BODY1), MAGIC) == [(BODY1, len(BODY1))]


def test_garbage_between_blocks_is_skipped():
    blob = b"\x00\x07\x00" + frame(BODY1) + b"\xff\xff" + frame(BODY2)
    assert parse_blocks(blob, MAGIC) == [(BODY1, len(BODY1)), (BODY2, len(BODY2))]


def test_header_without_body_is_skipped():
    blob = MAGIC_BYTES + (7).to_bytes(4, "little") + frame(BODY2)
    assert parse_blocks(blob, MAGIC) == [(BODY2, len(BODY2))]


def test_trailing_partial_data_ends_parsing():
    assert parse_blocks(frame(BODY1) + b"\x00\x00", MAGIC) == [(BODY1, len(BODY1))]


def test_other_magic_finds_nothing():
    assert parse_blocks(frame(BODY1) + frame(BODY2), 0x0709110B) == []


def test_empty_blob():
    assert parse_blocks(b"", MAGIC) == []


def test_missing_block_size_raises():
    with pytest.raises(IndexerError):
        parse_blocks(MAGIC_BYTES + b"\x01", MAGIC)


def test_truncated_block_raises():
    blob = MAGIC_BYTES + (100).to_bytes(4, "little") + b"\x01\x00\x00\x00abc"
    with pytest.raises(IndexerError):
        parse_blocks(blob, MAGIC)


def test_fetcher_yields_in_order():
    assert list(Fetcher(iter(range(20)))) == list(range(20))


def test_fetcher_map_calls_func_for_each_item():
    seen = []
    Fetcher(["a", "b", "c"]).map(seen.append)
    assert seen == ["a", "b", "c"]


def test_fetcher_propagates_producer_error_after_items():
    seen = []
    with pytest.raises(ValueError, match="boom"):
        Fetcher(_failing_producer()).map(seen.append)
    assert seen == [1, 2]


def test_fetcher_can_only_be_consumed_once():
    fetcher = Fetcher([1])
    assert list(fetcher) == [1]
    with pytest.raises(RuntimeError):
        iter(fetcher)


def test_fetcher_early_break_keeps_first_items():
    fetcher = Fetcher(iter(range(1000)))
    taken = []
    for item in fetcher:
        taken.append(item)
        if len(taken) == 3:
            break
    assert taken == [0, 1, 2]


def test_blkfiles_reader_reads_files_in_order(tmp_path):
    first = tmp_path / "blk00000.dat"
    second = tmp_path / "blk00001.dat"
    first.write_bytes(frame(BODY1))
    second.write_bytes(frame(BODY2))
    assert list(blkfiles_reader([first, second])) == [frame(BODY1), frame(BODY2)]


def test_blkfiles_reader_missing_file_raises(tmp_path):
    with pytest.raises(IndexerError):
        list(blkfiles_reader([tmp_path / "absent.dat"]))


def test_blkfiles_parser_over_reader(tmp_path):
    first = tmp_path / "blk00000.dat"
    second = tmp_path / "blk00001.dat"
    first.write_bytes(frame(BODY1) + frame(BODY2))
    second.write_bytes(frame(BODY2))
    parsed = list(blkfiles_parser(blkfiles_reader([first, second]), MAGIC))
    assert parsed == [
        [(BODY1, len(BODY1)), (BODY2, len(BODY2))],
        [(BODY2, len(BODY2))],
    ]


def test_blkfiles_parser_propagates_reader_error(tmp_path):
    with pytest.raises(IndexerError):
        list(blkfiles_parser(blkfiles_reader([tmp_path / "missing.dat"]), MAGIC))