"""Background block fetching and parsing of blk*.dat files."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from pathlib import Path
from typing import Callable, Generic, Iterable, Iterator, TypeVar

from .errors import IndexerError

log = logging.getLogger(__name__)

T = TypeVar("T")

_PUT_POLL = 0.1


class FetchFrom(enum.Enum):
    """Where new blocks are read from."""

    BITCOIND = "bitcoind"
    BLKFILES = "blkfiles"


class Fetcher(Generic[T]):
    """Produces items on a background thread, handing them over one at a time.

    At most one item waits between the producer and the consumer. An exception
    raised while producing is raised again to the consumer once the items that
    came before it have been handed over.
    """

    def __init__(self, items: Iterable[T], name: str = "fetcher") -> None:
        self._queue: queue.Queue = queue.Queue(maxsize=1)
        self._stop = threading.Event()
        self._error: BaseException | None = None
        self._consumed = False
        self._thread = threading.Thread(
            target=self._run, args=(items,), name=name, daemon=True
        )
        self._thread.start()

    def _put(self, item) -> bool:
        while not self._stop.is_set():
            try:
                self._queue.put(item, timeout=_PUT_POLL)
                return True
            except queue.Full:
                continue
        return False

    def _run(self, items: Iterable[T]) -> None:
        try:
            for item in items:
                if not self._put((True, item)):
                    return
        except BaseException as exc:
            self._error = exc
        finally:
            self._put((False, None))

    def __iter__(self) -> Iterator[T]:
        if self._consumed:
            raise RuntimeError("fetcher already consumed")
        self._consumed = True
        return self._drain()

    def _drain(self) -> Iterator[T]:
        try:
            while True:
                more, item = self._queue.get()
                if not more:
                    break
                yield item
            self._thread.join()
            if self._error is not None:
                raise self._error
        finally:
            self._stop.set()

    def map(self, func: Callable[[T], object]) -> None:
        """Call ``func`` on every item, then wait for the producer to finish."""
        for item in self:
            func(item)


def _read_u32(blob: bytes, pos: int) -> int | None:
    if pos + 4 > len(blob):
        return None
    return int.from_bytes(blob[pos:pos + 4], "little")


def parse_blocks(blob: bytes, magic: int) -> list[tuple[bytes, int]]:
    """Split the contents of a blk*.dat file into raw blocks and their sizes."""
    blob = bytes(blob)
    blocks: list[tuple[bytes, int]] = []
    pos = 0
    while pos < len(blob):
        offset = pos
        value = _read_u32(blob, pos)
        if value is None:
            break
        if value != magic:
            pos = offset + 1
            continue
        pos += 4
        block_size = _read_u32(blob, pos)
        if block_size is None:
            raise IndexerError("no block size")
        start = pos + 4
        end = start + block_size

        # When the node fails to write a block body, only the magic and size reach
        # the file; the next magic then follows right where the block version would.
        peeked = _read_u32(blob, start)
        if peeked is None:
            break
        if peeked == magic:
            pos = start
            continue
        if end > len(blob):
            raise IndexerError(
                f"truncated block at offset {offset}: need {block_size} bytes"
            )
        blocks.append((blob[start:end], block_size))
        pos = end
    return blocks


def _read_files(paths: Iterable) -> Iterator[bytes]:
    for path in paths:
        path = Path(path)
        log.debug("reading %s", path)
        try:
            yield path.read_bytes()
        except OSError as exc:
            raise IndexerError(f"failed to read {path}: {exc}") from exc


def blkfiles_reader(paths: Iterable) -> Fetcher[bytes]:
    """Read each file in ``paths`` in the background, in order."""
    return Fetcher(_read_files(list(paths)), name="blkfiles_reader")


def _parse_all(blobs: Iterable[bytes], magic: int) -> Iterator[list[tuple[bytes, int]]]:
    for blob in blobs:
        log.debug("parsing %d bytes", len(blob))
        yield parse_blocks(blob, magic)


def blkfiles_parser(blobs: Iterable[bytes], magic: int) -> Fetcher[list[tuple[bytes, int]]]:
    """Split each blob from ``blobs`` into blocks in the background."""
    return Fetcher(_parse_all(blobs, magic), name="blkfiles_parser")