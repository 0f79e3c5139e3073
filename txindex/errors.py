"""Exception types raised by the indexer."""

from __future__ import annotations


class IndexerError(Exception):
    """Base class for every error the indexer reports."""


class ConnectionFailure(IndexerError):
    """Talking to the node or a peer failed."""

    def __init__(self, msg: str) -> None:
        super().__init__(f"Connection error: {msg}")
        self.msg = msg


class Interrupted(IndexerError):
    """The process received an external signal."""

    def __init__(self, sig: int) -> None:
        super().__init__(f"Interrupted by signal {sig}")
        self.sig = sig


class TooPopular(IndexerError):
    """A script has more history entries than the configured limit allows."""

    def __init__(self) -> None:
        super().__init__("Too many history entries")