"""Key-value storage, row layouts, history queries and blk*.dat parsing for a transaction index."""

__version__ = "0.1.0"