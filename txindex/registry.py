"""Asset metadata registry kept in sync with a directory of JSON files."""

from __future__ import annotations

import enum
import json
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from .errors import IndexerError

log = logging.getLogger(__name__)

# Length of the asset id prefix used for sub-directory partitioning, in hex characters.
DIR_PARTITION_LEN = 2


def _parse_asset_id(text: str) -> str:
    if len(text) != 64:
        raise ValueError("asset id must be 64 hex characters")
    bytes.fromhex(text)
    return text.lower()


def _asset_id_order(asset_id: str) -> bytes:
    # Asset ids are displayed byte-reversed; order by the underlying bytes.
    return bytes.fromhex(asset_id)[::-1]


@dataclass
class AssetMeta:
    name: str
    precision: int
    ticker: str | None = None
    contract: Any = None
    entity: Any = None

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "AssetMeta":
        if not isinstance(data, Mapping):
            raise ValueError("asset metadata must be a JSON object")
        try:
            name = data["name"]
            precision = data["precision"]
        except KeyError as exc:
            raise ValueError(f"missing field {exc.args[0]}") from None
        if not isinstance(name, str):
            raise ValueError("name must be a string")
        if isinstance(precision, bool) or not isinstance(precision, int) or not 0 <= precision <= 255:
            raise ValueError("precision must be an integer between 0 and 255")
        ticker = data.get("ticker")
        if ticker is not None and not isinstance(ticker, str):
            raise ValueError("ticker must be a string")
        return cls(
            name=name,
            precision=precision,
            ticker=ticker,
            contract=data.get("contract"),
            entity=data.get("entity"),
        )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.contract is not None:
            out["contract"] = self.contract
        if self.entity is not None:
            out["entity"] = self.entity
        out["precision"] = self.precision
        out["name"] = self.name
        if self.ticker is not None:
            out["ticker"] = self.ticker
        return out

    def domain(self) -> str | None:
        if isinstance(self.entity, dict):
            value = self.entity.get("domain")
            if isinstance(value, str):
                return value
        return None


class AssetSortField(enum.Enum):
    NAME = "name"
    DOMAIN = "domain"
    TICKER = "ticker"


class AssetSortDir(enum.Enum):
    DESCENDING = "desc"
    ASCENDING = "asc"


def _optional_key(value: str | None):
    return (value is not None, value or "")


@dataclass(frozen=True)
class AssetSorting:
    field: AssetSortField = AssetSortField.TICKER
    direction: AssetSortDir = AssetSortDir.ASCENDING

    @classmethod
    def from_query_params(cls, query: Mapping[str, str]) -> "AssetSorting":
        field_name = query.get("sort_field")
        if field_name is None:
            field = AssetSortField.TICKER
        else:
            try:
                field = AssetSortField(field_name)
            except ValueError:
                raise IndexerError("invalid sort field") from None
        dir_name = query.get("sort_dir")
        if dir_name is None:
            direction = AssetSortDir.ASCENDING
        else:
            try:
                direction = AssetSortDir(dir_name)
            except ValueError:
                raise IndexerError("invalid sort direction") from None
        return cls(field, direction)

    def _key(self, entry: tuple[str, AssetMeta]):
        asset_id, meta = entry
        if self.field is AssetSortField.NAME:
            # Names are not unique, so the asset id breaks ties.
            return (meta.name.lower(), _asset_id_order(asset_id))
        if self.field is AssetSortField.DOMAIN:
            return _optional_key(meta.domain())
        ticker = meta.ticker.lower() if meta.ticker is not None else None
        return _optional_key(ticker)

    def sort(self, entries) -> list[tuple[str, AssetMeta]]:
        return sorted(
            entries, key=self._key, reverse=self.direction is AssetSortDir.DESCENDING
        )


class AssetRegistry:
    """Cached view of ``<directory>/<xx>/<asset id>.json`` metadata files."""

    def __init__(self, directory) -> None:
        self.directory = Path(directory)
        self._cache: dict[str, tuple[int, AssetMeta]] = {}
        self._lock = threading.RLock()
        self._stop = threading.Event()

    def get(self, asset_id: str) -> AssetMeta | None:
        with self._lock:
            cached = self._cache.get(asset_id.lower())
        return None if cached is None else cached[1]

    def list(self, start_index: int, limit: int, sorting: AssetSorting):
        """Return the total number of assets and one sorted page of them."""
        with self._lock:
            entries = [(asset_id, meta) for asset_id, (_, meta) in self._cache.items()]
        ordered = sorting.sort(entries)
        return len(ordered), ordered[start_index:start_index + limit]

    def fs_sync(self) -> None:
        """Load new or modified metadata files into the cache."""
        try:
            subdirs = list(os.scandir(self.directory))
        except OSError as exc:
            raise IndexerError("failed reading asset dir") from exc
        with self._lock:
            for subdir in subdirs:
                try:
                    is_dir = subdir.is_dir()
                except OSError as exc:
                    raise IndexerError("failed getting file type") from exc
                if not is_dir or len(subdir.name) != DIR_PARTITION_LEN:
                    continue
                try:
                    files = list(os.scandir(subdir.path))
                except OSError as exc:
                    raise IndexerError("failed reading asset subdir") from exc
                for entry in files:
                    self._sync_file(Path(entry.path))

    def _sync_file(self, path: Path) -> None:
        if path.suffix != ".json":
            return
        try:
            asset_id = _parse_asset_id(path.stem)
        except ValueError:
            raise IndexerError("invalid filename") from None
        try:
            modified = path.stat().st_mtime_ns
        except OSError as exc:
            raise IndexerError("failed reading metadata") from exc
        cached = self._cache.get(asset_id)
        if cached is not None and cached[0] == modified:
            return
        try:
            text = path.read_text()
        except OSError as exc:
            raise IndexerError("failed reading file") from exc
        try:
            meta = AssetMeta.from_json(json.loads(text))
        except ValueError as exc:
            raise IndexerError("failed parsing file") from exc
        self._cache[asset_id] = (modified, meta)

    def spawn_sync(self, interval: float = 15.0) -> threading.Thread:
        """Run ``fs_sync`` now and every ``interval`` seconds until ``stop`` is called."""
        self._stop.clear()

        def run() -> None:
            while True:
                try:
                    self.fs_sync()
                except IndexerError as exc:
                    log.error("registry fs_sync failed: %s", exc)
                if self._stop.wait(interval):
                    return

        thread = threading.Thread(target=run, name="asset-registry", daemon=True)
        thread.start()
        return thread

    def stop(self) -> None:
        self._stop.set()