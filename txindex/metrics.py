"""Prometheus-style metrics registry, HTTP exporter and process statistics."""

from __future__ import annotations

import contextlib
import logging
import math
import os
import sys
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Iterator

from .errors import IndexerError

log = logging.getLogger(__name__)

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
EXPORT_INTERVAL = 5.0


def _fmt(value) -> str:
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "+Inf" if value > 0 else "-Inf"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Counter:
    """A monotonically increasing integer."""

    kind = "counter"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0

    def inc(self, amount: int = 1) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self.value += amount

    def _samples(self):
        return [("", {}, self.value)]


class Gauge:
    """A value that can be set arbitrarily."""

    kind = "gauge"

    def __init__(self) -> None:
        self.value = 0

    def set(self, value) -> None:
        self.value = value

    def _samples(self):
        return [("", {}, self.value)]


class Histogram:
    """Observations counted into cumulative buckets."""

    kind = "histogram"

    def __init__(self, buckets=DEFAULT_BUCKETS) -> None:
        self._lock = threading.Lock()
        self.buckets = tuple(sorted(buckets))
        self.bucket_counts = [0] * len(self.buckets)
        self.count = 0
        self.sum = 0.0

    def observe(self, value: float) -> None:
        with self._lock:
            self.count += 1
            self.sum += value
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    self.bucket_counts[i] += 1

    @contextlib.contextmanager
    def timer(self) -> Iterator[None]:
        """Observe the time spent in the ``with`` block, in seconds."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe(time.perf_counter() - start)

    def _samples(self):
        samples = [
            ("_bucket", {"le": _fmt(float(bound))}, n)
            for bound, n in zip(self.buckets, self.bucket_counts)
        ]
        samples.append(("_bucket", {"le": "+Inf"}, self.count))
        samples.append(("_sum", {}, self.sum))
        samples.append(("_count", {}, self.count))
        return samples


class MetricVec:
    """A family of metrics of one kind, told apart by label values."""

    def __init__(self, factory: Callable[[], object], labels) -> None:
        self._factory = factory
        self.labels = tuple(labels)
        self.kind = factory().kind
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], object] = {}

    def with_label_values(self, *args):
        if len(args) != len(self.labels):
            raise ValueError(
                f"expected {len(self.labels)} label values, got {len(args)}"
            )
        with self._lock:
            child = self._children.get(args)
            if child is None:
                child = self._children[args] = self._factory()
            return child

    def _items(self):
        with self._lock:
            children = list(self._children.items())
        return [(dict(zip(self.labels, key)), child) for key, child in children]


@dataclass
class Stats:
    utime: float
    rss: int
    fds: int


def parse_stat_line(text: str, page_size: int, ticks_per_second: float, fds: int) -> Stats:
    """Read user CPU time and resident size from a ``/proc/<pid>/stat`` line."""
    parts = text.split()

    def part(index: int, name: str) -> int:
        try:
            raw = parts[index]
        except IndexError:
            raise IndexerError(f"missing {name}: {parts!r}") from None
        digits = raw[1:] if raw.startswith("+") else raw
        if not (digits.isascii() and digits.isdigit()):
            raise IndexerError(f"invalid {name}: {parts!r}")
        return int(digits)

    utime = part(13, "utime") / ticks_per_second
    rss = part(23, "rss") * page_size
    return Stats(utime=utime, rss=rss, fds=fds)


def read_process_stats() -> Stats:
    """Statistics of the running process (all zero on macOS)."""
    if sys.platform == "darwin":
        return Stats(utime=0.0, rss=0, fds=0)
    try:
        text = Path("/proc/self/stat").read_text()
    except OSError as exc:
        raise IndexerError("failed to read stats") from exc
    page_size = os.sysconf("SC_PAGE_SIZE")
    ticks = float(os.sysconf("SC_CLK_TCK"))
    try:
        fds = len(os.listdir("/proc/self/fd"))
    except OSError as exc:
        raise IndexerError("failed to read fd directory") from exc
    return parse_stat_line(text, page_size, ticks, fds)


@dataclass
class _Family:
    name: str
    help: str
    kind: str
    items: Callable[[], list]


class Metrics:
    """A registry of metrics served in text exposition format over HTTP."""

    def __init__(self, addr) -> None:
        self.addr = addr
        self._lock = threading.Lock()
        self._families: dict[str, _Family] = {}

    def _register(self, name: str, help: str, kind: str, items) -> None:
        with self._lock:
            if name in self._families:
                raise ValueError(f"duplicate metric {name!r}")
            self._families[name] = _Family(name, help, kind, items)

    def _single(self, metric, name: str, help: str):
        self._register(name, help, metric.kind, lambda: [({}, metric)])
        return metric

    def _vec(self, factory, name: str, help: str, labels) -> MetricVec:
        vec = MetricVec(factory, labels)
        self._register(name, help, vec.kind, vec._items)
        return vec

    def counter(self, name, help) -> Counter:
        return self._single(Counter(), name, help)

    def counter_vec(self, name, help, labels) -> MetricVec:
        return self._vec(Counter, name, help, labels)

    def gauge(self, name, help) -> Gauge:
        return self._single(Gauge(), name, help)

    def gauge_vec(self, name, help, labels) -> MetricVec:
        return self._vec(Gauge, name, help, labels)

    def histogram(self, name, help) -> Histogram:
        return self._single(Histogram(), name, help)

    def histogram_vec(self, name, help, labels) -> MetricVec:
        return self._vec(Histogram, name, help, labels)

    def gather(self) -> str:
        """All registered metrics in Prometheus text format."""
        with self._lock:
            families = sorted(self._families.values(), key=lambda f: f.name)
        lines = []
        for family in families:
            help_text = family.help.replace("\\", "\\\\").replace("\n", "\\n")
            lines.append(f"# HELP {family.name} {help_text}")
            lines.append(f"# TYPE {family.name} {family.kind}")
            for labels, metric in family.items():
                for suffix, extra, value in metric._samples():
                    all_labels = {**labels, **extra}
                    rendered = ",".join(
                        f'{k}="{_escape_label(v)}"' for k, v in all_labels.items()
                    )
                    label_part = f"{{{rendered}}}" if rendered else ""
                    lines.append(f"{family.name}{suffix}{label_part} {_fmt(value)}")
        return "\n".join(lines) + "\n"

    def start(self) -> ThreadingHTTPServer:
        """Serve metrics at ``addr`` in the background; returns the running server."""
        metrics = self

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self) -> None:
                body = metrics.gather().encode()
                self.send_response(200)
                self.send_header("Content-Type", "text/plain; version=0.0.4")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args) -> None:
                log.debug("http: " + format, *args)

        try:
            server = ThreadingHTTPServer(tuple(self.addr), Handler)
        except OSError as exc:
            raise IndexerError(
                f"failed to start monitoring HTTP server at {self.addr}"
            ) from exc
        self._start_process_exporter()
        threading.Thread(target=server.serve_forever, name="metrics", daemon=True).start()
        return server

    def _start_process_exporter(self) -> None:
        rss = self.gauge("process_memory_rss", "Resident memory size [bytes]")
        cpu = self.gauge_vec(
            "process_cpu_usage", "CPU usage by this process [seconds]", ["type"]
        )
        fds = self.gauge("process_fs_fds", "# of file descriptors")

        def run() -> None:
            while True:
                try:
                    stats = read_process_stats()
                except IndexerError as exc:
                    log.warning("failed to export stats: %s", exc)
                else:
                    cpu.with_label_values("utime").set(stats.utime)
                    rss.set(stats.rss)
                    fds.set(stats.fds)
                time.sleep(EXPORT_INTERVAL)

        threading.Thread(target=run, name="exporter", daemon=True).start()