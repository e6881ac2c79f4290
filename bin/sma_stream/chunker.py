"""Discover signal files and group them into chunks.

Finite runs enumerate the input directory once. Watch runs poll the
directory until the stop signal is raised, only emitting files whose
size and mtime have been stable for ``stability_wait`` seconds.
"""
from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Callable, Iterator

from sma_stream.config import SIGNAL_SUFFIXES, ChunkConfig, WatchConfig
from sma_stream.models import Chunk, log, warn

_SUFFIX_FORMATS = {suffix: fmt for fmt, suffix in SIGNAL_SUFFIXES.items()}
_PARTIAL_SUFFIXES = (".tmp", ".part", ".partial")


class StopSignal:
    """Cooperative stop flag, optionally backed by a marker file.

    The signal is set either by :meth:`trigger` or, on the next
    :meth:`is_set` call, by the marker file appearing on disk. Once set
    it never clears.
    """

    def __init__(self, marker: Path | None = None) -> None:
        self.marker = marker
        self.reason = ""
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[str], None]] = []

    def add_listener(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def is_set(self) -> bool:
        if (not self._event.is_set() and self.marker is not None
                and self.marker.exists()):
            self._fire(f"stop marker {self.marker.name} found")
        return self._event.is_set()

    def trigger(self, reason: str, create_marker: bool = False) -> None:
        """Set the signal. With *create_marker*, also write the marker file."""
        if create_marker and self.marker is not None:
            self.marker.parent.mkdir(parents=True, exist_ok=True)
            self.marker.touch()
        self._fire(reason)

    def wait(self, timeout: float) -> bool:
        """Sleep up to *timeout* seconds, waking early if the signal is triggered."""
        return self._event.wait(timeout)

    def _fire(self, reason: str) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
        for callback in self._listeners:
            callback(reason)


def signal_format(path: Path) -> str | None:
    """Return the signal format of *path* from its suffix, or None."""
    return _SUFFIX_FORMATS.get(path.suffix.lower())


def is_candidate(
    path: Path, suffixes: tuple[str, ...], exclude: tuple[Path, ...] = (),
) -> bool:
    """True for visible, non-temporary files with an accepted suffix.

    Files under any directory in *exclude* (e.g. an output directory
    nested inside the input directory) are never candidates.
    """
    name = path.name
    if name.startswith(".") or name.endswith(_PARTIAL_SUFFIXES):
        return False
    if any(path.is_relative_to(d) for d in exclude):
        return False
    return path.suffix.lower() in suffixes


def discover_signal_files(
    root: Path, suffixes: tuple[str, ...], exclude: tuple[Path, ...] = (),
) -> list[Path]:
    """Recursively collect signal files under *root*, sorted by path."""
    files = []
    for f in sorted(root.rglob("*")):
        if f.is_file() and is_candidate(f, suffixes, exclude) and f.stat().st_size > 0:
            files.append(f)
    return files


class ChunkBuilder:
    """Accumulates files and closes chunks at the configured limits.

    A chunk never mixes signal formats and never exceeds ``max_files``;
    with ``max_bytes`` set it closes before the byte budget would be
    exceeded (a single oversized file still forms its own chunk).
    """

    def __init__(self, chunking: ChunkConfig, start_id: int = 0) -> None:
        self.chunking = chunking
        self.next_id = start_id
        self._files: list[Path] = []
        self._format: str | None = None
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._files)

    def add(self, path: Path) -> list[Chunk]:
        """Add a file, returning any chunks that closed as a result."""
        closed: list[Chunk] = []
        fmt = signal_format(path)
        size = path.stat().st_size
        if self._files and (
            fmt != self._format
            or (self.chunking.max_bytes is not None
                and self._bytes + size > self.chunking.max_bytes)
        ):
            closed.append(self._close())

        self._files.append(path)
        self._format = fmt
        self._bytes += size

        if len(self._files) >= self.chunking.max_files:
            closed.append(self._close())
        return closed

    def flush(self) -> Chunk | None:
        """Close the partially filled chunk, if any."""
        if not self._files:
            return None
        return self._close()

    def _close(self) -> Chunk:
        chunk = Chunk(
            chunk_id=self.next_id,
            files=tuple(self._files),
            source_format=self._format or "",
        )
        self.next_id += 1
        self._files = []
        self._format = None
        self._bytes = 0
        return chunk


def iter_chunks(
    root: Path,
    suffixes: tuple[str, ...],
    chunking: ChunkConfig,
    exclude: tuple[Path, ...] = (),
) -> Iterator[Chunk]:
    """Lazily chunk every signal file currently under *root*."""
    builder = ChunkBuilder(chunking)
    for path in discover_signal_files(root, suffixes, exclude):
        yield from builder.add(path)
    last = builder.flush()
    if last is not None:
        yield last


class WatchChunker:
    """Chunk a growing input directory until the stop signal is set.

    Each poll lists the directory, tracks ``(size, mtime)`` for files not
    yet chunked, and admits a file once its signature has not changed
    for ``stability_wait`` seconds. A partially filled chunk is emitted
    after ``grace_period`` seconds without new files, and on stop. The
    stop signal is only observed at poll boundaries.
    """

    def __init__(
        self,
        root: Path,
        suffixes: tuple[str, ...],
        chunking: ChunkConfig,
        watch: WatchConfig,
        stop: StopSignal,
        clock: Callable[[], float] = time.monotonic,
        exclude: tuple[Path, ...] = (),
    ) -> None:
        self.root = root
        self.suffixes = suffixes
        self.exclude = exclude
        self.watch = watch
        self.stop = stop
        self.clock = clock
        self.builder = ChunkBuilder(chunking)
        self.seen: set[Path] = set()
        self.pending: dict[Path, tuple[tuple[int, int], float]] = {}
        self.exhausted = False

    def __iter__(self) -> Iterator[Chunk]:
        buffered_since: float | None = None
        while True:
            if self.stop.is_set():
                last = self.builder.flush()
                if last is not None:
                    yield last
                if self.pending:
                    warn(f"{len(self.pending)} file(s) still being written at stop; not processed")
                self.exhausted = True
                log(f"Watch stopped ({self.stop.reason}); no further input accepted")
                return

            now = self.clock()
            try:
                ready = self.poll(now)
            except OSError as exc:
                warn(f"Polling {self.root} failed, retrying: {exc}")
                ready = []

            for path in ready:
                self.seen.add(path)
                closed = self.builder.add(path)
                yield from closed
                buffered_since = now if len(self.builder) else None

            if (len(self.builder) and buffered_since is not None
                    and now - buffered_since >= self.watch.grace_period):
                last = self.builder.flush()
                buffered_since = None
                if last is not None:
                    yield last

            self.stop.wait(self.watch.poll_interval)

    def poll(self, now: float) -> list[Path]:
        """Scan once and return newly stable files, in path order."""
        ready: list[Path] = []
        current: set[Path] = set()
        for f in sorted(self.root.rglob("*")):
            if f in self.seen or not f.is_file():
                continue
            if not is_candidate(f, self.suffixes, self.exclude):
                continue
            st = f.stat()
            sig = (st.st_size, st.st_mtime_ns)
            current.add(f)
            previous = self.pending.get(f)
            if previous is None or previous[0] != sig:
                self.pending[f] = (sig, now)
                continue
            if st.st_size > 0 and now - previous[1] >= self.watch.stability_wait:
                ready.append(f)
                del self.pending[f]
        for gone in set(self.pending) - current:
            del self.pending[gone]
        return ready
