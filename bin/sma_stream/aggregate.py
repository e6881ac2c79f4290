"""Run statistics: per-chunk snapshots and the progressive fold.

A :class:`StatsSnapshot` holds counts and histograms keyed by
``(status, barcode, read_type)`` together with duplex pairing counts and
per-chunk outcomes. ``merge`` only adds integers and unions disjoint
chunk outcomes, so folding chunk snapshots in any order gives exactly
the same total.
"""
from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import numpy as np

from sma_stream.models import ChunkOutcome, JobState, Record

LENGTH_BIN_SIZE = 1000
N_LENGTH_BINS = 101  # last bin collects reads >= 100 kb
N_QSCORE_BINS = 61

NO_BARCODE = "none"
SIMPLEX = "simplex"
DUPLEX = "duplex"


def _length_bin(length: int) -> int:
    return min(length // LENGTH_BIN_SIZE, N_LENGTH_BINS - 1)


def _qscore_bin(qscore: float) -> int:
    return int(min(max(qscore, 0), N_QSCORE_BINS - 1))


@dataclass
class StreamStats:
    """Counts and histograms for one (status, barcode, read_type) group."""

    reads: int = 0
    bases: int = 0
    aligned: int = 0
    qscore_milli_sum: int = 0
    max_length: int = 0
    length_hist: np.ndarray = field(
        default_factory=lambda: np.zeros(N_LENGTH_BINS, dtype=np.int64))
    qscore_hist: np.ndarray = field(
        default_factory=lambda: np.zeros(N_QSCORE_BINS, dtype=np.int64))

    def add(self, record: Record) -> None:
        self.reads += 1
        self.bases += record.length
        self.aligned += record.alignment is not None
        self.qscore_milli_sum += int(round(record.mean_qscore * 1000))
        self.max_length = max(self.max_length, record.length)
        self.length_hist[_length_bin(record.length)] += 1
        self.qscore_hist[_qscore_bin(record.mean_qscore)] += 1

    def merge(self, other: StreamStats) -> StreamStats:
        return StreamStats(
            reads=self.reads + other.reads,
            bases=self.bases + other.bases,
            aligned=self.aligned + other.aligned,
            qscore_milli_sum=self.qscore_milli_sum + other.qscore_milli_sum,
            max_length=max(self.max_length, other.max_length),
            length_hist=self.length_hist + other.length_hist,
            qscore_hist=self.qscore_hist + other.qscore_hist,
        )

    def copy(self) -> StreamStats:
        return self.merge(StreamStats())

    @property
    def mean_qscore(self) -> float:
        return self.qscore_milli_sum / 1000 / self.reads if self.reads else 0.0

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StreamStats):
            return NotImplemented
        return (
            (self.reads, self.bases, self.aligned, self.qscore_milli_sum, self.max_length)
            == (other.reads, other.bases, other.aligned, other.qscore_milli_sum, other.max_length)
            and np.array_equal(self.length_hist, other.length_hist)
            and np.array_equal(self.qscore_hist, other.qscore_hist)
        )

    def to_dict(self) -> dict:
        return {
            "reads": self.reads,
            "bases": self.bases,
            "aligned": self.aligned,
            "mean_qscore": round(self.mean_qscore, 3),
            "max_length": self.max_length,
            "length_hist": self.length_hist.tolist(),
            "qscore_hist": self.qscore_hist.tolist(),
        }


GroupKey = tuple[str, str, str]


@dataclass
class StatsSnapshot:
    """A total over every record and chunk observed so far."""

    groups: dict[GroupKey, StreamStats] = field(default_factory=dict)
    duplex_paired: int = 0
    duplex_unpaired: int = 0
    chunks: dict[int, ChunkOutcome] = field(default_factory=dict)

    @classmethod
    def from_records(
        cls, records: list[Record], status: str, barcode: str | None = None,
    ) -> StatsSnapshot:
        snap = cls()
        for rec in records:
            key = (status, barcode or NO_BARCODE, DUPLEX if rec.is_duplex else SIMPLEX)
            snap.groups.setdefault(key, StreamStats()).add(rec)
        return snap

    def merge(self, other: StatsSnapshot) -> StatsSnapshot:
        """Combine two snapshots into a new one; neither input is modified."""
        groups = {key: stats.copy() for key, stats in self.groups.items()}
        for key, stats in other.groups.items():
            groups[key] = groups[key].merge(stats) if key in groups else stats.copy()
        overlap = self.chunks.keys() & other.chunks.keys()
        if overlap:
            raise ValueError(f"Chunk(s) {sorted(overlap)} counted twice")
        return StatsSnapshot(
            groups=groups,
            duplex_paired=self.duplex_paired + other.duplex_paired,
            duplex_unpaired=self.duplex_unpaired + other.duplex_unpaired,
            chunks={**self.chunks, **other.chunks},
        )

    def copy(self) -> StatsSnapshot:
        return self.merge(StatsSnapshot())

    @property
    def total_reads(self) -> int:
        return sum(s.reads for s in self.groups.values())

    @property
    def total_bases(self) -> int:
        return sum(s.bases for s in self.groups.values())

    def reads_with_status(self, status: str) -> int:
        return sum(s.reads for key, s in self.groups.items() if key[0] == status)

    @property
    def duplex_candidates(self) -> int:
        return self.duplex_paired + self.duplex_unpaired

    @property
    def duplex_rate(self) -> float:
        if not self.duplex_candidates:
            return 0.0
        return self.duplex_paired / self.duplex_candidates

    def chunk_summary(self) -> dict:
        failed = [c for c in self.chunks.values() if c.state == JobState.FAILED]
        return {
            "attempted": len(self.chunks),
            "succeeded": sum(1 for c in self.chunks.values() if c.state == JobState.SUCCEEDED),
            "failed": len(failed),
            "failures": [
                {"chunk_id": c.chunk_id, "failure": c.failure.value if c.failure else None,
                 "error": c.error}
                for c in sorted(failed, key=lambda c: c.chunk_id)
            ],
        }

    def to_dict(self) -> dict:
        return {
            "reads": self.total_reads,
            "bases": self.total_bases,
            "pass_reads": self.reads_with_status("pass"),
            "fail_reads": self.reads_with_status("fail"),
            "groups": [
                {"status": k[0], "barcode": k[1], "read_type": k[2], **self.groups[k].to_dict()}
                for k in sorted(self.groups)
            ],
            "duplex": {
                "paired": self.duplex_paired,
                "unpaired": self.duplex_unpaired,
                "candidates": self.duplex_candidates,
                "rate": round(self.duplex_rate, 4),
            },
            "chunks": self.chunk_summary(),
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StatsSnapshot):
            return NotImplemented
        return (
            self.groups == other.groups
            and self.duplex_paired == other.duplex_paired
            and self.duplex_unpaired == other.duplex_unpaired
            and self.chunks == other.chunks
        )


def write_json_atomic(data: dict, path: Path) -> None:
    """Write JSON via a temporary file so readers never see a partial document."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(data, indent=2))
    tmp.replace(path)


class ProgressiveAggregator:
    """Single-writer running total over per-chunk snapshots.

    ``fold`` swaps in a freshly merged total under the lock, so readers
    calling ``snapshot`` always get a copy of a complete total. In
    streaming mode every fold re-exports the total to *export_path*.
    """

    def __init__(self, export_path: Path | None = None, streaming: bool = False) -> None:
        self.export_path = export_path
        self.streaming = streaming
        self.folds = 0
        self.finalized = False
        self._total = StatsSnapshot()
        self._lock = threading.Lock()
        self._export_lock = threading.Lock()
        self._exported_fold = 0
        self._listeners: list[Callable[[StatsSnapshot], None]] = []

    def add_listener(self, callback: Callable[[StatsSnapshot], None]) -> None:
        """Call *callback* with a copy of the total after every fold."""
        self._listeners.append(callback)

    def fold(self, partial: StatsSnapshot) -> StatsSnapshot:
        with self._lock:
            if self.finalized:
                raise RuntimeError("Aggregator already finalized")
            self._total = self._total.merge(partial)
            self.folds += 1
            fold_no = self.folds
            current = self._total.copy()

        if self.streaming and self.export_path is not None:
            self._export(current, fold_no)
        for callback in self._listeners:
            callback(current)
        return current

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return self._total.copy()

    def finalize(self) -> StatsSnapshot:
        """Freeze the total and export it one last time."""
        with self._lock:
            self.finalized = True
            final = self._total.copy()
            fold_no = self.folds
        if self.export_path is not None:
            self._export(final, fold_no, force=True)
        return final

    def _export(self, snap: StatsSnapshot, fold_no: int, force: bool = False) -> None:
        with self._export_lock:
            if fold_no < self._exported_fold or (fold_no == self._exported_fold and not force):
                return
            data = snap.to_dict()
            data["folds"] = fold_no
            data["final"] = self.finalized
            data["updated"] = datetime.now(timezone.utc).isoformat()
            write_json_atomic(data, self.export_path)
            self._exported_fold = fold_no
