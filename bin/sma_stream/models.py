"""Data models for sma-stream."""
from __future__ import annotations

import sys
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

_PRINT_LOCK = threading.Lock()


def log(msg: str) -> None:
    """Print a progress line with the tool prefix."""
    with _PRINT_LOCK:
        print(f"[sma_stream] {msg}", flush=True)


def warn(msg: str) -> None:
    """Print a warning line to stderr."""
    with _PRINT_LOCK:
        print(f"[sma_stream] Warning: {msg}", file=sys.stderr, flush=True)


class JobState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED)


class FailureClass(str, Enum):
    """Why a chunk ended up failed-fatal."""

    DATA = "data"
    TRANSIENT = "transient"
    DOWNSTREAM = "downstream"
    DRAIN_TIMEOUT = "drain_timeout"


@dataclass(frozen=True)
class Chunk:
    """An ordered group of signal files processed as one GPU job."""

    chunk_id: int
    files: tuple[Path, ...]
    source_format: str

    @property
    def name(self) -> str:
        return f"chunk_{self.chunk_id:06d}"


@dataclass
class Job:
    """One scheduled basecall run bound to a single chunk."""

    chunk: Chunk
    state: JobState = JobState.PENDING
    attempts: int = 0
    output_bam: Path | None = None
    failure: FailureClass | None = None
    error: str = ""

    @property
    def chunk_id(self) -> int:
        return self.chunk.chunk_id

    @property
    def retries(self) -> int:
        return max(self.attempts - 1, 0)


@dataclass(frozen=True)
class Alignment:
    """Primary alignment of a record against the reference."""

    reference_name: str
    reference_start: int
    cigar: str
    mapping_quality: int
    is_reverse: bool = False


@dataclass
class Record:
    """One basecalled read, simplex or duplex."""

    read_id: str
    sequence: str
    qualities: list[int]
    mean_qscore: float
    chunk_id: int = -1
    alignment: Alignment | None = None
    barcode: str | None = None
    pair_id: str | None = None
    is_duplex: bool = False
    parents: tuple[str, ...] = ()
    tags: dict[str, object] = field(default_factory=dict)

    @property
    def length(self) -> int:
        return len(self.sequence)


@dataclass(frozen=True)
class PairingRecord:
    """Outcome for one duplex candidate (paired, or a strand left unpaired)."""

    read_id: str
    partner_id: str | None
    paired: bool
    chunk_ids: tuple[int, ...]


@dataclass
class ChunkOutcome:
    """Terminal state of a chunk as it appears in the final report."""

    chunk_id: int
    state: JobState
    n_files: int
    attempts: int = 0
    n_records: int = 0
    failure: FailureClass | None = None
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "state": self.state.value,
            "n_files": self.n_files,
            "attempts": self.attempts,
            "n_records": self.n_records,
            "failure": self.failure.value if self.failure else None,
            "error": self.error,
        }
