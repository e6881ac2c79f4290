"""Real-time (watch mode) controller.

The controller runs the pipeline over a :class:`WatchChunker` and moves
through RUNNING -> DRAINING -> STOPPED. The stop signal comes from the
marker file in the input directory, or from the controller itself once
``read_limit`` reads have been folded (it then writes the marker so
other tools watching the directory see it too).
"""
from __future__ import annotations

import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable

from sma_stream.aggregate import SIMPLEX, ProgressiveAggregator, StatsSnapshot
from sma_stream.align import Aligner
from sma_stream.chunker import StopSignal, WatchChunker
from sma_stream.config import PipelineConfig
from sma_stream.models import Job, log
from sma_stream.normalize import FormatNormalizer
from sma_stream.pipeline import Pipeline, stats_path


class WatchState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


_ORDER = [WatchState.RUNNING, WatchState.DRAINING, WatchState.STOPPED]


def simplex_reads(snap: StatsSnapshot) -> int:
    """Reads counted towards ``read_limit`` (duplex records are not new reads)."""
    return sum(s.reads for key, s in snap.groups.items() if key[2] == SIMPLEX)


class WatchController:
    """Runs the pipeline until told to stop, then drains and finalizes.

    Parameters
    ----------
    config : PipelineConfig
        Effective configuration.
    runner, aligner, normalizer, sleep
        Passed to :class:`~sma_stream.pipeline.Pipeline`.
    clock : callable
        Monotonic clock used by the chunker's stability checks.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: Callable[[Job], Path] | None = None,
        aligner: Aligner | None = None,
        normalizer: FormatNormalizer | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.clock = clock
        self.state = WatchState.RUNNING
        self.history: list[WatchState] = [WatchState.RUNNING]
        self._lock = threading.Lock()

        self.stop = StopSignal(config.stop_marker_path)
        self.stop.add_listener(self._on_stop)

        self.aggregator = ProgressiveAggregator(stats_path(config), streaming=True)
        if config.watch.read_limit is not None:
            self.aggregator.add_listener(self._check_read_limit)

        self.pipeline = Pipeline(config, self.aggregator, runner=runner, aligner=aligner,
                                 normalizer=normalizer, sleep=sleep)
        self.chunker: WatchChunker | None = None

    def run(self) -> StatsSnapshot:
        """Watch the input directory until stopped; returns the final snapshot."""
        self._clear_stale_marker()
        self.chunker = WatchChunker(
            self.config.input_dir,
            self.config.input_suffixes(),
            self.config.chunking,
            self.config.watch,
            self.stop,
            clock=self.clock,
            exclude=(self.config.output_dir,),
        )
        log(f"Watching {self.config.input_dir} (create {self.config.watch.stop_marker} to stop)")
        self.pipeline.run(self.chunker, drain_timeout=self.config.watch.drain_timeout)
        self._advance(WatchState.STOPPED)
        return self.pipeline.finalize("watch")

    def request_stop(self, reason: str = "stop requested") -> None:
        self.stop.trigger(reason)

    def _clear_stale_marker(self) -> None:
        marker = self.config.stop_marker_path
        if marker.exists():
            log(f"Removing stale stop marker {marker}")
            marker.unlink()

    def _on_stop(self, reason: str) -> None:
        log(f"Stop signal: {reason}; draining in-flight chunks")
        self._advance(WatchState.DRAINING)

    def _check_read_limit(self, snap: StatsSnapshot) -> None:
        limit = self.config.watch.read_limit
        if limit is not None and simplex_reads(snap) >= limit:
            self.stop.trigger(f"read limit {limit} reached", create_marker=True)

    def _advance(self, state: WatchState) -> None:
        """Move forward to *state*, passing through any skipped states."""
        with self._lock:
            current = _ORDER.index(self.state)
            target = _ORDER.index(state)
            for nxt in _ORDER[current + 1:target + 1]:
                self.state = nxt
                self.history.append(nxt)
