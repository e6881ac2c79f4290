"""Per-chunk pipeline: normalize, basecall, align, split, pair, fold.

Chunks are accepted from any iterable (a finite listing or a
:class:`~sma_stream.chunker.WatchChunker`). Normalization and every
stage after the basecaller run on a worker pool; the basecaller runs
under the :class:`~sma_stream.scheduler.GpuScheduler`. A dedicated
admission thread hands chunks to the scheduler in acceptance order so
that polling for new input never waits on the GPU.
"""
from __future__ import annotations

import queue
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

from sma_stream.aggregate import ProgressiveAggregator, StatsSnapshot, write_json_atomic
from sma_stream.align import Aligner, AlignmentError, prepare_reference
from sma_stream.basecall import basecall_chunk
from sma_stream.chunker import iter_chunks
from sma_stream.classify import split_pass_fail
from sma_stream.config import PipelineConfig
from sma_stream.demux import split_by_barcode
from sma_stream.duplex import DuplexPairer, PairingResult
from sma_stream.models import (
    Chunk, ChunkOutcome, FailureClass, Job, JobState, Record, log, warn,
)
from sma_stream.normalize import FormatNormalizer, NormalizationError
from sma_stream.output import (
    commit_chunk_streams, discard_chunk_streams, merge_streams, stream_name, write_chunk_streams,
)
from sma_stream.records import read_records
from sma_stream.scheduler import GpuScheduler

_END = object()


class RunFailedError(Exception):
    """Raised when every chunk of a run failed after exhausting its retries."""


def stats_path(config: PipelineConfig) -> Path:
    return config.output_dir / f"{config.sample_name}.stats.json"


def report_path(config: PipelineConfig) -> Path:
    return config.output_dir / f"{config.sample_name}.report.json"


class Pipeline:
    """Drives chunks through every stage and folds their statistics.

    Parameters
    ----------
    config : PipelineConfig
        Effective configuration (already passed through ``check_config``).
    aggregator : ProgressiveAggregator
        Receives one partial snapshot per chunk.
    runner : callable, optional
        Replaces the dorado call (``runner(job) -> Path``).
    aligner : Aligner, optional
        Defaults to an aligner for ``config.reference`` (pass-through
        when there is none).
    sleep : callable
        Backoff sleep used by the scheduler.
    """

    def __init__(
        self,
        config: PipelineConfig,
        aggregator: ProgressiveAggregator,
        runner: Callable[[Job], Path] | None = None,
        aligner: Aligner | None = None,
        normalizer: FormatNormalizer | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.aggregator = aggregator
        self.work_dir = config.output_dir / "work"
        self.normalizer = normalizer or FormatNormalizer(
            config.output_dir / "pod5_cache", enabled=config.convert_legacy,
        )
        if aligner is None:
            reference = None
            if config.reference is not None:
                reference = prepare_reference(config.reference, config.output_dir / "reference")
            aligner = Aligner(reference, config.dorado_path)
        self.aligner = aligner
        self.pairer = DuplexPairer(config.duplex.window) if config.duplex.enabled else None
        self.scheduler = GpuScheduler(runner or self._basecall, config.scheduler, sleep=sleep)

        self._workers = ThreadPoolExecutor(
            max_workers=config.workers, thread_name_prefix="chunk",
        )
        self._admissions: queue.Queue = queue.Queue()
        self._admitter: threading.Thread | None = None
        self._abandoned = False
        self._cond = threading.Condition()
        # accepted chunks not yet resolved
        self._pending: dict[int, Chunk] = {}
        self._resolved: set[int] = set()
        self.streams: set[str] = set()

    # ------------------------------------------------------------------
    # Driving
    # ------------------------------------------------------------------

    def run(self, chunks: Iterable[Chunk], drain_timeout: float | None = None) -> StatsSnapshot:
        """Accept every chunk from *chunks*, then wait for all of them to finish."""
        self.start()
        try:
            for chunk in chunks:
                self.accept(chunk)
        finally:
            self.close_input()
        self.drain(drain_timeout)
        return self.aggregator.snapshot()

    def start(self) -> None:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self._admitter = threading.Thread(target=self._admission_loop, name="admission", daemon=True)
        self._admitter.start()

    def accept(self, chunk: Chunk) -> None:
        """Queue *chunk* for normalization and GPU admission."""
        with self._cond:
            self._pending[chunk.chunk_id] = chunk
        log(f"{chunk.name}: accepted ({len(chunk.files)} {chunk.source_format} file(s))")
        self._admissions.put((chunk, self._workers.submit(self.normalizer.normalize, chunk)))

    def close_input(self) -> None:
        self._admissions.put(_END)

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every accepted chunk is resolved.

        Returns False when *timeout* expired first; unresolved chunks are
        then recorded as failed with ``drain_timeout``.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        if self._admitter is not None:
            self._admitter.join(timeout)
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
        with self._cond:
            done = self._cond.wait_for(
                lambda: not self._pending, remaining,
            )
        if done:
            self.scheduler.shutdown(wait=True)
            self._workers.shutdown(wait=True)
            return True

        self._abandoned = True
        with self._cond:
            stuck = [self._pending[cid] for cid in sorted(self._pending)]
        warn(f"Drain timed out; abandoning {len(stuck)} chunk(s)")
        for chunk in stuck:
            self._fail_chunk(chunk, FailureClass.DRAIN_TIMEOUT, "drain timeout expired")
        self.scheduler.shutdown(wait=False)
        self._workers.shutdown(wait=False, cancel_futures=True)
        return False

    def _admission_loop(self) -> None:
        while True:
            item = self._admissions.get()
            if item is _END:
                return
            chunk, normalized = item
            try:
                canonical = normalized.result()
            except (NormalizationError, OSError) as exc:
                self._fail_chunk(chunk, FailureClass.DATA, str(exc))
                continue
            except Exception:
                warn(traceback.format_exc().rstrip())
                self._fail_chunk(chunk, FailureClass.DATA, "normalization crashed")
                continue
            if self._abandoned:
                continue
            future = self.scheduler.submit(canonical)
            future.add_done_callback(
                lambda f, c=canonical: self._on_basecalled(c, f)
            )

    def _on_basecalled(self, chunk: Chunk, future: Future) -> None:
        if self._abandoned or future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._fail_chunk(chunk, FailureClass.DATA, f"basecall job crashed: {exc!r}")
            return
        self._workers.submit(self._process, future.result())

    # ------------------------------------------------------------------
    # Per-chunk stages
    # ------------------------------------------------------------------

    def _basecall(self, job: Job) -> Path:
        return basecall_chunk(
            job.chunk,
            self.work_dir / f"calls_{job.chunk.name}.bam",
            model=self.config.basecaller_model,
            device=self.config.device,
            dorado_path=self.config.dorado_path,
            duplex=self.config.duplex.enabled,
            barcode_kit=self.config.barcode_kit,
            work_dir=self.work_dir,
        )

    def _process(self, job: Job) -> None:
        chunk = self._pending.get(job.chunk_id, job.chunk)
        if job.state == JobState.FAILED:
            self._fail_chunk(chunk, job.failure or FailureClass.DATA, job.error, job.attempts)
            return

        staged: list[dict[str, Path]] = []
        pairing = None
        try:
            bam = self.aligner.align(job.output_bam, self.work_dir / f"aligned_{chunk.name}.bam")
            records = read_records(bam, chunk.chunk_id, self.config.duplex.pair_tag)
            partial, streams = self.route(records)
            staged.append(self._stage(chunk.name, streams))
            if self.pairer is not None:
                pairing = self.pairer.observe(chunk.chunk_id, records)
                duplex_partial, duplex_streams = self.route_duplex(pairing)
                staged.append(self._stage(f"{chunk.name}.duplex", duplex_streams))
                partial = partial.merge(duplex_partial)
        except (AlignmentError, OSError, ValueError) as exc:
            _discard(staged)
            self._fail_chunk(chunk, FailureClass.DOWNSTREAM, str(exc), job.attempts, pairing)
            return
        except Exception:
            warn(traceback.format_exc().rstrip())
            _discard(staged)
            self._fail_chunk(chunk, FailureClass.DOWNSTREAM, "unexpected error", job.attempts,
                             pairing)
            return

        partial.chunks[chunk.chunk_id] = ChunkOutcome(
            chunk_id=chunk.chunk_id,
            state=JobState.SUCCEEDED,
            n_files=len(chunk.files),
            attempts=job.attempts,
            n_records=len(records),
        )
        if self._resolve(chunk.chunk_id, lambda: partial, staged):
            log(f"{chunk.name}: {len(records)} record(s) processed")
        for work_file in {job.output_bam, bam}:
            if work_file is not None:
                work_file.unlink(missing_ok=True)

    def route(self, records: list[Record]) -> tuple[StatsSnapshot, dict[str, list[Record]]]:
        """Split one chunk's records into output streams and summarise them."""
        threshold = self.config.qscore_threshold
        if self.config.demultiplex:
            groups: dict[str | None, list[Record]] = dict(split_by_barcode(records))
        else:
            groups = {None: records}

        streams: dict[str, list[Record]] = {}
        snap = StatsSnapshot()
        for barcode, group in groups.items():
            for status, routed in split_pass_fail(group, threshold).items():
                streams[stream_name(status, barcode)] = routed
                snap = snap.merge(StatsSnapshot.from_records(routed, status, barcode))
        return snap, streams

    def route_duplex(
        self, pairing: PairingResult,
    ) -> tuple[StatsSnapshot, dict[str, list[Record]]]:
        """Route the duplex records from one pairing step into pass/fail streams."""
        streams: dict[str, list[Record]] = {}
        snap = StatsSnapshot(duplex_paired=pairing.paired, duplex_unpaired=pairing.unpaired)
        for status, routed in split_pass_fail(pairing.duplex, self.config.qscore_threshold).items():
            streams[stream_name(status)] = routed
            snap = snap.merge(StatsSnapshot.from_records(routed, status))
        return snap, streams

    def _stage(self, name: str, streams: dict[str, list[Record]]) -> dict[str, Path]:
        return write_chunk_streams(
            name, streams, self.config.output_dir,
            self.config.output_format, self.aligner.header(), self.config.reference,
        )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _fail_chunk(
        self,
        chunk: Chunk,
        failure: FailureClass,
        error: str,
        attempts: int = 0,
        pairing: PairingResult | None = None,
    ) -> None:
        chunk = self._pending.get(chunk.chunk_id, chunk)

        def outcome() -> StatsSnapshot:
            partial = StatsSnapshot(chunks={chunk.chunk_id: ChunkOutcome(
                chunk_id=chunk.chunk_id,
                state=JobState.FAILED,
                n_files=len(chunk.files),
                attempts=attempts,
                failure=failure,
                error=error,
            )})
            if self.pairer is not None:
                if pairing is None:
                    partial.duplex_unpaired += self.pairer.observe(chunk.chunk_id, []).unpaired
                else:
                    # pairs formed with this chunk never produced a duplex record
                    partial.duplex_unpaired += pairing.unpaired + 2 * pairing.paired
            return partial

        if self._resolve(chunk.chunk_id, outcome):
            warn(f"{chunk.name}: skipped ({failure.value}): {error}")

    def _resolve(
        self,
        chunk_id: int,
        outcome: Callable[[], StatsSnapshot],
        staged: Iterable[dict[str, Path]] = (),
    ) -> bool:
        """Commit and fold a chunk unless it already reached a terminal state.

        Staged stream files are moved into place only here, so a chunk
        that is not folded never contributes records to the merged
        outputs.
        """
        with self._cond:
            if chunk_id in self._resolved:
                _discard(staged)
                return False
            self._resolved.add(chunk_id)
            self._pending.pop(chunk_id, None)
            for files in staged:
                self.streams.update(commit_chunk_streams(files))
            self.aggregator.fold(outcome())
            self._cond.notify_all()
        return True

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self, mode: str = "batch") -> StatsSnapshot:
        """Flush duplex candidates, merge outputs and write the run report.

        Raises:
            RunFailedError: every chunk failed after exhausting its retries.
        """
        if self.pairer is not None:
            leftover = self.pairer.flush()
            if leftover.pairings:
                self.aggregator.fold(StatsSnapshot(duplex_unpaired=leftover.unpaired))

        merged: dict[str, Path] = {}
        if self.streams:
            merged = merge_streams(
                self.config.output_dir, sorted(self.streams), self.config.sample_name,
                self.config.output_format, aligned=self.aligner.enabled,
                reference=self.config.reference,
            )

        final = self.aggregator.finalize()
        report = final.to_dict()
        report["outputs"] = {name: str(path) for name, path in merged.items()}
        write_json_atomic(report, report_path(self.config))
        self._write_provenance(final, mode)

        summary = final.chunk_summary()
        log(
            f"Run finished: {summary['attempted']} chunk(s), {summary['succeeded']} succeeded, "
            f"{summary['failed']} failed; {final.total_reads} read(s)"
        )
        failures = [c for c in final.chunks.values() if c.state == JobState.FAILED]
        if final.chunks and len(failures) == len(final.chunks) and all(
            c.failure == FailureClass.TRANSIENT for c in failures
        ):
            raise RunFailedError("Every chunk failed after exhausting GPU retries")
        return final

    def _write_provenance(self, final: StatsSnapshot, mode: str) -> None:
        provenance = {
            "mode": mode,
            "model": self.config.basecaller_model,
            "device": self.config.device,
            "duplex": self.config.duplex.enabled,
            "barcode_kit": self.config.barcode_kit,
            "reference": str(self.config.reference) if self.config.reference else None,
            "total_reads": final.total_reads,
            "chunks": final.chunk_summary(),
            "config": self.config.model_dump(mode="json"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        write_json_atomic(
            provenance, self.config.output_dir / f"{self.config.sample_name}.provenance.json",
        )


def _discard(staged: Iterable[dict[str, Path]]) -> None:
    for files in staged:
        discard_chunk_streams(files)


def run_batch(
    config: PipelineConfig,
    runner: Callable[[Job], Path] | None = None,
    aligner: Aligner | None = None,
    normalizer: FormatNormalizer | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> StatsSnapshot:
    """Process every signal file currently under ``config.input_dir``."""
    aggregator = ProgressiveAggregator(stats_path(config))
    pipeline = Pipeline(config, aggregator, runner=runner, aligner=aligner,
                        normalizer=normalizer, sleep=sleep)
    chunks = iter_chunks(
        config.input_dir, config.input_suffixes(), config.chunking,
        exclude=(config.output_dir,),
    )
    log(f"Batch run: {config.input_dir} -> {config.output_dir}")
    pipeline.run(chunks)
    return pipeline.finalize("batch")
