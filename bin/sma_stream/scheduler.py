"""GPU job admission: concurrency cap, retries and failure isolation."""
from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable

from sma_stream.basecall import FatalJobError, TransientJobError
from sma_stream.config import SchedulerConfig
from sma_stream.models import Chunk, FailureClass, Job, JobState, log, warn


class GpuScheduler:
    """Runs basecall jobs against one logical GPU device.

    ``submit`` blocks while ``max_concurrency`` jobs hold the device, so
    jobs are admitted in the order the caller submits them; they may
    finish in any order. Transient failures are retried with exponential
    backoff while the job keeps its slot. Every submitted job resolves to
    a :class:`Job` in a terminal state; failures never raise out of the
    returned future.

    Parameters
    ----------
    runner : callable
        ``runner(job) -> Path`` performs one basecall attempt and returns
        the output BAM. It signals failures with TransientJobError or
        FatalJobError.
    config : SchedulerConfig
        Concurrency cap and retry policy.
    sleep : callable
        Used for backoff delays (replaceable in tests).
    """

    def __init__(
        self,
        runner: Callable[[Job], Path],
        config: SchedulerConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runner = runner
        self.config = config
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(config.max_concurrency)
        self._pool = ThreadPoolExecutor(
            max_workers=config.max_concurrency, thread_name_prefix="gpu",
        )
        self._lock = threading.Lock()
        self.running = 0
        self.peak_running = 0

    def submit(self, chunk: Chunk) -> Future:
        """Admit a job for *chunk*, blocking while the device is at capacity."""
        self._slots.acquire()
        job = Job(chunk=chunk)
        try:
            return self._pool.submit(self._execute, job)
        except RuntimeError:
            self._slots.release()
            raise

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)

    def _execute(self, job: Job) -> Job:
        with self._lock:
            self.running += 1
            self.peak_running = max(self.peak_running, self.running)
        try:
            return self._run_with_retries(job)
        finally:
            with self._lock:
                self.running -= 1
            self._slots.release()

    def _run_with_retries(self, job: Job) -> Job:
        while True:
            job.attempts += 1
            job.state = JobState.RUNNING
            try:
                job.output_bam = self.runner(job)
            except TransientJobError as exc:
                if job.retries >= self.config.max_retries:
                    return self._fail(
                        job, FailureClass.TRANSIENT,
                        f"gave up after {job.attempts} attempt(s): {exc}",
                    )
                delay = self.config.backoff(job.attempts)
                warn(f"{job.chunk.name}: transient failure ({exc}); retrying in {delay:.1f}s")
                self._sleep(delay)
                continue
            except (FatalJobError, OSError) as exc:
                return self._fail(job, FailureClass.DATA, str(exc))

            job.state = JobState.SUCCEEDED
            log(f"{job.chunk.name}: basecalled (attempt {job.attempts})")
            return job

    def _fail(self, job: Job, failure: FailureClass, error: str) -> Job:
        job.state = JobState.FAILED
        job.failure = failure
        job.error = error
        warn(f"{job.chunk.name}: failed ({failure.value}): {error}")
        return job
