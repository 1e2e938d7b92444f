"""
Run coordination: one claim, a parallel fan-out, one aggregate.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from loguru import logger

from botjobs.config import EngineConfig
from botjobs.executor import JobExecutor
from botjobs.models import RunResult
from botjobs.registry import ActionRegistry
from botjobs.storage import Storage


class RunCoordinator:
    """
    Orchestrates processing passes over the job store.

    run_once() is safe to call from overlapping triggers: jobs are handed out
    by Storage.claim_batch, which never gives the same job to two callers.
    """

    def __init__(
        self,
        storage: Storage,
        registry: ActionRegistry,
        config: Optional[EngineConfig] = None,
        executor: Optional[JobExecutor] = None,
    ):
        self.storage = storage
        self.config = config or EngineConfig.from_storage(storage)
        self.executor = executor or JobExecutor(storage, registry, self.config)

    def run_once(self) -> RunResult:
        """
        Claim one batch, execute it and report counts.

        Returns:
            RunResult where processed + failed equals the number of jobs claimed

        Raises:
            StorageError: the store failed while claiming or recording; no
                partial result is returned and claimed jobs stay in_flight
                until they go stale
        """
        jobs = self.storage.claim_batch(self.config.batch_size, stale_after=self.config.stale_after)
        result = RunResult()
        if not jobs:
            return result

        workers = min(self.config.concurrency, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="botjobs-run") as pool:
            futures = [pool.submit(self.executor.execute, job) for job in jobs]

        # Every future is finished once the pool has shut down
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[0]

        for future in futures:
            result.add(future.result())

        logger.info(f"Run finished: claimed {result.claimed}, processed {result.processed}, failed {result.failed}")
        return result

    def drain(self, max_runs: int = 1000) -> RunResult:
        """
        Call run_once until a run claims nothing (or max_runs is reached).

        Returns:
            Totals across all runs
        """
        total = RunResult()
        for _ in range(max_runs):
            result = self.run_once()
            if result.claimed == 0:
                break
            total.processed += result.processed
            total.failed += result.failed
        return total

    def run_forever(
        self,
        interval: float = 1.0,
        stop_event: Optional[threading.Event] = None,
        max_runs: Optional[int] = None,
    ) -> int:
        """
        Poll the store every `interval` seconds until stopped.

        Run-level errors are logged and the loop keeps going; the next tick
        retries and stale claims are recovered.

        Args:
            interval: Seconds between runs
            stop_event: Set it to end the loop
            max_runs: Stop after this many runs (None = no limit)

        Returns:
            Number of runs performed
        """
        stop_event = stop_event or threading.Event()
        logger.info(f"Bot job loop started (polling every {interval:g}s)")

        runs = 0
        while not stop_event.is_set():
            try:
                result = self.run_once()
                if result.claimed:
                    logger.info(f"Bot jobs: processed {result.processed}, failed {result.failed}")
            except Exception:
                logger.exception("Bot job run failed")
            runs += 1
            if max_runs is not None and runs >= max_runs:
                break
            stop_event.wait(interval)

        logger.info("Bot job loop stopped")
        return runs
