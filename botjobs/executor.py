"""
Executes claimed jobs and records their terminal status.
"""
import threading
import time
from typing import Any, Dict, Optional

from loguru import logger

from botjobs.config import EngineConfig
from botjobs.exceptions import ActionFailed, ActionTimeout
from botjobs.models import Job, Outcome
from botjobs.registry import ActionHandler, ActionRegistry
from botjobs.storage import Storage


def call_with_timeout(handler: ActionHandler, payload: Dict[str, Any], timeout: float) -> Any:
    """
    Run handler(payload) on a daemon thread and wait at most `timeout` seconds.

    Raises ActionTimeout when the budget runs out. The handler thread is left
    to finish on its own; being a daemon it never blocks interpreter exit.
    Exceptions raised by the handler are re-raised in the caller.
    """
    result: Dict[str, Any] = {}

    def target():
        try:
            result['value'] = handler(payload)
        except BaseException as e:
            result['error'] = e

    thread = threading.Thread(target=target, name="botjobs-action", daemon=True)
    thread.start()
    thread.join(timeout)

    if thread.is_alive():
        raise ActionTimeout(f"timed out after {timeout:g}s")
    if 'error' in result:
        raise result['error']
    return result.get('value')


class JobExecutor:
    """
    Turns a claimed job into a terminal outcome.

    Every failure mode of a single job (unknown kind, exhausted attempts,
    handler error, timeout) becomes a failed Outcome here and never reaches
    the caller. Only store errors propagate.
    """

    def __init__(self, storage: Storage, registry: ActionRegistry, config: EngineConfig):
        self.storage = storage
        self.registry = registry
        self.config = config

    def execute(self, job: Job) -> Outcome:
        """
        Run one claimed job and write its terminal status.

        The claim is confirmed (and its stale clock restarted) just before the
        action runs. A job that was reclaimed while waiting for a thread is
        skipped and reported as "claim lost".

        Args:
            job: A job returned by Storage.claim_batch (status in_flight)

        Returns:
            Outcome.completed or Outcome.failed with a reason
        """
        claimed_at = job.claimed_at
        outcome = self._check(job)

        if outcome is None:
            claimed_at = self.storage.start_job(job.id, job.claimed_at)
            if claimed_at is None:
                logger.warning(f"Job {job.id} was reclaimed before its action started; skipping it")
                return Outcome.failed(job.id, "claim lost")
            outcome = self._run_action(job)

        if outcome.ok:
            landed = self.storage.complete_job(job.id, claimed_at)
        else:
            landed = self.storage.fail_job(job.id, claimed_at, outcome.reason)

        if not landed:
            logger.warning(
                f"Job {job.id} lost its claim before its result was recorded "
                f"(would have been {outcome.status})"
            )
            return Outcome.failed(job.id, "claim lost")
        return outcome

    def _check(self, job: Job) -> Optional[Outcome]:
        """Fail the job up front if it must not run; None means go ahead."""
        if job.attempts > self.config.max_attempts:
            logger.warning(f"Job {job.id} exceeded {self.config.max_attempts} attempts; failing it")
            return Outcome.failed(
                job.id, f"max attempts exceeded ({job.attempts}/{self.config.max_attempts})"
            )
        if job.kind not in self.registry:
            return Outcome.failed(job.id, f"unknown kind: {job.kind}")
        return None

    def _run_action(self, job: Job) -> Outcome:
        handler = self.registry.get(job.kind)
        start = time.monotonic()
        try:
            call_with_timeout(handler, job.payload, self.config.job_timeout)
        except ActionFailed as e:
            logger.info(f"Job {job.id} ({job.kind}) failed: {e.reason}")
            return Outcome.failed(job.id, e.reason)
        except ActionTimeout as e:
            logger.warning(f"Job {job.id} ({job.kind}) {e}")
            return Outcome.failed(job.id, str(e))
        except KeyboardInterrupt:
            raise
        except BaseException as e:
            logger.exception(f"Job {job.id} ({job.kind}) raised")
            return Outcome.failed(job.id, f"{type(e).__name__}: {e}")

        logger.debug(f"Job {job.id} ({job.kind}) completed in {time.monotonic() - start:.3f}s")
        return Outcome.completed(job.id)
