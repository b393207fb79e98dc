"""Dispatch executor - runs routed jobs off the request path.

Jobs for one event run concurrently on a shared thread pool. A failed
job is resubmitted to the pool once (never retried inline), final
failures are logged, and results are kept for observability. When the
last job of a batch settles, the batch's completion callback runs; the
pipeline uses it to keep or release the subject's cooldown claim.
"""
import logging
import threading
from collections import Counter, deque
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Deque, Dict, List, Mapping, Optional, Sequence

from keepwatch.shared.models import Channel, DispatchJob
from .dispatchers import DispatchError, DispatchResult, Dispatcher

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

CompletionCallback = Callable[[List[DispatchResult]], None]


class DispatchBatch:
    """Results for the jobs of one event, filled in as they settle."""
    
    def __init__(
        self,
        event_id: str,
        jobs: Sequence[DispatchJob],
        on_complete: Optional[CompletionCallback] = None,
    ):
        self.event_id = event_id
        self.jobs = list(jobs)
        self.results: List[DispatchResult] = []
        self._on_complete = on_complete
        self._lock = threading.Lock()
        self._done = threading.Event()
    
    @property
    def done(self) -> bool:
        return self._done.is_set()
    
    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every job settled. Only tests and shutdown need this."""
        return self._done.wait(timeout)
    
    def result_for(self, channel: Channel) -> Optional[DispatchResult]:
        with self._lock:
            for result in self.results:
                if result.channel == channel:
                    return result
        return None
    
    def _settle(self, result: DispatchResult) -> None:
        with self._lock:
            self.results.append(result)
            finished = len(self.results) == len(self.jobs)
            snapshot = list(self.results)
        
        if finished:
            self._finish(snapshot)
    
    def _finish(self, results: List[DispatchResult]) -> None:
        if self._on_complete is not None:
            try:
                self._on_complete(results)
            except Exception as e:
                logger.error(
                    "DISPATCH_COMPLETION_CALLBACK_FAILED",
                    extra={"event_id": self.event_id, "error": str(e)}
                )
        self._done.set()


class DispatchExecutor:
    """Fire-and-forget job runner with one retry per job."""
    
    def __init__(
        self,
        dispatchers: Mapping[Channel, Dispatcher],
        max_workers: int = 8,
        history_size: int = 500,
    ):
        """Initialize executor.
        
        Args:
            dispatchers: Dispatcher per channel
            max_workers: Thread pool size
            history_size: Number of final results kept for inspection
        """
        self.dispatchers: Dict[Channel, Dispatcher] = dict(dispatchers)
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dispatch")
        self._history: Deque[DispatchResult] = deque(maxlen=history_size)
        self._counts: Counter = Counter()
        self._stats_lock = threading.Lock()
        
        logger.info(
            "DISPATCH_EXECUTOR_INITIALIZED",
            extra={
                "channels": sorted(c.value for c in self.dispatchers),
                "max_workers": max_workers,
            }
        )
    
    def submit(
        self,
        event_id: str,
        jobs: Sequence[DispatchJob],
        on_complete: Optional[CompletionCallback] = None,
    ) -> DispatchBatch:
        """Schedule jobs and return immediately.
        
        Args:
            event_id: Event the jobs belong to, for logs
            jobs: Routed jobs
            on_complete: Called once with all final results
            
        Returns:
            DispatchBatch that fills in as jobs settle
        """
        batch = DispatchBatch(event_id, jobs, on_complete)
        if not batch.jobs:
            batch._finish([])
            return batch
        
        for job in batch.jobs:
            self._schedule(job, batch, attempt=1)
        
        logger.info(
            "DISPATCH_SCHEDULED",
            extra={
                "event_id": event_id,
                "channels": [job.channel.value for job in batch.jobs],
            }
        )
        return batch
    
    def _schedule(self, job: DispatchJob, batch: DispatchBatch, attempt: int) -> None:
        try:
            self._pool.submit(self._run, job, batch, attempt)
        except RuntimeError as e:
            # Pool already shut down
            self._finalize(
                batch,
                DispatchError(
                    job_id=job.job_id,
                    channel=job.channel,
                    attempts=attempt,
                    error=f"executor unavailable: {e}",
                    retryable=False,
                ),
            )
    
    def _run(self, job: DispatchJob, batch: DispatchBatch, attempt: int) -> None:
        dispatcher = self.dispatchers.get(job.channel)
        if dispatcher is None:
            result: DispatchResult = DispatchError(
                job_id=job.job_id,
                channel=job.channel,
                attempts=attempt,
                error="no dispatcher for channel",
                retryable=False,
            )
        else:
            try:
                result = dispatcher.dispatch(job, attempt)
            except Exception as e:
                result = DispatchError(
                    job_id=job.job_id,
                    channel=job.channel,
                    attempts=attempt,
                    error=f"{type(e).__name__}: {e}",
                )
        
        if (
            isinstance(result, DispatchError)
            and result.retryable
            and attempt < MAX_ATTEMPTS
        ):
            logger.info(
                "DISPATCH_RETRY_SCHEDULED",
                extra={
                    "event_id": batch.event_id,
                    "job_id": job.job_id,
                    "channel": job.channel.value,
                    "error": result.error,
                }
            )
            self._schedule(job, batch, attempt + 1)
            return
        
        self._finalize(batch, result)
    
    def _finalize(self, batch: DispatchBatch, result: DispatchResult) -> None:
        with self._stats_lock:
            self._history.append(result)
            self._counts[(result.channel, result.ok)] += 1
        
        if result.ok:
            logger.info(
                "DISPATCH_SUCCEEDED",
                extra={
                    "event_id": batch.event_id,
                    "job_id": result.job_id,
                    "channel": result.channel.value,
                    "attempts": result.attempts,
                }
            )
        else:
            log = logger.critical if result.channel == Channel.MANDATORY_REPORT else logger.error
            log(
                "DISPATCH_FAILED",
                extra={
                    "event_id": batch.event_id,
                    "job_id": result.job_id,
                    "channel": result.channel.value,
                    "attempts": result.attempts,
                    "error": result.error,
                }
            )
        
        batch._settle(result)
    
    def recent_results(self) -> List[DispatchResult]:
        with self._stats_lock:
            return list(self._history)
    
    def stats(self) -> Dict[str, Dict[str, int]]:
        """Final success/failure counts per channel."""
        with self._stats_lock:
            counts = dict(self._counts)
        
        summary: Dict[str, Dict[str, int]] = {}
        for (channel, ok), n in counts.items():
            entry = summary.setdefault(channel.value, {"succeeded": 0, "failed": 0})
            entry["succeeded" if ok else "failed"] += n
        return summary
    
    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
        logger.info("DISPATCH_EXECUTOR_SHUTDOWN")
