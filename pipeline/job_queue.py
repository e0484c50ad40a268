"""
In-process work queue for fire-and-forget jobs.

Request handlers submit a coroutine function and get a job id back at once;
a consumer task started in the app lifespan drains the queue. Job progress is
never tracked here beyond a coarse label: the database rows are the status.
"""

import asyncio
import logging
from collections import OrderedDict
from typing import Any, Callable, Coroutine, Dict, List, Optional
from uuid import uuid4

log = logging.getLogger(__name__)

JobFunc = Callable[..., Coroutine[Any, Any, Any]]


class JobQueue:
    """asyncio.Queue drained by `workers` consumer tasks"""

    def __init__(self, workers: int = 1, history: int = 1000):
        self.workers = workers
        self.history = history
        self._queue: Optional[asyncio.Queue] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: List[asyncio.Task] = []
        self._labels: Dict[str, str] = {}
        # Finished jobs, oldest first, capped at `history`
        self._finished: "OrderedDict[str, str]" = OrderedDict()

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start the consumers on the running event loop"""
        if self.running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._drain(n), name=f"job-queue-{n}") for n in range(self.workers)
        ]
        log.info(f"Job queue started with {self.workers} worker(s)")

    async def stop(self) -> None:
        """Cancel the consumers; queued jobs that never started are dropped"""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._labels.clear()
        if tasks:
            log.info("Job queue stopped")

    def submit(self, label: str, func: JobFunc, *args: Any) -> str:
        """
        Enqueue `func(*args)` and return its job id.
        Safe to call from the loop thread or from a worker thread.
        """
        if not self.running:
            raise RuntimeError("Job queue is not running")

        job_id = uuid4().hex
        item = (job_id, label, func, args)
        self._labels[job_id] = "queued"

        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is self._loop:
            self._queue.put_nowait(item)
        else:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)

        log.info(f"Queued job {job_id} ({label})")
        return job_id

    def status(self, job_id: str) -> str:
        return self._labels.get(job_id) or self._finished.get(job_id, "unknown")

    async def join(self) -> None:
        """Wait until every submitted job has finished"""
        if self._queue is not None:
            await self._queue.join()

    async def _drain(self, worker: int) -> None:
        while True:
            job_id, label, func, args = await self._queue.get()
            self._labels[job_id] = "running"
            outcome = "failed"
            try:
                log.info(f"Starting job {job_id} ({label}) on worker {worker}")
                await func(*args)
                outcome = "done"
                log.info(f"Finished job {job_id} ({label})")
            except asyncio.CancelledError:
                outcome = "cancelled"
                raise
            except Exception:
                log.exception(f"Job {job_id} ({label}) failed")
            finally:
                self._finish(job_id, outcome)
                self._queue.task_done()

    def _finish(self, job_id: str, outcome: str) -> None:
        self._labels.pop(job_id, None)
        self._finished[job_id] = outcome
        while len(self._finished) > self.history:
            self._finished.popitem(last=False)
