from __future__ import annotations

import queue
import threading
from typing import Optional

import structlog

from ..core.errors import QueueDisconnected
from ..core.models import Job

log = structlog.get_logger(__name__)

GET_POLL_INTERVAL_S = 0.5


class JobQueue:
    """Bounded job queue between the request handler and the worker.

    Submitting never blocks: when the queue is full the job is dropped. Once the
    queue is closed, submitting raises ``QueueDisconnected`` and the consumer
    receives ``None`` after the remaining jobs.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("job queue capacity must be at least 1")
        self.capacity = capacity
        self._queue: "queue.Queue[Job]" = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()

    def submit(self, job: Job) -> bool:
        """Enqueue ``job``; return False if it was dropped because the queue is full."""
        if self._closed.is_set():
            raise QueueDisconnected("job queue disconnected")
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            log.error("dropping_job_queue_full", job=repr(job), capacity=self.capacity)
            return False
        log.info("job_enqueued", job=repr(job), queue_size=self._queue.qsize())
        return True

    def get(self) -> Optional[Job]:
        """Block until a job is available; None once the queue is closed and drained."""
        while True:
            try:
                return self._queue.get(timeout=GET_POLL_INTERVAL_S)
            except queue.Empty:
                if self._closed.is_set():
                    return None

    def close(self) -> None:
        self._closed.set()

    def __len__(self) -> int:
        return self._queue.qsize()
