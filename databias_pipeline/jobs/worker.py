"""Queue consumers: worker threads, heartbeat and the ``databias-worker`` entrypoint.

Each consumer thread claims one job at a time; WORKER_CONCURRENCY controls the
thread count (1 by default, so jobs run strictly sequentially). Stopping sets
an event, closes the queue so no new jobs are claimed and waits up to
WORKER_SHUTDOWN_TIMEOUT_SEC for in-flight attempts. An attempt that does not
finish in time keeps its lock until it expires and is then redelivered.
"""
from __future__ import annotations

import signal
import threading
import time
from dataclasses import dataclass
from typing import List, Optional

from ..core.config import settings
from ..core.logger import get_logger
from .queue import JobQueue, default_worker_id

logger = get_logger(__name__)


@dataclass
class WorkerState:
    """Counters reported by the heartbeat."""

    processed_count: int = 0
    error_count: int = 0
    last_job_id: Optional[int] = None
    last_processed_at: Optional[float] = None
    last_error: Optional[str] = None


class QueueWorker:
    def __init__(
        self,
        queue: JobQueue,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        heartbeat_interval: Optional[float] = None,
        worker_id: Optional[str] = None,
    ):
        self.queue = queue
        self.concurrency = max(1, concurrency or settings.WORKER_CONCURRENCY)
        self.poll_interval = settings.WORKER_POLL_INTERVAL_SEC if poll_interval is None else poll_interval
        self.heartbeat_interval = max(
            1.0, settings.WORKER_HEARTBEAT_INTERVAL_SEC if heartbeat_interval is None else heartbeat_interval
        )
        self.worker_id = worker_id or default_worker_id()
        self.state = WorkerState()
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._state_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._consume, args=(f"{self.worker_id}/{i}",), name=f"queue-worker-{i}", daemon=True)
            for i in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(
            "worker_started",
            queue=self.queue.name,
            concurrency=self.concurrency,
            poll_interval_sec=self.poll_interval,
        )

    def _consume(self, consumer_id: str) -> None:
        while not self._stop.is_set():
            try:
                job = self.queue.process_next(consumer_id)
            except Exception as e:
                with self._state_lock:
                    self.state.error_count += 1
                    self.state.last_error = str(e)
                logger.exception("worker_iteration_failed", consumer=consumer_id, error=str(e))
                self._stop.wait(self.poll_interval)
                continue
            if job is None:
                self._stop.wait(self.poll_interval)
                continue
            with self._state_lock:
                self.state.processed_count += 1
                self.state.last_job_id = job.id
                self.state.last_processed_at = time.time()
                if job.last_error:
                    self.state.last_error = job.last_error

    def heartbeat(self) -> None:
        logger.info(
            "worker_heartbeat",
            queue=self.queue.name,
            alive_threads=sum(1 for t in self._threads if t.is_alive()),
            processed_count=self.state.processed_count,
            error_count=self.state.error_count,
            last_job_id=self.state.last_job_id,
            last_processed_at=self.state.last_processed_at,
            last_error=self.state.last_error,
            jobs=self.queue.counts(),
        )

    def request_stop(self) -> None:
        self._stop.set()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop consuming; returns True when every in-flight attempt finished."""
        timeout = settings.WORKER_SHUTDOWN_TIMEOUT_SEC if timeout is None else timeout
        self._stop.set()
        drained = self.queue.close(timeout=timeout)
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("worker_shutdown_timeout", timeout_sec=timeout, threads=alive)
        else:
            logger.info("worker_stopped", processed_count=self.state.processed_count)
        return drained and not alive

    def run_forever(self) -> None:
        """Start consumers and block with periodic heartbeats until stopped."""
        self.start()
        try:
            while not self._stop.wait(self.heartbeat_interval):
                try:
                    self.heartbeat()
                except Exception as e:
                    logger.warning("worker_heartbeat_failed", error=str(e))
        except KeyboardInterrupt:
            logger.info("worker_shutdown_signal")
        finally:
            self.stop()


def main() -> None:
    """Run a standalone worker against the configured database and object store."""
    from .processor import build_processor

    processor = build_processor()
    worker = QueueWorker(processor.queue)

    def _request_stop(signum, frame):
        logger.info("worker_shutdown_signal", signal=signal.Signals(signum).name)
        worker.request_stop()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    worker.run_forever()


if __name__ == "__main__":
    main()
