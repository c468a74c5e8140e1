"""
Capture worker pool.

Each worker thread loops: sweep expired leases, lease a job, run the
capture engine, store the image, then complete or fail the job. A
failing capture is classified and handed to the queue; nothing a single
job does can stop the loop.
"""

import logging
import os
import socket
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

from django.conf import settings
from django.db import close_old_connections, connection
from django.utils import timezone

from apps.core.metrics import increment_capture_failure, observe_capture_duration
from apps.core.middleware import clear_request_context, set_request_context

from .aggregator import get_aggregator
from .engine import CaptureEngine, load_engine
from .exceptions import LeaseLost, classify_capture_error
from .models import CaptureJob
from .queue import CaptureOutcome, JobQueue, get_job_queue
from .storage import save_capture

logger = logging.getLogger(__name__)


def default_worker_id(index: int) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{index}"


class CaptureWorker:
    """One worker loop. Owns its engine, since engines are thread-bound."""

    def __init__(
        self,
        worker_id: str,
        queue: JobQueue,
        engine_factory: Callable[[], CaptureEngine] = load_engine,
        stop_event: Optional[threading.Event] = None,
        poll_interval: Optional[float] = None,
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.aggregator = queue.aggregator
        self.engine_factory = engine_factory
        self.stop_event = stop_event or threading.Event()
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.CAPTURE_POLL_INTERVAL_SECONDS
        )
        self._engine: Optional[CaptureEngine] = None

    @property
    def engine(self) -> CaptureEngine:
        if self._engine is None:
            self._engine = self.engine_factory()
        return self._engine

    def run(self):
        logger.info(f"Capture worker {self.worker_id} started")
        try:
            while not self.stop_event.is_set():
                try:
                    processed = self.run_once()
                except Exception:
                    # Database hiccups and other infrastructure errors; keep polling
                    logger.exception(f"Capture worker {self.worker_id} poll cycle failed")
                    processed = False
                finally:
                    close_old_connections()
                if not processed:
                    self.stop_event.wait(self.poll_interval)
        finally:
            self.close()
            connection.close()
            logger.info(f"Capture worker {self.worker_id} stopped")

    def run_once(self) -> bool:
        """Lease and process at most one job. Returns True if a job was leased."""
        self.queue.sweep_expired_leases()
        job = self.queue.lease(self.worker_id)
        if job is None:
            return False
        try:
            self.process(job)
        finally:
            clear_request_context()
        return True

    def process(self, job: CaptureJob) -> None:
        set_request_context(str(job.id), user_id=str(job.owner_id), worker_id=self.worker_id)
        log_extra = {'job_id': str(job.id), 'worker_id': self.worker_id}

        if not self.queue.start(job.id, self.worker_id):
            logger.warning(f"Lease on job {job.id} lost before start", extra=log_extra)
            return

        def on_stage(stage: str):
            if not self.queue.heartbeat(job.id, self.worker_id):
                raise LeaseLost(f"Lease on job {job.id} was lost")
            self.aggregator.record_stage(job, stage)

        try:
            with observe_capture_duration():
                result = self.engine.render(
                    job.url,
                    job.options or {},
                    timeout=self.queue.config.timeout_seconds,
                    on_stage=on_stage,
                )
            on_stage('saving')
            image_path = save_capture(job, result.image)
        except LeaseLost as e:
            logger.warning(f"{e}; abandoning capture", extra=log_extra)
            return
        except Exception as exc:
            error_code, message, retryable = classify_capture_error(exc)
            increment_capture_failure(error_code.value)
            logger.warning(
                f"Capture of {job.url} failed with {error_code.value}: {message}",
                extra=log_extra,
            )
            self.queue.fail(job.id, error_code, message, retryable=retryable, worker_id=self.worker_id)
            return

        metadata = result.metadata()
        metadata['captured_at'] = timezone.now().isoformat()
        for key in ('frame_index', 'total_frames', 'frame_delay', 'total_scrolls'):
            if key in (job.options or {}):
                metadata[key] = job.options[key]

        self.queue.complete(
            job.id, CaptureOutcome(image_path=image_path, metadata=metadata), worker_id=self.worker_id
        )

    def close(self):
        if self._engine is not None:
            try:
                self._engine.close()
            except Exception:
                logger.exception(f"Error closing engine for worker {self.worker_id}")
            self._engine = None


class WorkerPool:
    """
    Fixed-size pool of capture workers sharing one stop signal.

    Usage:
        pool = WorkerPool(size=5)
        pool.start()
        ...
        pool.stop()
    """

    def __init__(
        self,
        size: Optional[int] = None,
        queue: Optional[JobQueue] = None,
        engine_factory: Callable[[], CaptureEngine] = load_engine,
        poll_interval: Optional[float] = None,
        worker_id_factory: Callable[[int], str] = default_worker_id,
    ):
        self.size = size or settings.CAPTURE_WORKER_CONCURRENCY
        self.queue = queue or get_job_queue()
        self.stop_event = threading.Event()
        self.workers: List[CaptureWorker] = [
            CaptureWorker(
                worker_id=worker_id_factory(index),
                queue=self.queue,
                engine_factory=engine_factory,
                stop_event=self.stop_event,
                poll_interval=poll_interval,
            )
            for index in range(self.size)
        ]
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures = []

    def start(self):
        if self._executor is not None:
            return
        self.stop_event.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.size, thread_name_prefix='capture-worker')
        self._futures = [self._executor.submit(worker.run) for worker in self.workers]
        logger.info(f"Capture worker pool started with {self.size} workers")

    def stop(self, wait: bool = True):
        self.stop_event.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Capture worker pool stopped")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called from elsewhere, or the timeout passes."""
        return self.stop_event.wait(timeout)

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """
        Process queued jobs on the calling thread until none are available.

        Jobs held back by a retry backoff are not waited for.
        """
        worker = self.workers[0]
        processed = 0
        try:
            while max_jobs is None or processed < max_jobs:
                if not worker.run_once():
                    break
                processed += 1
        finally:
            worker.close()
        return processed
