"""
Run the capture worker pool in the foreground.

Usage:
    python manage.py run_capture_workers
    python manage.py run_capture_workers --concurrency 2
    python manage.py run_capture_workers --drain   # process what is queued, then exit
"""

import signal
import threading

from django.core.exceptions import ImproperlyConfigured
from django.core.management.base import BaseCommand, CommandError

from apps.captures.queue import JobQueue, QueueConfig
from apps.captures.worker import WorkerPool


class Command(BaseCommand):
    help = 'Run the screenshot capture worker pool'

    def add_arguments(self, parser):
        parser.add_argument(
            '--concurrency',
            type=int,
            default=None,
            help='Number of worker threads (default: CAPTURE_WORKER_CONCURRENCY)'
        )
        parser.add_argument(
            '--poll-interval',
            type=float,
            default=None,
            help='Seconds to wait when the queue is empty (default: CAPTURE_POLL_INTERVAL_SECONDS)'
        )
        parser.add_argument(
            '--drain',
            action='store_true',
            help='Process currently queued jobs on a single worker and exit'
        )
        parser.add_argument(
            '--max-jobs',
            type=int,
            default=None,
            help='With --drain, stop after this many jobs'
        )

    def handle(self, *args, **options):
        try:
            config = QueueConfig.from_settings()
        except ImproperlyConfigured as e:
            raise CommandError(str(e))

        pool = WorkerPool(
            size=options['concurrency'],
            queue=JobQueue(config=config),
            poll_interval=options['poll_interval'],
        )

        if options['drain']:
            processed = pool.drain(max_jobs=options['max_jobs'])
            self.stdout.write(self.style.SUCCESS(f"Processed {processed} capture job(s)"))
            return

        stopped = threading.Event()

        def request_stop(signum, frame):
            self.stdout.write(f"Received signal {signum}, stopping workers...")
            stopped.set()

        signal.signal(signal.SIGTERM, request_stop)
        signal.signal(signal.SIGINT, request_stop)

        self.stdout.write(
            f"Starting {pool.size} capture workers "
            f"(lease {config.lease_seconds}s, timeout {config.timeout_seconds}s, "
            f"{config.max_attempts} attempts)"
        )
        pool.start()
        try:
            stopped.wait()
        finally:
            pool.stop(wait=True)
        self.stdout.write(self.style.SUCCESS("Capture workers stopped"))
