"""
Run the progress websocket server in the foreground.

Usage:
    python manage.py run_progress_server
    python manage.py run_progress_server --host 127.0.0.1 --port 9000
"""

import asyncio
import signal

from django.core.management.base import BaseCommand

from apps.realtime.server import build_server


class Command(BaseCommand):
    help = 'Serve live capture progress over websockets'

    def add_arguments(self, parser):
        parser.add_argument(
            '--host',
            type=str,
            default=None,
            help='Interface to bind (default: PROGRESS_WS_HOST)'
        )
        parser.add_argument(
            '--port',
            type=int,
            default=None,
            help='Port to bind (default: PROGRESS_WS_PORT)'
        )

    def handle(self, *args, **options):
        server = build_server(host=options['host'], port=options['port'])
        self.stdout.write(f"Progress server on ws://{server.host}:{server.port}{server.path}")
        asyncio.run(self._run(server))
        self.stdout.write(self.style.SUCCESS("Progress server stopped"))

    async def _run(self, server):
        loop = asyncio.get_running_loop()
        stop = loop.create_future()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, lambda: stop.done() or stop.set_result(None))
        await server.serve(stop)
