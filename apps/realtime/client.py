"""
Client side of the progress protocol.

ProgressSubscriber keeps the latest state of every job and collection a
session can see, built from live events and corrected by a full snapshot
after every (re)connect. ImageHandleCache owns materialized screenshots.
The two are deliberately separate: no progress event, however late,
duplicated or unrelated, can release an image a view is holding. Only
``release``, ``evict`` and ``teardown`` do that.
"""

import json
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional
from urllib.parse import urljoin

import requests
from websockets.exceptions import ConnectionClosed
from websockets.sync.client import connect

from .events import SUBJECT_COLLECTION, SUBJECT_JOB, ProgressEvent

logger = logging.getLogger(__name__)


# =============================================================================
# Progress state
# =============================================================================

def _finished(event: ProgressEvent) -> int:
    """Jobs settled so far in a collection event; 0 for job events."""
    return (event.completed_count or 0) + (event.failed_count or 0)


class ProgressSubscriber:
    """
    Latest known state per subject.

    - percent never goes backwards for a subject; an out-of-order update
      with a lower percent or fewer settled jobs is dropped whole, so its
      stage and counters never overwrite newer ones
    - once a subject is terminal, later events for it are ignored, so a
      duplicated completion is applied once
    - job and collection state are tracked independently
    - reconcile() replaces everything with the server's snapshot
    """

    def __init__(self, on_change: Optional[Callable[[ProgressEvent], None]] = None):
        self._state: Dict[tuple, ProgressEvent] = {}
        self._lock = threading.Lock()
        self.on_change = on_change
        self.needs_reconcile = True

    def apply(self, event: ProgressEvent) -> bool:
        """Merge one live event. Returns True if the visible state changed."""
        with self._lock:
            current = self._state.get(event.key)
            if current is not None:
                if current.is_terminal:
                    return False
                if _finished(event) < _finished(current):
                    return False
                if event.percent < current.percent:
                    if not event.is_terminal:
                        return False
                    event = replace(event, percent=current.percent)
            self._state[event.key] = event

        if self.on_change is not None:
            self.on_change(event)
        return True

    def handle_message(self, raw) -> Optional[str]:
        """
        Process one websocket frame.

        Returns the frame type. A ``hello`` marks the state stale until
        reconcile() is called.
        """
        frame = json.loads(raw)
        frame_type = frame.pop('type', None)
        if frame_type == 'hello':
            self.needs_reconcile = True
        elif frame_type == 'progress':
            self.apply(ProgressEvent.from_dict(frame))
        else:
            logger.debug(f"Ignoring unknown progress frame type {frame_type!r}")
        return frame_type

    def reconcile(self, snapshot: Dict[str, list]) -> None:
        """Replace local state with a /api/progress/state/ snapshot."""
        state = {}
        for item in snapshot.get('jobs', []) + snapshot.get('collections', []):
            event = ProgressEvent.from_dict(item)
            state[event.key] = event
        with self._lock:
            self._state = state
            self.needs_reconcile = False

    def get(self, subject_kind: str, subject_id) -> Optional[ProgressEvent]:
        with self._lock:
            return self._state.get((subject_kind, str(subject_id)))

    def job(self, job_id) -> Optional[ProgressEvent]:
        return self.get(SUBJECT_JOB, job_id)

    def collection(self, collection_id) -> Optional[ProgressEvent]:
        return self.get(SUBJECT_COLLECTION, collection_id)

    def state(self) -> Dict[tuple, ProgressEvent]:
        with self._lock:
            return dict(self._state)


class ProgressClient:
    """
    Keeps a ProgressSubscriber in sync with the server.

    Connects to the progress socket, reconciles from the state endpoint
    whenever the server says hello, and reconnects with backoff after a
    dropped connection.
    """

    def __init__(self, api_url: str, ws_url: str, token: str,
                 subscriber: Optional[ProgressSubscriber] = None,
                 session: Optional[requests.Session] = None,
                 project_id=None, timeout: float = 10):
        self.api_url = api_url.rstrip('/') + '/'
        self.ws_url = ws_url
        self.token = token
        self.subscriber = subscriber or ProgressSubscriber()
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f"Bearer {token}"
        self.project_id = project_id
        self.timeout = timeout
        self._stop = threading.Event()

    def fetch_snapshot(self) -> Dict[str, list]:
        params = {'project_id': str(self.project_id)} if self.project_id else None
        response = self.session.get(
            urljoin(self.api_url, 'api/progress/state/'), params=params, timeout=self.timeout
        )
        response.raise_for_status()
        return response.json()

    def sync(self) -> None:
        self.subscriber.reconcile(self.fetch_snapshot())

    def handle_message(self, raw) -> None:
        if self.subscriber.handle_message(raw) == 'hello':
            self.sync()

    def run_once(self) -> None:
        """One connection's lifetime; returns when the server closes it."""
        separator = '&' if '?' in self.ws_url else '?'
        with connect(f"{self.ws_url}{separator}token={self.token}") as websocket:
            while not self._stop.is_set():
                try:
                    raw = websocket.recv(timeout=1)
                except TimeoutError:
                    continue
                self.handle_message(raw)

    def run(self, max_backoff: float = 30) -> None:
        backoff = 1.0
        while not self._stop.is_set():
            try:
                self.run_once()
                backoff = 1.0
            except (ConnectionClosed, OSError, requests.RequestException) as e:
                logger.warning(f"Progress connection lost ({e}); reconnecting in {backoff:.0f}s")
                self._stop.wait(backoff)
                backoff = min(max_backoff, backoff * 2)

    def stop(self) -> None:
        self._stop.set()


# =============================================================================
# Image handles
# =============================================================================

class HandleRevoked(Exception):
    """The handle's image was released, evicted or torn down."""
    pass


@dataclass
class ImageHandle:
    job_id: str
    _data: Optional[bytes] = field(default=None, repr=False)
    refs: int = 0
    revoked: bool = False

    @property
    def data(self) -> bytes:
        if self.revoked:
            raise HandleRevoked(f"Image for job {self.job_id} is no longer available")
        return self._data

    def _revoke(self):
        self.revoked = True
        self._data = None


class ImageHandleCache:
    """
    Ref-counted cache of materialized screenshots keyed by job id.

    acquire() loads on first use and hands out the same handle to later
    callers. The image is freed when the last holder releases it, when
    the job is evicted (removed from view) or at teardown.
    """

    def __init__(self, loader: Callable[[str], bytes]):
        self.loader = loader
        self._handles: Dict[str, ImageHandle] = {}
        self._lock = threading.Lock()

    def acquire(self, job_id) -> ImageHandle:
        job_id = str(job_id)
        with self._lock:
            handle = self._handles.get(job_id)
            if handle is not None:
                handle.refs += 1
                return handle

        data = self.loader(job_id)

        with self._lock:
            handle = self._handles.get(job_id)
            if handle is None:
                handle = ImageHandle(job_id=job_id, _data=data)
                self._handles[job_id] = handle
            handle.refs += 1
            return handle

    def release(self, handle: ImageHandle) -> None:
        with self._lock:
            if handle.revoked:
                return
            handle.refs -= 1
            if handle.refs <= 0:
                self._handles.pop(handle.job_id, None)
                handle._revoke()

    def evict(self, job_id) -> bool:
        with self._lock:
            handle = self._handles.pop(str(job_id), None)
        if handle is None:
            return False
        handle._revoke()
        return True

    def teardown(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle._revoke()
        logger.debug(f"Image cache torn down, released {len(handles)} handles")

    def __contains__(self, job_id) -> bool:
        with self._lock:
            return str(job_id) in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def job_ids(self) -> List[str]:
        with self._lock:
            return list(self._handles.keys())


class HTTPImageLoader:
    """Loads a completed job's screenshot through the captures API."""

    def __init__(self, api_url: str, token: str, session: Optional[requests.Session] = None,
                 timeout: float = 30):
        self.api_url = api_url.rstrip('/') + '/'
        self.session = session or requests.Session()
        self.session.headers['Authorization'] = f"Bearer {token}"
        self.timeout = timeout

    def __call__(self, job_id: str) -> bytes:
        detail = self.session.get(urljoin(self.api_url, f"api/captures/{job_id}/"), timeout=self.timeout)
        detail.raise_for_status()
        image_url = detail.json().get('image_url')
        if not image_url:
            raise ValueError(f"Capture {job_id} has no image yet")

        image = self.session.get(urljoin(self.api_url, image_url), timeout=self.timeout)
        image.raise_for_status()
        return image.content
