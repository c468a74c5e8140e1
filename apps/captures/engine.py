"""
Capture engine: renders a URL to PNG bytes.

The worker pool only depends on ``CaptureEngine``; the default
implementation drives headless Chromium through Playwright's sync API.
Playwright sync objects are bound to the thread that created them, so
each worker thread builds its own engine via ``load_engine()``.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from django.conf import settings
from django.utils.module_loading import import_string

from apps.core.exceptions import ErrorCode
from apps.core.security import SSRFError, validate_url_ssrf

from .exceptions import PermanentCaptureError, TransientCaptureError

logger = logging.getLogger(__name__)

StageCallback = Callable[[str], None]


@dataclass
class CaptureResult:
    """Rendered screenshot plus what we learned about the page."""
    image: bytes
    final_url: str = ''
    title: str = ''
    width: int = 0
    height: int = 0
    extra: Dict[str, Any] = field(default_factory=dict)

    def metadata(self) -> Dict[str, Any]:
        data = {
            'title': self.title,
            'width': self.width,
            'height': self.height,
            'file_size': len(self.image),
            'final_url': self.final_url,
        }
        data.update(self.extra)
        return data


class CaptureEngine(ABC):
    """Renders one page per call. Slow, and allowed to fail."""

    @abstractmethod
    def render(self, url: str, options: Dict[str, Any], timeout: float,
               on_stage: Optional[StageCallback] = None) -> CaptureResult:
        """
        Capture ``url``.

        Calls ``on_stage`` with 'navigating', 'waiting' and 'rendering' as
        it passes those milestones. Raises TransientCaptureError or
        PermanentCaptureError; must give up once ``timeout`` seconds pass.
        """
        pass

    def close(self) -> None:
        pass


MAX_SCROLL_STEPS = 50

# Scrolls in steps towards ``target`` and stops early when the page stops
# moving. Never runs past ``maxSteps`` steps or ``deadlineMs``.
SCROLL_TO_SCRIPT = """
async ({selector, target, stepSize, interval, maxSteps, deadlineMs}) => {
    const found = selector ? document.querySelector(selector) : null;
    const el = found || document.scrollingElement || document.documentElement;
    const sleep = (ms) => new Promise((resolve) => setTimeout(resolve, ms));
    const atEnd = () => el.scrollTop + el.clientHeight >= el.scrollHeight - 1;
    const scroll = async () => {
        let steps = 0;
        let stalled = false;
        while (el.scrollTop < target && steps < maxSteps) {
            const before = el.scrollTop;
            el.scrollBy(0, Math.min(stepSize, target - before));
            steps += 1;
            await sleep(interval);
            if (el.scrollTop === before) {
                stalled = true;
                break;
            }
        }
        return {position: el.scrollTop, steps, reachedEnd: stalled || atEnd(), timedOut: false};
    };
    const expired = sleep(deadlineMs).then(
        () => ({position: el.scrollTop, steps: null, reachedEnd: false, timedOut: true})
    );
    return Promise.race([scroll(), expired]);
}
"""

PAGE_SIZE_SCRIPT = """
() => ({
    width: Math.max(document.documentElement.scrollWidth, document.body ? document.body.scrollWidth : 0),
    height: Math.max(document.documentElement.scrollHeight, document.body ? document.body.scrollHeight : 0),
})
"""


class PlaywrightCaptureEngine(CaptureEngine):
    """
    Headless Chromium screenshots.

    Navigation waits for network idle and falls back to DOMContentLoaded
    for pages that never go idle (long polling, analytics beacons).
    """

    def __init__(self, headless: bool = True, viewport: Optional[Dict[str, int]] = None,
                 user_agent: Optional[str] = None):
        from playwright.sync_api import sync_playwright

        self.headless = headless
        self.viewport = viewport or dict(settings.CAPTURE_VIEWPORT)
        self.user_agent = user_agent
        self._sync_playwright = sync_playwright
        self._playwright = None
        self._browser = None

    def _ensure_browser(self):
        if self._browser is None or not self._browser.is_connected():
            if self._playwright is None:
                self._playwright = self._sync_playwright().start()
            self._browser = self._playwright.chromium.launch(headless=self.headless)
            logger.info("Playwright browser started")

    def render(self, url, options, timeout, on_stage=None):
        from playwright.sync_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeout

        on_stage = on_stage or (lambda stage: None)
        deadline = time.monotonic() + timeout

        def remaining_ms():
            left = deadline - time.monotonic()
            if left <= 0:
                raise TransientCaptureError(
                    f"Capture exceeded {timeout}s", code=ErrorCode.CAPTURE_TIMEOUT
                )
            return int(left * 1000)

        try:
            validate_url_ssrf(url)
        except SSRFError as e:
            raise PermanentCaptureError(str(e), code=ErrorCode.SSRF_BLOCKED)

        context = None
        try:
            self._ensure_browser()
            context_options = {
                'viewport': options.get('viewport') or self.viewport,
                'ignore_https_errors': True,
            }
            if self.user_agent:
                context_options['user_agent'] = self.user_agent
            context = self._browser.new_context(**context_options)
            page = context.new_page()

            on_stage('navigating')
            response = self._navigate(page, url, remaining_ms, PlaywrightTimeout)
            if response is not None and response.status >= 400:
                raise PermanentCaptureError(
                    f"Page responded with HTTP {response.status}", code=ErrorCode.RENDER_ERROR
                )

            on_stage('waiting')
            self._settle(page, options, remaining_ms)
            extra = {}
            if options.get('scroll_index'):
                extra = self._scroll(page, options, remaining_ms)

            on_stage('rendering')
            image = page.screenshot(
                full_page=options.get('full_page', True),
                type='png',
                timeout=remaining_ms(),
            )
            size = page.evaluate(PAGE_SIZE_SCRIPT)

            return CaptureResult(
                image=image,
                final_url=page.url,
                title=page.title(),
                width=size.get('width', 0),
                height=size.get('height', 0),
                extra=extra,
            )
        except PlaywrightTimeout as e:
            raise TransientCaptureError(str(e), code=ErrorCode.CAPTURE_TIMEOUT)
        except PlaywrightError as e:
            raise self._translate(e)
        finally:
            if context is not None:
                try:
                    context.close()
                except PlaywrightError as e:
                    logger.warning(f"Error closing browser context: {e}")

    def _navigate(self, page, url, remaining_ms, timeout_error):
        try:
            return page.goto(url, wait_until='networkidle', timeout=remaining_ms())
        except timeout_error:
            logger.info(f"networkidle timed out for {url}, falling back to domcontentloaded")
            return page.goto(url, wait_until='domcontentloaded', timeout=remaining_ms())

    def _settle(self, page, options, remaining_ms):
        wait_selector = options.get('wait_selector')
        if wait_selector:
            page.wait_for_selector(wait_selector, timeout=remaining_ms())

        frame_delay = options.get('frame_delay')
        if frame_delay:
            delay_ms = int(float(frame_delay) * 1000)
            remaining = remaining_ms()
            if delay_ms >= remaining:
                raise PermanentCaptureError(
                    f"Frame delay {frame_delay}s does not fit in the capture timeout",
                    code=ErrorCode.RENDER_ERROR,
                )
            page.wait_for_timeout(delay_ms)

    def _scroll(self, page, options, remaining_ms) -> Dict[str, Any]:
        """
        Scroll a scroll frame into position before its viewport capture.

        The walk is capped in steps and by the capture deadline, and stops
        early at the end of the page.
        """
        scroll = options.get('scroll') or {}
        target = max(0, int(options.get('scroll_position', 0)))
        step_size = max(1, int(scroll.get('step_size') or 500))
        needed = -(-target // step_size)

        state = page.evaluate(SCROLL_TO_SCRIPT, {
            'selector': scroll.get('selector') or None,
            'target': target,
            'stepSize': step_size,
            'interval': int(scroll.get('interval', 0)),
            'maxSteps': min(needed, MAX_SCROLL_STEPS),
            'deadlineMs': remaining_ms(),
        })
        if state.get('timedOut'):
            raise TransientCaptureError(
                f"Scrolling to {target}px did not finish before the capture timeout",
                code=ErrorCode.CAPTURE_TIMEOUT,
            )
        return {
            'scroll_index': options['scroll_index'],
            'scroll_position': int(state.get('position') or 0),
            'reached_end': bool(state.get('reachedEnd')),
        }

    def _translate(self, error) -> Exception:
        message = str(error)
        if 'ERR_NAME_NOT_RESOLVED' in message:
            return TransientCaptureError(message, code=ErrorCode.DNS_ERROR)
        if 'ERR_CERT' in message or 'SSL' in message:
            return PermanentCaptureError(message, code=ErrorCode.SSL_ERROR)
        if 'Cannot navigate to invalid URL' in message or 'ERR_INVALID_URL' in message:
            return PermanentCaptureError(message, code=ErrorCode.INVALID_URL)
        if 'net::' in message:
            return TransientCaptureError(message, code=ErrorCode.NETWORK_ERROR)
        # Browser crashes, closed targets and anything else get another attempt
        return TransientCaptureError(message, code=ErrorCode.UNKNOWN_ERROR)

    def close(self):
        if self._browser is not None:
            self._browser.close()
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None
        logger.info("Playwright browser closed")


def load_engine() -> CaptureEngine:
    """Instantiate the engine class named by CAPTURE_ENGINE."""
    engine_class = import_string(settings.CAPTURE_ENGINE)
    return engine_class()
