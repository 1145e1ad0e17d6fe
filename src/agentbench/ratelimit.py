"""Rate-limit handling for model provider calls.

:class:`RetryAfterTransport` sits under the provider's ``httpx`` client and
records the server's wait hint whenever a request comes back 429.
:class:`RateLimitedModel` wraps a model handle, throttles proactively
against configured RPM/TPM budgets and retries 429 failures using that
hint.
"""

from __future__ import annotations

import asyncio
import collections
import logging
import re
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from agentbench.models import ProviderConfig, RateLimitStats

logger = logging.getLogger(__name__)

HINT_MAX_AGE = 60.0
HINT_FRESH_WINDOW = 5.0
HINT_BUFFER = 10.0
MIN_DATE_WAIT = 1.0
DEFAULT_MAX_RETRIES = 3
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 60.0

_RETRY_AFTER_TEXT = re.compile(r"retry after (\d+) seconds?", re.IGNORECASE)
_RATE_LIMIT_MARKERS = ("429", "rate limit", "rate_limit", "too many requests", "quota exceeded")


def parse_retry_after(value: str, now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` value: integer seconds or an HTTP date.

    A date in the past yields the one second minimum. Returns None when
    the value is empty or cannot be parsed.
    """
    value = (value or "").strip()
    if not value:
        return None
    if value.isdigit():
        seconds = int(value)
        return float(seconds) if seconds > 0 else None
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning("Could not parse Retry-After header %r", value)
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    wait = (when - now).total_seconds()
    return wait if wait > 0 else MIN_DATE_WAIT


def extract_retry_after(headers: httpx.Headers, now: Optional[datetime] = None) -> Optional[float]:
    """Wait hint from a 429 response: ``retry-after-ms`` first, then ``Retry-After``."""
    ms = headers.get("retry-after-ms", "").strip()
    if ms:
        try:
            millis = int(ms)
        except ValueError:
            logger.warning("Could not parse retry-after-ms header %r", ms)
        else:
            if millis > 0:
                return millis / 1000.0
    return parse_retry_after(headers.get("retry-after", ""), now)


@dataclass(frozen=True)
class RetryAfterHint:
    duration: float
    captured_at: float


class RetryAfterTransport(httpx.AsyncBaseTransport):
    """httpx transport decorator that captures 429 wait hints.

    The wrapped transport is owned and closed with this one. Hints are
    read through :meth:`get_last_retry_after` and dropped with
    :meth:`clear_retry_after`.
    """

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.clock = clock
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._hint: Optional[RetryAfterHint] = None

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        response = await self._transport.handle_async_request(request)
        if response.status_code == 429:
            self.capture(response.headers)
        return response

    async def aclose(self) -> None:
        await self._transport.aclose()

    def capture(self, headers: httpx.Headers) -> Optional[float]:
        """Record the wait hint carried by *headers*, if any."""
        wait = extract_retry_after(headers, self._wall_clock())
        if wait is None:
            return None
        with self._lock:
            self._hint = RetryAfterHint(duration=wait, captured_at=self.clock())
        logger.debug("Captured retry-after hint of %.3fs", wait)
        return wait

    def get_last_retry_after(self) -> Optional[RetryAfterHint]:
        """Return the last hint, or None if there is none or it is stale."""
        with self._lock:
            hint = self._hint
        if hint is None or self.clock() - hint.captured_at > HINT_MAX_AGE:
            return None
        return hint

    def clear_retry_after(self) -> None:
        with self._lock:
            self._hint = None


def is_rate_limit_error(exc: BaseException) -> bool:
    if getattr(exc, "status_code", None) == 429:
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_MARKERS)


def estimate_tokens(messages: List[Dict[str, Any]]) -> int:
    """Rough token estimate: four characters per token."""
    chars = sum(len(str(m.get("content") or "")) for m in messages)
    return max(chars // 4, 1)


class RateLimitedModel:
    """Model handle decorator adding throttling and 429 retries."""

    def __init__(
        self,
        model: Any,
        config: ProviderConfig,
        tracker: Optional[RetryAfterTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model = model
        self.config = config
        self.tracker = tracker
        self.stats = RateLimitStats()
        self._sleep = sleep
        self._clock = clock
        self._window: Deque[Tuple[float, int]] = collections.deque()
        self._backoff = wait_exponential(multiplier=INITIAL_BACKOFF, min=INITIAL_BACKOFF, max=MAX_BACKOFF)

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def provider_type(self) -> str:
        return self.config.type

    @property
    def max_retries(self) -> int:
        if not self.config.retry.retry_on_429:
            return 0
        return self.config.retry.max_retries if self.config.retry.max_retries > 0 else DEFAULT_MAX_RETRIES

    def reset_stats(self) -> None:
        self.stats = RateLimitStats()

    async def generate(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]] = None) -> Any:
        tokens = estimate_tokens(messages)
        await self._throttle(tokens)

        retries_before = self.stats.retry_count
        retrying = AsyncRetrying(
            retry=retry_if_exception(is_rate_limit_error),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=self._retry_wait,
            before_sleep=self._record_retry,
            sleep=self._sleep,
            reraise=True,
        )
        response = await retrying(self._attempt, messages, tools)
        if self.stats.retry_count > retries_before:
            self.stats.retry_success_count += 1
        return response

    async def _attempt(self, messages: List[Dict[str, Any]], tools: Optional[List[Dict[str, Any]]]) -> Any:
        try:
            return await self.model.generate(messages, tools)
        except Exception as exc:
            if is_rate_limit_error(exc):
                self.stats.rate_limit_hits += 1
            raise

    def _retry_wait(self, retry_state: RetryCallState) -> float:
        """Fresh header hint plus buffer, then the error text, then backoff."""
        if self.tracker is not None:
            hint = self.tracker.get_last_retry_after()
            if hint is not None and self.tracker.clock() - hint.captured_at < HINT_FRESH_WINDOW:
                self.tracker.clear_retry_after()
                return hint.duration + HINT_BUFFER
        match = _RETRY_AFTER_TEXT.search(str(retry_state.outcome.exception()))
        if match:
            return float(match.group(1))
        return self._backoff(retry_state)

    def _record_retry(self, retry_state: RetryCallState) -> None:
        wait = retry_state.next_action.sleep
        self.stats.retry_count += 1
        self.stats.retry_wait_time_ms += int(wait * 1000)
        logger.warning(
            "Provider %s rate limited, retry %d/%d in %.1fs",
            self.name, retry_state.attempt_number, self.max_retries, wait,
        )

    async def _throttle(self, tokens: int) -> None:
        rpm = self.config.rate_limits.rpm
        tpm = self.config.rate_limits.tpm
        if rpm <= 0 and tpm <= 0:
            return
        while True:
            now = self._clock()
            while self._window and now - self._window[0][0] >= 60.0:
                self._window.popleft()
            used = sum(t for _, t in self._window)
            over_rpm = rpm > 0 and len(self._window) >= rpm
            over_tpm = tpm > 0 and self._window and used + tokens > tpm
            if not (over_rpm or over_tpm):
                self._window.append((now, tokens))
                return
            wait = max(60.0 - (now - self._window[0][0]), 0.01)
            self.stats.throttle_count += 1
            self.stats.throttle_wait_time_ms += int(wait * 1000)
            logger.info("Provider %s throttled for %.1fs", self.name, wait)
            await self._sleep(wait)

    async def aclose(self) -> None:
        await self.model.aclose()
