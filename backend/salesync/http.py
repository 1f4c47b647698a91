"""
HTTP fetching with exponential backoff and rate-limit handling.

Expected failures are returned as a FetchResult carrying a FetchError rather
than raised, so callers can tell retryable problems (network, rate limits)
from fatal ones (bad credentials, bad requests) without catching exceptions.
"""

from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from .clock import Clock, Deadline, SystemClock

# Fallback wait when a 429 carries no usable Retry-After header
DEFAULT_RATE_LIMIT_DELAY = 2.0


class FetchErrorKind(Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH = "auth"
    FATAL = "fatal"


@dataclass
class FetchError:
    """Why a fetch gave up."""
    kind: FetchErrorKind
    message: str
    status_code: Optional[int] = None
    retry_after: Optional[float] = None

    @property
    def retryable(self) -> bool:
        return self.kind in (FetchErrorKind.TRANSIENT, FetchErrorKind.RATE_LIMITED)

    def __str__(self) -> str:
        status = f" (HTTP {self.status_code})" if self.status_code else ""
        return f"{self.kind.value}{status}: {self.message}"


@dataclass
class FetchResult:
    """Either a value or an error, never both."""
    value: Any = None
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "FetchResult":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: FetchErrorKind, message: str, status_code: Optional[int] = None,
                retry_after: Optional[float] = None) -> "FetchResult":
        return cls(error=FetchError(kind, message, status_code, retry_after))


@dataclass
class JsonResponse:
    """Decoded body plus the headers a pager needs."""
    data: Any
    status_code: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)
    links: Dict[str, Dict[str, str]] = field(default_factory=dict)


def parse_retry_after(value: Optional[str]) -> float:
    """Seconds to wait from a Retry-After header (seconds or HTTP date)."""
    if not value:
        return DEFAULT_RATE_LIMIT_DELAY
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
        return max(0.0, (when - datetime.now(when.tzinfo)).total_seconds())
    except (TypeError, ValueError):
        return DEFAULT_RATE_LIMIT_DELAY


class HttpFetcher:
    """
    GET JSON documents with bounded retries.

    - Transient errors (network, timeouts, 5xx, bad JSON) back off
      exponentially, up to max_retries attempts.
    - 429 responses wait for Retry-After; these waits do not count against
      max_retries but are capped by max_rate_limit_waits.
    - No wait is started if it would run past the deadline.
    - 401/403 and other 4xx responses return immediately.
    """

    def __init__(self, session: Optional[requests.Session] = None, *,
                 max_retries: int = 5, initial_retry_delay: float = 1,
                 max_retry_delay: float = 30, max_rate_limit_waits: int = 10,
                 request_timeout: float = 30, clock: Optional[Clock] = None,
                 headers: Optional[Dict[str, str]] = None, auth: Any = None,
                 session_factory: Optional[Callable[[], requests.Session]] = None):
        self.session_factory = session_factory or requests.Session
        self.session = session or self.session_factory()
        self.max_retries = max(1, max_retries)
        self.initial_retry_delay = initial_retry_delay
        self.max_retry_delay = max_retry_delay
        self.max_rate_limit_waits = max_rate_limit_waits
        self.request_timeout = request_timeout
        self.clock = clock or SystemClock()
        self.auth = auth
        self.headers = dict(headers or {})
        if headers:
            self.session.headers.update(headers)

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None,
                    clock: Optional[Clock] = None, headers: Optional[Dict[str, str]] = None,
                    auth: Any = None,
                    session_factory: Optional[Callable[[], requests.Session]] = None) -> "HttpFetcher":
        return cls(
            session,
            max_retries=config.max_retries,
            initial_retry_delay=config.initial_retry_delay,
            max_retry_delay=config.max_retry_delay,
            max_rate_limit_waits=config.max_rate_limit_waits,
            request_timeout=config.request_timeout,
            clock=clock,
            headers=headers,
            auth=auth,
            session_factory=session_factory,
        )

    def clone(self) -> "HttpFetcher":
        """Same settings on a new session, for use from another thread."""
        return HttpFetcher(
            self.session_factory(),
            max_retries=self.max_retries,
            initial_retry_delay=self.initial_retry_delay,
            max_retry_delay=self.max_retry_delay,
            max_rate_limit_waits=self.max_rate_limit_waits,
            request_timeout=self.request_timeout,
            clock=self.clock,
            headers=self.headers,
            auth=self.auth,
            session_factory=self.session_factory,
        )

    def _can_wait(self, delay: float, deadline: Optional[Deadline]) -> bool:
        return deadline is None or delay <= deadline.remaining()

    def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                 deadline: Optional[Deadline] = None) -> FetchResult:
        """Fetch url and decode JSON. The FetchResult value is a JsonResponse."""
        attempt = 0
        rate_limit_waits = 0

        while True:
            try:
                response = self.session.get(url, params=params, auth=self.auth,
                                            timeout=self.request_timeout)
            except requests.exceptions.RequestException as e:
                error = FetchError(FetchErrorKind.TRANSIENT, f"{type(e).__name__}: {e}")
            else:
                status = response.status_code

                if status == 429:
                    # Rate limited - wait as instructed, outside the retry cap
                    delay = parse_retry_after(response.headers.get('Retry-After'))
                    rate_limit_waits += 1
                    if rate_limit_waits > self.max_rate_limit_waits or not self._can_wait(delay, deadline):
                        return FetchResult.failure(
                            FetchErrorKind.RATE_LIMITED, f"Rate limited fetching {url}",
                            status_code=status, retry_after=delay
                        )
                    print(f"    Rate limited, waiting {delay:.1f}s...", flush=True)
                    self.clock.sleep(delay)
                    continue

                if status in (401, 403):
                    return FetchResult.failure(
                        FetchErrorKind.AUTH, "Credentials rejected or insufficient scope",
                        status_code=status
                    )

                if status >= 500:
                    error = FetchError(FetchErrorKind.TRANSIENT, f"Server error from {url}", status)
                elif status >= 400:
                    return FetchResult.failure(
                        FetchErrorKind.FATAL, f"HTTP {status} fetching {url}", status_code=status
                    )
                else:
                    try:
                        data = response.json()
                    except ValueError:
                        error = FetchError(FetchErrorKind.TRANSIENT, f"Invalid JSON from {url}", status)
                    else:
                        return FetchResult.success(JsonResponse(
                            data=data,
                            status_code=status,
                            headers=response.headers,
                            links=getattr(response, 'links', None) or {},
                        ))

            if attempt >= self.max_retries - 1:
                return FetchResult(error=error)

            # Exponential backoff
            delay = min(self.initial_retry_delay * (2 ** attempt), self.max_retry_delay)
            if not self._can_wait(delay, deadline):
                return FetchResult(error=error)
            print(f"    {error.message}; retry {attempt + 1}/{self.max_retries - 1} in {delay}s", flush=True)
            self.clock.sleep(delay)
            attempt += 1
