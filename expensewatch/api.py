"""Rate-limited HTTP client for the Câmara open-data API."""

import logging
import threading
from concurrent.futures import Future
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .cache import TTLCache
from .errors import FetchError, FetchErrorKind, RunCancelledError

logger = logging.getLogger(__name__)

# Cheap reference endpoint used as a connectivity probe
PROBE_ENDPOINT = "/referencias/deputados/tipoDespesa"


class RateLimitedClient:
    """Performs paced GET requests with retry and fixed inter-attempt pauses.

    Every attempt waits ``pause_between_requests`` first. Timeouts, 5xx and
    connection errors are retried until ``max_retries`` attempts are spent.
    4xx responses fail immediately except 429, which waits for Retry-After
    (or ``rate_limit_backoff``) and then tries again. All waits observe the
    shared abort event so a cancelled run stops promptly.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 15.0,
        max_retries: int = 4,
        retry_delay: float = 0.5,
        pause_between_requests: float = 0.25,
        rate_limit_backoff: float = 60.0,
        abort_event: Optional[threading.Event] = None,
        cache: Optional[TTLCache] = None,
        pool_size: int = 10,
        user_agent: str = "ExpenseWatch/0.1",
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.pause_between_requests = pause_between_requests
        self.rate_limit_backoff = rate_limit_backoff
        self.abort_event = abort_event or threading.Event()
        self.cache = cache

        self.session = requests.Session()
        # Retries are counted here, not inside urllib3
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=Retry(total=0, raise_on_status=False),
        )
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)
        self.session.headers.update(
            {"Accept": "application/json", "User-Agent": user_agent}
        )

        self._inflight: Dict[str, Future] = {}
        self._inflight_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.request_count = 0
        self.error_count = 0
        self.deduplicated_count = 0

    @classmethod
    def from_settings(
        cls, settings: Any, abort_event: Optional[threading.Event] = None
    ) -> "RateLimitedClient":
        cache = TTLCache(
            ttl=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries
        )
        return cls(
            base_url=settings.api_base_url,
            timeout=settings.http_timeout_seconds,
            max_retries=settings.http_retries,
            retry_delay=settings.http_retry_delay,
            pause_between_requests=settings.request_pause_seconds,
            rate_limit_backoff=settings.rate_limit_backoff_seconds,
            abort_event=abort_event,
            cache=cache,
            pool_size=max(settings.concurrency, 1) * 2,
            user_agent=settings.user_agent,
        )

    def build_url(self, endpoint: str) -> str:
        if endpoint.startswith("http://") or endpoint.startswith("https://"):
            return endpoint
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    @staticmethod
    def cache_key(url: str, params: Optional[Dict[str, Any]]) -> str:
        if not params:
            return url
        query = "&".join(f"{k}={params[k]}" for k in sorted(params))
        return f"{url}?{query}"

    @staticmethod
    def unwrap(payload: Any) -> Any:
        """Return the enveloped value, or None when the envelope is empty."""
        if not isinstance(payload, dict):
            return None
        if "dados" in payload:
            return payload["dados"]
        return payload.get("data")

    def fetch(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """GET ``endpoint`` and return the decoded JSON body.

        Raises:
            FetchError: once the retry budget is spent or on a non-429 4xx
            RunCancelledError: when the abort event fires during a wait
        """
        url = self.build_url(endpoint)
        key = self.cache_key(url, params)

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit: {key}")
                return cached

        with self._inflight_lock:
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = Future()
                self._inflight[key] = pending

        if not owner:
            with self._stats_lock:
                self.deduplicated_count += 1
            logger.debug(f"Joining in-flight request: {key}")
            return pending.result()

        try:
            body = self._fetch_with_retry(url, params)
        except BaseException as exc:
            pending.set_exception(exc)
            raise
        else:
            if self.cache is not None:
                self.cache.set(key, body)
            pending.set_result(body)
            return body
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def get_data(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.unwrap(self.fetch(endpoint, params))

    def _wait(self, seconds: float) -> None:
        if self.abort_event.wait(max(seconds, 0)):
            raise RunCancelledError("Run aborted while waiting for the upstream")

    def _fetch_with_retry(self, url: str, params: Optional[Dict[str, Any]]) -> Any:
        attempts = 0
        kind = FetchErrorKind.NETWORK
        status_code: Optional[int] = None
        message = ""

        while attempts < self.max_retries:
            attempts += 1
            self._wait(self.pause_between_requests)
            with self._stats_lock:
                self.request_count += 1

            logger.debug(f"GET {url} params={params} attempt={attempts}")
            try:
                response = self.session.get(url, params=params, timeout=self.timeout)
            except requests.Timeout as e:
                kind, status_code, message = FetchErrorKind.TIMEOUT, None, str(e)
            except requests.ConnectionError as e:
                kind, status_code, message = FetchErrorKind.NETWORK, None, str(e)
            else:
                status_code = response.status_code
                if status_code == 429:
                    kind, message = FetchErrorKind.CLIENT_ERROR, "rate limited"
                    wait = self._retry_after(response)
                    logger.warning(
                        f"Rate limited by upstream, waiting {wait:.1f}s "
                        f"(attempt {attempts}/{self.max_retries})"
                    )
                    if attempts < self.max_retries:
                        self._wait(wait)
                    continue
                if status_code >= 500:
                    kind, message = FetchErrorKind.SERVER_ERROR, response.reason or ""
                elif status_code >= 400:
                    self._count_error()
                    raise FetchError(
                        FetchErrorKind.CLIENT_ERROR,
                        attempts,
                        url=url,
                        status_code=status_code,
                        message=response.reason or "",
                    )
                else:
                    try:
                        return response.json()
                    except ValueError as e:
                        kind, message = FetchErrorKind.SERVER_ERROR, f"invalid JSON: {e}"

            logger.warning(
                f"Request to {url} failed ({kind.value}, attempt "
                f"{attempts}/{self.max_retries}): {message}"
            )
            if attempts < self.max_retries:
                self._wait(self.retry_delay)

        self._count_error()
        raise FetchError(
            kind, attempts, url=url, status_code=status_code, message=message
        )

    def _retry_after(self, response: requests.Response) -> float:
        header = response.headers.get("Retry-After")
        if header:
            try:
                return max(float(header), 0.0)
            except ValueError:
                logger.debug(f"Unparseable Retry-After header: {header}")
        return self.rate_limit_backoff

    def _count_error(self) -> None:
        with self._stats_lock:
            self.error_count += 1

    def check_connectivity(self) -> bool:
        """Probe a cheap endpoint; True when the API answers."""
        try:
            self.fetch(PROBE_ENDPOINT)
            return True
        except FetchError as e:
            logger.error(f"Connectivity check failed: {e}")
            return False

    def stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            data = {
                "requests": self.request_count,
                "errors": self.error_count,
                "deduplicated": self.deduplicated_count,
            }
        if self.cache is not None:
            data["cache"] = self.cache.stats()
        return data

    def close(self) -> None:
        self.session.close()
