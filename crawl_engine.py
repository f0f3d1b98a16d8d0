"""
Generic crawling engine used by sitemap traversal and product crawling.

Owns the request queue, bounded-concurrency fetching, retries, proxy
rotation and navigation hooks. The crawler logic plugs in through request
handlers and never talks to aiohttp directly.
"""

import asyncio
import inspect
import json
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Set, Union

import aiohttp
import tqdm
from bs4 import BeautifulSoup
from curl_cffi import requests as curl_requests

from config import ProxyConfiguration
from errors import FetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_6 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.6 Mobile/15E148 Safari/604.1"
)

SUCCESS_STATUSES = (200, 301, 302)


@dataclass
class CrawlRequest:
    url: str
    user_data: Dict[str, Any] = field(default_factory=dict)
    unique_key: Optional[str] = None
    method: str = "GET"
    retry_count: int = 0
    error_messages: List[str] = field(default_factory=list)

    def __post_init__(self):
        if self.unique_key is None:
            self.unique_key = self.url


def create_request_debug_info(request: CrawlRequest) -> Dict[str, Any]:
    """Summary of a request that is safe to store next to output records."""
    return {
        "url": request.url,
        "method": request.method,
        "retryCount": request.retry_count,
        "errorMessages": list(request.error_messages),
        "userData": {k: v for k, v in request.user_data.items() if k != "body"},
    }


@dataclass
class FetchResponse:
    url: str
    status: int
    body: str
    headers: Dict[str, str] = field(default_factory=dict)

    def json(self) -> Any:
        return json.loads(self.body)


RequestLike = Union[CrawlRequest, Dict[str, Any], str]


class RequestQueue:
    """FIFO queue of crawl requests, de-duplicated by unique key."""

    def __init__(self, requests: Optional[Iterable[RequestLike]] = None):
        self._pending: Deque[CrawlRequest] = deque()
        self._seen: Set[str] = set()
        self.handled_count = 0
        for request in requests or []:
            self.add_request(request)

    @staticmethod
    def _to_request(request: RequestLike) -> CrawlRequest:
        if isinstance(request, CrawlRequest):
            return request
        if isinstance(request, str):
            return CrawlRequest(url=request)
        return CrawlRequest(
            url=request["url"],
            user_data=dict(request.get("user_data") or {}),
            unique_key=request.get("unique_key"),
        )

    def add_request(self, request: RequestLike, forefront: bool = False) -> bool:
        """Enqueue a request. Returns False if its unique key was already seen."""
        request = self._to_request(request)
        if request.unique_key in self._seen:
            return False
        self._seen.add(request.unique_key)
        if forefront:
            self._pending.appendleft(request)
        else:
            self._pending.append(request)
        return True

    def reclaim_request(self, request: CrawlRequest) -> None:
        """Put a failed request back for another attempt."""
        self._pending.append(request)

    def fetch_next_request(self) -> Optional[CrawlRequest]:
        return self._pending.popleft() if self._pending else None

    def mark_handled(self, request: CrawlRequest) -> None:
        self.handled_count += 1

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def total_count(self) -> int:
        return len(self._seen)

    def is_empty(self) -> bool:
        return not self._pending


class PredicateLogFilter(logging.Filter):
    """Drop log records for which `predicate(record)` is False."""

    def __init__(self, predicate: Callable[[logging.LogRecord], bool]):
        super().__init__()
        self.predicate = predicate

    def filter(self, record: logging.LogRecord) -> bool:
        return bool(self.predicate(record))


@dataclass
class CrawlingContext:
    """Everything a request handler or navigation hook gets to see."""

    request: CrawlRequest
    engine: "FetchEngine"
    session_id: str
    response: Optional[FetchResponse] = None
    soup: Optional[BeautifulSoup] = None
    _json: Any = field(default=None, repr=False)
    _json_parsed: bool = field(default=False, repr=False)

    @property
    def request_queue(self) -> Optional[RequestQueue]:
        return self.engine._queue

    @property
    def body(self) -> Optional[str]:
        return self.response.body if self.response else None

    @property
    def json(self) -> Any:
        """Parsed JSON body, or None if the body is not JSON."""
        if not self._json_parsed:
            self._json_parsed = True
            try:
                self._json = self.response.json() if self.response else None
            except ValueError:
                self._json = None
        return self._json


Hook = Callable[[CrawlingContext], Union[None, Awaitable[None]]]
Handler = Callable[[CrawlingContext], Awaitable[None]]
FailedHandler = Callable[[CrawlRequest, Exception], Awaitable[None]]


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class FetchEngine:
    """
    Bounded-concurrency fetch loop with retries.

    Can be used as an async context manager so the underlying HTTP session
    is closed when the crawl is done.
    """

    def __init__(self,
                 max_concurrency: int = 20,
                 max_request_retries: int = 3,
                 max_requests_per_crawl: Optional[int] = None,
                 proxy_configuration: Optional[ProxyConfiguration] = None,
                 timeout: float = 60,
                 impersonate: Optional[str] = None,
                 user_agent: Optional[str] = None,
                 pre_navigation_hooks: Sequence[Hook] = (),
                 post_navigation_hooks: Sequence[Hook] = (),
                 log_filter: Optional[Callable[[logging.LogRecord], bool]] = None,
                 accepted_statuses: Sequence[int] = SUCCESS_STATUSES,
                 rate_limit_delay: float = 10.0,
                 show_progress: bool = True):
        """
        Args:
            max_concurrency: Maximum number of requests in flight
            max_request_retries: Retries per request before it is reported as failed
            max_requests_per_crawl: Stop after this many requests were handled
            proxy_configuration: Rotating proxies, one per session
            timeout: Request timeout in seconds
            impersonate: curl_cffi browser profile (e.g. "chrome120"); plain aiohttp when None
            user_agent: User agent for aiohttp requests
            pre_navigation_hooks: Called with the context before each fetch
            post_navigation_hooks: Called with the context after each fetch
            log_filter: Predicate deciding which engine log records are emitted
            accepted_statuses: Status codes treated as a successful fetch
            rate_limit_delay: Seconds to back off after a 429 response
            show_progress: Display a tqdm progress bar while running
        """
        self.max_concurrency = max(1, max_concurrency)
        self.max_request_retries = max_request_retries
        self.max_requests_per_crawl = max_requests_per_crawl
        self.proxy_configuration = proxy_configuration
        self.timeout = timeout
        self.impersonate = impersonate
        self.user_agent = user_agent or DEFAULT_USER_AGENT
        self.pre_navigation_hooks = list(pre_navigation_hooks)
        self.post_navigation_hooks = list(post_navigation_hooks)
        self.accepted_statuses = tuple(accepted_statuses)
        self.rate_limit_delay = rate_limit_delay
        self.show_progress = show_progress

        self._log_filter = PredicateLogFilter(log_filter) if log_filter else None
        if self._log_filter:
            logger.addFilter(self._log_filter)

        self._session: Optional[aiohttp.ClientSession] = None
        self._workers: List[asyncio.Task] = []
        self._aborted = False
        self._in_flight = 0
        self._queue: Optional[RequestQueue] = None
        self._progress: Optional[tqdm.tqdm] = None

    async def __aenter__(self) -> "FetchEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._log_filter:
            logger.removeFilter(self._log_filter)
            self._log_filter = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {
                'User-Agent': self.user_agent,
                'Accept': 'text/html,application/xhtml+xml,application/xml,application/json;q=0.9,*/*;q=0.8',
                'Accept-Language': 'en-US,en;q=0.9',
            }
            self._session = aiohttp.ClientSession(headers=headers)
        return self._session

    async def _request(self, url: str, proxy_url: Optional[str]) -> FetchResponse:
        """Perform a single GET request and return the raw response."""
        if self.impersonate:
            # curl_cffi is blocking, keep it off the event loop
            loop = asyncio.get_event_loop()
            proxies = {"http": proxy_url, "https": proxy_url} if proxy_url else None
            response = await loop.run_in_executor(
                None,
                lambda: curl_requests.get(
                    url,
                    impersonate=self.impersonate,
                    timeout=self.timeout,
                    proxies=proxies,
                    verify=False,
                )
            )
            return FetchResponse(
                url=str(response.url),
                status=response.status_code,
                body=response.text,
                headers=dict(response.headers),
            )

        session = self._get_session()
        async with session.get(url,
                               proxy=proxy_url,
                               timeout=aiohttp.ClientTimeout(total=self.timeout),
                               allow_redirects=True,
                               ssl=False) as response:
            body = await response.text(errors='replace')
            return FetchResponse(
                url=str(response.url),
                status=response.status,
                body=body,
                headers=dict(response.headers),
            )

    async def fetch(self,
                    url: str,
                    session_id: Optional[str] = None,
                    retries: int = 0,
                    pass_statuses: Sequence[int] = ()) -> FetchResponse:
        """
        Fetch a URL, retrying transport errors and unexpected statuses.

        Args:
            url: URL to fetch
            session_id: Session used to pick a proxy
            retries: Extra attempts after the first failure
            pass_statuses: Non-success statuses returned to the caller instead of raising

        Raises:
            FetchError: when every attempt failed
        """
        proxy_url = self.proxy_configuration.new_url(session_id) if self.proxy_configuration else None
        last_error: Optional[FetchError] = None

        for attempt in range(retries + 1):
            try:
                response = await self._request(url, proxy_url)
            except asyncio.TimeoutError:
                last_error = FetchError(f"Timeout while fetching {url}", url=url)
                logger.debug(f"Timeout while fetching {url} (attempt {attempt + 1})")
                continue
            except Exception as e:
                last_error = FetchError(f"Error fetching {url}: {str(e)}", url=url)
                logger.debug(f"Error fetching {url} (attempt {attempt + 1}): {str(e)}")
                continue

            if response.status in self.accepted_statuses or response.status in pass_statuses:
                return response

            last_error = FetchError(f"Status code {response.status}", url=url, status=response.status)
            if response.status == 403:
                logger.debug(f"Access forbidden (403) for {url} - might be blocked by bot protection")
            elif response.status == 429:
                logger.debug(f"Rate limited (429) for {url} - backing off")
                await asyncio.sleep(self.rate_limit_delay)

        raise last_error

    def _limit_reached(self) -> bool:
        if not self.max_requests_per_crawl or self.max_requests_per_crawl <= 0:
            return False
        return self._queue.handled_count + self._in_flight >= self.max_requests_per_crawl

    async def run(self,
                  queue: RequestQueue,
                  handler: Handler,
                  failed_handler: Optional[FailedHandler] = None,
                  pass_statuses: Sequence[int] = (),
                  progress_desc: str = "Crawling") -> None:
        """
        Drain `queue` with `max_concurrency` workers.

        Args:
            queue: Requests to process; handlers may add more while running
            handler: Called with the CrawlingContext of every fetched request
            failed_handler: Called once a request exhausted its retries
            pass_statuses: Statuses handed to `handler` instead of being retried
            progress_desc: Label of the progress bar
        """
        self._queue = queue
        self._in_flight = 0
        if self._aborted:
            logger.warning(f"Engine was aborted, skipping {queue.pending_count} requests")
            return

        self._progress = tqdm.tqdm(
            total=queue.total_count,
            desc=progress_desc,
            unit="requests",
            disable=not self.show_progress,
        )

        self._workers = [
            asyncio.ensure_future(self._worker(index, handler, failed_handler, pass_statuses))
            for index in range(self.max_concurrency)
        ]

        try:
            await asyncio.gather(*self._workers)
        except asyncio.CancelledError:
            if not self._aborted:
                raise
            logger.warning(f"Crawl aborted with {self._in_flight} requests in flight")
        finally:
            self._workers = []
            self._progress.close()

        logger.info(f"Handled {queue.handled_count} requests, {queue.pending_count} left in queue")

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        """Stop all workers immediately, abandoning in-flight requests."""
        self._aborted = True
        for worker in self._workers:
            worker.cancel()

    async def _worker(self, index: int, handler: Handler, failed_handler: Optional[FailedHandler],
                      pass_statuses: Sequence[int]) -> None:
        session_id = f"session_{index}_{uuid.uuid4().hex[:8]}"

        while not self._aborted:
            if self._limit_reached():
                return

            request = self._queue.fetch_next_request()
            if request is None:
                if self._in_flight == 0:
                    return
                # another worker may still enqueue requests
                await asyncio.sleep(0.05)
                continue

            self._in_flight += 1
            try:
                succeeded = await self._process_request(request, session_id, handler, failed_handler, pass_statuses)
            finally:
                self._in_flight -= 1

            if not succeeded:
                # retire the session so the next attempt goes through a fresh proxy
                session_id = f"session_{index}_{uuid.uuid4().hex[:8]}"

    async def _process_request(self, request: CrawlRequest, session_id: str, handler: Handler,
                               failed_handler: Optional[FailedHandler], pass_statuses: Sequence[int]) -> bool:
        context = CrawlingContext(request=request, engine=self, session_id=session_id)

        try:
            for hook in self.pre_navigation_hooks:
                await maybe_await(hook(context))

            context.response = await self.fetch(request.url, session_id=session_id, pass_statuses=pass_statuses)

            for hook in self.post_navigation_hooks:
                await maybe_await(hook(context))

            await handler(context)
        except Exception as e:
            request.error_messages.append(str(e))
            request.retry_count += 1

            if request.retry_count <= self.max_request_retries:
                logger.warning(f"Request handler failed for {request.url}, retrying "
                               f"({request.retry_count}/{self.max_request_retries}): {str(e)}")
                self._queue.reclaim_request(request)
                return False

            logger.debug(f"Request {request.url} failed {request.retry_count} times")
            self._finish(request)
            if failed_handler:
                await failed_handler(request, e)
            return False

        self._finish(request)
        return True

    def _finish(self, request: CrawlRequest) -> None:
        self._queue.mark_handled(request)
        self._progress.total = self._queue.total_count
        self._progress.update(1)
