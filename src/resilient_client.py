"""
Outbound HTTP transport shared by the gateway.

A thin layer over httpx.AsyncClient that routes through the upstream proxy
and retries transient failures (connection errors and 5xx responses) with
exponential backoff, bounded by a total retry budget. 4xx responses are
never retried.
"""

import logging
from typing import Optional, Union

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_delay, wait_exponential

from config import Settings

logger = logging.getLogger(__name__)

ProxyTypes = Union[str, httpx.Proxy]


def is_transient(exc: BaseException) -> bool:
    """Connection-level failures and 5xx responses are worth retrying"""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, httpx.TransportError)


class ResilientClient:
    def __init__(
        self,
        proxy: Optional[ProxyTypes] = None,
        timeout: float = 20.0,
        min_delay: float = 0.001,
        max_delay: float = 2.0,
        max_duration: float = 15.0,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.proxy = proxy
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.max_duration = max_duration
        headers = {"User-Agent": user_agent} if user_agent else None
        self.http_client = httpx.AsyncClient(
            proxy=proxy,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            follow_redirects=True,
            transport=transport,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception(is_transient),
            wait=wait_exponential(multiplier=self.min_delay, min=self.min_delay, max=self.max_delay),
            stop=stop_after_delay(self.max_duration),
            before_sleep=self._log_retry,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state):
        exc = retry_state.outcome.exception()
        logger.warning(
            f"Retrying upstream request (attempt {retry_state.attempt_number}): {type(exc).__name__}")

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send a request, raising httpx.HTTPStatusError for non-2xx responses.

        When the retry budget runs out the last error is raised as-is.
        """
        async for attempt in self._retrying():
            with attempt:
                response = await self.http_client.request(method, url, **kwargs)
                response.raise_for_status()
                return response

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def aclose(self):
        await self.http_client.aclose()

    def describe(self) -> str:
        if self.proxy is None:
            return "direct connection"
        url = self.proxy.url if isinstance(self.proxy, httpx.Proxy) else httpx.URL(self.proxy)
        # Drop userinfo, static proxies may embed credentials
        return f"proxy {url.scheme}://{url.host}:{url.port}"


def build_client(settings: Settings, proxy: Optional[ProxyTypes] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None) -> ResilientClient:
    return ResilientClient(
        proxy=proxy,
        timeout=settings.CONNECT_TIMEOUT,
        min_delay=settings.RETRY_MIN_DELAY,
        max_delay=settings.RETRY_MAX_DELAY,
        max_duration=settings.RETRY_MAX_DURATION,
        user_agent=settings.DEFAULT_USER_AGENT,
        transport=transport,
    )
