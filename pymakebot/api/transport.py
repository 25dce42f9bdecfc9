"""
Transport retrier for the chat-completion endpoint.

Wraps one logical POST with bounded retries. 2xx returns immediately,
4xx (except 429) fails immediately, and 429, 5xx and network failures
are retried with exponential backoff and jitter until the attempt
budget is spent.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable

import httpx

from ..errors import (
    ClientError,
    NetworkError,
    RateLimitedError,
    RetriesExhaustedError,
    ServerError,
    TransportError,
)
from ..log_config import get_logger
from ..types import GenerationRequest, RetryPolicy


def backoff_delay(attempt: int, policy: RetryPolicy, rand: float) -> float:
    """Seconds to wait after failed attempt ``attempt`` (0-based).

    ``rand`` is a uniform sample in [0, 1); 0.5 gives the un-jittered delay.
    """
    base = min(policy.base_delay * (2**attempt), policy.max_delay)
    jittered = base * (1 + policy.jitter_fraction * (2 * rand - 1))
    return max(0.0, min(jittered, policy.max_delay))


def classify_status(response: httpx.Response) -> TransportError | None:
    """Map a non-2xx response to its TransportError, or None for success."""
    code = response.status_code
    if 200 <= code < 300:
        return None
    body = response.text[: TransportRetrier.BODY_EXCERPT_CHARS]
    if code == 429:
        return RateLimitedError(f"HTTP {code}: rate limited", status_code=code, body=body)
    if 500 <= code < 600:
        return ServerError(f"HTTP {code}: server error", status_code=code, body=body)
    return ClientError(f"HTTP {code}: {body}", status_code=code, body=body)


class TransportRetrier:
    """Send a GenerationRequest with retry and backoff.

    The HTTP client, the sleep function and the jitter source are injectable
    so the retry schedule can be exercised without real time passing.
    """

    BODY_EXCERPT_CHARS = 500
    HTTP_CONNECT_TIMEOUT = 30.0

    def __init__(
        self,
        api_url: str,
        headers: dict[str, str] | None = None,
        policy: RetryPolicy | None = None,
        request_timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.api_url = api_url
        self.headers = headers or {}
        self.policy = policy or RetryPolicy()
        self.request_timeout = request_timeout
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._rand = rand
        self.log = get_logger("transport", api_url=api_url)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.request_timeout,
                    connect=min(self.HTTP_CONNECT_TIMEOUT, self.request_timeout),
                )
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "TransportRetrier":
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def _attempt(self, payload: dict) -> httpx.Response:
        try:
            response = await self._get_client().post(
                self.api_url,
                json=payload,
                headers=self.headers,
                timeout=self.request_timeout,
            )
        except httpx.TransportError as e:
            raise NetworkError(f"{type(e).__name__}: {e}") from e

        error = classify_status(response)
        if error is not None:
            raise error
        return response

    async def send(self, request: GenerationRequest) -> httpx.Response:
        """POST ``request`` and return the first 2xx response.

        Raises:
            ClientError: On a 4xx other than 429. Never retried.
            RetriesExhaustedError: After ``policy.max_attempts`` retryable failures.
        """
        payload = request.to_payload()
        max_attempts = self.policy.max_attempts
        last_error: TransportError | None = None

        for attempt in range(max_attempts):
            self.log.debug("transport.attempt", attempt=attempt + 1, max_attempts=max_attempts)
            try:
                response = await self._attempt(payload)
                if attempt > 0:
                    self.log.info("transport.recovered", attempt=attempt + 1)
                return response
            except TransportError as e:
                if not e.retryable:
                    self.log.error(
                        "transport.fatal",
                        exc=e,
                        attempt=attempt + 1,
                        status_code=e.status_code,
                    )
                    raise
                last_error = e

            if attempt + 1 >= max_attempts:
                break

            delay = backoff_delay(attempt, self.policy, self._rand())
            self.log.warn(
                "transport.retry",
                attempt=attempt + 1,
                delay_s=round(delay, 2),
                reason=type(last_error).__name__,
                status_code=last_error.status_code,
            )
            await self._sleep(delay)

        self.log.error("transport.exhausted", exc=last_error, attempts=max_attempts)
        raise RetriesExhaustedError(max_attempts, last_error) from last_error
