"""Retry with exponential backoff for outbound partner calls."""

import asyncio
import logging
import random
import re
from typing import Awaitable, Callable, Optional

import httpx

from .errors import NotFoundAsEmpty, TransientFetchError

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]

_SECRET_PARAM_RE = re.compile(r"(client_secret|access_token|token)=[^&]+", re.IGNORECASE)


def mask_url(url: str) -> str:
    """Hide secret query parameters before logging a URL."""
    return _SECRET_PARAM_RE.sub(r"\1=***", str(url))


class RetryPolicy:
    """Send a request up to ``attempts`` times.

    Delay before retry ``n`` (0-based) is ``base_delay * 2**n``, plus up to
    ``base_delay`` of random jitter when enabled, capped at ``max_delay``.
    A 404 raises ``NotFoundAsEmpty`` immediately when ``not_found_as_empty``
    is set; any other non-2xx status or transport error is retried, then
    raised as ``TransientFetchError``.
    """

    def __init__(
        self,
        attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        jitter: bool = False,
        not_found_as_empty: bool = True,
        sleep: Optional[SleepFunc] = None,
        name: str = "http",
    ):
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.not_found_as_empty = not_found_as_empty
        self.sleep = sleep or asyncio.sleep
        self.name = name

    def delay_for(self, attempt: int) -> float:
        delay = self.base_delay * (2 ** attempt)
        if self.jitter:
            delay += random.random() * self.base_delay
        return min(delay, self.max_delay)

    async def send(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue the request, returning the first successful response."""
        last_error: Optional[TransientFetchError] = None

        for attempt in range(self.attempts):
            try:
                response = await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                logger.error(f"[{self.name}] Attempt {attempt + 1}/{self.attempts}: timeout on {mask_url(url)}")
                last_error = TransientFetchError(f"Timeout calling {self.name}: {e}")
            except httpx.HTTPError as e:
                logger.error(f"[{self.name}] Attempt {attempt + 1}/{self.attempts}: {e}")
                last_error = TransientFetchError(f"Network error calling {self.name}: {e}")
            else:
                logger.debug(f"[{self.name}] Attempt {attempt + 1}/{self.attempts}: HTTP {response.status_code}")
                if response.is_success:
                    return response

                if response.status_code == 404 and self.not_found_as_empty:
                    raise NotFoundAsEmpty(f"No data at {mask_url(url)}")

                body = response.text[:200]
                logger.error(
                    f"[{self.name}] Attempt {attempt + 1}/{self.attempts} failed: "
                    f"HTTP {response.status_code} {response.reason_phrase} - {body}"
                )
                last_error = TransientFetchError(
                    f"HTTP {response.status_code}: {response.reason_phrase}",
                    upstream_status=response.status_code,
                    body=body,
                )

            if attempt < self.attempts - 1:
                delay = self.delay_for(attempt)
                logger.info(f"[{self.name}] Retrying in {delay:.1f}s...")
                await self.sleep(delay)

        raise last_error or TransientFetchError(f"{self.name}: failed after {self.attempts} attempts")
