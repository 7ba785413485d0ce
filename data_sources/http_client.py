"""
Async HTTP client shared by the enrichment collaborators
Owns one aiohttp session for connection reuse and applies retry profiles
"""

import asyncio
import time
from typing import Any, Dict, Optional

import aiohttp

from logging_config import get_logger, log_api_call
from .error_handling import APIError
from .retry_config import RetryProfile, get_retry_config

logger = get_logger(__name__)

DEFAULT_USER_AGENT = "SNF-Referrals/1.0"


class AsyncHttpClient:
    """aiohttp session wrapper with 429 / 5xx / timeout retry handling."""

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, session: Optional[aiohttp.ClientSession] = None):
        self.user_agent = user_agent
        self._session = session

    async def get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=50, limit_per_host=10)
            timeout = aiohttp.ClientTimeout(total=30, connect=5, sock_read=10)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=timeout,
                headers={"User-Agent": self.user_agent},
            )
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                       profile: RetryProfile = RetryProfile.PLACES,
                       api_name: str = "http", headers: Optional[Dict[str, str]] = None) -> Any:
        """
        GET ``url`` and decode the JSON body.

        Raises:
            APIError: when every attempt failed or a non-retryable status came back
        """
        config = get_retry_config(profile)
        last_error = "no attempts made"
        last_status = None
        rate_limited = 0

        for attempt in range(config.max_attempts):
            is_last = attempt >= config.max_attempts - 1
            start = time.time()
            log_api_call(logger, api_name, url, attempt=attempt)
            try:
                session = await self.get_session()
                async with session.get(url, params=params, headers=headers,
                                       timeout=aiohttp.ClientTimeout(total=config.timeout)) as resp:
                    if resp.status == 429 and config.retry_on_429:
                        rate_limited += 1
                        last_status = 429
                        last_error = "rate limited"
                        if is_last or rate_limited >= config.max_rate_limit_attempts():
                            break
                        retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
                        wait = config.wait_for_attempt(attempt, retry_after)
                        logger.warning(f"{api_name} rate limited, waiting {wait}s...", extra={
                            "api_name": api_name,
                            "attempt": attempt,
                        })
                        await asyncio.sleep(wait)
                        continue

                    if resp.status != 200:
                        last_status = resp.status
                        last_error = f"status {resp.status}"
                        logger.warning(f"{api_name} returned status {resp.status}", extra={
                            "api_name": api_name,
                            "attempt": attempt,
                        })
                        if resp.status >= 500 and not is_last:
                            await asyncio.sleep(config.wait_for_attempt(attempt))
                            continue
                        break

                    data = await resp.json(content_type=None)
                    logger.debug(f"{api_name} responded", extra={
                        "api_name": api_name,
                        "response_time": round(time.time() - start, 3),
                    })
                    return data

            except asyncio.TimeoutError:
                last_error = "timeout"
                last_status = 408
                if not config.retry_on_timeout or is_last:
                    break
                logger.warning(f"{api_name} timeout, retrying... ({attempt + 1}/{config.max_attempts})",
                               extra={"api_name": api_name, "attempt": attempt + 1})
                await asyncio.sleep(config.wait_for_attempt(attempt))

            except (aiohttp.ClientError, ValueError) as e:
                last_error = str(e) or type(e).__name__
                last_status = None
                if is_last:
                    break
                logger.warning(f"{api_name} error: {e}, retrying... ({attempt + 1}/{config.max_attempts})",
                               extra={"api_name": api_name, "attempt": attempt + 1})
                await asyncio.sleep(config.wait_for_attempt(attempt))

        raise APIError(f"{api_name} request failed: {last_error}", api_name, last_status)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
