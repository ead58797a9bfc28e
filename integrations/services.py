from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from core.errors import ClientRequestError

TRANSIENT_ERRORS = (aiohttp.ClientConnectorError, aiohttp.ClientOSError, aiohttp.ServerTimeoutError, asyncio.TimeoutError)


def is_retryable_status(status: Optional[int]) -> bool:
    # 401 means bad credentials; retrying only hammers the backend
    if not status or status == 401:
        return False
    return 500 <= status < 600 or status == 429


def backoff_delay(attempt: int, retry_backoff: float) -> float:
    return retry_backoff * (2 ** (attempt - 1)) * (1 + random.uniform(0, 0.25))


class RequestManager:
    def __init__(
        self,
        *,
        request_timeout: int = 10,
        retry_attempts: int = 2,
        retry_backoff: float = 1.0,
        min_interval_ms: float = 0.0,
        max_concurrent: int = 0,
        debug_logging: bool = False,
    ) -> None:
        self.request_timeout = request_timeout
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff
        self.min_interval_ms = min_interval_ms
        self.max_concurrent = max_concurrent
        self.debug_logging = debug_logging
        self._service_last_request_at: Dict[str, float] = {}
        self._service_semaphore: Dict[str, asyncio.Semaphore] = {}

    async def throttled_request(
        self,
        session: aiohttp.ClientSession,
        service_name: str,
        url: str,
        api_key: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        method: str = 'get',
    ):
        # Rate limit by elapsed time between calls
        if self.min_interval_ms and self.min_interval_ms > 0:
            loop = asyncio.get_running_loop()
            last = self._service_last_request_at.get(service_name, 0.0)
            wait = (last + (self.min_interval_ms / 1000.0)) - loop.time()
            if wait > 0:
                await asyncio.sleep(wait)
            self._service_last_request_at[service_name] = loop.time()

        kwargs = dict(
            params=params,
            json_data=json_data,
            method=method,
            request_timeout=self.request_timeout,
            retry_attempts=self.retry_attempts,
            retry_backoff=self.retry_backoff,
            debug_logging=self.debug_logging,
        )
        # Limit concurrency per service
        if self.max_concurrent and self.max_concurrent > 0:
            sem = self._service_semaphore.get(service_name)
            if sem is None:
                sem = asyncio.Semaphore(self.max_concurrent)
                self._service_semaphore[service_name] = sem
            async with sem:
                return await make_api_request(session, url, api_key, **kwargs)
        return await make_api_request(session, url, api_key, **kwargs)


async def make_api_request(
    session: aiohttp.ClientSession,
    url: str,
    api_key: str,
    *,
    params: Optional[Dict[str, Any]] = None,
    json_data: Optional[Any] = None,
    method: str = 'get',
    request_timeout: int = 10,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
):
    headers = {'X-Api-Key': api_key}
    attempts = 0
    last_error: Optional[Exception] = None
    while attempts <= retry_attempts:
        try:
            timeout = aiohttp.ClientTimeout(total=request_timeout)
            async with session.request(method, url, headers=headers, params=params, json=json_data, timeout=timeout) as response:
                response.raise_for_status()
                content_type = response.headers.get('Content-Type', '')
                # Prefer explicit status handling to avoid parsing empty JSON bodies
                if response.status != 204 and 'application/json' in content_type:
                    try:
                        data = await response.json()
                    except Exception:
                        data = None
                    # Fall back to status on empty/malformed body
                    if data is not None:
                        return data
                if debug_logging:
                    logging.info(f'HTTP {method.upper()} {url} -> {response.status} (no content)')
                return {'status': response.status}
        except aiohttp.ClientResponseError as e:
            if is_retryable_status(e.status) and attempts < retry_attempts:
                attempts += 1
                sleep_for = backoff_delay(attempts, retry_backoff)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} {e.status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                last_error = e
                continue
            logging.error(f'HTTP {method.upper()} {url} error {e.status}: {e.message}')
            return None
        except TRANSIENT_ERRORS as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = backoff_delay(attempts, retry_backoff)
                if debug_logging:
                    logging.warning(f'HTTP {method.upper()} {url} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                last_error = e
                continue
            logging.error(f'HTTP {method.upper()} {url} network/timeout: {e!r}')
            return None
    if last_error is not None:
        logging.error(f'HTTP {method.upper()} {url} failed after {retry_attempts} retries: {last_error}')
    return None


async def send_with_retry(
    send: Callable[[], Awaitable[Any]],
    *,
    label: str,
    retry_attempts: int = 2,
    retry_backoff: float = 1.0,
    debug_logging: bool = False,
):
    """Run ``send`` until it yields a non-retryable response.

    Used by the download client sessions, which inspect status codes
    themselves. A response with a retryable status is returned as-is once
    attempts run out; network errors raise ``ClientRequestError``.
    """
    attempts = 0
    while True:
        try:
            resp = await send()
        except TRANSIENT_ERRORS as e:
            if attempts < retry_attempts:
                attempts += 1
                sleep_for = backoff_delay(attempts, retry_backoff)
                if debug_logging:
                    logging.warning(f'{label} network/timeout; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
                await asyncio.sleep(sleep_for)
                continue
            raise ClientRequestError(f'{label} failed: {e!r}') from e
        status = getattr(resp, 'status', None)
        if is_retryable_status(status) and attempts < retry_attempts:
            attempts += 1
            sleep_for = backoff_delay(attempts, retry_backoff)
            if debug_logging:
                logging.warning(f'{label} -> {status}; retrying in {sleep_for:.2f}s (attempt {attempts}/{retry_attempts})')
            await asyncio.sleep(sleep_for)
            continue
        return resp
