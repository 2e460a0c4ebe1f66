"""HTTP client shared by the thin service wrappers."""

import asyncio
import json
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urljoin

import aiohttp
import requests
from loguru import logger
from pydantic import BaseModel

from .exceptions import (
    AuthenticationError,
    FatalStageError,
    MigrationError,
    NotFoundError,
    RateLimitError,
    TransientError,
)


DEFAULT_RETRY_AFTER = 60.0


def header_value(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Look up a header regardless of its case."""
    name = name.lower()
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return value
    return None


def parse_retry_after(
    value: Optional[str],
    default: float = DEFAULT_RETRY_AFTER,
    now: Optional[datetime] = None,
) -> float:
    """Seconds to wait from a ``Retry-After`` value.

    The header is either a number of seconds or an HTTP-date. Anything
    unparseable falls back to ``default``.
    """
    if value is None or not str(value).strip():
        return default
    value = str(value).strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds) if math.isfinite(seconds) else default

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


class APIResponse(BaseModel):
    """Standard API response wrapper."""

    status_code: int
    data: Any
    headers: Dict[str, str]
    success: bool


def raise_for_status(status: int, headers: Mapping[str, str], body: Any) -> None:
    """Map an HTTP error status onto the migration error taxonomy.

    Raises:
        RateLimitError: 429
        AuthenticationError: 401, 403
        NotFoundError: 404
        TransientError: 408 and 5xx
        FatalStageError: Any other 4xx
    """
    if status < 400:
        return

    message = f'HTTP {status}'
    if isinstance(body, dict):
        message = body.get('message') or body.get('error') or message
        if isinstance(message, dict):
            message = message.get('message', f'HTTP {status}')
    elif body:
        message = f'HTTP {status}: {str(body)[:200]}'

    response_data = body if isinstance(body, dict) else None

    if status == 429:
        retry_after = parse_retry_after(header_value(headers, 'Retry-After'))
        raise RateLimitError(
            f'Rate limit exceeded. Retry after {retry_after:g} seconds',
            retry_after=retry_after,
            status_code=status,
            response_data=response_data,
        )
    if status in (401, 403):
        raise AuthenticationError(
            f'Authentication failed: {message}',
            status_code=status,
            response_data=response_data,
        )
    if status == 404:
        raise NotFoundError(
            'Resource not found', status_code=status, response_data=response_data
        )
    if status == 408 or status >= 500:
        raise TransientError(
            f'API request failed: {message}',
            status_code=status,
            response_data=response_data,
        )
    raise FatalStageError(
        f'API request failed: {message}',
        status_code=status,
        response_data=response_data,
    )


class HTTPClient:
    """JSON-over-HTTP client with error mapping."""

    def __init__(
        self,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout: float = 30,
    ):
        """Initialize HTTP client.

        Args:
            base_url: Root URL every endpoint is resolved against
            headers: Headers sent with every request
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip('/')
        self.headers = {
            'Content-Type': 'application/json',
            'User-Agent': 'notion-migrate/0.1.0',
        }
        self.headers.update(headers or {})
        self.timeout = timeout

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint.

        Absolute URLs are returned unchanged.
        """
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        return urljoin(self.base_url + '/', endpoint.lstrip('/'))

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> APIResponse:
        """Make an asynchronous API request.

        Args:
            method: HTTP method
            endpoint: API endpoint or absolute URL
            params: Query parameters
            data: JSON request body
            headers: Extra headers for this request

        Returns:
            API response

        Raises:
            MigrationError: Mapped from the response status or network error
        """
        url = self._build_url(endpoint)
        request_headers = dict(self.headers)
        request_headers.update(headers or {})
        timeout = aiohttp.ClientTimeout(total=self.timeout)

        try:
            async with aiohttp.ClientSession(
                headers=request_headers, timeout=timeout
            ) as session:
                async with session.request(
                    method=method, url=url, params=params, json=data
                ) as response:
                    response_headers = dict(response.headers)
                    response_text = await response.text()

                    try:
                        response_data = (
                            json.loads(response_text) if response_text else None
                        )
                    except ValueError:
                        response_data = response_text

                    raise_for_status(response.status, response_headers, response_data)

                    return APIResponse(
                        status_code=response.status,
                        data=response_data,
                        headers=response_headers,
                        success=200 <= response.status < 300,
                    )

        except MigrationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f'Network error during {method} {url}: {e}')
            raise TransientError(f'Network error: {e}')

    async def get(
        self, endpoint: str, params: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self.request('GET', endpoint, params=params, **kwargs)

    async def post(
        self, endpoint: str, data: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self.request('POST', endpoint, data=data, **kwargs)

    async def patch(
        self, endpoint: str, data: Optional[Dict[str, Any]] = None, **kwargs
    ) -> APIResponse:
        return await self.request('PATCH', endpoint, data=data, **kwargs)

    async def download(self, url: str) -> bytes:
        """Download raw bytes from an absolute URL.

        Raises:
            MigrationError: Mapped from the response status or network error
        """
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as response:
                    if response.status >= 400:
                        raise_for_status(response.status, dict(response.headers), None)
                    return await response.read()
        except MigrationError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f'Network error downloading {url}: {e}')
            raise TransientError(f'Network error: {e}')

    def test_connection(self, endpoint: str = '') -> bool:
        """Synchronously check that the service answers.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            response = requests.get(
                self._build_url(endpoint), headers=self.headers, timeout=self.timeout
            )
            return response.status_code < 400
        except requests.RequestException as e:
            logger.error(f'Connection test failed: {e}')
            return False
