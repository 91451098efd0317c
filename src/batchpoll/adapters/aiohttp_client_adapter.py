# batchpoll/adapters/aiohttp_client_adapter.py
import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from batchpoll.core.exceptions import RemoteServiceError
from batchpoll.core.interfaces.http_client import HttpClientPort

logger = logging.getLogger(__name__)


def _is_transient_status(status: int) -> bool:
    # throttling and server side failures may clear up; other 4xx will not
    return status >= 500 or status in (408, 429)


class AioHttpClientAdapter(HttpClientPort):
    def __init__(self, default_timeout: float = 10.0, default_headers: Dict[str, str] | None = None):
        self._session: Optional[aiohttp.ClientSession] = None
        self._default_headers = dict(default_headers or {})
        self._default_sock_read: float = default_timeout
        self._default_sock_connect: float = 5.0
        self._default_client_timeout = aiohttp.ClientTimeout(
            total=default_timeout,
            sock_read=self._default_sock_read,
            sock_connect=self._default_sock_connect,
        )

    async def __aenter__(self):
        """Async context manager entry"""
        self._session = aiohttp.ClientSession(headers=self._default_headers)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()
        return False

    def _timeout(self, timeout: float | None) -> aiohttp.ClientTimeout:
        if timeout is None:
            return self._default_client_timeout
        # keep adapter-level sock_read/sock_connect values but apply provided total
        return aiohttp.ClientTimeout(
            total=timeout,
            sock_read=self._default_sock_read,
            sock_connect=self._default_sock_connect,
        )

    def _require_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("HTTP client not initialized. Use 'async with' context manager.")
        return self._session

    async def _raise_for_status(self, response: aiohttp.ClientResponse, method: str, url: str) -> None:
        if response.status < 400:
            return
        body = await response.text()
        transient = _is_transient_status(response.status)
        log = logger.warning if transient else logger.error
        log(
            "HTTP error from remote service. Method: %s, URL: %s, Status: %s, Body: %s",
            method, url, response.status, body[:500],
        )
        raise RemoteServiceError(
            f"The remote service returned an HTTP error: {response.status}",
            status=response.status,
            transient=transient,
            upstream_body=body[:2000],
        )

    def _translate(self, method: str, url: str, error: Exception) -> RemoteServiceError:
        """Map transport failures to the domain error; all of them are retryable."""
        if isinstance(error, asyncio.TimeoutError):
            logger.error("Timeout when requesting remote service. Method: %s, URL: %s", method, url)
            return RemoteServiceError(
                "The request to the remote service timed out.", status=504, transient=True
            )
        logger.error(
            "Connection error when requesting remote service. Method: %s, URL: %s, Error: %s",
            method, url, str(error),
        )
        return RemoteServiceError(
            "There was a connection error with the remote service.",
            status=502,
            transient=True,
            diagnostic=str(error),
        )

    async def get(
        self,
        url: str,
        params: Dict[str, str] | None = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Any:
        session = self._require_session()
        try:
            async with session.get(
                url, params=params, timeout=self._timeout(timeout), headers=headers
            ) as response:
                await self._raise_for_status(response, "GET", url)
                try:
                    return await response.json()
                except aiohttp.ContentTypeError:
                    response_text = await response.text()
                    logger.error(
                        "Invalid JSON response from remote service. URL: %s, Content: %s",
                        url,
                        response_text[:500],
                    )
                    raise RemoteServiceError(
                        "The response from the remote service was not valid JSON",
                        status=502,
                        transient=False,
                        upstream_body=response_text[:2000],
                    )
        except RemoteServiceError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError) as error:
            raise self._translate("GET", url, error) from error

    async def get_bytes(
        self,
        url: str,
        params: Dict[str, str] | None = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        session = self._require_session()
        try:
            async with session.get(
                url, params=params, timeout=self._timeout(timeout), headers=headers
            ) as response:
                await self._raise_for_status(response, "GET", url)
                return {
                    "status": response.status,
                    "headers": dict(response.headers),
                    "body": await response.read(),
                }
        except RemoteServiceError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError) as error:
            raise self._translate("GET", url, error) from error

    async def post(
        self,
        url: str,
        json: Dict[str, Any] | None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        session = self._require_session()
        try:
            async with session.post(
                url, json=json, timeout=self._timeout(timeout), headers=headers
            ) as response:
                await self._raise_for_status(response, "POST", url)
                try:
                    body = await response.json()
                except aiohttp.ContentTypeError:
                    body = await response.text()
                return {
                    "status": response.status,
                    "headers": dict(response.headers),
                    "body": body,
                }
        except RemoteServiceError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError) as error:
            raise self._translate("POST", url, error) from error

    async def close(self) -> None:
        """Close the session"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
