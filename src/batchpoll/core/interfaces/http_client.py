from abc import ABC, abstractmethod
from typing import Any, Dict


class HttpClientPort(ABC):
    @abstractmethod
    async def __aenter__(self) -> "HttpClientPort":
        """Async context manager entry method"""
        pass

    @abstractmethod
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit method"""
        pass

    @abstractmethod
    async def get(
        self,
        url: str,
        params: Dict[str, str] | None = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Any:
        """Make a GET request and return the parsed JSON response.

        Raises RemoteServiceError for HTTP error statuses, timeouts and
        connection failures.
        """
        pass

    @abstractmethod
    async def get_bytes(
        self,
        url: str,
        params: Dict[str, str] | None = None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Make a GET request for a binary body. Returns a dict with keys:
        'status' (int), 'headers' (dict) and 'body' (bytes).
        """
        pass

    @abstractmethod
    async def post(
        self,
        url: str,
        json: Dict[str, Any] | None,
        timeout: float | None = None,
        headers: Dict[str, str] | None = None,
    ) -> Dict[str, Any]:
        """Make a POST request. Returns a dict with keys: 'status' (int),
        'headers' (dict) and 'body' (parsed JSON or raw text).

        The timeout is optional; adapters may use an internal default ClientTimeout
        when timeout is None.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the HTTP client session"""
        pass
