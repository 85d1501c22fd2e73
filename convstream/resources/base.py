"""
convstream - Base Resource

This module contains the base class for REST resources.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, TypeVar

import httpx
import structlog

from convstream import __version__
from convstream.config import ClientConfig, Limits
from convstream.exceptions import (
    APIError,
    AuthenticationError,
    ConflictError,
    ConvStreamError,
    NotFoundError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TokenProvider = Callable[[], Awaitable[str]]


@dataclass
class PaginatedResponse(Generic[T]):
    """
    One page of a token-paginated listing.

    Attributes:
        items: Items in the current page
        next_cursor: Cursor for the next page, ``None`` on the last page
    """
    items: List[T]
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)


class BaseResource:
    """
    Base class for REST resources.

    Owns an ``httpx.AsyncClient`` unless one is supplied, and maps error
    responses onto the exception hierarchy.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        config: ClientConfig,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._token_provider = token_provider
        self._config = config
        self._owns_client = http_client is None
        self._http_client = http_client

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the async HTTP client."""
        if self._http_client is None:
            headers = {
                "Content-Type": "application/json",
                "Accept": "application/json",
                "User-Agent": f"convstream-python/{__version__}",
            }
            self._http_client = httpx.AsyncClient(
                base_url=self._config.base_url,
                headers=headers,
                timeout=httpx.Timeout(self._config.timeout),
                follow_redirects=True,
            )
        return self._http_client

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Make an authenticated request and decode the response."""
        token = await self._token_provider()
        if not token:
            raise AuthenticationError("Token provider returned an empty token")

        client = self._get_client()
        logger.debug("http_request", method=method, path=path)

        try:
            response = await client.request(
                method=method,
                url=path,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TimeoutException as e:
            raise ConvStreamError(f"Request timed out: {e}")
        except httpx.RequestError as e:
            raise ConvStreamError(f"Request failed: {e}")

        return self._handle_response(response)

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("GET", path, params=params)

    async def _post(self, path: str, json: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request("POST", path, json=json)

    def _build_pagination_params(
        self,
        page_size: int = Limits.DEFAULT_PAGE_SIZE,
        cursor: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """Build pagination query parameters."""
        params: Dict[str, Any] = {"pageSize": min(page_size, Limits.MAX_PAGE_SIZE)}
        if cursor:
            params["cursor"] = cursor
        params.update({k: v for k, v in kwargs.items() if v is not None})
        return params

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code in (200, 201, 202):
            if response.headers.get("content-type", "").startswith("application/json"):
                return response.json()
            return response.text

        if response.status_code == 204:
            return {}

        try:
            error_data = response.json()
        except ValueError:
            error_data = None

        if isinstance(error_data, dict):
            error_message = error_data.get("detail") or error_data.get("message") or str(error_data)
        else:
            error_message = response.text or f"HTTP {response.status_code}"

        logger.warning("http_error", status_code=response.status_code, error=error_message)

        if response.status_code == 401:
            raise AuthenticationError(error_message)
        elif response.status_code == 403:
            raise AuthenticationError(f"Forbidden: {error_message}")
        elif response.status_code == 404:
            raise NotFoundError(error_message)
        elif response.status_code == 409:
            raise ConflictError(error_message)
        else:
            raise APIError(f"HTTP {response.status_code}: {error_message}", status_code=response.status_code)

    async def close(self) -> None:
        """Close the HTTP client if this resource created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> "BaseResource":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
