"""
Search backends used by the query layer.

The ranking itself happens elsewhere; this module defines the backend
contract and the client for the hosted search API.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import aiohttp

from ..config import DEFAULT_HOSTED_TIMEOUT_SECONDS
from .error_tracker import SearchBackendError
from .logging_manager import LoggingManager

logger = LoggingManager.get_logger(__name__)

SEARCH_DOCS_ENDPOINT = "/v1/search/docs"


@dataclass
class SearchResult:
    """Data class for search results"""
    score: float
    id: str
    content: str
    source_id: Optional[str] = None
    path: Optional[str] = None
    section: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'id': self.id,
            'content': self.content,
            'source_id': self.source_id,
            'path': self.path,
            'section': self.section,
            'metadata': dict(self.metadata),
        }


class SearchBackend(Protocol):
    async def search(self, query: str, limit: int,
                     filters: Optional[Dict[str, Any]] = None) -> List[SearchResult]:
        ...


_STATUS_MESSAGES = {
    400: "Bad request to {endpoint}. Check that the query parameters are valid.",
    401: "Authentication failed. If an API key is configured, verify it is correct.",
    403: "Access denied to {endpoint}. This resource may require authentication.",
    404: "Resource not found at {endpoint}.",
    408: "Request timed out. The hosted service may be under heavy load, try again in a moment.",
    429: "Rate limited. Try again in a few minutes, or set DOCSYNC_LOCAL=true to search locally.",
    500: "Server error. This is usually temporary, try again shortly.",
    502: "Bad gateway. The hosted API may be restarting, try again in 30 seconds.",
    503: "Service temporarily unavailable. Try again later or set DOCSYNC_LOCAL=true to search locally.",
    504: "Gateway timeout. Try a simpler query or try again later.",
}


def actionable_error_message(status: int, endpoint: str, server_message: Optional[str] = None) -> str:
    """Map an HTTP status to a message that tells the user what to do next."""
    template = _STATUS_MESSAGES.get(status, "API error ({status}). Try again later.")
    message = template.format(endpoint=endpoint, status=status)
    if server_message and server_message not in message:
        message = f'{message} Server said: "{server_message}"'
    return message


def _parse_result(item: Dict[str, Any], position: int) -> SearchResult:
    source = item.get('source') or {}
    return SearchResult(
        score=float(item.get('relevanceScore', item.get('score', 0.0)) or 0.0),
        id=str(item.get('id') or source.get('filePath') or position),
        content=item.get('content') or item.get('code') or "",
        source_id=item.get('sourceId') or source.get('repository'),
        path=source.get('filePath'),
        section=source.get('section'),
        metadata={k: v for k, v in item.items() if k not in ('content', 'code', 'source')},
    )


class HostedSearchBackend:
    """Client for the hosted documentation search API."""

    def __init__(self, base_url: str, timeout: float = DEFAULT_HOSTED_TIMEOUT_SECONDS,
                 headers: Optional[Dict[str, str]] = None):
        if not base_url:
            raise ValueError("Hosted search requires a base URL")
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.headers = {"Content-Type": "application/json", "User-Agent": "docsync"}
        if headers:
            self.headers.update(headers)

    async def search(self, query: str, limit: int,
                     filters: Optional[Dict[str, Any]] = None) -> List[SearchResult]:
        """
        POST the query to the hosted API.

        Raises:
            SearchBackendError: on non-2xx responses, timeouts and network errors
        """
        endpoint = SEARCH_DOCS_ENDPOINT
        payload: Dict[str, Any] = {"query": query, "limit": limit}
        if filters:
            payload.update(filters)

        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self.headers) as session:
                async with session.post(f"{self.base_url}{endpoint}", json=payload) as response:
                    if response.status >= 400:
                        server_message = await self._server_message(response)
                        raise SearchBackendError(
                            actionable_error_message(response.status, endpoint, server_message),
                            status=response.status,
                        )
                    data = await response.json()
        except asyncio.TimeoutError as e:
            raise SearchBackendError(
                f"Request to {endpoint} timed out after {self.timeout:g}s. "
                f"The hosted service may be unavailable.",
                recovery_suggestion="Try again or set DOCSYNC_LOCAL=true for local search",
            ) from e
        except aiohttp.ClientError as e:
            raise SearchBackendError(f"Failed to reach hosted search API: {e}") from e

        results = data.get('results', []) if isinstance(data, dict) else []
        logger.debug(f"Hosted search returned {len(results)} results for '{query}'")
        return [_parse_result(item, i) for i, item in enumerate(results)]

    @staticmethod
    async def _server_message(response: aiohttp.ClientResponse) -> Optional[str]:
        try:
            body = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError):
            return None
        if isinstance(body, dict):
            return body.get('error') or body.get('message')
        return None
