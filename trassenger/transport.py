"""
Mailbox transport for Trassenger.
HTTP client for the stateless relay that stores opaque blobs per queue.

The relay authenticates nobody: knowing a queue id is enough to read, post
and delete. Queue ids are derived from both parties' public keys.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

import aiohttp

logger = logging.getLogger(__name__)


class TransportUnavailable(Exception):
    """The relay could not be reached or refused the request."""

    def __init__(self, operation: str, reason: str, status: Optional[int] = None):
        self.operation = operation
        self.reason = reason
        self.status = status
        super().__init__(f"{operation} failed: {reason}")


@dataclass
class ServerMessage:
    """One blob as stored on the relay."""
    id: str
    timestamp: int
    data: str
    meta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "ServerMessage":
        return cls(
            id=str(data['id']),
            timestamp=int(data.get('timestamp', 0)),
            data=data['data'],
            meta=data.get('meta') or {},
        )


class MailboxClient:
    """Client for the mailbox relay API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30,
    ):
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _queue_url(self, queue_id: str, message_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/mailbox/{queue_id}"
        if message_id is not None:
            url = f"{url}/{message_id}"
        return url

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> dict:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.request(method, url, **kwargs) as response:
                    if response.status >= 400:
                        text = await response.text()
                        raise TransportUnavailable(
                            operation,
                            f"HTTP {response.status}: {text or 'Unknown error'}",
                            status=response.status,
                        )
                    data = await response.json(content_type=None)
                    if not isinstance(data, dict):
                        raise TransportUnavailable(operation, "response is not a JSON object")
                    return data

        except aiohttp.ClientError as e:
            raise TransportUnavailable(operation, str(e) or type(e).__name__) from e
        except asyncio.TimeoutError as e:
            raise TransportUnavailable(operation, "request timed out") from e
        except ValueError as e:
            raise TransportUnavailable(operation, f"unparsable response: {e}") from e

    async def post(
        self,
        queue_id: str,
        data: str,
        meta: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Post a blob to a queue. Returns the relay's message id."""
        result = await self._request(
            "post",
            "POST",
            self._queue_url(queue_id),
            json={'data': data, 'meta': meta or {}},
        )

        if not result.get('success'):
            raise TransportUnavailable("post", "server reported failure")

        logger.debug(f"Posted message {result.get('id')} to {queue_id} at {result.get('timestamp')}")
        return str(result['id'])

    async def fetch(self, queue_id: str) -> List[ServerMessage]:
        """Fetch every blob currently stored for a queue."""
        result = await self._request("fetch", "GET", self._queue_url(queue_id))

        try:
            return [ServerMessage.from_dict(m) for m in result.get('messages', [])]
        except (KeyError, TypeError, ValueError) as e:
            raise TransportUnavailable("fetch", f"unexpected message shape: {e}") from e

    async def delete(self, queue_id: str, message_id: str) -> None:
        """Delete one blob from a queue."""
        result = await self._request(
            "delete",
            "DELETE",
            self._queue_url(queue_id, message_id),
        )

        if not result.get('success'):
            raise TransportUnavailable("delete", "server reported failure")

        logger.debug(f"Deleted message {result.get('deleted', message_id)} from {queue_id}")
