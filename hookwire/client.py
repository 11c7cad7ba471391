"""Platform API client used by integration handlers.

One IntegrationClient is created per inbound request. It identifies the
bot and integration through ``x-bot-id`` / ``x-integration-id`` headers
and forwards the request's tracing headers on every call, so traces
stay connected across the platform boundary.

Key classes:
    IntegrationClient: Async wrapper over the platform chat API.

Key functions:
    create_client: Default factory used by the dispatcher.
"""

import asyncio
from typing import Any, Dict, Mapping, Optional
from urllib.parse import quote

import aiohttp
import structlog

from .config import DEFAULT_API_URL, DEFAULT_CLIENT_TIMEOUT, get_config
from .exceptions import error_from_json

logger = structlog.get_logger("hookwire.client")


class IntegrationClient:
    """Async client for the platform chat API.

    The aiohttp session is created lazily on the first call and must be
    released with close(); the dispatcher does this at the end of every
    request.

    Args:
        bot_id: Bot the request belongs to.
        integration_id: Integration handling the request.
        headers: Extra headers sent on every call (tracing headers).
        api_url: Base URL of the platform API.
        token: Optional bearer token.
        timeout: Total timeout per call, in seconds.
    """

    def __init__(
        self,
        bot_id: str,
        integration_id: str,
        headers: Optional[Mapping[str, str]] = None,
        api_url: str = DEFAULT_API_URL,
        token: str = "",
        timeout: float = DEFAULT_CLIENT_TIMEOUT,
    ):
        self.bot_id = bot_id
        self.integration_id = integration_id
        self.headers = dict(headers or {})
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self):
        """Close the HTTP session if one was opened."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _build_headers(self) -> Dict[str, str]:
        headers = {
            **self.headers,
            "x-bot-id": self.bot_id,
            "x-integration-id": self.integration_id,
            "Content-Type": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute one API call and return the decoded JSON body.

        Raises:
            ApiError: The platform answered with a non-2xx status.
        """
        url = f"{self.api_url}{path}"
        session = await self._get_session()
        try:
            async with session.request(
                method,
                url,
                json=json,
                headers=self._build_headers(),
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if 200 <= resp.status < 300:
                    if resp.content_length == 0:
                        return {}
                    data = await resp.json(content_type=None)
                    return data if isinstance(data, dict) else {}

                text = await resp.text()
                try:
                    data = await resp.json(content_type=None)
                except ValueError:
                    data = None
                logger.warning(
                    "platform_api_error",
                    method=method,
                    path=path,
                    status=resp.status,
                    error=text[:500],
                )
                raise error_from_json(data, status=resp.status)

        except asyncio.TimeoutError:
            logger.warning("platform_api_timeout", method=method, path=path, timeout=self.timeout)
            raise
        except aiohttp.ClientError as e:
            logger.error("platform_api_unreachable", method=method, path=path, error=str(e))
            raise

    # -- Messages ----------------------------------------------------------

    async def update_message(self, id: str, tags: Mapping[str, str]) -> Dict[str, Any]:
        """Set tags on a message."""
        data = await self._request("PUT", f"/v1/chat/messages/{quote(id, safe='')}", {"tags": dict(tags)})
        return data.get("message", data)

    async def get_message(self, id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v1/chat/messages/{quote(id, safe='')}")
        return data.get("message", data)

    async def create_message(
        self,
        conversation_id: str,
        user_id: str,
        type: str,
        payload: Mapping[str, Any],
        tags: Optional[Mapping[str, str]] = None,
    ) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            "/v1/chat/messages",
            {
                "conversationId": conversation_id,
                "userId": user_id,
                "type": type,
                "payload": dict(payload),
                "tags": dict(tags or {}),
            },
        )
        return data.get("message", data)

    # -- Conversations -----------------------------------------------------

    async def get_conversation(self, id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v1/chat/conversations/{quote(id, safe='')}")
        return data.get("conversation", data)

    async def update_conversation(self, id: str, tags: Mapping[str, str]) -> Dict[str, Any]:
        data = await self._request(
            "PUT", f"/v1/chat/conversations/{quote(id, safe='')}", {"tags": dict(tags)}
        )
        return data.get("conversation", data)

    # -- Users -------------------------------------------------------------

    async def get_user(self, id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/v1/chat/users/{quote(id, safe='')}")
        return data.get("user", data)

    async def update_user(
        self,
        id: str,
        tags: Optional[Mapping[str, str]] = None,
        name: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {}
        if tags is not None:
            body["tags"] = dict(tags)
        if name is not None:
            body["name"] = name
        data = await self._request("PUT", f"/v1/chat/users/{quote(id, safe='')}", body)
        return data.get("user", data)


def create_client(
    bot_id: str,
    integration_id: str,
    headers: Optional[Mapping[str, str]] = None,
) -> IntegrationClient:
    """Build a client from the global configuration."""
    config = get_config()
    return IntegrationClient(
        bot_id=bot_id,
        integration_id=integration_id,
        headers=headers,
        api_url=config.api_url,
        token=config.api_token,
        timeout=config.client_timeout,
    )
