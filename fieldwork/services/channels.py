import logging
from typing import Any, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class ChannelError(Exception):
    """A provider rejected or failed to accept a message."""
    pass


class EmailSender(Protocol):
    async def send(self, to: str, template_data: dict[str, Any]) -> None: ...


class PushSender(Protocol):
    async def send(self, user_id: str, message: dict[str, Any]) -> None: ...


class _ProviderClient:
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, path: str, json_body: dict[str, Any]) -> httpx.Response:
        try:
            resp = await self.client.post(path, json=json_body, headers=self._headers())
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            raise ChannelError(f"{path} rejected with status {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ChannelError(f"{path} request failed: {e}") from e

    async def close(self):
        await self.client.aclose()


class EmailChannel(_ProviderClient):
    """Transactional email provider (job assignment template)."""

    async def send(self, to: str, template_data: dict[str, Any]) -> None:
        await self._post("/emails", {"to": to, "template": "job_assignment", "data": template_data})
        logger.debug("Email accepted by provider for %s", to)


class PushChannel(_ProviderClient):
    """Mobile/web push provider."""

    async def send(self, user_id: str, message: dict[str, Any]) -> None:
        await self._post("/push", {"user_id": user_id, **message})
        logger.debug("Push accepted by provider for %s", user_id)
