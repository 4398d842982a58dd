from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from config import get_settings

logger = logging.getLogger(__name__)


class RemoteStoreError(RuntimeError):
    pass


class RemoteStore:
    """Async key/value client for the remote replica.

    Values live at ``{base_url}/users/{profile}/{key}.json``, the layout of a
    Firebase realtime database exposed over REST.
    """

    def __init__(
        self,
        base_url: str,
        profile: str,
        *,
        auth_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, profile: Optional[str] = None) -> Optional[RemoteStore]:
        settings = get_settings()
        if not settings.remote_url:
            return None
        return cls(
            settings.remote_url,
            profile or settings.profile,
            auth_token=settings.remote_auth_token,
            timeout=settings.remote_timeout_secs,
        )

    def _url(self, key: str) -> str:
        return f"{self.base_url}/users/{self.profile}/{key}.json"

    def _params(self) -> dict[str, str]:
        return {"auth": self.auth_token} if self.auth_token else {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    async def load(self, key: str, default: Any = None) -> Any:
        try:
            async with self._client() as client:
                resp = await client.get(self._url(key), params=self._params())
                resp.raise_for_status()
                payload = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RemoteStoreError(f"Failed to load '{key}' from remote store") from exc
        return default if payload is None else payload

    async def save(self, key: str, value: Any) -> None:
        try:
            async with self._client() as client:
                resp = await client.put(
                    self._url(key), params=self._params(), json=value
                )
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"Failed to save '{key}' to remote store") from exc
        logger.debug(f"remote_save: profile={self.profile} key={key}")
