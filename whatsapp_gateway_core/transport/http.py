"""HTTP client for the WhatsApp bridge control API."""

from __future__ import annotations

from typing import Any

import aiohttp

from ..errors import (
    TransportConnectionError,
    TransportResponseError,
    TransportTimeout,
)


class BridgeHttpClient:
    """HTTP client wrapper for bridge control endpoints."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        host: str,
        port: int,
        *,
        token: str | None = None,
    ) -> None:
        self._session = session
        self._host = host
        self._port = port
        self._token = token

    def _url(self, path: str) -> str:
        return f"http://{self._host}:{self._port}{path}"

    def _auth_headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    async def fetch_info(self) -> dict[str, Any] | None:
        """Fetch bridge status from /api/info.

        Returns:
            Decoded status object, or None if the bridge answered non-200.
        """
        url = self._url("/api/info")
        try:
            async with self._session.get(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=5),
            ) as resp:
                if resp.status != 200:
                    return None
                data: dict[str, Any] = await resp.json()
                return data
        except TimeoutError as err:
            raise TransportTimeout("Bridge info request timed out") from err
        except aiohttp.ClientError as err:
            raise TransportConnectionError("Failed to fetch bridge info") from err

    async def logout(self) -> None:
        """Drop the bridge's WhatsApp pairing via /api/logout.

        The endpoint is idempotent: it answers 200 when already logged out.

        Raises:
            TransportResponseError: If the bridge returns non-200 status
            TransportTimeout: If request times out
            TransportConnectionError: If network request fails
        """
        url = self._url("/api/logout")
        try:
            async with self._session.post(
                url,
                headers=self._auth_headers(),
                timeout=aiohttp.ClientTimeout(total=10),
            ) as resp:
                if resp.status != 200:
                    raise TransportResponseError(
                        resp.status, "Bridge logout failed with non-200 response"
                    )
        except TimeoutError as err:
            raise TransportTimeout("Bridge logout request timed out") from err
        except aiohttp.ClientError as err:
            raise TransportConnectionError("Bridge logout request failed") from err
