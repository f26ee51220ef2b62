import logging
from typing import Any

import httpx

from horde_queue.config import settings
from horde_queue.services.rate_limiter import (
    PRIORITY_BACKGROUND,
    PRIORITY_INTERACTIVE,
    DualThrottle,
)

logger = logging.getLogger(__name__)


def is_not_found(exc: BaseException) -> bool:
    """True when ``exc`` is an HTTP 404 from the Horde."""
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 404


class HordeClient:
    """AI Horde v2 API wrapper with client-side rate limiting.

    Every call waits on the background or interactive queue of a shared
    ``DualThrottle`` before touching the network.  HTTP errors surface as
    ``httpx.HTTPStatusError`` exactly as httpx raises them; the only
    exception is ``cancel``, where a 404 means the job is already gone.
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        base_url: str | None = None,
        client_agent: str | None = None,
        throttle: DualThrottle | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url or settings.horde_api_base).rstrip("/")
        self.throttle = throttle or DualThrottle(settings.min_api_interval)
        self._timeout = timeout if timeout is not None else settings.http_timeout
        self._transport = transport
        self._headers = {
            "Content-Type": "application/json",
            "apikey": api_key or settings.horde_api_key,
            "Client-Agent": client_agent or settings.client_agent,
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        priority: str = PRIORITY_BACKGROUND,
    ) -> Any:
        """Make a throttled, authenticated call to the Horde API."""
        await self.throttle.acquire(priority)
        url = f"{self.base_url}{path}"
        logger.debug("Horde API %s %s (%s)", method, path, priority)
        async with self._client() as client:
            resp = await client.request(method, url, headers=self._headers, json=json)
            if not resp.is_success:
                logger.error(
                    "Horde API error %s for %s %s: %s",
                    resp.status_code,
                    method,
                    path,
                    resp.text[:500],
                )
            resp.raise_for_status()
            return resp.json()

    async def submit(
        self, params: dict, *, priority: str = PRIORITY_BACKGROUND
    ) -> dict:
        """Submit an async generation request.

        Returns:
            Dict with the Horde job ``id`` and its ``kudos`` cost.
        """
        return await self._request("POST", "/generate/async", json=params, priority=priority)

    async def check(self, horde_id: str, *, priority: str = PRIORITY_BACKGROUND) -> dict:
        """Lightweight status check (no images).

        Returns:
            Dict with ``done``, ``queue_position``, ``wait_time``, ``waiting``,
            ``processing``, ``finished`` and friends.
        """
        return await self._request("GET", f"/generate/check/{horde_id}", priority=priority)

    async def get_result(self, horde_id: str, *, priority: str = PRIORITY_BACKGROUND) -> dict:
        """Full status including the ``generations`` list."""
        return await self._request("GET", f"/generate/status/{horde_id}", priority=priority)

    async def cancel(self, horde_id: str, *, priority: str = PRIORITY_INTERACTIVE) -> dict:
        """Cancel a running job.  A 404 means it already finished or vanished."""
        try:
            return await self._request(
                "DELETE", f"/generate/status/{horde_id}", priority=priority
            )
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.info("Horde job %s already completed or cancelled", horde_id)
                return {"cancelled": False, "message": "Already completed or not found"}
            raise

    async def get_user_info(self, *, priority: str = PRIORITY_INTERACTIVE) -> dict:
        """Return the account behind the configured API key."""
        return await self._request("GET", "/find_user", priority=priority)

    async def estimate_kudos(
        self, params: dict, *, priority: str = PRIORITY_INTERACTIVE
    ) -> float:
        """Dry-run a submission and return its kudos cost."""
        data = await self._request(
            "POST",
            "/generate/async",
            json={**params, "dry_run": True},
            priority=priority,
        )
        return data.get("kudos", 0)

    async def download_image(
        self, url: str, *, priority: str = PRIORITY_BACKGROUND
    ) -> bytes:
        """Download a result image.

        Result URLs point at object storage rather than the API, so no
        credentials are sent.
        """
        await self.throttle.acquire(priority)
        logger.debug("Downloading image %s", url[:120])
        async with self._client() as client:
            resp = await client.get(url, follow_redirects=True)
            if not resp.is_success:
                logger.error("Image download error %s for %s", resp.status_code, url[:120])
            resp.raise_for_status()
            return resp.content
