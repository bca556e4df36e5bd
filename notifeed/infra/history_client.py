# notifeed/infra/history_client.py
import os
from typing import Callable, Optional

import httpx
import structlog
from pydantic import ValidationError

from notifeed.errors import HistoryApiError
from notifeed.models.notification import NotificationPage

API_URL = os.getenv("NOTIFEED_API_URL", "http://localhost:8080/api")
API_TIMEOUT = float(os.getenv("NOTIFEED_API_TIMEOUT", "5"))

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Optional[str]]


class HistoryClient:
    """
    Thin async client over the notification history REST API:
      GET  /notifications?page=&size=
      PUT  /notifications/{id}/read
      PUT  /notifications/read-all
    Every failure surfaces as HistoryApiError.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        base_url: str = API_URL,
        timeout: float = API_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _auth_headers(self) -> dict:
        token = self._token_provider()
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, url, headers=self._auth_headers(), **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise HistoryApiError(
                f"{method} {url} answered {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise HistoryApiError(f"{method} {url} failed: {e}") from e
        return resp

    async def fetch_page(self, page: int, size: int) -> NotificationPage:
        resp = await self._request("GET", "/notifications", params={"page": page, "size": size})
        try:
            return NotificationPage.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise HistoryApiError(f"unexpected page payload: {e}") from e

    async def mark_read(self, notification_id: int) -> None:
        await self._request("PUT", f"/notifications/{notification_id}/read")

    async def mark_all_read(self) -> None:
        await self._request("PUT", "/notifications/read-all")
