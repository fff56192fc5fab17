"""Polymarket CLOB API client (read-only, unauthenticated).

Endpoints used by the keeper:
  GET /markets/{condition_id}   single market, also the attested URL
  GET /sampling-markets         active markets with rewards, for price updates
  GET /markets                  paged market list, scanned for closed markets

List endpoints answer ``{"data": [...], "next_cursor": ...}``.
"""

from typing import Any

import httpx

from polyflux.config import KeeperSettings
from polyflux.exceptions import MarketFetchError
from polyflux.keeper.transform import market_url
from polyflux.logging import get_logger

logger = get_logger(__name__)


class PolymarketClient:
    """Async wrapper over the CLOB REST API.

    Every transport or status failure surfaces as MarketFetchError; retry
    policy belongs to the caller.

    Args:
        settings: Keeper settings (API base URL, timeout).
        http_client: Optional preconfigured httpx.AsyncClient (tests inject
            one backed by httpx.MockTransport). Closed by ``close`` only if
            this object created it.
    """

    def __init__(
        self,
        settings: KeeperSettings | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings or KeeperSettings()
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=self._settings.http_timeout_seconds,
            follow_redirects=True,
            headers={"User-Agent": "polyflux-keeper/0.1"},
        )

    async def __aenter__(self) -> "PolymarketClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client and not self._http.is_closed:
            await self._http.aclose()

    async def fetch_market(self, condition_id: str) -> dict[str, Any]:
        """Fetch one market by condition id."""
        data = await self._get_json(market_url(self._settings.polymarket_api, condition_id))
        if not isinstance(data, dict):
            raise MarketFetchError(f"Unexpected market response for {condition_id}")
        return data

    async def fetch_sampling_markets(self, limit: int = 10) -> list[dict[str, Any]]:
        """Active markets eligible for price updates."""
        return await self._get_list("/sampling-markets", limit)

    async def fetch_markets(self, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent markets, including closed ones."""
        return await self._get_list("/markets", limit)

    async def _get_list(self, path: str, limit: int) -> list[dict[str, Any]]:
        url = f"{self._settings.polymarket_api.rstrip('/')}{path}"
        data = await self._get_json(url, params={"limit": limit})
        rows = data.get("data", []) if isinstance(data, dict) else data
        if not isinstance(rows, list):
            raise MarketFetchError(f"Unexpected list response from {path}")
        # The API ignores limit on some endpoints
        return rows[:limit]

    async def _get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self._http.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "polymarket_http_error",
                url=url,
                status=exc.response.status_code,
            )
            raise MarketFetchError(
                f"GET {url} returned {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("polymarket_request_failed", url=url, error=str(exc))
            raise MarketFetchError(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise MarketFetchError(f"GET {url} returned invalid JSON") from exc
