"""TheSports football API gateway."""

import asyncio
import logging
import time
from datetime import date
from typing import Any, Optional

import httpx

from livesync.config import get_settings
from livesync.errors import ProviderError, ProviderRateLimited
from livesync.etl.base import ChangedMatch, DailyBulletin, ProviderGateway
from livesync.etl.payloads import find_match_record, first_present, normalize_changed_matches
from livesync.etl.rate_limit import TokenBucket
from livesync.telemetry import record_provider_request

logger = logging.getLogger(__name__)


class TheSportsProvider(ProviderGateway):
    """TheSports gateway with a shared token bucket and bounded retry."""

    def __init__(
        self,
        rate_limiter: Optional[TokenBucket] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: float = 2.0,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.THESPORTS_BASE_URL).rstrip("/")
        self._auth = {"user": settings.THESPORTS_USER, "secret": settings.THESPORTS_SECRET}
        self.rate_limiter = rate_limiter or TokenBucket(settings.THESPORTS_REQUESTS_PER_MINUTE)
        self.client = client or httpx.AsyncClient(timeout=settings.THESPORTS_TIMEOUT_SECONDS)
        self.max_retries = max_retries if max_retries is not None else settings.PROVIDER_MAX_RETRIES
        self.retry_delay = retry_delay

    async def _request(self, endpoint: str, params: dict = None) -> dict:
        """
        Make a rate-limited GET against the provider.

        Retries 429s, timeouts, transport errors and 5xx responses with
        exponential backoff. 4xx responses and ``err`` bodies are not retried.

        Args:
            endpoint: Path relative to the base URL (e.g. "match/diary")
            params: Query parameters (auth is added here)

        Raises:
            ProviderRateLimited: still rate limited after the last attempt
            ProviderError: any other failure
        """
        url = f"{self.base_url}/{endpoint}"
        query = {**self._auth, **(params or {})}
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries):
            await self.rate_limiter.acquire()
            start_time = time.time()
            wait_time = self.retry_delay * (2 ** attempt)
            try:
                response = await self.client.get(url, params=query)
                latency_ms = (time.time() - start_time) * 1000

                if response.status_code == 429:
                    record_provider_request(endpoint, 429, latency_ms, is_rate_limited=True)
                    self.rate_limiter.penalize(wait_time)
                    last_error = ProviderRateLimited(f"{endpoint}: rate limited")
                    logger.warning(f"[PROVIDER] Rate limited on {endpoint}. Waiting {wait_time}s before retry...")
                    await asyncio.sleep(wait_time)
                    continue

                record_provider_request(endpoint, response.status_code, latency_ms)
                response.raise_for_status()
                data = response.json()

            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500:
                    raise ProviderError(f"{endpoint}: HTTP {status}") from e
                last_error = e
                logger.warning(f"[PROVIDER] HTTP {status} on {endpoint} (attempt {attempt + 1}/{self.max_retries})")
            except httpx.TimeoutException as e:
                record_provider_request(endpoint, 0, (time.time() - start_time) * 1000)
                last_error = e
                logger.warning(f"[PROVIDER] Timeout on {endpoint} (attempt {attempt + 1}/{self.max_retries})")
            except httpx.RequestError as e:
                last_error = e
                logger.warning(f"[PROVIDER] Request error on {endpoint}: {e}")
            except ValueError as e:
                raise ProviderError(f"{endpoint}: response is not JSON") from e
            else:
                if not isinstance(data, dict):
                    raise ProviderError(f"{endpoint}: unexpected body type {type(data).__name__}")
                if data.get("err"):
                    raise ProviderError(f"{endpoint}: {data['err']}")
                return data

            if attempt < self.max_retries - 1:
                await asyncio.sleep(wait_time)

        if isinstance(last_error, ProviderError):
            raise last_error
        raise ProviderError(f"{endpoint}: failed after {self.max_retries} attempts: {last_error}") from last_error

    async def fetch_changed_matches(self) -> list[ChangedMatch]:
        data = await self._request("data/update")
        return normalize_changed_matches(data)

    async def fetch_live_detail(self, match_id: str) -> Optional[dict]:
        data = await self._request("match/detail_live", {"match_id": match_id})
        return find_match_record(data, match_id)

    async def fetch_match_detail(self, match_id: str) -> Optional[dict]:
        data = await self._request("match/recent/list", {"uuid": match_id})
        return find_match_record(data, match_id)

    async def fetch_daily_bulletin(self, day: date) -> DailyBulletin:
        date_str = day.strftime("%Y%m%d")
        data = await self._request("match/diary", {"date": date_str})
        results = data.get("results")
        extra = data.get("results_extra") or {}
        return DailyBulletin(
            date_str=date_str,
            matches=results if isinstance(results, list) else [],
            teams=extra.get("team") or [],
            competitions=extra.get("competition") or [],
        )

    async def fetch_match_statistics(self, match_id: str) -> Any:
        data = await self._request("match/team_stats/detail", {"match_id": match_id})
        record = find_match_record(data, match_id)
        return first_present(record, "stats", "statistics") if record else None

    async def fetch_match_incidents(self, match_id: str) -> Any:
        data = await self._request("match/live/history", {"match_id": match_id})
        record = find_match_record(data, match_id)
        return first_present(record, "incidents", "events") if record else None

    async def fetch_match_trend(self, match_id: str) -> Any:
        data = await self._request("match/live/trend", {"match_id": match_id})
        return data.get("results")

    async def fetch_player_stats(self, match_id: str) -> Any:
        data = await self._request("match/player_stats/detail", {"match_id": match_id})
        record = find_match_record(data, match_id)
        return first_present(record, "player_stats", "players") if record else None

    async def fetch_lineup(self, match_id: str) -> Any:
        data = await self._request("match/lineup/detail", {"id": match_id})
        return data.get("results")

    async def fetch_h2h(self, match_id: str) -> Any:
        data = await self._request("match/analysis", {"uuid": match_id})
        return data.get("results")

    async def fetch_standings(self, season_id: str) -> Any:
        data = await self._request("season/recent/table/detail", {"uuid": season_id})
        results = data.get("results")
        if isinstance(results, dict):
            return results.get("tables") or results
        return results

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
