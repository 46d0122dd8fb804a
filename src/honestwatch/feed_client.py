from __future__ import annotations

from typing import Any

import requests

from honestwatch.config import FEED_TIMEOUT_SECONDS, FEED_URL, FEED_USER_AGENT


class FeedError(RuntimeError):
    """上游 feed 拉取失败（网络/超时/非 2xx/非 JSON/非数组）。调用方记日志并跳过本批。"""


class PoliceFeedClient:
    """
    GET {feed_url}[?DateTime=YYYY-MM-DD] -> 原始事件数组。
    不重试：失败的批次留给下一轮定时同步修正。
    """

    def __init__(
        self,
        feed_url: str = FEED_URL,
        timeout: float = FEED_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.feed_url = feed_url
        self.timeout = timeout if timeout and timeout > 0 else FEED_TIMEOUT_SECONDS
        self._session = session or requests.Session()
        self._owns_session = session is None

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def fetch_latest(self) -> list[dict[str, Any]]:
        return self._get_events(None)

    def fetch_day(self, date_str: str) -> list[dict[str, Any]]:
        return self._get_events({"DateTime": date_str})

    def _get_events(self, params: dict[str, str] | None) -> list[dict[str, Any]]:
        try:
            resp = self._session.get(
                self.feed_url,
                params=params,
                headers={"Accept": "application/json", "User-Agent": FEED_USER_AGENT},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise FeedError(f"feed timeout after {self.timeout}s") from e
        except requests.ConnectionError as e:
            raise FeedError(f"feed connection error: {e}") from e
        except requests.RequestException as e:
            raise FeedError(f"feed request failed: {e}") from e
        try:
            if not (200 <= resp.status_code < 300):
                raise FeedError(f"feed returned status {resp.status_code}")
            try:
                data = resp.json()
            except ValueError as e:
                raise FeedError("feed payload is not JSON") from e
        finally:
            resp.close()
        if not isinstance(data, list):
            raise FeedError("feed payload is not a JSON array")
        return data
