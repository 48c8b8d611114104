from __future__ import annotations

import httpx


class ContentSourceError(RuntimeError):
    pass


class AdviceSource:
    """Fetches a random piece of advice to publish from the demo endpoint."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float = 10.0):
        self._client = client
        self._url = url
        self._timeout = timeout

    async def fetch(self) -> str:
        try:
            resp = await self._client.get(self._url, timeout=self._timeout)
            resp.raise_for_status()
            advice = resp.json()["slip"]["advice"]
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            raise ContentSourceError(f"content source failed: {exc!r}") from exc
        if not isinstance(advice, str):
            raise ContentSourceError("content source returned no advice")
        return advice
