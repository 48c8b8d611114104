from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence

import httpx

from .blocking import to_thread
from .metrics import DELIVERIES, EVICTIONS
from .signing import SIGNATURE_HEADER, serialize_content, sign
from .store import StoreUnavailable, Subscription, SubscriptionStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    subscriber: str
    delivered: bool
    status: int | None = None
    evicted: bool = False


class ContentDistributor:
    """Pushes published content to every subscriber of a topic.

    Each push is independent: one slow or failing subscriber does not hold
    up the others. A push counts as delivered only on HTTP 200; anything
    else bumps the subscription's failure counter, and the subscription is
    dropped once ``max_failures`` consecutive pushes have failed. Nothing is
    retried.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SubscriptionStore,
        timeout: float = 10.0,
        concurrency: int = 32,
        max_failures: int = 1,
    ):
        self._client = client
        self._store = store
        self._timeout = timeout
        self._concurrency = max(1, concurrency)
        self._max_failures = max(1, max_failures)

    async def snapshot(self, topic: str) -> list[Subscription]:
        return await to_thread(self._store.list_by_topic, topic)

    async def distribute(
        self,
        topic: str,
        content: str,
        subscriptions: Sequence[Subscription] | None = None,
    ) -> list[DeliveryResult]:
        if subscriptions is None:
            subscriptions = await self.snapshot(topic)
        if not subscriptions:
            log.info("no subscribers for %s", topic)
            return []

        body = serialize_content(topic, content)
        sem = asyncio.Semaphore(self._concurrency)

        async def _bounded(sub: Subscription) -> DeliveryResult:
            async with sem:
                return await self._push(sub, body)

        results = await asyncio.gather(*[_bounded(s) for s in subscriptions])
        delivered = sum(1 for r in results if r.delivered)
        log.info(
            "published to %s: %d/%d delivered", topic, delivered, len(results)
        )
        return list(results)

    async def _push(self, sub: Subscription, body: bytes) -> DeliveryResult:
        headers = {
            SIGNATURE_HEADER: sign(sub.secret, body),
            "Content-Type": "application/json",
        }
        status: int | None = None
        try:
            response = await self._client.post(
                sub.subscriber, content=body, headers=headers, timeout=self._timeout
            )
            status = response.status_code
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.warning("push to %s failed: %r", sub.subscriber, exc)

        if status == 200:
            DELIVERIES.labels("delivered").inc()
            if sub.failures:
                await self._store_call(self._store.reset_failures, sub)
            return DeliveryResult(sub.subscriber, True, status)

        DELIVERIES.labels("failed").inc()
        if status is not None:
            log.warning("push to %s answered %d", sub.subscriber, status)
        evicted = bool(
            await self._store_call(self._store.record_failure, sub, self._max_failures)
        )
        if evicted:
            EVICTIONS.inc()
            log.warning("evicted %s from %s", sub.subscriber, sub.topic)
        return DeliveryResult(sub.subscriber, False, status, evicted)

    async def _store_call(self, fn, sub: Subscription, *args):
        try:
            return await to_thread(fn, sub.subscriber, sub.topic, *args)
        except StoreUnavailable:
            log.exception("could not update %s on %s", sub.subscriber, sub.topic)
            return None
