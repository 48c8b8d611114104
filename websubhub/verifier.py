"""Intent verification: the challenge handshake run before a subscription
is granted or revoked.

The hub sends ``GET <callback>?hub.mode=...&hub.topic=...&hub.challenge=...``
and only acts on the request when the subscriber answers with anything but a
404 and echoes the challenge back byte for byte. A rejected intent leaves the
store untouched and nobody is told about it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import httpx

from .blocking import to_thread
from .metrics import VERIFICATIONS
from .signing import generate_challenge
from .store import SubscriptionStore

log = logging.getLogger(__name__)


class Mode(str, Enum):
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class VerificationOutcome(str, Enum):
    VERIFIED = "verified"
    REJECTED = "rejected"


@dataclass(frozen=True)
class Intent:
    callback: str
    mode: Mode
    topic: str
    secret: str = ""
    timestamp: int = 0


def _callback_url(callback: str, params: dict[str, str]) -> httpx.URL:
    """Add hub parameters to the callback, keeping its own query string."""
    return httpx.URL(callback).copy_merge_params(params)


class IntentVerifier:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SubscriptionStore,
        timeout: float = 10.0,
        challenge_factory: Callable[[], str] = generate_challenge,
    ):
        self._client = client
        self._store = store
        self._timeout = timeout
        self._challenge_factory = challenge_factory

    async def verify(self, intent: Intent) -> VerificationOutcome:
        challenge = self._challenge_factory()
        log.debug(
            "sending %s challenge to %s for topic %s",
            intent.mode.value,
            intent.callback,
            intent.topic,
        )
        try:
            url = _callback_url(
                intent.callback,
                {
                    "hub.mode": intent.mode.value,
                    "hub.topic": intent.topic,
                    "hub.challenge": challenge,
                },
            )
            response = await self._client.get(url, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return self._reject(intent, f"transport error: {exc!r}")

        if response.status_code == 404:
            return self._reject(intent, "callback answered 404")
        if response.content != challenge.encode("ascii"):
            return self._reject(intent, "challenge not echoed")

        if intent.mode is Mode.UNSUBSCRIBE:
            await to_thread(self._store.remove, intent.callback, intent.topic)
            log.info("%s unsubscribed from %s", intent.callback, intent.topic)
        else:
            await to_thread(
                self._store.put,
                intent.callback,
                intent.secret,
                intent.topic,
                intent.timestamp,
            )
            log.info("%s (re)subscribed to %s", intent.callback, intent.topic)
        VERIFICATIONS.labels(intent.mode.value, VerificationOutcome.VERIFIED.value).inc()
        return VerificationOutcome.VERIFIED

    def _reject(self, intent: Intent, reason: str) -> VerificationOutcome:
        log.info(
            "%s intent for %s on %s rejected: %s",
            intent.mode.value,
            intent.callback,
            intent.topic,
            reason,
        )
        VERIFICATIONS.labels(intent.mode.value, VerificationOutcome.REJECTED.value).inc()
        return VerificationOutcome.REJECTED

    async def deny(self, callback: str, topic: str, reason: str) -> None:
        """Tell a callback its request was refused. Best effort only."""
        params = {"hub.mode": "denied", "hub.topic": topic, "hub.reason": reason}
        try:
            url = _callback_url(callback, params)
            await self._client.get(url, timeout=self._timeout)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            log.debug("denial to %s not delivered: %r", callback, exc)
