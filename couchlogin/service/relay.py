from __future__ import annotations

import asyncio
import hmac
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from couchlogin.logging import get_logger
from couchlogin.service.errors import NotFoundError
from couchlogin.service.sessions import url_safe_uuid
from couchlogin.storage.models import now_ms

logger = get_logger(__name__)

CHANNEL_PREFIX = "ec:"
CHANNEL_LIFE_MS = 60 * 60 * 1000
DEFAULT_WAIT_SECONDS = 25.0


@dataclass
class RelayChannel:
    """One-shot channel carrying a login result to a waiting client."""

    id: str
    secret: str
    expires: int
    event: Optional[Dict[str, Any]] = None
    waiter: Optional[asyncio.Future] = field(default=None, repr=False)

    def is_expired(self, now: int) -> bool:
        return self.expires < now


class LoginRelay:
    """Hand a login result from the provider callback to the polling client.

    The client opens a channel, then long-polls it with the channel secret.
    The first published event is delivered to exactly one poll and the
    channel is discarded. Polls give up after ``wait_seconds`` with no
    result.
    """

    def __init__(
        self,
        *,
        wait_seconds: float = DEFAULT_WAIT_SECONDS,
        channel_life_ms: int = CHANNEL_LIFE_MS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.wait_seconds = wait_seconds
        self.channel_life_ms = channel_life_ms
        self._now = clock
        self._channels: Dict[str, RelayChannel] = {}

    def __len__(self) -> int:
        return len(self._channels)

    def open(self) -> RelayChannel:
        channel = RelayChannel(
            id=CHANNEL_PREFIX + url_safe_uuid(),
            secret=url_safe_uuid(),
            expires=self._now() + self.channel_life_ms,
        )
        self._channels[channel.id] = channel
        logger.debug("relay_channel_opened", channel_id=channel.id)
        return channel

    def get(self, channel_id: str) -> Optional[RelayChannel]:
        return self._channels.get(channel_id)

    def _authorized(self, channel_id: str, secret: Optional[str]) -> RelayChannel:
        channel = self._channels.get(channel_id)
        if channel is None or channel.is_expired(self._now()):
            raise NotFoundError("Channel not found", detail={"channel_id": channel_id})
        if not secret or not hmac.compare_digest(channel.secret, secret):
            # Same answer as a missing channel so ids cannot be probed
            raise NotFoundError("Channel not found", detail={"channel_id": channel_id})
        return channel

    def _discard(self, channel: RelayChannel, result: Optional[Dict[str, Any]] = None) -> None:
        self._channels.pop(channel.id, None)
        if channel.waiter is not None and not channel.waiter.done():
            channel.waiter.set_result(result)
        channel.waiter = None

    def publish(self, channel_id: str, event: Dict[str, Any]) -> bool:
        """Deliver ``event``; returns False when the channel is unknown."""
        if not event:
            raise ValueError("missing event")
        channel = self._channels.get(channel_id)
        if channel is None:
            logger.warning("relay_publish_unknown_channel", channel_id=channel_id)
            return False
        payload = {k: v for k, v in event.items() if k != "callback"}
        payload["channelId"] = channel.id
        if channel.waiter is not None and not channel.waiter.done():
            self._discard(channel, payload)
        else:
            channel.event = payload
        logger.info("relay_event_published", channel_id=channel.id)
        return True

    async def wait(
        self, channel_id: str, secret: Optional[str], timeout: Optional[float] = None
    ) -> Optional[Dict[str, Any]]:
        """Wait for the channel's event; ``None`` when nothing arrived in time.

        A newer poll on the same channel releases the older one with ``None``.
        """
        channel = self._authorized(channel_id, secret)
        if channel.event is not None:
            event = channel.event
            self._discard(channel)
            return event
        if channel.waiter is not None and not channel.waiter.done():
            channel.waiter.set_result(None)
        waiter: asyncio.Future = asyncio.get_running_loop().create_future()
        channel.waiter = waiter
        try:
            return await asyncio.wait_for(
                asyncio.shield(waiter), timeout if timeout is not None else self.wait_seconds
            )
        except asyncio.TimeoutError:
            return None
        finally:
            if channel.waiter is waiter:
                channel.waiter = None

    def destroy(self, channel_id: str, secret: Optional[str]) -> None:
        """Drop a channel silently; unknown ids and wrong secrets are ignored."""
        channel = self._channels.get(channel_id)
        if channel is None or not secret or not hmac.compare_digest(channel.secret, secret):
            return
        self._discard(channel)

    def sweep(self) -> int:
        """Remove expired channels, releasing their pollers; returns the count."""
        now = self._now()
        expired = [channel for channel in self._channels.values() if channel.is_expired(now)]
        for channel in expired:
            self._discard(channel)
        if expired:
            logger.info("relay_channels_expired", count=len(expired))
        return len(expired)
