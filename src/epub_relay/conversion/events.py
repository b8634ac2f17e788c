"""
Progress events and their fan-out to connected listeners.

Delivery is push based: every listener owns a bounded queue that
`Broadcaster.publish` fills without waiting, and the connection layer drains
it. Listeners only see events published after they registered; there is no
backlog replay for late joiners.
"""

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    status: str
    step: int | None = None

    def to_dict(self) -> dict[str, object]:
        data: dict[str, object] = {}
        if self.step is not None:
            data["step"] = self.step
        data["status"] = self.status
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))


class ChannelClosed(Exception):
    pass


_CLOSED = object()


class ListenerChannel:
    """One observer's delivery path.

    Writes never block: if the reader falls `maxsize` events behind, the
    channel is considered stalled and closes itself. Must be used from the
    event loop thread.
    """

    def __init__(self, maxsize: int = 64) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def offer(self, event: ProgressEvent) -> bool:
        if self._closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Listener queue full (%d events), dropping listener", self._queue.maxsize)
            self.close()
            return False
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # reader drains what is queued, then sees the closed flag
            pass

    async def next_event(self, timeout: float | None = None) -> ProgressEvent | None:
        """Wait for the next event; None means `timeout` elapsed with nothing to send."""
        if self._closed and self._queue.empty():
            raise ChannelClosed()
        try:
            item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            if self._closed:
                raise ChannelClosed()
            return None
        if item is _CLOSED:
            raise ChannelClosed()
        return item  # type: ignore[return-value]


class Broadcaster:
    def __init__(self, queue_size: int = 64) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._channels: dict[str, ListenerChannel] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._channels)

    def register(self, channel: ListenerChannel | None = None) -> tuple[str, ListenerChannel]:
        if channel is None:
            channel = ListenerChannel(maxsize=self._queue_size)
        token = uuid.uuid4().hex
        with self._lock:
            self._channels[token] = channel
            count = len(self._channels)
        logger.info("Listener %s registered (%d connected)", token[:8], count)
        return token, channel

    def unregister(self, token: str) -> bool:
        """Remove a listener. Unknown or already removed tokens are ignored."""
        with self._lock:
            channel = self._channels.pop(token, None)
            count = len(self._channels)
        if channel is None:
            return False
        channel.close()
        logger.info("Listener %s unregistered (%d connected)", token[:8], count)
        return True

    def publish(self, event: ProgressEvent) -> int:
        with self._lock:
            targets = list(self._channels.items())
        logger.debug("Broadcasting to %d listeners: %s", len(targets), event.to_dict())
        delivered = 0
        for token, channel in targets:
            if channel.offer(event):
                delivered += 1
            else:
                self.unregister(token)
        return delivered

    def close_all(self) -> None:
        with self._lock:
            tokens = list(self._channels)
        for token in tokens:
            self.unregister(token)
