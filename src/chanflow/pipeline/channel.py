"""
Asynchronous data channels connecting processes.

A channel is an ordered FIFO stream that producers ``send`` items into and
consumers pull from with ``next``. Once closed, consumers drain the buffered
items and then observe ``END_OF_STREAM``.
"""

import logging
import threading
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Optional

logger = logging.getLogger(__name__)


class _EndOfStream:
    """
    Marker returned by ``Channel.next`` once a closed channel is drained.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"

    def __bool__(self) -> bool:
        return False


END_OF_STREAM = _EndOfStream()


class Channel:
    """
    Thread-safe, completion-aware FIFO stream.

    Each item is delivered to exactly one consumer; concurrent consumers
    compete for items.
    """

    def __init__(self, name: Optional[str] = None):
        self.name = name
        self._items: deque = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._sent = 0

    @classmethod
    def of(cls, *items: Any, name: Optional[str] = None) -> "Channel":
        """
        Create a closed channel pre-filled with the given items.
        """
        return cls.from_iterable(items, name=name)

    @classmethod
    def from_iterable(cls, items: Iterable[Any], name: Optional[str] = None) -> "Channel":
        channel = cls(name)
        for item in items:
            channel.send(item)
        channel.close()
        return channel

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def sent_count(self) -> int:
        """Number of items accepted by this channel so far."""
        return self._sent

    def send(self, item: Any) -> bool:
        """
        Enqueue an item without blocking.

        Returns False when the channel is already closed, in which case the
        item is dropped.
        """
        if item is END_OF_STREAM:
            raise ValueError("END_OF_STREAM cannot be sent, use close()")
        with self._cond:
            if self._closed:
                logger.debug(f"Dropping item sent to closed channel '{self.name}'")
                return False
            self._items.append(item)
            self._sent += 1
            self._cond.notify()
        return True

    def close(self) -> None:
        """
        Mark the end of the stream. Calling it again has no effect.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        logger.debug(f"Channel '{self.name}' closed after {self._sent} items")

    def next(self, timeout: Optional[float] = None) -> Any:
        """
        Block until an item is available or the channel is closed and empty.

        Returns the item, or ``END_OF_STREAM``. Raises ``TimeoutError`` when
        ``timeout`` elapses first.
        """
        with self._cond:
            if not self._cond.wait_for(
                lambda: self._items or self._closed, timeout=timeout
            ):
                raise TimeoutError(f"No item on channel '{self.name}' after {timeout}s")
            if self._items:
                return self._items.popleft()
            return END_OF_STREAM

    def drain(self) -> List[Any]:
        """
        Consume every item until end-of-stream and return them as a list.
        """
        return list(self)

    def __iter__(self) -> Iterator[Any]:
        while True:
            item = self.next()
            if item is END_OF_STREAM:
                return
            yield item

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Channel(name={self.name!r}, pending={len(self)}, {state})"


class ChannelRegistry:
    """
    Registry of named channels for one pipeline.

    Referencing an undeclared name creates the channel on first use.
    """

    def __init__(self):
        self._channels: Dict[str, Channel] = {}
        self._lock = threading.Lock()

    def declare(self, name: str, channel: Optional[Channel] = None) -> Channel:
        """
        Register a channel under a name, replacing nothing that already exists.
        """
        with self._lock:
            if name in self._channels:
                raise ValueError(f"Channel '{name}' already declared")
            if channel is None:
                channel = Channel(name)
            elif channel.name is None:
                channel.name = name
            self._channels[name] = channel
            logger.debug(f"Declared channel '{name}'")
            return channel

    def get_or_create(self, name: str) -> Channel:
        with self._lock:
            channel = self._channels.get(name)
            if channel is None:
                channel = Channel(name)
                self._channels[name] = channel
                logger.debug(f"Created channel '{name}' on first reference")
            return channel

    def get(self, name: str) -> Optional[Channel]:
        with self._lock:
            return self._channels.get(name)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._channels)

    def close_all(self) -> None:
        """
        Close every registered channel, unblocking waiting consumers.
        """
        with self._lock:
            channels = list(self._channels.values())
        for channel in channels:
            channel.close()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._channels

    def __getitem__(self, name: str) -> Channel:
        channel = self.get(name)
        if channel is None:
            raise KeyError(name)
        return channel
