"""Bounded multi-consumer broadcast channel for asyncio.

Every message sent on a :class:`Broadcast` is delivered to each of its
receivers. A receiver that falls ``capacity`` messages behind either holds
the sender back or, when the channel is created with ``overflow=True``,
loses its oldest pending message and learns about it through
:class:`Overflowed` on its next receive.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Generic, List, TypeVar

T = TypeVar("T")


class ChannelClosed(Exception):
    """The channel is closed and, for receivers, fully drained."""


class Overflowed(Exception):
    """The receiver lagged behind and lost ``missed`` messages."""

    def __init__(self, missed: int) -> None:
        super().__init__(f"receiver overflowed, {missed} message(s) lost")
        self.missed = missed


class Broadcast(Generic[T]):
    """Sending side of a broadcast channel."""

    def __init__(self, capacity: int, overflow: bool = False) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.overflow = overflow
        self._receivers: List[Receiver[T]] = []
        self._closed = False
        self._cond = asyncio.Condition()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def receiver_count(self) -> int:
        return len(self._receivers)

    def _has_room(self) -> bool:
        return all(len(r._queue) < self.capacity for r in self._receivers)

    def _attach(self, queue: Deque[T], missed: int = 0) -> "Receiver[T]":
        receiver = Receiver(self, queue, missed)
        self._receivers.append(receiver)
        return receiver

    async def broadcast(self, message: T) -> None:
        """Deliver ``message`` to every receiver, waiting for room if needed."""
        async with self._cond:
            await self._cond.wait_for(
                lambda: self._closed or self.overflow or self._has_room()
            )
            if self._closed:
                raise ChannelClosed("channel is closed")
            for receiver in self._receivers:
                receiver._push(message)
            self._cond.notify_all()

    def new_receiver(self) -> "Receiver[T]":
        """Return a receiver that sees only messages sent from now on."""
        return self._attach(deque())

    async def close(self) -> None:
        """Close the channel; receivers drain what is pending, then stop."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def is_empty(self) -> bool:
        """True when no receiver has a pending message."""
        return not any(r._queue for r in self._receivers)


class Receiver(Generic[T]):
    """Receiving side of a broadcast channel."""

    def __init__(self, channel: Broadcast[T], queue: Deque[T], missed: int = 0) -> None:
        self._channel = channel
        self._queue = queue
        self._missed = missed

    def _push(self, message: T) -> None:
        if len(self._queue) >= self._channel.capacity:
            self._queue.popleft()
            self._missed += 1
        self._queue.append(message)

    def __len__(self) -> int:
        return len(self._queue)

    async def recv(self) -> T:
        """Wait for and return the next message.

        Raises :class:`Overflowed` once after messages were lost, and
        :class:`ChannelClosed` when the channel is closed and drained.
        """
        cond = self._channel._cond
        async with cond:
            await cond.wait_for(
                lambda: self._missed or self._queue or self._channel._closed
            )
            if self._missed:
                missed, self._missed = self._missed, 0
                raise Overflowed(missed)
            if self._queue:
                message = self._queue.popleft()
                cond.notify_all()
                return message
            raise ChannelClosed("channel is closed")

    def clone(self) -> "Receiver[T]":
        """Return a new receiver positioned where this one is."""
        return self._channel._attach(deque(self._queue), self._missed)

    async def close(self) -> None:
        """Close the whole channel."""
        await self._channel.close()