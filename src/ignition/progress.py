"""Progress events and the channel that carries them from a run to its reader."""

import asyncio
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Union

from pydantic import BaseModel, Field


class ProgressEventType(str, Enum):
    """Kinds of progress event."""

    START = "start"
    STEP = "step"
    ACTION = "action"
    LOG = "log"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """One unit of a run's observable timeline."""

    type: ProgressEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    action_id: Optional[str] = None
    action_type: Optional[str] = None
    action_name: Optional[str] = None
    status: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration: Optional[int] = Field(None, description="Milliseconds")

    @property
    def is_final(self) -> bool:
        return self.type in (ProgressEventType.COMPLETE, ProgressEventType.ERROR)


ProgressCallback = Callable[[ProgressEvent], Union[None, Awaitable[None]]]


class ProgressChannelClosed(RuntimeError):
    """Raised when sending on a closed channel."""


class ProgressChannel:
    """
    Single-producer, single-consumer event channel.

    The engine writes with ``send`` and ends the stream with ``close``; the
    reader iterates with ``async for`` and stops when the channel is closed
    and drained. Events sent before the reader starts are buffered, nothing is
    replayed once consumed.

    Example:
        channel = ProgressChannel()
        channel.send(ProgressEvent(type=ProgressEventType.START))
        channel.close()
        async for event in channel:
            print(event.type)
    """

    def __init__(self) -> None:
        self._events: Deque[ProgressEvent] = deque()
        self._closed = False
        self._changed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: ProgressEvent) -> None:
        if self._closed:
            raise ProgressChannelClosed("Cannot send on a closed progress channel")
        self._events.append(event)
        self._changed.set()

    def close(self) -> None:
        self._closed = True
        self._changed.set()

    def __aiter__(self) -> "ProgressChannel":
        return self

    async def __anext__(self) -> ProgressEvent:
        while True:
            if self._events:
                return self._events.popleft()
            if self._closed:
                raise StopAsyncIteration
            self._changed.clear()
            await self._changed.wait()
