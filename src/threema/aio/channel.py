# SPDX-FileCopyrightText: 2020-present Dan Pascu <dan@aethereal.link>
#
# SPDX-License-Identifier: AGPL-3.0-or-later

from asyncio import AbstractEventLoop, CancelledError, Event, Future, get_running_loop
from collections import deque
from collections.abc import Generator
from typing import Any, Self

from . import exceptions

__all__ = 'Channel',  # noqa: COM818


class WaiterQueue[T](deque[T]):
    def discard(self, value: T) -> None:
        try:  # noqa: SIM105
            self.remove(value)
        except ValueError:
            pass


class Channel[T]:
    """
    A bounded channel with non-blocking senders.

    Sending never waits: an item is either handed to a pending reader,
    stored in the buffer, or rejected with WouldBlock when the buffer is
    full. Readers wait for items until the channel is closed and drained,
    after which receiving raises EndOfChannel.

    Awaiting the channel waits until it was closed and all the buffered
    items were received.
    """

    def __init__(self, buffer_size: int) -> None:
        if buffer_size < 1:
            raise ValueError('buffer_size must be a positive integer')
        self._buffer_size = buffer_size
        self._queue = deque[T]()
        self._readers = WaiterQueue[Future[T]]()
        self._done = Event()
        self._closed = False

    def __repr__(self) -> str:
        return f'<{self.__class__.__qualname__}: {len(self._queue)}/{self._buffer_size}{' closed' if self._closed else ''}>'

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def _loop(self) -> AbstractEventLoop:
        loop = get_running_loop()
        if '_loop' not in self.__dict__ and self.__dict__.setdefault('_loop', loop) is not loop:
            raise RuntimeError(f'{self!r} is bound to a different event loop')
        return loop

    @property
    def buffer_size(self) -> int:
        return self._buffer_size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def full(self) -> bool:
        return len(self._queue) >= self._buffer_size

    def send_nowait(self, value: T) -> None:
        if self._closed:
            raise exceptions.ClosedResourceError
        assert not self._readers or len(self._queue) == 0  # noqa: S101
        while self._readers:
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_result(value)
                return
        if len(self._queue) < self._buffer_size:
            self._queue.append(value)
        else:
            raise exceptions.WouldBlock

    def receive_nowait(self) -> T:
        if self._queue:
            value = self._queue.popleft()
            if self._closed and not self._queue:
                self._done.set()
            return value
        if self._closed:
            raise exceptions.EndOfChannel
        raise exceptions.WouldBlock

    async def receive(self) -> T:
        try:
            value = self.receive_nowait()
        except exceptions.WouldBlock:
            future = self._loop.create_future()
            self._readers.append(future)
            try:
                value = await future
            except CancelledError:
                self._readers.discard(future)
                raise
        return value

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._readers:
            # pending readers only exist while the buffer is empty, they would otherwise wait forever
            future = self._readers.popleft()
            if not future.cancelled():
                future.set_exception(exceptions.EndOfChannel)
        if not self._queue:
            self._done.set()

    def __await__(self) -> Generator[Any, Any, None]:
        # use yield from to avoid returning True from _done.wait().__await__()
        yield from self._done.wait().__await__()

    def __enter__(self) -> Self:
        return self

    def __exit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        self.close()
        await self._done.wait()

    def __aiter__(self) -> Self:
        return self

    async def __anext__(self) -> T:
        try:
            return await self.receive()
        except exceptions.EndOfChannel as exc:
            raise StopAsyncIteration from exc
