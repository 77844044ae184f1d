"""
Streaming of the long-living responses: logs (as bytes) and watches (as JSON).

A stream is a live view into the response's body: it is consumed as it comes,
it is unbounded until the server closes the connection or until the consumer
closes the stream, and it is not restartable -- a new call is needed to see
the data from the current point.

Closing the stream (by the consumer, by the stopper future, or by reaching
the end of the body) closes the underlying response exactly once, which
aborts the connection rather than returning it to the pool half-read.
"""
import asyncio
import collections
import json
import logging
from typing import Any, Deque, List, Optional

import aiohttp

from kubefetch._cogs.clients import errors
from kubefetch._cogs.helpers import typedefs

logger = logging.getLogger(__name__)

_WHITESPACE = frozenset(b' \t\r\n')
_OPENERS = frozenset(b'{[')
_CLOSERS = frozenset(b'}]')
_QUOTE = ord('"')
_BACKSLASH = ord('\\')


class Stream:
    """
    The response's body as an async iterator of raw byte chunks.

    Usage::

        async with await client.get_log_byte_stream(descriptor) as stream:
            async for chunk in stream:
                print(chunk.decode())
    """

    def __init__(
            self,
            response: aiohttp.ClientResponse,
            *,
            stopper: Optional["asyncio.Future[Any]"] = None,
            logger: typedefs.Logger = logger,
    ) -> None:
        super().__init__()
        self._response = response
        self._stopper = stopper
        self._logger = logger
        self._closed = False  # for whatever reason: the connection is released.
        self._cancelled = False  # by the consumer: nothing is delivered anymore.
        if stopper is not None:
            stopper.add_done_callback(self._stop)

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "Stream":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __aiter__(self) -> "Stream":
        return self

    async def __anext__(self) -> Any:
        chunk = await self._read()
        if chunk is None:
            raise StopAsyncIteration
        return chunk

    def close(self) -> None:
        """ Stop the stream from the consumer side. No data is delivered after this. """
        self._cancelled = True
        self._abort()

    def _stop(self, _: "asyncio.Future[Any]") -> None:
        self.close()

    def _abort(self) -> None:
        if not self._closed:
            self._closed = True
            if self._stopper is not None:
                self._stopper.remove_done_callback(self._stop)
            self._response.close()
            why = "by the consumer" if self._cancelled else "by the server"
            self._logger.debug(f"The stream is closed {why}.")

    async def _read(self) -> Optional[bytes]:
        if self._closed:
            return None
        try:
            chunk = await self._response.content.readany()
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError):
            if self._closed:
                return None  # closed by us while waiting for the data.
            raise
        if self._closed:
            return None  # closed by us while the data were arriving; do not deliver them.
        if not chunk:
            self._abort()
            return None
        return chunk


class JSONStream(Stream):
    """
    The response's body as an async iterator of the decoded JSON values.

    Every complete top-level JSON value in the byte stream (usually a watch-
    event object) is yielded as one item, regardless of how the values are
    delimited and how they are split into the chunks by the network.
    """

    def __init__(
            self,
            response: aiohttp.ClientResponse,
            *,
            stopper: Optional["asyncio.Future[Any]"] = None,
            logger: typedefs.Logger = logger,
    ) -> None:
        super().__init__(response, stopper=stopper, logger=logger)
        self._detector = JSONBoundaryDetector()
        self._pending: Deque[Any] = collections.deque()

    async def __anext__(self) -> Any:
        while not self._pending and not self._cancelled:
            chunk = await self._read()
            if chunk is None:
                if not self._cancelled:
                    self._pending.extend(decode_values(self._detector.flush()))
                break
            self._pending.extend(decode_values(self._detector.feed(chunk)))

        if self._cancelled or not self._pending:
            self._pending.clear()
            raise StopAsyncIteration
        return self._pending.popleft()


class JSONBoundaryDetector:
    """
    An incremental detector of the top-level JSON values' boundaries.

    The raw bytes are fed as they arrive; the complete values are returned
    as soon as they are complete. The partial values are held in the buffer
    until the rest of them arrives. The values are not parsed here, only cut:
    the nesting of objects/arrays and the strings with their escapes are
    tracked; the scalars (numbers, literals) end at whitespace or at the next
    value's start.
    """

    def __init__(self) -> None:
        super().__init__()
        self._reset()

    def _reset(self) -> None:
        self._buffer = bytearray()
        self._scanned = 0
        self._start: Optional[int] = None
        self._depth = 0
        self._in_string = False
        self._escaped = False

    def feed(self, data: bytes) -> List[bytes]:
        self._buffer += data
        buffer = self._buffer
        values: List[bytes] = []

        i = self._scanned
        while i < len(buffer):
            c = buffer[i]
            if self._start is None:
                if c in _WHITESPACE:
                    i += 1
                    continue
                self._start = i

            if self._in_string:
                if self._escaped:
                    self._escaped = False
                elif c == _BACKSLASH:
                    self._escaped = True
                elif c == _QUOTE:
                    self._in_string = False
                    if self._depth == 0:
                        values.append(self._cut(i + 1))
            elif (c == _QUOTE or c in _OPENERS) and self._depth == 0 and i > self._start:
                values.append(self._cut(i))  # a scalar ends; re-scan this byte as a new value.
                continue
            elif c == _QUOTE:
                self._in_string = True
            elif c in _OPENERS:
                self._depth += 1
            elif c in _CLOSERS:
                self._depth = max(0, self._depth - 1)
                if self._depth == 0:
                    values.append(self._cut(i + 1))
            elif c in _WHITESPACE and self._depth == 0:
                values.append(self._cut(i))
            i += 1

        # Minimize the memory footprint: keep only the unfinished value in the buffer.
        if self._start is None:
            del buffer[:]
            self._scanned = 0
        else:
            del buffer[:self._start]
            self._scanned = i - self._start
            self._start = 0
        return values

    def flush(self) -> List[bytes]:
        """ Finish the stream: return the last scalar, or fail on a truncated value. """
        start, depth, in_string = self._start, self._depth, self._in_string
        remainder = bytes(self._buffer[start:]) if start is not None else b''
        self._reset()
        if not remainder:
            return []
        elif depth > 0 or in_string:
            raise errors.DecodeError("The stream ended in the middle of a JSON value.", body=remainder)
        else:
            return [remainder]

    def _cut(self, end: int) -> bytes:
        value = bytes(self._buffer[self._start:end])
        self._start = None
        return value


def decode_values(raws: List[bytes]) -> List[Any]:
    values = []
    for raw in raws:
        try:
            values.append(json.loads(raw))
        except ValueError as e:
            raise errors.DecodeError(f"Malformed JSON in the stream: {e}", body=raw) from e
    return values
