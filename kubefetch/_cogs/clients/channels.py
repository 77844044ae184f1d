"""
Multiplexed bidirectional channels for exec/attach-style calls.

When the API server responds with "400 Upgrade request required", the call
is repeated as a WebSocket connection with the ``base64.channel.k8s.io``
subprotocol. Over this one connection, several logical streams are carried:
stdin, stdout, stderr, error, and resize -- in this order of channel indexes.

Every message starts with one byte of the channel index, followed by the
base64-encoded payload. The servers send the index either as a raw byte value
(0-4) or as its ASCII digit ("0"-"4"); both are accepted. The outgoing
messages always use the ASCII digit, as the protocol prescribes.

The connection goes through the states ``CONNECTING -> OPEN -> CLOSED``.
The terminal state is final: there are no reconnections. The connection is
terminated only by the server: either by a close (a success) or by an error
(a failure, which still carries all the messages received before it).
"""
import base64
import binascii
import dataclasses
import enum
import json
import logging
from typing import Any, AsyncIterator, List, Optional, Tuple, Union

import aiohttp

from kubefetch._cogs.clients import building, errors
from kubefetch._cogs.configs import configuration
from kubefetch._cogs.helpers import typedefs

logger = logging.getLogger(__name__)


class Channel(enum.IntEnum):
    STDIN = 0
    STDOUT = 1
    STDERR = 2
    ERROR = 3
    RESIZE = 4


class ChannelState(enum.Enum):
    CONNECTING = enum.auto()
    OPEN = enum.auto()
    CLOSED = enum.auto()


@dataclasses.dataclass(frozen=True)
class ChannelFrame:
    channel: Channel
    payload: bytes

    @property
    def message(self) -> str:
        return self.payload.decode('ascii', errors='replace')


@dataclasses.dataclass(frozen=True)
class UpgradeResult:
    """
    The transcript of a closed channel connection.

    The body is the concatenation of all messages in their arrival order,
    including those of the error channel (as the original clients did).
    """
    messages: Tuple[ChannelFrame, ...]
    body: str
    code: Optional[int]
    reason: Optional[str]

    @property
    def status(self) -> Optional[Any]:
        """ The error channel's content as a K8s ``Status``, if there was any. """
        text = ''.join(frame.message for frame in self.messages if frame.channel == Channel.ERROR)
        if not text:
            return None
        try:
            return json.loads(text)
        except ValueError as e:
            raise errors.DecodeError(f"Malformed status in the error channel: {e}",
                                     body=text.encode('ascii')) from e


def decode_frame(data: Union[bytes, str]) -> Optional[ChannelFrame]:
    """ Split the message into a channel and its decoded payload; None if empty. """
    raw = data.encode('utf-8') if isinstance(data, str) else bytes(data)
    if not raw:
        return None
    index = raw[0] - ord('0') if raw[0] >= ord('0') else raw[0]
    try:
        channel = Channel(index)
    except ValueError:
        raise ValueError(f"Unknown channel index: {raw[0]!r}") from None
    try:
        payload = base64.b64decode(raw[1:], validate=True)
    except binascii.Error as e:
        raise ValueError(f"Malformed base64 payload in the {channel.name.lower()} channel: {e}") from e
    return ChannelFrame(channel=channel, payload=payload)


def encode_frame(channel: Channel, data: bytes) -> str:
    return f'{int(channel)}{base64.b64encode(data).decode("ascii")}'


class ChannelConnection:
    """
    A live channel connection, with its frames drained by the caller.

    Usage::

        async with await client.open_channels(descriptor) as connection:
            await connection.send(Channel.STDIN, b'ls -l\\n')
            async for frame in connection:
                print(frame.channel, frame.message)
        print(connection.code, connection.reason)

    Or, to wait for the whole transcript at once: ``await connection.result()``.
    """

    state: ChannelState
    messages: List[ChannelFrame]
    code: Optional[int]
    reason: Optional[str]

    def __init__(
            self,
            url: str,
            options: building.RequestOptions,
            *,
            session: aiohttp.ClientSession,
            settings: configuration.ChannelSettings,
            logger: typedefs.Logger = logger,
    ) -> None:
        super().__init__()
        self.state = ChannelState.CONNECTING
        self.messages = []
        self.code = None
        self.reason = None
        self._url = url
        self._options = options
        self._session = session
        self._settings = settings
        self._logger = logger
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.state.name} {self._url!r}>'

    async def __aenter__(self) -> "ChannelConnection":
        await self.open()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self._release()

    def __aiter__(self) -> AsyncIterator[ChannelFrame]:
        return self.frames()

    async def open(self) -> None:
        if self.state is not ChannelState.CONNECTING:
            return

        # The body's content type makes no sense for the handshake; the credentials do.
        headers = {key: val for key, val in self._options.headers.items()
                   if key.lower() != building.CONTENT_TYPE.lower()}

        self._logger.debug(f"Upgrading to the {self._settings.subprotocol!r} channels.")
        try:
            self._ws = await self._session.ws_connect(
                self._url,
                protocols=[self._settings.subprotocol],
                headers=headers,
                ssl=self._options.ssl,
                heartbeat=self._settings.heartbeat,
            )
        except aiohttp.ClientError as e:
            self.state = ChannelState.CLOSED
            raise errors.UpgradeError(f"Failed to upgrade the connection: {e!r}") from e
        self.state = ChannelState.OPEN

    async def send(self, channel: Channel, data: bytes) -> None:
        if self.state is not ChannelState.OPEN or self._ws is None:
            raise errors.UpgradeError(f"Cannot send to a {self.state.name} connection.",
                                      messages=self.messages)
        await self._ws.send_str(encode_frame(channel, data))

    async def frames(self) -> AsyncIterator[ChannelFrame]:
        """ Yield the frames as they arrive, until the server closes the connection. """
        await self.open()
        if self.state is ChannelState.CLOSED or self._ws is None:
            return

        try:
            while True:
                msg = await self._ws.receive()
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    try:
                        frame = decode_frame(msg.data)
                    except ValueError as e:
                        self.state = ChannelState.CLOSED
                        raise errors.UpgradeError(str(e), messages=self.messages) from e
                    if frame is not None:
                        self.messages.append(frame)
                        yield frame
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self.state = ChannelState.CLOSED
                    cause = msg.data if isinstance(msg.data, BaseException) else None
                    raise errors.UpgradeError(f"The channel connection failed: {msg.data!r}",
                                              messages=self.messages) from cause
                elif msg.type == aiohttp.WSMsgType.CLOSE:
                    self.code, self.reason = msg.data, msg.extra
                    break
                elif msg.type in (aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            await self._release()

        self.code = self.code if self.code is not None else self._ws.close_code
        self._logger.debug(f"The channel connection is closed with code {self.code}.")

    async def result(self) -> UpgradeResult:
        """ Drain all the remaining frames, and return the whole transcript. """
        async for _ in self.frames():
            pass
        return UpgradeResult(
            messages=tuple(self.messages),
            body=''.join(frame.message for frame in self.messages),
            code=self.code,
            reason=self.reason,
        )

    async def _release(self) -> None:
        self.state = ChannelState.CLOSED
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()


async def upgrade(
        url: str,
        options: building.RequestOptions,
        *,
        session: aiohttp.ClientSession,
        settings: configuration.ChannelSettings,
        logger: typedefs.Logger = logger,
) -> UpgradeResult:
    async with ChannelConnection(url, options, session=session, settings=settings,
                                 logger=logger) as connection:
        return await connection.result()
