"""
All configuration flags, options, settings to fine-tune the transport.

All settings are grouped semantically just for convenience
(instead of a flat mega-object with all the values in it).

Some of the settings are flags, some are scalars, some are optional,
some are not (but all of them have reasonable defaults).

The settings are per client instance: they are stored in the client's
:class:`TransportConfig` and are read on every request, so the changes
are picked up by the next request without rebuilding the client.
"""
import dataclasses
from typing import Optional

BASE64_CHANNEL_PROTOCOL = 'base64.channel.k8s.io'


@dataclasses.dataclass
class NetworkingSettings:

    request_timeout: Optional[float] = None
    """
    A total timeout (in seconds) for every API request, including reading
    the response's body. It is applied to the initial request and, with
    the same value, to the retried request after the credentials refresh.

    Mind that it also limits the streamed requests (watches, logs):
    for long-living streams, it is better left unset (``None``).
    """

    connect_timeout: Optional[float] = None
    """
    A timeout (in seconds) for establishing the TCP connection to the server.
    ``None`` means no separate limit (the total request timeout still applies).
    """

    user_agent: Optional[str] = None
    """
    The ``User-Agent`` header for all requests.
    If not set, it is ``kubefetch/<version>``.
    """


@dataclasses.dataclass
class ChannelSettings:

    subprotocol: str = BASE64_CHANNEL_PROTOCOL
    """
    The WebSocket subprotocol to negotiate for the upgraded exec/attach calls.
    Only the base64-encoded channel protocol is supported for decoding.
    """

    heartbeat: Optional[float] = None
    """
    How often (in seconds) to send WebSocket pings over an upgraded connection.
    ``None`` disables the pings; the connection then relies on the server.
    """


@dataclasses.dataclass
class TransportSettings:
    networking: NetworkingSettings = dataclasses.field(default_factory=NetworkingSettings)
    channels: ChannelSettings = dataclasses.field(default_factory=ChannelSettings)
