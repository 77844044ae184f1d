"""
Structured descriptions of the API requests, as issued by the upper layers.

A descriptor is everything the transport needs to know about a single call,
but nothing about how to reach the cluster: the server, the credentials,
the TLS material are all in :class:`kubefetch.TransportConfig`.
"""
import dataclasses
from typing import Any, Mapping, Optional, Sequence, Tuple, Union

JSON_MEDIA_TYPE = 'application/json'
TEXT_MEDIA_TYPE = 'text/plain'

ParameterValue = Union[str, int, float, bool, None, Sequence[Union[str, int, float, bool]]]


@dataclasses.dataclass(frozen=True)
class RequestDescriptor:
    """
    A single API call: method, version-less path, query, body, and hints.

    ``json=False`` marks the request as non-JSON: the body is still serialized
    as JSON text, but no ``Content-Type`` header is forced on it.

    ``produces`` lists the media types the endpoint declares for its responses;
    they define how the response's body is decoded (text or JSON).
    """
    method: str
    path: str
    parameters: Mapping[str, ParameterValue] = dataclasses.field(default_factory=dict)
    body: Optional[Any] = None
    headers: Mapping[str, str] = dataclasses.field(default_factory=dict)
    stream: bool = False
    json: bool = True
    produces: Tuple[str, ...] = (JSON_MEDIA_TYPE,)

    def __post_init__(self) -> None:
        # Freeze the mutable inputs, so that the caller's later changes do not leak in.
        object.__setattr__(self, 'parameters', dict(self.parameters))
        object.__setattr__(self, 'headers', dict(self.headers))
        object.__setattr__(self, 'produces', tuple(self.produces) or (JSON_MEDIA_TYPE,))

    def streamed(self) -> "RequestDescriptor":
        return dataclasses.replace(self, stream=True)

    @property
    def produces_text(self) -> bool:
        media_types = {media_type.split(';')[0].strip().lower() for media_type in self.produces}
        return TEXT_MEDIA_TYPE in media_types
