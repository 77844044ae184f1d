"""
K8s API transport errors.

The underlying client library (now, ``aiohttp``) can be replaced in the future.
We cannot rely on embedding its exceptions all over the upper layers.
Hence, we have our own hierarchy of exceptions for the transport's failures.

Low-level errors, such as the network connectivity issues, SSL/HTTPS issues,
timeouts, etc, are escalated from the client library as is, since they are
related not to the domain of K8s API, but rather to networking and encryption.

The original errors of the client library are chained as the causes of our own
specialised errors -- for better explainability of errors in the stack traces.

Some selected HTTP statuses are made into their own classes, so that they could
be intercepted and handled in the upper layers. All other statuses are raised
as the base error class and are distinguishable only via the exception's fields.
"""
import collections.abc
import json
from typing import Any, Collection, Optional, Sequence

import aiohttp
from typing_extensions import Literal, TypedDict


class RawStatusCause(TypedDict):
    field: str
    reason: str
    message: str


class RawStatusDetails(TypedDict):
    name: str
    uid: str
    retryAfterSeconds: int
    kind: str
    group: str
    causes: Collection[RawStatusCause]


# https://kubernetes.io/docs/reference/generated/kubernetes-api/v1.19/#status-v1-meta
class RawStatus(TypedDict):
    apiVersion: str
    kind: Literal["Status"]
    code: int
    status: Literal["Success", "Failure"]
    reason: str
    message: str
    details: RawStatusDetails


class TransportError(Exception):
    """
    A final non-successful HTTP status, after at most one auth retry.

    The message is the raw response body. The status is available both as
    ``status_code`` and as ``code`` -- the two names are equivalent.
    """

    def __init__(
            self,
            body: str,
            *,
            status_code: int,
    ) -> None:
        super().__init__(body)
        self.body = body
        self.status_code = status_code

    @property
    def code(self) -> int:
        return self.status_code

    @property
    def payload(self) -> Optional[RawStatus]:
        return parse_status(self.body)

    @property
    def reason(self) -> Optional[str]:
        return self.payload.get('reason') if self.payload else None

    @property
    def details(self) -> Optional[RawStatusDetails]:
        return self.payload.get('details') if self.payload else None


class TransportUnauthorizedError(TransportError):
    pass


class TransportForbiddenError(TransportError):
    pass


class TransportNotFoundError(TransportError):
    pass


class TransportConflictError(TransportError):
    pass


class AuthRefreshError(Exception):
    """
    Raised when an auth provider cannot be resolved or produce a credential.

    The ongoing call is aborted: there is no fallback to unauthenticated calls.
    """
    UNKNOWN_PROVIDER = 'unknown-provider'
    REFRESH_FAILED = 'refresh-failed'
    NO_CREDENTIAL = 'no-credential'

    def __init__(self, message: str, *, identity: str, reason: str) -> None:
        super().__init__(message)
        self.identity = identity
        self.reason = reason


class DecodeError(Exception):
    """ Raised when a non-empty body fails the decoding by its declared type. """

    def __init__(self, message: str, *, body: bytes, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.body = body
        self.status_code = status_code


class UpgradeError(Exception):
    """
    Raised when an upgraded channel connection fails (handshake or later).

    The messages received before the failure are preserved, not discarded.
    """

    def __init__(self, message: str, *, messages: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.messages = list(messages)


def parse_status(body: str) -> Optional[RawStatus]:
    """ Interpret the body as a K8s ``Status`` object, if it is one. """
    try:
        payload = json.loads(body)
    except ValueError:
        return None

    # Better be safe: who knows which sensitive information can be dumped unless kind==Status.
    if not isinstance(payload, collections.abc.Mapping) or payload.get('kind') != 'Status':
        return None
    return payload  # type: ignore


async def check_response(
        response: aiohttp.ClientResponse,
) -> None:
    """
    Check for non-successful statuses, and raise with the raw response body.
    """
    if not 200 <= response.status < 300:

        # Read the response's body before it is closed by raise_for_status().
        try:
            body = (await response.read()).decode(response.charset or 'utf-8', errors='replace')
        except aiohttp.ClientConnectionError:
            body = ''

        cls = (
            TransportUnauthorizedError if response.status == 401 else
            TransportForbiddenError if response.status == 403 else
            TransportNotFoundError if response.status == 404 else
            TransportConflictError if response.status == 409 else
            TransportError
        )

        # Raise the library-specific error while keeping the original error in scope.
        # This call also releases the response, so it cannot be read afterwards.
        try:
            response.raise_for_status()
        except aiohttp.ClientResponseError as e:
            raise cls(body, status_code=response.status) from e

        # The 1xx/3xx statuses are not errors for aiohttp, but they are not successes for us.
        response.release()
        raise cls(body, status_code=response.status)
