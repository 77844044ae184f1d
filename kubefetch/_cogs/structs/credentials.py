"""
Authentication-related structures.

The transport handles the credentials only as far as the HTTP protocol and
the TCP/SSL connection are concerned, i.e. everything usable in a generic
HTTP client, and nothing more than that:

* The API server's URL.
* SSL verification/ignorance flag.
* SSL certificate authority.
* SSL client certificate and its private key.
* HTTP ``Authorization: Bearer token``.
* The identity & config of an auth provider to refresh the bearer token.

Acquiring the credentials (kubeconfig parsing, cloud logins, etc) is not
the transport's job: the credentials are given to it ready-made.

The connection info and the TLS material are immutable. The bearer
credential is the only mutable part of :class:`TransportConfig`:
it is replaced as a whole object on refresh, never field by field.
"""
import asyncio
import dataclasses
from typing import Any, Mapping, Optional

from kubefetch._cogs.configs import configuration


@dataclasses.dataclass(frozen=True)
class ConnectionInfo:
    """
    A single endpoint with its TLS material and connection flags.

    The TLS-related fields are hashable, so the derived SSL contexts
    can be cached per connection info (see :func:`auth.make_ssl_context`).
    """
    server: str  # e.g. "https://localhost:443"
    ca_path: Optional[str] = None
    ca_data: Optional[bytes] = None
    insecure: Optional[bool] = None
    certificate_path: Optional[str] = None
    certificate_data: Optional[bytes] = None
    private_key_path: Optional[str] = None
    private_key_data: Optional[bytes] = None


@dataclasses.dataclass(frozen=True)
class AuthProviderInfo:
    """
    An opaque auth provider's identity and its provider-specific config.

    The identity is resolved to an implementation via the provider registry;
    the config is passed to the provider's ``refresh()`` as is.
    """
    identity: str
    config: Mapping[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass(frozen=True)
class BearerCredential:
    token: str

    def __repr__(self) -> str:
        # Never leak the tokens into the logs or tracebacks.
        return f'{self.__class__.__name__}(token=<{len(self.token)} chars>)'


class TransportConfig:
    """
    Everything needed to reach the cluster, for the lifetime of a client.

    The credential is swapped atomically (see :meth:`swap`). The refreshing
    routine holds the :attr:`lock` while refreshing, so that the concurrent
    requests failing with the same stale credential refresh it only once.
    """
    info: ConnectionInfo
    settings: configuration.TransportSettings
    auth_provider: Optional[AuthProviderInfo]
    lock: asyncio.Lock

    def __init__(
            self,
            info: ConnectionInfo,
            *,
            credential: Optional[BearerCredential] = None,
            auth_provider: Optional[AuthProviderInfo] = None,
            settings: Optional[configuration.TransportSettings] = None,
    ) -> None:
        super().__init__()
        self.info = info
        self.settings = settings if settings is not None else configuration.TransportSettings()
        self.auth_provider = auth_provider
        self.lock = asyncio.Lock()
        self._credential = credential

    def __repr__(self) -> str:
        provider = self.auth_provider.identity if self.auth_provider is not None else None
        return f'<{self.__class__.__name__}: {self.info.server!r}, provider={provider!r}>'

    @property
    def credential(self) -> Optional[BearerCredential]:
        return self._credential

    def swap(self, credential: BearerCredential) -> Optional[BearerCredential]:
        """ Replace the credential as a whole; return the replaced one. """
        old, self._credential = self._credential, credential
        return old
