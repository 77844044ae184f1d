import base64
import contextlib
import dataclasses
import functools
import os
import ssl
import tempfile
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import aiohttp
from typing_extensions import Protocol

from kubefetch._cogs.clients import errors
from kubefetch._cogs.helpers import typedefs
from kubefetch._cogs.structs import credentials

RefreshFn = Callable[[Mapping[str, Any]], Awaitable[str]]


class AuthProvider(Protocol):
    """
    A pluggable source of fresh bearer tokens (OIDC, cloud SDKs, exec-plugins).

    The implementations are outside of this library: only the refresh
    contract is consumed. The config is the provider-specific mapping
    as it was put into :class:`credentials.AuthProviderInfo`.
    """
    async def refresh(self, config: Mapping[str, Any]) -> str: ...


@dataclasses.dataclass(frozen=True)
class FunctionProvider:
    """ An adapter to use a plain coroutine function as a provider. """
    fn: RefreshFn

    async def refresh(self, config: Mapping[str, Any]) -> str:
        return await self.fn(config)


class ProviderRegistry:
    """
    A fixed, explicitly populated set of auth providers keyed by identity.

    Usage::

        registry = ProviderRegistry()

        @registry.provider('oidc')
        async def refresh_oidc(config):
            return await fetch_the_token(config['idp-issuer-url'])
    """
    _providers: Dict[str, AuthProvider]

    def __init__(self, providers: Optional[Mapping[str, Union[AuthProvider, RefreshFn]]] = None) -> None:
        super().__init__()
        self._providers = {}
        for identity, provider in (providers or {}).items():
            self.register(identity, provider)

    def __contains__(self, identity: object) -> bool:
        return identity in self._providers

    def register(self, identity: str, provider: Union[AuthProvider, RefreshFn]) -> None:
        if hasattr(provider, 'refresh'):
            self._providers[identity] = provider  # type: ignore
        elif callable(provider):
            self._providers[identity] = FunctionProvider(provider)
        else:
            raise TypeError(f"Unsupported auth provider: {provider!r}")

    def provider(self, identity: str) -> Callable[[RefreshFn], RefreshFn]:
        def decorator(fn: RefreshFn) -> RefreshFn:
            self.register(identity, fn)
            return fn
        return decorator

    def resolve(self, identity: str) -> AuthProvider:
        try:
            return self._providers[identity]
        except KeyError:
            raise errors.AuthRefreshError(
                f"Unknown auth provider: {identity!r}",
                identity=identity,
                reason=errors.AuthRefreshError.UNKNOWN_PROVIDER,
            ) from None


_default_registry = ProviderRegistry()


def get_default_registry() -> ProviderRegistry:
    return _default_registry


def set_default_registry(registry: ProviderRegistry) -> None:
    global _default_registry
    _default_registry = registry


async def refresh(
        identity: str,
        config: Mapping[str, Any],
        *,
        registry: Optional[ProviderRegistry] = None,
) -> str:
    """
    Resolve the provider by its identity and get a fresh token from it.
    """
    registry = registry if registry is not None else get_default_registry()
    provider = registry.resolve(identity)
    return await invoke(identity, provider, config)


async def invoke(
        identity: str,
        provider: AuthProvider,
        config: Mapping[str, Any],
) -> str:
    try:
        token = await provider.refresh(config)
    except errors.AuthRefreshError:
        raise
    except Exception as e:
        raise errors.AuthRefreshError(
            f"Auth provider {identity!r} failed to refresh the credentials: {e}",
            identity=identity,
            reason=errors.AuthRefreshError.REFRESH_FAILED,
        ) from e
    if not token:
        raise errors.AuthRefreshError(
            f"Auth provider {identity!r} returned no credentials.",
            identity=identity,
            reason=errors.AuthRefreshError.NO_CREDENTIAL,
        )
    return token


async def reauthenticate(
        context: "APIContext",
        *,
        observed: Optional[credentials.BearerCredential],
        logger: typedefs.Logger,
) -> credentials.BearerCredential:
    """
    Replace the observed (stale) credential with a fresh one, once.

    Multiple requests can fail with the same stale credential at the same time.
    Only the first of them refreshes it. The others are blocked on the lock
    until the refresh is over, and then reuse the new credential as is.
    If the refresh fails, it fails for the first request only; the others
    try to refresh again on their own (the credential is still the stale one).
    """
    config = context.config
    if context.provider is None or config.auth_provider is None:
        raise RuntimeError("Re-authentication is requested without an auth provider.")

    identity = config.auth_provider.identity
    async with config.lock:
        current = config.credential
        if current is not None and current is not observed:
            logger.debug(f"Reusing the credentials already refreshed via {identity!r}.")
            return current

        logger.info(f"Refreshing the credentials via the {identity!r} auth provider.")
        token = await invoke(identity, context.provider, config.auth_provider.config)
        credential = credentials.BearerCredential(token)
        config.swap(credential)
        return credential


class APIContext:
    """
    A container for an aiohttp session, the config, and the resolved provider.

    The container is constructed once per client. The auth provider is resolved
    here, i.e. at the configuration time: an unknown provider fails the client's
    creation, not its first 401 response.

    The session is created lazily on first use (it must be created inside
    a running event loop), unless it is given explicitly. An explicitly given
    session belongs to the caller and is not closed by this container.
    """

    # Contextual information for URL/request building.
    config: credentials.TransportConfig
    provider: Optional[AuthProvider]

    # List of open responses.
    responses: List[aiohttp.ClientResponse]

    def __init__(
            self,
            config: credentials.TransportConfig,
            *,
            session: Optional[aiohttp.ClientSession] = None,
            registry: Optional[ProviderRegistry] = None,
    ) -> None:
        super().__init__()
        self.config = config
        self.responses = []
        self._session = session
        self._owned = session is None

        registry = registry if registry is not None else get_default_registry()
        if config.auth_provider is None:
            self.provider = None
        else:
            self.provider = registry.resolve(config.auth_provider.identity)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = self.make_aiohttp_session()
        return self._session

    def make_aiohttp_session(self) -> aiohttp.ClientSession:
        # The TLS material & the credentials are applied per request, not per session.
        return aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=0),
        )

    def flush_closed_responses(self) -> None:
        # There's no point keeping references to already closed responses.
        self.responses[:] = [_response for _response in self.responses if not _response.closed]

    def add_response(self, response: aiohttp.ClientResponse) -> None:
        # Keep track of responses so they can be closed later when the session is closed.
        self.flush_closed_responses()
        if not response.closed:
            self.responses.append(response)

    def close_open_responses(self) -> None:
        # Close all responses that are still open and are using this session.
        for response in self.responses:
            if not response.closed:
                response.close()
        self.responses.clear()

    async def close(self) -> None:
        # Close all open responses that use this session before closing the session itself.
        self.close_open_responses()
        if self._owned and self._session is not None:
            await self._session.close()
            self._session = None


@functools.lru_cache(maxsize=16)
def make_ssl_context(info: credentials.ConnectionInfo) -> ssl.SSLContext:
    """
    Derive the SSL context from the immutable TLS material.

    The credential is not part of it, so a refreshed credential never causes
    the TLS material to be rebuilt: the context is cached per connection info.
    """

    # Some SSL data are not accepted directly, so we have to use temp files.
    # Do not even create temporary files if there is no need. It can be a readonly filesystem.
    with contextlib.ExitStack() as stack:

        cert_path: Union[str, os.PathLike, None]
        if info.certificate_path:
            cert_path = info.certificate_path
        elif info.certificate_data:
            cert_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            cert_file.write(decode_to_pem(info.certificate_data).encode('ascii'))
            cert_path = cert_file.name
        else:
            cert_path = None

        pkey_path: Union[str, os.PathLike, None]
        if info.private_key_path:
            pkey_path = info.private_key_path
        elif info.private_key_data:
            pkey_file = stack.enter_context(tempfile.NamedTemporaryFile(buffering=0))
            pkey_file.write(decode_to_pem(info.private_key_data).encode('ascii'))
            pkey_path = pkey_file.name
        else:
            pkey_path = None

        # The SSL part (both client certificate auth and CA verification).
        context = ssl.create_default_context(
            purpose=ssl.Purpose.SERVER_AUTH,
            cafile=info.ca_path,
            cadata=decode_to_pem(info.ca_data) if info.ca_data is not None else None,
        )
        if cert_path and pkey_path:
            context.load_cert_chain(certfile=cert_path, keyfile=pkey_path)

    if info.insecure:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


def decode_to_pem(data: Union[str, bytes]) -> str:
    if isinstance(data, str) and data.startswith('-----BEGIN '):
        return data
    elif isinstance(data, bytes) and data.startswith(b'-----BEGIN '):
        return data.decode('ascii')
    else:
        return base64.b64decode(data).decode('ascii')
