"""
The client: one transport config, one session, one auth provider.

Usage::

    config = kubefetch.TransportConfig(
        kubefetch.ConnectionInfo(server='https://10.0.0.1:6443', ca_path='/path/to/ca.crt'),
        credential=kubefetch.BearerCredential('...'),
        auth_provider=kubefetch.AuthProviderInfo('oidc', {'idp-issuer-url': '...'}),
    )
    async with kubefetch.Client(config) as client:
        response = await client.http(kubefetch.RequestDescriptor('GET', '/api/v1/namespaces'))
        print(response.body['items'])
"""
import asyncio
from typing import Any, Optional, Union

import aiohttp

from kubefetch._cogs.clients import api, auth, channels, streaming
from kubefetch._cogs.helpers import typedefs
from kubefetch._cogs.structs import credentials, descriptors


class Client:
    """
    The user-facing entry point to the transport.

    The auth provider (if any) is resolved when the client is created,
    so an unknown provider fails here rather than on the first 401.
    """

    def __init__(
            self,
            config: credentials.TransportConfig,
            *,
            session: Optional[aiohttp.ClientSession] = None,
            registry: Optional[auth.ProviderRegistry] = None,
            logger: typedefs.Logger = api.logger,
    ) -> None:
        super().__init__()
        self.config = config
        self.context = auth.APIContext(config, session=session, registry=registry)
        self.logger = logger

    def __repr__(self) -> str:
        return f'<{self.__class__.__name__}: {self.config!r}>'

    async def __aenter__(self) -> "Client":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self.context.close()

    async def http(
            self,
            descriptor: descriptors.RequestDescriptor,
            *,
            stopper: Optional["asyncio.Future[Any]"] = None,
    ) -> api.Result:
        return await api.http(descriptor, context=self.context, stopper=stopper, logger=self.logger)

    async def get_log_byte_stream(
            self,
            descriptor: descriptors.RequestDescriptor,
            *,
            stopper: Optional["asyncio.Future[Any]"] = None,
    ) -> Union[streaming.Stream, channels.UpgradeResult]:
        return await api.get_log_byte_stream(descriptor, context=self.context,
                                             stopper=stopper, logger=self.logger)

    async def get_watch_object_stream(
            self,
            descriptor: descriptors.RequestDescriptor,
            *,
            stopper: Optional["asyncio.Future[Any]"] = None,
    ) -> Union[streaming.JSONStream, channels.UpgradeResult]:
        return await api.get_watch_object_stream(descriptor, context=self.context,
                                                 stopper=stopper, logger=self.logger)

    async def open_channels(
            self,
            descriptor: descriptors.RequestDescriptor,
    ) -> channels.ChannelConnection:
        return await api.open_channels(descriptor, context=self.context, logger=self.logger)
