"""
The main kubefetch module for all the exported functions & classes.
"""
# isort: skip_file

# Unlike all other places, where we import other modules and refer
# the functions via the modules, this is the library's top-level interface,
# as it is seen by the users. So, we export the individual functions.

from kubefetch.client import (
    Client,
)
from kubefetch._cogs.clients.auth import (
    AuthProvider,
    ProviderRegistry,
    get_default_registry,
    set_default_registry,
    refresh,
)
from kubefetch._cogs.clients.channels import (
    Channel,
    ChannelConnection,
    ChannelFrame,
    ChannelState,
    UpgradeResult,
)
from kubefetch._cogs.clients.errors import (
    TransportError,
    TransportUnauthorizedError,
    TransportForbiddenError,
    TransportNotFoundError,
    TransportConflictError,
    AuthRefreshError,
    DecodeError,
    UpgradeError,
)
from kubefetch._cogs.clients.responses import (
    NormalizedResponse,
)
from kubefetch._cogs.clients.streaming import (
    Stream,
    JSONStream,
)
from kubefetch._cogs.configs.configuration import (
    TransportSettings,
    NetworkingSettings,
    ChannelSettings,
)
from kubefetch._cogs.helpers.loggers import (
    LogFormat,
    RequestLogger,
    configure,
)
from kubefetch._cogs.helpers.typedefs import (
    Logger,
)
from kubefetch._cogs.helpers.versions import (
    version as __version__,
)
from kubefetch._cogs.structs.credentials import (
    ConnectionInfo,
    AuthProviderInfo,
    BearerCredential,
    TransportConfig,
)
from kubefetch._cogs.structs.descriptors import (
    RequestDescriptor,
)

__all__ = [
    'Client',
    'AuthProvider', 'ProviderRegistry',
    'get_default_registry', 'set_default_registry', 'refresh',
    'Channel', 'ChannelConnection', 'ChannelFrame', 'ChannelState', 'UpgradeResult',
    'TransportError',
    'TransportUnauthorizedError',
    'TransportForbiddenError',
    'TransportNotFoundError',
    'TransportConflictError',
    'AuthRefreshError',
    'DecodeError',
    'UpgradeError',
    'NormalizedResponse',
    'Stream', 'JSONStream',
    'TransportSettings', 'NetworkingSettings', 'ChannelSettings',
    'LogFormat', 'RequestLogger', 'configure',
    'Logger',
    'ConnectionInfo',
    'AuthProviderInfo',
    'BearerCredential',
    'TransportConfig',
    'RequestDescriptor',
]
