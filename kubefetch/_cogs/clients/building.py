"""
Building the URLs and transport-level options from the request descriptors.

Everything here is derived anew on every call from the descriptor and
the current state of the transport config -- nothing is cached across calls
except the SSL context, which depends on the immutable TLS material only.
So, a refreshed credential is picked up by the next built request (or by
:func:`authorize` for the retry) without rebuilding the TLS material.
"""
import collections.abc
import dataclasses
import json
import ssl
import urllib.parse
from typing import Dict, Mapping, Optional, Tuple, Union

import aiohttp

from kubefetch._cogs.clients import auth
from kubefetch._cogs.helpers import versions
from kubefetch._cogs.structs import credentials, descriptors

AUTHORIZATION = 'Authorization'
CONTENT_TYPE = 'Content-Type'
USER_AGENT = 'User-Agent'


@dataclasses.dataclass(frozen=True)
class RequestOptions:
    """
    Everything needed to issue the request, except the URL.

    The credential is the one used for the ``Authorization`` header. It is kept
    to know which credential was observed as stale if the request fails on auth.
    """
    method: str
    headers: Mapping[str, str]
    data: Optional[str]
    ssl: Union[ssl.SSLContext, bool]
    timeout: aiohttp.ClientTimeout
    credential: Optional[credentials.BearerCredential] = None


def build_request(
        descriptor: descriptors.RequestDescriptor,
        config: credentials.TransportConfig,
) -> Tuple[str, RequestOptions]:
    url = build_url(config.info.server, descriptor.path, descriptor.parameters)
    credential = config.credential
    networking = config.settings.networking

    headers = dict(descriptor.headers)
    if not _has_header(headers, USER_AGENT):
        headers[USER_AGENT] = networking.user_agent or f'kubefetch/{versions.version or "unknown"}'
    if descriptor.json and not _has_header(headers, CONTENT_TYPE):
        headers[CONTENT_TYPE] = descriptors.JSON_MEDIA_TYPE

    options = RequestOptions(
        method=descriptor.method.upper(),
        headers=headers,
        data=json.dumps(descriptor.body) if descriptor.body is not None else None,
        ssl=build_ssl(config.info),
        timeout=aiohttp.ClientTimeout(
            total=networking.request_timeout,
            sock_connect=networking.connect_timeout,
        ),
    )
    return url, authorize(options, credential)


def authorize(
        options: RequestOptions,
        credential: Optional[credentials.BearerCredential],
) -> RequestOptions:
    """
    Put the credential into the options; remove the old one if there is none.

    An absent credential is not an error: unauthenticated calls are valid.
    """
    headers = {key: val for key, val in options.headers.items() if key.lower() != AUTHORIZATION.lower()}
    if credential is not None:
        headers[AUTHORIZATION] = f'Bearer {credential.token}'
    return dataclasses.replace(options, headers=headers, credential=credential)


def build_url(
        server: str,
        path: str,
        parameters: Optional[Mapping[str, descriptors.ParameterValue]] = None,
) -> str:
    url = server.rstrip('/') + '/' + path.lstrip('/')
    query = build_query(parameters or {})
    return f'{url}?{query}' if query else url


def build_query(
        parameters: Mapping[str, descriptors.ParameterValue],
) -> str:
    """
    Serialize the query parameters; the arrays become the repeated keys.

    E.g. ``{'a': ['x', 'y']}`` becomes ``a=x&a=y`` -- never ``a[]=x`` or
    ``a[0]=x``. ``None`` values are omitted, as are the empty arrays.
    """
    pairs = []
    for key, value in parameters.items():
        if value is None:
            continue
        elif isinstance(value, (str, bytes)) or not isinstance(value, collections.abc.Iterable):
            pairs.append((key, _stringify(value)))
        else:
            pairs.extend((key, _stringify(item)) for item in value)
    return urllib.parse.urlencode(pairs)


def build_ssl(info: credentials.ConnectionInfo) -> Union[ssl.SSLContext, bool]:
    if urllib.parse.urlsplit(info.server).scheme == 'https':
        return auth.make_ssl_context(info)
    return True  # i.e. the default; irrelevant for plain HTTP.


def _stringify(value: object) -> str:
    if isinstance(value, bool):
        return 'true' if value else 'false'
    elif isinstance(value, bytes):
        return value.decode('utf-8')
    return str(value)


def _has_header(headers: Dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)
