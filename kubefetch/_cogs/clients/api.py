import asyncio
import logging
from typing import Any, Optional, Union

import aiohttp

from kubefetch._cogs.clients import auth, building, channels, errors, responses, streaming
from kubefetch._cogs.helpers import loggers, typedefs
from kubefetch._cogs.structs import descriptors

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = frozenset({401, 403})
UPGRADE_REQUIRED_STATUS = 400
UPGRADE_REQUIRED_REASON = 'Upgrade request required'

Result = Union[responses.NormalizedResponse, streaming.Stream, channels.UpgradeResult]


async def http(
        descriptor: descriptors.RequestDescriptor,
        *,
        context: auth.APIContext,
        stopper: Optional["asyncio.Future[Any]"] = None,
        logger: typedefs.Logger = logger,
) -> Result:
    """
    Invoke a REST request against the Kubernetes API server.

    Depending on the descriptor and on the server's response, the result is
    either a normalized response, or a live byte stream (if a stream is
    requested), or a transcript of the upgraded channel connection.
    """
    url, options = building.build_request(descriptor, context.config)
    return await execute(
        url, options,
        context=context,
        stream=descriptor.stream,
        text=descriptor.produces_text,
        stopper=stopper,
        logger=loggers.RequestLogger(logger, method=options.method, url=url),
    )


async def get_log_byte_stream(
        descriptor: descriptors.RequestDescriptor,
        *,
        context: auth.APIContext,
        stopper: Optional["asyncio.Future[Any]"] = None,
        logger: typedefs.Logger = logger,
) -> Union[streaming.Stream, channels.UpgradeResult]:
    url, options = building.build_request(descriptor.streamed(), context.config)
    return await execute(
        url, options,
        context=context,
        stream=True,
        stopper=stopper,
        logger=loggers.RequestLogger(logger, method=options.method, url=url),
    )


async def get_watch_object_stream(
        descriptor: descriptors.RequestDescriptor,
        *,
        context: auth.APIContext,
        stopper: Optional["asyncio.Future[Any]"] = None,
        logger: typedefs.Logger = logger,
) -> Union[streaming.JSONStream, channels.UpgradeResult]:
    url, options = building.build_request(descriptor.streamed(), context.config)
    return await execute(
        url, options,
        context=context,
        stream=True,
        objects=True,
        stopper=stopper,
        logger=loggers.RequestLogger(logger, method=options.method, url=url),
    )


async def open_channels(
        descriptor: descriptors.RequestDescriptor,
        *,
        context: auth.APIContext,
        logger: typedefs.Logger = logger,
) -> channels.ChannelConnection:
    """
    Open a channel connection directly, for the interactive exec/attach calls.

    Unlike :func:`http`, it does not wait for the "upgrade required" response,
    and returns the open connection for the caller to drain and to write into.
    A handshake rejected on auth is retried once with refreshed credentials.
    """
    url, options = building.build_request(descriptor, context.config)
    request_logger = loggers.RequestLogger(logger, method=options.method, url=url)
    connection = _make_connection(url, options, context=context, logger=request_logger)
    try:
        await connection.open()
    except errors.UpgradeError as e:
        cause = e.__cause__
        status = cause.status if isinstance(cause, aiohttp.WSServerHandshakeError) else None
        if status not in AUTH_FAILURE_STATUSES or context.provider is None:
            raise
        request_logger.warning(f"The upgrade failed with {status}; retrying with refreshed credentials.")
        credential = await auth.reauthenticate(context, observed=options.credential, logger=request_logger)
        options = building.authorize(options, credential)
        connection = _make_connection(url, options, context=context, logger=request_logger)
        await connection.open()
    return connection


async def execute(
        url: str,
        options: building.RequestOptions,
        *,
        context: auth.APIContext,
        stream: bool = False,
        objects: bool = False,
        text: bool = False,
        stopper: Optional["asyncio.Future[Any]"] = None,
        logger: typedefs.Logger = logger,
) -> Any:
    """
    Issue the request and dispatch the response to its final shape.

    * 401/403 with an auth provider configured: refresh the credentials,
      and re-issue the request exactly once; the first response is discarded.
    * "400 Upgrade request required": switch to the channel protocol.
    * Other non-2xx statuses: fail with the raw body of the final response.
    * Streams: return the live stream without consuming the body.
    * Everything else: read and decode the body.
    """
    response = await send(url, options, context=context, logger=logger)

    if response.status in AUTH_FAILURE_STATUSES and context.provider is not None:
        logger.warning(f"The request failed with {response.status}; retrying with refreshed credentials.")
        response.release()
        credential = await auth.reauthenticate(context, observed=options.credential, logger=logger)
        options = building.authorize(options, credential)
        response = await send(url, options, context=context, logger=logger)

    if is_upgrade_required(response):
        response.release()
        return await channels.upgrade(
            url, options,
            session=context.session,
            settings=context.config.settings.channels,
            logger=logger,
        )

    await errors.check_response(response)

    if stream:
        cls = streaming.JSONStream if objects else streaming.Stream
        return cls(response, stopper=stopper, logger=logger)

    return await responses.normalize(response, text=text)


async def send(
        url: str,
        options: building.RequestOptions,
        *,
        context: auth.APIContext,
        logger: typedefs.Logger = logger,
) -> aiohttp.ClientResponse:
    logger.debug(f"Requesting: {options.method} {url}")
    response = await context.session.request(
        method=options.method,
        url=url,
        headers=options.headers,
        data=options.data,
        ssl=options.ssl,
        timeout=options.timeout,
    )

    # Keep track of responses which are using this context, so that they are closed with it.
    context.add_response(response)
    return response


def is_upgrade_required(response: aiohttp.ClientResponse) -> bool:
    return response.status == UPGRADE_REQUIRED_STATUS and response.reason == UPGRADE_REQUIRED_REASON


def _make_connection(
        url: str,
        options: building.RequestOptions,
        *,
        context: auth.APIContext,
        logger: typedefs.Logger,
) -> channels.ChannelConnection:
    return channels.ChannelConnection(
        url, options,
        session=context.session,
        settings=context.config.settings.channels,
        logger=logger,
    )
