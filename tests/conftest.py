import asyncio
import collections
import dataclasses
import inspect
import logging
import re
from typing import Any, Callable, Dict, List, Tuple

import aiohttp.web
import pytest
from aiohttp.test_utils import TestServer

from kubefetch._cogs.clients.auth import APIContext, ProviderRegistry
from kubefetch._cogs.configs.configuration import BASE64_CHANNEL_PROTOCOL, TransportSettings
from kubefetch._cogs.structs.credentials import BearerCredential, ConnectionInfo, TransportConfig


@pytest.fixture()
def settings():
    return TransportSettings()


@pytest.fixture()
def logger():
    return logging.getLogger('kubefetch.tests')


@pytest.fixture()
def registry():
    """ A fresh registry for every test, with no providers in it. """
    return ProviderRegistry()


#
# A fake API server: real HTTP & WebSockets, but with the responses as the tests prescribe.
# Reasons:
# 1. The transport is the layer under test here, so the HTTP client must be real.
# 2. No external calls must be made under any circumstances.
#    The unit-tests must be fully isolated from the environment.
#

@dataclasses.dataclass(frozen=True)
class RecordedRequest:
    method: str
    path: str
    query: Any
    query_string: str
    headers: Any
    body: bytes


class FakeAPIServer:
    """
    A server which responds with the pre-registered handlers in their order.

    Every registered handler is used only once (unless ``repeat`` is given).
    All requests are recorded, so that the tests could assert on them later.

    Sample usage::

        async def test_me(fake_server):
            fake_server.add('GET', '/path', fake_server.json({'a': 'b'}))
            await do_something(fake_server.url)
            assert len(fake_server.requests) == 1
    """

    def __init__(self) -> None:
        super().__init__()
        self.requests: List[RecordedRequest] = []
        self._handlers: Dict[Tuple[str, str], List[Callable[..., Any]]] = collections.defaultdict(list)
        self.app = aiohttp.web.Application()
        self.app.router.add_route('*', '/{tail:.*}', self._dispatch)
        self.server = TestServer(self.app)

    @property
    def url(self) -> str:
        return str(self.server.make_url('/')).rstrip('/')

    def add(self, method: str, path: str, handler: Callable[..., Any], *, repeat: int = 1) -> None:
        self._handlers[method.upper(), path].extend([handler] * repeat)

    async def _dispatch(self, request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
        body = await request.read()
        self.requests.append(RecordedRequest(
            method=request.method,
            path=request.path,
            query=request.query.copy(),
            query_string=request.query_string,
            headers=request.headers.copy(),
            body=body,
        ))
        handlers = self._handlers[request.method, request.path]
        if not handlers:
            return aiohttp.web.Response(status=418, text=f"No handler for {request.method} {request.path}")
        response = handlers.pop(0)(request)
        if inspect.isawaitable(response):
            response = await response
        return response

    @staticmethod
    def json(data: Any, *, status: int = 200) -> Callable[..., Any]:
        return lambda request: aiohttp.web.json_response(data, status=status)

    @staticmethod
    def raw(body: bytes = b'', *, status: int = 200, reason: str = None,
            content_type: str = 'application/octet-stream') -> Callable[..., Any]:
        return lambda request: aiohttp.web.Response(status=status, reason=reason, body=body,
                                                    content_type=content_type)

    @staticmethod
    def upgrade_required() -> Callable[..., Any]:
        return lambda request: aiohttp.web.Response(status=400, reason='Upgrade request required')

    @staticmethod
    def chunks(*chunks: bytes, endless: bool = False) -> Callable[..., Any]:
        async def handler(request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
            response = aiohttp.web.StreamResponse()
            await response.prepare(request)
            for chunk in chunks:
                await response.write(chunk)
                await asyncio.sleep(0.01)
            # Keep writing until the client disconnects (or until the safety limit is reached).
            for _ in range(1000 if endless else 0):
                try:
                    await response.write(b'{"filler": true}\n')
                except (ConnectionError, RuntimeError):
                    return response
                await asyncio.sleep(0.01)
            await response.write_eof()
            return response
        return handler

    @staticmethod
    def websocket(*frames: Any, code: int = 1000, message: bytes = b'',
                  received: List[Any] = None) -> Callable[..., Any]:
        async def handler(request: aiohttp.web.Request) -> aiohttp.web.StreamResponse:
            ws = aiohttp.web.WebSocketResponse(protocols=[BASE64_CHANNEL_PROTOCOL])
            await ws.prepare(request)
            if received is not None:
                received.append(await ws.receive_str())
            for frame in frames:
                if isinstance(frame, bytes):
                    await ws.send_bytes(frame)
                else:
                    await ws.send_str(frame)
            await ws.close(code=code, message=message)
            return ws
        return handler


@pytest.fixture()
async def fake_server():
    server = FakeAPIServer()
    await server.server.start_server()
    try:
        yield server
    finally:
        await server.server.close()


@pytest.fixture()
def credential():
    return BearerCredential('old-token')


@pytest.fixture()
def config(fake_server, credential, settings):
    return TransportConfig(ConnectionInfo(server=fake_server.url), credential=credential, settings=settings)


@pytest.fixture()
async def context(config, registry):
    context = APIContext(config, registry=registry)
    try:
        yield context
    finally:
        await context.close()


#
# Helpers for the logging checks.
#

@pytest.fixture()
def assert_logs(caplog):
    """
    A function to assert the logs are present (by pattern).

    The listed message patterns MUST be present, in the order specified.
    Some other log messages can also be present, but they are ignored.
    """
    caplog.set_level(logging.DEBUG)

    def assert_logs_fn(patterns=(), prohibited=(), strict=False):
        __traceback_hide__ = True
        remaining_patterns = list(patterns)
        for message in caplog.messages:
            # The expected pattern is at position 0.
            # Looking-ahead: if one of the following patterns matches, while the
            # 0th does not, then the log message is missing, and we fail the test.
            for idx, pattern in enumerate(remaining_patterns):
                m = re.search(pattern, message)
                if m:
                    if idx == 0:
                        remaining_patterns[:1] = []
                        break  # out of `remaining_patterns` cycle
                    else:
                        skipped_patterns = remaining_patterns[:idx]
                        raise AssertionError(f"Few patterns were skipped: {skipped_patterns!r}")
                elif strict:
                    raise AssertionError(f"Unexpected log message: {message!r}")

            # Check that the prohibited patterns do not appear in any message.
            for pattern in prohibited:
                m = re.search(pattern, message)
                if m:
                    raise AssertionError(f"Prohibited log pattern found: {message!r} ~ {pattern!r}")

        # If all patterns have been matched in order, we are done.
        # if some are left, but the messages are over, then we fail.
        if remaining_patterns:
            raise AssertionError(f"Few patterns were missed: {remaining_patterns!r}")

    return assert_logs_fn
