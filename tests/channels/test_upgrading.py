import base64

import aiohttp
import pytest

from kubefetch._cogs.clients.api import open_channels
from kubefetch._cogs.clients.auth import APIContext
from kubefetch._cogs.clients.building import build_request
from kubefetch._cogs.clients.channels import Channel, ChannelConnection, ChannelState, upgrade
from kubefetch._cogs.clients.errors import UpgradeError
from kubefetch._cogs.structs.credentials import AuthProviderInfo, ConnectionInfo, TransportConfig
from kubefetch._cogs.structs.descriptors import RequestDescriptor

PATH = '/api/v1/namespaces/ns1/pods/pod1/exec'


@pytest.fixture()
def request_parts(config):
    return build_request(RequestDescriptor('POST', PATH, body={'ignored': True}), config)


async def test_frames_are_demultiplexed_in_order(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket('1YQ==', '2Yg==', '1Yw=='))
    url, options = request_parts

    result = await upgrade(url, options, session=context.session, settings=settings.channels)

    assert [(frame.channel, frame.message) for frame in result.messages] == [
        (Channel.STDOUT, 'a'),
        (Channel.STDERR, 'b'),
        (Channel.STDOUT, 'c'),
    ]
    assert result.body == 'abc'


async def test_binary_frames_with_raw_indexes(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket(b'\x01YQ==', b'\x02Yg=='))
    url, options = request_parts

    result = await upgrade(url, options, session=context.session, settings=settings.channels)

    assert [(frame.channel, frame.message) for frame in result.messages] == [
        (Channel.STDOUT, 'a'),
        (Channel.STDERR, 'b'),
    ]


async def test_close_code_and_reason(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket('1YQ==', code=4000, message=b'bye'))
    url, options = request_parts

    result = await upgrade(url, options, session=context.session, settings=settings.channels)

    assert result.code == 4000
    assert result.reason == 'bye'


async def test_error_channel_is_part_of_the_body(fake_server, context, settings, request_parts):
    status = '{"kind":"Status","status":"Success"}'
    fake_server.add('GET', PATH, fake_server.websocket(
        '1b3V0',  # "out"
        '3' + base64.b64encode(status.encode()).decode(),
    ))
    url, options = request_parts

    result = await upgrade(url, options, session=context.session, settings=settings.channels)

    assert result.body == 'out' + status
    assert result.status == {'kind': 'Status', 'status': 'Success'}


async def test_empty_frames_are_skipped(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket('', '1YQ=='))
    url, options = request_parts

    result = await upgrade(url, options, session=context.session, settings=settings.channels)

    assert len(result.messages) == 1


async def test_handshake_has_credentials_but_no_content_type(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket())
    url, options = request_parts

    await upgrade(url, options, session=context.session, settings=settings.channels)

    headers = fake_server.requests[0].headers
    assert headers['Authorization'] == 'Bearer old-token'
    assert headers['Sec-WebSocket-Protocol'] == 'base64.channel.k8s.io'
    assert 'Content-Type' not in headers


async def test_failed_handshake(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.raw(b'nope', status=403))
    url, options = request_parts
    connection = ChannelConnection(url, options, session=context.session, settings=settings.channels)

    with pytest.raises(UpgradeError) as err:
        await connection.open()

    assert isinstance(err.value.__cause__, aiohttp.WSServerHandshakeError)
    assert err.value.messages == []
    assert connection.state is ChannelState.CLOSED


async def test_unknown_channel_fails_with_partial_messages(fake_server, context, settings, request_parts):
    fake_server.add('GET', PATH, fake_server.websocket('1YQ==', '7Yg=='))
    url, options = request_parts

    with pytest.raises(UpgradeError) as err:
        await upgrade(url, options, session=context.session, settings=settings.channels)

    assert [frame.message for frame in err.value.messages] == ['a']


async def test_transport_error_fails_with_partial_messages(mocker, settings, request_parts):
    url, options = request_parts
    error = ConnectionResetError('reset')
    ws = mocker.Mock(closed=False, close_code=None)
    ws.close = mocker.AsyncMock()
    ws.receive = mocker.AsyncMock(side_effect=[
        mocker.Mock(type=aiohttp.WSMsgType.TEXT, data='1YQ==', extra=None),
        mocker.Mock(type=aiohttp.WSMsgType.ERROR, data=error, extra=None),
    ])
    session = mocker.Mock()
    session.ws_connect = mocker.AsyncMock(return_value=ws)

    connection = ChannelConnection(url, options, session=session, settings=settings.channels)
    with pytest.raises(UpgradeError) as err:
        await connection.result()

    assert err.value.__cause__ is error
    assert [frame.message for frame in err.value.messages] == ['a']
    assert connection.state is ChannelState.CLOSED
    ws.close.assert_awaited_once()


async def test_states_and_writing(fake_server, context, settings, request_parts):
    received = []
    fake_server.add('GET', PATH, fake_server.websocket('1b2s=', received=received))
    url, options = request_parts
    connection = ChannelConnection(url, options, session=context.session, settings=settings.channels)
    assert connection.state is ChannelState.CONNECTING

    async with connection:
        assert connection.state is ChannelState.OPEN
        await connection.send(Channel.STDIN, b'ls\n')
        frames = [frame async for frame in connection]

    assert connection.state is ChannelState.CLOSED
    assert received == ['0bHMK']
    assert [frame.message for frame in frames] == ['ok']
    assert connection.code == 1000

    with pytest.raises(UpgradeError):
        await connection.send(Channel.STDIN, b'too late')


async def test_open_channels_directly(fake_server, context):
    fake_server.add('GET', PATH, fake_server.websocket('1YQ=='))
    descriptor = RequestDescriptor('GET', PATH, parameters={'command': ['sh'], 'stdout': True})

    connection = await open_channels(descriptor, context=context)
    result = await connection.result()

    assert result.body == 'a'
    assert fake_server.requests[0].query.getall('command') == ['sh']


async def test_open_channels_retries_on_auth_failure(fake_server, credential, settings, registry):

    @registry.provider('sample')
    async def refresh(config):
        return 'new-token'

    config = TransportConfig(ConnectionInfo(server=fake_server.url), credential=credential,
                             settings=settings, auth_provider=AuthProviderInfo('sample'))
    context = APIContext(config, registry=registry)
    try:
        fake_server.add('GET', PATH, fake_server.raw(b'go away', status=401))
        fake_server.add('GET', PATH, fake_server.websocket('1YQ=='))

        connection = await open_channels(RequestDescriptor('GET', PATH), context=context)
        result = await connection.result()
    finally:
        await context.close()

    assert result.body == 'a'
    assert fake_server.requests[0].headers['Authorization'] == 'Bearer old-token'
    assert fake_server.requests[1].headers['Authorization'] == 'Bearer new-token'


async def test_open_channels_without_provider_fails_on_auth(fake_server, context):
    fake_server.add('GET', PATH, fake_server.raw(b'go away', status=401))
    with pytest.raises(UpgradeError):
        await open_channels(RequestDescriptor('GET', PATH), context=context)
    assert len(fake_server.requests) == 1
