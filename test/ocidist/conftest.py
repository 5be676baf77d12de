import aiohttp.test_utils
import pytest_asyncio

import ocidist.client as oc
import ocidist.config as oconf

import mock_registry


@pytest_asyncio.fixture
async def registry():
    mock = mock_registry.MockRegistry()
    server = aiohttp.test_utils.TestServer(mock.app(), host='127.0.0.1')
    await server.start_server()
    mock.host = f'127.0.0.1:{server.port}'

    yield mock

    await server.close()


@pytest_asyncio.fixture
async def client(registry):
    async with oc.Client(
        config=oconf.ClientConfig(protocol=oconf.ClientProtocol.HTTP),
    ) as client:
        yield client

