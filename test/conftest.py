import asyncio
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from etching_server import EtchingServer
from etching_status_client.models import ClientConfig

BASE_URL_TEMPLATE = "http://localhost:{}"


class RecordingSleep:
    """Stands in for asyncio.sleep so retry delays are recorded instead of waited."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest_asyncio.fixture
async def server(unused_tcp_port_factory) -> AsyncGenerator[tuple[EtchingServer, int], None]:
    """Start and yield a test EtchingServer instance on a random port."""
    port = unused_tcp_port_factory()
    server_instance = EtchingServer()
    await server_instance.start(port=port)
    try:
        yield server_instance, port
    finally:
        await server_instance.stop()


@pytest.fixture
def config(server) -> ClientConfig:
    """Client configuration pointing at the test server, with fast polling."""
    _, port = server
    return ClientConfig(
        base_url=BASE_URL_TEMPLATE.format(port),
        timeout=5.0,
        poll_interval=0.05,
    )


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
