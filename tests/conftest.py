"""Shared fixtures: a fake serial transport and discovery results."""

import asyncio
import socket
from types import SimpleNamespace

import pytest
import serial


class FakeSerialTransport:
    """Stands in for serial_asyncio.SerialTransport."""

    def __init__(self, protocol):
        self.protocol = protocol
        self.written = bytearray()
        self.closed = False
        self.fail_writes = False

    def write(self, data):
        if self.fail_writes:
            raise serial.SerialException("write failed")
        self.written.extend(data)

    def is_closing(self):
        return self.closed

    def close(self):
        if self.closed:
            return
        self.closed = True
        asyncio.get_running_loop().call_soon(self.protocol.connection_lost, None)

    def feed(self, data):
        """Simulate bytes arriving from the device."""
        self.protocol.data_received(data)

    def unplug(self):
        """Simulate the device disappearing."""
        self.closed = True
        self.protocol.connection_lost(serial.SerialException("device disconnected"))


class FakeOpener:
    """Replacement for serial_asyncio.create_serial_connection."""

    def __init__(self):
        self.transports = []
        self.calls = []
        self.error = None

    async def __call__(self, loop, protocol_factory, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error is not None:
            raise self.error
        protocol = protocol_factory()
        transport = FakeSerialTransport(protocol)
        self.transports.append(transport)
        loop.call_soon(protocol.connection_made, transport)
        return transport, protocol

    @property
    def transport(self):
        return self.transports[-1]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_port_info(device, manufacturer="FTDI", location="1-1.2", vid=0x0403,
                   hwid="USB VID:PID=0403:6001"):
    """Build an object shaped like pyserial's ListPortInfo."""
    return SimpleNamespace(
        device=device,
        manufacturer=manufacturer,
        location=location,
        vid=vid,
        hwid=hwid,
    )


def make_virtual_port_info(device):
    return SimpleNamespace(
        device=device, manufacturer=None, location=None, vid=None, hwid="n/a"
    )


async def wait_until(predicate, timeout=2.0):
    """Yield to the event loop until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_opener():
    return FakeOpener()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def port_info():
    return make_port_info


@pytest.fixture
def virtual_port_info():
    return make_virtual_port_info


@pytest.fixture
def until():
    return wait_until


class RecordingHost:
    """HostInterface implementation that remembers what it was told."""

    def __init__(self):
        self.statuses = []
        self.client_lists = []

    def report_status(self, level, code, message):
        self.statuses.append((level, code, message))

    def publish_client_list(self, clients):
        self.client_lists.append(clients)

    @property
    def messages(self):
        return [message for _, _, message in self.statuses]


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]
