"""Unit tests for the TCP relay server."""

import asyncio
from unittest.mock import MagicMock

import pytest

from serialrelay.core.config import RelayConfig
from serialrelay.core.models import ClientConnection, ListenError
from serialrelay.serial.connection import SerialConnection
from serialrelay.serial.relay import NOT_CONNECTED, RelayServer, to_hex

CONFIG = RelayConfig(serial_path="/dev/ttyUSB0")


async def open_serial(opener, until):
    connection = SerialConnection(opener=opener)
    await connection.open(CONFIG)
    await until(lambda: connection.is_open)
    return connection


async def connect(relay):
    return await asyncio.open_connection("127.0.0.1", relay.bound_port)


def mock_client(address="127.0.0.1", port=40000):
    writer = MagicMock()
    writer.is_closing.return_value = False
    writer.get_extra_info.return_value = (address, port)
    writer.transport.get_write_buffer_size.return_value = 0
    return ClientConnection.from_streams(MagicMock(), writer)


class TestToHex:
    """Tests for the hex formatter used in traffic logs."""

    def test_to_hex(self):
        assert to_hex(b"\x01\x02\xff") == "01 02 ff"
        assert to_hex(b"AB", delim="") == "4142"
        assert to_hex(b"") == ""


class TestRelayServerState:
    """Tests for RelayServer bookkeeping without sockets."""

    def test_init(self):
        """Test relay initialization."""
        relay = RelayServer(SerialConnection(), port=9000)

        assert relay.port == 9000
        assert relay.max_clients == 4
        assert relay.client_count == 0
        assert not relay.is_listening
        assert relay.bound_port is None

    def test_client_list_empty(self):
        """Test client list marker when nobody is connected."""
        relay = RelayServer(SerialConnection(), port=9000)
        assert relay.client_list() == NOT_CONNECTED

    def test_client_list(self):
        """Test client list joins address:port with newlines."""
        relay = RelayServer(SerialConnection(), port=9000)
        for client in (mock_client("10.0.0.1", 1111), mock_client("10.0.0.2", 2222)):
            relay.clients[client.writer] = client

        assert relay.client_list() == "10.0.0.1:1111\n10.0.0.2:2222"

    def test_broadcast_drops_failed_clients(self):
        """Test a client whose write fails is removed, others still served."""
        changed = MagicMock()
        relay = RelayServer(SerialConnection(), port=9000, on_clients_changed=changed)
        good = mock_client(port=1)
        bad = mock_client(port=2)
        bad.writer.write.side_effect = ConnectionResetError("reset")
        relay.clients[good.writer] = good
        relay.clients[bad.writer] = bad

        relay.broadcast(b"\x01")

        good.writer.write.assert_called_once_with(b"\x01")
        assert list(relay.clients) == [good.writer]
        bad.writer.close.assert_called_once()
        changed.assert_called_once()

    def test_broadcast_drops_client_over_buffer_limit(self):
        """Test a client with too much unsent data is dropped."""
        relay = RelayServer(SerialConnection(), port=9000, max_buffer=1024)
        reading = mock_client(port=1)
        stalled = mock_client(port=2)
        stalled.writer.transport.get_write_buffer_size.return_value = 4096
        relay.clients[reading.writer] = reading
        relay.clients[stalled.writer] = stalled

        relay.broadcast(b"\x01")

        stalled.writer.write.assert_called_once_with(b"\x01")
        stalled.writer.close.assert_called_once()
        assert list(relay.clients) == [reading.writer]

    def test_stop_is_idempotent(self):
        """Test stop without a listener or clients does nothing."""
        relay = RelayServer(SerialConnection(), port=9000)
        relay.stop()
        relay.stop()
        assert not relay.is_listening


class TestRelayServerSockets:
    """Tests for RelayServer over real loopback sockets."""

    def test_serial_data_broadcast_to_all_clients(self, fake_opener, until):
        """Test every client receives identical copies in read order."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1")
            connection.on_data = relay.broadcast
            await relay.start()

            reader_a, writer_a = await connect(relay)
            reader_b, writer_b = await connect(relay)
            await until(lambda: relay.client_count == 2)

            fake_opener.transport.feed(b"\x01\x02")
            fake_opener.transport.feed(b"\x03")

            assert await reader_a.readexactly(3) == b"\x01\x02\x03"
            assert await reader_b.readexactly(3) == b"\x01\x02\x03"

            writer_a.close()
            writer_b.close()
            relay.stop()

        asyncio.run(scenario())

    def test_client_data_only_reaches_serial(self, fake_opener, until):
        """Test one client's bytes go to the device and never to other clients."""
        client_data = []

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(
                connection, port=0, host="127.0.0.1", on_client_data=client_data.append
            )
            connection.on_data = relay.broadcast
            await relay.start()

            reader_a, writer_a = await connect(relay)
            reader_b, writer_b = await connect(relay)
            await until(lambda: relay.client_count == 2)

            writer_a.write(b"\xff")
            await writer_a.drain()
            await until(lambda: fake_opener.transport.written == b"\xff")

            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(reader_b.read(1), timeout=0.1)
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(reader_a.read(1), timeout=0.1)

            writer_a.close()
            writer_b.close()
            relay.stop()

        asyncio.run(scenario())
        assert client_data == [b"\xff"]

    def test_client_writes_keep_order(self, fake_opener, until):
        """Test a client's writes reach the device in the order written."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1")
            await relay.start()

            _, writer = await connect(relay)
            for chunk in (b"one,", b"two,", b"three"):
                writer.write(chunk)
                await writer.drain()
            await until(lambda: len(fake_opener.transport.written) == 13)
            assert bytes(fake_opener.transport.written) == b"one,two,three"

            writer.close()
            relay.stop()

        asyncio.run(scenario())

    def test_client_disconnect_leaves_others(self, fake_opener, until):
        """Test a disconnecting client does not affect others or the port."""
        published = []

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1")
            relay.on_clients_changed = lambda: published.append(relay.client_list())
            connection.on_data = relay.broadcast
            await relay.start()

            _, writer_a = await connect(relay)
            reader_b, writer_b = await connect(relay)
            await until(lambda: relay.client_count == 2)

            writer_a.close()
            await until(lambda: relay.client_count == 1)

            fake_opener.transport.feed(b"ok")
            assert await reader_b.readexactly(2) == b"ok"
            assert connection.is_open

            writer_b.close()
            await until(lambda: relay.client_count == 0)
            relay.stop()

        asyncio.run(scenario())
        assert published[-1] == NOT_CONNECTED
        assert len(published) == 4

    def test_max_clients(self, fake_opener, until):
        """Test connections beyond the cap are closed without any data."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1", max_clients=2)
            connection.on_data = relay.broadcast
            await relay.start()

            streams = [await connect(relay) for _ in range(2)]
            await until(lambda: relay.client_count == 2)

            reader_c, writer_c = await connect(relay)
            assert await asyncio.wait_for(reader_c.read(10), timeout=1.0) == b""
            assert relay.client_count == 2

            for _, writer in streams:
                writer.close()
            writer_c.close()
            relay.stop()

        asyncio.run(scenario())

    def test_stop_closes_clients(self, fake_opener, until):
        """Test stop closes the listener and every client."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1")
            await relay.start()
            port = relay.bound_port

            reader, writer = await connect(relay)
            await until(lambda: relay.client_count == 1)

            relay.stop()
            assert not relay.is_listening
            assert relay.client_count == 0
            assert await asyncio.wait_for(reader.read(10), timeout=1.0) == b""
            writer.close()

            with pytest.raises(OSError):
                await asyncio.open_connection("127.0.0.1", port)

        asyncio.run(scenario())

    def test_start_twice_keeps_one_listener(self, fake_opener, until):
        """Test start is a no-op when already listening."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1")
            await relay.start()
            port = relay.bound_port
            await relay.start()
            assert relay.bound_port == port
            relay.stop()

        asyncio.run(scenario())

    def test_listen_failure(self, fake_opener, until):
        """Test a port already in use raises ListenError."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            first = RelayServer(connection, port=0, host="127.0.0.1")
            await first.start()

            second = RelayServer(connection, port=first.bound_port, host="127.0.0.1")
            with pytest.raises(ListenError, match="Cannot listen"):
                await second.start()
            assert not second.is_listening
            first.stop()

        asyncio.run(scenario())

    def test_client_that_never_reads_is_dropped(self, fake_opener, until):
        """Test a stalled client is dropped instead of buffering without limit."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=0, host="127.0.0.1", max_buffer=256 * 1024)
            connection.on_data = relay.broadcast
            await relay.start()

            _, writer = await connect(relay)
            await until(lambda: relay.client_count == 1)
            [server_writer] = list(relay.clients)

            chunk = b"\x55" * 65536
            for _ in range(400):
                fake_opener.transport.feed(chunk)
                if relay.client_count == 0:
                    break
                assert server_writer.transport.get_write_buffer_size() <= (
                    relay.max_buffer + len(chunk)
                )
                await asyncio.sleep(0)

            assert relay.client_count == 0
            assert connection.is_open
            writer.close()
            relay.stop()

        asyncio.run(scenario())

    def test_stop_while_binding_releases_port(self, fake_opener, until, free_port):
        """Test stop during a pending start leaves no listener behind."""

        async def scenario():
            connection = await open_serial(fake_opener, until)
            relay = RelayServer(connection, port=free_port, host="127.0.0.1")

            start = asyncio.create_task(relay.start())
            await asyncio.sleep(0)
            relay.stop()
            await start

            assert not relay.is_listening
            with pytest.raises(OSError):
                await asyncio.open_connection("127.0.0.1", free_port)

            # a later start binds normally
            await relay.start()
            assert relay.bound_port == free_port
            relay.stop()

        asyncio.run(scenario())
