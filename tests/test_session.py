"""End-to-end sessions over loopback.

The mirror listens on 127.0.0.2 and clients connect from other 127.0.0.0/8
addresses, so the connect-back lands on a test peer bound to the client's
address rather than on the mirror itself.
"""

from __future__ import annotations

import asyncio
import contextlib
import glob
import logging
import os
import socket
import struct
import sys

import pytest

from onewaymirror import (
    INBOUND,
    OUTBOUND,
    EventLog,
    FatalError,
    MirrorConfig,
    Service,
    SessionSettings,
    direction_payload,
    handle_session,
    read_replay_file,
)

pytestmark = pytest.mark.skipif(
    not sys.platform.startswith("linux"), reason="needs the whole 127.0.0.0/8 loopback range"
)

MIRROR_IP = "127.0.0.2"


def _config(tmp_path, **overrides) -> MirrorConfig:
    defaults = {
        "addr": f"{MIRROR_IP}:0",
        "ipv6": False,
        "log_dir": str(tmp_path / "logs"),
        "banner": "",
    }
    defaults.update(overrides)
    return MirrorConfig(**defaults)


async def _start(cfg: MirrorConfig):
    svc = Service(cfg, logging.getLogger("onewaymirror.test"))
    await svc.start()
    return svc, svc.listeners[0].address[1]


async def _echo_peer(ip: str, port: int):
    async def handle(reader, writer):
        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                writer.write(data)
                await writer.drain()
        finally:
            writer.close()

    return await asyncio.start_server(handle, ip, port)


async def _connect(client_ip: str, port: int):
    return await asyncio.open_connection(MIRROR_IP, port, local_addr=(client_ip, 0))


async def _wait_sessions(svc: Service, timeout: float = 5.0) -> None:
    async def _drain() -> None:
        while svc.dispatcher.session_tasks:
            await asyncio.gather(*list(svc.dispatcher.session_tasks), return_exceptions=True)

    await asyncio.wait_for(_drain(), timeout)


def _replay_files(tmp_path, peer_ip: str):
    return sorted(glob.glob(os.path.join(str(tmp_path), "logs", peer_ip, "*.owm")))


def _tcp_pair():
    """A connected (client, accepted) socket pair on 127.0.0.1."""
    srv = socket.create_server(("127.0.0.1", 0))
    try:
        client = socket.create_connection(srv.getsockname())
        conn, _ = srv.accept()
    finally:
        srv.close()
    return client, conn


async def _until_closed(sock: socket.socket, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while sock.fileno() != -1:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def dials(monkeypatch):
    """Records every connect-back attempt made through asyncio.open_connection."""
    calls = []
    real = asyncio.open_connection

    async def recording(*args, **kwargs):
        if "sock" not in kwargs:
            calls.append((kwargs.get("host"), kwargs.get("port")))
        return await real(*args, **kwargs)

    monkeypatch.setattr(asyncio, "open_connection", recording)
    return calls


class TestRelay:
    @pytest.mark.asyncio
    async def test_round_trip_through_echo_peer(self, tmp_path):
        svc, port = await _start(_config(tmp_path))
        peer = await _echo_peer("127.0.0.1", port)
        try:
            reader, writer = await _connect("127.0.0.1", port)
            chunks = [b"hello mirror\n", b"\x00\x01\xff binary \t\n", b"last"]
            for c in chunks:
                writer.write(c)
                await writer.drain()
            expected = b"".join(chunks)
            got = await asyncio.wait_for(reader.readexactly(len(expected)), 5.0)
            assert got == expected

            writer.close()
            await _wait_sessions(svc)
        finally:
            peer.close()
            await svc.stop()

        (path,) = _replay_files(tmp_path, "127.0.0.1")
        records = read_replay_file(path)
        assert direction_payload(records, INBOUND) == expected
        assert direction_payload(records, OUTBOUND) == expected

    @pytest.mark.asyncio
    async def test_banner_comes_first(self, tmp_path):
        welcome = b":irc.test 001 tester :Welcome\r\n"
        seen_by_peer = []

        async def irc_peer(reader, writer):
            writer.write(welcome)
            await writer.drain()
            seen_by_peer.append(await reader.read(4096))
            writer.close()

        svc, port = await _start(_config(tmp_path, banner="IRC Test"))
        peer = await asyncio.start_server(irc_peer, "127.0.0.1", port)
        try:
            reader, writer = await _connect("127.0.0.1", port)
            assert await asyncio.wait_for(reader.readexactly(9), 5.0) == b"IRC Test\n"
            assert await asyncio.wait_for(reader.readexactly(len(welcome)), 5.0) == welcome

            writer.write(b"NICK tester\r\n")
            await writer.drain()
            assert await asyncio.wait_for(reader.read(), 5.0) == b""
            await _wait_sessions(svc)
        finally:
            peer.close()
            await svc.stop()

        assert seen_by_peer == [b"NICK tester\r\n"]
        (path,) = _replay_files(tmp_path, "127.0.0.1")
        records = read_replay_file(path)
        # The banner is ours, not relayed traffic.
        assert direction_payload(records, OUTBOUND) == welcome
        assert direction_payload(records, INBOUND) == b"NICK tester\r\n"

    @pytest.mark.asyncio
    async def test_reset_on_one_leg_tears_down_the_other(self, tmp_path):
        peer_eof = asyncio.Event()

        async def quiet_peer(reader, writer):
            await reader.read()
            peer_eof.set()
            writer.close()

        svc, port = await _start(_config(tmp_path, session_logging=False))
        peer = await asyncio.start_server(quiet_peer, "127.0.0.1", port)
        try:
            reader, writer = await _connect("127.0.0.1", port)
            writer.write(b"ping")
            await writer.drain()
            await asyncio.sleep(0.05)

            sock = writer.get_extra_info("socket")
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
            writer.close()

            await asyncio.wait_for(peer_eof.wait(), 5.0)
            await _wait_sessions(svc)
        finally:
            peer.close()
            await svc.stop()

        assert not os.path.exists(tmp_path / "logs")

    @pytest.mark.asyncio
    async def test_peer_that_stops_reading_does_not_hold_the_session(self, tmp_path):
        peer_connected = asyncio.Event()
        backed_up = asyncio.Event()
        release = asyncio.Event()

        async def stalled_peer(reader, writer):
            # Never reads. Ends its own direction once the mirror is stuck writing to it.
            peer_connected.set()
            await backed_up.wait()
            writer.write_eof()
            await release.wait()
            writer.close()

        async def flood(writer):
            chunk = b"x" * 65536
            with contextlib.suppress(OSError):
                while True:
                    writer.write(chunk)
                    await writer.drain()

        async def until_backed_up(writer):
            while writer.transport.get_write_buffer_size() == 0:
                await asyncio.sleep(0.01)

        svc, port = await _start(_config(tmp_path, buflen=65536))
        peer = await asyncio.start_server(stalled_peer, "127.0.0.1", port)
        flood_task = None
        try:
            _reader, writer = await _connect("127.0.0.1", port)
            flood_task = asyncio.create_task(flood(writer))
            await asyncio.wait_for(peer_connected.wait(), 5.0)

            # The client can no longer push, so the mirror is blocked on the peer.
            await asyncio.wait_for(until_backed_up(writer), 10.0)
            await asyncio.sleep(0.1)
            backed_up.set()

            await _wait_sessions(svc, timeout=5.0)
            assert not svc._dispatch_task.done()
        finally:
            release.set()
            if flood_task is not None:
                flood_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await flood_task
            peer.close()
            await svc.stop()

        (path,) = _replay_files(tmp_path, "127.0.0.1")
        records = read_replay_file(path)
        assert direction_payload(records, OUTBOUND) == b""
        assert set(direction_payload(records, INBOUND)) == {ord("x")}


class TestHandleSession:
    LOGGER = "onewaymirror_session_test"

    def _router(self) -> EventLog:
        return EventLog(logging.getLogger(self.LOGGER))

    @pytest.mark.asyncio
    async def test_unaddressable_peer_is_closed_without_dialling(self, dials, caplog):
        conn = socket.socket(socket.AF_INET, socket.SOCK_STREAM)  # never connected
        with caplog.at_level(logging.DEBUG, logger=self.LOGGER):
            await asyncio.wait_for(handle_session(conn, SessionSettings(banner=b"hi\n"), self._router()), 5.0)

        assert conn.fileno() == -1
        assert dials == []
        assert "session.bad_address" in caplog.text

    @pytest.mark.asyncio
    async def test_banner_failure_aborts_before_dialling(self, dials, caplog):
        client, conn = _tcp_pair()
        client.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        client.close()
        await asyncio.sleep(0.05)

        with caplog.at_level(logging.DEBUG, logger=self.LOGGER):
            await asyncio.wait_for(
                handle_session(conn, SessionSettings(banner=b"IRC Test\n"), self._router()), 5.0
            )
            await _until_closed(conn)

        assert dials == []
        assert "session.banner_failed" in caplog.text

    @pytest.mark.asyncio
    async def test_cancelled_dial_closes_inbound(self, monkeypatch):
        dialling = asyncio.Event()
        real = asyncio.open_connection

        async def hanging(*args, **kwargs):
            if "sock" in kwargs:
                return await real(*args, **kwargs)
            dialling.set()
            await asyncio.Event().wait()

        monkeypatch.setattr(asyncio, "open_connection", hanging)
        client, conn = _tcp_pair()
        try:
            task = asyncio.create_task(handle_session(conn, SessionSettings(), self._router()))
            await asyncio.wait_for(dialling.wait(), 5.0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            await _until_closed(conn)
            client.settimeout(5.0)
            assert client.recv(1) == b""
        finally:
            client.close()


class TestFailures:
    @pytest.mark.asyncio
    async def test_dial_failure_is_reported_and_service_survives(self, tmp_path):
        svc, port = await _start(_config(tmp_path))
        try:
            reader, writer = await _connect("127.0.0.1", port)
            msg = await asyncio.wait_for(reader.read(), 5.0)
            assert msg == f"Unable to connect back to 127.0.0.1:{port}\n".encode()
            writer.close()
            await _wait_sessions(svc)
            assert not svc._dispatch_task.done()

            peer = await _echo_peer("127.0.0.1", port)
            try:
                reader, writer = await _connect("127.0.0.1", port)
                writer.write(b"again")
                await writer.drain()
                assert await asyncio.wait_for(reader.readexactly(5), 5.0) == b"again"
                writer.close()
                await _wait_sessions(svc)
            finally:
                peer.close()
        finally:
            await svc.stop()

        # The failed session never dialled, so only the second one was logged.
        assert len(_replay_files(tmp_path, "127.0.0.1")) == 1

    @pytest.mark.asyncio
    async def test_reported_fatal_error_ends_wait(self, tmp_path):
        svc, _port = await _start(_config(tmp_path))
        try:
            svc.fatal(FatalError("unable to create directory"))
            with pytest.raises(FatalError):
                await asyncio.wait_for(svc.wait(), 1.0)
        finally:
            await svc.stop()


class TestConcurrentSessions:
    @pytest.mark.asyncio
    async def test_independent_replay_files(self, tmp_path):
        svc, port = await _start(_config(tmp_path))
        peer_a = await _echo_peer("127.0.0.1", port)
        peer_b = await _echo_peer("127.0.0.3", port)
        try:
            ra, wa = await _connect("127.0.0.1", port)
            rb, wb = await _connect("127.0.0.3", port)

            for i in range(5):
                wa.write(b"A%d;" % i)
                wb.write(b"B%d;" % i)
                await wa.drain()
                await wb.drain()

            sent_a = b"".join(b"A%d;" % i for i in range(5))
            sent_b = b"".join(b"B%d;" % i for i in range(5))
            assert await asyncio.wait_for(ra.readexactly(len(sent_a)), 5.0) == sent_a
            assert await asyncio.wait_for(rb.readexactly(len(sent_b)), 5.0) == sent_b

            wa.close()
            wb.close()
            await _wait_sessions(svc)
        finally:
            peer_a.close()
            peer_b.close()
            await svc.stop()

        (path_a,) = _replay_files(tmp_path, "127.0.0.1")
        (path_b,) = _replay_files(tmp_path, "127.0.0.3")
        rec_a = read_replay_file(path_a)
        rec_b = read_replay_file(path_b)
        assert direction_payload(rec_a, INBOUND) == direction_payload(rec_a, OUTBOUND) == sent_a
        assert direction_payload(rec_b, INBOUND) == direction_payload(rec_b, OUTBOUND) == sent_b
