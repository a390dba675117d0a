"""Tests for the TCP command server."""

import socket
import threading
import time

import pytest

from conftest import FakeBus, make_engine, temp_reply
from lightmanager.exceptions import LineTooLong
from lightmanager.httplite import HttpFrontEnd
from lightmanager.server import Connection, Server

pytestmark = pytest.mark.integration


class _Running:
    """A Server on a free localhost port, served from a thread."""

    def __init__(self, bus):
        self.bus = bus
        self.shutdown = threading.Event()
        self.server = Server(
            HttpFrontEnd(make_engine(bus)), "127.0.0.1", 0, self.shutdown,
        )
        self.port = self.server.address[1]
        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    def connect(self) -> socket.socket:
        return socket.create_connection(("127.0.0.1", self.port), timeout=2.0)

    def stop(self):
        self.shutdown.set()
        self.thread.join(2.0)
        self.server.close()


@pytest.fixture
def start_server():
    """Factory fixture that starts servers and stops them afterwards."""
    started = []

    def start(bus=None):
        running = _Running(bus if bus is not None else FakeBus())
        started.append(running)
        return running

    yield start
    for running in started:
        running.stop()


def _recv_until(sock: socket.socket, marker: bytes) -> bytes:
    """Read until *marker* has arrived; socket timeout fails the test."""
    data = b""
    while marker not in data:
        chunk = sock.recv(4096)
        if not chunk:
            break
        data += chunk
    return data


def _recv_all(sock: socket.socket) -> bytes:
    """Read until the server closes the connection."""
    data = b""
    while True:
        try:
            chunk = sock.recv(4096)
        except ConnectionResetError:
            break
        if not chunk:
            break
        data += chunk
    return data


class TestConnection:
    """Line reading on a single connection."""

    def test_lf_and_cr_terminators(self):
        """LF and a lone CR both end a line."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer")
        try:
            b.sendall(b"A\rB\n")
            assert conn.read_line() == "A"
            assert conn.read_line() == "B"
        finally:
            b.close()
            conn.close()

    def test_crlf_is_one_terminator(self):
        """CR LF ends one line, even when split across reads."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer")
        try:
            b.sendall(b"ONE\r")
            assert conn.read_line() == "ONE"
            b.sendall(b"\nTWO\r\n\r\n")
            assert conn.read_line() == "TWO"
            assert conn.read_line() == ""
        finally:
            b.close()
            conn.close()

    def test_eof(self):
        """A closed peer gives None."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer")
        b.close()
        assert conn.read_line() is None
        conn.close()

    def test_terminated_line_too_long(self):
        """A terminated line longer than max_len raises too."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer", max_len=1024)
        try:
            b.sendall(b"A" * 1500 + b"\n")
            with pytest.raises(LineTooLong):
                conn.read_line()
        finally:
            b.close()
            conn.close()

    def test_line_at_limit_accepted(self):
        """A line of exactly max_len characters is returned."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer", max_len=16)
        try:
            b.sendall(b"X" * 16 + b"\r\n")
            assert conn.read_line() == "X" * 16
        finally:
            b.close()
            conn.close()

    def test_line_too_long(self):
        """More than max_len bytes without a terminator raises."""
        a, b = socket.socketpair()
        conn = Connection(a, "peer", max_len=16)
        try:
            b.sendall(b"X" * 20)
            with pytest.raises(LineTooLong):
                conn.read_line()
        finally:
            b.close()
            conn.close()


class TestServerSession:
    """Plain-text client sessions."""

    def test_command_then_prompt(self, start_server):
        """Each line is answered with its status lines and a prompt."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"SCENE 1\r\n")
            assert _recv_until(sock, b">") == b"SCENE 1: OK\r\n>"
        finally:
            sock.close()

    def test_blank_line_gets_prompt_only(self, start_server):
        """An empty line produces just the prompt."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"\n")
            assert _recv_until(sock, b">") == b">"
        finally:
            sock.close()

    def test_crlf_does_not_add_blank_line(self, start_server):
        """Two CR LF lines give exactly two prompts."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"SCENE 1\r\nSCENE 2\r\n")
            data = _recv_until(sock, b"SCENE 2: OK\r\n>")
            assert data == b"SCENE 1: OK\r\n>SCENE 2: OK\r\n>"
        finally:
            sock.close()

    def test_quit_says_bye(self, start_server):
        """QUIT closes the connection after 'bye'."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"QUIT\n")
            assert _recv_all(sock) == b"bye\r\n"
        finally:
            sock.close()

    def test_line_too_long_closes(self, start_server):
        """An over-long line is reported and the connection closed."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"A" * 1100)
            data = _recv_all(sock)
            assert data.startswith(b"ERROR - input line too long")
        finally:
            sock.close()

    def test_long_terminated_line_closes(self, start_server):
        """An over-long line is rejected even with its terminator."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"A" * 1500 + b"\n")
            data = _recv_all(sock)
            assert data.startswith(b"ERROR - input line too long")
        finally:
            sock.close()
        assert running.bus.written == []

    def test_exit_shuts_down_server(self, start_server):
        """EXIT says bye and stops the accept loop."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"EXIT\n")
            assert _recv_all(sock) == b"bye\r\n"
        finally:
            sock.close()
        running.thread.join(2.0)
        assert running.shutdown.is_set()
        assert not running.thread.is_alive()

    def test_client_count(self, start_server):
        """Connected clients are tracked until they leave."""
        running = start_server()
        sock = running.connect()
        sock.sendall(b"\n")
        _recv_until(sock, b">")
        assert running.server.client_count == 1
        sock.sendall(b"Q\n")
        _recv_all(sock)
        sock.close()
        time.sleep(0.1)
        assert running.server.client_count == 0


class TestConcurrentClients:
    """Several clients against the shared state."""

    def test_housecode_shared(self, start_server):
        """A housecode set by one client is read by another."""
        running = start_server()
        first = running.connect()
        second = running.connect()
        try:
            first.sendall(b"SET HOUSECODE 12341234\n")
            _recv_until(first, b">")
            second.sendall(b"GET HOUSECODE\n")
            assert b"12341234\r\n" in _recv_until(second, b">")
        finally:
            first.close()
            second.close()

    def test_wait_does_not_block_others(self, start_server):
        """A client in WAIT does not delay another client's command."""
        running = start_server()
        waiting = running.connect()
        other = running.connect()
        try:
            waiting.sendall(b"WAIT 500\n")
            time.sleep(0.05)
            start = time.monotonic()
            other.sendall(b"SCENE 1\n")
            _recv_until(other, b">")
            assert time.monotonic() - start < 0.4
            assert _recv_until(waiting, b">") == b"WAIT 500: OK\r\n>"
        finally:
            waiting.close()
            other.close()

    def test_device_access_is_serialized(self, start_server):
        """Commands from two clients never overlap on the device."""
        bus = FakeBus(delay_s=0.002)
        running = start_server(bus)
        line = (";".join(["SCENE 1"] * 20) + "\n").encode()
        clients = [running.connect(), running.connect()]
        try:
            for sock in clients:
                sock.sendall(line)
            for sock in clients:
                assert _recv_until(sock, b">").count(b": OK") == 20
        finally:
            for sock in clients:
                sock.close()
        assert bus.overlaps == 0
        assert len(bus.written) == 40


class TestHttpOverSocket:
    """HTTP requests on the command port."""

    def test_get_temp(self, start_server):
        """A GET request gets one HTTP response and the connection closes."""
        running = start_server(FakeBus([temp_reply(43)]))
        sock = running.connect()
        try:
            sock.sendall(
                b"GET /cmd=get%20temp HTTP/1.1\r\n"
                b"Host: lightmanager\r\n"
                b"\r\n"
            )
            data = _recv_all(sock)
        finally:
            sock.close()
        assert data.startswith(b"HTTP/1.1 200 OK\r\n")
        assert b"21.5<br />" in data
        assert not data.endswith(b">")

    def test_bad_request(self, start_server):
        """A request without /cmd= gets a 400 response."""
        running = start_server()
        sock = running.connect()
        try:
            sock.sendall(b"GET / HTTP/1.0\r\n\r\n")
            data = _recv_all(sock)
        finally:
            sock.close()
        assert data.startswith(b"HTTP/1.1 400 Bad Request\r\n")
