"""TCP server for command clients.

One listening socket for the process lifetime.  Every accepted client
gets its own handler thread which reads lines, runs them through the
command engine and writes the results back, followed by a ``>``
prompt.  Handlers share the transport and runtime state through the
engine; each connection has its own write lock, and the set of open
connections has a separate lock.

Example:
    >>> from lightmanager.server import Server
    >>> server = Server(engine, "0.0.0.0", 3456, shutdown)
    >>> server.serve_forever()   # until shutdown is set
    >>> server.close()
"""

import logging
import socket
import threading

from lightmanager.config import INPUT_BUFFER_MAXLEN
from lightmanager.engine import Outcome, PlainOutput, Session
from lightmanager.exceptions import LineTooLong

log = logging.getLogger(__name__)

PROMPT = ">"
FAREWELL = "bye\r\n"


class Connection:
    """One connected client socket.

    Reads CR- or LF-terminated lines (CR LF counts as one terminator)
    and serializes writes.  A failed write marks the connection broken
    instead of raising.

    Args:
        sock: Connected socket.
        peer: Peer address tuple, for logging.
        max_len: Longest accepted line without a terminator.
    """

    _RECV_SIZE = 1024

    def __init__(self, sock: socket.socket, peer, max_len: int = INPUT_BUFFER_MAXLEN):
        """Initialize around an accepted socket."""
        self._sock = sock
        self.peer = peer
        self._max_len = max_len
        self._buf = b""
        self._skip_lf = False
        self._write_lock = threading.Lock()
        self.broken = False

    def read_line(self) -> str | None:
        """Block until a full line arrives.

        Returns:
            The line without its terminator, or None when the peer
            closed the connection or a read error occurred.

        Raises:
            LineTooLong: If more than ``max_len`` bytes arrive without
                a terminator.
        """
        while True:
            pos = self._find_terminator()
            if pos > self._max_len:
                raise LineTooLong("input line too long (max %d)" % self._max_len)
            if pos >= 0:
                line = self._buf[:pos]
                self._skip_lf = self._buf[pos:pos + 1] == b"\r"
                self._buf = self._buf[pos + 1:]
                self._drop_lf()
                return line.decode("utf-8", errors="replace")

            if len(self._buf) > self._max_len:
                raise LineTooLong("input line too long (max %d)" % self._max_len)

            try:
                chunk = self._sock.recv(self._RECV_SIZE)
            except OSError as exc:
                log.debug("read from %s failed: %s", self.peer, exc)
                return None
            if not chunk:
                return None
            self._buf += chunk
            self._drop_lf()

    def _find_terminator(self) -> int:
        positions = [p for p in (self._buf.find(b"\r"), self._buf.find(b"\n")) if p >= 0]
        return min(positions) if positions else -1

    def _drop_lf(self) -> None:
        """Drop the LF of a CR LF pair split across reads."""
        if self._skip_lf and self._buf:
            if self._buf[:1] == b"\n":
                self._buf = self._buf[1:]
            self._skip_lf = False

    def write(self, text: str) -> bool:
        """Send *text*; return False if the connection is broken."""
        with self._write_lock:
            if self.broken:
                return False
            try:
                self._sock.sendall(text.encode("utf-8"))
            except OSError as exc:
                log.debug("write to %s failed: %s", self.peer, exc)
                self.broken = True
                return False
            return True

    def finish(self) -> None:
        """Half-close, then drain unread input until the peer closes."""
        try:
            self._sock.shutdown(socket.SHUT_WR)
            self._sock.settimeout(0.2)
            while self._sock.recv(self._RECV_SIZE):
                pass
        except OSError:
            pass

    def close(self) -> None:
        """Close the socket."""
        try:
            self._sock.close()
        except OSError:
            pass


class Server:
    """Listening socket plus one handler thread per client.

    Args:
        engine: Object with ``execute(line, session)`` returning an
            :class:`~lightmanager.engine.Outcome`, normally an
            :class:`~lightmanager.httplite.HttpFrontEnd`.
        host: Interface to bind (e.g. ``"0.0.0.0"`` for all).
        port: TCP port (``0`` picks a free one, see ``address``).
        shutdown: Event set by ``EXIT`` and by the signal handler.

    Raises:
        OSError: If the socket cannot be bound.
    """

    _ACCEPT_TIMEOUT_S = 0.5

    def __init__(self, engine, host: str, port: int, shutdown: threading.Event):
        """Bind and start listening."""
        self._engine = engine
        self._shutdown = shutdown
        self._clients: set[Connection] = set()
        self._lock = threading.Lock()

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind((host, port))
        self._server.listen(5)
        self._server.settimeout(self._ACCEPT_TIMEOUT_S)
        self.address = self._server.getsockname()
        log.info("listening on %s:%d", self.address[0], self.address[1])

    @property
    def client_count(self) -> int:
        """Number of currently connected clients."""
        with self._lock:
            return len(self._clients)

    def serve_forever(self) -> None:
        """Accept clients until the shutdown event is set."""
        while not self._shutdown.is_set():
            try:
                sock, peer = self._server.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if self._shutdown.is_set():
                    break
                log.warning("accept failed: %s", exc)
                continue

            sock.settimeout(None)
            conn = Connection(sock, peer)
            with self._lock:
                self._clients.add(conn)
            log.debug("client connected from %s:%d", peer[0], peer[1])
            threading.Thread(
                target=self._handle_client, args=(conn,), daemon=True,
            ).start()

    def _handle_client(self, conn: Connection) -> None:
        """Read-dispatch-write loop for one client."""
        session = Session(PlainOutput(conn.write))
        outcome = Outcome.CONTINUE
        try:
            while not conn.broken:
                try:
                    line = conn.read_line()
                except LineTooLong as exc:
                    log.warning("client %s: %s", conn.peer, exc)
                    conn.write("ERROR - %s\r\n" % exc)
                    conn.finish()
                    break
                if line is None:
                    break

                line = line.strip()
                outcome = Outcome.CONTINUE
                if line:
                    outcome = self._engine.execute(line, session)

                if outcome is Outcome.CONTINUE:
                    conn.write(PROMPT)
                    continue
                if outcome is Outcome.HTTP:
                    conn.finish()
                else:
                    conn.write(FAREWELL)
                break
        except Exception:
            log.exception("client %s: handler failed", conn.peer)
        finally:
            with self._lock:
                self._clients.discard(conn)
            conn.close()
            log.debug("client %s disconnected", conn.peer)

        if outcome is Outcome.SHUTDOWN:
            log.info("shutdown requested by client %s", conn.peer)
            self._shutdown.set()

    def close(self) -> None:
        """Close the listening socket and all client connections."""
        try:
            self._server.close()
        except OSError:
            pass
        with self._lock:
            clients = list(self._clients)
            self._clients.clear()
        for conn in clients:
            conn.close()
