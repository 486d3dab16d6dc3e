import socket
import struct
import threading
import time

import pytest

from ntrip_client import NtripClient, StreamSettings

OK_RESPONSE = b"ICY 200 OK\r\n\r\n"


def wait_until(predicate, timeout=2.0, step=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


class MockCaster:
    """
    One-shot caster on 127.0.0.1.

    mode "reply":  answer the request with `response`, then record traffic
    mode "silent": record traffic, never answer
    mode "close":  close the connection as soon as it is accepted
    """

    def __init__(self, mode="reply", response=OK_RESPONSE):
        self.mode = mode
        self.response = response
        self.received = bytearray()
        self.accepted = threading.Event()
        self.client_closed = threading.Event()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._conn = None

        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(1)
        self._server.settimeout(10)
        self.port = self._server.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        try:
            conn, _ = self._server.accept()
        except OSError:
            return
        self._conn = conn
        self.accepted.set()
        if self.mode == "close":
            conn.close()
            return

        conn.settimeout(0.05)
        replied = False
        while not self._stop.is_set():
            try:
                chunk = conn.recv(4096)
            except socket.timeout:
                continue
            except OSError:
                break
            if not chunk:
                self.client_closed.set()
                break
            with self._lock:
                self.received += chunk
                header_done = b"\r\n\r\n" in self.received
            if self.mode == "reply" and not replied and header_done:
                conn.sendall(self.response)
                replied = True
        conn.close()

    @property
    def request(self) -> bytes:
        with self._lock:
            return bytes(self.received).split(b"\r\n\r\n", 1)[0] + b"\r\n\r\n"

    @property
    def payload(self) -> bytes:
        """Everything the client sent after its request."""
        with self._lock:
            parts = bytes(self.received).split(b"\r\n\r\n", 1)
        return parts[1] if len(parts) == 2 else b""

    def send(self, data: bytes):
        self._conn.sendall(data)

    def drop(self):
        """Close the connection from the caster side."""
        self._conn.shutdown(socket.SHUT_RDWR)

    def reset(self):
        """Abort the connection with a RST instead of a FIN."""
        self._conn.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
        self._conn.close()

    def close(self):
        self._stop.set()
        self._server.close()
        self._thread.join(2)


class ScriptedSocket:
    """
    Stand-in for the caster socket.

    recv() hands out `replies` one per call and then would block; sendall()
    raises BrokenPipeError once `send_limit` sends have gone through.
    """

    def __init__(self, replies=(), send_limit=None):
        self.replies = list(replies)
        self.send_limit = send_limit
        self.sent = []
        self.closed = False

    def setblocking(self, flag):
        pass

    def fileno(self):
        return -1 if self.closed else 99

    def recv(self, size):
        if self.replies:
            return self.replies.pop(0)
        raise BlockingIOError(11, "Resource temporarily unavailable")

    def sendall(self, data):
        if self.send_limit is not None and len(self.sent) >= self.send_limit:
            raise BrokenPipeError(32, "Broken pipe")
        self.sent.append(bytes(data))

    def close(self):
        self.closed = True


@pytest.fixture
def scripted(monkeypatch):
    """Make run() connect to a ScriptedSocket; call it with the socket to use."""

    def install(sock):
        monkeypatch.setattr("ntrip_client.open_connection", lambda address, timeout: sock)
        return sock

    return install


@pytest.fixture
def caster():
    c = MockCaster()
    yield c
    c.close()


@pytest.fixture
def fast_settings():
    return StreamSettings(handshake_attempts=10, handshake_interval=0.05)


@pytest.fixture
def make_client(fast_settings):
    clients = []

    def factory(port, settings=None, **kwargs):
        client = NtripClient("127.0.0.1", port, "MOUNT", "user", "secret",
                             settings=settings or fast_settings, **kwargs)
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.stop()
