#!/usr/bin/env python3
"""
NTRIP rover client.

Connects to an NTRIP caster, authenticates with HTTP Basic credentials and
then runs a background thread that:

- receives the RTCM correction stream and hands the raw bytes to a callback
- re-sends the latest GGA position report to the caster once per interval

The RTCM bytes are never parsed here. Forwarding them to a receiver is the
callback's job (see ntrip_cli.py).
"""

import base64
import enum
import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Union

logger = logging.getLogger(__name__)

USER_AGENT = "NTRIP NtripRoverClient/1.0"

SUCCESS_TOKENS = (b"HTTP/1.1 200 OK", b"ICY 200 OK")
HEADER_END = b"\r\n\r\n"
MAX_HEADER = 65536


# ---------------------------
# Errors
# ---------------------------
class NtripError(Exception):
    """Base class for everything that makes run() fail."""


class ResolutionError(NtripError):
    pass


class ConnectError(NtripError):
    pass


class HandshakeError(NtripError):
    pass


class InvalidTransition(RuntimeError):
    """Raised on a state change the lifecycle does not allow."""


# ---------------------------
# Configuration
# ---------------------------
@dataclass(frozen=True)
class ClientConfig:
    host: str
    port: int
    mountpoint: str
    username: str = ""
    password: str = ""


@dataclass(frozen=True)
class StreamSettings:
    handshake_attempts: int = 50     # x handshake_interval = ~5 s budget
    handshake_interval: float = 0.1  # seconds
    report_interval: float = 1.0     # seconds between GGA reports
    poll_interval: float = 0.01      # seconds between receive attempts
    buffer_size: int = 4096
    connect_timeout: float = 10.0
    user_agent: str = USER_AGENT
    keepalive: bool = False
    keepalive_idle: int = 30         # idle seconds before keepalive starts
    keepalive_interval: int = 5      # seconds between keepalive packets
    keepalive_count: int = 3         # unanswered packets before the peer is dropped
    stop_on_peer_close: bool = True


# ---------------------------
# Lifecycle state
# ---------------------------
class ConnectionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    RUNNING = "running"
    STOPPED = "stopped"


_TRANSITIONS = {
    ConnectionState.UNINITIALIZED: {ConnectionState.CONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.AUTHENTICATED, ConnectionState.STOPPED},
    ConnectionState.AUTHENTICATED: {ConnectionState.RUNNING, ConnectionState.STOPPED},
    ConnectionState.RUNNING: {ConnectionState.STOPPED},
    ConnectionState.STOPPED: {ConnectionState.CONNECTED},
}


def check_transition(current: ConnectionState, new: ConnectionState) -> None:
    if new not in _TRANSITIONS[current]:
        raise InvalidTransition(f"{current.value} -> {new.value}")


# ---------------------------
# Shared position report
# ---------------------------
class PositionReport:
    """Single slot holding the latest GGA sentence. Last write wins."""

    def __init__(self):
        self._lock = threading.Lock()
        self._value = b""

    def set(self, sentence: Union[str, bytes]):
        if isinstance(sentence, str):
            sentence = sentence.encode("ascii")
        with self._lock:
            self._value = bytes(sentence)

    def get(self) -> bytes:
        with self._lock:
            return self._value


# ---------------------------
# Helpers
# ---------------------------
def b64encode_text(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def encode_credentials(username: str, password: str) -> str:
    """Base64 of "username:password" for the Authorization header."""
    return b64encode_text(f"{username}:{password}".encode("utf-8"))


def build_request(config: ClientConfig, user_agent: str = USER_AGENT) -> bytes:
    auth = encode_credentials(config.username, config.password)
    req = (
        f"GET /{config.mountpoint} HTTP/1.1\r\n"
        f"User-Agent: {user_agent}\r\n"
        f"Authorization: Basic {auth}\r\n"
        "\r\n"
    )
    return req.encode("ascii")


def resolve_ipv4(host: str, port: int) -> Tuple[str, int]:
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_INET, socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(f"could not resolve {host}:{port}: {exc}") from exc
    if not infos:
        raise ResolutionError(f"no IPv4 address for {host}:{port}")
    return infos[0][4]


def open_connection(address: Tuple[str, int], timeout: float) -> socket.socket:
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as exc:
        raise ConnectError(f"could not create socket: {exc}") from exc
    sock.settimeout(timeout)
    try:
        sock.connect(address)
    except OSError as exc:
        sock.close()
        raise ConnectError(f"could not connect to {address[0]}:{address[1]}: {exc}") from exc
    return sock


def enable_keepalive(sock: socket.socket, idle: int, interval: int, count: int):
    # not every platform has the TCP_KEEP* options
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, idle)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, interval)
        if hasattr(socket, "TCP_KEEPCNT"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, count)
    except OSError as exc:
        logger.debug("TCP keepalive not configured: %s", exc)


def response_accepted(response: bytes) -> bool:
    return any(token in response for token in SUCCESS_TOKENS)


def strip_header(buffer: bytes) -> Tuple[Optional[bytes], bytes]:
    """
    Split an accepted response into (unfinished header, body).

    The header part is None once HEADER_END has been seen; until then all
    bytes belong to the header and the body is empty.
    """
    end = buffer.find(HEADER_END)
    if end < 0:
        return buffer, b""
    return None, buffer[end + len(HEADER_END):]


def split_response(response: bytes) -> Tuple[Optional[bytes], bytes]:
    # some casters answer "ICY 200 OK\r\n" and start streaming right away
    if response.startswith(b"ICY") and HEADER_END not in response:
        line_end = response.find(b"\r\n")
        if line_end >= 0:
            return None, response[line_end + 2:]
        return None, b""
    return strip_header(response)


def log_corrections(data: bytes):
    logger.debug("NTRIP: received %d bytes: %s", len(data), data.hex())


# ---------------------------
# Client
# ---------------------------
class NtripClient:
    def __init__(
        self,
        host: Optional[str] = None,
        port: Union[int, str, None] = None,
        mountpoint: str = "",
        username: str = "",
        password: str = "",
        settings: Optional[StreamSettings] = None,
        on_data: Optional[Callable[[bytes], None]] = None,
    ):
        self.settings = settings or StreamSettings()
        self.on_data = on_data or log_corrections
        self.last_error: Optional[Exception] = None
        self.last_result: Optional[bool] = None

        self._config: Optional[ClientConfig] = None
        self._state = ConnectionState.UNINITIALIZED
        self._lock = threading.RLock()
        self._report = PositionReport()
        self._sock: Optional[socket.socket] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        if host is not None and port is not None:
            self.configure(host, port, mountpoint, username, password)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.stop()

    # ----- public API -----
    @property
    def config(self) -> Optional[ClientConfig]:
        return self._config

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    def configure(self, host, port, mountpoint, username="", password="") -> bool:
        """Store the caster details used by the next run()."""
        try:
            port = int(port)
        except (TypeError, ValueError):
            logger.error("Invalid NTRIP port: %r", port)
            return False
        if not host or not 0 < port < 65536:
            logger.error("Invalid NTRIP caster address: %r:%r", host, port)
            return False
        self._config = ClientConfig(host, port, mountpoint or "", username or "", password or "")
        return True

    def update_gga(self, gga: Union[str, bytes]):
        self._report.set(gga)

    update_position_report = update_gga

    def is_running(self) -> bool:
        with self._lock:
            running = self._state is ConnectionState.RUNNING
        return running and self._thread is not None and self._thread.is_alive()

    def run(self) -> bool:
        """
        Connect, authenticate and start the streaming thread.

        Returns False (and logs why) if any step fails; the reason is kept
        in last_error. Calling run() on a running client restarts it.
        """
        if self.is_running():
            self.stop()

        config = self._config
        if config is None:
            self.last_error = NtripError("client not configured")
            logger.error("NTRIP: client not configured")
            return False

        self.last_error = None
        self.last_result = None
        sock = None
        try:
            address = resolve_ipv4(config.host, config.port)
            logger.info("NTRIP: connecting to %s:%d (%s) mount %s",
                        config.host, config.port, address[0], config.mountpoint)
            sock = open_connection(address, self.settings.connect_timeout)
            with self._lock:
                self._set_state(ConnectionState.CONNECTED)
                self._sock = sock
            sock.setblocking(False)

            header, body = self._handshake(sock, config)
            with self._lock:
                self._set_state(ConnectionState.AUTHENTICATED)
            self._send_initial_report(sock)
        except NtripError as exc:
            logger.error("NTRIP: caster %s:%d/%s access failed: %s",
                         config.host, config.port, config.mountpoint, exc)
            self.last_error = exc
            if sock is not None:
                self._release(sock)
            return False

        if self.settings.keepalive:
            enable_keepalive(sock, self.settings.keepalive_idle,
                             self.settings.keepalive_interval, self.settings.keepalive_count)

        self._stop_event = threading.Event()
        with self._lock:
            self._set_state(ConnectionState.RUNNING)
            self._thread = threading.Thread(
                target=self._stream,
                args=(sock, self._stop_event, body, header),
                name="ntrip-stream",
                daemon=True,
            )
        self._thread.start()
        return True

    def stop(self):
        """Ask the streaming thread to finish and wait until the socket is closed."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join()
        self._thread = None

    # ----- connection manager internals -----
    def _set_state(self, new: ConnectionState):
        check_transition(self._state, new)
        logger.debug("NTRIP state: %s -> %s", self._state.value, new.value)
        self._state = new

    def _release(self, sock: socket.socket):
        with self._lock:
            sock.close()
            if self._sock is sock:
                self._sock = None
            if self._state in (ConnectionState.CONNECTED,
                               ConnectionState.AUTHENTICATED,
                               ConnectionState.RUNNING):
                self._set_state(ConnectionState.STOPPED)

    def _handshake(self, sock: socket.socket, config: ClientConfig) -> Tuple[Optional[bytes], bytes]:
        try:
            sock.sendall(build_request(config, self.settings.user_agent))
        except OSError as exc:
            raise HandshakeError(f"could not send request: {exc}") from exc

        response = b""
        for _ in range(self.settings.handshake_attempts):
            try:
                chunk = sock.recv(self.settings.buffer_size)
            except (BlockingIOError, InterruptedError):
                chunk = None
            except OSError as exc:
                raise HandshakeError(f"receive failed during handshake: {exc}") from exc

            if chunk == b"":
                raise HandshakeError("caster closed the connection")
            if chunk:
                response += chunk
                if response_accepted(response):
                    first_line = response.split(b"\r\n", 1)[0].decode("ascii", errors="replace")
                    logger.info("NTRIP: authenticated (%s)", first_line)
                    return split_response(response)
                logger.warning("NTRIP: request result: %s",
                               chunk.decode("ascii", errors="replace").strip())
            time.sleep(self.settings.handshake_interval)

        raise HandshakeError(
            f"no 200 OK after {self.settings.handshake_attempts} attempts"
        )

    def _send_initial_report(self, sock: socket.socket):
        report = self._report.get()
        if not report:
            logger.info("NTRIP: GGA buffer empty, nothing to send yet")
            return
        try:
            sock.sendall(report)
        except OSError as exc:
            raise HandshakeError(f"could not send GGA: {exc}") from exc
        logger.info("NTRIP: sent GGA: %s", report.decode("ascii", errors="replace").strip())

    # ----- streaming loop -----
    def _ready(self, sock: socket.socket) -> bool:
        if self._config is None:
            logger.error("NTRIP: client not initialized")
            return False
        state = self.state
        if state is not ConnectionState.RUNNING:
            logger.error("NTRIP: stream started in state %s", state.value)
            return False
        if sock.fileno() < 0:
            logger.error("NTRIP: socket not open")
            return False
        return True

    def _stream(
        self,
        sock: socket.socket,
        stop_event: threading.Event,
        pending: bytes = b"",
        header: Optional[bytes] = None,
    ) -> bool:
        ok = False
        try:
            ok = self._ready(sock) and self._pump(sock, stop_event, pending, header)
        finally:
            # result first: once the state reads STOPPED a new run() may start
            self.last_result = ok
            self._release(sock)
        return ok

    def _deliver(self, data: bytes) -> bool:
        try:
            self.on_data(data)
        except Exception:
            logger.exception("NTRIP: correction handler failed")
            return False
        return True

    def _pump(
        self,
        sock: socket.socket,
        stop_event: threading.Event,
        pending: bytes,
        header: Optional[bytes] = None,
    ) -> bool:
        """header holds the response header bytes still waiting for HEADER_END."""
        settings = self.settings
        if pending and not self._deliver(pending):
            return False

        peer_closed = False
        last_report = time.monotonic()
        logger.info("NTRIP: stream running")
        while not stop_event.is_set():
            try:
                data = sock.recv(settings.buffer_size)
            except (BlockingIOError, InterruptedError):
                data = None
            except OSError as exc:
                logger.error("NTRIP: socket error: %s", exc)
                return False

            if data:
                if header is not None:
                    header, data = strip_header(header + data)
                    if header is not None and len(header) > MAX_HEADER:
                        logger.error("NTRIP: response header too large")
                        return False
                if data and not self._deliver(data):
                    return False
            elif data == b"" and not peer_closed:
                if settings.stop_on_peer_close:
                    logger.warning("NTRIP: caster closed the connection")
                    return False
                logger.warning("NTRIP: caster closed the connection, still running")
                peer_closed = True

            now = time.monotonic()
            if now - last_report >= settings.report_interval:
                last_report = now
                report = self._report.get()
                if report:
                    try:
                        sock.sendall(report)
                    except OSError as exc:
                        logger.error("NTRIP: could not send GGA: %s", exc)
                        return False
                    logger.debug("NTRIP: sent GGA: %s",
                                  report.decode("ascii", errors="replace").strip())

            stop_event.wait(settings.poll_interval)

        logger.info("NTRIP: stream stopped")
        return True
