"""Sending requests and receiving responses over a network connection."""

from __future__ import annotations

import socket
import threading
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

from .codec import decode_node, decode_node_legacy, encode_interrupt
from .constants import RESPONSE_EMPTY, VERSION_LEGACY, request_desc
from .errors import CowsqlError
from .message import HEADER_SIZE, Message

_MIN_TIMEOUT = 1e-6


def dial(address: str, timeout: Optional[float] = None) -> socket.socket:
    """Connect to a node.

    Addresses starting with "@" are abstract Unix sockets; anything else is a
    "host:port" TCP endpoint.
    """
    if address.startswith("@"):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect("\0" + address[1:])
        except BaseException:
            sock.close()
            raise
        sock.settimeout(None)
        return sock

    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"invalid address {address!r}")
    host = host.strip("[]")
    sock = socket.create_connection((host, int(port)), timeout=timeout)
    sock.settimeout(None)
    return sock


@contextmanager
def _timeout(conn: socket.socket, timeout: Optional[float]) -> Iterator[None]:
    """Apply a timeout to the connection for the duration of the block."""
    if timeout is None:
        yield
        return
    conn.settimeout(max(timeout, _MIN_TIMEOUT))
    try:
        yield
    finally:
        try:
            conn.settimeout(None)
        except OSError:
            pass


def handshake(
    conn: socket.socket, version: int, timeout: Optional[float] = None
) -> "Protocol":
    """Send the protocol version to the server and return a Protocol."""
    data = version.to_bytes(8, "little")
    with _timeout(conn, timeout):
        try:
            conn.sendall(data)
        except OSError as err:
            raise CowsqlError(f"write handshake: {err}") from err
    return Protocol(version, conn)


class Protocol:
    """Exchanges messages with a server over a connection."""

    def __init__(self, version: int, conn: socket.socket) -> None:
        self.version = version
        self._conn = conn
        self._lock = threading.Lock()
        self._net_err: Optional[OSError] = None
        self.closed = False

    def __enter__(self) -> "Protocol":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def call(
        self, request: Message, response: Message, timeout: Optional[float] = None
    ) -> None:
        """Send a request and wait for its response.

        Failures raise CowsqlError whose cause is the underlying OSError or
        EOFError. After a network error the protocol is unusable.
        """
        with self._lock:
            desc = request_desc(request.mtype)
            if self._net_err is not None:
                raise CowsqlError(f"call {desc}: {self._net_err}") from self._net_err

            budget = "0s" if timeout is None else f"{timeout:.3f}s"
            with _timeout(self._conn, timeout):
                try:
                    self._send(request)
                except (OSError, EOFError) as err:
                    self._note(err)
                    raise CowsqlError(
                        f"call {desc} (budget {budget}): send: {err}"
                    ) from err
                try:
                    self._recv(response)
                except (OSError, EOFError) as err:
                    self._note(err)
                    raise CowsqlError(
                        f"call {desc} (budget {budget}): receive: {err}"
                    ) from err

    def more(self, response: Message) -> None:
        """Receive a further response for a request mapping to several."""
        try:
            self._recv(response)
        except (OSError, EOFError) as err:
            raise CowsqlError(f"receive: {err}") from err

    def interrupt(
        self, request: Message, response: Message, timeout: Optional[float] = None
    ) -> None:
        """Send an interrupt request and wait for the server's empty response."""
        with self._lock:
            with _timeout(self._conn, timeout):
                encode_interrupt(request, 0)
                try:
                    self._send(request)
                except (OSError, EOFError) as err:
                    raise CowsqlError(
                        f"failed to send interrupt request: {err}"
                    ) from err
                while True:
                    try:
                        self._recv(response)
                    except (OSError, EOFError) as err:
                        raise CowsqlError(f"failed to receive response: {err}") from err
                    mtype, _ = response.get_header()
                    if mtype == RESPONSE_EMPTY:
                        break

    def close(self) -> None:
        """Close the connection."""
        self.closed = True
        self._conn.close()

    def _note(self, err: BaseException) -> None:
        if isinstance(err, OSError):
            self._net_err = err

    def _send(self, request: Message) -> None:
        self._conn.sendall(request._wire_header())
        self._conn.sendall(request._wire_body())

    def _recv(self, response: Message) -> None:
        response.reset()
        size = response._load_header(self._read_exact(HEADER_SIZE))
        response._load_body(self._read_exact(size))

    def _read_exact(self, size: int) -> bytes:
        data = bytearray()
        while len(data) < size:
            chunk = self._conn.recv(size - len(data))
            if not chunk:
                raise EOFError("EOF")
            data += chunk
        return bytes(data)


def decode_node_compat(protocol: Protocol, response: Message) -> Tuple[int, str]:
    """Decode a Node response, also handling pre-1.0 legacy servers."""
    if protocol.version == VERSION_LEGACY:
        return 0, decode_node_legacy(response)
    return decode_node(response)