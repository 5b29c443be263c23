"""Socket transport to clamd.

Two shapes of connection are supported:
 - Unix domain socket, for clamav daemon running locally
 - TCP socket, for clamav daemon on the network

Which one is used is decided by the address string:
 - ``tcp://host:port``
 - ``unix:///path/to/clamd.sock``
 - anything else is taken literally as a Unix socket path

Once connection is established, the behaviour is the same.

"""
import contextlib
import logging
import socket
import threading
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlsplit

from .types import ClamdAddressError, ClamdTransportError

logger = logging.getLogger(__name__)


class AddressKind(Enum):
    TCP = "tcp"
    UNIX = "unix"


@dataclass(frozen=True)
class ClamdAddress():
    """Endpoint of a clamd daemon.
    """
    kind: AddressKind
    host: str | None = None
    port: int | None = None
    path: str | None = None

    def __str__(self):
        if self.kind == AddressKind.TCP:
            host = f"[{self.host}]" if ":" in self.host else self.host
            return f"tcp://{host}:{self.port}"
        return f"unix://{self.path}"


def parse_address(address: str) -> ClamdAddress:
    """Parse a clamd address string.

    :param address: ``tcp://host:port``, ``unix:///path`` or a bare path
    :return: Parsed address
    :raises ClamdAddressError: if the address is empty or malformed
    """
    if not address or not address.strip():
        raise ClamdAddressError("Empty clamd address")

    try:
        url = urlsplit(address)
        if url.scheme == "tcp":
            host = url.hostname
            # port raises ValueError when not numeric or out of range
            port = url.port
            if not host or port is None:
                raise ValueError("host and port are required")
            return ClamdAddress(kind=AddressKind.TCP, host=host, port=port)
    except ValueError as e:
        raise ClamdAddressError(
            f"Invalid clamd address {address!r}: {e}") from e

    if url.scheme == "unix":
        path = url.netloc + url.path
        if not path:
            raise ClamdAddressError(
                f"Invalid clamd address {address!r}: socket path is required")
        return ClamdAddress(kind=AddressKind.UNIX, path=path)

    # permissive default: a bare string is a socket path
    return ClamdAddress(kind=AddressKind.UNIX, path=address)


class ClamdConnection():
    """Byte stream to clamd, used for one command/response exchange.
    """
    def __init__(self, sock: socket.socket, address: ClamdAddress):
        self._sock = sock
        self.address = address
        self._close_lock = threading.Lock()
        self._closed = False
        self._close_error: ClamdTransportError | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        """Write all the data to clamd.

        :param data: Bytes to send
        :raises ClamdTransportError: on socket failure
        """
        try:
            self._sock.sendall(data)
        except OSError as e:
            raise ClamdTransportError(
                f"Error writing to clamd at {self.address}: {e}") from e

    def read(self, size: int) -> bytes:
        """Read up to size bytes from clamd.

        :param size: Maximum number of bytes to read
        :return: Data read, empty when clamd closed the connection
        :raises ClamdTransportError: on socket failure
        """
        try:
            return self._sock.recv(size)
        except OSError as e:
            raise ClamdTransportError(
                f"Error reading from clamd at {self.address}: {e}") from e

    def close(self) -> None:
        """Close the connection.

        Safe to call more than once and from different threads: only the
        first call closes the socket, later calls re-raise its error if
        any.

        :raises ClamdTransportError: if closing the socket failed
        """
        with self._close_lock:
            if not self._closed:
                self._closed = True
                # wake up any thread blocked on the socket, the peer may
                # already be gone
                with contextlib.suppress(OSError):
                    self._sock.shutdown(socket.SHUT_RDWR)
                try:
                    self._sock.close()
                except OSError as e:
                    self._close_error = ClamdTransportError(
                        f"Error closing connection to clamd at "
                        f"{self.address}: {e}")
                    self._close_error.__cause__ = e
                logger.debug("Closed connection to %s", self.address)

            if self._close_error is not None:
                raise self._close_error


def connect(address: ClamdAddress,
            timeout: float | None = None) -> ClamdConnection:
    """Open a connection to clamd.

    :param address: Address of the daemon
    :param timeout: Timeout of the socket in seconds
    :return: Open connection
    :raises ClamdTransportError: if the daemon cannot be reached
    """
    try:
        if address.kind == AddressKind.TCP:
            sock = socket.create_connection((address.host, address.port),
                                            timeout=timeout)
        else:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(address.path)
            except OSError:
                sock.close()
                raise
    except FileNotFoundError as e:
        raise ClamdTransportError("clamd unix socket not found at " +
                                  address.path +
                                  ". Is the clamd daemon running?") from e
    except OSError as e:
        raise ClamdTransportError(
            f"Error connecting to clamd at {address}: {e}") from e

    logger.debug("Connected to clamd at %s", address)
    return ClamdConnection(sock, address)
