"""Client for clamd.

The daemon is reached at an address parsed once when the client is
built (see ``transport.parse_address``): a TCP socket for clamd on the
network or a Unix domain socket for clamd running locally.  Once
connection is established, the behaviour is the same.

Every command opens its own connection, which is closed in background
once the whole reply has been decoded.

"""
import logging
import threading
import time
import typing as t

from . import codec
from .decoder import ClamdResponse, read_response
from .transport import ClamdConnection, connect, parse_address
from .types import ClamdCancelled, \
    ClamdDecodeError, \
    ClamdEvent, \
    ClamdProtocolError, \
    ClamdScanResult, \
    ClamdScanStatus, \
    ClamdScanVariant, \
    ClamdStats, \
    ClamdTransportError

logger = logging.getLogger(__name__)

# seconds between checks of the INSTREAM cancel token
CANCEL_POLL_INTERVAL = 0.05


def _set_pools(stats: ClamdStats, raw: str) -> None:
    stats.pools = raw[len("POOLS:"):].strip()


def _setter(name: str) -> t.Callable[[ClamdStats, str], None]:
    def set_field(stats: ClamdStats, raw: str) -> None:
        setattr(stats, name, raw)
    return set_field


# STATS reply line prefix -> field setter
stats_fields: dict[str, t.Callable[[ClamdStats, str], None] | None] = {
    "POOLS": _set_pools,
    "STATE": _setter("state"),
    "THREADS": _setter("threads"),
    "QUEUE": _setter("queue"),
    "MEMSTATS": _setter("memstats"),
    "END": None,
}


def parse_stats(records: t.Iterable[ClamdScanResult]) -> ClamdStats:
    """Build a ClamdStats from the records of a STATS reply.

    Indented lines, like the per-job lines under QUEUE, are appended to
    the previous field.

    :param records: Records of the STATS reply
    :return: Structured stats
    :raises ClamdDecodeError: on a record matching no known field
    """
    stats = ClamdStats()
    last_field = None
    for record in records:
        raw = record.raw_data
        if raw[:1].isspace() and last_field is not None:
            setattr(stats, last_field,
                    getattr(stats, last_field) + "\n" + raw)
            continue

        prefix = raw.split(":", 1)[0].strip()
        if prefix not in stats_fields:
            raise ClamdDecodeError(f"Unknown response, got {raw!r}")
        setter = stats_fields[prefix]
        if setter is not None:
            setter(stats, raw)
            last_field = prefix.lower()
    return stats


class Clamd():
    """Client for clamd daemon.

    Usage:
    .. code-block:: python

        clamd = Clamd("unix:///var/run/clamd.sock")
        clamd.ping()
        with open("/my/file.txt", "rb") as f:
            for result in clamd.instream(f):
                print(result.status, result.virus)

    When using TCP, clamd should be running with 'TCPSocket <port>'
    configuration option in clamd.conf; with 'LocalSocket <path>' for
    Unix domain sockets (see man clamd.conf(5)).
    """
    def __init__(self,
                 address: str,
                 timeout: float | None = 300,  # seconds
                 cmd_terminator: bytes = b'\n',
                 buffer_size: int = 2048,
                 chunk_size: int = codec.DEFAULT_CHUNK_SIZE,
                 on_event: t.Callable[[ClamdEvent], None] | None = None):
        """Create clamd client instance.

        :param address: ``tcp://host:port``, ``unix:///path`` or a bare
            Unix socket path
        :param timeout: Timeout of the socket
        :param cmd_terminator: Terminator of clamd commands, b'\\n' or
            b'\\x00'
        :param buffer_size: Size of the buffer to read from clamd
        :param chunk_size: Size of the INSTREAM chunks
        :param on_event: Optional hook receiving ClamdEvent instances
        """
        # fail early on unknown terminator
        codec.cmd_specifier(cmd_terminator)
        if not 0 < chunk_size <= codec.MAX_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be between 1 and "
                             f"{codec.MAX_CHUNK_SIZE}")
        self.address = parse_address(address)
        self.timeout = timeout
        self.cmd_terminator = cmd_terminator
        self.buffer_size = buffer_size
        self.chunk_size = chunk_size
        self.on_event = on_event

    def ping(self) -> None:
        """Execute clamd PING command.

        Check the server's state. It should reply with "PONG".

        :raises ClamdProtocolError: if clamd did not reply PONG
        """
        records = list(self._simple_command("PING"))
        if len(records) != 1 or \
                records[0].status != ClamdScanStatus.UNSTRUCTURED or \
                records[0].raw_data != "PONG":
            raise ClamdProtocolError(f"Invalid response, got {records!r}")

    def version(self) -> ClamdScanResult:
        """Execute clamd VERSION command.

        Print program and database versions.
        """
        return self._single_record("VERSION")

    def stats(self) -> ClamdStats:
        """Execute clamd STATS command.

        Replies with statistics about the scan queue, contents of scan
        queue, and memory usage.
        """
        with self._simple_command("STATS", end_marker="END") as records:
            return parse_stats(records)

    def reload(self) -> None:
        """Execute clamd RELOAD command.

        Reload the virus databases.

        :raises ClamdProtocolError: if clamd did not reply RELOADING
        """
        record = self._single_record("RELOAD")
        if record.raw_data != "RELOADING":
            raise ClamdProtocolError(f"Invalid response, got {record!r}")

    def shutdown(self) -> None:
        """Execute clamd SHUTDOWN command.

        Perform a clean exit of the daemon. No reply is expected.
        """
        started = time.monotonic()
        conn = self._connect("SHUTDOWN", started)
        try:
            self._send_command(conn, "SHUTDOWN", started)
        finally:
            self._close(conn, "SHUTDOWN", started)

    def scan(self,
             filepath: str,
             variant: ClamdScanVariant = ClamdScanVariant.SCAN
             ) -> ClamdScanResult:
        """Scan a file or directory on the clamd host.

        Only the first record is returned: use ``scan_all`` to get every
        result of a multi-file scan.

        :param filepath: Path of the file to scan, a full path is required
        :param variant: Scanning command to use
        :return: First result of the scanning
        """
        with self.scan_all(filepath, variant) as results:
            record = next(results, None)
        if record is None:
            raise ClamdProtocolError(f"Empty response to {variant.value}")
        return record

    def rawscan(self, filepath: str) -> ClamdScanResult:
        """Scan with archive and special file support disabled.
        """
        return self.scan(filepath, ClamdScanVariant.RAWSCAN)

    def multiscan(self, filepath: str) -> ClamdScanResult:
        """Scan a directory using multiple threads.
        """
        return self.scan(filepath, ClamdScanVariant.MULTISCAN)

    def contscan(self, filepath: str) -> ClamdScanResult:
        """Scan without stopping when a virus is found.
        """
        return self.scan(filepath, ClamdScanVariant.CONTSCAN)

    def allmatchscan(self, filepath: str) -> ClamdScanResult:
        """Scan reporting every matching signature.
        """
        return self.scan(filepath, ClamdScanVariant.ALLMATCHSCAN)

    def scan_all(self,
                 filepath: str,
                 variant: ClamdScanVariant = ClamdScanVariant.SCAN
                 ) -> ClamdResponse:
        """Scan a file or directory on the clamd host.

        :param filepath: Path of the file or directory to scan
        :param variant: Scanning command to use
        :return: Sequence of results, one per file reported by clamd
        """
        return self._simple_command(f"{variant.value} {filepath}")

    def instream(self,
                 input_stream: t.IO[bytes],
                 cancel: threading.Event | None = None) -> ClamdResponse:
        """Execute clamd INSTREAM command.

        Scan a stream of data. The stream is sent to clamd in chunks,
        after INSTREAM, on the same socket on which the command was
        sent.  Do not exceed StreamMaxLength as defined in clamd.conf,
        otherwise clamd will reply with "INSTREAM size limit exceeded"
        and close the connection.

        :param input_stream: Input stream to analyze
        :param cancel: Event to set to abort the upload
        :return: Sequence of results
        :raises ClamdCancelled: if cancel was set during the upload
        """
        started = time.monotonic()
        conn = self._connect("INSTREAM", started)
        upload_done = threading.Event()
        upload_lock = threading.Lock()

        try:
            self._send_command(conn, "INSTREAM", started)
            if cancel is not None:
                threading.Thread(
                    target=self._watch_cancel,
                    args=(conn, cancel, upload_done, upload_lock, started),
                    name="clamd-cancel-watcher",
                    daemon=True,
                ).start()
            upload_error = self._upload(conn, input_stream, cancel, started)
            with upload_lock:
                upload_done.set()
                # the watcher closed the connection after the last write
                if conn.closed:
                    raise ClamdCancelled("INSTREAM upload cancelled")
        except ClamdTransportError as e:
            upload_done.set()
            self._close(conn, "INSTREAM", started)
            if cancel is not None and cancel.is_set():
                self._emit("cancelled", "INSTREAM", started)
                raise ClamdCancelled("INSTREAM upload cancelled") from e
            raise
        except BaseException as e:
            upload_done.set()
            self._close(conn, "INSTREAM", started)
            if isinstance(e, ClamdCancelled):
                self._emit("cancelled", "INSTREAM", started)
            raise

        response = read_response(conn,
                                 buffer_size=self.buffer_size,
                                 upload_error=upload_error,
                                 command="INSTREAM")
        self._close_when_completed(conn, response, started)
        return response

    def _upload(self,
                conn: ClamdConnection,
                input_stream: t.IO[bytes],
                cancel: threading.Event | None,
                started: float) -> ClamdTransportError | None:
        """Send input_stream in chunks, followed by the end of stream.

        :return: Write error that interrupted the upload, if any
        """
        sent = chunks = 0
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise ClamdCancelled("INSTREAM upload cancelled")
                buf = input_stream.read(self.chunk_size)
                if not buf:
                    break
                codec.send_chunk(conn, buf)
                sent += len(buf)
                chunks += 1

            # send an empty chunk to signal that we are finished
            codec.send_eof(conn)
        except ClamdTransportError as e:
            if cancel is not None and cancel.is_set():
                raise
            # clamd may have replied before closing, e.g. when
            # StreamMaxLength is exceeded
            logger.warning("INSTREAM upload interrupted after %d bytes: %s",
                           sent, e)
            return e

        self._emit("upload_finished", "INSTREAM", started,
                   bytes=sent, chunks=chunks)
        return None

    def _watch_cancel(self,
                      conn: ClamdConnection,
                      cancel: threading.Event,
                      upload_done: threading.Event,
                      upload_lock: threading.Lock,
                      started: float) -> None:
        while not upload_done.is_set():
            if cancel.wait(CANCEL_POLL_INTERVAL):
                with upload_lock:
                    if not upload_done.is_set():
                        # unblocks a pending write of the upload loop
                        self._close(conn, "INSTREAM", started)
                return

    def _single_record(self, command: str) -> ClamdScanResult:
        """Send command and return its only reply record.
        """
        records = list(self._simple_command(command))
        if not records:
            raise ClamdProtocolError(f"Empty response to {command}")
        if records[0].status == ClamdScanStatus.PARSE_ERROR:
            raise ClamdDecodeError(
                f"Unable to parse response to {command}, got "
                f"{records[0].raw_data!r}")
        return records[0]

    def _simple_command(self,
                        command: str,
                        end_marker: str | None = None) -> ClamdResponse:
        """Send command to clamd and start reading the response.

        :param command: Command to execute, possible values in man clamd(8)
        :param end_marker: Record ending the response
        :return: clamd response records
        """
        started = time.monotonic()
        conn = self._connect(command, started)
        try:
            self._send_command(conn, command, started)
        except BaseException:
            self._close(conn, command, started)
            raise
        response = read_response(conn,
                                 buffer_size=self.buffer_size,
                                 end_marker=end_marker,
                                 command=command.split(" ", 1)[0])
        self._close_when_completed(conn, response, started)
        return response

    def _connect(self, command: str, started: float) -> ClamdConnection:
        conn = connect(self.address, self.timeout)
        self._emit("connected", command, started, address=str(self.address))
        return conn

    def _send_command(self,
                      conn: ClamdConnection,
                      command: str,
                      started: float) -> None:
        codec.send_command(conn, command, self.cmd_terminator)
        self._emit("command_sent", command, started)

    def _close_when_completed(self,
                              conn: ClamdConnection,
                              response: ClamdResponse,
                              started: float) -> None:
        """Close conn in background once response is completely decoded.
        """
        def close_after_completion():
            response.completed.wait()
            self._emit("response_completed", response.command, started)
            self._close(conn, response.command, started)

        threading.Thread(target=close_after_completion,
                         name=f"clamd-closer-{response.command}",
                         daemon=True).start()

    def _close(self,
               conn: ClamdConnection,
               command: str,
               started: float) -> None:
        """Close conn, reporting failures to logs only: the result of
        the operation is already determined.
        """
        if conn.closed:
            return
        try:
            conn.close()
        except ClamdTransportError as e:
            logger.warning("Failed to close connection after %s: %s",
                           command, e)
            self._emit("close_failed", command, started, error=str(e))
        else:
            self._emit("connection_closed", command, started)

    def _emit(self,
              name: str,
              command: str,
              started: float,
              **detail) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(ClamdEvent(name=name,
                                     command=command,
                                     elapsed=time.monotonic() - started,
                                     detail=detail))
        except Exception:
            logger.exception("clamd event hook failed on %s", name)
