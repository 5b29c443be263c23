"""Decoding of clamd replies.

clamd answers a command with one or more records, terminated by newline
or NUL depending on the command prefix, and closes the connection when
done.  Records are decoded on a background thread and handed to the
caller through a ClamdResponse, a lazy single-pass sequence.

"""
import logging
import queue
import re
import threading

from .types import ClamdScanResult, ClamdScanStatus, ClamdTransportError

logger = logging.getLogger(__name__)

# Name(hash:size), as printed with ExtendedDetectionInfo enabled
extended_info_pattern = re.compile(
    r"^(?P<name>.+)\((?P<hash>[0-9A-Fa-f]+):(?P<size>\d+)\)$")

# trailing characters trimmed off every record
RECORD_TRIM = b" \t\r\n\x00"

# seconds a blocked producer waits before checking for abandonment
POLL_INTERVAL = 0.05

_END = object()


def parse_record(text: str) -> ClamdScanResult:
    """Classify a single clamd reply record.

    FOUND records are split on the last ": ", so that paths holding
    ": " are kept whole.  ERROR records are split on the first one
    instead: clamd error messages hold ": " themselves, as in
    "/nope: File path check failure: No such file or directory. ERROR",
    so a path holding ": " is cut at its first separator.  An ERROR
    record with no separator at all gets an empty path.

    :param text: Record text, without terminator
    :return: Structured record
    """
    if text.endswith("FOUND"):
        path, sep, rest = text[:-len("FOUND")].rpartition(": ")
        if not sep:
            return _parse_error(text, "Missing path in FOUND record")
        description = rest.strip()
        size, sig_hash = 0, ""
        m = extended_info_pattern.match(description)
        if m:
            description = m.group("name")
            sig_hash = m.group("hash")
            size = int(m.group("size"))
        return ClamdScanResult(raw_data=text,
                               status=ClamdScanStatus.FOUND,
                               path=path,
                               description=description,
                               size=size,
                               hash=sig_hash)

    if text.endswith("ERROR"):
        # error messages may hold ": " themselves, e.g.
        # "File path check failure: No such file or directory."
        path, sep, rest = text[:-len("ERROR")].partition(": ")
        if not sep:
            path, rest = "", path
        return ClamdScanResult(raw_data=text,
                               status=ClamdScanStatus.ERROR,
                               path=path,
                               description=rest.strip())

    if text == "OK" or text.endswith(": OK"):
        return ClamdScanResult(raw_data=text,
                               status=ClamdScanStatus.OK,
                               path=text[:-len(": OK")] if text != "OK" else "")

    if text.endswith(" OK"):
        return _parse_error(text, "Missing path in OK record")

    return ClamdScanResult(raw_data=text, status=ClamdScanStatus.UNSTRUCTURED)


def _parse_error(text: str, reason: str) -> ClamdScanResult:
    return ClamdScanResult(raw_data=text,
                           status=ClamdScanStatus.PARSE_ERROR,
                           description=reason)


def decode_record(raw: bytes, truncated: bool = False) -> ClamdScanResult | None:
    """Decode a raw record as received from clamd.

    :param raw: Record bytes, terminator excluded
    :param truncated: The peer closed before terminating the record
    :return: Structured record, None for blank records
    """
    raw = raw.rstrip(RECORD_TRIM)
    if not raw:
        return None
    try:
        text = raw.decode()
    except UnicodeDecodeError:
        return _parse_error(raw.decode(errors="replace"),
                            "Invalid UTF-8 in clamd response")
    if truncated:
        return _parse_error(text, "Truncated clamd response")
    return parse_record(text)


class ClamdResponse():
    """Lazy, single-pass sequence of records replied by clamd.

    Records come in the order clamd sent them.  Iterating raises
    ClamdTransportError if reading from clamd failed.  Once exhausted
    the sequence stays exhausted: issue the command again to get a new
    one.

    ``completed`` is set once the decoder has handed over its last
    record and will produce nothing more.  Call ``close()`` to abandon
    the remaining records.

    Usage:
    .. code-block:: python

        with clamd.scan_all("/my/dir", ClamdScanVariant.CONTSCAN) as results:
            for result in results:
                print(result.path, result.status)

    """
    def __init__(self, command: str = "", maxsize: int = 64):
        self.command = command
        self.completed = threading.Event()
        self._queue = queue.Queue(maxsize=maxsize)
        self._abandoned = threading.Event()
        self._exhausted = False

    def __iter__(self):
        return self

    def __next__(self) -> ClamdScanResult:
        if self._exhausted:
            raise StopIteration
        item = self._queue.get()
        if item is _END:
            self._exhausted = True
            raise StopIteration
        if isinstance(item, Exception):
            self._exhausted = True
            raise item
        return item

    def __enter__(self):
        return self

    def __exit__(self, *args, **kwargs):
        self.close()
        return False

    @property
    def abandoned(self) -> bool:
        return self._abandoned.is_set()

    def close(self) -> None:
        """Abandon the records not consumed yet.

        The decoder stops at the next record boundary.
        """
        self._abandoned.set()
        self._exhausted = True

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the decoder to finish.

        :return: True if the decoder finished within timeout
        """
        return self.completed.wait(timeout)

    def emit(self, item) -> bool:
        """Hand over an item to the consumer, blocking while the queue is
        full.

        :return: False if the sequence was abandoned meanwhile
        """
        while not self._abandoned.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def finish(self, error: Exception | None = None) -> None:
        """Terminate the sequence, optionally with an error, and signal
        completion.
        """
        if error is not None:
            self.emit(error)
        self.emit(_END)
        self.completed.set()


def split_records(conn, buffer_size: int):
    """Yield (raw record, truncated) pairs read from conn until clamd
    closes the connection.
    """
    pending = b''
    while True:
        data = conn.read(buffer_size)
        if not data:
            break
        # NUL terminates records of 'z' commands, multi-line replies
        # still separate lines with newline
        pending += data.replace(b'\x00', b'\n')
        *records, pending = pending.split(b'\n')
        for raw in records:
            yield raw, False
    if pending.strip(RECORD_TRIM):
        yield pending, True


def _decode(conn,
            response: ClamdResponse,
            buffer_size: int,
            end_marker: str | None,
            upload_error: Exception | None) -> None:
    error = None
    emitted = 0
    try:
        for raw, truncated in split_records(conn, buffer_size):
            record = decode_record(raw, truncated)
            if record is None:
                continue
            if not response.emit(record):
                break
            emitted += 1
            if end_marker is not None and record.raw_data == end_marker:
                break
        else:
            if emitted == 0 and upload_error is not None:
                error = ClamdTransportError(
                    f"clamd closed the connection during upload: "
                    f"{upload_error}")
                error.__cause__ = upload_error
    except ClamdTransportError as e:
        if not response.abandoned:
            logger.debug("Read of %s response failed: %s",
                         response.command, e)
        error = e
    except Exception as e:
        logger.exception("Unexpected failure decoding %s response",
                         response.command)
        error = e
    finally:
        response.finish(error)


def read_response(conn,
                  buffer_size: int = 2048,
                  end_marker: str | None = None,
                  upload_error: Exception | None = None,
                  command: str = "") -> ClamdResponse:
    """Start decoding the clamd reply on conn.

    :param conn: Open clamd connection, the command already sent
    :param buffer_size: Size of the buffer to read from clamd
    :param end_marker: Record that ends the reply before clamd closes
    :param upload_error: Write failure of a preceding upload, raised
        from iteration if clamd replied nothing
    :param command: Command name, for diagnostics
    :return: Sequence of reply records
    """
    response = ClamdResponse(command=command)
    thread = threading.Thread(
        target=_decode,
        args=(conn, response, buffer_size, end_marker, upload_error),
        name=f"clamd-decoder-{command or 'response'}",
        daemon=True,
    )
    thread.start()
    return response
