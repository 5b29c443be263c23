import os
import shutil
import socket
import struct
import tempfile
import threading
import time

import pytest

from clamav_gateway import app
from clamav_gateway.clamd import EICAR, ClamdTransportError

STATS_REPLY = [
    "POOLS: 1",
    "",
    "STATE: VALID PRIMARY",
    "THREADS: live 1  idle 0 max 10 idle-timeout 30",
    "QUEUE: 0 items",
    "\tSTATS 0.000071",
    "",
    "MEMSTATS: heap N/A mmap N/A used N/A free N/A releasable N/A",
    "END",
]


class FakeSession():
    """What the fake daemon received on one connection.
    """
    def __init__(self):
        self.prefix = None
        self.command = None
        self.chunk_sizes = []
        self.payload = b""
        self.aborted = False

    @property
    def word(self):
        return (self.command or "").split(" ", 1)[0]


def _default_reply(session):
    word = session.word
    if word == "PING":
        return ["PONG"]
    if word == "VERSION":
        return ["ClamAV 1.4.2/27520/Mon Jan 13 09:35:23 2025"]
    if word == "STATS":
        return STATS_REPLY
    if word == "RELOAD":
        return ["RELOADING"]
    if word == "SHUTDOWN":
        return None
    if word == "INSTREAM":
        if EICAR in session.payload:
            return ["stream: Win.Test.EICAR_HDB-1 FOUND"]
        return ["stream: OK"]
    if word in ("SCAN", "RAWSCAN", "MULTISCAN", "CONTSCAN", "ALLMATCHSCAN"):
        path = session.command.split(" ", 1)[1]
        return [f"{path}: OK"]
    return [f"{session.command}: Unknown command ERROR"]


class FakeClamd():
    """Minimal clamd daemon speaking the n/z command prefixes and the
    INSTREAM chunk framing.

    Set ``replies[COMMAND]`` to a list of lines, or a callable taking the
    FakeSession, to change what it answers.
    """
    def __init__(self, family):
        self.replies = {}
        self.sessions = []
        self._cond = threading.Condition()
        self._tmpdir = None
        if family == socket.AF_UNIX:
            # keep the path short, AF_UNIX paths are limited to ~108 bytes
            self._tmpdir = tempfile.mkdtemp(prefix="clamd")
            path = os.path.join(self._tmpdir, "clamd.sock")
            self._server = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            self._server.bind(path)
            self.address = f"unix://{path}"
            self.path = path
        else:
            self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            self._server.bind(("127.0.0.1", 0))
            self.address = "tcp://127.0.0.1:%d" % self._server.getsockname()[1]
        self._server.listen(16)
        self._server.settimeout(0.1)
        self._running = True
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def stop(self):
        self._running = False
        self._thread.join(timeout=5)
        self._server.close()
        if self._tmpdir:
            shutil.rmtree(self._tmpdir, ignore_errors=True)

    def wait_sessions(self, count, timeout=5.0):
        with self._cond:
            self._cond.wait_for(lambda: len(self.sessions) >= count,
                                timeout=timeout)
            return list(self.sessions)

    def _serve(self):
        while self._running:
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            threading.Thread(target=self._handle, args=(conn,),
                             daemon=True).start()

    def _handle(self, conn):
        session = FakeSession()
        conn.settimeout(5)
        rfile = conn.makefile("rb")
        try:
            if self._read_command(rfile, session) and \
                    (session.word != "INSTREAM" or
                     self._read_stream(rfile, session)):
                reply = self._reply(session)
                if reply:
                    conn.sendall(reply)
        except OSError:
            session.aborted = True
        finally:
            rfile.close()
            conn.close()
        with self._cond:
            self.sessions.append(session)
            self._cond.notify_all()

    def _read_command(self, rfile, session):
        session.prefix = rfile.read(1)
        terminator = b"\x00" if session.prefix == b"z" else b"\n"
        data = b""
        while True:
            c = rfile.read(1)
            if not c:
                session.aborted = True
                return False
            if c == terminator:
                break
            data += c
        session.command = data.decode()
        return True

    def _read_stream(self, rfile, session):
        while True:
            header = rfile.read(4)
            if len(header) < 4:
                session.aborted = True
                return False
            (length,) = struct.unpack("!L", header)
            session.chunk_sizes.append(length)
            if length == 0:
                return True
            data = rfile.read(length)
            if len(data) < length:
                session.aborted = True
                return False
            session.payload += data

    def _reply(self, session):
        reply = self.replies.get(session.word, _default_reply)
        lines = reply(session) if callable(reply) else reply
        if lines is None:
            return None
        if session.prefix == b"z":
            return ("\n".join(lines) + "\x00").encode()
        return "".join(line + "\n" for line in lines).encode()


class FakeConnection():
    """In-memory stand-in for a ClamdConnection.

    :param chunks: data returned by successive reads, then EOF
    :param read_error: raised by read once chunks are consumed
    :param fail_writes_after: number of writes accepted before failing
    :param block_writes: writes block until the connection is closed
    :param read_delay: seconds to sleep in each read
    """
    def __init__(self,
                 chunks=(),
                 read_error=None,
                 fail_writes_after=None,
                 block_writes=False,
                 read_delay=0.0,
                 close_error=None):
        self.chunks = list(chunks)
        self.read_error = read_error
        self.fail_writes_after = fail_writes_after
        self.block_writes = block_writes
        self.read_delay = read_delay
        self.close_error = close_error
        self.written = []
        self.reads = 0
        self.eof_seen = False
        self.close_calls = 0
        self.on_close = None
        self._closed = threading.Event()

    @property
    def closed(self):
        return self._closed.is_set()

    def write(self, data):
        if self.block_writes and self.written:
            self._closed.wait(5)
        if self.closed:
            raise ClamdTransportError("Error writing to clamd: closed")
        if self.fail_writes_after is not None and \
                len(self.written) >= self.fail_writes_after:
            raise ClamdTransportError("Error writing to clamd: Broken pipe")
        self.written.append(bytes(data))

    def read(self, size):
        if self.read_delay:
            time.sleep(self.read_delay)
        self.reads += 1
        if self.chunks:
            return self.chunks.pop(0)
        if self.read_error is not None:
            raise self.read_error
        self.eof_seen = True
        return b""

    def close(self):
        self.close_calls += 1
        if not self.closed:
            if self.on_close is not None:
                self.on_close(self)
            self._closed.set()
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture()
def fake_clamd():
    server = FakeClamd(socket.AF_UNIX)
    yield server
    server.stop()


@pytest.fixture(params=["unix", "tcp"])
def any_fake_clamd(request):
    family = socket.AF_UNIX if request.param == "unix" else socket.AF_INET
    server = FakeClamd(family)
    yield server
    server.stop()


@pytest.fixture()
def fake_connection():
    """Patch the client to connect to a FakeConnection, built from the
    keyword arguments given to the returned function.
    """
    def install(monkeypatch, **kwargs):
        conn = FakeConnection(**kwargs)
        monkeypatch.setattr("clamav_gateway.clamd.client.connect",
                            lambda address, timeout=None: conn)
        return conn
    return install


@pytest.fixture()
def test_app(fake_clamd):
    app.config.update({
        "TESTING": True,
        "CLAMD_ADDRESS": fake_clamd.address,
    })

    yield app

    app.config.pop("CLAMD_ADDRESS", None)


@pytest.fixture()
def client(test_app):
    return test_app.test_client()


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture()
def eventually():
    return wait_until
