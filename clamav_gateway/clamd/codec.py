"""Encoding of commands and INSTREAM chunks sent to clamd.

See man clamd(8) for the wire format.

"""
import logging
import struct

from .types import ClamdException

logger = logging.getLogger(__name__)

# chunk payload bound, must also stay below StreamMaxLength in clamd.conf
MAX_CHUNK_SIZE = 64 * 1024
DEFAULT_CHUNK_SIZE = MAX_CHUNK_SIZE

# 4-byte unsigned integer in network byte order
CHUNK_HEADER = struct.Struct('!L')
EOF_CHUNK = CHUNK_HEADER.pack(0)


def cmd_specifier(cmd_terminator: bytes) -> bytes:
    """Get the prefix to put before a command.

    Its value is 'z' for null terminated commands or 'n' for newline
    terminated commands.  clamd terminates its replies the same way.

    :param cmd_terminator: Terminator of clamd commands
    :return: Command prefix
    """
    if cmd_terminator == b'\x00':
        return b'z'
    if cmd_terminator == b'\n':
        return b'n'
    raise ClamdException("Unknown command terminator, "
                         "\\x00 or \\n accepted. "
                         "Read man clamd(8) for details")


def encode_command(command: str, cmd_terminator: bytes = b'\n') -> bytes:
    """Encode a command line, including any inline argument.

    :param command: Command to encode, e.g. "SCAN /my/file.txt"
    :param cmd_terminator: Terminator of clamd commands
    :return: Bytes to put on the wire
    """
    return b''.join([
        cmd_specifier(cmd_terminator),
        command.encode(),
        cmd_terminator,
    ])


def send_command(conn, command: str, cmd_terminator: bytes = b'\n') -> None:
    """Send command to clamd in a single write.

    :param conn: Open clamd connection
    :param command: Command to execute, possible values in man clamd(8)
    :param cmd_terminator: Terminator of clamd commands
    """
    full_cmd = encode_command(command, cmd_terminator)
    logger.debug("Sending command: %s", full_cmd)
    conn.write(full_cmd)


def pack_chunk(data: bytes) -> bytes:
    """Pack data as an INSTREAM chunk: <length><data>.

    :param data: Chunk payload, 1 to MAX_CHUNK_SIZE bytes
    :return: Framed chunk
    """
    buflen = len(data)
    if buflen == 0:
        raise ValueError("Empty INSTREAM chunk, zero length is reserved "
                         "for end of stream")
    if buflen > MAX_CHUNK_SIZE:
        raise ValueError(f"INSTREAM chunk of {buflen} bytes exceeds "
                         f"{MAX_CHUNK_SIZE} bytes")
    return CHUNK_HEADER.pack(buflen) + bytes(data)


def send_chunk(conn, data: bytes) -> None:
    """Send one framed INSTREAM chunk.
    """
    conn.write(pack_chunk(data))


def send_eof(conn) -> None:
    """Send the zero-length chunk terminating an INSTREAM upload.
    """
    conn.write(EOF_CHUNK)
