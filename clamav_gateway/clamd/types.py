"""Types for clamd communication.

"""
from dataclasses import dataclass, field
from enum import Enum
import typing as t

# EICAR test signature, detected by every antivirus as a harmless virus
EICAR = br"X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*"


class ClamdException(Exception):
    """Raised when error occurred communicating with the clamd daemon.
    """


class ClamdAddressError(ClamdException):
    """Raised when a clamd address string cannot be parsed.
    """


class ClamdTransportError(ClamdException):
    """Raised on connect, read or write failures on the clamd socket.

    This includes the daemon closing the connection mid-operation.
    """


class ClamdProtocolError(ClamdException):
    """Raised when clamd replies with an unexpected shape for a command.

    For example PING not answered with PONG.
    """


class ClamdDecodeError(ClamdProtocolError):
    """Raised when a reply record cannot be classified where a well
    defined result is required (STATS fields, single record commands).
    """


class ClamdCancelled(ClamdException):
    """Raised when an INSTREAM upload was cancelled by the caller.
    """


class ClamdScanStatus(Enum):
    """Status of a clamd reply record.
    """
    OK = "OK"
    FOUND = "FOUND"
    ERROR = "ERROR"
    # this is not an error returned by clamd, but reflects our
    # inability to parse the clamd response correctly
    PARSE_ERROR = "PARSE_ERROR"
    # records outside the scan result grammar: PONG, RELOADING,
    # version string, STATS lines
    UNSTRUCTURED = "UNSTRUCTURED"


class ClamdScanVariant(Enum):
    """clamd commands scanning a path on the daemon host.

    See man clamd(8) for the differences.
    """
    SCAN = "SCAN"
    RAWSCAN = "RAWSCAN"
    MULTISCAN = "MULTISCAN"
    CONTSCAN = "CONTSCAN"
    ALLMATCHSCAN = "ALLMATCHSCAN"


@dataclass
class ClamdScanResult():
    """One decoded record of a clamd reply.
    """
    raw_data: str
    status: ClamdScanStatus
    path: str = ""
    # signature name for FOUND, message for ERROR
    description: str = ""
    # only with ExtendedDetectionInfo enabled in clamd.conf
    size: int = 0
    hash: str = ""

    def __str__(self):
        return self.raw_data

    @property
    def virus(self) -> str | None:
        if self.status == ClamdScanStatus.FOUND:
            return self.description
        return None

    @property
    def err_msg(self) -> str | None:
        if self.status == ClamdScanStatus.ERROR:
            return self.description
        if self.status == ClamdScanStatus.PARSE_ERROR:
            return "Unable to parse clamd response"
        return None


@dataclass
class ClamdStats():
    """Reply of the clamd STATS command.

    The exact reply format is subject to changes in future clamd
    releases, fields are kept as text.
    """
    pools: str = ""
    state: str = ""
    threads: str = ""
    memstats: str = ""
    queue: str = ""

    def as_dict(self) -> dict[str, str]:
        return {
            "pools": self.pools,
            "state": self.state,
            "threads": self.threads,
            "memstats": self.memstats,
            "queue": self.queue,
        }


@dataclass
class ClamdEvent():
    """Event emitted to the optional observability hook of the client.
    """
    name: str
    command: str
    # seconds since the operation started
    elapsed: float
    detail: dict[str, t.Any] = field(default_factory=dict)
