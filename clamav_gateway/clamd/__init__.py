"""Python bindings for clamd daemon on Unix or TCP socket.

For details about commands, see man clamd(8).

Usage:
.. code-block:: python

    clamd = Clamd("tcp://localhost:3310")
    scan = clamd.scan("/my/file.txt")

A new connection is opened each time you run a command, and closed in
background once the reply has been fully read.  Replies come as lazy
sequences of records:
.. code-block:: python

    clamd = Clamd("unix:///var/run/clamd.sock")
    with open("/my/file.txt", "rb") as f:
        for result in clamd.instream(f):
            print(result.status, result.virus)

NOTE: clamd sessions (IDSESSION) are not implemented.

"""

from .types import EICAR, ClamdScanStatus, ClamdScanResult, \
    ClamdScanVariant, ClamdStats, ClamdEvent, ClamdException, \
    ClamdAddressError, ClamdTransportError, ClamdProtocolError, \
    ClamdDecodeError, ClamdCancelled  # noqa
from .transport import ClamdAddress, AddressKind, parse_address  # noqa
from .decoder import ClamdResponse, parse_record  # noqa
from .client import Clamd  # noqa
