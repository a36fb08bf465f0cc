"""
Scan status taxonomy and error types shared by every scan module
"""

import asyncio
import ssl
from enum import Enum
from typing import Any, Iterator, Optional


class ScanStatus(Enum):
    """Outcome of a single scan"""
    SUCCESS = "success"
    SUCCESS_NOT_CONTAIN = "success-not-contain"  # completed, filter not met
    CONNECTION_REFUSED = "connection-refused"
    CONNECTION_TIMEOUT = "connection-timeout"
    CONNECTION_CLOSED = "connection-closed"
    IO_TIMEOUT = "io-timeout"
    PROTOCOL_ERROR = "protocol-error"
    APPLICATION_ERROR = "application-error"
    UNKNOWN_ERROR = "unknown-error"


class ScanError(Exception):
    """Error raised during a scan that already knows its status"""

    status = ScanStatus.UNKNOWN_ERROR

    def __init__(self, message: str = "", status: Optional[ScanStatus] = None):
        super().__init__(message)
        if status is not None:
            self.status = status


class ConnectionTimeoutError(ScanError):
    status = ScanStatus.CONNECTION_TIMEOUT


class ConnectionClosedError(ScanError):
    status = ScanStatus.CONNECTION_CLOSED


class ConnectFailedError(ScanError):
    """The connection could not be established: unresolvable or unreachable host"""
    status = ScanStatus.CONNECTION_REFUSED


class InvalidServerNameError(ScanError):
    """The name to send in SNI is not a valid hostname"""
    status = ScanStatus.APPLICATION_ERROR


class NoMatchError(ScanError):
    status = ScanStatus.PROTOCOL_ERROR

    def __init__(self, message: str = "pattern did not match"):
        super().__init__(message)


class TLSHandshakeError(ScanError):
    """
    TLS handshake failure.

    Keeps whatever the handshake log captured before the failure, and takes
    its status from the underlying error.
    """

    def __init__(self, cause: BaseException, log: Any = None):
        super().__init__(f"TLS handshake failed: {cause}", try_get_scan_status(cause))
        self.cause = cause
        self.log = log


class ConfigurationError(Exception):
    """Invalid module configuration, detected before any scan runs"""


class MismatchedFlagsError(ConfigurationError):
    def __init__(self, message: str = "mismatched flags: flags were not created by this module"):
        super().__init__(message)


# Errors a scan is expected to absorb and report as a status
NETWORK_ERRORS = (OSError, EOFError, asyncio.TimeoutError, ScanError)


def try_get_scan_status(err: Optional[BaseException]) -> ScanStatus:
    """Map any error to exactly one scan status"""
    if err is None:
        return ScanStatus.SUCCESS
    if isinstance(err, ScanError):
        return err.status
    if isinstance(err, (asyncio.TimeoutError, TimeoutError)):
        return ScanStatus.IO_TIMEOUT
    if isinstance(err, ConnectionRefusedError):
        return ScanStatus.CONNECTION_REFUSED
    if isinstance(err, (ssl.SSLEOFError, ssl.SSLZeroReturnError, ConnectionResetError,
                        ConnectionAbortedError, BrokenPipeError, EOFError)):
        return ScanStatus.CONNECTION_CLOSED
    if isinstance(err, ssl.SSLError):
        return ScanStatus.PROTOCOL_ERROR
    return ScanStatus.UNKNOWN_ERROR


class ScanResponse:
    """
    What a scanner hands back for one target.

    Status, result and error are independent: a failed TLS scan may carry
    both an error and a partial handshake log. Unpacks like a tuple.
    """

    __slots__ = ("status", "result", "error")

    def __init__(self, status: ScanStatus, result: Any = None,
                 error: Optional[BaseException] = None):
        self.status = status
        self.result = result
        self.error = error

    def __iter__(self) -> Iterator[Any]:
        return iter((self.status, self.result, self.error))

    def __repr__(self) -> str:
        return f"ScanResponse(status={self.status.value!r}, result={self.result!r}, error={self.error!r})"
