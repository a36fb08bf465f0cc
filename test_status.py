"""
Tests for the status taxonomy and error mapping
"""

import asyncio
import ssl

import pytest

from netgrab.core.status import (
    ConnectionClosedError, ConnectionTimeoutError, NoMatchError, ScanError, ScanResponse,
    ScanStatus, TLSHandshakeError, try_get_scan_status,
)


@pytest.mark.parametrize("error, status", [
    (None, ScanStatus.SUCCESS),
    (ConnectionTimeoutError("slow"), ScanStatus.CONNECTION_TIMEOUT),
    (ConnectionClosedError("gone"), ScanStatus.CONNECTION_CLOSED),
    (NoMatchError(), ScanStatus.PROTOCOL_ERROR),
    (ScanError("app said no", ScanStatus.APPLICATION_ERROR), ScanStatus.APPLICATION_ERROR),
    (asyncio.TimeoutError(), ScanStatus.IO_TIMEOUT),
    (TimeoutError(), ScanStatus.IO_TIMEOUT),
    (ConnectionRefusedError(), ScanStatus.CONNECTION_REFUSED),
    (ConnectionResetError(), ScanStatus.CONNECTION_CLOSED),
    (BrokenPipeError(), ScanStatus.CONNECTION_CLOSED),
    (EOFError(), ScanStatus.CONNECTION_CLOSED),
    (ssl.SSLEOFError(), ScanStatus.CONNECTION_CLOSED),
    (ssl.SSLError(), ScanStatus.PROTOCOL_ERROR),
    (OSError("no route"), ScanStatus.UNKNOWN_ERROR),
    (RuntimeError("?"), ScanStatus.UNKNOWN_ERROR),
])
def test_try_get_scan_status(error, status):
    assert try_get_scan_status(error) == status


def test_status_values():
    assert ScanStatus.SUCCESS.value == "success"
    assert ScanStatus.SUCCESS_NOT_CONTAIN.value == "success-not-contain"
    assert ScanStatus("io-timeout") is ScanStatus.IO_TIMEOUT
    assert len(ScanStatus) == 9


def test_tls_handshake_error_takes_status_from_cause():
    cause = ConnectionRefusedError("refused")
    error = TLSHandshakeError(cause, log="partial")
    assert error.status == ScanStatus.CONNECTION_REFUSED
    assert error.cause is cause
    assert error.log == "partial"
    assert try_get_scan_status(error) == ScanStatus.CONNECTION_REFUSED


def test_no_match_message():
    assert str(NoMatchError()) == "pattern did not match"


def test_scan_response_unpacks():
    error = NoMatchError()
    status, result, err = ScanResponse(ScanStatus.PROTOCOL_ERROR, {"banner": "x"}, error)
    assert status == ScanStatus.PROTOCOL_ERROR
    assert result == {"banner": "x"}
    assert err is error

    response = ScanResponse(ScanStatus.SUCCESS_NOT_CONTAIN)
    assert response.result is None and response.error is None
    assert "success-not-contain" in repr(response)
