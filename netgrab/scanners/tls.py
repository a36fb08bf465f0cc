"""
TLS Scanner Module
Performs a TLS handshake and optionally keeps only hosts whose leaf or
chain certificate matches a configured fingerprint
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional, Tuple

from netgrab.core.module import BaseFlags, ScanModule, Scanner, flag
from netgrab.core.status import (
    MismatchedFlagsError, NETWORK_ERRORS, ScanResponse, ScanStatus,
    TLSHandshakeError, try_get_scan_status,
)
from netgrab.core.target import ScanTarget
from netgrab.core.tls import Certificate, ParsedCertificate, TLSFlags, TLSLog

logger = logging.getLogger(__name__)

FingerprintGetter = Callable[[ParsedCertificate], str]


@dataclass
class TLSScanFlags(BaseFlags, TLSFlags):
    """Command-line flags for the tls module"""
    filter_md5: str = flag("", "filter-md5", "Keep only results with this MD5 certificate fingerprint (hex)")
    filter_sha1: str = flag("", "filter-sha1", "Keep only results with this SHA1 certificate fingerprint (hex)")
    filter_sha256: str = flag("", "filter-sha256", "Keep only results with this SHA256 certificate fingerprint (hex)")
    filter_serial: str = flag("", "filter-serialnumber", "Keep only results with this certificate serial number (decimal)")

    def fingerprint_filter(self) -> Optional[Tuple[str, FingerprintGetter, str]]:
        """The single filter in effect, in priority order MD5, SHA1, SHA256, serial"""
        filters = (
            ("md5", lambda p: p.fingerprint_md5.hex(), self.filter_md5),
            ("sha1", lambda p: p.fingerprint_sha1.hex(), self.filter_sha1),
            ("sha256", lambda p: p.fingerprint_sha256.hex(), self.filter_sha256),
            ("serial", lambda p: str(p.serial_number), self.filter_serial),
        )
        for name, getter, wanted in filters:
            if wanted:
                return name, getter, wanted
        return None

    def needs_certificate_chain(self) -> bool:
        return self.fingerprint_filter() is not None

    def help(self) -> str:
        return (
            "Fingerprints are compared as lowercase hex without separators and "
            "serial numbers as full decimal. Only the first set filter applies, "
            "in the order MD5, SHA1, SHA256, serial."
        )


def _certificates(log: TLSLog) -> Iterator[Certificate]:
    """Leaf first, then the chain in the order the server sent it"""
    certs = log.handshake_log.server_certificates
    if certs is None:
        return
    if certs.certificate is not None:
        yield certs.certificate
    yield from certs.chain


class TLSScanner(Scanner):
    """Scanner for the tls module"""

    def __init__(self):
        self.config: Optional[TLSScanFlags] = None

    def init(self, flags: Any) -> None:
        if not isinstance(flags, TLSScanFlags):
            raise MismatchedFlagsError()
        flags.tls_context  # build now so bad TLS options fail at start-up
        self.config = flags

    def get_name(self) -> str:
        return self.config.name

    def get_trigger(self) -> str:
        return self.config.trigger

    def protocol(self) -> str:
        return "tls"

    def matches_filter(self, log: TLSLog) -> bool:
        """True when no filter is set, or when the leaf or a chain certificate matches it"""
        active = self.config.fingerprint_filter()
        if active is None:
            return True
        name, getter, wanted = active
        for cert in _certificates(log):
            if cert.parsed is not None and getter(cert.parsed) == wanted:
                logger.debug(f"Certificate {cert.parsed.subject_dn} matched {name} filter")
                return True
        return False

    async def scan(self, target: ScanTarget) -> ScanResponse:
        """
        Handshake with the target and return the handshake log.

        A handshake that fails after the ServerHello still counts as TLS
        detection: the error status is returned together with the partial log.
        """
        try:
            conn = await target.open_tls(self.config, self.config)
        except TLSHandshakeError as e:
            if e.log is not None and e.log.handshake_log.server_hello is not None:
                return ScanResponse(e.status, e.log, e)
            return ScanResponse(e.status, None, e)
        except NETWORK_ERRORS as e:
            logger.debug(f"TLS connect to {target} failed: {e}")
            return ScanResponse(try_get_scan_status(e), None, e)

        try:
            log = conn.get_log()
        finally:
            await conn.close()

        if self.matches_filter(log):
            return ScanResponse(ScanStatus.SUCCESS, log)
        return ScanResponse(ScanStatus.SUCCESS_NOT_CONTAIN)


class TLSModule(ScanModule):
    """Implementation of the tls scan module"""

    def new_flags(self) -> TLSScanFlags:
        return TLSScanFlags()

    def new_scanner(self) -> TLSScanner:
        return TLSScanner()

    def description(self) -> str:
        return "Perform a TLS handshake"


def register(registry) -> None:
    registry.add_command("tls", "TLS Banner Grab", TLSModule().description(), 443, TLSModule())
