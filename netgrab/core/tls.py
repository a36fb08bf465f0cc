"""
TLS client layer
Drives the handshake over an asyncio connection and records the handshake
log as the server's messages arrive, so a failed handshake still reports
what the server said
"""

import base64
import logging
import ssl
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property
from typing import Any, Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from netgrab.core.module import flag
from netgrab.core.status import ConfigurationError, ConnectionClosedError, InvalidServerNameError

logger = logging.getLogger(__name__)

READ_CHUNK = 4096

# TLS record content types
CONTENT_ALERT = 21
CONTENT_HANDSHAKE = 22

# Handshake message types
HANDSHAKE_SERVER_HELLO = 2
HANDSHAKE_CERTIFICATE = 11
HANDSHAKE_SERVER_HELLO_DONE = 14

EXTENSION_SUPPORTED_VERSIONS = 43

VERSION_NAMES = {
    0x0300: "SSLv3",
    0x0301: "TLSv1.0",
    0x0302: "TLSv1.1",
    0x0303: "TLSv1.2",
    0x0304: "TLSv1.3",
}

TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.0": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}

# Python 3.13+; before that only the leaf of a TLS 1.3 handshake is reachable
HAS_UNVERIFIED_CHAIN = hasattr(ssl.SSLObject, "get_unverified_chain")


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _version_dict(value: int) -> Dict[str, Any]:
    return {"name": VERSION_NAMES.get(value, f"0x{value:04x}"), "value": value}


@dataclass
class ServerHello:
    """Fields of the server's ServerHello message"""
    version: int
    random: bytes
    session_id: bytes
    cipher_suite: int
    compression_method: int
    selected_version: Optional[int] = None  # from the supported_versions extension

    def to_dict(self) -> Dict[str, Any]:
        out = {
            "version": _version_dict(self.version),
            "random": _b64(self.random),
            "cipher_suite": {"hex": f"0x{self.cipher_suite:04X}", "value": self.cipher_suite},
            "compression_method": self.compression_method,
        }
        if self.session_id:
            out["session_id"] = _b64(self.session_id)
        if self.selected_version is not None:
            out["supported_versions"] = {"selected_version": _version_dict(self.selected_version)}
        return out


@dataclass
class ParsedCertificate:
    subject_dn: str
    issuer_dn: str
    serial_number: int
    not_before: datetime
    not_after: datetime
    fingerprint_md5: bytes
    fingerprint_sha1: bytes
    fingerprint_sha256: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subject_dn": self.subject_dn,
            "issuer_dn": self.issuer_dn,
            "serial_number": str(self.serial_number),
            "validity": {
                "start": self.not_before.isoformat(),
                "end": self.not_after.isoformat(),
            },
            "fingerprint_md5": self.fingerprint_md5.hex(),
            "fingerprint_sha1": self.fingerprint_sha1.hex(),
            "fingerprint_sha256": self.fingerprint_sha256.hex(),
        }


@dataclass
class Certificate:
    raw: bytes
    parsed: Optional[ParsedCertificate] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"raw": _b64(self.raw)}
        if self.parsed is not None:
            out["parsed"] = self.parsed.to_dict()
        return out


@dataclass
class ServerCertificates:
    certificate: Optional[Certificate] = None  # leaf
    chain: List[Certificate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.certificate is not None:
            out["certificate"] = self.certificate.to_dict()
        if self.chain:
            out["chain"] = [cert.to_dict() for cert in self.chain]
        return out


@dataclass
class HandshakeLog:
    server_hello: Optional[ServerHello] = None
    server_certificates: Optional[ServerCertificates] = None
    version: str = ""       # negotiated, set once the handshake completes
    cipher_suite: str = ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.server_hello is not None:
            out["server_hello"] = self.server_hello.to_dict()
        if self.server_certificates is not None:
            out["server_certificates"] = self.server_certificates.to_dict()
        if self.version:
            out["version"] = self.version
        if self.cipher_suite:
            out["cipher_suite"] = self.cipher_suite
        return out


@dataclass
class TLSLog:
    handshake_log: HandshakeLog = field(default_factory=HandshakeLog)

    def to_dict(self) -> Dict[str, Any]:
        return {"handshake_log": self.handshake_log.to_dict()}


def parse_certificate(der: bytes) -> Certificate:
    """Parse a DER certificate; unparsable certificates keep only the raw bytes"""
    try:
        cert = x509.load_der_x509_certificate(der)
        parsed = ParsedCertificate(
            subject_dn=cert.subject.rfc4514_string(),
            issuer_dn=cert.issuer.rfc4514_string(),
            serial_number=cert.serial_number,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            fingerprint_md5=cert.fingerprint(hashes.MD5()),
            fingerprint_sha1=cert.fingerprint(hashes.SHA1()),
            fingerprint_sha256=cert.fingerprint(hashes.SHA256()),
        )
    except ValueError as e:
        logger.debug(f"Could not parse certificate ({len(der)} bytes): {e}")
        return Certificate(raw=der)
    return Certificate(raw=der, parsed=parsed)


def parse_server_hello(body: bytes) -> ServerHello:
    """Parse the body of a ServerHello handshake message"""
    if len(body) < 35:
        raise ValueError("truncated ServerHello")
    version = int.from_bytes(body[0:2], "big")
    random = body[2:34]
    sid_len = body[34]
    pos = 35 + sid_len
    if len(body) < pos + 3:
        raise ValueError("truncated ServerHello")
    session_id = body[35:pos]
    cipher_suite = int.from_bytes(body[pos:pos + 2], "big")
    compression_method = body[pos + 2]
    pos += 3

    selected_version = None
    if len(body) >= pos + 2:
        end = min(len(body), pos + 2 + int.from_bytes(body[pos:pos + 2], "big"))
        pos += 2
        while pos + 4 <= end:
            ext_type = int.from_bytes(body[pos:pos + 2], "big")
            ext_len = int.from_bytes(body[pos + 2:pos + 4], "big")
            data = body[pos + 4:pos + 4 + ext_len]
            if ext_type == EXTENSION_SUPPORTED_VERSIONS and len(data) == 2:
                selected_version = int.from_bytes(data, "big")
            pos += 4 + ext_len

    return ServerHello(
        version=version,
        random=random,
        session_id=session_id,
        cipher_suite=cipher_suite,
        compression_method=compression_method,
        selected_version=selected_version,
    )


def parse_certificate_message(body: bytes) -> ServerCertificates:
    """Parse a TLS 1.2-style Certificate message into leaf and chain"""
    if len(body) < 3:
        raise ValueError("truncated Certificate message")
    end = min(len(body), 3 + int.from_bytes(body[0:3], "big"))
    pos = 3
    certs: List[Certificate] = []
    while pos + 3 <= end:
        cert_len = int.from_bytes(body[pos:pos + 3], "big")
        pos += 3
        if pos + cert_len > end:
            raise ValueError("truncated certificate entry")
        certs.append(parse_certificate(body[pos:pos + cert_len]))
        pos += cert_len
    if not certs:
        return ServerCertificates()
    return ServerCertificates(certificate=certs[0], chain=certs[1:])


class HandshakeSniffer:
    """
    Reads the server's side of the handshake while it is still plaintext.

    Records are reassembled from arbitrary chunks and handshake messages
    from records. Sniffing stops at the first ChangeCipherSpec or
    application-data record, after which everything is encrypted.
    """

    def __init__(self, log: HandshakeLog):
        self.log = log
        self.done = False
        self._records = bytearray()
        self._messages = bytearray()

    def feed(self, data: bytes) -> None:
        if self.done:
            return
        self._records += data
        while not self.done and len(self._records) >= 5:
            content_type = self._records[0]
            length = int.from_bytes(self._records[3:5], "big")
            if len(self._records) < 5 + length:
                return
            fragment = bytes(self._records[5:5 + length])
            del self._records[:5 + length]

            if content_type == CONTENT_HANDSHAKE:
                self._messages += fragment
                self._parse_messages()
            elif content_type != CONTENT_ALERT:
                self._stop()

    def _parse_messages(self) -> None:
        while not self.done and len(self._messages) >= 4:
            msg_type = self._messages[0]
            length = int.from_bytes(self._messages[1:4], "big")
            if len(self._messages) < 4 + length:
                return
            body = bytes(self._messages[4:4 + length])
            del self._messages[:4 + length]

            try:
                if msg_type == HANDSHAKE_SERVER_HELLO:
                    self.log.server_hello = parse_server_hello(body)
                elif msg_type == HANDSHAKE_CERTIFICATE:
                    self.log.server_certificates = parse_certificate_message(body)
                elif msg_type == HANDSHAKE_SERVER_HELLO_DONE:
                    self._stop()
            except ValueError as e:
                logger.debug(f"Malformed handshake message type {msg_type}: {e}")
                self._stop()

    def _stop(self) -> None:
        self.done = True
        self._records.clear()
        self._messages.clear()


@dataclass
class TLSFlags:
    """TLS client options shared by every module that speaks TLS"""
    server_name: str = flag("", "server-name", "Server name to send in SNI, instead of the target's domain")
    no_sni: bool = flag(False, "no-sni", "Do not send SNI, even when the target's domain is known")
    min_version: str = flag("", "min-version", "Lowest TLS version to offer (TLSv1, TLSv1.1, TLSv1.2, TLSv1.3)")
    max_version: str = flag("", "max-version", "Highest TLS version to offer (TLSv1, TLSv1.1, TLSv1.2, TLSv1.3)")
    ciphers: str = flag("", "ciphers", "OpenSSL cipher list to offer")
    certificate: str = flag("", "certificate", "Path to a PEM client certificate to present")
    certificate_key: str = flag("", "certificate-key", "Path to the PEM key of the client certificate")
    next_protos: str = flag("", "next-protos", "Comma-separated ALPN protocols to offer")

    @cached_property
    def tls_context(self) -> ssl.SSLContext:
        """Client context built from these flags; raises ConfigurationError"""
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        # Scanning: take whatever certificate the server presents
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

        for attr, value in (("minimum_version", self.min_version), ("maximum_version", self.max_version)):
            if not value:
                continue
            if value not in TLS_VERSIONS:
                raise ConfigurationError(f"unknown TLS version {value!r}")
            setattr(context, attr, TLS_VERSIONS[value])

        if (not self.max_version and self.min_version != "TLSv1.3"
                and self.needs_certificate_chain() and not HAS_UNVERIFIED_CHAIN):
            # Keep the Certificate message in plaintext so the chain can be sniffed
            logger.debug("Capping TLS at 1.2: this Python cannot read a TLS 1.3 chain")
            context.maximum_version = ssl.TLSVersion.TLSv1_2

        if self.server_name:
            try:
                self.server_name.encode("idna")
            except UnicodeError as e:
                raise ConfigurationError(f"invalid server name {self.server_name!r}: {e}") from e

        ciphers = self.ciphers
        if not ciphers and self.min_version in ("TLSv1", "TLSv1.0", "TLSv1.1"):
            # OpenSSL refuses legacy versions at the default security level
            ciphers = "DEFAULT:@SECLEVEL=0"
        if ciphers:
            try:
                context.set_ciphers(ciphers)
            except ssl.SSLError as e:
                raise ConfigurationError(f"invalid cipher list {ciphers!r}: {e}") from e

        if self.certificate:
            try:
                context.load_cert_chain(self.certificate, self.certificate_key or None)
            except (OSError, ssl.SSLError) as e:
                raise ConfigurationError(f"could not load client certificate: {e}") from e

        if self.next_protos:
            context.set_alpn_protocols([p.strip() for p in self.next_protos.split(",") if p.strip()])

        return context

    def needs_certificate_chain(self) -> bool:
        """Whether scans must see the server's full chain, not only its leaf"""
        return False

    def server_name_for(self, domain: str) -> Optional[str]:
        if self.no_sni:
            return None
        return self.server_name or domain or None

    def get_tls_connection(self, conn: Any) -> "TLSConnection":
        """
        Wrap an open connection; the handshake is not started.

        Raises InvalidServerNameError when the SNI name is not a valid
        hostname; the caller still owns conn and must close it.
        """
        return TLSConnection(conn, self.tls_context, self.server_name_for(conn.domain))


class TLSConnection:
    """TLS client over an open Connection, driven through memory BIOs"""

    def __init__(self, conn: Any, context: ssl.SSLContext, server_name: Optional[str] = None):
        self.conn = conn
        self.domain = conn.domain
        self.timeout = conn.timeout
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        try:
            self._sslobj = context.wrap_bio(
                self._incoming, self._outgoing, server_side=False, server_hostname=server_name
            )
        except ValueError as e:
            # IDNA encoding of the name failed
            raise InvalidServerNameError(f"invalid server name {server_name!r}: {e}") from e
        self._log = TLSLog()
        self._sniffer = HandshakeSniffer(self._log.handshake_log)

    def get_log(self) -> TLSLog:
        """The handshake log; filled in while the handshake runs"""
        return self._log

    async def handshake(self) -> None:
        while True:
            try:
                self._sslobj.do_handshake()
                break
            except ssl.SSLWantReadError:
                await self._flush()
                data = await self.conn.read_chunk(READ_CHUNK, self.timeout)
                if not data:
                    raise ConnectionClosedError("connection closed during TLS handshake")
                self._sniffer.feed(data)
                self._incoming.write(data)
        await self._flush()
        self._record_session()

    def _record_session(self) -> None:
        hs = self._log.handshake_log
        hs.version = self._sslobj.version() or ""
        cipher = self._sslobj.cipher()
        hs.cipher_suite = cipher[0] if cipher else ""

        if hs.server_certificates is not None and hs.server_certificates.certificate is not None:
            return
        # TLS 1.3 encrypts the Certificate message; ask OpenSSL instead
        leaf = self._sslobj.getpeercert(binary_form=True)
        if not leaf:
            return
        chain: List[bytes] = []
        get_chain = getattr(self._sslobj, "get_unverified_chain", None)
        if get_chain is not None:
            chain = list(get_chain() or [])
            if chain and chain[0] == leaf:
                chain = chain[1:]
        hs.server_certificates = ServerCertificates(
            certificate=parse_certificate(leaf),
            chain=[parse_certificate(der) for der in chain],
        )

    async def _flush(self) -> None:
        pending = self._outgoing.read()
        if pending:
            await self.conn.write(pending)

    async def write(self, data: bytes) -> None:
        self._sslobj.write(data)
        await self._flush()

    async def read_chunk(self, size: int = READ_CHUNK, timeout: Optional[float] = None) -> bytes:
        """Read decrypted bytes; b'' means the peer closed the stream"""
        if timeout is None:
            timeout = self.timeout
        while True:
            try:
                return self._sslobj.read(size)
            except ssl.SSLWantReadError:
                await self._flush()
                data = await self.conn.read_chunk(READ_CHUNK, timeout)
                if not data:
                    return b""
                self._incoming.write(data)
            except (ssl.SSLZeroReturnError, ssl.SSLEOFError):
                return b""

    async def close(self) -> None:
        await self.conn.close()

    async def __aenter__(self) -> "TLSConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
