"""
Banner Scanner Module
Sends a configurable probe (literal or base64) and classifies the response
by regular expression or by substring containment
"""

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from netgrab.core.conn import read_available
from netgrab.core.module import BaseFlags, ScanModule, Scanner, flag
from netgrab.core.status import (
    ConfigurationError, InvalidServerNameError, MismatchedFlagsError, NETWORK_ERRORS, NoMatchError,
    ScanResponse, ScanStatus, try_get_scan_status,
)
from netgrab.core.target import ScanTarget
from netgrab.core.tls import TLSFlags, TLSLog

logger = logging.getLogger(__name__)

SIMPLE_ESCAPES = {
    "a": b"\a",
    "b": b"\b",
    "f": b"\f",
    "n": b"\n",
    "r": b"\r",
    "t": b"\t",
    "v": b"\v",
    "\\": b"\\",
    '"': b'"',
}

OCTAL_DIGITS = "01234567"
HEX_DIGITS = "0123456789abcdefABCDEF"


def unquote_probe(text: str) -> bytes:
    """
    Interpret backslash escapes in a literal probe.

    Supported: \\a \\b \\f \\n \\r \\t \\v \\\\ \\", \\xHH and \\ooo (one raw
    byte each), \\uHHHH and \\UHHHHHHHH (UTF-8 encoded). Everything else
    is a ConfigurationError, as is an unescaped double quote or newline.
    """
    out = bytearray()
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == '"' or ch == "\n":
            raise ConfigurationError(f"probe: unescaped {ch!r} at offset {i}")
        if ch != "\\":
            out += ch.encode("utf-8")
            i += 1
            continue

        if i + 1 >= len(text):
            raise ConfigurationError("probe: trailing backslash")
        esc = text[i + 1]
        if esc in SIMPLE_ESCAPES:
            out += SIMPLE_ESCAPES[esc]
            i += 2
        elif esc == "x":
            digits = text[i + 2:i + 4]
            if len(digits) != 2 or any(d not in HEX_DIGITS for d in digits):
                raise ConfigurationError(f"probe: bad \\x escape at offset {i}")
            out.append(int(digits, 16))
            i += 4
        elif esc in OCTAL_DIGITS:
            digits = text[i + 1:i + 4]
            if len(digits) != 3 or any(d not in OCTAL_DIGITS for d in digits) or int(digits, 8) > 0o377:
                raise ConfigurationError(f"probe: bad octal escape at offset {i}")
            out.append(int(digits, 8))
            i += 4
        elif esc in ("u", "U"):
            width = 4 if esc == "u" else 8
            digits = text[i + 2:i + 2 + width]
            if len(digits) != width or any(d not in HEX_DIGITS for d in digits):
                raise ConfigurationError(f"probe: bad \\{esc} escape at offset {i}")
            code = int(digits, 16)
            if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
                raise ConfigurationError(f"probe: invalid code point U+{code:X}")
            out += chr(code).encode("utf-8")
            i += 2 + width
        else:
            raise ConfigurationError(f"probe: unknown escape \\{esc} at offset {i}")
    return bytes(out)


def _decode_base64(value: str, what: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"{what}: invalid base64: {e}") from e


@dataclass
class BannerFlags(BaseFlags, TLSFlags):
    """Command-line flags for the banner module"""
    probe: str = flag("", "probe", "Probe to send to the server. Backslash escapes are interpreted, "
                                   "for example \\n is a newline and \\\\n a literal backslash-n")
    pattern: str = flag("", "pattern", "Pattern to match, must be a valid regular expression")
    max_tries: int = flag(1, "max-tries", "Number of tries for timeouts and connection errors before giving up")
    use_tls: bool = flag(False, "use-tls", "Do a TLS handshake immediately after connecting")
    only_base64: bool = flag(False, "only-base64", "Output the banner only in base64")
    probe_base64: str = flag("", "single-payload", "Probe to send to the server, in base64")
    single_contains: str = flag("", "single-contain", "Bytes to search for in the banner, in base64")
    single_contains_string: str = flag("", "single-contain-string", "Substring to search for in the banner")

    def validate(self, args: Optional[List[str]] = None) -> None:
        BaseFlags.validate(self, args)
        if self.max_tries < 1:
            raise ConfigurationError("max-tries must be at least 1")

    def help(self) -> str:
        return (
            "Literal probes take the escapes \\a \\b \\f \\n \\r \\t \\v \\\\ \\\", "
            "\\xHH and \\ooo for raw bytes, and \\uHHHH or \\UHHHHHHHH for UTF-8 text. "
            "--single-contain takes base64 and wins over --single-contain-string."
        )


@dataclass
class BannerResults:
    banner: str = ""
    length: int = 0
    banner_base64: str = ""
    tls_log: Optional[TLSLog] = None  # only with use_tls

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.banner:
            out["banner"] = self.banner
        if self.length:
            out["length"] = self.length
        if self.banner_base64:
            out["banner_base64"] = self.banner_base64
        if self.tls_log is not None:
            out["tls"] = self.tls_log.to_dict()
        return out


class BannerScanner(Scanner):
    """Probe-and-match scanner usable against any TCP or TLS service"""

    def __init__(self):
        self.config: Optional[BannerFlags] = None
        self.regex: Optional["re.Pattern[bytes]"] = None
        self.probe = b""
        self.contains: Optional[bytes] = None

    def init(self, flags: Any) -> None:
        if not isinstance(flags, BannerFlags):
            raise MismatchedFlagsError()
        try:
            regex = re.compile(flags.pattern.encode("utf-8"))
        except re.error as e:
            raise ConfigurationError(f"invalid pattern {flags.pattern!r}: {e}") from e

        probe = b""
        if flags.probe:
            probe = unquote_probe(flags.probe)
        elif flags.probe_base64:
            probe = _decode_base64(flags.probe_base64, "single-payload")

        contains = None
        if flags.single_contains:
            contains = _decode_base64(flags.single_contains, "single-contain")
        elif flags.single_contains_string:
            contains = flags.single_contains_string.encode("utf-8")
        if contains is not None and not contains:
            raise ConfigurationError("single-contain decodes to an empty byte string")

        if flags.use_tls:
            flags.tls_context  # build now so bad TLS options fail at start-up

        self.config = flags
        self.regex = regex
        self.probe = probe
        self.contains = contains
        logger.debug(f"Banner scanner initialized: probe={probe!r} pattern={flags.pattern!r}")

    def get_name(self) -> str:
        return self.config.name

    def get_trigger(self) -> str:
        return self.config.trigger

    def protocol(self) -> str:
        return "banner"

    async def scan(self, target: ScanTarget) -> ScanResponse:
        config = self.config
        conn = None
        error: Optional[BaseException] = None
        for attempt in range(config.max_tries):
            try:
                conn = await target.open(config)
                error = None
                break
            except NETWORK_ERRORS as e:
                error = e
                logger.debug(f"Banner connect to {target} failed (try {attempt + 1}/{config.max_tries}): {e}")
        if conn is None:
            return ScanResponse(try_get_scan_status(error), None, error)

        try:
            return await self._grab(conn, target)
        finally:
            await conn.close()

    async def _grab(self, conn: Any, target: ScanTarget) -> ScanResponse:
        config = self.config
        result = BannerResults()

        if config.use_tls:
            try:
                tls_conn = config.get_tls_connection(conn)
            except InvalidServerNameError as e:
                logger.debug(f"Cannot start TLS with {target}: {e}")
                return ScanResponse(e.status, None, e)
            result.tls_log = tls_conn.get_log()
            try:
                await tls_conn.handshake()
            except NETWORK_ERRORS as e:
                logger.debug(f"TLS handshake with {target} failed: {e}")
                return ScanResponse(try_get_scan_status(e), result, e)
            conn = tls_conn

        data = b""
        error: Optional[BaseException] = None
        for attempt in range(config.max_tries):
            try:
                if self.probe:
                    await conn.write(self.probe)
                data = await read_available(
                    conn, config.bytes_read_limit, config.timeout, config.read_idle_timeout
                )
                error = None
                break
            except NETWORK_ERRORS as e:
                error = e
                logger.debug(f"Banner read from {target} failed (try {attempt + 1}/{config.max_tries}): {e}")
        if error is not None:
            return ScanResponse(try_get_scan_status(error), None, error)

        result.banner_base64 = base64.b64encode(data).decode("ascii")
        if not config.only_base64:
            result.banner = data.decode("utf-8", errors="replace")
        result.length = len(data)

        if self.contains is None:
            if self.regex.search(data):
                return ScanResponse(ScanStatus.SUCCESS, result)
            return ScanResponse(ScanStatus.PROTOCOL_ERROR, result, NoMatchError())

        if self.contains in data:
            return ScanResponse(ScanStatus.SUCCESS, result)
        return ScanResponse(ScanStatus.SUCCESS_NOT_CONTAIN)


class BannerModule(ScanModule):
    """Implementation of the banner scan module"""

    def new_flags(self) -> BannerFlags:
        return BannerFlags()

    def new_scanner(self) -> BannerScanner:
        return BannerScanner()

    def description(self) -> str:
        return ("Fetch a raw banner by sending a static probe and checking the result "
                "against a regular expression")


def register(registry) -> None:
    registry.add_command("banner", "Banner", BannerModule().description(), 80, BannerModule())
