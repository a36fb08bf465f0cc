"""
Module / Scanner contract
Every protocol plugs into the engine by implementing these interfaces
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, List, Optional

from netgrab.core.status import ConfigurationError, ScanResponse


def flag(default: Any, name: str, help: str = "") -> Any:
    """Declare a command-line flag on a flags dataclass"""
    return field(default=default, metadata={"flag": name, "help": help})


@dataclass
class BaseFlags:
    """Connection options shared by every module"""
    port: int = flag(0, "port", "Specify port to grab on")
    name: str = flag("", "name", "Specify name for output json, only necessary if scanning multiple modules")
    trigger: str = flag("", "trigger", "Invoke only on targets with specified tag")
    timeout: float = flag(10.0, "timeout", "Seconds to wait for connect and for each read or write")
    read_idle_timeout: float = flag(0.05, "read-idle-timeout",
                                    "Seconds of silence that end a read once data has arrived")
    bytes_read_limit: int = flag(1 << 20, "bytes-read-limit", "Maximum number of bytes to read from a response")

    def validate(self, args: Optional[List[str]] = None) -> None:
        """Check the base options; raises ConfigurationError"""
        if not 0 <= self.port <= 65535:
            raise ConfigurationError(f"port {self.port} out of range")
        if self.timeout <= 0:
            raise ConfigurationError("timeout must be positive")
        if self.read_idle_timeout <= 0:
            raise ConfigurationError("read-idle-timeout must be positive")
        if self.bytes_read_limit <= 0:
            raise ConfigurationError("bytes-read-limit must be positive")

    def help(self) -> str:
        """Extra text shown after the option list in the module's --help"""
        return ""


class Scanner(ABC):
    """
    A configured scanner for one protocol.

    init() runs once before any scan; after that the scanner is read-only
    and scan() may be awaited concurrently for many targets.
    """

    @abstractmethod
    def init(self, flags: Any) -> None:
        """Configure the scanner; raises ConfigurationError"""
        ...

    @abstractmethod
    def get_name(self) -> str:
        ...

    @abstractmethod
    def get_trigger(self) -> str:
        ...

    @abstractmethod
    def protocol(self) -> str:
        """Stable machine-readable protocol identifier"""
        ...

    def init_per_sender(self, sender_id: int) -> None:
        """Per-worker setup hook, called once by each worker before it scans"""
        return None

    @abstractmethod
    async def scan(self, target: Any) -> ScanResponse:
        """Scan one target. Must not raise for network errors."""
        ...


class ScanModule(ABC):
    """Factory for a protocol's flags and scanners"""

    @abstractmethod
    def new_flags(self) -> Any:
        """Fresh flags with this module's defaults"""
        ...

    @abstractmethod
    def new_scanner(self) -> Scanner:
        """Fresh, uninitialized scanner"""
        ...

    @abstractmethod
    def description(self) -> str:
        ...
