"""
Module registry
Name-keyed catalogue of scan modules, built once at start-up and read-only
while scanning
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from netgrab.core.module import ScanModule, Scanner

logger = logging.getLogger(__name__)


class DuplicateModuleError(ValueError):
    def __init__(self, name: str):
        super().__init__(f"a module named {name!r} is already registered")
        self.name = name


class ModuleSet(Dict[str, ScanModule]):
    """Modules keyed by name"""

    def add_module(self, name: str, module: ScanModule) -> None:
        self[name] = module

    def copy_into(self, destination: "ModuleSet") -> None:
        """Copy every module into destination, replacing same-named entries"""
        for name, module in self.items():
            destination[name] = module


@dataclass(frozen=True)
class ScanCommand:
    """A registered module together with its presentation data"""
    name: str
    label: str
    description: str
    default_port: int
    module: ScanModule

    def new_flags(self) -> Any:
        """Module defaults, plus this command's port and name"""
        flags = self.module.new_flags()
        flags.port = self.default_port
        flags.name = self.name
        return flags

    def new_scanner(self, flags: Any, args: Optional[List[str]] = None) -> Scanner:
        """Validate flags and return an initialized scanner; raises ConfigurationError"""
        flags.validate(args or [])
        scanner = self.module.new_scanner()
        scanner.init(flags)
        return scanner


class CommandRegistry:
    """Catalogue of scan commands"""

    def __init__(self):
        self._commands: Dict[str, ScanCommand] = {}

    def add_command(self, name: str, label: str, description: str,
                    default_port: int, module: ScanModule) -> ScanCommand:
        if name in self._commands:
            raise DuplicateModuleError(name)
        command = ScanCommand(name, label, description, default_port, module)
        self._commands[name] = command
        logger.debug(f"Registered module {name} (default port {default_port})")
        return command

    def get(self, name: str) -> ScanCommand:
        return self._commands[name]

    def names(self) -> List[str]:
        return sorted(self._commands)

    def module_set(self) -> ModuleSet:
        modules = ModuleSet()
        for name, command in self._commands.items():
            modules.add_module(name, command.module)
        return modules

    def copy(self) -> "CommandRegistry":
        """Independent registry with the same commands"""
        other = CommandRegistry()
        other._commands.update(self._commands)
        return other

    def __contains__(self, name: object) -> bool:
        return name in self._commands

    def __iter__(self) -> Iterator[ScanCommand]:
        return iter(self._commands[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._commands)


def build_registry() -> CommandRegistry:
    """Register every built-in module; called once by the entry point"""
    from netgrab.scanners import banner, tls

    registry = CommandRegistry()
    banner.register(registry)
    tls.register(registry)
    return registry


def new_module_set_with_defaults() -> ModuleSet:
    """A fresh ModuleSet holding every built-in module"""
    return build_registry().module_set()
