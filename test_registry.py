"""
Tests for the module registry and the default module set
"""

import pytest

from netgrab.core.registry import (
    CommandRegistry, DuplicateModuleError, ModuleSet, build_registry, new_module_set_with_defaults,
)
from netgrab.core.status import ConfigurationError
from netgrab.scanners.banner import BannerFlags, BannerModule, BannerScanner
from netgrab.scanners.tls import TLSModule, TLSScanFlags, TLSScanner


def test_build_registry_has_builtin_modules():
    registry = build_registry()
    assert registry.names() == ["banner", "tls"]
    assert len(registry) == 2

    banner = registry.get("banner")
    assert banner.label == "Banner"
    assert banner.default_port == 80
    assert isinstance(banner.module, BannerModule)

    tls = registry.get("tls")
    assert tls.label == "TLS Banner Grab"
    assert tls.default_port == 443
    assert tls.description == "Perform a TLS handshake"


def test_duplicate_name_is_rejected():
    registry = CommandRegistry()
    registry.add_command("banner", "Banner", "first", 80, BannerModule())
    with pytest.raises(DuplicateModuleError):
        registry.add_command("banner", "Banner", "second", 8080, BannerModule())
    assert registry.get("banner").description == "first"


def test_copy_is_independent():
    registry = build_registry()
    copy = registry.copy()
    copy.add_command("banner-alt", "Banner", "alternate port", 8080, BannerModule())

    assert "banner-alt" in copy
    assert "banner-alt" not in registry
    assert [c.name for c in copy] == ["banner", "banner-alt", "tls"]


def test_new_flags_apply_command_defaults():
    flags = build_registry().get("tls").new_flags()
    assert isinstance(flags, TLSScanFlags)
    assert flags.port == 443
    assert flags.name == "tls"
    assert flags.timeout > 0

    other = build_registry().get("tls").new_flags()
    other.port = 8443
    assert flags.port == 443


def test_new_scanner_validates_and_initializes():
    command = build_registry().get("banner")
    flags = command.new_flags()
    flags.pattern = "^SSH"
    scanner = command.new_scanner(flags)
    assert isinstance(scanner, BannerScanner)
    assert scanner.regex.pattern == b"^SSH"


@pytest.mark.parametrize("field, value", [
    ("port", 70000),
    ("timeout", 0),
    ("read_idle_timeout", -1.0),
    ("bytes_read_limit", 0),
])
def test_new_scanner_rejects_bad_base_flags(field, value):
    command = build_registry().get("tls")
    flags = command.new_flags()
    setattr(flags, field, value)
    with pytest.raises(ConfigurationError):
        command.new_scanner(flags)


def test_module_set_with_defaults():
    modules = new_module_set_with_defaults()
    assert sorted(modules) == ["banner", "tls"]
    assert isinstance(modules["banner"].new_flags(), BannerFlags)
    assert isinstance(modules["tls"].new_scanner(), TLSScanner)


def test_module_set_copy_into():
    extra = ModuleSet()
    extra.add_module("tls", BannerModule())
    extra.add_module("custom", TLSModule())

    destination = new_module_set_with_defaults()
    extra.copy_into(destination)

    assert sorted(destination) == ["banner", "custom", "tls"]
    assert isinstance(destination["tls"], BannerModule)
    assert sorted(extra) == ["custom", "tls"]


def test_module_sets_are_fresh():
    first = new_module_set_with_defaults()
    first.pop("banner")
    assert "banner" in new_module_set_with_defaults()
