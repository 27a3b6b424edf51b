"""Tests for bounce/agents/registry.py."""

import pytest

from bounce.agents.registry import AdapterRegistry
from tests.conftest import MockAdapter


class _BrokenProbe(MockAdapter):
    async def is_available(self) -> bool:
        raise OSError("probe crashed")


def test_register_get_and_list_in_order():
    registry = AdapterRegistry()
    first, second = MockAdapter("one"), MockAdapter("two")
    registry.register(first)
    registry.register(second)

    assert registry.get("two") is second
    assert registry.get("three") is None
    assert [a.name for a in registry.list()] == ["one", "two"]


def test_register_replaces_same_name():
    registry = AdapterRegistry()
    registry.register(MockAdapter("one"))
    replacement = MockAdapter("one")
    registry.register(replacement)
    assert registry.list() == [replacement]


def test_register_rejects_empty_name():
    with pytest.raises(ValueError):
        AdapterRegistry().register(MockAdapter("  "))


async def test_discover_available_skips_missing_and_broken(caplog):
    registry = AdapterRegistry()
    installed = MockAdapter("installed")
    missing = MockAdapter("missing")
    missing.available = False
    registry.register(installed)
    registry.register(missing)
    registry.register(_BrokenProbe("broken"))

    assert await registry.discover_available() == [installed]
    assert "probe crashed" in caplog.text
