"""Tests for structured permission keys."""

import pytest

from app.features.permissions.keys import PermissionKey, format_keys, parse_keys


class TestPermissionKey:
    def test_parse(self):
        assert PermissionKey.parse("payment:read") == PermissionKey("payment", "read")

    def test_parse_strips_whitespace(self):
        assert PermissionKey.parse(" payment : read ") == PermissionKey("payment", "read")

    def test_parse_passes_keys_through(self):
        key = PermissionKey("house", "list")
        assert PermissionKey.parse(key) is key

    @pytest.mark.parametrize("value", ["payment", ":read", "payment:", "", "a:b:c"])
    def test_parse_rejects_malformed(self, value):
        """Test that keys without exactly one resource and operation are rejected."""
        with pytest.raises(ValueError):
            PermissionKey.parse(value)

    def test_str_is_wire_format(self):
        assert str(PermissionKey("retreatInventory", "manage")) == "retreatInventory:manage"

    def test_platform_keys(self):
        assert PermissionKey.parse("system:admin").is_platform is True
        assert PermissionKey("systemLog", "read").is_platform is False


def test_parse_keys_deduplicates():
    keys = parse_keys(["payment:read", PermissionKey("payment", "read"), "house:list"])
    assert keys == {PermissionKey("payment", "read"), PermissionKey("house", "list")}


def test_format_keys_sorted():
    keys = {PermissionKey("table", "read"), PermissionKey("house", "list")}
    assert format_keys(keys) == ["house:list", "table:read"]
