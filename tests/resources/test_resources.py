"""Tests for :mod:`vecdex.resources`."""

from __future__ import annotations

import tomllib

import pytest

from vecdex.resources import get_resource


def test_get_resource_missing_file_raises() -> None:
    with pytest.raises(FileNotFoundError):
        get_resource("does-not-exist.toml")


def test_packaged_defaults_are_valid_toml() -> None:
    resource = get_resource("vecdex.defaults.toml")

    data = tomllib.loads(resource.read_text(encoding="utf-8"))

    assert data["database"] == "vecdex.db"
    assert {"pool", "index", "embedding"} <= set(data)
