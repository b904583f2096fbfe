"""Shared fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

import avif_converter


@pytest.fixture
def input_root(tmp_path: Path) -> Path:
    root = tmp_path / "input"
    root.mkdir()
    return root


@pytest.fixture
def output_root(tmp_path: Path) -> Path:
    return tmp_path / "output"


@pytest.fixture
def config() -> avif_converter.Config:
    return avif_converter.Config(quality=80, effort=4)
