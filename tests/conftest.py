"""Shared fixtures: real images on disk, and a project layout under tmp_path."""
from __future__ import annotations

import logging
import sys
from pathlib import Path

import pytest
from PIL import Image

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dresspics.settings import OptimiserConfig  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_root_logging():
    """The CLI calls logging.basicConfig(force=True); undo it after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    try:
        yield
    finally:
        for handler in list(root.handlers):
            if handler not in handlers:
                root.removeHandler(handler)
        for handler in handlers:
            if handler not in root.handlers:
                root.addHandler(handler)
        root.setLevel(level)


@pytest.fixture
def make_image():
    """Write a solid-colour image of the given size; the format follows the suffix."""

    def _make(path: Path, width: int, height: int, mode: str = "RGB") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        colour = (180, 40, 90, 128) if mode == "RGBA" else (180, 40, 90)
        Image.new(mode, (width, height), colour[: len(mode)]).save(path)
        return path

    return _make


@pytest.fixture
def project(tmp_path) -> OptimiserConfig:
    """Default layout under tmp_path with a small ladder to keep encodes fast."""
    return OptimiserConfig.for_root(tmp_path, variant_widths=[32, 64, 128])
