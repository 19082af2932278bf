"""
Shared fixtures for channel packer tests.
"""

import os
import stat

import numpy as np
import pytest
from PIL import Image

from backend.texture_classes import PixelSource


@pytest.fixture
def gray_source():
    """Builds readable grayscale sources filled with one value."""
    def _make(name, value, width=4, height=3):
        return PixelSource.from_array(name, np.full((height, width), value, dtype=np.float32))
    return _make


@pytest.fixture
def write_image(tmp_path):
    """Writes a uint8 array to an image file and returns its path."""
    def _write(filename, data):
        path = tmp_path / filename
        Image.fromarray(np.asarray(data, dtype=np.uint8)).save(path)
        return str(path)
    return _write


@pytest.fixture
def owner_read_permission(monkeypatch):
    """Makes os.access honour the owner read bit, also when tests run as root."""
    def _access(path, mode):
        if mode == os.R_OK:
            return bool(os.stat(path).st_mode & stat.S_IRUSR)
        return True
    monkeypatch.setattr(os, "access", _access)


@pytest.fixture
def progress_log():
    """Collects (label, current, total) progress notifications."""
    calls = []

    def _progress(label, current, total):
        calls.append((label, current, total))
    _progress.calls = calls
    return _progress
