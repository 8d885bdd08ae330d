# tests/conftest.py
"""Pytest configuration and fixtures"""
import io
import random
import sys
from pathlib import Path

import pytest
from PIL import Image

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from transcoder.infra.security import SecurityPolicy  # noqa: E402


@pytest.fixture
def temp_root(tmp_path):
    """Directory the policy allows temp artifacts in"""
    root = tmp_path / "tmp"
    root.mkdir()
    return root


@pytest.fixture
def policy(temp_root):
    """Policy rooted at a per-test temp dir"""
    return SecurityPolicy(allowed_temp_dir=str(temp_root))


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    """
    Per-test working directory.
    Validated inputs must be relative, so tests chdir here and use relative paths.
    """
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    return work


@pytest.fixture
def make_image_bytes():
    """Factory for encoded image bytes (RGB noise by default, so PNG output stays large)"""

    def _make(width=64, height=48, fmt="PNG", mode="RGB", noise=True, seed=1234):
        if noise and mode == "RGB":
            rng = random.Random(seed)
            img = Image.frombytes("RGB", (width, height), rng.randbytes(width * height * 3))
        else:
            img = Image.new(mode, (width, height))
        buf = io.BytesIO()
        img.save(buf, format=fmt)
        return buf.getvalue()

    return _make


@pytest.fixture
def raw_file(workdir):
    """A small file that passes the RAW header sniff (not a real RAW)"""
    path = workdir / "photo.arw"
    path.write_bytes(b"II*\x00" + b"\x00" * 16 + b"SONY DSC" + b"\x00" * 512)
    return "photo.arw"
