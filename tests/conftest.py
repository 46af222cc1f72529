from __future__ import annotations

import os
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parent.parent / "src"


@pytest.fixture
def socket_dir():
    """Short directory for Unix socket paths (sun_path is ~108 bytes)."""
    path = tempfile.mkdtemp(prefix="uie-")
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def subprocess_env(tmp_path):
    """Environment for running ``python -m uiembed`` from the source tree."""
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(SRC_DIR), env.get("PYTHONPATH", "")) if p)
    env["XDG_CONFIG_HOME"] = str(tmp_path / "config")
    for key in list(env):
        if key.startswith("UIEMBED_"):
            del env[key]
    return env


@pytest.fixture
def python_exe() -> str:
    return sys.executable
