# tests/conftest.py
import os
import shutil

import pytest

from runescan.config import ScanConfig
from runescan.scanner import AnalysisContext
from tests.utils.targets import SpawnCounter, write_script


def _find_true() -> str:
    for candidate in ("/bin/true", "/usr/bin/true"):
        if os.path.isfile(candidate):
            return candidate
    return shutil.which("true") or "/bin/true"


TRUE_BIN = _find_true()


@pytest.fixture
def quiet_config():
    # child output is not forwarded to the test runner's streams
    return ScanConfig(passthrough=False)


@pytest.fixture
def spawn_counter():
    return SpawnCounter()


@pytest.fixture
def context(quiet_config, spawn_counter):
    return AnalysisContext.create(quiet_config, spawn=spawn_counter)


@pytest.fixture
def true_bin():
    if not os.path.isfile(TRUE_BIN):
        pytest.skip("no 'true' binary on this system")
    return TRUE_BIN


@pytest.fixture
def make_script(tmp_path):
    """Factory for small /bin/sh targets inside the test's tmp_path."""

    def _make(name: str, body: str, executable: bool = True) -> str:
        return write_script(tmp_path, name, body, executable=executable)

    return _make
