from __future__ import annotations

import logging
import os
import sys
from collections import abc as cabc
from pathlib import Path

import pytest


def pytest_configure() -> None:
    project_root = Path(__file__).resolve().parents[2]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))


UBUNTU_JAMMY = """\
PRETTY_NAME="Ubuntu 22.04.4 LTS"
NAME="Ubuntu"
VERSION_ID="22.04"
VERSION_CODENAME=jammy
ID=ubuntu
ID_LIKE=debian
"""


@pytest.fixture
def host_root(tmp_path: Path) -> Path:
    """A fake filesystem root holding an Ubuntu ``/etc/os-release``."""

    root = tmp_path / "host"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "os-release").write_text(UBUNTU_JAMMY, encoding="utf-8")
    (root / "var" / "log").mkdir(parents=True)
    return root


@pytest.fixture
def as_root(monkeypatch: pytest.MonkeyPatch) -> None:
    """Pretend the tests run with root privileges."""

    monkeypatch.setattr(os, "geteuid", lambda: 0)


@pytest.fixture(autouse=True)
def _reset_package_logger() -> cabc.Iterator[None]:
    yield
    logger = logging.getLogger("vps_setup")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
