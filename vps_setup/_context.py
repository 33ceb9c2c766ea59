"""Per-run state shared by the provisioning stages."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

import requests

from vps_setup._commands import CommandRunner
from vps_setup._config import ProvisionConfig

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StageContext:
    """Everything a stage needs to inspect and mutate the host.

    Attributes
    ----------
    config
        Immutable configuration loaded at start-up.
    runner
        Executor for external commands.
    session
        HTTP session for release metadata and downloads.
    root
        Filesystem root that host paths are resolved against.
    workdir
        Directory holding operator-facing output such as client configs.
    warnings
        Soft conditions raised during the run, in order.
    """

    config: ProvisionConfig
    runner: CommandRunner
    session: requests.Session
    root: Path = Path("/")
    workdir: Path = field(default_factory=Path.cwd)
    warnings: list[str] = field(default_factory=list)

    def host_path(self, path: str | PurePosixPath) -> Path:
        """Resolve an absolute host path against :attr:`root`.

        Examples
        --------
        >>> from vps_setup._config import ProvisionConfig
        >>> ctx = StageContext(ProvisionConfig(), runner=None, session=None, root=Path("/srv/host"))
        >>> ctx.host_path("/etc/ssh/sshd_config").as_posix()
        '/srv/host/etc/ssh/sshd_config'
        """

        return self.root / PurePosixPath(path).relative_to("/")

    def output_path(self, path: Path) -> Path:
        """Resolve an operator-facing path against :attr:`workdir`."""

        return path if path.is_absolute() else self.workdir / path

    def warn(self, message: str) -> None:
        """Record and log a soft condition that does not stop the stage."""

        self.warnings.append(message)
        logger.warning("%s", message)
