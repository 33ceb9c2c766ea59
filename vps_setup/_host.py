"""Precondition checks and idempotent host mutations shared by every stage."""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path

from vps_setup._commands import apt_context, run_checked, run_command
from vps_setup._context import StageContext
from vps_setup._errors import (
    PreconditionError,
    ServiceError,
    UnsupportedArchitectureError,
)
from vps_setup._logging import log_success

logger = logging.getLogger(__name__)

OS_RELEASE = "/etc/os-release"
# Minimum major versions accepted per distribution ID.
SUPPORTED_PLATFORMS: dict[str, int] = {"ubuntu": 20, "debian": 11}
ARCHITECTURES: dict[str, str] = {
    "amd64": "amd64",
    "x86_64": "amd64",
    "arm64": "arm64",
    "aarch64": "arm64",
}
BACKUP_TIMESTAMP = "%Y%m%d%H%M%S"


def require_root() -> None:
    """Fail unless the process runs with root privileges.

    Raises
    ------
    PreconditionError
        When the effective user is not root.
    """

    if os.geteuid() != 0:
        msg = "This command must be run as root. Use 'sudo vps-setup ...'"
        raise PreconditionError(msg)


def parse_os_release(text: str) -> dict[str, str]:
    """Parse the shell-style assignments of ``/etc/os-release``.

    Examples
    --------
    >>> parse_os_release('ID=ubuntu\\nVERSION_ID="22.04"\\n# comment\\n')
    {'ID': 'ubuntu', 'VERSION_ID': '22.04'}
    """

    fields: dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        fields[key.strip()] = value.strip().strip("\"'")
    return fields


def _major_version(version_id: str) -> int | None:
    head = version_id.split(".", 1)[0]
    return int(head) if head.isdigit() else None


def read_os_release(ctx: StageContext) -> dict[str, str]:
    """Return the parsed ``/etc/os-release`` of the host.

    Raises
    ------
    PreconditionError
        When the file is missing.
    """

    path = ctx.host_path(OS_RELEASE)
    if not path.is_file():
        msg = f"Cannot detect OS. {OS_RELEASE} not found."
        raise PreconditionError(msg)
    return parse_os_release(path.read_text(encoding="utf-8"))


def require_supported_platform(ctx: StageContext) -> dict[str, str]:
    """Fail unless the host runs a supported distribution and version.

    Returns
    -------
    dict[str, str]
        The parsed ``/etc/os-release`` fields.
    """

    fields = read_os_release(ctx)
    distro = fields.get("ID", "").lower()
    pretty = fields.get("PRETTY_NAME") or f"{distro} {fields.get('VERSION_ID', '')}".strip()
    minimum = SUPPORTED_PLATFORMS.get(distro)
    major = _major_version(fields.get("VERSION_ID", ""))
    if minimum is None or major is None or major < minimum:
        msg = (
            f"Unsupported OS: {pretty or 'unknown'}. "
            "This tool requires Ubuntu 20.04+ or Debian 11+"
        )
        raise PreconditionError(msg)
    logger.info("Detected OS: %s", pretty)
    return fields


def is_package_installed(ctx: StageContext, package: str) -> bool:
    """Return ``True`` when dpkg reports ``package`` as installed."""

    result = run_command(ctx.runner, "dpkg-query", "-W", "-f=${Status}", package)
    return result.success and result.stdout.strip() == "install ok installed"


def install_if_missing(ctx: StageContext, package: str) -> bool:
    """Install ``package`` unless it is already present.

    Returns
    -------
    bool
        ``True`` when the package was installed by this call.

    Raises
    ------
    CommandError
        When ``apt-get install`` fails.
    """

    if is_package_installed(ctx, package):
        logger.info("%s is already installed", package)
        return False
    logger.info("Installing %s...", package)
    run_checked(ctx.runner, "apt-get", "install", "-y", package, context=apt_context())
    log_success(logger, "%s installed successfully", package)
    return True


def install_packages(ctx: StageContext, packages: list[str] | tuple[str, ...]) -> None:
    """Install each of ``packages`` that is missing, stopping at the first failure."""

    for package in packages:
        install_if_missing(ctx, package)


def apt_update(ctx: StageContext) -> None:
    """Refresh the package index."""

    run_checked(ctx.runner, "apt-get", "update", context=apt_context())


def _backup_path(path: Path, now: datetime) -> Path:
    candidate = path.with_name(f"{path.name}.bak.{now.strftime(BACKUP_TIMESTAMP)}")
    counter = 0
    while candidate.exists():
        counter += 1
        candidate = path.with_name(
            f"{path.name}.bak.{now.strftime(BACKUP_TIMESTAMP)}.{counter}"
        )
    return candidate


def backup_file(path: Path, *, now: datetime | None = None) -> Path | None:
    """Copy ``path`` to a timestamped sibling before it is overwritten.

    Returns
    -------
    Path | None
        The backup location, or ``None`` when there was nothing to back up.
    """

    if not path.is_file():
        logger.info("File %s does not exist, skipping backup", path)
        return None
    backup = _backup_path(path, now or datetime.now())
    shutil.copy2(path, backup)
    log_success(logger, "Backed up %s to %s", path, backup)
    return backup


def write_config(path: Path, content: str, *, mode: int | None = None) -> Path | None:
    """Back up any existing file at ``path`` and write ``content`` in its place.

    Returns
    -------
    Path | None
        The backup location, if a previous file existed.
    """

    backup = backup_file(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        path.write_text(content, encoding="utf-8")
        return backup
    # Never exists on disk with a wider mode than requested.
    tmp_path = path.with_name(f"{path.name}.tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(content)
    tmp_path.chmod(mode)
    tmp_path.replace(path)
    return backup


def file_has_content(path: Path, content: str) -> bool:
    """Return ``True`` when ``path`` exists and holds exactly ``content``."""

    return path.is_file() and path.read_text(encoding="utf-8") == content


def enable_service(ctx: StageContext, service: str) -> None:
    """Enable ``service`` at boot, start it, and confirm it is active.

    Raises
    ------
    ServiceError
        When the unit does not report as active after starting.
    """

    logger.info("Enabling and starting %s...", service)
    run_checked(ctx.runner, "systemctl", "enable", service)
    run_checked(ctx.runner, "systemctl", "start", service)
    verify_service_active(ctx, service)


def verify_service_active(ctx: StageContext, service: str) -> None:
    """Raise :class:`ServiceError` unless ``service`` is active."""

    result = run_command(ctx.runner, "systemctl", "is-active", "--quiet", service)
    if not result.success:
        msg = f"{service} failed to start"
        raise ServiceError(msg)
    log_success(logger, "%s is running", service)


def restart_service(ctx: StageContext, service: str) -> None:
    """Restart ``service`` and confirm it came back."""

    run_checked(ctx.runner, "systemctl", "restart", service)
    verify_service_active(ctx, service)


def daemon_reload(ctx: StageContext) -> None:
    """Make systemd pick up new or changed unit files."""

    run_checked(ctx.runner, "systemctl", "daemon-reload")


def install_unit(ctx: StageContext, service: str, content: str) -> bool:
    """Write a systemd unit for ``service`` and reload systemd if it changed.

    Returns
    -------
    bool
        ``True`` when the unit file was created or updated.
    """

    path = ctx.host_path(f"/etc/systemd/system/{service}.service")
    if file_has_content(path, content):
        logger.info("Unit %s.service is current", service)
        return False
    write_config(path, content)
    daemon_reload(ctx)
    log_success(logger, "Unit %s.service installed", service)
    return True


def user_exists(ctx: StageContext, username: str) -> bool:
    """Return ``True`` when ``username`` resolves to an account."""

    return run_command(ctx.runner, "id", "-u", username).success


def group_exists(ctx: StageContext, group: str) -> bool:
    """Return ``True`` when ``group`` exists in the group database."""

    return run_command(ctx.runner, "getent", "group", group).success


def ensure_system_user(ctx: StageContext, username: str) -> None:
    """Create an unprivileged system account without a login shell if absent."""

    if user_exists(ctx, username):
        logger.info("System user %s already exists", username)
        return
    run_checked(ctx.runner, "useradd", "--system", "--shell", "/bin/false", username)
    log_success(logger, "System user %s created", username)


def detect_architecture(ctx: StageContext) -> str:
    """Return the release-asset architecture name for this host.

    Raises
    ------
    UnsupportedArchitectureError
        When the host is neither amd64 nor arm64.
    """

    raw = run_checked(ctx.runner, "dpkg", "--print-architecture").strip()
    try:
        return ARCHITECTURES[raw]
    except KeyError:
        msg = f"Unsupported architecture: {raw or 'unknown'}"
        raise UnsupportedArchitectureError(msg) from None


__all__ = [
    "apt_update",
    "backup_file",
    "daemon_reload",
    "detect_architecture",
    "enable_service",
    "ensure_system_user",
    "file_has_content",
    "group_exists",
    "install_if_missing",
    "install_packages",
    "install_unit",
    "is_package_installed",
    "parse_os_release",
    "read_os_release",
    "require_root",
    "require_supported_platform",
    "restart_service",
    "user_exists",
    "verify_service_active",
    "write_config",
]
