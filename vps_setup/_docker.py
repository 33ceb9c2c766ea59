"""Stage 2: Docker Engine from the upstream apt repository."""

from __future__ import annotations

import logging
from pathlib import Path

from vps_setup._actions import Action
from vps_setup._commands import run_checked, run_command
from vps_setup._context import StageContext
from vps_setup._host import (
    apt_update,
    detect_architecture,
    enable_service,
    file_has_content,
    group_exists,
    install_packages,
    read_os_release,
    restart_service,
    user_exists,
    write_config,
)
from vps_setup._logging import log_success
from vps_setup._releases import install_apt_key
from vps_setup._renderers import apt_source, docker_daemon_config

logger = logging.getLogger(__name__)

DOCKER_KEYRING = "/etc/apt/keyrings/docker.gpg"
DOCKER_SOURCES = "/etc/apt/sources.list.d/docker.list"
DAEMON_CONFIG = "/etc/docker/daemon.json"
DOCKER_GROUP = "docker"
PREREQUISITES = ("ca-certificates", "curl", "gnupg", "lsb-release")
ENGINE_PACKAGES = ("docker-ce", "docker-ce-cli", "containerd.io", "docker-compose-plugin")


def artifacts(ctx: StageContext) -> list[Path]:
    """Files whose presence shows the Docker stage has completed."""

    return [ctx.host_path(DAEMON_CONFIG)]


def repository_url(distro: str) -> str:
    """Return the Docker apt repository for ``distro`` (``ubuntu``/``debian``)."""

    return f"https://download.docker.com/linux/{distro}"


def docker_source_line(ctx: StageContext) -> str:
    """Render the apt source entry for this host's distribution and codename."""

    release = read_os_release(ctx)
    distro = release.get("ID", "").lower()
    codename = release.get("VERSION_CODENAME", "")
    arch = detect_architecture(ctx)
    return apt_source(repository_url(distro), codename, "stable", DOCKER_KEYRING, arch)


def add_signing_key(ctx: StageContext) -> None:
    distro = read_os_release(ctx).get("ID", "").lower()
    install_apt_key(ctx, f"{repository_url(distro)}/gpg", DOCKER_KEYRING)


def add_repository(ctx: StageContext) -> None:
    write_config(ctx.host_path(DOCKER_SOURCES), docker_source_line(ctx))
    log_success(logger, "Docker repository added")


def install_engine(ctx: StageContext) -> None:
    apt_update(ctx)
    install_packages(ctx, ENGINE_PACKAGES)


def ensure_docker_group(ctx: StageContext) -> None:
    run_checked(ctx.runner, "groupadd", DOCKER_GROUP)
    log_success(logger, "Group %s created", DOCKER_GROUP)


def grant_docker_access(ctx: StageContext) -> None:
    """Add the configured user to the ``docker`` group.

    A missing account is a soft condition: it is recorded as a warning and
    the stage carries on.
    """

    username = ctx.config.docker_user
    if not user_exists(ctx, username):
        ctx.warn(f"User {username} does not exist, skipping docker group membership")
        return
    run_checked(ctx.runner, "usermod", "-aG", DOCKER_GROUP, username)
    log_success(logger, "User %s added to %s group", username, DOCKER_GROUP)


def configure_daemon(ctx: StageContext) -> None:
    """Write ``daemon.json``, restarting a running engine so it takes effect."""

    write_config(ctx.host_path(DAEMON_CONFIG), docker_daemon_config())
    log_success(logger, "Docker daemon configured")
    if run_command(ctx.runner, "systemctl", "is-active", "--quiet", "docker").success:
        restart_service(ctx, "docker")


def start_engine(ctx: StageContext) -> None:
    """Enable Docker at boot, start it and log the engine version."""

    enable_service(ctx, "docker")
    version = run_command(ctx.runner, "docker", "--version")
    if version.success:
        logger.info("%s", version.stdout.strip())


def build_actions(ctx: StageContext) -> list[Action]:
    """Return the Docker installation steps in execution order."""

    return [
        Action("Installing prerequisites...", lambda: install_packages(ctx, PREREQUISITES)),
        Action(
            "Adding Docker GPG key...",
            lambda: add_signing_key(ctx),
            is_satisfied=lambda: ctx.host_path(DOCKER_KEYRING).is_file(),
            satisfied_message="Docker GPG key already present",
        ),
        Action(
            "Adding Docker repository...",
            lambda: add_repository(ctx),
            is_satisfied=lambda: file_has_content(
                ctx.host_path(DOCKER_SOURCES), docker_source_line(ctx)
            ),
            satisfied_message="Docker repository already configured",
        ),
        Action("Installing Docker Engine...", lambda: install_engine(ctx)),
        Action(
            "Creating docker group...",
            lambda: ensure_docker_group(ctx),
            is_satisfied=lambda: group_exists(ctx, DOCKER_GROUP),
            satisfied_message="Group docker already exists",
        ),
        Action("Granting docker access...", lambda: grant_docker_access(ctx)),
        Action(
            "Configuring Docker daemon...",
            lambda: configure_daemon(ctx),
            is_satisfied=lambda: file_has_content(
                ctx.host_path(DAEMON_CONFIG), docker_daemon_config()
            ),
            satisfied_message="Docker daemon already configured",
        ),
        Action("Starting Docker service...", lambda: start_engine(ctx)),
    ]


__all__ = [
    "DAEMON_CONFIG",
    "DOCKER_KEYRING",
    "DOCKER_SOURCES",
    "ENGINE_PACKAGES",
    "artifacts",
    "build_actions",
    "docker_source_line",
    "grant_docker_access",
]
