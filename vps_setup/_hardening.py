"""Stage 1: baseline hardening of a fresh host.

Updates packages, locks down SSH, creates the administrative account,
enables the firewall with only the SSH port open, installs intrusion
detection tools, disables legacy remote-shell units and turns on automatic
security updates.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vps_setup._actions import Action
from vps_setup._commands import apt_context, run_checked, run_command
from vps_setup._context import StageContext
from vps_setup._firewall import FirewallRule, ensure_rule
from vps_setup._host import (
    apt_update,
    daemon_reload,
    file_has_content,
    install_if_missing,
    install_packages,
    restart_service,
    user_exists,
    write_config,
)
from vps_setup._logging import log_success
from vps_setup._renderers import UNATTENDED_UPGRADES, harden_sshd_config

logger = logging.getLogger(__name__)

SSHD_CONFIG = "/etc/ssh/sshd_config"
UNATTENDED_CONFIG = "/etc/apt/apt.conf.d/50unattended-upgrades"
CORE_PACKAGES = ("ufw", "fail2ban", "sudo", "curl", "wget", "git", "htop", "ncdu")
SECURITY_TOOLS = ("rkhunter", "chkrootkit", "lynis")
LEGACY_UNITS = ("telnet.socket", "rsh.socket")
# Keep locally modified conffiles during unattended upgrades.
DPKG_KEEP_CONFIG = ("-o", "Dpkg::Options::=--force-confdef", "-o", "Dpkg::Options::=--force-confold")


def artifacts(ctx: StageContext) -> list[Path]:
    """Files whose presence shows hardening has completed."""

    return [ctx.host_path(UNATTENDED_CONFIG)]


def upgrade_system(ctx: StageContext) -> None:
    """Refresh the package index and apply pending upgrades."""

    apt_update(ctx)
    run_checked(ctx.runner, "apt-get", "upgrade", "-y", *DPKG_KEEP_CONFIG, context=apt_context())
    log_success(logger, "System packages updated")


def sshd_is_hardened(ctx: StageContext) -> bool:
    """Return ``True`` when ``sshd_config`` already carries the hardened directives."""

    path = ctx.host_path(SSHD_CONFIG)
    if not path.is_file():
        return False
    current = path.read_text(encoding="utf-8")
    return harden_sshd_config(current, ctx.config.ssh_port) == current


def harden_ssh(ctx: StageContext) -> None:
    """Rewrite ``sshd_config`` once ``sshd -t`` accepts the new content.

    The candidate is validated from a sibling file so a rejected config never
    replaces the live one.
    """

    path = ctx.host_path(SSHD_CONFIG)
    current = path.read_text(encoding="utf-8") if path.is_file() else ""
    hardened = harden_sshd_config(current, ctx.config.ssh_port)
    candidate = path.with_name(f"{path.name}.new")
    candidate.parent.mkdir(parents=True, exist_ok=True)
    candidate.write_text(hardened, encoding="utf-8")
    try:
        run_checked(ctx.runner, "sshd", "-t", "-f", str(candidate))
    finally:
        candidate.unlink(missing_ok=True)
    write_config(path, hardened)
    logger.info("SSH configured (port %d, root login and passwords disabled)", ctx.config.ssh_port)


def restart_ssh(ctx: StageContext) -> None:
    """Restart the SSH daemon so it listens on the configured port.

    Ubuntu releases with socket-activated SSH take the listening port from
    ``ssh.socket``, so that unit is restarted as well when it is active.
    """

    if run_command(ctx.runner, "systemctl", "is-active", "--quiet", "ssh.socket").success:
        daemon_reload(ctx)
        restart_service(ctx, "ssh.socket")
    restart_service(ctx, "ssh")


def ensure_admin_user(ctx: StageContext) -> None:
    """Create the key-only administrative account and grant it sudo."""

    username = ctx.config.admin_user
    if user_exists(ctx, username):
        logger.info("User %s already exists", username)
    else:
        run_checked(ctx.runner, "adduser", "--disabled-password", "--gecos", "", username)
        log_success(logger, "User %s created", username)
    run_checked(ctx.runner, "usermod", "-aG", "sudo", username)
    logger.info("User %s is in the sudo group", username)


def configure_firewall(ctx: StageContext) -> None:
    """Deny inbound by default, allow the SSH port and enable UFW."""

    run_checked(ctx.runner, "ufw", "default", "deny", "incoming")
    run_checked(ctx.runner, "ufw", "default", "allow", "outgoing")
    ensure_rule(ctx, FirewallRule(ctx.config.ssh_port, "tcp", comment="SSH"))
    run_checked(ctx.runner, "ufw", "--force", "enable")
    log_success(logger, "Firewall enabled")


def disable_legacy_services(ctx: StageContext) -> None:
    """Disable telnet and rsh socket units where they are installed."""

    for unit in LEGACY_UNITS:
        listing = run_command(ctx.runner, "systemctl", "list-unit-files", "--no-legend", unit)
        if not (listing.success and listing.stdout.strip()):
            logger.info("%s not present", unit)
            continue
        run_checked(ctx.runner, "systemctl", "disable", "--now", unit)
        log_success(logger, "%s disabled", unit)


def enable_unattended_upgrades(ctx: StageContext) -> None:
    """Install and configure automatic security updates."""

    install_if_missing(ctx, "unattended-upgrades")
    write_config(ctx.host_path(UNATTENDED_CONFIG), UNATTENDED_UPGRADES)
    run_checked(
        ctx.runner,
        "dpkg-reconfigure",
        "-f",
        "noninteractive",
        "-plow",
        "unattended-upgrades",
        context=apt_context(),
    )
    log_success(logger, "Automatic security updates enabled")


def clean_packages(ctx: StageContext) -> None:
    """Drop unused dependencies and the package cache."""

    run_checked(ctx.runner, "apt-get", "autoremove", "-y", context=apt_context())
    run_checked(ctx.runner, "apt-get", "clean")


def build_actions(ctx: StageContext) -> list[Action]:
    """Return the hardening steps in execution order."""

    return [
        Action("Updating system packages...", lambda: upgrade_system(ctx)),
        Action(
            "Installing essential packages...",
            lambda: install_packages(ctx, CORE_PACKAGES),
        ),
        Action(
            "Hardening SSH configuration...",
            lambda: harden_ssh(ctx),
            is_satisfied=lambda: sshd_is_hardened(ctx),
            satisfied_message="SSH configuration already hardened",
        ),
        Action("Restarting SSH service...", lambda: restart_ssh(ctx)),
        Action("Creating administrative user...", lambda: ensure_admin_user(ctx)),
        Action("Configuring firewall...", lambda: configure_firewall(ctx)),
        Action(
            "Installing intrusion detection tools...",
            lambda: install_packages(ctx, SECURITY_TOOLS),
        ),
        Action("Disabling legacy remote-shell services...", lambda: disable_legacy_services(ctx)),
        Action(
            "Enabling automatic security updates...",
            lambda: enable_unattended_upgrades(ctx),
            is_satisfied=lambda: file_has_content(
                ctx.host_path(UNATTENDED_CONFIG), UNATTENDED_UPGRADES
            ),
            satisfied_message="Automatic security updates already configured",
        ),
        Action("Cleaning up package cache...", lambda: clean_packages(ctx)),
    ]


__all__ = [
    "CORE_PACKAGES",
    "SECURITY_TOOLS",
    "SSHD_CONFIG",
    "UNATTENDED_CONFIG",
    "artifacts",
    "build_actions",
    "harden_ssh",
    "restart_ssh",
    "sshd_is_hardened",
]
