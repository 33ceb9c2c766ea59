"""Stage 5: Alertmanager email routing and Prometheus alert rules."""

from __future__ import annotations

import logging
from pathlib import Path

from vps_setup._actions import Action
from vps_setup._commands import run_checked
from vps_setup._context import StageContext
from vps_setup._firewall import FirewallRule, ensure_rules, vpn_only
from vps_setup._host import (
    enable_service,
    ensure_system_user,
    file_has_content,
    install_unit,
    restart_service,
    write_config,
)
from vps_setup._logging import log_success
from vps_setup._monitoring import PROMETHEUS_CONFIG, PROMETHEUS_DIR
from vps_setup._releases import install_release
from vps_setup._renderers import alert_rules, alertmanager_config, systemd_unit, wire_alerting

logger = logging.getLogger(__name__)

ALERTMANAGER_DIR = "/opt/alertmanager"
ALERTMANAGER_CONFIG = f"{ALERTMANAGER_DIR}/alertmanager.yml"
ALERTMANAGER_PORT = 9093
ALERTMANAGER_CLUSTER_PORT = 9094
RULES_FILE = "prometheus_rules.yml"
RULES_PATH = f"{PROMETHEUS_DIR}/configs/{RULES_FILE}"


def artifacts(ctx: StageContext) -> list[Path]:
    """Files whose presence shows the alerting stage has completed."""

    return [ctx.host_path(ALERTMANAGER_CONFIG)]


def alertmanager_binary(ctx: StageContext) -> Path:
    return ctx.host_path(f"{ALERTMANAGER_DIR}/alertmanager")


def install_alertmanager(ctx: StageContext) -> None:
    version = install_release(
        ctx, "prometheus/alertmanager", "alertmanager", ctx.host_path(ALERTMANAGER_DIR)
    )
    log_success(logger, "Alertmanager %s installed", version)


def alertmanager_unit() -> str:
    return systemd_unit(
        description="Alertmanager",
        user="alertmanager",
        exec_start=[
            f"{ALERTMANAGER_DIR}/alertmanager",
            f"--config.file={ALERTMANAGER_CONFIG}",
            f"--storage.path={ALERTMANAGER_DIR}/data",
        ],
    )


def configure_alertmanager(ctx: StageContext) -> None:
    """Write the SMTP routing config, validate it and (re)start Alertmanager.

    Missing SMTP credentials are a soft condition: the daemon still runs but
    cannot deliver mail until the operator fills them in.
    """

    if not ctx.config.smtp_password:
        ctx.warn("SMTP_PASSWORD not set. Email alerts will not work until configured.")
    root = ctx.host_path(ALERTMANAGER_DIR)
    (root / "data").mkdir(parents=True, exist_ok=True)
    ensure_system_user(ctx, "alertmanager")

    config_path = ctx.host_path(ALERTMANAGER_CONFIG)
    write_config(config_path, alertmanager_config(ctx.config), mode=0o640)
    run_checked(ctx.runner, f"{root}/amtool", "check-config", str(config_path))
    run_checked(ctx.runner, "chown", "-R", "alertmanager:alertmanager", str(root))
    install_unit(ctx, "alertmanager", alertmanager_unit())
    enable_service(ctx, "alertmanager")
    restart_service(ctx, "alertmanager")
    log_success(logger, "Alertmanager configured on port %d", ALERTMANAGER_PORT)


def install_alert_rules(ctx: StageContext) -> None:
    """Write the rule file, wire it into Prometheus and restart Prometheus."""

    rules_path = ctx.host_path(RULES_PATH)
    rules = alert_rules()
    if not file_has_content(rules_path, rules):
        write_config(rules_path, rules)
    prometheus_root = ctx.host_path(PROMETHEUS_DIR)
    run_checked(ctx.runner, f"{prometheus_root}/promtool", "check", "rules", str(rules_path))

    config_path = ctx.host_path(PROMETHEUS_CONFIG)
    current = config_path.read_text(encoding="utf-8")
    wired = wire_alerting(current, RULES_FILE, f"localhost:{ALERTMANAGER_PORT}")
    if wired != current:
        write_config(config_path, wired)
        log_success(logger, "Prometheus configured to load alert rules")
    run_checked(ctx.runner, "chown", "-R", "prometheus:prometheus", str(prometheus_root))
    restart_service(ctx, "prometheus")


def alerting_rules(ctx: StageContext) -> list[FirewallRule]:
    subnet = ctx.config.vpn_subnet
    return [
        vpn_only(ALERTMANAGER_PORT, subnet, "Alertmanager"),
        vpn_only(ALERTMANAGER_CLUSTER_PORT, subnet, "Alertmanager cluster"),
    ]


def build_actions(ctx: StageContext) -> list[Action]:
    """Return the alerting steps in execution order."""

    return [
        Action(
            "Installing Alertmanager...",
            lambda: install_alertmanager(ctx),
            is_satisfied=lambda: alertmanager_binary(ctx).is_file(),
            satisfied_message="Alertmanager already installed",
        ),
        Action("Configuring Alertmanager...", lambda: configure_alertmanager(ctx)),
        Action("Installing alert rules...", lambda: install_alert_rules(ctx)),
        Action("Opening VPN-only alerting ports...", lambda: ensure_rules(ctx, alerting_rules(ctx))),
    ]


__all__ = [
    "ALERTMANAGER_CLUSTER_PORT",
    "ALERTMANAGER_CONFIG",
    "ALERTMANAGER_DIR",
    "ALERTMANAGER_PORT",
    "RULES_PATH",
    "alerting_rules",
    "artifacts",
    "build_actions",
    "configure_alertmanager",
    "install_alert_rules",
]
