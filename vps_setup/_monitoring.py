"""Stage 4: Prometheus, node exporter, cAdvisor and Grafana.

Each component installs independently and is skipped when its binary or
package is already present. Configuration is re-rendered on every run and
only written, with a backup, when it differs from what is on disk. All
listeners are reachable from the VPN subnet only.
"""

from __future__ import annotations

import logging
from pathlib import Path

from vps_setup._actions import Action
from vps_setup._commands import run_checked, run_command
from vps_setup._context import StageContext
from vps_setup._firewall import FirewallRule, ensure_rules, vpn_only
from vps_setup._host import (
    apt_update,
    enable_service,
    ensure_system_user,
    file_has_content,
    install_if_missing,
    install_unit,
    is_package_installed,
    restart_service,
    write_config,
)
from vps_setup._logging import log_success
from vps_setup._releases import install_apt_key, install_release
from vps_setup._renderers import (
    apt_source,
    grafana_settings,
    patch_ini,
    prometheus_config,
    systemd_unit,
)

logger = logging.getLogger(__name__)

NODE_EXPORTER_DIR = "/opt/node_exporter"
NODE_EXPORTER_PORT = 9100
PROMETHEUS_DIR = "/opt/prometheus"
PROMETHEUS_CONFIG = f"{PROMETHEUS_DIR}/configs/prometheus.yml"
PROMETHEUS_PORT = 9090
CADVISOR_NAME = "cadvisor"
CADVISOR_IMAGE = "gcr.io/cadvisor/cadvisor:latest"
CADVISOR_PORT = 8080
FAIL2BAN_EXPORTER_PORT = 9191
GRAFANA_KEY_URL = "https://apt.grafana.com/gpg.key"
GRAFANA_KEYRING = "/etc/apt/keyrings/grafana.gpg"
GRAFANA_SOURCES = "/etc/apt/sources.list.d/grafana.list"
GRAFANA_INI = "/etc/grafana/grafana.ini"
CADVISOR_MOUNTS = (
    "/:/rootfs:ro",
    "/var/run:/var/run:ro",
    "/sys:/sys:ro",
    "/var/lib/docker/:/var/lib/docker:ro",
)


def artifacts(ctx: StageContext) -> list[Path]:
    """Files whose presence shows the monitoring stage has completed."""

    return [ctx.host_path(PROMETHEUS_CONFIG)]


# node exporter


def node_exporter_binary(ctx: StageContext) -> Path:
    return ctx.host_path(f"{NODE_EXPORTER_DIR}/node_exporter")


def install_node_exporter(ctx: StageContext) -> None:
    version = install_release(
        ctx, "prometheus/node_exporter", "node_exporter", ctx.host_path(NODE_EXPORTER_DIR)
    )
    log_success(logger, "Node Exporter %s installed", version)


def run_node_exporter(ctx: StageContext) -> None:
    """Run node exporter as its own unprivileged account under systemd."""

    ensure_system_user(ctx, "node_exporter")
    unit = systemd_unit(
        description="Node Exporter",
        user="node_exporter",
        exec_start=[f"{NODE_EXPORTER_DIR}/node_exporter"],
    )
    changed = install_unit(ctx, "node_exporter", unit)
    enable_service(ctx, "node_exporter")
    if changed:
        restart_service(ctx, "node_exporter")


# cAdvisor


def cadvisor_state(ctx: StageContext) -> str:
    """Return the container state (``running``, ``exited``...) or ``""`` if absent."""

    result = run_command(
        ctx.runner,
        "docker",
        "ps",
        "-a",
        "--filter",
        f"name=^{CADVISOR_NAME}$",
        "--format",
        "{{.State}}",
    )
    return result.stdout.strip() if result.success else ""


def cadvisor_run_args(ctx: StageContext) -> list[str]:
    """Return ``docker run`` arguments publishing cAdvisor on loopback and the VPN.

    Docker publishes ports ahead of UFW, so the listener is bound to those
    two addresses instead of all interfaces.
    """

    args = ["run", "-d", f"--name={CADVISOR_NAME}", "--restart=always"]
    for mount in CADVISOR_MOUNTS:
        args.extend(["-v", mount])
    for address in ("127.0.0.1", str(ctx.config.wg_server_ip)):
        args.extend(["-p", f"{address}:{CADVISOR_PORT}:{CADVISOR_PORT}"])
    args.append(CADVISOR_IMAGE)
    return args


def ensure_cadvisor(ctx: StageContext) -> None:
    """Create the cAdvisor container, or start it when it exists but is stopped."""

    state = cadvisor_state(ctx)
    if state == "running":
        logger.info("cAdvisor already running")
        return
    if state:
        run_checked(ctx.runner, "docker", "start", CADVISOR_NAME)
        log_success(logger, "cAdvisor started")
        return
    run_checked(ctx.runner, "docker", *cadvisor_run_args(ctx))
    log_success(logger, "cAdvisor installed on port %d", CADVISOR_PORT)


# Prometheus


def prometheus_binary(ctx: StageContext) -> Path:
    return ctx.host_path(f"{PROMETHEUS_DIR}/prometheus")


def install_prometheus(ctx: StageContext) -> None:
    version = install_release(
        ctx, "prometheus/prometheus", "prometheus", ctx.host_path(PROMETHEUS_DIR)
    )
    log_success(logger, "Prometheus %s installed", version)


def prometheus_unit(ctx: StageContext) -> str:
    return systemd_unit(
        description="Prometheus",
        user="prometheus",
        exec_start=[
            f"{PROMETHEUS_DIR}/prometheus",
            f"--config.file={PROMETHEUS_CONFIG}",
            f"--storage.tsdb.path={PROMETHEUS_DIR}/data",
            f"--storage.tsdb.retention.time={ctx.config.prometheus_retention}",
        ],
    )


def write_prometheus_config(ctx: StageContext) -> bool:
    """Render ``prometheus.yml``, keeping any alerting wiring already present.

    Returns
    -------
    bool
        ``True`` when the file was written.
    """

    path = ctx.host_path(PROMETHEUS_CONFIG)
    existing = path.read_text(encoding="utf-8") if path.is_file() else None
    rendered = prometheus_config(ctx.config, existing)
    if existing == rendered:
        logger.info("Prometheus configuration is current")
        return False
    write_config(path, rendered)
    log_success(logger, "Prometheus configuration written")
    return True


def run_prometheus(ctx: StageContext) -> None:
    """Configure Prometheus and run it under its own account."""

    root = ctx.host_path(PROMETHEUS_DIR)
    (root / "data").mkdir(parents=True, exist_ok=True)
    (root / "configs").mkdir(parents=True, exist_ok=True)
    ensure_system_user(ctx, "prometheus")
    config_changed = write_prometheus_config(ctx)
    unit_changed = install_unit(ctx, "prometheus", prometheus_unit(ctx))
    run_checked(ctx.runner, "chown", "-R", "prometheus:prometheus", str(root))
    enable_service(ctx, "prometheus")
    if config_changed or unit_changed:
        restart_service(ctx, "prometheus")


# Grafana


def install_grafana(ctx: StageContext) -> None:
    """Register the Grafana apt repository and install the server package."""

    if not ctx.host_path(GRAFANA_KEYRING).is_file():
        install_apt_key(ctx, GRAFANA_KEY_URL, GRAFANA_KEYRING)
    source = apt_source("https://apt.grafana.com", "stable", "main", GRAFANA_KEYRING)
    sources_path = ctx.host_path(GRAFANA_SOURCES)
    if not file_has_content(sources_path, source):
        write_config(sources_path, source)
    apt_update(ctx)
    install_if_missing(ctx, "grafana")


def configure_grafana(ctx: StageContext) -> None:
    """Patch the admin password, port and anonymous access, then run Grafana."""

    path = ctx.host_path(GRAFANA_INI)
    current = path.read_text(encoding="utf-8") if path.is_file() else ""
    patched = patch_ini(current, grafana_settings(ctx.config))
    changed = patched != current
    if changed:
        write_config(path, patched, mode=0o640)
        run_checked(ctx.runner, "chown", "root:grafana", str(path))
        log_success(logger, "Grafana configuration updated")
    enable_service(ctx, "grafana-server")
    if changed:
        restart_service(ctx, "grafana-server")


# firewall


def monitoring_rules(ctx: StageContext) -> list[FirewallRule]:
    """Return the VPN-only rules for every monitoring listener."""

    subnet = ctx.config.vpn_subnet
    return [
        vpn_only(NODE_EXPORTER_PORT, subnet, "Node Exporter"),
        vpn_only(CADVISOR_PORT, subnet, "cAdvisor"),
        vpn_only(PROMETHEUS_PORT, subnet, "Prometheus"),
        vpn_only(ctx.config.grafana_port, subnet, "Grafana"),
        vpn_only(FAIL2BAN_EXPORTER_PORT, subnet, "Fail2Ban Exporter"),
    ]


def build_actions(ctx: StageContext) -> list[Action]:
    """Return the monitoring steps in execution order."""

    return [
        Action(
            "Installing Node Exporter...",
            lambda: install_node_exporter(ctx),
            is_satisfied=lambda: node_exporter_binary(ctx).is_file(),
            satisfied_message="Node Exporter already installed",
        ),
        Action("Starting Node Exporter service...", lambda: run_node_exporter(ctx)),
        Action("Starting cAdvisor...", lambda: ensure_cadvisor(ctx)),
        Action(
            "Installing Prometheus...",
            lambda: install_prometheus(ctx),
            is_satisfied=lambda: prometheus_binary(ctx).is_file(),
            satisfied_message="Prometheus already installed",
        ),
        Action("Configuring Prometheus...", lambda: run_prometheus(ctx)),
        Action(
            "Installing Grafana...",
            lambda: install_grafana(ctx),
            is_satisfied=lambda: is_package_installed(ctx, "grafana"),
            satisfied_message="Grafana already installed",
        ),
        Action("Configuring Grafana...", lambda: configure_grafana(ctx)),
        Action("Opening VPN-only monitoring ports...", lambda: ensure_rules(ctx, monitoring_rules(ctx))),
    ]


__all__ = [
    "CADVISOR_PORT",
    "FAIL2BAN_EXPORTER_PORT",
    "GRAFANA_INI",
    "NODE_EXPORTER_DIR",
    "NODE_EXPORTER_PORT",
    "PROMETHEUS_CONFIG",
    "PROMETHEUS_DIR",
    "PROMETHEUS_PORT",
    "artifacts",
    "build_actions",
    "cadvisor_run_args",
    "ensure_cadvisor",
    "monitoring_rules",
    "prometheus_unit",
    "write_prometheus_config",
]
