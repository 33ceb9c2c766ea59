"""The ordered stage registry and the post-run connection summary."""

from __future__ import annotations

import logging

from vps_setup import _alerting, _docker, _hardening, _monitoring, _wireguard
from vps_setup._context import StageContext
from vps_setup._pipeline import Stage

logger = logging.getLogger(__name__)

STAGES: tuple[Stage, ...] = (
    Stage(
        ordinal=1,
        name="hardening",
        title="Initial Server Hardening",
        depends_on=(),
        artifacts=_hardening.artifacts,
        build_actions=_hardening.build_actions,
    ),
    Stage(
        ordinal=2,
        name="docker",
        title="Docker Installation",
        depends_on=("hardening",),
        artifacts=_docker.artifacts,
        build_actions=_docker.build_actions,
    ),
    Stage(
        ordinal=3,
        name="wireguard",
        title="WireGuard VPN Setup",
        depends_on=("hardening",),
        artifacts=_wireguard.artifacts,
        build_actions=_wireguard.build_actions,
    ),
    Stage(
        ordinal=4,
        name="monitoring",
        title="Monitoring Stack Setup",
        depends_on=("hardening", "docker", "wireguard"),
        artifacts=_monitoring.artifacts,
        build_actions=_monitoring.build_actions,
    ),
    Stage(
        ordinal=5,
        name="alerting",
        title="Alerting Setup",
        depends_on=("monitoring",),
        artifacts=_alerting.artifacts,
        build_actions=_alerting.build_actions,
    ),
)

STAGES_BY_NAME: dict[str, Stage] = {stage.name: stage for stage in STAGES}


def render_summary(ctx: StageContext) -> list[str]:
    """Return the connection details an operator needs after a full run.

    Examples
    --------
    >>> from pathlib import Path
    >>> from vps_setup._config import ProvisionConfig
    >>> ctx = StageContext(ProvisionConfig(), runner=None, session=None, workdir=Path("/srv"))
    >>> render_summary(ctx)[1]
    'SSH: ssh -p 2222 vpsadmin@<server-ip>'
    """

    config = ctx.config
    vpn_ip = config.wg_server_ip
    host = config.wg_endpoint or "<server-ip>"
    lines = [
        "Access information:",
        f"SSH: ssh -p {config.ssh_port} {config.admin_user}@{host}",
        f"WireGuard server: {config.server_interface} (udp/{config.wg_port})",
    ]
    for client in config.wg_clients:
        path = _wireguard.client_config_path(ctx, client.name)
        lines.append(f"WireGuard client {client.name}: {client.address.ip} ({path})")
    lines.extend(
        [
            "Monitoring (connect to the VPN first):",
            f"  Grafana:      http://{vpn_ip}:{config.grafana_port}"
            f" (admin / {config.grafana_admin_password})",
            f"  Prometheus:   http://{vpn_ip}:{_monitoring.PROMETHEUS_PORT}",
            f"  Alertmanager: http://{vpn_ip}:{_alerting.ALERTMANAGER_PORT}",
            f"  cAdvisor:     http://{vpn_ip}:{_monitoring.CADVISOR_PORT}",
        ]
    )
    if ctx.warnings:
        lines.append("Warnings:")
        lines.extend(f"  - {warning}" for warning in ctx.warnings)
    return lines


def log_summary(ctx: StageContext) -> None:
    """Write :func:`render_summary` to the log, one line per record."""

    for line in render_summary(ctx):
        logger.info("%s", line)


__all__ = ["STAGES", "STAGES_BY_NAME", "log_summary", "render_summary"]
