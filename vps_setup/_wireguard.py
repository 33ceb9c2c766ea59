"""Stage 3: WireGuard VPN server with NAT and per-client configs.

Keys are generated once and kept; the interface config is re-rendered from
the stored keys and pushed into a running tunnel with ``wg syncconf`` so a
re-run never drops connected peers.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from vps_setup._actions import Action
from vps_setup._commands import CommandContext, run_checked, run_command
from vps_setup._context import StageContext
from vps_setup._errors import PreconditionError
from vps_setup._firewall import FirewallRule, ensure_rule
from vps_setup._host import (
    apt_update,
    file_has_content,
    install_if_missing,
    install_packages,
    write_config,
)
from vps_setup._keys import ensure_keypair, keypair_exists, read_keypair
from vps_setup._logging import log_success
from vps_setup._releases import lookup_public_ip
from vps_setup._renderers import IP_FORWARDING, WireGuardPeer, wireguard_config

logger = logging.getLogger(__name__)

WIREGUARD_DIR = "/etc/wireguard"
SYSCTL_CONFIG = "/etc/sysctl.d/99-wireguard.conf"
IPTABLES_RULES = "/etc/iptables/rules.v4"
WIREGUARD_PACKAGES = ("wireguard", "wireguard-tools")
SERVER_KEY_PREFIX = "server"
CLIENT_KEEPALIVE = 25
_COUNTERS = re.compile(r"\[\d+:\d+\]")
# Answers iptables-persistent would otherwise prompt for during install.
IPTABLES_PERSISTENT_SELECTIONS = (
    "iptables-persistent iptables-persistent/autosave_v4 boolean true\n"
    "iptables-persistent iptables-persistent/autosave_v6 boolean true\n"
)


def client_key_prefix(name: str) -> str:
    """Return the key-file prefix for client ``name``.

    Examples
    --------
    >>> client_key_prefix("laptop")
    'client_laptop'
    """

    return f"client_{name}"


def interface_config_path(ctx: StageContext) -> Path:
    return ctx.host_path(f"{WIREGUARD_DIR}/{ctx.config.wg_interface}.conf")


def artifacts(ctx: StageContext) -> list[Path]:
    """Files whose presence shows the WireGuard stage has completed."""

    return [interface_config_path(ctx)]


def install_wireguard(ctx: StageContext) -> None:
    apt_update(ctx)
    install_packages(ctx, WIREGUARD_PACKAGES)


def all_keys_exist(ctx: StageContext) -> bool:
    directory = ctx.host_path(WIREGUARD_DIR)
    prefixes = [SERVER_KEY_PREFIX] + [
        client_key_prefix(client.name) for client in ctx.config.wg_clients
    ]
    return all(keypair_exists(directory, prefix) for prefix in prefixes)


def generate_keys(ctx: StageContext) -> None:
    """Create the server and client keypairs that are not on disk yet."""

    directory = ctx.host_path(WIREGUARD_DIR)
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    ensure_keypair(directory, SERVER_KEY_PREFIX)
    for client in ctx.config.wg_clients:
        ensure_keypair(directory, client_key_prefix(client.name))


def render_server_config(ctx: StageContext) -> str:
    """Render the interface config from the stored keys."""

    config = ctx.config
    directory = ctx.host_path(WIREGUARD_DIR)
    server = read_keypair(directory, SERVER_KEY_PREFIX)
    peers = [
        WireGuardPeer(
            public_key=read_keypair(directory, client_key_prefix(client.name)).public_key,
            allowed_ips=f"{client.address.ip}/32",
        )
        for client in config.wg_clients
    ]
    return wireguard_config(
        private_key=server.private_key,
        address=str(config.server_interface),
        listen_port=config.wg_port,
        peers=peers,
    )


def write_server_config(ctx: StageContext) -> None:
    write_config(interface_config_path(ctx), render_server_config(ctx), mode=0o600)
    log_success(logger, "Server configuration written to %s", interface_config_path(ctx))


def interface_is_up(ctx: StageContext) -> bool:
    return run_command(ctx.runner, "wg", "show", ctx.config.wg_interface).success


def bring_up_interface(ctx: StageContext) -> None:
    """Start the tunnel, or reload peers into it when it is already up."""

    interface = ctx.config.wg_interface
    if interface_is_up(ctx):
        stripped = run_checked(ctx.runner, "wg-quick", "strip", interface)
        run_checked(
            ctx.runner,
            "wg",
            "syncconf",
            interface,
            "/dev/stdin",
            context=CommandContext(stdin=stripped),
        )
        logger.info("WireGuard interface %s already up, configuration reloaded", interface)
    else:
        run_checked(ctx.runner, "wg-quick", "up", interface)
        log_success(logger, "WireGuard interface %s is up", interface)
    run_checked(ctx.runner, "systemctl", "enable", f"wg-quick@{interface}")


def enable_forwarding(ctx: StageContext) -> None:
    """Persist IPv4 forwarding and apply it to the running kernel."""

    path = ctx.host_path(SYSCTL_CONFIG)
    write_config(path, IP_FORWARDING)
    run_checked(ctx.runner, "sysctl", "-p", str(path))
    log_success(logger, "IP forwarding enabled")


def parse_default_interface(route_output: str) -> str:
    """Return the egress device named in ``ip route show default`` output.

    Raises
    ------
    PreconditionError
        When no default route is present.

    Examples
    --------
    >>> parse_default_interface("default via 203.0.113.1 dev eth0 proto dhcp metric 100")
    'eth0'
    """

    for line in route_output.splitlines():
        tokens = line.split()
        if "dev" in tokens[:-1]:
            return tokens[tokens.index("dev") + 1]
    raise PreconditionError("Could not detect the default network interface")


def masquerade_args(ctx: StageContext, egress: str) -> list[str]:
    return [
        "POSTROUTING",
        "-s",
        str(ctx.config.vpn_subnet),
        "-o",
        egress,
        "-j",
        "MASQUERADE",
    ]


def _rule_lines(dump: str) -> list[str]:
    # iptables-save stamps each dump with a dated header and packet counters.
    return [
        _COUNTERS.sub("", line)
        for line in dump.splitlines()
        if line and not line.startswith("#")
    ]


def configure_nat(ctx: StageContext) -> None:
    """Masquerade VPN traffic on the default interface and persist the rules."""

    routes = run_checked(ctx.runner, "ip", "route", "show", "default")
    egress = parse_default_interface(routes)
    logger.info("Detected default interface: %s", egress)
    rule = masquerade_args(ctx, egress)
    if run_command(ctx.runner, "iptables", "-t", "nat", "-C", *rule).success:
        logger.info("NAT rule already present")
    else:
        run_checked(ctx.runner, "iptables", "-t", "nat", "-A", *rule)
        log_success(logger, "NAT rule added")

    run_checked(
        ctx.runner,
        "debconf-set-selections",
        context=CommandContext(stdin=IPTABLES_PERSISTENT_SELECTIONS),
    )
    install_if_missing(ctx, "iptables-persistent")
    saved = run_checked(ctx.runner, "iptables-save")
    rules_path = ctx.host_path(IPTABLES_RULES)
    if rules_path.is_file() and _rule_lines(rules_path.read_text(encoding="utf-8")) == _rule_lines(saved):
        logger.info("Saved firewall rules are current")
        return
    write_config(rules_path, saved)
    log_success(logger, "Firewall rules persisted to %s", IPTABLES_RULES)


def resolve_endpoint(ctx: StageContext) -> str:
    """Return the host clients should dial, from config or the IP-echo service."""

    if ctx.config.wg_endpoint:
        return ctx.config.wg_endpoint
    address = lookup_public_ip(ctx)
    logger.info("Detected public IP address: %s", address)
    return address


def client_config_path(ctx: StageContext, name: str) -> Path:
    return ctx.output_path(ctx.config.wg_client_config_dir) / f"wg-{name}.conf"


def write_client_configs(ctx: StageContext) -> None:
    """Emit one ready-to-import config per client for out-of-band delivery."""

    config = ctx.config
    directory = ctx.host_path(WIREGUARD_DIR)
    server = read_keypair(directory, SERVER_KEY_PREFIX)
    endpoint = f"{resolve_endpoint(ctx)}:{config.wg_port}"
    for client in config.wg_clients:
        keys = read_keypair(directory, client_key_prefix(client.name))
        content = wireguard_config(
            private_key=keys.private_key,
            address=str(client.address),
            dns=config.wg_dns,
            peers=[
                WireGuardPeer(
                    public_key=server.public_key,
                    allowed_ips="0.0.0.0/0",
                    endpoint=endpoint,
                    persistent_keepalive=CLIENT_KEEPALIVE,
                )
            ],
        )
        path = client_config_path(ctx, client.name)
        write_config(path, content, mode=0o600)
        log_success(logger, "Client configuration written to %s", path)


def open_listen_port(ctx: StageContext) -> None:
    ensure_rule(ctx, FirewallRule(ctx.config.wg_port, "udp", comment="WireGuard VPN"))


def build_actions(ctx: StageContext) -> list[Action]:
    """Return the WireGuard steps in execution order."""

    return [
        Action("Installing WireGuard...", lambda: install_wireguard(ctx)),
        Action(
            "Generating keys...",
            lambda: generate_keys(ctx),
            is_satisfied=lambda: all_keys_exist(ctx),
            satisfied_message="Keys already exist, keeping them",
        ),
        Action(
            "Writing server configuration...",
            lambda: write_server_config(ctx),
            is_satisfied=lambda: file_has_content(
                interface_config_path(ctx), render_server_config(ctx)
            ),
            satisfied_message="Server configuration is current",
        ),
        Action("Starting WireGuard interface...", lambda: bring_up_interface(ctx)),
        Action(
            "Enabling IP forwarding...",
            lambda: enable_forwarding(ctx),
            is_satisfied=lambda: file_has_content(ctx.host_path(SYSCTL_CONFIG), IP_FORWARDING),
            satisfied_message="IP forwarding already enabled",
        ),
        Action("Configuring NAT...", lambda: configure_nat(ctx)),
        Action("Writing client configurations...", lambda: write_client_configs(ctx)),
        Action("Opening WireGuard port...", lambda: open_listen_port(ctx)),
    ]


__all__ = [
    "IPTABLES_RULES",
    "SYSCTL_CONFIG",
    "WIREGUARD_DIR",
    "artifacts",
    "build_actions",
    "client_config_path",
    "client_key_prefix",
    "configure_nat",
    "parse_default_interface",
    "render_server_config",
]
