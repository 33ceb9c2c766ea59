"""Load the immutable provisioning configuration.

Values come from the ``.env`` key=value file in the working directory, then
the process environment, then the documented defaults. The resulting
:class:`ProvisionConfig` is built once and handed to every stage.
"""

from __future__ import annotations

import ipaddress
import os
import shutil
from collections import abc as cabc
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

from vps_setup._errors import ConfigError
from vps_setup._input_resolution import InputResolution, resolve_input

DEFAULT_ENV_FILE = Path(".env")
EXAMPLE_ENV_NAME = ".env.example"

# Ordered so the rendered example file groups related keys together.
RESOLUTIONS: dict[str, InputResolution] = {
    "ssh_port": InputResolution(env_key="SSH_PORT", default="2222", aliases=("ADMIN_PORT",)),
    "admin_user": InputResolution(env_key="NEW_USERNAME", default="vpsadmin"),
    "docker_user": InputResolution(env_key="DOCKER_USER"),
    "wg_interface": InputResolution(env_key="WG_INTERFACE", default="wg0"),
    "wg_port": InputResolution(env_key="WG_PORT", default="51820"),
    "vpn_subnet": InputResolution(env_key="VPN_SUBNET", default="10.0.0.0/24", aliases=("WG_SUBNET",)),
    "wg_server_ip": InputResolution(env_key="WG_SERVER_IP", default="10.0.0.1"),
    "wg_client_names": InputResolution(env_key="WG_CLIENT_NAME", default="laptop"),
    "wg_client_ip": InputResolution(env_key="WG_CLIENT_IP", default="10.0.0.2/32"),
    "wg_dns": InputResolution(env_key="WG_DNS", default="1.1.1.1,8.8.8.8"),
    "wg_endpoint": InputResolution(env_key="WG_ENDPOINT", default=""),
    "wg_client_config_dir": InputResolution(env_key="WG_CLIENT_CONFIG_DIR", default="configs"),
    "prometheus_retention": InputResolution(env_key="PROMETHEUS_RETENTION", default="15d"),
    "scrape_interval": InputResolution(env_key="SCRAPE_INTERVAL", default="15s"),
    "grafana_port": InputResolution(env_key="GRAFANA_PORT", default="3000"),
    "grafana_admin_password": InputResolution(env_key="GRAFANA_ADMIN_PASSWORD", default="changeme123"),
    "smtp_server": InputResolution(env_key="SMTP_SERVER", default="smtp.gmail.com"),
    "smtp_port": InputResolution(env_key="SMTP_PORT", default="587"),
    "smtp_username": InputResolution(env_key="SMTP_USERNAME", default=""),
    "smtp_password": InputResolution(env_key="SMTP_PASSWORD", default=""),
    "alert_from": InputResolution(env_key="ALERT_FROM", default="noreply@vps.local"),
    "alert_to": InputResolution(env_key="ALERT_TO", default="admin@localhost"),
    "log_file": InputResolution(env_key="LOG_FILE", default="/var/log/vps_setup.log"),
    "http_timeout": InputResolution(env_key="HTTP_TIMEOUT", default="30"),
}


@dataclass(frozen=True, slots=True)
class WireGuardClient:
    """A VPN peer and the tunnel address assigned to it."""

    name: str
    address: ipaddress.IPv4Interface


@dataclass(frozen=True, slots=True)
class ProvisionConfig:
    """Every tunable consumed by the provisioning stages."""

    ssh_port: int = 2222
    admin_user: str = "vpsadmin"
    docker_user: str = "vpsadmin"
    wg_interface: str = "wg0"
    wg_port: int = 51820
    vpn_subnet: ipaddress.IPv4Network = ipaddress.IPv4Network("10.0.0.0/24")
    wg_server_ip: ipaddress.IPv4Address = ipaddress.IPv4Address("10.0.0.1")
    wg_clients: tuple[WireGuardClient, ...] = (
        WireGuardClient("laptop", ipaddress.IPv4Interface("10.0.0.2/32")),
    )
    wg_dns: tuple[str, ...] = ("1.1.1.1", "8.8.8.8")
    wg_endpoint: str | None = None
    wg_client_config_dir: Path = Path("configs")
    prometheus_retention: str = "15d"
    scrape_interval: str = "15s"
    grafana_port: int = 3000
    grafana_admin_password: str = "changeme123"
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    alert_from: str = "noreply@vps.local"
    alert_to: str = "admin@localhost"
    log_file: Path = Path("/var/log/vps_setup.log")
    http_timeout: float = 30.0

    @property
    def server_interface(self) -> ipaddress.IPv4Interface:
        """Return the server tunnel address with the subnet prefix length."""

        return ipaddress.IPv4Interface(
            f"{self.wg_server_ip}/{self.vpn_subnet.prefixlen}"
        )


def _parse_port(raw: str, key: str) -> int:
    """Parse a TCP/UDP port number.

    Examples
    --------
    >>> _parse_port("2222", "SSH_PORT")
    2222
    """

    try:
        port = int(raw)
    except ValueError as exc:
        msg = f"{key} must be an integer, got: {raw!r}"
        raise ConfigError(msg) from exc
    if not 1 <= port <= 65535:
        msg = f"{key} must be between 1 and 65535, got: {port}"
        raise ConfigError(msg)
    return port


def _parse_timeout(raw: str) -> float:
    try:
        timeout = float(raw)
    except ValueError as exc:
        msg = f"HTTP_TIMEOUT must be a number, got: {raw!r}"
        raise ConfigError(msg) from exc
    if timeout <= 0:
        msg = f"HTTP_TIMEOUT must be positive, got: {timeout}"
        raise ConfigError(msg)
    return timeout


def _split_list(raw: str) -> tuple[str, ...]:
    """Split a comma-separated list, dropping blanks.

    Examples
    --------
    >>> _split_list("1.1.1.1, 8.8.8.8,")
    ('1.1.1.1', '8.8.8.8')
    """

    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _parse_network(raw: str) -> ipaddress.IPv4Network:
    try:
        return ipaddress.IPv4Network(raw, strict=True)
    except ValueError as exc:
        msg = f"VPN_SUBNET must be an IPv4 network, got: {raw!r}"
        raise ConfigError(msg) from exc


def _parse_server_ip(raw: str, subnet: ipaddress.IPv4Network) -> ipaddress.IPv4Address:
    try:
        address = ipaddress.IPv4Address(raw)
    except ValueError as exc:
        msg = f"WG_SERVER_IP must be an IPv4 address, got: {raw!r}"
        raise ConfigError(msg) from exc
    if address not in subnet:
        msg = f"WG_SERVER_IP {address} is outside VPN_SUBNET {subnet}"
        raise ConfigError(msg)
    return address


def _parse_clients(
    names_raw: str,
    first_ip_raw: str,
    subnet: ipaddress.IPv4Network,
    server_ip: ipaddress.IPv4Address,
) -> tuple[WireGuardClient, ...]:
    """Assign consecutive tunnel addresses to the configured client names."""

    names = _split_list(names_raw)
    if not names:
        raise ConfigError("WG_CLIENT_NAME must name at least one client")
    if len(set(names)) != len(names):
        msg = f"WG_CLIENT_NAME contains duplicate names: {names_raw!r}"
        raise ConfigError(msg)
    raw_ip = first_ip_raw if "/" in first_ip_raw else f"{first_ip_raw}/32"
    try:
        first = ipaddress.IPv4Interface(raw_ip)
    except ValueError as exc:
        msg = f"WG_CLIENT_IP must be an IPv4 address, got: {first_ip_raw!r}"
        raise ConfigError(msg) from exc

    clients: list[WireGuardClient] = []
    for offset, name in enumerate(names):
        address = first.ip + offset
        if address not in subnet or address == server_ip:
            msg = f"Client {name!r} address {address} is not usable in {subnet}"
            raise ConfigError(msg)
        clients.append(
            WireGuardClient(name, ipaddress.IPv4Interface(f"{address}/{first.network.prefixlen}"))
        )
    return tuple(clients)


def read_env_file(path: Path) -> dict[str, str | None]:
    """Return the key=value pairs of ``path``, or an empty mapping if absent."""

    if not path.is_file():
        return {}
    return dict(dotenv_values(path))


def build_config(
    sources: cabc.Sequence[cabc.Mapping[str, str | None]],
) -> ProvisionConfig:
    """Build a :class:`ProvisionConfig` from layered key=value sources.

    Examples
    --------
    >>> build_config([{"SSH_PORT": "2200"}]).ssh_port
    2200
    >>> build_config([{}]).vpn_subnet
    IPv4Network('10.0.0.0/24')
    """

    raw: dict[str, str | None] = {
        name: resolve_input(None, resolution, sources)
        for name, resolution in RESOLUTIONS.items()
    }

    def value(name: str) -> str:
        return (raw[name] or "").strip()

    subnet = _parse_network(value("vpn_subnet"))
    server_ip = _parse_server_ip(value("wg_server_ip"), subnet)
    admin_user = value("admin_user")
    log_file = Path(value("log_file"))
    if not log_file.is_absolute():
        msg = f"LOG_FILE must be an absolute path, got: {log_file}"
        raise ConfigError(msg)

    return ProvisionConfig(
        ssh_port=_parse_port(value("ssh_port"), "SSH_PORT"),
        admin_user=admin_user,
        docker_user=value("docker_user") or admin_user,
        wg_interface=value("wg_interface"),
        wg_port=_parse_port(value("wg_port"), "WG_PORT"),
        vpn_subnet=subnet,
        wg_server_ip=server_ip,
        wg_clients=_parse_clients(
            value("wg_client_names"), value("wg_client_ip"), subnet, server_ip
        ),
        wg_dns=_split_list(value("wg_dns")),
        wg_endpoint=value("wg_endpoint") or None,
        wg_client_config_dir=Path(value("wg_client_config_dir")),
        prometheus_retention=value("prometheus_retention"),
        scrape_interval=value("scrape_interval"),
        grafana_port=_parse_port(value("grafana_port"), "GRAFANA_PORT"),
        grafana_admin_password=value("grafana_admin_password"),
        smtp_server=value("smtp_server"),
        smtp_port=_parse_port(value("smtp_port"), "SMTP_PORT"),
        smtp_username=value("smtp_username"),
        smtp_password=value("smtp_password"),
        alert_from=value("alert_from"),
        alert_to=value("alert_to"),
        log_file=log_file,
        http_timeout=_parse_timeout(value("http_timeout")),
    )


def load_config(
    env_file: Path = DEFAULT_ENV_FILE,
    environ: cabc.Mapping[str, str] | None = None,
) -> ProvisionConfig:
    """Load configuration with file values overriding the process environment."""

    return build_config([read_env_file(env_file), environ if environ is not None else os.environ])


def render_env_example() -> str:
    """Return a key=value template listing every key with its default."""

    lines = ["# VPS provisioning configuration. Edit, then re-run.", ""]
    for resolution in RESOLUTIONS.values():
        default = resolution.default
        if default is None:
            lines.append(f"# {resolution.env_key}=  (defaults to NEW_USERNAME)")
        else:
            lines.append(f"{resolution.env_key}={default}")
    return "\n".join(lines) + "\n"


def ensure_env_file(env_file: Path) -> None:
    """Create ``env_file`` from the example template when it is missing.

    Raises
    ------
    ConfigError
        When the file had to be created; the operator must review it and
        re-run.
    """

    if env_file.is_file():
        return
    example = env_file.with_name(EXAMPLE_ENV_NAME)
    if example.is_file():
        shutil.copyfile(example, env_file)
    else:
        env_file.write_text(render_env_example(), encoding="utf-8")
    env_file.chmod(0o600)
    msg = (
        f"{env_file} was not found and has been created from {EXAMPLE_ENV_NAME}; "
        "edit it with your configuration values and run again"
    )
    raise ConfigError(msg)


__all__ = [
    "DEFAULT_ENV_FILE",
    "ProvisionConfig",
    "WireGuardClient",
    "build_config",
    "ensure_env_file",
    "load_config",
    "read_env_file",
    "render_env_example",
]
