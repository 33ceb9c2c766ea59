"""Render the configuration files written by the provisioning stages."""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from dataclasses import dataclass

import yaml

from vps_setup._config import ProvisionConfig

UNATTENDED_UPGRADES = """\
Unattended-Upgrade::Allowed-Origins {
    "${distro_id}:${distro_codename}";
    "${distro_id}:${distro_codename}-security";
    "${distro_id}ESMApps:${distro_codename}-apps-security";
    "${distro_id}ESMInfrastructure:${distro_codename}-infra-security";
};

Unattended-Upgrade::AutoFixInterruptedDpkg "true";
Unattended-Upgrade::MinimalSteps "true";
Unattended-Upgrade::Remove-Unused-Dependencies "true";
Unattended-Upgrade::Automatic-Reboot "false";
"""

IP_FORWARDING = "net.ipv4.ip_forward=1\nnet.ipv4.conf.all.forwarding=1\n"

_SSH_DIRECTIVE = re.compile(r"^\s*#?\s*(?P<key>[A-Za-z]+)(?:\s+(?P<value>.*))?$")
_MATCH_BLOCK = re.compile(r"^\s*Match\s", re.IGNORECASE)


def harden_sshd_config(text: str, port: int) -> str:
    """Disable root and password logins and move SSH to ``port``.

    Commented or active ``PermitRootLogin``/``PasswordAuthentication``
    directives are rewritten in place; active ``Port`` lines are replaced;
    any directive still missing is added at the end of the global section.
    ``Match`` blocks are left untouched. Applying the function twice yields
    the same text.

    Examples
    --------
    >>> print(harden_sshd_config("#PermitRootLogin yes\\n#Port 22\\n", 2222), end="")
    PermitRootLogin no
    #Port 22
    PasswordAuthentication no
    Port 2222
    """

    desired = {
        "permitrootlogin": "PermitRootLogin no",
        "passwordauthentication": "PasswordAuthentication no",
    }
    source = text.splitlines()
    match_start = next(
        (index for index, line in enumerate(source) if _MATCH_BLOCK.match(line)),
        len(source),
    )
    seen: set[str] = set()
    port_written = False
    lines: list[str] = []
    for line in source[:match_start]:
        match = _SSH_DIRECTIVE.match(line)
        key = match.group("key").lower() if match and match.group("value") else None
        if key in desired:
            if key not in seen:
                lines.append(desired[key])
                seen.add(key)
            continue
        if key == "port" and not line.lstrip().startswith("#"):
            if not port_written:
                lines.append(f"Port {port}")
                port_written = True
            continue
        lines.append(line)
    for key, directive in desired.items():
        if key not in seen:
            lines.append(directive)
    if not port_written:
        lines.append(f"Port {port}")
    lines.extend(source[match_start:])
    return "\n".join(lines) + "\n"


def docker_daemon_config() -> str:
    """Return ``/etc/docker/daemon.json``."""

    payload = {
        "log-driver": "json-file",
        "log-opts": {"max-size": "10m", "max-file": "3"},
        "live-restore": True,
        "dns": ["1.1.1.1", "8.8.8.8"],
    }
    return json.dumps(payload, indent=2) + "\n"


def apt_source(url: str, suite: str, component: str, keyring: str, arch: str | None = None) -> str:
    """Return a one-line apt source entry signed by ``keyring``.

    Examples
    --------
    >>> apt_source("https://apt.grafana.com", "stable", "main", "/etc/apt/keyrings/grafana.gpg")
    'deb [signed-by=/etc/apt/keyrings/grafana.gpg] https://apt.grafana.com stable main\\n'
    """

    options = f"signed-by={keyring}"
    if arch:
        options = f"arch={arch} {options}"
    return f"deb [{options}] {url} {suite} {component}\n"


@dataclass(frozen=True, slots=True)
class WireGuardPeer:
    """A ``[Peer]`` section of a WireGuard configuration."""

    public_key: str
    allowed_ips: str
    endpoint: str | None = None
    persistent_keepalive: int | None = None


def wireguard_config(
    *,
    private_key: str,
    address: str,
    peers: Sequence[WireGuardPeer],
    listen_port: int | None = None,
    dns: Sequence[str] = (),
) -> str:
    """Render a WireGuard ``[Interface]`` section followed by its peers."""

    lines = ["[Interface]", f"PrivateKey = {private_key}", f"Address = {address}"]
    if listen_port is not None:
        lines.append(f"ListenPort = {listen_port}")
    if dns:
        lines.append(f"DNS = {', '.join(dns)}")
    for peer in peers:
        lines.extend(["", "[Peer]", f"PublicKey = {peer.public_key}", f"AllowedIPs = {peer.allowed_ips}"])
        if peer.endpoint:
            lines.append(f"Endpoint = {peer.endpoint}")
        if peer.persistent_keepalive is not None:
            lines.append(f"PersistentKeepalive = {peer.persistent_keepalive}")
    return "\n".join(lines) + "\n"


def systemd_unit(
    *,
    description: str,
    user: str,
    exec_start: Sequence[str],
) -> str:
    """Render a simple always-restarting service unit.

    Examples
    --------
    >>> print(systemd_unit(description="Node Exporter", user="node_exporter",
    ...                    exec_start=["/opt/node_exporter/node_exporter"]), end="")
    [Unit]
    Description=Node Exporter
    After=network-online.target
    Wants=network-online.target
    <BLANKLINE>
    [Service]
    User=node_exporter
    ExecStart=/opt/node_exporter/node_exporter
    Restart=always
    <BLANKLINE>
    [Install]
    WantedBy=multi-user.target
    """

    command = " \\\n  ".join(exec_start)
    return (
        "[Unit]\n"
        f"Description={description}\n"
        "After=network-online.target\n"
        "Wants=network-online.target\n"
        "\n"
        "[Service]\n"
        f"User={user}\n"
        f"ExecStart={command}\n"
        "Restart=always\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def _dump(payload: object) -> str:
    return yaml.safe_dump(payload, sort_keys=False, default_flow_style=False)


SCRAPE_TARGETS: tuple[tuple[str, int], ...] = (
    ("node_exporter", 9100),
    ("cadvisor", 8080),
    ("fail2ban_exporter", 9191),
)


def prometheus_config(config: ProvisionConfig, existing: str | None = None) -> str:
    """Return ``prometheus.yml`` with the host's three scrape jobs.

    Rule files and Alertmanager targets already wired into ``existing`` are
    carried over so re-rendering does not undo the alerting stage.
    """

    payload = {
        "global": {
            "scrape_interval": config.scrape_interval,
            "evaluation_interval": config.scrape_interval,
        },
        "scrape_configs": [
            {"job_name": job, "static_configs": [{"targets": [f"localhost:{port}"]}]}
            for job, port in SCRAPE_TARGETS
        ],
    }
    previous = (yaml.safe_load(existing) if existing else None) or {}
    for key in ("rule_files", "alerting"):
        if key in previous:
            payload[key] = previous[key]
    return _dump(payload)


def wire_alerting(text: str, rules_file: str, alertmanager: str) -> str:
    """Add the rule file and Alertmanager target to a Prometheus config.

    Existing entries are left alone, so the result is stable on re-runs.

    Examples
    --------
    >>> updated = wire_alerting("global: {}\\n", "prometheus_rules.yml", "localhost:9093")
    >>> yaml.safe_load(updated)["rule_files"]
    ['prometheus_rules.yml']
    >>> wire_alerting(updated, "prometheus_rules.yml", "localhost:9093") == updated
    True
    """

    payload = yaml.safe_load(text) or {}
    rule_files = payload.get("rule_files") or []
    if rules_file not in rule_files:
        rule_files.append(rules_file)
    payload["rule_files"] = rule_files

    alerting = payload.get("alerting") or {}
    managers = alerting.get("alertmanagers") or []
    targets = [
        target
        for manager in managers
        for static in manager.get("static_configs", [])
        for target in static.get("targets", [])
    ]
    if alertmanager not in targets:
        managers.append({"static_configs": [{"targets": [alertmanager]}]})
    alerting["alertmanagers"] = managers
    payload["alerting"] = alerting
    return _dump(payload)


def _email_receiver(name: str, config: ProvisionConfig) -> dict[str, object]:
    return {
        "name": name,
        "email_configs": [
            {
                "to": config.alert_to,
                "from": config.alert_from,
                "smarthost": f"{config.smtp_server}:{config.smtp_port}",
                "auth_username": config.smtp_username,
                "auth_password": config.smtp_password,
                "send_resolved": True,
            }
        ],
    }


def alertmanager_config(config: ProvisionConfig) -> str:
    """Return ``alertmanager.yml`` routing critical alerts more urgently."""

    payload = {
        "global": {
            "resolve_timeout": "5m",
            "smtp_smarthost": f"{config.smtp_server}:{config.smtp_port}",
            "smtp_from": config.alert_from,
            "smtp_auth_username": config.smtp_username,
            "smtp_auth_password": config.smtp_password,
        },
        "route": {
            "group_by": ["alertname", "severity"],
            "group_wait": "10s",
            "group_interval": "10s",
            "repeat_interval": "12h",
            "receiver": "default-receiver",
            "routes": [
                {
                    "matchers": ['severity="critical"'],
                    "receiver": "critical-receiver",
                    "repeat_interval": "5m",
                }
            ],
        },
        "receivers": [
            _email_receiver("default-receiver", config),
            _email_receiver("critical-receiver", config),
        ],
    }
    return _dump(payload)


_DISK_FREE = (
    '(node_filesystem_avail_bytes{fstype!="tmpfs"}'
    ' / node_filesystem_size_bytes{fstype!="tmpfs"}) * 100'
)
_CPU_BUSY = '100 - (avg by(instance) (irate(node_cpu_seconds_total{{mode="idle"}}[{window}])) * 100)'
_MEMORY_USED = "(1 - node_memory_MemAvailable_bytes / node_memory_MemTotal_bytes) * 100"


def _rule(alert: str, expr: str, duration: str, severity: str, summary: str, description: str) -> dict[str, object]:
    return {
        "alert": alert,
        "expr": expr,
        "for": duration,
        "labels": {"severity": severity},
        "annotations": {"summary": summary, "description": description},
    }


def alert_rules() -> str:
    """Return the static ``system_alerts`` rule group."""

    rules = [
        _rule(
            "DiskSpaceHigh", f"{_DISK_FREE} < 20", "5m", "warning",
            "Disk space high on {{ $labels.instance }}",
            "Disk space is below 20%. Available: {{ $value }}%",
        ),
        _rule(
            "DiskSpaceCritical", f"{_DISK_FREE} < 10", "5m", "critical",
            "Disk space critical on {{ $labels.instance }}",
            "Disk space is below 10%. Available: {{ $value }}%",
        ),
        _rule(
            "CPUHigh", f"{_CPU_BUSY.format(window='5m')} > 80", "5m", "warning",
            "High CPU usage on {{ $labels.instance }}",
            "CPU usage is above 80% for 5 minutes. Current: {{ $value }}%",
        ),
        _rule(
            "CPUCritical", f"{_CPU_BUSY.format(window='10m')} > 90", "10m", "critical",
            "Critical CPU usage on {{ $labels.instance }}",
            "CPU usage is above 90% for 10 minutes. Current: {{ $value }}%",
        ),
        _rule(
            "MemoryHigh", f"{_MEMORY_USED} > 80", "5m", "warning",
            "High memory usage on {{ $labels.instance }}",
            "Memory usage is above 80% for 5 minutes. Current: {{ $value }}%",
        ),
        _rule(
            "MemoryCritical", f"{_MEMORY_USED} > 90", "10m", "critical",
            "Critical memory usage on {{ $labels.instance }}",
            "Memory usage is above 90% for 10 minutes. Current: {{ $value }}%",
        ),
        _rule(
            "ServiceDown", 'up{job=~"node_exporter|cadvisor"} == 0', "5m", "critical",
            "Service down: {{ $labels.job }} on {{ $labels.instance }}",
            "Service has been down for 5 minutes",
        ),
        _rule(
            "PrometheusTargetDown", "up == 0", "5m", "warning",
            "Prometheus target down: {{ $labels.job }}",
            "Target {{ $labels.instance }} has been unreachable for 5 minutes",
        ),
    ]
    return _dump({"groups": [{"name": "system_alerts", "interval": "1m", "rules": rules}]})


_INI_SECTION = re.compile(r"^\s*\[(?P<name>[^\]]+)\]\s*$")
_INI_KEY = re.compile(r"^\s*[;#]?\s*(?P<key>[A-Za-z_]+)\s*=")


def _ini_value(value: str) -> str:
    return f'"""{value}"""' if any(char in value for char in "#;") else value


def patch_ini(text: str, settings: dict[tuple[str, str], str]) -> str:
    """Set ``(section, key)`` values in an INI file, uncommenting defaults.

    Keys absent from the file are inserted below their section header, and
    sections absent from the file are appended.

    Examples
    --------
    >>> text = "[security]\\n;admin_password = admin\\n"
    >>> print(patch_ini(text, {("security", "admin_password"): "s3cret"}), end="")
    [security]
    admin_password = s3cret
    """

    pending = dict(settings)
    lines: list[str] = []
    section: str | None = None
    for line in text.splitlines():
        header = _INI_SECTION.match(line)
        if header:
            section = header.group("name").strip()
            lines.append(line)
            continue
        key_match = _INI_KEY.match(line)
        if key_match and section is not None:
            target = (section, key_match.group("key"))
            if target in settings:
                if target in pending:
                    lines.append(f"{target[1]} = {_ini_value(pending.pop(target))}")
                continue
        lines.append(line)

    for (section_name, key), value in pending.items():
        entry = f"{key} = {_ini_value(value)}"
        header_index = next(
            (
                index
                for index, line in enumerate(lines)
                if (match := _INI_SECTION.match(line)) and match.group("name").strip() == section_name
            ),
            None,
        )
        if header_index is None:
            lines.extend(["", f"[{section_name}]", entry])
        else:
            lines.insert(header_index + 1, entry)
    return "\n".join(lines) + "\n"


def grafana_settings(config: ProvisionConfig) -> dict[tuple[str, str], str]:
    """Return the ``grafana.ini`` values patched before first start."""

    return {
        ("server", "http_port"): str(config.grafana_port),
        ("security", "admin_password"): config.grafana_admin_password,
        ("auth.anonymous", "enabled"): "false",
    }


__all__ = [
    "IP_FORWARDING",
    "SCRAPE_TARGETS",
    "UNATTENDED_UPGRADES",
    "WireGuardPeer",
    "alert_rules",
    "alertmanager_config",
    "apt_source",
    "docker_daemon_config",
    "grafana_settings",
    "harden_sshd_config",
    "patch_ini",
    "prometheus_config",
    "systemd_unit",
    "wire_alerting",
    "wireguard_config",
]
