"""Tests for the rendered configuration files."""

from __future__ import annotations

import json

import yaml

from vps_setup._config import ProvisionConfig
from vps_setup._renderers import (
    alert_rules,
    alertmanager_config,
    docker_daemon_config,
    grafana_settings,
    harden_sshd_config,
    patch_ini,
    prometheus_config,
    wire_alerting,
)

STOCK_SSHD = """\
Include /etc/ssh/sshd_config.d/*.conf

#Port 22
#AddressFamily any
#PermitRootLogin prohibit-password
#PasswordAuthentication yes
# PasswordAuthentication.  Depending on your PAM configuration,
UsePAM yes
"""


def test_sshd_config_is_hardened_in_place() -> None:
    hardened = harden_sshd_config(STOCK_SSHD, 2222)
    lines = hardened.splitlines()

    assert "PermitRootLogin no" in lines
    assert "PasswordAuthentication no" in lines
    assert "Port 2222" in lines
    assert "#PermitRootLogin prohibit-password" not in lines
    assert "# PasswordAuthentication.  Depending on your PAM configuration," in lines
    assert lines.index("PermitRootLogin no") == STOCK_SSHD.splitlines().index(
        "#PermitRootLogin prohibit-password"
    )


def test_sshd_config_rewrite_is_idempotent() -> None:
    once = harden_sshd_config(STOCK_SSHD, 2222)

    assert harden_sshd_config(once, 2222) == once


def test_sshd_config_replaces_active_port_and_duplicates() -> None:
    text = "Port 22\nPort 2200\nPermitRootLogin yes\nPermitRootLogin without-password\n"

    hardened = harden_sshd_config(text, 2222).splitlines()

    assert hardened.count("Port 2222") == 1
    assert "Port 22" not in hardened
    assert hardened.count("PermitRootLogin no") == 1


MATCH_TAIL_SSHD = """\
Port 22
UsePAM yes

Match User backup
    PasswordAuthentication yes
    PermitRootLogin forced-commands-only
"""


def test_sshd_match_blocks_are_left_untouched() -> None:
    hardened = harden_sshd_config(MATCH_TAIL_SSHD, 2222)
    lines = hardened.splitlines()

    match_index = lines.index("Match User backup")
    assert lines[match_index:] == [
        "Match User backup",
        "    PasswordAuthentication yes",
        "    PermitRootLogin forced-commands-only",
    ]
    global_section = lines[:match_index]
    assert "Port 2222" in global_section
    assert "PermitRootLogin no" in global_section
    assert "PasswordAuthentication no" in global_section
    assert harden_sshd_config(hardened, 2222) == hardened


def test_docker_daemon_config() -> None:
    payload = json.loads(docker_daemon_config())

    assert payload["log-driver"] == "json-file"
    assert payload["log-opts"] == {"max-size": "10m", "max-file": "3"}
    assert payload["live-restore"] is True
    assert payload["dns"] == ["1.1.1.1", "8.8.8.8"]


def test_prometheus_config_has_three_scrape_jobs() -> None:
    payload = yaml.safe_load(prometheus_config(ProvisionConfig(scrape_interval="30s")))

    assert payload["global"]["scrape_interval"] == "30s"
    assert {job["job_name"]: job["static_configs"][0]["targets"] for job in payload["scrape_configs"]} == {
        "node_exporter": ["localhost:9100"],
        "cadvisor": ["localhost:8080"],
        "fail2ban_exporter": ["localhost:9191"],
    }


def test_prometheus_config_keeps_alerting_wiring() -> None:
    config = ProvisionConfig()
    wired = wire_alerting(prometheus_config(config), "prometheus_rules.yml", "localhost:9093")

    rerendered = prometheus_config(config, wired)

    assert rerendered == wired


def test_wire_alerting_preserves_existing_entries() -> None:
    text = "rule_files:\n- other_rules.yml\nalerting:\n  alertmanagers:\n  - static_configs:\n    - targets: ['localhost:9093']\n"

    payload = yaml.safe_load(wire_alerting(text, "prometheus_rules.yml", "localhost:9093"))

    assert payload["rule_files"] == ["other_rules.yml", "prometheus_rules.yml"]
    assert len(payload["alerting"]["alertmanagers"]) == 1


def test_alertmanager_config_routes_critical_alerts_more_often() -> None:
    config = ProvisionConfig(smtp_username="alerts@example.com", smtp_password="secret", alert_to="ops@example.com")

    payload = yaml.safe_load(alertmanager_config(config))

    assert payload["global"]["smtp_smarthost"] == "smtp.gmail.com:587"
    assert payload["route"]["group_by"] == ["alertname", "severity"]
    assert payload["route"]["repeat_interval"] == "12h"
    critical = payload["route"]["routes"][0]
    assert critical["receiver"] == "critical-receiver"
    assert critical["repeat_interval"] == "5m"
    receivers = {receiver["name"]: receiver for receiver in payload["receivers"]}
    assert receivers["critical-receiver"]["email_configs"][0]["to"] == "ops@example.com"


def test_alert_rules_cover_every_condition() -> None:
    payload = yaml.safe_load(alert_rules())
    group = payload["groups"][0]
    rules = {rule["alert"]: rule for rule in group["rules"]}

    assert group["name"] == "system_alerts"
    assert set(rules) == {
        "DiskSpaceHigh",
        "DiskSpaceCritical",
        "CPUHigh",
        "CPUCritical",
        "MemoryHigh",
        "MemoryCritical",
        "ServiceDown",
        "PrometheusTargetDown",
    }
    assert all(rule["labels"]["severity"] in {"warning", "critical"} for rule in rules.values())
    assert all(rule["for"] for rule in rules.values())
    assert 'fstype!="tmpfs"' in rules["DiskSpaceHigh"]["expr"]
    assert "!fstype" not in rules["DiskSpaceHigh"]["expr"]
    assert "{{ $labels.instance }}" in rules["CPUHigh"]["annotations"]["summary"]


def test_patch_grafana_ini() -> None:
    stock = (
        "[server]\n;http_port = 3000\n\n"
        "[security]\n;admin_password = admin\n\n"
        "[auth.anonymous]\n;enabled = false\n"
    )
    config = ProvisionConfig(grafana_port=3300, grafana_admin_password="pa#ss")

    patched = patch_ini(stock, grafana_settings(config))

    assert "http_port = 3300" in patched.splitlines()
    assert 'admin_password = """pa#ss"""' in patched.splitlines()
    assert "enabled = false" in patched.splitlines()
    assert patch_ini(patched, grafana_settings(config)) == patched


def test_patch_ini_adds_missing_sections() -> None:
    patched = patch_ini("[server]\nprotocol = http\n", {("server", "http_port"): "3000", ("auth.anonymous", "enabled"): "false"})

    assert patched.splitlines() == [
        "[server]",
        "http_port = 3000",
        "protocol = http",
        "",
        "[auth.anonymous]",
        "enabled = false",
    ]
