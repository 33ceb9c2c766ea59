"""Tests for idempotent UFW rule management."""

from __future__ import annotations

import ipaddress
from pathlib import Path

from vps_setup._firewall import FirewallRule, ensure_rule, ensure_rules, vpn_only
from vps_setup.tests._host_doubles import FakeRunner, make_context

SUBNET = ipaddress.IPv4Network("10.0.0.0/24")


def test_vpn_only_rule_is_scoped_to_subnet() -> None:
    rule = vpn_only(9090, SUBNET, "Prometheus")

    assert not rule.is_public
    assert rule.comment == "Prometheus - VPN only"
    assert rule.matches(
        "ufw allow from 10.0.0.0/24 to any port 9090 proto tcp comment 'Prometheus - VPN only'"
    )
    assert not rule.matches("ufw allow 9090/tcp")


def test_ensure_rule_adds_missing_rule_with_comment(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.respond("ufw", "show", "added", stdout="Added user rules (see 'ufw status' for running firewall):\n")

    added = ensure_rule(make_context(tmp_path, runner=runner), FirewallRule(2222, comment="SSH"))

    assert added is True
    assert ("ufw", "allow", "2222/tcp", "comment", "SSH") in runner.calls


def test_ensure_rules_skips_rules_already_present(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.respond(
        "ufw",
        "show",
        "added",
        stdout=(
            "Added user rules (see 'ufw status' for running firewall):\n"
            "ufw allow 51820/udp comment 'WireGuard VPN'\n"
            "ufw allow from 10.0.0.0/24 to any port 9100 proto tcp\n"
        ),
    )
    rules = [
        FirewallRule(51820, "udp", comment="WireGuard VPN"),
        vpn_only(9100, SUBNET, "Node Exporter"),
        vpn_only(9093, SUBNET, "Alertmanager"),
    ]

    ensure_rules(make_context(tmp_path, runner=runner), rules)

    allow_calls = [call for call in runner.calls if call[:2] == ("ufw", "allow")]
    assert allow_calls == [
        (
            "ufw", "allow", "from", "10.0.0.0/24", "to", "any", "port", "9093", "proto", "tcp",
            "comment", "Alertmanager - VPN only",
        )
    ]
