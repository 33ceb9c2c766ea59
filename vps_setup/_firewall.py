"""Idempotent UFW rule management."""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass

from vps_setup._commands import run_checked
from vps_setup._context import StageContext
from vps_setup._logging import log_success

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FirewallRule:
    """An inbound allow rule, optionally scoped to a source subnet."""

    port: int
    protocol: str = "tcp"
    source: ipaddress.IPv4Network | None = None
    comment: str | None = None

    @property
    def is_public(self) -> bool:
        """Return ``True`` when the rule admits traffic from any address."""

        return self.source is None

    def allow_args(self) -> list[str]:
        """Return the ``ufw allow`` arguments without the comment.

        Examples
        --------
        >>> FirewallRule(2222).allow_args()
        ['allow', '2222/tcp']
        >>> net = ipaddress.IPv4Network("10.0.0.0/24")
        >>> FirewallRule(9100, source=net).allow_args()
        ['allow', 'from', '10.0.0.0/24', 'to', 'any', 'port', '9100', 'proto', 'tcp']
        """

        if self.source is None:
            return ["allow", f"{self.port}/{self.protocol}"]
        return [
            "allow",
            "from",
            str(self.source),
            "to",
            "any",
            "port",
            str(self.port),
            "proto",
            self.protocol,
        ]

    def matches(self, added_line: str) -> bool:
        """Return ``True`` when a ``ufw show added`` line is this rule.

        Examples
        --------
        >>> FirewallRule(51820, "udp").matches("ufw allow 51820/udp comment 'WireGuard VPN'")
        True
        >>> FirewallRule(2222).matches("ufw allow 22222/tcp")
        False
        """

        base = " ".join(["ufw", *self.allow_args()])
        line = added_line.strip()
        return line == base or line.startswith(f"{base} comment ")


def vpn_only(port: int, subnet: ipaddress.IPv4Network, label: str) -> FirewallRule:
    """Return a TCP rule reachable only from the VPN subnet."""

    return FirewallRule(port, "tcp", subnet, f"{label} - VPN only")


def added_rules(ctx: StageContext) -> list[str]:
    """Return the user rules UFW has recorded, one command per line."""

    output = run_checked(ctx.runner, "ufw", "show", "added")
    return [line.strip() for line in output.splitlines() if line.strip().startswith("ufw ")]


def ensure_rule(ctx: StageContext, rule: FirewallRule) -> bool:
    """Add ``rule`` unless UFW already holds it.

    Returns
    -------
    bool
        ``True`` when the rule was added by this call.
    """

    if any(rule.matches(line) for line in added_rules(ctx)):
        logger.info("Firewall rule already present: %s", " ".join(rule.allow_args()))
        return False
    args = rule.allow_args()
    if rule.comment:
        args.extend(["comment", rule.comment])
    run_checked(ctx.runner, "ufw", *args)
    log_success(logger, "Firewall rule added: %s", " ".join(rule.allow_args()))
    return True


def ensure_rules(ctx: StageContext, rules: list[FirewallRule]) -> None:
    """Apply each of ``rules`` idempotently."""

    for rule in rules:
        ensure_rule(ctx, rule)


__all__ = [
    "FirewallRule",
    "added_rules",
    "ensure_rule",
    "ensure_rules",
    "vpn_only",
]
