"""Tests for the alerting stage."""

from __future__ import annotations

import stat
from pathlib import Path

import pytest
import yaml

from vps_setup._config import ProvisionConfig, build_config
from vps_setup._errors import ErrorKind
from vps_setup._pipeline import StageResult, run_stage
from vps_setup._renderers import prometheus_config
from vps_setup._stages import STAGES_BY_NAME
from vps_setup.tests._host_doubles import FakeRunner, FakeSession, make_context, serve_release

pytestmark = pytest.mark.usefixtures("as_root")

PROMETHEUS_YML = "opt/prometheus/configs/prometheus.yml"
SMTP = {"SMTP_USERNAME": "alerts@example.com", "SMTP_PASSWORD": "app-password", "ALERT_TO": "ops@example.com"}


@pytest.fixture
def monitored_host(host_root: Path) -> Path:
    config = host_root / PROMETHEUS_YML
    config.parent.mkdir(parents=True)
    config.write_text(prometheus_config(ProvisionConfig()), encoding="utf-8")
    return host_root


def _runner() -> FakeRunner:
    runner = FakeRunner()
    runner.respond("dpkg", "--print-architecture", stdout="amd64\n")
    return runner


def _session() -> FakeSession:
    session = FakeSession()
    serve_release(session, "prometheus/alertmanager", "alertmanager", version="v0.27.0", extra_files=["amtool"])
    return session


def _run(host: Path, runner: FakeRunner, session: FakeSession, env: dict[str, str]) -> tuple[StageResult, list[str]]:
    ctx = make_context(host, config=build_config([env]), runner=runner, session=session)
    result = run_stage(STAGES_BY_NAME["alerting"], ctx, STAGES_BY_NAME)
    return result, ctx.warnings


def test_alerting_stage_wires_prometheus_to_alertmanager(monitored_host: Path) -> None:
    runner = _runner()

    result, warnings = _run(monitored_host, runner, _session(), SMTP)

    assert result.success
    assert warnings == []
    config_path = monitored_host / "opt/alertmanager/alertmanager.yml"
    assert stat.S_IMODE(config_path.stat().st_mode) == 0o640
    alertmanager = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    assert alertmanager["global"]["smtp_auth_password"] == "app-password"

    prometheus = yaml.safe_load((monitored_host / PROMETHEUS_YML).read_text(encoding="utf-8"))
    assert prometheus["rule_files"] == ["prometheus_rules.yml"]
    targets = prometheus["alerting"]["alertmanagers"][0]["static_configs"][0]["targets"]
    assert targets == ["localhost:9093"]
    assert (monitored_host / "opt/prometheus/configs/prometheus_rules.yml").is_file()
    assert [job["job_name"] for job in prometheus["scrape_configs"]][0] == "node_exporter"

    commands = runner.commands()
    assert any(command.endswith(f"amtool check-config {config_path}") for command in commands)
    assert any("promtool check rules" in command for command in commands)
    assert runner.ran("systemctl", "restart", "alertmanager")
    assert runner.ran("systemctl", "restart", "prometheus")
    allowed = [call[7] for call in runner.calls if call[:2] == ("ufw", "allow")]
    assert allowed == ["9093", "9094"]


def test_missing_smtp_password_is_a_warning(monitored_host: Path) -> None:
    result, warnings = _run(monitored_host, _runner(), _session(), {})

    assert result.success
    assert warnings == ["SMTP_PASSWORD not set. Email alerts will not work until configured."]


def test_alerting_rerun_does_not_duplicate_wiring(monitored_host: Path) -> None:
    assert _run(monitored_host, _runner(), _session(), SMTP)[0].success
    wired = (monitored_host / PROMETHEUS_YML).read_text(encoding="utf-8")

    session = _session()
    result, _ = _run(monitored_host, _runner(), session, SMTP)

    assert result.success
    assert session.requested == []
    assert (monitored_host / PROMETHEUS_YML).read_text(encoding="utf-8") == wired


def test_invalid_rules_stop_before_restarting_prometheus(monitored_host: Path) -> None:
    runner = _runner()
    runner.respond(
        str(monitored_host / "opt/prometheus/promtool"),
        "check",
        "rules",
        return_code=1,
        stderr="FAILED: parse error",
    )

    result, _ = _run(monitored_host, runner, _session(), SMTP)

    assert not result.success
    assert result.error_kind is ErrorKind.COMMAND
    assert not runner.ran("systemctl", "restart", "prometheus")
    assert not runner.ran("ufw", "allow")


def test_alerting_without_monitoring_stops_before_any_change(host_root: Path) -> None:
    runner = FakeRunner()
    session = _session()

    result, _ = _run(host_root, runner, session, SMTP)

    assert not result.success
    assert result.error_kind is ErrorKind.DEPENDENCY
    assert "prometheus.yml" in (result.message or "")
    assert session.requested == []
    assert not runner.ran("systemctl")
    assert not (host_root / "opt/alertmanager").exists()
