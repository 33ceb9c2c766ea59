"""Tests for the ``vps-setup`` driver."""

from __future__ import annotations

from pathlib import Path

import pytest

from vps_setup._config import RESOLUTIONS
from vps_setup.provision import app, provision, run_all
from vps_setup.tests._host_doubles import FakeRunner, FakeSession, serve_release


@pytest.fixture(autouse=True)
def _clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for resolution in RESOLUTIONS.values():
        monkeypatch.delenv(resolution.env_key, raising=False)
        for alias in resolution.aliases:
            monkeypatch.delenv(alias, raising=False)


@pytest.fixture
def env_file(tmp_path: Path) -> Path:
    path = tmp_path / "work" / ".env"
    path.parent.mkdir()
    path.write_text("WG_ENDPOINT=vpn.example.com\n", encoding="utf-8")
    return path


def test_every_stage_has_a_command() -> None:
    for name in ("all", "hardening", "docker", "wireguard", "monitoring", "alerting"):
        assert app[name] is not None


def test_missing_env_file_is_created_and_run_stops(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    example = tmp_path / ".env.example"
    example.write_text("SSH_PORT=2222\n", encoding="utf-8")

    status = run_all(env_file=tmp_path / ".env", root=tmp_path)

    assert status == 1
    assert (tmp_path / ".env").read_text(encoding="utf-8") == "SSH_PORT=2222\n"
    assert "edit it with your configuration values" in capsys.readouterr().err


def test_invalid_configuration_is_reported(env_file: Path, host_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    env_file.write_text("SSH_PORT=ssh\n", encoding="utf-8")

    status = provision(["hardening"], env_file=env_file, root=host_root, runner=FakeRunner(), session=FakeSession())

    assert status == 1
    assert "SSH_PORT must be an integer" in capsys.readouterr().err


def test_relative_log_file_is_reported(env_file: Path, host_root: Path, capsys: pytest.CaptureFixture[str]) -> None:
    env_file.write_text("LOG_FILE=vps.log\n", encoding="utf-8")
    runner = FakeRunner()

    status = provision(["hardening"], env_file=env_file, root=host_root, runner=runner, session=FakeSession())

    assert status == 1
    assert "LOG_FILE must be an absolute path" in capsys.readouterr().err
    assert runner.calls == []


def test_missing_log_directory_stops_before_any_command(
    env_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner = FakeRunner()

    status = provision(["hardening"], env_file=env_file, root=tmp_path / "bare", runner=runner, session=FakeSession())

    assert status == 1
    assert "Log directory" in capsys.readouterr().err
    assert runner.calls == []


@pytest.mark.usefixtures("as_root")
def test_single_stage_failure_returns_non_zero(env_file: Path, host_root: Path) -> None:
    runner = FakeRunner()

    status = provision(["docker"], env_file=env_file, root=host_root, runner=runner, session=FakeSession())

    assert status == 1
    assert runner.calls == []
    log = (host_root / "var/log/vps_setup.log").read_text(encoding="utf-8")
    assert "[ERROR]" in log
    assert "requires earlier stages" in log


@pytest.mark.usefixtures("as_root")
def test_full_run_provisions_every_stage(
    env_file: Path, host_root: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    runner = FakeRunner()
    runner.respond("dpkg", "--print-architecture", stdout="amd64\n")
    runner.respond("ip", "route", "show", "default", stdout="default via 203.0.113.1 dev eth0\n")
    session = FakeSession()
    session.add("https://download.docker.com/linux/ubuntu/gpg", content="docker key\n")
    session.add("https://apt.grafana.com/gpg.key", content="grafana key\n")
    serve_release(session, "prometheus/node_exporter", "node_exporter")
    serve_release(session, "prometheus/prometheus", "prometheus", extra_files=["promtool"])
    serve_release(session, "prometheus/alertmanager", "alertmanager", extra_files=["amtool"])

    status = provision(
        ["alerting", "hardening", "docker", "wireguard", "monitoring"],
        env_file=env_file,
        root=host_root,
        runner=runner,
        session=session,
    )

    assert status == 0
    for artifact in (
        "etc/apt/apt.conf.d/50unattended-upgrades",
        "etc/docker/daemon.json",
        "etc/wireguard/wg0.conf",
        "opt/prometheus/configs/prometheus.yml",
        "opt/alertmanager/alertmanager.yml",
    ):
        assert (host_root / artifact).is_file(), artifact
    assert (env_file.parent / "configs/wg-laptop.conf").is_file()
    log = (host_root / "var/log/vps_setup.log").read_text(encoding="utf-8")
    assert "VPS Setup Complete!" in log
    assert "SSH: ssh -p 2222 vpsadmin@vpn.example.com" in log
    assert "SMTP_PASSWORD not set" in log
    assert "[5/5] Alerting Setup..." in capsys.readouterr().err
