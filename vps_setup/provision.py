#!/usr/bin/env -S uv run python
# /// script
# requires-python = ">=3.13"
# dependencies = ["cyclopts", "plumbum", "python-dotenv", "pyyaml", "requests", "cryptography"]
# ///

"""Provision a fresh Ubuntu or Debian VPS in five idempotent stages.

``vps-setup all`` runs hardening, Docker, WireGuard, monitoring and alerting
in order and stops at the first failing stage. Each stage can also be run on
its own; re-running any command skips work that is already done.
"""

from __future__ import annotations

import sys
import typing
from collections import abc as cabc
from pathlib import Path

import requests
from cyclopts import App, Parameter

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from vps_setup._commands import CommandRunner, PlumbumRunner
from vps_setup._config import DEFAULT_ENV_FILE, ensure_env_file, load_config
from vps_setup._context import StageContext
from vps_setup._errors import ProvisionError
from vps_setup._logging import configure_logging
from vps_setup._pipeline import PipelineResult, run_pipeline
from vps_setup._stages import STAGES, STAGES_BY_NAME, log_summary

app = App(help="Harden a VPS and install Docker, WireGuard, monitoring and alerting.")

EnvFileOption = typing.Annotated[
    Path, Parameter(help="Key=value configuration file; values override the environment.")
]
RootOption = typing.Annotated[
    Path, Parameter(help="Filesystem root that host paths are resolved against.")
]


def provision(
    stage_names: cabc.Sequence[str],
    *,
    env_file: Path = DEFAULT_ENV_FILE,
    root: Path = Path("/"),
    require_env_file: bool = False,
    runner: CommandRunner | None = None,
    session: requests.Session | None = None,
) -> int:
    """Run the named stages and return the process exit status.

    Parameters
    ----------
    stage_names
        Stages to run; they execute in pipeline order regardless of the
        order given.
    env_file
        Configuration file loaded on top of the environment.
    root
        Filesystem root for host paths.
    require_env_file
        Create ``env_file`` from the example and stop when it is missing.
    runner, session
        Command and HTTP collaborators; real ones are built when omitted.
    """

    try:
        if require_env_file:
            ensure_env_file(env_file)
        config = load_config(env_file)
        ctx = StageContext(
            config=config,
            runner=runner or PlumbumRunner(),
            session=session or requests.Session(),
            root=root,
            workdir=env_file.resolve().parent,
        )
        configure_logging(ctx.host_path(config.log_file))
    except ProvisionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    stages = [STAGES_BY_NAME[name] for name in stage_names]
    result: PipelineResult = run_pipeline(stages, ctx, STAGES_BY_NAME)
    if not result.success:
        return 1
    if len(stages) == len(STAGES):
        log_summary(ctx)
    elif ctx.warnings:
        for warning in ctx.warnings:
            print(f"warning: {warning}", file=sys.stderr)
    return 0


@app.command(name="all")
def run_all(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Run every stage in order, stopping at the first failure."""

    return provision(
        [stage.name for stage in STAGES],
        env_file=env_file,
        root=root,
        require_env_file=True,
    )


@app.command()
def hardening(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Update packages, lock down SSH, create the admin user and enable UFW."""

    return provision(["hardening"], env_file=env_file, root=root)


@app.command()
def docker(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Install Docker Engine and the compose plugin."""

    return provision(["docker"], env_file=env_file, root=root)


@app.command()
def wireguard(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Configure the WireGuard server, NAT and client configs."""

    return provision(["wireguard"], env_file=env_file, root=root)


@app.command()
def monitoring(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Install Prometheus, node exporter, cAdvisor and Grafana."""

    return provision(["monitoring"], env_file=env_file, root=root)


@app.command()
def alerting(
    env_file: EnvFileOption = DEFAULT_ENV_FILE,
    root: RootOption = Path("/"),
) -> int:
    """Install Alertmanager and the Prometheus alert rules."""

    return provision(["alerting"], env_file=env_file, root=root)


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(app())
