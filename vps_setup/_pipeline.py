"""Stage sequencing for the provisioning pipeline.

Stages raise :class:`~vps_setup._errors.ProvisionError` subclasses; this
module turns them into :class:`StageResult` values so the driver decides in
one place whether to continue. Nothing here exits the process.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from vps_setup._actions import Action, ActionOutcome, run_actions
from vps_setup._context import StageContext
from vps_setup._errors import ErrorKind, ProvisionError, StageDependencyError
from vps_setup._host import require_root, require_supported_platform
from vps_setup._logging import log_step, log_success

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Stage:
    """One ordered provisioning unit.

    Attributes
    ----------
    ordinal
        Position in the pipeline, starting at 1.
    name
        Short identifier used on the command line.
    title
        Human-readable description for the driver log.
    depends_on
        Names of stages whose artifacts must exist before this one runs.
    artifacts
        Files whose presence shows this stage has completed.
    build_actions
        Factory returning the stage's ordered actions.
    """

    ordinal: int
    name: str
    title: str
    depends_on: tuple[str, ...]
    artifacts: Callable[[StageContext], list[Path]]
    build_actions: Callable[[StageContext], list[Action]]


@dataclass(frozen=True, slots=True)
class StageResult:
    """Outcome of running one stage."""

    stage: str
    success: bool
    outcomes: tuple[ActionOutcome, ...] = ()
    error_kind: ErrorKind | None = None
    message: str | None = None


@dataclass(slots=True)
class PipelineResult:
    """Outcome of a driver run; ``failed`` names the stage that stopped it."""

    results: list[StageResult] = field(default_factory=list)
    failed: str | None = None

    @property
    def success(self) -> bool:
        return self.failed is None


def missing_dependencies(
    stage: Stage,
    ctx: StageContext,
    registry: dict[str, Stage],
) -> list[Path]:
    """Return dependency artifacts of ``stage`` that are absent on the host."""

    missing: list[Path] = []
    for dependency in stage.depends_on:
        for artifact in registry[dependency].artifacts(ctx):
            if not artifact.exists():
                missing.append(artifact)
    return missing


def check_dependencies(
    stage: Stage,
    ctx: StageContext,
    registry: dict[str, Stage],
) -> None:
    """Raise :class:`StageDependencyError` when upstream artifacts are missing."""

    missing = missing_dependencies(stage, ctx, registry)
    if missing:
        paths = ", ".join(str(path) for path in missing)
        msg = f"Stage {stage.name!r} requires earlier stages to have run; missing: {paths}"
        raise StageDependencyError(msg)


def run_stage(
    stage: Stage,
    ctx: StageContext,
    registry: dict[str, Stage],
) -> StageResult:
    """Run ``stage`` after checking preconditions and dependencies."""

    logger.info("Starting stage: %s", stage.name)
    try:
        require_root()
        require_supported_platform(ctx)
        check_dependencies(stage, ctx, registry)
        outcomes = run_actions(stage.build_actions(ctx))
    except ProvisionError as exc:
        logger.error("%s", exc)
        return StageResult(stage.name, False, error_kind=exc.kind, message=str(exc))
    logger.info("Completed stage: %s", stage.name)
    log_success(logger, "%s complete!", stage.title)
    return StageResult(stage.name, True, outcomes=tuple(outcomes))


def run_pipeline(
    stages: Sequence[Stage],
    ctx: StageContext,
    registry: dict[str, Stage] | None = None,
) -> PipelineResult:
    """Run ``stages`` in ordinal order, aborting on the first failure.

    ``registry`` resolves dependency names and defaults to ``stages``
    themselves. Completed stages are not rolled back; re-running resumes by
    skipping whatever is already in its desired state.
    """

    if registry is None:
        registry = {stage.name: stage for stage in stages}
    ordered = sorted(stages, key=lambda stage: stage.ordinal)
    pipeline = PipelineResult()
    total = max((stage.ordinal for stage in registry.values()), default=0)
    for stage in ordered:
        log_step(logger, stage.ordinal, total, f"{stage.title}...")
        result = run_stage(stage, ctx, registry)
        pipeline.results.append(result)
        if not result.success:
            logger.error("Stage %d failed", stage.ordinal)
            pipeline.failed = stage.name
            return pipeline
        log_success(logger, "Stage %d complete", stage.ordinal)
    log_success(logger, "VPS Setup Complete!")
    return pipeline


__all__ = [
    "PipelineResult",
    "Stage",
    "StageResult",
    "check_dependencies",
    "missing_dependencies",
    "run_pipeline",
    "run_stage",
]
