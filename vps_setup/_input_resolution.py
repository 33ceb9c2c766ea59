"""Shared helpers for resolving configuration values from layered sources."""

from __future__ import annotations

from collections import abc as cabc
from dataclasses import dataclass

from vps_setup._errors import ConfigError


@dataclass(frozen=True, slots=True)
class InputResolution:
    """Configuration for resolving a value from multiple sources."""

    env_key: str
    default: str | None = None
    required: bool = False
    aliases: tuple[str, ...] = ()


def resolve_input(
    param_value: str | None,
    resolution: InputResolution,
    sources: cabc.Sequence[cabc.Mapping[str, str | None]] = (),
) -> str | None:
    """Resolve a value from an explicit parameter, layered sources, or a default.

    ``sources`` are consulted in order; the first one holding ``env_key`` (or
    one of its aliases) with a non-blank value wins. Blank values fall through
    to the next source and finally to the default.

    Examples
    --------
    >>> res = InputResolution(env_key="SSH_PORT", default="2222", aliases=("ADMIN_PORT",))
    >>> resolve_input(None, res, [{"ADMIN_PORT": "2200"}, {"SSH_PORT": "22"}])
    '2200'
    >>> resolve_input(None, res, [{}])
    '2222'
    >>> resolve_input(None, res, [{"SSH_PORT": ""}, {"SSH_PORT": "2200"}])
    '2200'
    """

    if param_value is not None:
        return param_value

    keys = (resolution.env_key, *resolution.aliases)
    for source in sources:
        for key in keys:
            value = source.get(key)
            if value is not None and value.strip():
                return value

    if resolution.required:
        msg = f"{resolution.env_key} is required"
        raise ConfigError(msg)

    return resolution.default
