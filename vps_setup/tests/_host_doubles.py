"""Recording stand-ins for the command runner and HTTP session."""

from __future__ import annotations

import io
import tarfile
from collections import abc as cabc
from dataclasses import dataclass, field
from pathlib import Path

import requests

from vps_setup._commands import CommandContext, CommandResult
from vps_setup._config import ProvisionConfig
from vps_setup._context import StageContext

Handler = cabc.Callable[[tuple[str, ...], CommandContext | None], CommandResult]


@dataclass(slots=True)
class FakeRunner:
    """Answer commands by longest matching argv prefix and record every call.

    Unmatched commands succeed with empty output.
    """

    calls: list[tuple[str, ...]] = field(default_factory=list)
    contexts: list[CommandContext | None] = field(default_factory=list)
    _responses: list[tuple[tuple[str, ...], CommandResult | Handler]] = field(
        default_factory=list
    )

    def respond(
        self,
        *prefix: str,
        return_code: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Handler | None = None,
    ) -> None:
        """Register the result for commands starting with ``prefix``."""

        response = handler or CommandResult(return_code, stdout, stderr)
        self._responses.append((prefix, response))

    def run(
        self,
        command: str,
        *args: str,
        context: CommandContext | None = None,
    ) -> CommandResult:
        argv = (command, *args)
        self.calls.append(argv)
        self.contexts.append(context)
        matches = [
            (prefix, response)
            for prefix, response in self._responses
            if argv[: len(prefix)] == prefix
        ]
        if not matches:
            return CommandResult(0)
        # Longest prefix wins; later registrations win ties.
        _, response = max(reversed(matches), key=lambda item: len(item[0]))
        if isinstance(response, CommandResult):
            return response
        return response(argv, context)

    def commands(self) -> list[str]:
        """Return every recorded call as a space-joined string."""

        return [" ".join(call) for call in self.calls]

    def ran(self, *prefix: str) -> bool:
        return any(call[: len(prefix)] == prefix for call in self.calls)

    def count(self, *prefix: str) -> int:
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)


@dataclass(slots=True)
class FakeResponse:
    """The subset of :class:`requests.Response` the stages use."""

    url: str
    status_code: int = 200
    content: bytes = b""
    payload: object = None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8")

    def json(self) -> object:
        if self.payload is None:
            raise ValueError("no JSON body")
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            msg = f"{self.status_code} error for {self.url}"
            raise requests.HTTPError(msg)

    def iter_content(self, chunk_size: int = 1) -> cabc.Iterator[bytes]:
        for start in range(0, len(self.content), chunk_size):
            yield self.content[start : start + chunk_size]

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None


@dataclass(slots=True)
class FakeSession:
    """Serve canned responses by exact URL and record each request."""

    routes: dict[str, FakeResponse | Exception] = field(default_factory=dict)
    requested: list[str] = field(default_factory=list)
    timeouts: list[float | None] = field(default_factory=list)

    def add(
        self,
        url: str,
        *,
        content: bytes | str = b"",
        payload: object = None,
        status_code: int = 200,
    ) -> None:
        body = content.encode("utf-8") if isinstance(content, str) else content
        self.routes[url] = FakeResponse(url, status_code, body, payload)

    def fail(self, url: str, error: Exception | None = None) -> None:
        self.routes[url] = error or requests.ConnectionError(f"cannot reach {url}")

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.requested.append(url)
        self.timeouts.append(kwargs.get("timeout"))  # type: ignore[arg-type]
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(url, status_code=404)
        if isinstance(route, Exception):
            raise route
        return route


def release_tarball(top_dir: str, files: dict[str, str]) -> bytes:
    """Return a ``.tar.gz`` holding ``files`` under ``top_dir``."""

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as bundle:
        for name, text in files.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{top_dir}/{name}")
            info.size = len(data)
            info.mode = 0o755
            bundle.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


def serve_release(
    session: FakeSession,
    repo: str,
    name: str,
    version: str = "v1.2.3",
    arch: str = "amd64",
    extra_files: cabc.Iterable[str] = (),
) -> None:
    """Publish a latest-release tag and matching archive for ``repo``."""

    bare = version.removeprefix("v")
    session.add(
        f"https://api.github.com/repos/{repo}/releases/latest",
        payload={"tag_name": version},
    )
    asset = f"{name}-{bare}.linux-{arch}.tar.gz"
    files = {name: "#!/bin/sh\n", **{extra: "#!/bin/sh\n" for extra in extra_files}}
    session.add(
        f"https://github.com/{repo}/releases/download/{version}/{asset}",
        content=release_tarball(f"{name}-{bare}.linux-{arch}", files),
    )


def make_context(
    root: Path,
    *,
    config: ProvisionConfig | None = None,
    runner: FakeRunner | None = None,
    session: FakeSession | None = None,
    workdir: Path | None = None,
) -> StageContext:
    return StageContext(
        config=config or ProvisionConfig(),
        runner=runner or FakeRunner(),
        session=session or FakeSession(),  # type: ignore[arg-type]
        root=root,
        workdir=workdir or root.parent / "work",
    )


__all__ = [
    "FakeResponse",
    "FakeRunner",
    "FakeSession",
    "make_context",
    "release_tarball",
    "serve_release",
]
