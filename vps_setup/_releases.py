"""Resolve and download upstream release archives, signing keys and addresses."""

from __future__ import annotations

import logging
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import requests

from vps_setup._commands import CommandContext, run_checked
from vps_setup._context import StageContext
from vps_setup._errors import DownloadError
from vps_setup._host import detect_architecture
from vps_setup._logging import log_success

logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
GITHUB_DOWNLOADS = "https://github.com"
PUBLIC_IP_URL = "https://ifconfig.me"
# Prometheus projects publish ``node_exporter-1.8.2.linux-amd64.tar.gz``.
PROMETHEUS_ASSET = "{name}-{bare_version}.linux-{arch}.tar.gz"
DOWNLOAD_CHUNK = 1 << 16


@dataclass(frozen=True, slots=True)
class ReleaseArchive:
    """A downloaded release archive and the tag it was resolved from."""

    path: Path
    version: str


def resolve_latest_release(ctx: StageContext, repo: str) -> str:
    """Return the newest published tag of ``repo`` (``owner/name``).

    Raises
    ------
    DownloadError
        When the API cannot be reached or returns no tag.
    """

    url = f"{GITHUB_API}/repos/{repo}/releases/latest"
    try:
        response = ctx.session.get(
            url,
            headers={"Accept": "application/vnd.github+json"},
            timeout=ctx.config.http_timeout,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        msg = f"Failed to query latest release of {repo}: {exc}"
        raise DownloadError(msg) from exc
    tag = payload.get("tag_name") if isinstance(payload, dict) else None
    if not tag:
        msg = f"No release tag found for {repo}"
        raise DownloadError(msg)
    return str(tag)


def release_asset_url(
    repo: str,
    name: str,
    version: str,
    arch: str,
    asset_template: str = PROMETHEUS_ASSET,
) -> str:
    """Build the download URL of a release asset.

    Examples
    --------
    >>> release_asset_url("prometheus/node_exporter", "node_exporter", "v1.8.2", "amd64")
    'https://github.com/prometheus/node_exporter/releases/download/v1.8.2/node_exporter-1.8.2.linux-amd64.tar.gz'
    """

    asset = asset_template.format(
        name=name,
        version=version,
        bare_version=version.removeprefix("v"),
        arch=arch,
    )
    return f"{GITHUB_DOWNLOADS}/{repo}/releases/download/{version}/{asset}"


def download_file(ctx: StageContext, url: str, destination: Path) -> Path:
    """Stream ``url`` into ``destination``.

    Raises
    ------
    DownloadError
        When the request fails or returns an error status.
    """

    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        with ctx.session.get(url, stream=True, timeout=ctx.config.http_timeout) as response:
            response.raise_for_status()
            with destination.open("wb") as handle:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK):
                    handle.write(chunk)
    except requests.RequestException as exc:
        destination.unlink(missing_ok=True)
        msg = f"Failed to download {url}: {exc}"
        raise DownloadError(msg) from exc
    return destination


def fetch_release_archive(
    ctx: StageContext,
    repo: str,
    name: str,
    dest_dir: Path,
    asset_template: str = PROMETHEUS_ASSET,
) -> ReleaseArchive:
    """Download the latest release archive of ``repo`` for this host.

    Raises
    ------
    UnsupportedArchitectureError
        When the host architecture has no published asset.
    DownloadError
        When the release cannot be resolved or downloaded.
    """

    arch = detect_architecture(ctx)
    version = resolve_latest_release(ctx, repo)
    url = release_asset_url(repo, name, version, arch, asset_template)
    archive = dest_dir / PurePosixPath(url).name
    logger.info("Downloading %s version %s...", name, version)
    download_file(ctx, url, archive)
    log_success(logger, "Downloaded %s", archive.name)
    return ReleaseArchive(path=archive, version=version)


def extract_archive(archive: Path, destination: Path) -> None:
    """Extract a ``.tar.gz`` into ``destination``, dropping the top-level directory."""

    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:gz") as bundle:
        members = []
        for member in bundle.getmembers():
            parts = PurePosixPath(member.name).parts
            if len(parts) < 2:
                continue
            member.name = PurePosixPath(*parts[1:]).as_posix()
            members.append(member)
        bundle.extractall(destination, members=members, filter="data")


def install_release(
    ctx: StageContext,
    repo: str,
    name: str,
    install_dir: Path,
) -> str:
    """Download the latest ``repo`` release and unpack it into ``install_dir``.

    The install directory is only populated once the download succeeded, so
    an interrupted run is retried in full on the next invocation.

    Returns
    -------
    str
        The installed release tag.
    """

    with tempfile.TemporaryDirectory(prefix=f"{name}-") as scratch:
        release = fetch_release_archive(ctx, repo, name, Path(scratch))
        extract_archive(release.path, install_dir)
    return release.version


def fetch_text(ctx: StageContext, url: str) -> str:
    """Return the body of ``url``.

    Raises
    ------
    DownloadError
        When the request fails or returns an error status.
    """

    try:
        response = ctx.session.get(url, timeout=ctx.config.http_timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        msg = f"Failed to download {url}: {exc}"
        raise DownloadError(msg) from exc
    return response.text


def install_apt_key(ctx: StageContext, url: str, keyring: str) -> None:
    """Download an ASCII-armoured signing key and store it dearmoured at ``keyring``."""

    target = ctx.host_path(keyring)
    target.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    armoured = fetch_text(ctx, url)
    run_checked(
        ctx.runner,
        "gpg",
        "--batch",
        "--yes",
        "--dearmor",
        "-o",
        str(target),
        context=CommandContext(stdin=armoured),
    )
    run_checked(ctx.runner, "chmod", "a+r", str(target))
    log_success(logger, "Signing key stored at %s", keyring)


def lookup_public_ip(ctx: StageContext) -> str:
    """Return the host's public address as reported by an IP-echo service."""

    try:
        response = ctx.session.get(PUBLIC_IP_URL, timeout=ctx.config.http_timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        msg = f"Failed to determine public IP address: {exc}"
        raise DownloadError(msg) from exc
    address = response.text.strip()
    if not address:
        raise DownloadError("Public IP lookup returned an empty response")
    return address


__all__ = [
    "PROMETHEUS_ASSET",
    "ReleaseArchive",
    "download_file",
    "extract_archive",
    "fetch_release_archive",
    "fetch_text",
    "install_apt_key",
    "install_release",
    "lookup_public_ip",
    "release_asset_url",
    "resolve_latest_release",
]
