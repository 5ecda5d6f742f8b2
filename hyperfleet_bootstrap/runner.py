import io
import logging
import os
import platform
import shutil
import tarfile
import zlib
from collections.abc import Iterator
from dataclasses import dataclass
from typing import IO

import httpx

from hyperfleet_bootstrap.config import RunnerConfig, RunnerSection
from hyperfleet_bootstrap.system import CommandRunner, FileSystem, HttpClient


logger = logging.getLogger(__name__)

DEFAULT_INSTALL_PATH = "/opt/actions-runner"
DEFAULT_WORK_DIR = "/tmp/runner-work"
DEFAULT_CONFIG_SCRIPT = "config.sh"
DEFAULT_RUN_SCRIPT = "run.sh"
DIR_MODE = 0o755
RUNNER_VERSION = "2.311.0"
RELEASE_URL = (
    "https://github.com/actions/runner/releases/download/"
    "v{version}/actions-runner-{os}-{arch}-{version}.tar.gz"
)

ARCH_NAMES = {
    "amd64": "x64",
    "x86_64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
    "386": "x86",
    "i386": "x86",
    "i686": "x86",
}
OS_NAMES = {"linux": "linux", "darwin": "osx", "windows": "win"}


class BootstrapError(RuntimeError):
    pass


@dataclass(frozen=True)
class RunnerLayout:
    download_url: str
    install_path: str
    work_dir: str
    config_script: str
    run_script: str


def runner_download_url(os_name: str, arch: str, version: str = RUNNER_VERSION) -> str:
    runner_os = OS_NAMES.get(os_name.lower(), os_name.lower())
    runner_arch = ARCH_NAMES.get(arch.lower(), arch.lower())
    return RELEASE_URL.format(version=version, os=runner_os, arch=runner_arch)


def resolve_layout(section: RunnerSection) -> RunnerLayout:
    download_url = section.download_url
    if not download_url:
        os_name = section.os or platform.system()
        arch = section.arch or platform.machine()
        download_url = runner_download_url(os_name, arch)
        logger.info(
            "derived runner url os=%s arch=%s url=%s", os_name, arch, download_url
        )
    return RunnerLayout(
        download_url=download_url,
        install_path=section.install_path or DEFAULT_INSTALL_PATH,
        work_dir=section.work_dir or DEFAULT_WORK_DIR,
        config_script=section.config_script or DEFAULT_CONFIG_SCRIPT,
        run_script=section.run_script or DEFAULT_RUN_SCRIPT,
    )


class _ChunkReader(io.RawIOBase):
    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._pending = b""

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        return size


def _within(root: str, path: str) -> bool:
    return path != root and os.path.commonpath([root, path]) == root


def _entry_target(root: str, name: str, follow_leaf: bool = True) -> str:
    path = os.path.join(root, name)
    if follow_leaf:
        target = os.path.realpath(path)
    else:
        # A link entry replaces whatever sits at its own name.
        parent, leaf = os.path.split(os.path.normpath(path))
        target = os.path.normpath(os.path.join(os.path.realpath(parent), leaf))
    if not _within(root, target):
        raise BootstrapError(f"invalid file path in archive: {name}")
    return target


def _link_source(root: str, member: tarfile.TarInfo, target: str) -> str:
    if member.issym():
        base = os.path.dirname(target)
        source = os.path.realpath(os.path.join(base, member.linkname))
    else:
        source = os.path.realpath(os.path.join(root, member.linkname))
    if not _within(root, source):
        raise BootstrapError(f"invalid file path in archive: {member.name}")
    return source


def extract_archive(stream: IO[bytes], install_path: str, fs: FileSystem) -> int:
    """Unpack a gzip tar stream into ``install_path`` one entry at a time.

    Every entry and every link target is resolved against the install
    directory before anything is written for it.
    """
    root = os.path.realpath(install_path)
    written = 0
    with tarfile.open(fileobj=stream, mode="r|gz") as archive:
        for member in archive:
            if member.name in {".", "./"}:
                continue
            target = _entry_target(
                root, member.name, follow_leaf=not (member.issym() or member.islnk())
            )
            if member.isdir():
                fs.makedirs(target, DIR_MODE)
            elif member.isfile():
                fs.makedirs(os.path.dirname(target), DIR_MODE)
                source = archive.extractfile(member)
                if source is None:
                    continue
                with fs.open_write(target, member.mode & 0o7777) as out:
                    shutil.copyfileobj(source, out)
                written += 1
            elif member.issym() or member.islnk():
                source = _link_source(root, member, target)
                fs.makedirs(os.path.dirname(target), DIR_MODE)
                if member.issym():
                    fs.symlink(member.linkname, target)
                else:
                    fs.hardlink(source, target)
                written += 1
            else:
                logger.debug("skipping special archive entry name=%s", member.name)
    return written


def download_runner(
    http: HttpClient, fs: FileSystem, url: str, install_path: str
) -> int:
    logger.info("downloading runner url=%s install_path=%s", url, install_path)
    try:
        fs.makedirs(install_path, DIR_MODE)
    except OSError as exc:
        raise BootstrapError(f"failed to create install directory: {exc}") from exc
    try:
        with http.stream(url) as response:
            if response.status_code != 200:
                raise BootstrapError(
                    f"failed to download runner: HTTP {response.status_code}"
                )
            reader = io.BufferedReader(_ChunkReader(response.iter_bytes()))
            written = extract_archive(reader, install_path, fs)
    except httpx.HTTPError as exc:
        raise BootstrapError(f"failed to download runner: {exc}") from exc
    except (tarfile.TarError, zlib.error, EOFError, OSError) as exc:
        raise BootstrapError(f"failed to extract runner archive: {exc}") from exc
    logger.info("runner extracted entries=%s", written)
    return written


def configure_args(config: RunnerConfig, layout: RunnerLayout) -> list[str]:
    return [
        os.path.join(layout.install_path, layout.config_script),
        "--url",
        config.registration_url,
        "--token",
        config.runner_token,
        "--name",
        config.runner_name,
        "--labels",
        ",".join(config.labels),
        "--work",
        layout.work_dir,
        "--unattended",
        # The runner refuses a second job, so the VM can power off after it.
        "--ephemeral",
    ]


def configure_runner(
    commands: CommandRunner, config: RunnerConfig, layout: RunnerLayout
) -> None:
    logger.info("configuring runner name=%s", config.runner_name)
    commands.run(
        configure_args(config, layout),
        cwd=layout.install_path,
        name=layout.config_script,
    )


def run_runner(commands: CommandRunner, layout: RunnerLayout) -> None:
    logger.info("starting runner")
    commands.run(
        [os.path.join(layout.install_path, layout.run_script)],
        cwd=layout.install_path,
        name=layout.run_script,
    )


def cleanup(fs: FileSystem, layout: RunnerLayout) -> None:
    for path in (layout.install_path, layout.work_dir):
        try:
            fs.remove_tree(path)
        except OSError as exc:
            logger.warning("cleanup failed path=%s error=%s", path, exc)
