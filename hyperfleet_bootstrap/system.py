import ctypes
import logging
import os
import shlex
import shutil
import subprocess
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import BinaryIO

import httpx


logger = logging.getLogger(__name__)

LINUX_REBOOT_CMD_POWER_OFF = 0x4321FEDC


class CommandError(RuntimeError):
    def __init__(self, name: str, detail: str, returncode: int | None = None):
        self.name = name
        self.returncode = returncode
        super().__init__(f"command {name} failed: {detail}")


class HttpClient:
    def __init__(
        self,
        timeout_sec: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.client = httpx.Client(
            timeout=timeout_sec, follow_redirects=True, transport=transport
        )

    @contextmanager
    def stream(self, url: str) -> Iterator[httpx.Response]:
        with self.client.stream("GET", url) as response:
            yield response

    def post_json(
        self, url: str, payload: dict, token: str, timeout_sec: float = 10.0
    ) -> int:
        response = self.client.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout_sec,
        )
        return response.status_code

    def close(self) -> None:
        self.client.close()


class FileSystem:
    def makedirs(self, path: str, mode: int = 0o755) -> None:
        os.makedirs(path, mode=mode, exist_ok=True)

    def remove_tree(self, path: str) -> None:
        if os.path.lexists(path):
            shutil.rmtree(path)

    def open_write(self, path: str, mode: int) -> BinaryIO:
        fd = os.open(path, os.O_CREAT | os.O_WRONLY | os.O_TRUNC, mode)
        return os.fdopen(fd, "wb")

    def symlink(self, target: str, path: str) -> None:
        if os.path.lexists(path):
            os.unlink(path)
        os.symlink(target, path)

    def hardlink(self, source: str, path: str) -> None:
        if os.path.lexists(path):
            os.unlink(path)
        os.link(source, path)

    def write_text(self, path: str, data: str) -> None:
        with open(path, "w", encoding="utf-8") as handle:
            handle.write(data)


class CommandRunner:
    def run(
        self,
        args: list[str],
        *,
        cwd: str | None = None,
        timeout: float | None = None,
        name: str | None = None,
    ) -> None:
        # name keeps secrets passed as arguments out of logs and errors.
        display = name or shlex.join(args)
        logger.info("running command=%s cwd=%s", display, cwd)
        try:
            result = subprocess.run(
                args, cwd=cwd, timeout=timeout, stdin=subprocess.DEVNULL, check=False
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandError(display, f"timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise CommandError(display, str(exc)) from exc
        if result.returncode != 0:
            raise CommandError(
                display, f"exit status {result.returncode}", result.returncode
            )


class SystemOperations:
    def sync(self) -> None:
        os.sync()

    def power_off(self) -> None:
        libc = ctypes.CDLL(None, use_errno=True)
        if libc.reboot(ctypes.c_int(LINUX_REBOOT_CMD_POWER_OFF)) != 0:
            err = ctypes.get_errno()
            raise OSError(err, f"reboot(POWER_OFF): {os.strerror(err)}")

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)
