import logging
from collections.abc import Callable

import httpx

from hyperfleet_bootstrap.config import RunnerConfig, StatusSection
from hyperfleet_bootstrap.runner import (
    BootstrapError,
    cleanup,
    configure_runner,
    download_runner,
    resolve_layout,
    run_runner,
)
from hyperfleet_bootstrap.shutdown import PowerOff, ShutdownError
from hyperfleet_bootstrap.system import (
    CommandError,
    CommandRunner,
    FileSystem,
    HttpClient,
    SystemOperations,
)


logger = logging.getLogger(__name__)


class StageReporter:
    """Posts pipeline stages to the controller. Never raises."""

    def __init__(
        self, http: HttpClient, status: StatusSection | None, timeout_sec: float = 10.0
    ):
        self.http = http
        self.status = status
        self.timeout_sec = timeout_sec

    def report(self, stage: str, message: str | None = None) -> None:
        if self.status is None:
            return
        try:
            code = self.http.post_json(
                self.status.url,
                {"stage": stage, "message": message},
                self.status.token,
                timeout_sec=self.timeout_sec,
            )
        except httpx.HTTPError as exc:
            logger.warning("stage report failed stage=%s error=%s", stage, exc)
            return
        if code >= 400:
            logger.warning("stage report rejected stage=%s status=%s", stage, code)


class BootstrapAgent:
    def __init__(
        self,
        *,
        http: HttpClient,
        fs: FileSystem,
        commands: CommandRunner,
        system: SystemOperations,
        cleanup_delay_sec: float = 2.0,
        command_timeout_sec: float = 30.0,
        status_timeout_sec: float = 10.0,
    ):
        self.http = http
        self.fs = fs
        self.commands = commands
        self.system = system
        self.cleanup_delay_sec = cleanup_delay_sec
        self.status_timeout_sec = status_timeout_sec
        self.power_off = PowerOff(fs, commands, system, command_timeout_sec)

    def run(self, config: RunnerConfig) -> int:
        handler = METHODS.get(config.method)
        if handler is None:
            logger.error(
                "unsupported attestation method: %s", config.method or "<empty>"
            )
            return 1
        return handler(self, config)

    def run_runner_token(self, config: RunnerConfig) -> int:
        if config.spiffe.enabled:
            if not config.spiffe.join_token and not config.spiffe.spiffe_id:
                logger.error(
                    "SPIFFE attestation enabled but no join token or SPIFFE ID provided"
                )
                return 1
            logger.info("spiffe identity present spiffe_id=%s", config.spiffe.spiffe_id)

        reporter = StageReporter(self.http, config.status, self.status_timeout_sec)
        layout = resolve_layout(config.runner)
        logger.info("starting runner bootstrap runner_name=%s", config.runner_name)
        try:
            download_runner(
                self.http, self.fs, layout.download_url, layout.install_path
            )
            configure_runner(self.commands, config, layout)
            reporter.report("configured")
            reporter.report("running")
            run_runner(self.commands, layout)
        except (BootstrapError, CommandError) as exc:
            logger.error("runner bootstrap failed: %s", exc)
            reporter.report("failed", str(exc))
            return 1
        reporter.report("completed")

        logger.info("runner finished, cleaning up before shutdown")
        cleanup(self.fs, layout)
        self.system.sleep(self.cleanup_delay_sec)
        try:
            self.power_off()
        except ShutdownError as exc:
            # The controller reclaims a VM that never powers off.
            logger.error("%s", exc)
        return 0

    def run_join_token(self, config: RunnerConfig) -> int:
        logger.error("pure SPIFFE bootstrap is not supported")
        return 1


METHODS: dict[str, Callable[[BootstrapAgent, RunnerConfig], int]] = {
    "runner-token": BootstrapAgent.run_runner_token,
    "join-token": BootstrapAgent.run_join_token,
}
