import logging
from collections.abc import Callable

from hyperfleet_bootstrap.system import (
    CommandError,
    CommandRunner,
    FileSystem,
    SystemOperations,
)


logger = logging.getLogger(__name__)

SYSRQ_TRIGGER = "/proc/sysrq-trigger"
POWER_DISK = "/sys/power/disk"
SHUTDOWN_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("sudo", "shutdown", "-h", "now"),
    ("shutdown", "-h", "now"),
    ("sudo", "poweroff"),
    ("poweroff",),
    ("sudo", "halt", "-p"),
    ("halt", "-p"),
    ("sudo", "systemctl", "poweroff"),
    ("systemctl", "poweroff"),
)


class ShutdownError(RuntimeError):
    pass


class PowerOff:
    """Ordered power-off strategies; the first one that does not raise wins."""

    def __init__(
        self,
        fs: FileSystem,
        commands: CommandRunner,
        system: SystemOperations,
        command_timeout_sec: float = 30.0,
    ):
        self.fs = fs
        self.commands = commands
        self.system = system
        self.command_timeout_sec = command_timeout_sec

    def syscall(self) -> None:
        self.system.sync()
        self.system.power_off()

    def sysrq(self) -> None:
        self.fs.write_text(SYSRQ_TRIGGER, "o")

    def power_state(self) -> None:
        self.fs.write_text(POWER_DISK, "shutdown")

    def shutdown_commands(self) -> None:
        failures: list[CommandError] = []
        for command in SHUTDOWN_COMMANDS:
            try:
                self.commands.run(list(command), timeout=self.command_timeout_sec)
                return
            except CommandError as exc:
                logger.debug("shutdown command failed: %s", exc)
                failures.append(exc)
        raise failures[-1]

    def strategies(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("syscall", self.syscall),
            ("sysrq", self.sysrq),
            ("power-state", self.power_state),
            ("commands", self.shutdown_commands),
        ]

    def __call__(self) -> str:
        last: Exception | None = None
        for name, strategy in self.strategies():
            logger.info("attempting shutdown method=%s", name)
            try:
                strategy()
            except (OSError, CommandError) as exc:
                logger.warning("shutdown method failed method=%s error=%s", name, exc)
                last = exc
                continue
            logger.info("shutdown initiated method=%s", name)
            return name
        raise ShutdownError(f"all shutdown methods failed: {last}")
