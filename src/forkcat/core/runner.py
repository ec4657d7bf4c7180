"""Command execution on top of invoke."""

import contextlib
import os
import platform
from pathlib import Path

from invoke import Context, Result
from invoke.exceptions import CommandTimedOut

from forkcat.core.log import logger


class Runner(Context):
    """invoke.Context with a single ``execute`` entry point.

    Every external command forkcat runs (git, docker, gh) goes
    through here so output capture, timeouts and logging behave the
    same everywhere.
    """

    def kill(self) -> None:
        """Kill the running subprocess.

        invoke uses signal.SIGKILL, which Windows lacks; os.kill there
        accepts the numeric value and maps it to TerminateProcess.
        """
        if platform.system() == "Windows":
            pid = self.pid if self.using_pty else self.process.pid
            with contextlib.suppress(ProcessLookupError):
                os.kill(pid, 9)
            return
        super().kill()

    def execute(
        self,
        command: str,
        cwd: Path | None = None,
        timeout: int | None = None,
        stdin: str | None = None,
        log_file: Path | None = None,
        log_level: str | None = None,
        check: bool = True,
        env: dict[str, str] | None = None,
    ) -> Result:
        """Run ``command`` and return its invoke Result.

        Args:
            command: Shell command line
            cwd: Working directory
            timeout: Seconds before the command is killed; a timed out
                command yields ``exited == -1`` instead of raising
            stdin: Text fed to the command's stdin
            log_file: Write combined stdout/stderr here
            log_level: Echo each output line to the logger at this level
            check: Raise invoke.UnexpectedExit on non-zero exit
            env: Extra environment variables (merged over os.environ)
        """
        kwargs = {
            "hide": True,
            "warn": not check,
            "in_stream": False,
        }
        if timeout:
            kwargs["timeout"] = timeout
        if stdin:
            kwargs["in_stream"] = stdin
        if env:
            kwargs["env"] = env

        logger.spew("Executing command", command=command,
                    cwd=str(cwd) if cwd else None)
        try:
            if cwd:
                with self.cd(str(cwd)):
                    result = self.run(command, **kwargs)
            else:
                result = self.run(command, **kwargs)
        except CommandTimedOut as e:
            result = e.result
            result.exited = -1

        if log_file:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            log_file.write_text(result.stdout + result.stderr)

        if log_level:
            for line in (result.stdout + result.stderr).splitlines():
                logger.log(log_level, line.rstrip())

        return result
