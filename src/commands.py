import asyncio
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from orchestration.jobs import JobError

logger = logging.getLogger("flotilla.commands")


class CommandError(JobError):
    def __init__(self, argv: Sequence[str], exit_code: int, output: str, message: str | None = None):
        self.argv = list(argv)
        self.exit_code = exit_code
        self.output = output
        super().__init__(message or f"{shlex.join(self.argv[:3])} exited with code {exit_code}")

    def __str__(self) -> str:
        base = super().__str__()
        tail = self.output.strip()
        if not tail:
            return base
        if len(tail) > 500:
            tail = "..." + tail[-500:]
        return f"{base}\nOutput: {tail}"


@dataclass(frozen=True)
class CommandResult:
    argv: list[str]
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Combined output, stdout first."""
        if self.stdout and self.stderr:
            return f"{self.stdout.rstrip()}\n{self.stderr}"
        return self.stdout or self.stderr

    def check(self) -> "CommandResult":
        if not self.ok:
            raise CommandError(self.argv, self.exit_code, self.output)
        return self


async def run_command(
    argv: Sequence[str],
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> CommandResult:
    """Run an external command and capture its output.

    If the awaiting task is cancelled (or the timeout expires) the process is
    killed before the cancellation propagates, so a cancelled job never leaves
    an agent running behind it.
    """
    full_env = None
    if env:
        full_env = {**os.environ, **env}

    logger.debug(f"Running {shlex.join(argv)} (cwd={cwd})")
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=full_env,
        )
    except OSError as e:
        raise CommandError(argv, -1, "", f"Failed to start {argv[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.CancelledError, asyncio.TimeoutError):
        _kill(proc)
        await proc.wait()
        raise

    result = CommandResult(
        argv=list(argv),
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
    )
    logger.debug(f"{argv[0]} finished | exit_code={result.exit_code}")
    return result


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
