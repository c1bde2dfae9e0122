from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import subprocess

from mergebot.observability import log_event


LOGGER = logging.getLogger("mergebot.shell")


class CommandError(RuntimeError):
    def __init__(self, result: CommandResult) -> None:
        super().__init__(
            "Command failed\n"
            f"cmd: {result.command}\n"
            f"exit: {result.returncode}\n"
            f"stdout:\n{result.stdout}\n"
            f"stderr:\n{result.stderr}"
        )
        self.result = result


@dataclass(frozen=True)
class CommandResult:
    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def command(self) -> str:
        return " ".join(self.argv)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def execute(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command without raising. Children never read the service's own stdin."""
    proc = subprocess.run(
        argv,
        cwd=str(cwd) if cwd else None,
        input=input_text,
        stdin=subprocess.DEVNULL if input_text is None else None,
        env={**os.environ, **env} if env else None,
        text=True,
        capture_output=True,
        check=False,
    )
    return CommandResult(
        argv=tuple(argv),
        returncode=proc.returncode,
        stdout=proc.stdout or "",
        stderr=proc.stderr or "",
    )


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
) -> str:
    """Run a command and return stdout, raising CommandError on a non-zero exit."""
    result = execute(argv, cwd=cwd, input_text=input_text)
    if not result.ok:
        log_event(
            LOGGER,
            "command_failed",
            level=logging.ERROR,
            command=result.command,
            exit_code=result.returncode,
            stderr=preview(result.stderr),
            stdout=preview(result.stdout),
        )
        raise CommandError(result)
    return result.stdout


def preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."
