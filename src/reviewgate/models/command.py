from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single external command attempt."""

    args: tuple[str, ...]
    cwd: Path
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    attempt: int = 1
    timeout: float | None = None
    classification: str | None = field(default=None)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        # git reports some outcomes (e.g. "nothing to commit") on stdout only
        return "\n".join(part for part in (self.stderr, self.stdout) if part)

    def command_line(self) -> str:
        return " ".join(self.args)
