from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class WorkspacePaths:
    """Directory layout of a review workspace."""

    root: Path

    @property
    def inbox_plans(self) -> Path:
        return self.root / "Inbox" / "Plans"

    @property
    def inbox_rejected(self) -> Path:
        return self.root / "Inbox" / "Rejected"

    @property
    def system_active(self) -> Path:
        return self.root / "System" / "Active"

    @property
    def system_archive(self) -> Path:
        return self.root / "System" / "Archive"

    @property
    def runtime(self) -> Path:
        return self.root / ".reviewgate"


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Workspace
    root: Path = field(
        default_factory=lambda: Path(os.environ.get("REVIEWGATE_ROOT", ".")).resolve()
    )
    db_path: Path | None = field(
        default_factory=lambda: (
            Path(os.environ["REVIEWGATE_DB_PATH"])
            if os.environ.get("REVIEWGATE_DB_PATH")
            else None
        )
    )

    # Git
    trunk_branch: str = field(
        default_factory=lambda: os.environ.get("REVIEWGATE_TRUNK_BRANCH", "main")
    )
    git_timeout: float = field(
        default_factory=lambda: float(os.environ.get("REVIEWGATE_GIT_TIMEOUT", "30"))
    )
    lock_retries: int = field(
        default_factory=lambda: int(os.environ.get("REVIEWGATE_LOCK_RETRIES", "5"))
    )
    lock_backoff_base: float = field(
        default_factory=lambda: float(os.environ.get("REVIEWGATE_LOCK_BACKOFF_BASE", "0.2"))
    )
    branch_retries: int = field(
        default_factory=lambda: int(os.environ.get("REVIEWGATE_BRANCH_RETRIES", "5"))
    )
    trace_prefix_length: int = field(
        default_factory=lambda: int(os.environ.get("REVIEWGATE_TRACE_PREFIX_LENGTH", "8"))
    )

    # Identity
    bot_name: str = field(
        default_factory=lambda: os.environ.get("REVIEWGATE_BOT_NAME", "Reviewgate Bot")
    )
    bot_email: str = field(
        default_factory=lambda: os.environ.get("REVIEWGATE_BOT_EMAIL", "bot@reviewgate.local")
    )
    require_identity: bool = field(
        default_factory=lambda: _env_bool("REVIEWGATE_REQUIRE_IDENTITY")
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("REVIEWGATE_LOG_LEVEL", "INFO")
    )

    @property
    def paths(self) -> WorkspacePaths:
        return WorkspacePaths(self.root)

    @property
    def journal_path(self) -> Path:
        if self.db_path is not None:
            return self.db_path if self.db_path.is_absolute() else self.root / self.db_path
        return self.paths.runtime / "journal.db"


def get_config(**overrides: object) -> Config:
    """Return a Config instance built from the environment plus explicit overrides."""
    return Config(**overrides)  # type: ignore[arg-type]
