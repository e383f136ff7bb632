"""Error taxonomy for reviewgate.

Every error carries a ``recoverable`` tag. Recoverable errors describe expected
conditions the caller is meant to inspect and handle (a clean working tree,
a held lock, being on the wrong branch). Fatal errors always abort the
current operation.

Command failures are raised by :class:`reviewgate.services.command_runner.CommandRunner`
and travel upward unchanged; state machine errors are raised before any
mutation takes place.
"""

from __future__ import annotations

from reviewgate.models.command import CommandResult


class WorkflowError(Exception):
    recoverable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class RecoverableError(WorkflowError):
    recoverable = True


class FatalError(WorkflowError):
    recoverable = False


# ----------------------------------------------------------------------
# Command failures
# ----------------------------------------------------------------------


class CommandFailure(WorkflowError):
    """Base for failures of an external command invocation."""

    kind = "generic"

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result

    @property
    def output(self) -> str:
        if self.result is None:
            return ""
        return self.result.stderr or self.result.stdout

    @classmethod
    def from_result(cls, result: CommandResult) -> "CommandFailure":
        detail = (result.stderr or result.stdout).strip()
        message = (
            f"Git command failed: {result.command_line()}\n"
            f"Exit code: {result.exit_code}\n"
            f"Error: {detail}"
        )
        return cls(message, result)


class TimeoutFailure(CommandFailure, RecoverableError):
    kind = "timeout"


class LockFailure(CommandFailure, RecoverableError):
    kind = "lock"


class NothingToCommitFailure(CommandFailure, RecoverableError):
    kind = "nothing_to_commit"


class RepositoryStateFailure(CommandFailure, FatalError):
    kind = "repository_state"


class CorruptionFailure(CommandFailure, FatalError):
    kind = "corruption"


class GenericCommandFailure(CommandFailure, FatalError):
    kind = "generic"


# ----------------------------------------------------------------------
# State machine errors
# ----------------------------------------------------------------------


class PreconditionError(FatalError):
    """A transition was requested on an item that does not allow it."""

    def __init__(self, message: str, item_id: str | None = None) -> None:
        super().__init__(message)
        self.item_id = item_id


class NotOnTrunkError(RecoverableError):
    def __init__(self, message: str, current_branch: str, trunk_branch: str) -> None:
        super().__init__(message)
        self.current_branch = current_branch
        self.trunk_branch = trunk_branch


class PartialMergeError(FatalError):
    """A merge stopped half way and left MERGE_HEAD behind."""

    def __init__(self, message: str, cause: CommandFailure) -> None:
        super().__init__(message)
        self.cause = cause


class IdentityError(FatalError):
    pass


class DocumentFormatError(FatalError):
    pass
