"""Classify failed git invocations.

git does not expose structured error codes, so failures are recognised by
substrings of their output. The messages matched here have been stable across
git releases for years. Everything that needs to interpret git's error text
goes through :func:`classify_failure` so the heuristic can be swapped for a
structured source without touching callers.

Patterns are checked in order: corruption first (it is the most severe and
some corruption messages mention lock files), then repository state, then
nothing-to-commit, then lock contention.
"""

from __future__ import annotations

from reviewgate.errors import (
    CommandFailure,
    CorruptionFailure,
    GenericCommandFailure,
    LockFailure,
    NothingToCommitFailure,
    RepositoryStateFailure,
)

CORRUPTION_PATTERNS = (
    "is corrupt",
    "corrupt object",
    "corrupted",
    "bad object",
    "loose object",
    "object file",
    "fatal: bad tree",
    "broken link",
    "missing blob",
    "missing tree",
)

REPOSITORY_STATE_PATTERNS = (
    "not a git repository",
    "does not have any commits yet",
    "unknown revision",
    "not something we can merge",
    "you have not concluded your merge",
    "you are in the middle of",
    "needs merge",
    "unmerged files",
    "can only be used inside a git repository",
)

NOTHING_TO_COMMIT_PATTERNS = (
    "nothing to commit",
    "nothing added to commit",
    "no changes added to commit",
)

LOCK_PATTERNS = (
    "index.lock",
    ".lock': file exists",
    "another git process seems to be running",
    "cannot lock ref",
    "unable to lock",
)


def classify_failure(output: str) -> type[CommandFailure]:
    """Map git error output onto the failure taxonomy."""
    text = output.lower()
    if any(p in text for p in CORRUPTION_PATTERNS):
        return CorruptionFailure
    if any(p in text for p in REPOSITORY_STATE_PATTERNS):
        return RepositoryStateFailure
    if any(p in text for p in NOTHING_TO_COMMIT_PATTERNS):
        return NothingToCommitFailure
    if any(p in text for p in LOCK_PATTERNS) or _names_lock_file(text):
        return LockFailure
    return GenericCommandFailure


def _names_lock_file(text: str) -> bool:
    # "unable to create '.../x.lock'" is contention; other "unable to create" is not.
    return "unable to create '" in text and ".lock'" in text


def is_ref_collision(output: str) -> bool:
    """True when a branch could not be created because its name is taken."""
    text = output.lower()
    return "already exists" in text or "cannot lock ref" in text
