"""Typed git queries and mutations built on :class:`CommandRunner`.

Each method maps onto a single git command so callers can reason about side
effects. Read-only queries never retry; mutations that only contend on git's
index or ref locks opt into lock retries.
"""

from __future__ import annotations

from reviewgate.models.changeset import CommitInfo
from reviewgate.services.command_runner import CommandRunner

# Separators emitted by git for %x1f and %x1e in --format strings.
_FS = "\x1f"
_RS = "\x1e"


class GitClient:
    def __init__(self, runner: CommandRunner):
        self.runner = runner

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    async def current_branch(self) -> str:
        """Name of the checked out branch, or "" when HEAD is detached."""
        return await self.runner.output(["branch", "--show-current"])

    async def branch_exists(self, branch: str) -> bool:
        result = await self.runner.run(
            ["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], check=False
        )
        return result.ok

    async def list_branches(self, pattern: str) -> list[str]:
        out = await self.runner.output(
            ["branch", "--list", pattern, "--format=%(refname:short)"]
        )
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def create_and_checkout(self, branch: str, *, trace_id: str | None = None) -> None:
        await self.runner.run(["checkout", "-b", branch], trace_id=trace_id)

    async def checkout(self, branch: str) -> None:
        await self.runner.run(["checkout", branch], retry_on_lock=True)

    async def delete_branch(self, branch: str, *, trace_id: str | None = None) -> None:
        await self.runner.run(["branch", "-D", branch], retry_on_lock=True, trace_id=trace_id)

    async def merge_no_ff(self, branch: str, message: str, *, trace_id: str | None = None) -> None:
        # Not retried: a merge that got past the lock may have changed the tree.
        await self.runner.run(["merge", "--no-ff", branch, "-m", message], trace_id=trace_id)

    async def merge_in_progress(self) -> bool:
        result = await self.runner.run(
            ["rev-parse", "-q", "--verify", "MERGE_HEAD"], check=False
        )
        return result.ok

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def head_sha(self) -> str:
        return await self.rev_parse("HEAD")

    async def rev_parse(self, ref: str) -> str:
        return await self.runner.output(["rev-parse", "--verify", ref])

    async def commits_between(self, base: str, branch: str) -> list[CommitInfo]:
        """Commits reachable from ``branch`` but not ``base``, oldest first."""
        out = await self.runner.output(
            [
                "log",
                branch,
                "--not",
                base,
                "--reverse",
                "--format=%H%x1f%s%x1f%aI",
            ]
        )
        return _parse_commits(out)

    async def commit_bodies(self, base: str, branch: str) -> list[str]:
        out = await self.runner.output(
            ["log", branch, "--not", base, "--format=%B%x1e"]
        )
        return [body.strip() for body in out.split(_RS) if body.strip()]

    async def tip_author(self, branch: str) -> str:
        return await self.runner.output(["log", "-1", "--format=%ae", branch])

    async def commit_body(self, ref: str) -> str:
        return await self.runner.output(["log", "-1", "--format=%B", ref])

    async def changed_files(self, base: str, branch: str) -> list[str]:
        out = await self.runner.output(["diff", "--name-only", f"{base}...{branch}"])
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def diff(self, base: str, branch: str) -> str:
        result = await self.runner.run(["diff", f"{base}...{branch}"])
        return result.stdout

    async def grep_log(self, pattern: str) -> list[CommitInfo]:
        out = await self.runner.output(
            [
                "log",
                "--all",
                "--fixed-strings",
                f"--grep={pattern}",
                "--reverse",
                "--format=%H%x1f%s%x1f%aI",
            ]
        )
        return _parse_commits(out)

    # ------------------------------------------------------------------
    # Working tree
    # ------------------------------------------------------------------

    async def status_porcelain(self) -> str:
        result = await self.runner.run(["status", "--porcelain"])
        return result.stdout

    async def stage_all(self, *, trace_id: str | None = None) -> None:
        await self.runner.run(["add", "-A"], retry_on_lock=True, trace_id=trace_id)

    async def commit(self, message: str, *, trace_id: str | None = None) -> None:
        await self.runner.run(["commit", "-m", message], retry_on_lock=True, trace_id=trace_id)

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    async def config_get(self, key: str, *, scope: str | None = "--local") -> str:
        args = ["config"]
        if scope:
            args.append(scope)
        args.append(key)
        result = await self.runner.run(args, check=False)
        return result.stdout.strip() if result.ok else ""

    async def config_set(self, key: str, value: str) -> None:
        await self.runner.run(["config", "--local", key, value], retry_on_lock=True)


def _parse_commits(out: str) -> list[CommitInfo]:
    commits: list[CommitInfo] = []
    for line in out.splitlines():
        if not line.strip():
            continue
        sha, message, timestamp = (line.split(_FS) + ["", ""])[:3]
        commits.append(CommitInfo(sha=sha, message=message, timestamp=timestamp))
    return commits
