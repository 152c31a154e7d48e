"""Git integration — phase-completion commits and pushes."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class SourceControlError(Exception):
    """A git command failed."""


class SourceControl(Protocol):
    async def commit(self, message: str) -> str:
        ...

    async def push(self, branch: str) -> None:
        ...

    async def status(self) -> str:
        ...


class GitManager:
    """Runs git in a project's repository."""

    def __init__(self, repo_path: Path | str | None = None, timeout: float = 120.0) -> None:
        self._repo_path = Path(repo_path) if repo_path else None
        self._timeout = timeout

    async def _run(self, *args: str) -> tuple[str, str, int]:
        """Run a git command and return (stdout, stderr, returncode)."""
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._repo_path) if self._repo_path else None,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SourceControlError(f"git {args[0]} timed out after {self._timeout:.0f}s")
        return stdout.decode(), stderr.decode(), proc.returncode

    async def status(self) -> str:
        """Return "clean" or "changes"."""
        stdout, stderr, rc = await self._run("status", "--porcelain")
        if rc != 0:
            raise SourceControlError(f"git status failed: {stderr.strip()}")
        return "changes" if stdout.strip() else "clean"

    async def commit(self, message: str) -> str:
        """Stage everything and commit. Returns the new commit id ("" if nothing to commit)."""
        _, stderr, rc = await self._run("add", "-A")
        if rc != 0:
            raise SourceControlError(f"git add failed: {stderr.strip()}")

        if await self.status() == "clean":
            logger.info("Nothing to commit in %s", self._repo_path)
            return ""

        _, stderr, rc = await self._run("commit", "-m", message)
        if rc != 0:
            raise SourceControlError(f"git commit failed: {stderr.strip()}")

        stdout, _, _ = await self._run("rev-parse", "HEAD")
        return stdout.strip()

    async def push(self, branch: str) -> None:
        _, stderr, rc = await self._run("push", "origin", branch)
        if rc != 0:
            raise SourceControlError(f"git push failed: {stderr.strip()}")

