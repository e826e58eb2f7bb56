from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

logger = logging.getLogger(__name__)

_PR_URL = re.compile(r"https://github\.com/\S+")


class GitError(RuntimeError):
    pass


def _failure_message(result: subprocess.CompletedProcess[str], fallback: str) -> str:
    return (result.stderr or result.stdout or fallback).strip()


@dataclass(frozen=True)
class GitRepo:
    """Version-control operations for one working directory (git + gh)."""

    root: Path

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        if not shutil.which("git"):
            raise GitError("Git is required for commit, push and branch operations.")
        result = subprocess.run(
            ["git", "-C", str(self.root), *args],
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise GitError(_failure_message(result, f"git {args[0]} failed"))
        return result

    def is_repo(self) -> bool:
        try:
            return self._git("rev-parse", "--git-dir", check=False).returncode == 0
        except GitError:
            return False

    def has_uncommitted_changes(self) -> bool:
        result = self._git("status", "--porcelain", check=False)
        if result.returncode != 0:
            return False
        return bool(result.stdout.strip())

    def commit(self, message: str) -> str:
        self._git("add", "-A")
        self._git("commit", "-m", message)
        return self._git("rev-parse", "HEAD").stdout.strip()

    def push(self, branch: str | None = None) -> None:
        if branch:
            self._git("push", "-u", "origin", branch)
        else:
            self._git("push")

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").stdout.strip()

    def branch_exists(self, name: str) -> bool:
        result = self._git("show-ref", "--verify", "--quiet", f"refs/heads/{name}", check=False)
        return result.returncode == 0

    def create_branch(self, name: str) -> None:
        if self.branch_exists(name):
            logger.info("Branch %s already exists; checking it out", name)
            self.checkout(name)
            return
        self._git("checkout", "-b", name)

    def checkout(self, name: str) -> None:
        self._git("checkout", name)

    def diff(self, max_chars: int = 20_000) -> str:
        tracked = self._git("diff", "HEAD", check=False)
        text = tracked.stdout if tracked.returncode == 0 else self._git("diff").stdout
        untracked = self._git("ls-files", "--others", "--exclude-standard", check=False)
        names = [line for line in untracked.stdout.splitlines() if line.strip()]
        if names:
            text += "\nUntracked files:\n" + "\n".join(f"  {name}" for name in names)
        return text[:max_chars]

    def create_pull_request(
        self,
        title: str,
        body: str,
        base: str | None = None,
        labels: Sequence[str] | None = None,
    ) -> str:
        if not shutil.which("gh"):
            raise GitError("The GitHub CLI (gh) is required to open pull requests.")
        args = ["gh", "pr", "create", "--title", title, "--body", body]
        if base:
            args.extend(["--base", base])
        for label in labels or ():
            args.extend(["--label", label])
        result = subprocess.run(args, cwd=str(self.root), capture_output=True, text=True)
        if result.returncode != 0:
            raise GitError(_failure_message(result, "gh pr create failed"))
        match = _PR_URL.search(result.stdout)
        return match.group(0) if match else result.stdout.strip()
