"""GitHub issue bookkeeping for batch tasks (REST API over httpx)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from urllib.parse import quote

import httpx

from buildloop.batch import BatchExecutionResult, BatchTask

logger = logging.getLogger(__name__)

IN_PROGRESS_LABEL = "in-progress"
_ISSUE_URL = re.compile(r"github\.com/([^/]+/[^/]+)/issues/\d+")


def repo_for(task: BatchTask) -> str:
    """Return ``owner/repo`` for a task, from ``project`` or the issue URL."""
    if task.project and "/" in task.project:
        return task.project
    match = _ISSUE_URL.search(task.url)
    if match:
        return match.group(1)
    raise ValueError(f"Cannot determine repository for github#{task.id}")


@dataclass
class GitHubOrigin:
    token: str
    api_url: str = "https://api.github.com"
    timeout_s: float = 30.0
    http_client: httpx.Client | None = None
    _owns_client: bool = field(default=False, init=False, repr=False)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _client(self) -> httpx.Client:
        if self.http_client is None:
            self.http_client = httpx.Client(timeout=self.timeout_s)
            self._owns_client = True
        return self.http_client

    def close(self) -> None:
        """Close the HTTP client if this origin opened it."""
        if self._owns_client and self.http_client is not None:
            self.http_client.close()
            self.http_client = None
            self._owns_client = False

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        url = f"{self.api_url.rstrip('/')}{path}"
        return self._client().request(method, url, headers=headers, **kwargs)

    def _issue_path(self, task: BatchTask) -> str:
        return f"/repos/{repo_for(task)}/issues/{task.id}"

    def comment(self, task: BatchTask, body: str) -> None:
        response = self._request("POST", f"{self._issue_path(task)}/comments", json={"body": body})
        response.raise_for_status()

    def claim_task(self, task: BatchTask) -> None:
        response = self._request(
            "POST", f"{self._issue_path(task)}/labels", json={"labels": [IN_PROGRESS_LABEL]}
        )
        response.raise_for_status()
        logger.info("Claimed github#%s", task.id)

    def complete_task(self, task: BatchTask, result: BatchExecutionResult) -> None:
        label = quote(IN_PROGRESS_LABEL, safe="")
        response = self._request("DELETE", f"{self._issue_path(task)}/labels/{label}")
        if response.status_code != 404:
            response.raise_for_status()
        lines = ["buildloop finished this task."]
        if result.pr_url:
            lines.append(f"Pull request: {result.pr_url}")
        if result.commits:
            lines.append(f"Commits: {len(result.commits)}")
        self.comment(task, "\n\n".join(lines))

    def skip_task(self, task: BatchTask, reason: str) -> None:
        label = quote(IN_PROGRESS_LABEL, safe="")
        response = self._request("DELETE", f"{self._issue_path(task)}/labels/{label}")
        if response.status_code != 404:
            response.raise_for_status()
        self.comment(task, f"buildloop could not complete this task: {reason}")
