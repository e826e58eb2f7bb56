"""Linear issue bookkeeping for batch tasks (GraphQL over httpx)."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from buildloop.batch import BatchExecutionResult, BatchTask

logger = logging.getLogger(__name__)

COMMENT_MUTATION = """
mutation CommentCreate($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) {
    success
  }
}
"""


class LinearError(RuntimeError):
    pass


@dataclass
class LinearOrigin:
    api_key: str
    api_url: str = "https://api.linear.app/graphql"
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
        if self._owns_client and self.http_client is not None:
            self.http_client.close()
            self.http_client = None
            self._owns_client = False

    def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        response = self._client().post(
            self.api_url,
            headers={"Authorization": self.api_key, "Content-Type": "application/json"},
            json={"query": query, "variables": variables},
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("errors"):
            message = payload["errors"][0].get("message", "unknown error")
            raise LinearError(f"Linear API error: {message}")
        return payload.get("data") or {}

    def comment(self, task: BatchTask, body: str) -> None:
        data = self._graphql(COMMENT_MUTATION, {"issueId": task.id, "body": body})
        if not (data.get("commentCreate") or {}).get("success"):
            raise LinearError(f"Linear rejected comment on {task.id}")

    def claim_task(self, task: BatchTask) -> None:
        self.comment(task, "buildloop started working on this issue.")
        logger.info("Claimed linear#%s", task.id)

    def complete_task(self, task: BatchTask, result: BatchExecutionResult) -> None:
        body = "buildloop finished this issue."
        if result.pr_url:
            body += f"\n\nPull request: {result.pr_url}"
        self.comment(task, body)

    def skip_task(self, task: BatchTask, reason: str) -> None:
        self.comment(task, f"buildloop could not complete this issue: {reason}")
