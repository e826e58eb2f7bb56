import json
import sys
import unittest
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.batch import BatchExecutionResult, BatchTask
from buildloop.integrations import GitHubOrigin, LinearOrigin
from buildloop.integrations.github import repo_for
from buildloop.integrations.linear import LinearError


def _recording_client(responder) -> tuple[httpx.Client, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    return httpx.Client(transport=httpx.MockTransport(handler)), seen


class GitHubOriginTests(unittest.TestCase):
    def setUp(self) -> None:
        self.task = BatchTask(
            id="12",
            title="Fix login",
            description="",
            source="github",
            url="https://github.com/acme/widgets/issues/12",
        )

    def test_repo_resolution(self) -> None:
        self.assertEqual(repo_for(self.task), "acme/widgets")
        override = BatchTask(id="3", title="t", description="", source="github", project="acme/other")
        self.assertEqual(repo_for(override), "acme/other")
        with self.assertRaises(ValueError):
            repo_for(BatchTask(id="4", title="t", description="", source="github"))

    def test_claim_adds_label(self) -> None:
        client, seen = _recording_client(lambda request: httpx.Response(200, json=[]))
        GitHubOrigin(token="ghp_x", http_client=client).claim_task(self.task)
        self.assertEqual(seen[0].method, "POST")
        self.assertEqual(seen[0].url.path, "/repos/acme/widgets/issues/12/labels")
        self.assertEqual(json.loads(seen[0].content), {"labels": ["in-progress"]})
        self.assertEqual(seen[0].headers["authorization"], "Bearer ghp_x")

    def test_complete_tolerates_missing_label(self) -> None:
        def responder(request: httpx.Request) -> httpx.Response:
            if request.method == "DELETE":
                return httpx.Response(404)
            return httpx.Response(201, json={})

        client, seen = _recording_client(responder)
        result = BatchExecutionResult(
            task=self.task,
            success=True,
            branch="auto/github-12",
            pr_url="https://github.com/acme/widgets/pull/40",
            commits=("abc", "def"),
        )
        GitHubOrigin(token="ghp_x", http_client=client).complete_task(self.task, result)
        self.assertEqual([r.method for r in seen], ["DELETE", "POST"])
        self.assertEqual(seen[0].url.path, "/repos/acme/widgets/issues/12/labels/in-progress")
        body = json.loads(seen[1].content)["body"]
        self.assertIn("pull/40", body)
        self.assertIn("Commits: 2", body)

    def test_skip_raises_on_server_error(self) -> None:
        client, _ = _recording_client(lambda request: httpx.Response(500))
        with self.assertRaises(httpx.HTTPStatusError):
            GitHubOrigin(token="ghp_x", http_client=client).skip_task(self.task, "boom")

    def test_close_only_closes_its_own_client(self) -> None:
        origin = GitHubOrigin(token="ghp_x")
        owned = origin._client()
        origin.close()
        self.assertTrue(owned.is_closed)
        self.assertIsNone(origin.http_client)

        client, _seen = _recording_client(lambda request: httpx.Response(200, json=[]))
        with GitHubOrigin(token="ghp_x", http_client=client) as origin:
            origin.claim_task(self.task)
        self.assertFalse(client.is_closed)


class LinearOriginTests(unittest.TestCase):
    def setUp(self) -> None:
        self.task = BatchTask(id="ENG-7", title="Add export", description="", source="linear")

    def test_comment_mutation(self) -> None:
        client, seen = _recording_client(
            lambda request: httpx.Response(200, json={"data": {"commentCreate": {"success": True}}})
        )
        LinearOrigin(api_key="lin_x", http_client=client).skip_task(self.task, "tests failed")
        payload = json.loads(seen[0].content)
        self.assertEqual(seen[0].headers["authorization"], "lin_x")
        self.assertIn("commentCreate", payload["query"])
        self.assertEqual(payload["variables"]["issueId"], "ENG-7")
        self.assertIn("tests failed", payload["variables"]["body"])

    def test_context_manager_closes_owned_client(self) -> None:
        with LinearOrigin(api_key="lin_x") as origin:
            owned = origin._client()
        self.assertTrue(owned.is_closed)

    def test_graphql_errors_raise(self) -> None:
        client, _ = _recording_client(
            lambda request: httpx.Response(200, json={"errors": [{"message": "not found"}]})
        )
        with self.assertRaisesRegex(LinearError, "not found"):
            LinearOrigin(api_key="lin_x", http_client=client).claim_task(self.task)

    def test_unsuccessful_comment_raises(self) -> None:
        client, _ = _recording_client(
            lambda request: httpx.Response(200, json={"data": {"commentCreate": {"success": False}}})
        )
        with self.assertRaises(LinearError):
            LinearOrigin(api_key="lin_x", http_client=client).claim_task(self.task)


if __name__ == "__main__":
    unittest.main()
