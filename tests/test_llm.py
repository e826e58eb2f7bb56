import json
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.config import LLMSettings
from buildloop.llm import OllamaClient, OpenAIClient, build_llm_client


class _FakeResponse:
    status_code = 200

    def __init__(self, content: str) -> None:
        self._content = content

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return {"message": {"content": self._content}}


class _FakeClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = outcomes
        self.calls = 0

    def post(self, *_args, **_kwargs):
        if self.calls >= len(self.outcomes):
            raise AssertionError("post called more times than expected")
        outcome = self.outcomes[self.calls]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class LLMTests(unittest.TestCase):
    def test_ollama_retries_timeout_and_succeeds(self) -> None:
        client = _FakeClient(
            [
                httpx.ReadTimeout("timed out"),
                _FakeResponse("ok"),
            ]
        )
        ollama = OllamaClient(
            base_url="http://localhost:11434",
            model="llama3",
            timeout_s=5.0,
            max_retries=2,
            retry_delay_s=0.0,
        )
        with patch("buildloop.llm._shared_http_client", return_value=client):
            response = ollama.generate("review this")
        self.assertEqual(response.content, "ok")
        self.assertEqual(client.calls, 2)

    def test_ollama_timeout_raises_after_retries(self) -> None:
        client = _FakeClient([httpx.ReadTimeout("timed out") for _ in range(3)])
        ollama = OllamaClient(
            base_url="http://localhost:11434",
            model="llama3",
            max_retries=2,
            retry_delay_s=0.0,
            http_client=client,
        )
        with self.assertRaises(httpx.ReadTimeout):
            ollama.generate("review this")
        self.assertEqual(client.calls, 3)

    def test_openai_request_shape(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"choices": [{"message": {"content": '{"score": 8}'}}]}
            )

        client = OpenAIClient(
            base_url="https://api.example.com/v1/",
            api_key="sk-test",
            model="gpt-4o-mini",
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        response = client.generate("score it", temperature=0.2)
        self.assertEqual(response.content, '{"score": 8}')
        self.assertEqual(str(seen[0].url), "https://api.example.com/v1/chat/completions")
        self.assertEqual(seen[0].headers["authorization"], "Bearer sk-test")
        body = json.loads(seen[0].content)
        self.assertEqual(body["temperature"], 0.2)
        self.assertEqual(body["messages"][0]["content"], "score it")
        self.assertEqual(body["response_format"], {"type": "json_object"})

    def test_openai_server_errors_retry_then_raise(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(500)

        client = OpenAIClient(
            base_url="https://api.example.com/v1",
            api_key="sk-test",
            model="gpt-4o-mini",
            retry_delay_s=0.0,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with self.assertRaises(httpx.HTTPStatusError):
            client.generate("x")
        self.assertEqual(len(seen), 3)

    def test_client_errors_are_not_retried(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(401)

        client = OpenAIClient(
            base_url="https://api.example.com/v1",
            api_key="sk-bad",
            model="gpt-4o-mini",
            retry_delay_s=0.0,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with self.assertRaises(httpx.HTTPStatusError):
            client.generate("x")
        self.assertEqual(len(seen), 1)

    def test_ollama_recovers_from_overload(self) -> None:
        replies = [
            httpx.Response(429),
            httpx.Response(200, json={"message": {"content": "fine"}}),
        ]
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return replies[len(seen) - 1]

        ollama = OllamaClient(
            base_url="http://localhost:11434",
            model="llama3",
            retry_delay_s=0.0,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        self.assertEqual(ollama.generate("review").content, "fine")
        self.assertEqual(len(seen), 2)
        body = json.loads(seen[0].content)
        self.assertEqual(body["format"], "json")
        self.assertFalse(body["stream"])

    def test_build_llm_client(self) -> None:
        self.assertIsInstance(
            build_llm_client(LLMSettings("ollama", "llama3", "http://localhost:11434")),
            OllamaClient,
        )
        openai = build_llm_client(
            LLMSettings("openai", "gpt-4o-mini", "https://x", api_key="sk"), json_output=False
        )
        self.assertFalse(openai.json_output)
        with self.assertRaises(ValueError):
            build_llm_client(LLMSettings("openai", "gpt-4o-mini", "https://x"))
        with self.assertRaises(ValueError):
            build_llm_client(LLMSettings("claude", "x", "https://x"))


if __name__ == "__main__":
    unittest.main()
