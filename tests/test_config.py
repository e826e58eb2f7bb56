import json
import sys
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from buildloop.config import (
    AppConfig,
    CircuitBreakerConfig,
    LLMSettings,
    LoopOptions,
    Paths,
    load_config,
    load_paths,
    loop_options_from_dict,
    loop_options_to_dict,
    save_config,
)


class PathsTests(unittest.TestCase):
    def test_session_key_is_stable_hash_prefix(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            paths = load_paths(Path(temp_dir))
            again = Paths(working_dir=Path(temp_dir) / ".")
            self.assertEqual(len(paths.session_key), 16)
            self.assertEqual(paths.session_key, again.session_key)
            self.assertEqual(paths.session_path.parent, paths.state_dir / "sessions")
            self.assertEqual(paths.session_path.suffix, ".json")


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = Path(self.temp_dir.name) / ".buildloop" / "config.json"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_missing_file_gives_defaults(self) -> None:
        config = load_config(self.path)
        self.assertEqual(config, AppConfig())
        self.assertEqual(config.loop.circuit_breaker, CircuitBreakerConfig(3, 5, 30_000))

    def test_environment_fills_secrets(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(
            json.dumps(
                {"llm": {"provider": "openai", "model": "gpt-4o-mini", "base_url": "https://x"}}
            ),
            encoding="utf-8",
        )
        config = load_config(
            self.path,
            {"GITHUB_TOKEN": "gh", "LINEAR_API_KEY": "lin", "OPENAI_API_KEY": "sk"},
        )
        self.assertEqual(config.integrations.github_token, "gh")
        self.assertEqual(config.integrations.linear_api_key, "lin")
        self.assertEqual(config.llm.api_key, "sk")

    def test_save_omits_secrets(self) -> None:
        config = AppConfig(
            loop=LoopOptions(validate=True, pr_labels=("auto",)),
            llm=LLMSettings("openai", "gpt-4o-mini", "https://x", api_key="secret"),
        )
        save_config(self.path, config)
        text = self.path.read_text(encoding="utf-8")
        self.assertNotIn("secret", text)
        loaded = load_config(self.path)
        self.assertTrue(loaded.loop.validate)
        self.assertEqual(loaded.loop.pr_labels, ("auto",))
        self.assertIsNone(loaded.llm.api_key)

    def test_loop_options_round_trip(self) -> None:
        options = replace(
            LoopOptions(),
            commit=True,
            rate_limit=30,
            max_turns=None,
            validation_commands=("make test",),
            circuit_breaker=CircuitBreakerConfig(2, 3, 1000),
            plan_completion=False,
            cost_model="claude-opus",
            max_cost=2.5,
        )
        self.assertEqual(loop_options_from_dict(loop_options_to_dict(options)), options)


if __name__ == "__main__":
    unittest.main()
