import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from convo_engine.app_config import _to_bool, load_json_config, parse_app_config, resolve_runtime_env


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        config = parse_app_config({})
        self.assertEqual("anthropic", config.provider_name)
        self.assertEqual(8192, config.max_tokens)
        self.assertIsNone(config.temperature)
        self.assertEqual(64, config.context_message_size)
        self.assertFalse(config.prompt_caching)
        self.assertTrue(config.enable_time_reminder)
        self.assertEqual(16, config.max_tool_steps)
        self.assertIsNone(config.log_consumers)

    def test_values_are_coerced(self) -> None:
        config = parse_app_config({
            "Provider": " OpenAI ",
            "MaxTokens": "2048",
            "Temperature": "0.5",
            "ContextMessageSize": "12",
            "PromptCaching": "yes",
            "EnableTimeReminder": "off",
        })
        self.assertEqual("openai", config.provider_name)
        self.assertEqual(2048, config.max_tokens)
        self.assertEqual(0.5, config.temperature)
        self.assertEqual(12, config.context_message_size)
        self.assertTrue(config.prompt_caching)
        self.assertFalse(config.enable_time_reminder)

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("1"))
        self.assertFalse(_to_bool("no", default=True))
        self.assertTrue(_to_bool(None, default=True))

    def test_load_json_config(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.json"
            self.assertEqual({}, load_json_config(path))
            path.write_text(json.dumps({"Model": "gpt-test"}))
            self.assertEqual({"Model": "gpt-test"}, load_json_config(path))


class RuntimeEnvTests(unittest.TestCase):
    def test_openai_env(self) -> None:
        env = {"OPENAI_API_KEY": "sk-test", "OPENAI_BASE_URL": "https://proxy.local/v1"}
        with patch.dict(os.environ, env, clear=True), patch("convo_engine.app_config.load_dotenv"):
            runtime = resolve_runtime_env("openai")
        self.assertEqual("sk-test", runtime.provider_api_key)
        self.assertEqual("OPENAI_API_KEY", runtime.provider_env_var)
        self.assertEqual("https://proxy.local/v1", runtime.provider_base_url)

    def test_anthropic_env_without_base_url(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "ak"}, clear=True), patch("convo_engine.app_config.load_dotenv"):
            runtime = resolve_runtime_env("anthropic")
        self.assertEqual("ak", runtime.provider_api_key)
        self.assertIsNone(runtime.provider_base_url)


if __name__ == "__main__":
    unittest.main()
